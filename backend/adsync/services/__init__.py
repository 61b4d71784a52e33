"""Sync engine services: transport, retry, probing, normalization, planning, caching, orchestration."""
