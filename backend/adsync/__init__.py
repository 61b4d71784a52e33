"""adsync - Meta Ads insight synchronization engine.

Pulls ad-performance time series from the Meta Marketing API, normalizes the
action arrays into one metrics schema, and merges them into a size-bounded
per-account cache.
"""

__version__ = "0.1.0"
