#!/usr/bin/env python3
"""
adsync API Startup Script

Starts the sync engine's FastAPI server.
"""

import uvicorn
import sys
from pathlib import Path

def main():
    """Start the adsync API server."""
    print("Starting adsync API Server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   META_ACCESS_TOKEN=your-system-user-token")
        print("   META_ACCOUNT_ID=act_1234567890")
        print("")

    try:
        uvicorn.run(
            "adsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["adsync"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down adsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
