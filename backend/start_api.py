#!/usr/bin/env python3
"""
adsync API Startup Script

Starts the hybrid metrics API with uvicorn. Run from backend/.
"""

import os
import sys
from pathlib import Path

import uvicorn


def main():
    """Start the adsync API server."""
    print("Starting adsync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    if not Path(".env").exists() and not os.getenv("DATABASE_URL"):
        print("WARNING: No .env file and DATABASE_URL is not exported.")
        print("   Required: DATABASE_URL")
        print("   Optional: REDIS_URL (shared locks, quotas, refresh queue), SENTRY_DSN")
        print("")

    try:
        uvicorn.run(
            "adsync.main:app",
            host="0.0.0.0",
            port=int(os.getenv("PORT", "8000")),
            reload=True,
            reload_dirs=["adsync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down adsync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
