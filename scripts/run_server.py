#!/usr/bin/env python3
"""
Starts the CarsLab signature API with uvicorn.

Usage: python scripts/run_server.py [--host 0.0.0.0] [--port 8000] [--reload]
"""

import argparse

import uvicorn

from carslab_crm.core.config import settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the CarsLab signature API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    print(f"Starting {settings.project_name} on http://{args.host}:{args.port} (docs at /docs)")
    uvicorn.run(
        "carslab_crm.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
