#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py
    Gunicorn:     python run_server.py --gunicorn
"""

import argparse
import os
import subprocess

APP = "viewtrack.main:app"


def run_dev_server(port: int):
    """Single worker with auto-reload."""
    import uvicorn

    uvicorn.run(
        APP,
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["viewtrack"],
        log_level="debug",
    )


def run_prod_server(port: int):
    import uvicorn

    uvicorn.run(
        APP,
        host="0.0.0.0",
        port=port,
        workers=int(os.getenv("WORKERS", 2)),
        log_level=os.getenv("LOG_LEVEL", "info"),
        access_log=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
        ws_ping_interval=20.0,
    )


def run_gunicorn(port: int):
    subprocess.run(["gunicorn", APP, "-c", "gunicorn.conf.py", "--bind", f"0.0.0.0:{port}"], check=True)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Product View Analytics API Server")
    parser.add_argument("--dev", action="store_true", help="Run with auto-reload")
    parser.add_argument("--gunicorn", action="store_true", help="Run under Gunicorn")
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", 8000)))
    args = parser.parse_args()

    if args.dev:
        print("🚀 Starting development server...")
        run_dev_server(args.port)
    elif args.gunicorn:
        print("🚀 Starting production server with Gunicorn...")
        run_gunicorn(args.port)
    else:
        print("🚀 Starting production server with Uvicorn...")
        run_prod_server(args.port)
