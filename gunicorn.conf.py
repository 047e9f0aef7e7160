"""
Production Server Configuration

Uvicorn workers under Gunicorn. Each worker owns its own subscription hub;
live notifications reach subscribers on every worker through the Redis relay.
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 2000
max_requests = 20000
max_requests_jitter = 2000
# WebSocket subscribers hold connections open
timeout = 60
keepalive = 30
graceful_timeout = 20

proc_name = "viewtrack-api"
daemon = False
pidfile = os.getenv("PIDFILE", "/tmp/viewtrack-gunicorn.pid")

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info")
accesslog = None


def post_worker_init(worker):
    """Log which worker came up; the app lifespan starts its background tasks."""
    worker.log.info("viewtrack worker %s ready", worker.pid)


def worker_abort(worker):
    worker.log.warning("viewtrack worker %s aborted", worker.pid)
