"""
Gunicorn Configuration

Uvicorn workers under Gunicorn. Every worker owns its call budget and
memory cache; scale WORKERS together with the per-worker quota.
"""

import os

bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

workers = int(os.getenv("WORKERS", 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
# upstream pagination can take a while on long ranges
timeout = int(os.getenv("GUNICORN_TIMEOUT", 300))
keepalive = 5
graceful_timeout = 60

proc_name = "ad-insights-sync-api"

errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"


def when_ready(server):
    server.log.info("Ad Insights Sync API ready with %s worker(s)", workers)


def worker_abort(worker):
    worker.log.warning("Worker %s aborted; in-flight retrieval sessions were lost", worker.pid)
