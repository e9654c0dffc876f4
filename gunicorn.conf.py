"""Gunicorn configuration for the oinit CA service.

Every worker loads its own configuration snapshot at startup. SIGHUP to the
master restarts the workers, which re-read the host group file.
"""

import os

bind = os.environ.get("GUNICORN_BIND", "127.0.0.1:8080")
workers = int(os.environ.get("GUNICORN_WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 30
keepalive = 5
accesslog = "-"
errorlog = "-"
loglevel = "info"
