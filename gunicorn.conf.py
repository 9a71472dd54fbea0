# Gunicorn configuration file
import multiprocessing
import os

# Server socket
bind = os.getenv("CYBERRANGE_BIND", "0.0.0.0:8080")
backlog = 2048

# Single worker with threads: the expiry sweeper daemon must run exactly once
workers = 1
worker_class = "gthread"
threads = multiprocessing.cpu_count() * 4
worker_connections = 1000
# docker compose up/down can take a while on a cold image pull
timeout = int(os.getenv("CYBERRANGE_WORKER_TIMEOUT", "120"))
keepalive = 2

# Logging
accesslog = "-"  # Log to stdout
errorlog = "-"   # Log to stderr
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s"'

# Process naming
proc_name = "cyberrange-labs"

# Server mechanics
daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None

# Disable preloading so each worker opens its own database connections
preload_app = False
