"""Gunicorn configuration for the bin allocation service."""
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:5000")

# A single worker keeps one order sync scheduler per deployment.
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))

accesslog = os.getenv("GUNICORN_ACCESS_LOGFILE", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOGFILE", "-")

forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "*")
