"""Turn a live web server access log into Prometheus metrics."""

__version__ = "0.1.0"
