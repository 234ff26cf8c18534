"""
HTTP server exposing Celery worker metrics to Prometheus.
"""
import logging
from prometheus_client import start_http_server

logger = logging.getLogger(__name__)

_started_port = None


def start_metrics_server(port: int = 9090) -> int:
    """
    Serve /metrics from a daemon thread. Idempotent within a process.

    Returns:
        The port being served
    """
    global _started_port
    if _started_port is not None:
        return _started_port

    start_http_server(port)
    _started_port = port
    logger.info(f"Metrics server started on port {port}")
    return port
