"""
HTTP server for exposing Celery worker metrics to Prometheus.
Exposes /metrics on WORKER_METRICS_PORT.
"""
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from prometheus_client.core import REGISTRY

logger = logging.getLogger(__name__)


class MetricsHandler(BaseHTTPRequestHandler):
    """Serves the default registry at /metrics."""

    def do_GET(self):
        if self.path != '/metrics':
            self.send_response(404)
            self.end_headers()
            return

        self.send_response(200)
        self.send_header('Content-Type', CONTENT_TYPE_LATEST)
        self.end_headers()
        self.wfile.write(generate_latest(REGISTRY))

    def log_message(self, format, *args):
        pass


def start_metrics_server(port: int = 9090) -> HTTPServer:
    """
    Start the metrics HTTP server in a daemon thread.

    Raises:
        OSError: If the port cannot be bound
    """
    server = HTTPServer(('0.0.0.0', port), MetricsHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"Metrics server started on port {port}")
    return server
