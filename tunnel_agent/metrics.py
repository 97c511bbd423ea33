"""Prometheus metrics for Tunnel Agent."""

from typing import Tuple

import structlog
from prometheus_client import Counter, Gauge, start_http_server

logger = structlog.get_logger()

SSH_RESTARTS = Counter(
    "tunnel_agent_ssh_restarts_total",
    "Number of ssh process relaunches",
    ["reason"],
)

SIGNING_REQUESTS = Counter(
    "tunnel_agent_signing_requests_total",
    "Certificate signing requests by outcome",
    ["outcome"],
)

CERTIFICATE_ROTATIONS = Counter(
    "tunnel_agent_certificate_rotations_total",
    "Number of certificates replaced before expiry",
)

CERTIFICATE_EXPIRY = Gauge(
    "tunnel_agent_certificate_expiry_timestamp_seconds",
    "Hard expiry of the current certificate as a unix timestamp",
)


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """Split "host:port" (host optional) into its parts.

    Raises:
        ValueError: If the port is missing or not a number
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid metrics address: {addr!r}")
    return host.strip("[]") or "0.0.0.0", int(port)


class MetricsServer:
    """Serves the default registry over HTTP from a background thread."""

    def __init__(self, addr: str):
        self.addr = addr
        self._server = None
        self._thread = None

    def start(self) -> None:
        """Start the metrics listener; failures are logged, not raised."""
        if not self.addr:
            logger.info("metrics_disabled")
            return

        try:
            host, port = parse_listen_addr(self.addr)
            self._server, self._thread = start_http_server(port, addr=host)
        except (OSError, ValueError) as e:
            logger.error("metrics_server_failed", addr=self.addr, error=str(e))
            return

        logger.info("metrics_server_started", addr=self.addr)

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2)
            self._thread = None
