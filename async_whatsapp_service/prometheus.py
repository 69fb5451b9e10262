"""Prometheus metrics exposed by the WhatsApp gateway."""

from typing import Iterable

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

from .session import SessionStatus

class GatewayMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.incoming = Counter("gwa_incoming_messages_total", "Total inbound messages", ["account_id", "status"], registry=self.registry)
        self.outgoing = Counter("gwa_outgoing_messages_total", "Total outbound sends", ["account_id", "status"], registry=self.registry)
        self.webhooks = Counter("gwa_webhook_deliveries_total", "Total webhook delivery attempts", ["account_id", "status"], registry=self.registry)
        self.sessions = Gauge("gwa_sessions", "Live sessions by status", ["status"], registry=self.registry)

    def inc_incoming(self, account_id: str, status: str = "success"):
        """Increase the inbound counter for the given account."""
        self.incoming.labels(account_id=account_id or "unknown", status=status).inc()

    def inc_outgoing(self, account_id: str, status: str = "success"):
        """Increase the outbound counter for the given account."""
        self.outgoing.labels(account_id=account_id or "unknown", status=status).inc()

    def inc_webhook(self, account_id: str, status: str = "success"):
        """Increase the webhook delivery counter for the given account."""
        self.webhooks.labels(account_id=account_id or "unknown", status=status).inc()

    def set_sessions(self, statuses: Iterable[str]):
        """Update the per-status session gauge from the cached statuses."""
        counts = {status.value: 0 for status in SessionStatus}
        for status in statuses:
            counts[status] = counts.get(status, 0) + 1
        for status, count in counts.items():
            self.sessions.labels(status=status).set(count)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
