"""Prometheus metrics exposed by the mail scheduler."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("gms_sent_total", "Items delivered successfully", ["kind"], registry=self.registry)
        self.rescheduled = Counter("gms_rescheduled_total", "Items rescheduled after a failed send", registry=self.registry)
        self.failed = Counter("gms_failed_total", "Items that exhausted their attempts", registry=self.registry)
        self.skipped = Counter("gms_skipped_total", "Items skipped because the subscription opted out", registry=self.registry)
        self.batches = Counter("gms_batches_total", "Combined group messages handed to the sender", ["outcome"], registry=self.registry)
        self.pass_errors = Counter("gms_pass_errors_total", "Processing passes aborted by an error", registry=self.registry)
        self.due = Gauge("gms_due_items", "Items found due by the last pass", registry=self.registry)

    def inc_sent(self, recurring: bool):
        """Count a delivered item, labelled by whether it recurs."""
        self.sent.labels(kind="recurring" if recurring else "once").inc()

    def inc_rescheduled(self):
        self.rescheduled.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_skipped(self):
        self.skipped.inc()

    def inc_batch(self, ok: bool):
        """Count one combined group message and its outcome."""
        self.batches.labels(outcome="ok" if ok else "error").inc()

    def inc_pass_error(self):
        self.pass_errors.inc()

    def set_due(self, value: int):
        """Update the gauge tracking due items."""
        self.due.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
