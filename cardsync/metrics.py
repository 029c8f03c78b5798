"""Prometheus metrics for the card command layer and its persistence writes.

Usage::

    metrics = SyncMetrics()
    metrics.record_command("rename_card")
    metrics.record_persisted("rename_card", latency_seconds=0.004)
    metrics.record_failed("rename_card", error_type="OperationalError")

Metrics live on their own ``CollectorRegistry`` unless one is passed in,
so several instances can coexist in one process. Expose them with
``prometheus_client.generate_latest(metrics.registry)``.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class SyncMetrics:
    def __init__(
        self,
        component: str = "cards",
        enable_prometheus: bool = True,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.component = component
        self.enabled = enable_prometheus
        self.registry = registry if registry is not None else CollectorRegistry()

        if not self.enabled:
            return

        self.commands_issued = Counter(
            "cardsync_commands_issued_total",
            "Commands applied to the in-memory projection",
            ["component", "command"],
            registry=self.registry,
        )
        self.writes_completed = Counter(
            "cardsync_writes_completed_total",
            "Persistence writes that matched and applied",
            ["component", "operation"],
            registry=self.registry,
        )
        self.writes_diverged = Counter(
            "cardsync_writes_diverged_total",
            "Persistence writes that matched no stored document",
            ["component", "operation"],
            registry=self.registry,
        )
        self.writes_failed = Counter(
            "cardsync_writes_failed_total",
            "Persistence writes that failed after all retries",
            ["component", "operation", "error_type"],
            registry=self.registry,
        )
        self.write_retries = Counter(
            "cardsync_write_retries_total",
            "Persistence write attempts that were retried",
            ["component", "operation"],
            registry=self.registry,
        )
        self.write_latency = Histogram(
            "cardsync_write_latency_seconds",
            "Time from write submission to completion, retries included",
            ["component", "operation"],
            registry=self.registry,
        )
        self.pending_writes = Gauge(
            "cardsync_pending_writes",
            "Persistence writes submitted but not finished",
            ["component"],
            registry=self.registry,
        )

    def record_command(self, command: str) -> None:
        if self.enabled:
            self.commands_issued.labels(self.component, command).inc()

    def record_persisted(self, operation: str, latency_seconds: float) -> None:
        if self.enabled:
            self.writes_completed.labels(self.component, operation).inc()
            self.write_latency.labels(self.component, operation).observe(latency_seconds)

    def record_divergence(self, operation: str) -> None:
        if self.enabled:
            self.writes_diverged.labels(self.component, operation).inc()

    def record_failed(self, operation: str, error_type: str) -> None:
        if self.enabled:
            self.writes_failed.labels(self.component, operation, error_type).inc()

    def record_retry(self, operation: str) -> None:
        if self.enabled:
            self.write_retries.labels(self.component, operation).inc()

    def set_pending(self, count: int) -> None:
        if self.enabled:
            self.pending_writes.labels(self.component).set(count)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of a sample, e.g. ``sample("cardsync_writes_failed_total", {...})``."""
        return self.registry.get_sample_value(name, labels or {})
