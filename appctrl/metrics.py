"""Prometheus reconcile counters, labelled per reconciled resource."""
from prometheus_client import REGISTRY, CollectorRegistry, Counter

LABELS = ["kind", "name", "namespace"]


class ReconcileMetrics:
    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.attempts = Counter(
            "appctrl_reconcile_attempt_total",
            "Reconcile attempts", LABELS, registry=registry,
        )
        self.successes = Counter(
            "appctrl_reconcile_success_total",
            "Successful reconciles", LABELS, registry=registry,
        )
        self.failures = Counter(
            "appctrl_reconcile_failure_total",
            "Failed reconciles", LABELS, registry=registry,
        )
        self.delete_attempts = Counter(
            "appctrl_reconcile_delete_attempt_total",
            "Delete attempts", LABELS, registry=registry,
        )
        self.delete_failures = Counter(
            "appctrl_reconcile_delete_failed_total",
            "Failed deletes", LABELS, registry=registry,
        )

    def register_attempt(self, kind: str, name: str, namespace: str):
        self.attempts.labels(kind, name, namespace).inc()

    def register_success(self, kind: str, name: str, namespace: str):
        self.successes.labels(kind, name, namespace).inc()

    def register_failure(self, kind: str, name: str, namespace: str):
        self.failures.labels(kind, name, namespace).inc()

    def register_delete_attempt(self, kind: str, name: str, namespace: str):
        self.delete_attempts.labels(kind, name, namespace).inc()

    def register_delete_failure(self, kind: str, name: str, namespace: str):
        self.delete_failures.labels(kind, name, namespace).inc()


metrics = ReconcileMetrics()
