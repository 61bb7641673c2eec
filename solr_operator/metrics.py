"""Prometheus metrics for reconciliation passes."""

import logging

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger("solr-operator.metrics")

RECONCILE_TOTAL = Counter(
    "solrcloud_reconcile_total",
    "Reconciliation passes by outcome",
    ["namespace", "outcome"],
)
RECONCILE_DURATION = Histogram(
    "solrcloud_reconcile_duration_seconds",
    "Wall time of one reconciliation pass",
    ["namespace"],
)
RESOURCE_WRITES = Counter(
    "solrcloud_resource_writes_total",
    "Create/update calls issued against owned resources",
    ["kind", "action"],
)
PODS_DELETED = Counter(
    "solrcloud_managed_update_pod_deletions_total",
    "Pods deleted by the managed rolling update",
    ["namespace"],
)


def record_write(kind: str, action: str):
    RESOURCE_WRITES.labels(kind=kind, action=action).inc()


def start_exporter(port: int):
    """Expose /metrics on the given port. A port of 0 disables the exporter."""
    if not port:
        logger.info("Metrics exporter disabled")
        return
    start_http_server(port)
    logger.info(f"Metrics exporter listening on :{port}")
