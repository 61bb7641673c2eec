"""
Solr Operator: Kubernetes Operator for SolrCloud clusters

Architecture (level-triggered reconciler):
  SolrCloud CRD → Operator watches → Reconcile pass:
    1. Resolve ZooKeeper (connection string or managed ZookeeperCluster)
    2. Services + solr.xml ConfigMap
    3. TLS certificate via cert-manager (if enabled)
    4. StatefulSet
    5. Storage finalizer / orphan PVC cleanup
    6. Status + managed rolling update
    7. Ingress
    8. Status write-back (only when changed)

  Triggers:
    - SolrCloud create / update / resume
    - Owned StatefulSet or Pod events
    - Changes to a ConfigMap some SolrCloud provides its own solr.xml in
    - Periodic timer for drift
    - Deletion, while the storage finalizer still holds the object

  Concurrency Control:
    - Passes for the same SolrCloud never overlap (per-cloud locks)
    - Different SolrClouds reconcile in parallel, bounded by max_workers
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Dict, Optional

import kopf

from solr_operator import metrics
from solr_operator.config import settings as operator_settings
from solr_operator.errors import ConfigurationError
from solr_operator.events import clear_events, publish_event
from solr_operator.models import SOLR_TECHNOLOGY_LABEL
from solr_operator.reconciler import ReconcileResult, SolrCloudReconciler
from solr_operator.services.kubernetes_service import KubernetesService

logger = logging.getLogger("solr-operator")

CRD_GROUP = operator_settings.CRD_GROUP
CRD_VERSION = operator_settings.CRD_VERSION
CRD_PLURAL = operator_settings.CRD_PLURAL

# Passes for one SolrCloud must run one at a time, whichever handler starts them.
reconciliation_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
_locks_guard = threading.Lock()

_reconciler: Optional[SolrCloudReconciler] = None


def get_reconciler() -> SolrCloudReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = SolrCloudReconciler(KubernetesService(), operator_settings)
    return _reconciler


def _lock_for(namespace: str, name: str) -> threading.Lock:
    with _locks_guard:
        return reconciliation_locks[f"{namespace}/{name}"]


def _forget_lock(namespace: str, name: str):
    with _locks_guard:
        reconciliation_locks.pop(f"{namespace}/{name}", None)


def run_pass(namespace: str, name: str, log: logging.Logger) -> ReconcileResult:
    """
    Run one reconciliation pass and translate its outcome for kopf.

    Raises kopf.TemporaryError when the pass asks to be requeued, and
    kopf.PermanentError for configuration errors. Anything else propagates
    and kopf retries it with its own backoff.
    """
    started = time.monotonic()
    outcome = "error"
    try:
        with _lock_for(namespace, name):
            result = get_reconciler().reconcile(namespace, name, log)
        if result.requeue_after > 0:
            outcome = "requeue"
            raise kopf.TemporaryError(
                f"SolrCloud {name} not ready yet, requeue in {result.requeue_after}s",
                delay=result.requeue_after,
            )
        outcome = "success"
        if result.status_written:
            publish_event(namespace, name, "STATUS_UPDATED", "SolrCloud status updated")
        return result
    except ConfigurationError as e:
        outcome = "config_error"
        log.error(f"SolrCloud {name} is misconfigured: {e}")
        publish_event(namespace, name, "CONFIGURATION_ERROR", str(e)[:200])
        raise kopf.PermanentError(str(e)) from e
    finally:
        metrics.RECONCILE_TOTAL.labels(namespace=namespace, outcome=outcome).inc()
        log.debug(f"Pass for {namespace}/{name} finished in {time.monotonic() - started:.2f}s ({outcome})")


def _reconcile_owner(namespace: str, name: str, log: logging.Logger):
    """Run a pass on behalf of a watched child. Requeues are left to the timer."""
    try:
        run_pass(namespace, name, log)
    except kopf.TemporaryError as e:
        log.info(f"{e}")


# ---------------------------------------------------------------------------
# Kopf operator settings
# ---------------------------------------------------------------------------

@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **kwargs):
    logging.getLogger("solr-operator").setLevel(operator_settings.LOG_LEVEL)
    settings.posting.enabled = True
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=CRD_GROUP
    )
    settings.execution.max_workers = operator_settings.MAX_WORKERS
    metrics.start_exporter(operator_settings.METRICS_PORT)
    logger.info(
        f"Solr Operator started (max_workers={operator_settings.MAX_WORKERS}, "
        f"zk_crd={operator_settings.USE_ZK_CRD}, "
        f"ingress_base_domain={operator_settings.INGRESS_BASE_DOMAIN or '-'})"
    )


# ---------------------------------------------------------------------------
# SolrCloud handlers
# ---------------------------------------------------------------------------

@kopf.on.create(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.update(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
@kopf.on.resume(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
def reconcile_solrcloud(name, namespace, logger, **kwargs):
    """Reconcile a SolrCloud toward its spec. Idempotent: safe to call any number of times."""
    run_pass(namespace, name, logger)


@kopf.on.delete(CRD_GROUP, CRD_VERSION, CRD_PLURAL, optional=True)
def release_solrcloud(name, namespace, logger, **kwargs):
    """
    Final pass while a deleted SolrCloud is still held by finalizers.

    The timer handler makes kopf keep its own finalizer on every SolrCloud,
    which is what gives this handler a chance to run. optional=True only
    means this handler does not ask for a finalizer by itself. The storage
    finalizer, when present, is removed by the pass once the PVCs are gone.
    """
    logger.info(f"SolrCloud {name} is being deleted")
    run_pass(namespace, name, logger)
    clear_events(namespace, name)
    _forget_lock(namespace, name)


@kopf.timer(CRD_GROUP, CRD_VERSION, CRD_PLURAL,
            interval=operator_settings.RECONCILE_INTERVAL, idle=operator_settings.RECONCILE_INTERVAL)
def periodic_reconcile(name, namespace, logger, **kwargs):
    """Periodic pass for drift nobody told us about (deleted children, expired certs)."""
    run_pass(namespace, name, logger)


# ---------------------------------------------------------------------------
# Owned resources
# ---------------------------------------------------------------------------

@kopf.on.event("apps", "v1", "statefulsets", labels={"solr-cloud": kopf.PRESENT})
def statefulset_changed(labels, namespace, logger, **kwargs):
    _reconcile_owner(namespace, labels["solr-cloud"], logger)


@kopf.on.event("", "v1", "pods", labels={"technology": SOLR_TECHNOLOGY_LABEL, "solr-cloud": kopf.PRESENT})
def pod_changed(labels, namespace, logger, **kwargs):
    _reconcile_owner(namespace, labels["solr-cloud"], logger)


@kopf.index(CRD_GROUP, CRD_VERSION, CRD_PLURAL)
def provided_configmaps(name, namespace, spec, **kwargs):
    """Index SolrClouds by the ConfigMap they take their solr.xml from."""
    options = (spec.get("customSolrKubeOptions") or {}).get("configMapOptions") or {}
    configmap = options.get("providedConfigMap")
    if not configmap:
        return None
    return {(namespace, configmap): name}


@kopf.on.event("", "v1", "configmaps")
def configmap_changed(name, namespace, provided_configmaps: kopf.Index, logger, **kwargs):
    for cloud_name in provided_configmaps.get((namespace, name), []):
        logger.info(f"Provided ConfigMap {name} changed, reconciling SolrCloud {cloud_name}")
        _reconcile_owner(namespace, cloud_name, logger)
