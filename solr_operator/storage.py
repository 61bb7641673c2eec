"""
Storage finalizer and PVC cleanup.

PVCs created from the StatefulSet's volumeClaimTemplates are not owned by the
SolrCloud. When persistent storage uses the Delete reclaim policy, a finalizer
on the SolrCloud keeps it around until its PVCs are gone.
"""

import copy
import logging
from typing import Dict, List

from kubernetes.client import ApiException

from solr_operator.config import Settings
from solr_operator.models import STORAGE_FINALIZER, SolrCloud
from solr_operator.services.kubernetes_service import KubernetesService

logger = logging.getLogger("solr-operator.storage")


def pvc_ordinal(pvc_name: str) -> int:
    """The trailing ordinal of a StatefulSet PVC name, or -1 if there is none."""
    suffix = pvc_name.rsplit("-", 1)[-1]
    return int(suffix) if suffix.isdigit() else -1


def is_pvc_orphan(pvc_name: str, replicas: int) -> bool:
    return pvc_ordinal(pvc_name) >= replicas


class StorageLifecycleManager:
    def __init__(self, kube: KubernetesService, body: dict, cloud: SolrCloud, settings: Settings,
                 log: logging.Logger = logger):
        self.kube = kube
        self.body = body
        self.cloud = cloud
        self.settings = settings
        self.log = log

    def reconcile(self, pvc_labels: Dict[str, str], statefulset_status: dict) -> dict:
        """Drive the finalizer one step. Returns the (possibly updated) SolrCloud body."""
        has_finalizer = STORAGE_FINALIZER in self.cloud.finalizers

        if self.cloud.deletes_storage_on_reclaim():
            if not self.cloud.being_deleted:
                if not has_finalizer:
                    self.log.info(f"Adding storage finalizer to {self.cloud.name}")
                    self._set_finalizer(present=True)
                self.cleanup_orphan_pvcs(pvc_labels, statefulset_status)
            elif has_finalizer:
                self.log.info(f"Deleting PVCs for SolrCloud {self.cloud.name}")
                self.delete_pvcs(self.list_pvcs(pvc_labels))
                self.log.info(f"Deleted PVCs for SolrCloud {self.cloud.name}")
                self._set_finalizer(present=False)
        elif has_finalizer:
            self.log.info(f"Removing storage finalizer from {self.cloud.name}")
            self._set_finalizer(present=False)
        return self.body

    def _set_finalizer(self, present: bool):
        body = copy.deepcopy(self.body)
        finalizers = [f for f in body["metadata"].get("finalizers") or [] if f != STORAGE_FINALIZER]
        if present:
            finalizers.append(STORAGE_FINALIZER)
        body["metadata"]["finalizers"] = finalizers
        self.body = self.kube.update(self.settings.CRD_KIND, body)

    def list_pvcs(self, pvc_labels: Dict[str, str]) -> List[dict]:
        return self.kube.list("PersistentVolumeClaim", self.cloud.namespace, pvc_labels)

    def cleanup_orphan_pvcs(self, pvc_labels: Dict[str, str], statefulset_status: dict):
        # Pods may still be scaling down until every replica reports ready.
        replicas = statefulset_status.get("replicas") or 0
        ready = statefulset_status.get("readyReplicas") or 0
        if ready != replicas:
            self.log.debug(f"Skipping orphan PVC cleanup, {ready}/{replicas} replicas ready")
            return
        pvcs = self.list_pvcs(pvc_labels)
        if len(pvcs) <= self.cloud.spec.replicas:
            return
        orphans = [p for p in pvcs if is_pvc_orphan(p["metadata"]["name"], self.cloud.spec.replicas)]
        self.delete_pvcs(orphans)

    def delete_pvcs(self, pvcs: List[dict]):
        for pvc in pvcs:
            name = pvc["metadata"]["name"]
            self.log.info(f"Deleting PVC {name} for SolrCloud {self.cloud.name}")
            try:
                self.kube.delete("PersistentVolumeClaim", self.cloud.namespace, name)
            except ApiException as e:
                self.log.error(f"Error deleting PVC {name} for SolrCloud {self.cloud.name}: {e}")
