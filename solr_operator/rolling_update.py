"""
Managed rolling updates.

With the Managed update strategy the StatefulSet uses OnDelete, and the
operator decides which out-of-date pods to delete each pass. Pods whose solr
container never started receive no traffic and are always deleted; started
pods are only deleted within the budget an UpdateSafetyPolicy allows.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Protocol, Tuple, Union

from kubernetes.client import ApiException

from solr_operator import metrics
from solr_operator.models import SOLR_NODE_CONTAINER, SolrCloud
from solr_operator.services.kubernetes_service import KubernetesService

logger = logging.getLogger("solr-operator.rolling-update")

REVISION_LABEL = "controller-revision-hash"


def pod_name(pod: dict) -> str:
    return pod["metadata"]["name"]


def pod_is_ready(pod: dict) -> bool:
    for cond in (pod.get("status") or {}).get("conditions") or []:
        if cond.get("type") == "Ready":
            return cond.get("status") == "True"
    return False


def pod_is_up_to_date(pod: dict, update_revision: str) -> bool:
    labels = pod["metadata"].get("labels") or {}
    return labels.get(REVISION_LABEL) == update_revision


def solr_container_started(pod: dict) -> bool:
    """Whether the solr container has started; a ready pod always counts as started."""
    if pod_is_ready(pod):
        return True
    for status in (pod.get("status") or {}).get("containerStatuses") or []:
        if status.get("name") == SOLR_NODE_CONTAINER:
            return bool(status.get("started"))
    return False


@dataclass
class PodClassification:
    up_to_date: List[dict] = field(default_factory=list)
    out_of_date: List[dict] = field(default_factory=list)
    out_of_date_not_started: List[dict] = field(default_factory=list)
    available_updated: int = 0

    @property
    def total(self) -> int:
        return len(self.up_to_date) + len(self.out_of_date) + len(self.out_of_date_not_started)

    @property
    def needs_update(self) -> bool:
        return bool(self.out_of_date or self.out_of_date_not_started)


def classify_pods(pods: List[dict], update_revision: str) -> PodClassification:
    """Split pods into up-to-date, out-of-date-and-started and out-of-date-not-started."""
    result = PodClassification()
    for pod in sorted(pods, key=pod_name):
        if pod_is_up_to_date(pod, update_revision):
            result.up_to_date.append(pod)
            if pod_is_ready(pod):
                result.available_updated += 1
        elif solr_container_started(pod):
            result.out_of_date.append(pod)
        else:
            result.out_of_date_not_started.append(pod)
    return result


class UpdateSafetyPolicy(Protocol):
    def select(
        self,
        cloud: SolrCloud,
        candidates: List[dict],
        total_pods: int,
        ready_pods: int,
        available_updated_pods: int,
        not_started_updating: int,
    ) -> Tuple[List[dict], bool]:
        """Pick which started out-of-date pods may go now; the bool asks for a retry later."""
        ...


def resolve_max_unavailable(value: Union[int, str], total: int) -> int:
    """maxPodsUnavailable as an absolute pod count (percentages round down, minimum 1)."""
    if isinstance(value, str) and value.endswith("%"):
        count = math.floor(total * int(value[:-1]) / 100)
    else:
        count = int(value)
    return max(count, 1)


class MaxUnavailablePolicy:
    """Never let more than maxPodsUnavailable pods be down at once."""

    def select(self, cloud, candidates, total_pods, ready_pods, available_updated_pods,
               not_started_updating):
        max_unavailable = resolve_max_unavailable(
            cloud.spec.updateStrategy.managedUpdate.maxPodsUnavailable, total_pods
        )
        unavailable = max(total_pods - ready_pods, not_started_updating)
        budget = max(max_unavailable - unavailable, 0)
        # Pods that are already not ready cost no extra availability, take them first.
        ordered = sorted(candidates, key=lambda p: (pod_is_ready(p), pod_name(p)))
        selected = ordered[:budget]
        logger.info(
            f"Managed update of {cloud.name}: maxPodsUnavailable={max_unavailable}, "
            f"unavailable={unavailable}, upToDateAvailable={available_updated_pods}, "
            f"selected {len(selected)}/{len(candidates)}"
        )
        return selected, len(selected) < len(candidates)


class RollingUpdateCoordinator:
    def __init__(self, kube: KubernetesService, cloud: SolrCloud, policy: UpdateSafetyPolicy,
                 log: logging.Logger = logger):
        self.kube = kube
        self.cloud = cloud
        self.policy = policy
        self.log = log

    def select_pods_to_update(self, pods: PodClassification, ready_pods: int) -> Tuple[List[dict], bool]:
        to_update = list(pods.out_of_date_not_started)
        for pod in to_update:
            self.log.info(f"Pod {pod_name(pod)} killed for update: solr container has not started")
        additional, retry_later = self.policy.select(
            self.cloud,
            pods.out_of_date,
            self.cloud.spec.replicas,
            ready_pods,
            pods.available_updated,
            len(pods.out_of_date_not_started),
        )
        return to_update + list(additional), retry_later

    def delete_pods(self, pods: List[dict]) -> bool:
        """Delete each pod if it is still the one we read. Returns False if any delete failed."""
        ok = True
        for pod in pods:
            name = pod_name(pod)
            try:
                self.kube.delete("Pod", self.cloud.namespace, name, uid=pod["metadata"].get("uid"))
                metrics.PODS_DELETED.labels(namespace=self.cloud.namespace).inc()
                self.log.info(f"Deleted pod {name} for update")
            except ApiException as e:
                self.log.error(f"Error while killing solr pod {name} for update: {e}")
                ok = False
        return ok

    def run(self, pods: PodClassification, ready_pods: int) -> bool:
        """Delete what is safe to delete. Returns True if the caller should requeue soon."""
        to_update, retry_later = self.select_pods_to_update(pods, ready_pods)
        ok = self.delete_pods(to_update)
        return retry_later or not ok
