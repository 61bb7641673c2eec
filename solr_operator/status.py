"""
Status aggregation.

The status is rebuilt from scratch every pass out of the live pods, the
StatefulSet's own status and the ZooKeeper connection, never patched onto the
previous one.
"""

from typing import List, Optional, Tuple

from solr_operator.models import (
    BACKUP_RESTORE_VOLUME,
    SolrCloud,
    SolrCloudStatus,
    SolrNodeStatus,
    ZookeeperConnectionInfo,
    image_version,
)
from solr_operator.rolling_update import (
    PodClassification,
    classify_pods,
    pod_is_ready,
    pod_is_up_to_date,
    pod_name,
)


def _scheme(cloud: SolrCloud) -> str:
    return "https" if cloud.spec.solrTLS is not None else "http"


def node_status(cloud: SolrCloud, pod: dict, update_revision: str) -> SolrNodeStatus:
    name = pod_name(pod)
    scheme = _scheme(cloud)
    external = cloud.spec.solrAddressability.external
    external_address = None
    if external is not None and not external.hideNodes:
        external_address = f"{scheme}://{cloud.external_node_url(name)}"

    version = ""
    pod_spec = pod.get("spec") or {}
    if (pod.get("status") or {}).get("containerStatuses") and pod_spec.get("containers"):
        # The first container always runs solr.
        version = image_version(pod_spec["containers"][0]["image"])

    return SolrNodeStatus(
        name=name,
        nodeName=pod_spec.get("nodeName") or "",
        internalAddress=f"{scheme}://{cloud.internal_node_url(name)}",
        externalAddress=external_address,
        ready=pod_is_ready(pod),
        version=version,
        specUpToDate=pod_is_up_to_date(pod, update_revision),
    )


def has_backup_volume(pod: dict) -> bool:
    return any(v.get("name") == BACKUP_RESTORE_VOLUME for v in (pod.get("spec") or {}).get("volumes") or [])


def aggregate_status(
    cloud: SolrCloud,
    pods: List[dict],
    statefulset_status: Optional[dict],
    zk_info: ZookeeperConnectionInfo,
    url_scheme_set: bool,
) -> Tuple[SolrCloudStatus, PodClassification]:
    """Compute the SolrCloud status and the pod classification used by managed updates."""
    statefulset_status = statefulset_status or {}
    update_revision = statefulset_status.get("updateRevision", "")
    desired_tag = cloud.spec.solrImage.tag

    nodes = [node_status(cloud, pod, update_revision) for pod in sorted(pods, key=pod_name)]
    other_versions = [n.version for n in nodes if n.version and n.version != desired_tag]

    status = SolrCloudStatus(
        solrNodes=nodes,
        replicas=statefulset_status.get("replicas") or 0,
        readyReplicas=statefulset_status.get("readyReplicas") or 0,
        upToDateNodes=sum(1 for n in nodes if n.specUpToDate),
        internalCommonAddress=f"{_scheme(cloud)}://{cloud.internal_common_url()}",
        zookeeperConnectionInfo=zk_info,
        urlSchemeClusterProperty=url_scheme_set,
    )

    # Mid-rollout: report the first differing version (by pod name) as running.
    if other_versions:
        status.version = other_versions[0]
        status.targetVersion = desired_tag
    else:
        status.version = desired_tag
        status.targetVersion = ""

    external = cloud.spec.solrAddressability.external
    if external is not None and not external.hideCommon:
        status.externalCommonAddress = f"{_scheme(cloud)}://{cloud.external_common_url()}"

    if cloud.spec.storageOptions.backupRestoreOptions is not None:
        with_backup = sum(1 for pod in pods if has_backup_volume(pod))
        status.backupRestoreReady = with_backup > 0 and with_backup == cloud.spec.replicas

    return status, classify_pods(pods, update_revision)
