"""
Resolve the ZooKeeper ensemble a SolrCloud talks to.

Either the user hands us a connection string (copied verbatim), or we
provision a ZookeeperCluster and derive the connection string from its name,
namespace and client port.
"""

import logging
from typing import Optional

from kazoo.exceptions import KazooException

from solr_operator.config import Settings
from solr_operator.errors import ConfigurationError, ZookeeperError
from solr_operator.models import SolrCloud, ZK_CLIENT_PORT, ZookeeperConnectionInfo
from solr_operator.resources import generate_zookeeper_cluster
from solr_operator.services.kubernetes_service import KubernetesService
from solr_operator.services.zookeeper_service import (
    ClientFactory,
    ZookeeperUnreachable,
    set_cluster_property,
    zk_session,
)
from solr_operator.sync import SyncResult, sync_resource

logger = logging.getLogger("solr-operator.zookeeper")


def _client_port(zk_cluster: dict) -> int:
    for port in zk_cluster.get("spec", {}).get("ports") or []:
        if port.get("name") == "client":
            return port["containerPort"]
    return ZK_CLIENT_PORT


def connection_info_for(zk_cluster: dict, replicas: int, chroot: str) -> ZookeeperConnectionInfo:
    """Build the connection descriptor for a provisioned ZookeeperCluster."""
    name = zk_cluster["metadata"]["name"]
    namespace = zk_cluster["metadata"]["namespace"]
    port = _client_port(zk_cluster)
    hosts = [f"{name}-{i}.{name}-headless.{namespace}:{port}" for i in range(replicas)]
    external = (zk_cluster.get("status") or {}).get("externalClientEndpoint") or None
    return ZookeeperConnectionInfo(
        internalConnectionString=",".join(hosts),
        externalConnectionString=external,
        chroot=chroot,
    )


def resolve_zookeeper(
    kube: KubernetesService,
    cloud: SolrCloud,
    settings: Settings,
    log: logging.Logger = logger,
) -> Optional[ZookeeperConnectionInfo]:
    """
    Work out the ZooKeeper connection for this pass.

    Returns None while a managed ensemble has only just been requested and has
    no connection string yet. Raises ConfigurationError when the spec names no
    ensemble, or asks for a managed one while that is disabled.
    """
    zk_ref = cloud.spec.zookeeperRef
    if zk_ref.connectionInfo is not None:
        return zk_ref.connectionInfo.model_copy(deep=True)

    provided = zk_ref.provided
    if provided is None:
        raise ConfigurationError("No Zookeeper reference information provided.")
    if not settings.USE_ZK_CRD:
        raise ConfigurationError(
            "Cannot create a Zookeeper Cluster, as the Solr Operator is not configured "
            "to use the Zookeeper CRD"
        )

    desired = generate_zookeeper_cluster(cloud)
    result, live = sync_resource(kube, cloud.owner_body(), desired, log)
    if result == SyncResult.CREATED:
        log.info(f"ZookeeperCluster {desired['metadata']['name']} requested, waiting for it")
        return None
    return connection_info_for(live, provided.replicas, provided.chroot)


def ensure_url_scheme_https(
    info: ZookeeperConnectionInfo,
    timeout: float,
    client_factory: Optional[ClientFactory] = None,
    log: logging.Logger = logger,
) -> bool:
    """
    Make sure the cluster property urlScheme=https is set in ZooKeeper.

    Returns False if the ensemble cannot be reached yet, so the caller can
    requeue. Any other ZooKeeper failure raises ZookeeperError.
    """
    hosts = info.internalConnectionString
    log.info(f"Connecting to ZooKeeper at {hosts}")
    kwargs = {"client_factory": client_factory} if client_factory is not None else {}
    try:
        with zk_session(hosts, timeout, **kwargs) as zk:
            set_cluster_property(zk, info.chroot, "urlScheme", "https")
    except ZookeeperUnreachable as e:
        log.info(f"ZooKeeper has not provisioned yet, will try again after a brief wait: {e}")
        return False
    except KazooException as e:
        raise ZookeeperError(f"Failed to set urlScheme in ZooKeeper at {hosts}: {e}") from e
    return True
