"""
ZooKeeper access for cluster-property writes.

A connection is opened per use and always closed before returning; nothing
is pooled across passes.
"""

import json
import logging
from contextlib import contextmanager
from typing import Callable

from kazoo.client import KazooClient
from kazoo.exceptions import NoNodeError, NodeExistsError
from kazoo.handlers.threading import KazooTimeoutError
from kazoo.security import OPEN_ACL_UNSAFE

from solr_operator.errors import ZookeeperError

logger = logging.getLogger("solr-operator.zookeeper")

CLUSTER_PROPS_PATH = "/clusterprops.json"

ClientFactory = Callable[..., KazooClient]


class ZookeeperUnreachable(ZookeeperError):
    """The ensemble could not be reached yet (not provisioned, DNS not ready)."""


@contextmanager
def zk_session(hosts: str, timeout: float, client_factory: ClientFactory = KazooClient):
    """Connect to the ensemble and make sure the session is torn down afterwards, however start ends."""
    zk = client_factory(hosts=hosts, timeout=timeout)
    try:
        try:
            zk.start(timeout=timeout)
        except KazooTimeoutError as e:
            raise ZookeeperUnreachable(f"ZooKeeper at {hosts} not reachable: {e}") from e
        yield zk
    finally:
        zk.stop()
        zk.close()


def set_cluster_property(zk: KazooClient, chroot: str, key: str, value) -> bool:
    """
    Set one key in <chroot>/clusterprops.json.

    Existing properties are preserved. The write is checked against the znode
    version that was read, so a concurrent writer causes BadVersionError
    instead of a lost update. Returns True if a write happened.
    """
    path = f"{chroot}{CLUSTER_PROPS_PATH}" if chroot else CLUSTER_PROPS_PATH
    try:
        data, stat = zk.get(path)
    except NoNodeError:
        if chroot and not zk.exists(chroot):
            try:
                zk.create(chroot, b"", acl=OPEN_ACL_UNSAFE, makepath=True)
                logger.info(f"Created chroot {chroot}")
            except NodeExistsError:
                pass
        props = {key: value}
        zk.create(path, json.dumps(props).encode("utf-8"), acl=OPEN_ACL_UNSAFE)
        logger.info(f"Created {path} with {key}={value}")
        return True

    try:
        props = json.loads(data.decode("utf-8")) if data else {}
    except ValueError as e:
        logger.error(f"Failed to parse {path}, replacing it: {e}")
        props = {}
    if not isinstance(props, dict):
        props = {}

    if props.get(key) == value:
        logger.info(f"{key} is already {value} in {path}")
        return False

    props[key] = value
    zk.set(path, json.dumps(props).encode("utf-8"), version=stat.version)
    logger.info(f"Updated {key}={value} in {path}")
    return True
