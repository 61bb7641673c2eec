import dataclasses
import json

import pytest
from kazoo.exceptions import BadVersionError, ConnectionLoss

from solr_operator.errors import ConfigurationError, ZookeeperError
from solr_operator.models import SolrCloud, ZookeeperConnectionInfo
from solr_operator.services.zookeeper_service import set_cluster_property
from solr_operator.zookeeper import connection_info_for, ensure_url_scheme_https, resolve_zookeeper


def _props(zk, path="/clusterprops.json"):
    return json.loads(zk.nodes[path][0])


def test_connection_info_is_copied_verbatim(kube, test_settings, make_cloud):
    cloud = SolrCloud.from_body(make_cloud(zookeeperRef={"connectionInfo": {
        "internalConnectionString": "zk-0:2181,zk-1:2181",
        "externalConnectionString": "zk.example.com:2181",
        "chroot": "/solr",
    }}))

    info = resolve_zookeeper(kube, cloud, test_settings)

    assert info.connection_string() == "zk-0:2181,zk-1:2181/solr"
    assert info.externalConnectionString == "zk.example.com:2181"
    assert kube.writes() == []


def test_provided_zookeeper_requires_the_crd(kube, test_settings, make_cloud):
    cloud = SolrCloud.from_body(make_cloud(zookeeperRef={"provided": {}}))
    no_crd = dataclasses.replace(test_settings, USE_ZK_CRD=False)

    with pytest.raises(ConfigurationError):
        resolve_zookeeper(kube, cloud, no_crd)
    assert kube.writes() == []


def test_connection_info_for_managed_cluster():
    zk_cluster = {
        "metadata": {"name": "example-solrcloud-zookeeper", "namespace": "solr"},
        "spec": {"ports": [{"name": "client", "containerPort": 2182}]},
        "status": {"externalClientEndpoint": "203.0.113.7:2181"},
    }

    info = connection_info_for(zk_cluster, 2, "/solr")

    assert info.internalConnectionString == (
        "example-solrcloud-zookeeper-0.example-solrcloud-zookeeper-headless.solr:2182,"
        "example-solrcloud-zookeeper-1.example-solrcloud-zookeeper-headless.solr:2182"
    )
    assert info.externalConnectionString == "203.0.113.7:2181"
    assert info.chroot == "/solr"


def test_host_and_port_check():
    assert ZookeeperConnectionInfo(internalConnectionString="zk:2181").has_host_and_port()
    assert not ZookeeperConnectionInfo(internalConnectionString="zk").has_host_and_port()
    assert not ZookeeperConnectionInfo().has_host_and_port()


def test_cluster_property_creates_chroot_and_znode(zk):
    assert set_cluster_property(zk, "/solr", "urlScheme", "https")

    assert "/solr" in zk.nodes
    assert _props(zk, "/solr/clusterprops.json") == {"urlScheme": "https"}


def test_cluster_property_keeps_other_keys(zk):
    zk.create("/clusterprops.json", json.dumps({"legacyCloud": "false"}).encode())

    assert set_cluster_property(zk, "", "urlScheme", "https")

    assert _props(zk) == {"legacyCloud": "false", "urlScheme": "https"}
    assert zk.nodes["/clusterprops.json"][1] == 1


def test_cluster_property_already_set_is_not_written(zk):
    zk.create("/clusterprops.json", json.dumps({"urlScheme": "https"}).encode())

    assert not set_cluster_property(zk, "", "urlScheme", "https")
    assert zk.nodes["/clusterprops.json"][1] == 0


def test_concurrent_cluster_property_write_is_rejected(zk):
    zk.create("/clusterprops.json", b"{}")
    real_get = zk.get

    def racing_get(path):
        data, stat = real_get(path)
        zk.set(path, json.dumps({"other": "writer"}).encode())
        return data, stat

    zk.get = racing_get
    with pytest.raises(BadVersionError):
        set_cluster_property(zk, "", "urlScheme", "https")


def test_url_scheme_reports_unreachable_ensemble(zk):
    zk.reachable = False
    info = ZookeeperConnectionInfo(internalConnectionString="zk:2181")

    assert ensure_url_scheme_https(info, 1.0, zk) is False
    assert zk.closed


def test_url_scheme_wraps_zookeeper_failures(zk):
    zk.create("/clusterprops.json", b"{}")

    def failing_set(path, value, version=-1):
        raise BadVersionError(path)

    zk.set = failing_set
    info = ZookeeperConnectionInfo(internalConnectionString="zk:2181")

    with pytest.raises(ZookeeperError):
        ensure_url_scheme_https(info, 1.0, zk)
    assert zk.closed


def test_failed_start_still_closes_the_client(zk):
    def failing_start(timeout=None):
        zk.started = True
        raise ConnectionLoss("session lost during handshake")

    zk.start = failing_start
    info = ZookeeperConnectionInfo(internalConnectionString="zk:2181")

    with pytest.raises(ZookeeperError):
        ensure_url_scheme_https(info, 1.0, zk)
    assert not zk.started
    assert zk.closed
