import logging

from solr_operator.diff import copy_labels_and_annotations, copy_statefulset_fields, is_contained
from solr_operator.models import SolrCloud
from solr_operator.resources import BACKEND_PROTOCOL_ANNOTATION, generate_common_service, generate_ingress
from solr_operator.sync import SyncResult, sync_resource


def _cloud(make_cloud, **spec):
    return SolrCloud.from_body(make_cloud(**spec))


def test_is_contained_ignores_server_defaults():
    desired = {"ports": [{"port": 80, "targetPort": 8983}]}
    live = {"ports": [{"port": 80, "targetPort": 8983, "nodePort": 30080}], "clusterIP": "10.0.0.1"}
    assert is_contained(desired, live)


def test_is_contained_detects_changed_and_missing_values():
    assert not is_contained({"replicas": 3}, {"replicas": 2})
    assert not is_contained({"ports": [{"port": 80}]}, {"ports": [{"port": 80}, {"port": 81}]})
    assert not is_contained({"a": {"b": 1}}, {"a": {}})
    assert is_contained({}, None)


def test_creates_missing_object_with_owner_reference(kube, make_cloud):
    cloud = _cloud(make_cloud)
    result, live = sync_resource(kube, cloud.owner_body(), generate_common_service(cloud))

    assert result == SyncResult.CREATED
    assert kube.writes() == [("create", "Service", "example-solrcloud-common")]
    [ref] = live["metadata"]["ownerReferences"]
    assert ref["kind"] == "SolrCloud"
    assert ref["uid"] == "uid-example"
    assert ref["controller"] is True


def test_unchanged_object_is_not_written(kube, make_cloud):
    cloud = _cloud(make_cloud)
    sync_resource(kube, cloud.owner_body(), generate_common_service(cloud))
    kube.calls.clear()

    result, _ = sync_resource(kube, cloud.owner_body(), generate_common_service(cloud))

    assert result == SyncResult.UNCHANGED
    assert kube.writes() == []


def test_changed_field_is_updated_and_foreign_labels_survive(kube, make_cloud):
    cloud = _cloud(make_cloud)
    _, live = sync_resource(kube, cloud.owner_body(), generate_common_service(cloud))
    live["metadata"]["labels"]["team"] = "search"
    kube.objects[("Service", "solr", live["metadata"]["name"])] = live

    changed = _cloud(make_cloud, solrAddressability={"commonServicePort": 8080})
    result, updated = sync_resource(kube, changed.owner_body(), generate_common_service(changed))

    assert result == SyncResult.UPDATED
    assert updated["spec"]["ports"][0]["port"] == 8080
    assert updated["metadata"]["labels"]["team"] == "search"
    assert updated["spec"]["clusterIP"] == live["spec"]["clusterIP"]


def test_labels_and_annotations_are_only_added():
    desired = {"metadata": {"labels": {"solr-cloud": "example"}, "annotations": {"a": "1"}}}
    live = {"kind": "Service", "metadata": {"name": "svc", "labels": {"other": "x"}}}
    assert copy_labels_and_annotations(desired, live, logging.getLogger())
    assert live["metadata"]["labels"] == {"other": "x", "solr-cloud": "example"}
    assert live["metadata"]["annotations"] == {"a": "1"}


def test_statefulset_template_change_is_copied():
    desired = {"kind": "StatefulSet", "metadata": {"name": "s"},
               "spec": {"replicas": 3, "template": {"metadata": {"annotations": {"md5": "new"}}}}}
    live = {"kind": "StatefulSet", "metadata": {"name": "s"},
            "spec": {"replicas": 3, "template": {"metadata": {"annotations": {"md5": "old"}}}}}
    assert copy_statefulset_fields(desired, live)
    assert live["spec"]["template"]["metadata"]["annotations"] == {"md5": "new"}


def test_backend_protocol_is_dropped_when_tls_is_turned_off(kube, make_cloud):
    ingress = {"solrAddressability": {"external": {"method": "Ingress"}}}
    with_tls = SolrCloud.from_body(make_cloud(solrTLS={"autoCreate": {}}, **ingress), "example.com")
    _, live = sync_resource(kube, with_tls.owner_body(), generate_ingress(with_tls))
    assert live["metadata"]["annotations"][BACKEND_PROTOCOL_ANNOTATION] == "HTTPS"
    live["metadata"]["annotations"]["team"] = "search"
    kube.objects[("Ingress", "solr", live["metadata"]["name"])] = live

    without_tls = SolrCloud.from_body(make_cloud(**ingress), "example.com")
    result, updated = sync_resource(kube, without_tls.owner_body(), generate_ingress(without_tls))

    assert result == SyncResult.UPDATED
    assert updated["metadata"]["annotations"] == {"team": "search"}
