import logging

import kopf
import pytest

from solr_operator import operator
from solr_operator.errors import ConfigurationError
from solr_operator.reconciler import ReconcileResult

log = logging.getLogger("solr-operator.test")


class StubReconciler:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = []

    def reconcile(self, namespace, name, log):
        self.calls.append((namespace, name))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


@pytest.fixture
def stub(monkeypatch):
    def _install(outcome):
        reconciler = StubReconciler(outcome)
        monkeypatch.setattr(operator, "_reconciler", reconciler)
        return reconciler
    return _install


def test_settled_pass_returns_result(stub):
    reconciler = stub(ReconcileResult(status_written=True))

    result = operator.run_pass("solr", "example", log)

    assert result.status_written
    assert reconciler.calls == [("solr", "example")]


def test_requeue_becomes_temporary_error(stub):
    stub(ReconcileResult(requeue_after=15))

    with pytest.raises(kopf.TemporaryError) as exc_info:
        operator.run_pass("solr", "example", log)
    assert exc_info.value.delay == 15


def test_configuration_error_is_permanent(stub):
    stub(ConfigurationError("No Zookeeper reference information provided."))

    with pytest.raises(kopf.PermanentError):
        operator.run_pass("solr", "example", log)


def test_other_errors_propagate(stub):
    stub(RuntimeError("boom"))

    with pytest.raises(RuntimeError):
        operator.run_pass("solr", "example", log)


def test_child_events_leave_requeues_to_the_timer(stub):
    reconciler = stub(ReconcileResult(requeue_after=5))

    operator.statefulset_changed(labels={"solr-cloud": "example"}, namespace="solr", logger=log)

    assert reconciler.calls == [("solr", "example")]


def test_passes_for_one_cloud_share_a_lock():
    assert operator._lock_for("solr", "example") is operator._lock_for("solr", "example")
    assert operator._lock_for("solr", "example") is not operator._lock_for("solr", "other")


def test_deleted_cloud_releases_its_lock(stub):
    reconciler = stub(ReconcileResult())
    operator._lock_for("solr", "example")

    operator.release_solrcloud(name="example", namespace="solr", logger=log)

    assert reconciler.calls == [("solr", "example")]
    assert "solr/example" not in operator.reconciliation_locks


def test_requeued_deletion_keeps_its_lock(stub):
    stub(ReconcileResult(requeue_after=5))
    lock = operator._lock_for("solr", "example")

    with pytest.raises(kopf.TemporaryError):
        operator.release_solrcloud(name="example", namespace="solr", logger=log)

    assert operator._lock_for("solr", "example") is lock


def test_provided_configmap_index():
    spec = {"customSolrKubeOptions": {"configMapOptions": {"providedConfigMap": "custom-xml"}}}

    assert operator.provided_configmaps(name="example", namespace="solr", spec=spec) == {
        ("solr", "custom-xml"): "example",
    }
    assert operator.provided_configmaps(name="example", namespace="solr", spec={}) is None


def test_configmap_change_reconciles_indexed_clouds(stub):
    reconciler = stub(ReconcileResult())

    operator.configmap_changed(
        name="custom-xml", namespace="solr", logger=log,
        provided_configmaps={("solr", "custom-xml"): ["example", "other"]},
    )

    assert reconciler.calls == [("solr", "example"), ("solr", "other")]
