import copy
import dataclasses
from types import SimpleNamespace

import pytest
from kazoo.exceptions import BadVersionError, NodeExistsError, NoNodeError
from kazoo.handlers.threading import KazooTimeoutError
from kubernetes.client import ApiException

from solr_operator.config import settings
from solr_operator.reconciler import SolrCloudReconciler
from solr_operator.rolling_update import REVISION_LABEL


class FakeKube:
    """In-memory stand-in for KubernetesService that records every write."""

    def __init__(self):
        self.objects = {}
        self.calls = []
        self._version = 0
        self._next_ip = 10

    def _stamp(self, obj):
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)
        obj["metadata"].setdefault("uid", f"uid-{obj['metadata']['name']}")

    def add(self, kind, obj):
        """Seed an object without recording a call."""
        obj = copy.deepcopy(obj)
        obj.setdefault("kind", kind)
        self._stamp(obj)
        self.objects[(kind, obj["metadata"]["namespace"], obj["metadata"]["name"])] = obj
        return copy.deepcopy(obj)

    def get(self, kind, namespace, name):
        found = self.objects.get((kind, namespace, name))
        return copy.deepcopy(found) if found is not None else None

    def list(self, kind, namespace, labels=None):
        items = []
        for (k, ns, _), obj in sorted(self.objects.items()):
            if k != kind or ns != namespace:
                continue
            obj_labels = obj["metadata"].get("labels") or {}
            if all(obj_labels.get(key) == value for key, value in (labels or {}).items()):
                items.append(copy.deepcopy(obj))
        return items

    def create(self, kind, body):
        key = (kind, body["metadata"]["namespace"], body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.calls.append(("create", kind, key[2]))
        obj = copy.deepcopy(body)
        if kind == "Service" and "clusterIP" not in obj["spec"]:
            obj["spec"]["clusterIP"] = f"10.0.0.{self._next_ip}"
            self._next_ip += 1
        self._stamp(obj)
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def update(self, kind, body):
        key = (kind, body["metadata"]["namespace"], body["metadata"]["name"])
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        self.calls.append(("update", kind, key[2]))
        obj = copy.deepcopy(body)
        if kind == settings.CRD_KIND:
            # Status is a subresource, a plain update leaves it alone.
            obj.pop("status", None)
            if "status" in self.objects[key]:
                obj["status"] = copy.deepcopy(self.objects[key]["status"])
        self._stamp(obj)
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def update_status(self, kind, body):
        key = (kind, body["metadata"]["namespace"], body["metadata"]["name"])
        self.calls.append(("update_status", kind, key[2]))
        self.objects[key]["status"] = copy.deepcopy(body["status"])
        self._stamp(self.objects[key])
        return copy.deepcopy(self.objects[key])

    def delete(self, kind, namespace, name, uid=None):
        key = (kind, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        if uid and self.objects[key]["metadata"].get("uid") != uid:
            raise ApiException(status=409, reason="Conflict")
        self.calls.append(("delete", kind, name))
        del self.objects[key]

    def writes(self, *actions):
        actions = actions or ("create", "update", "update_status", "delete")
        return [c for c in self.calls if c[0] in actions]


class FakeZookeeper:
    """Just enough of KazooClient for cluster property writes. Also acts as its own factory."""

    def __init__(self):
        self.nodes = {}
        self.reachable = True
        self.hosts = None
        self.started = False
        self.closed = False

    def __call__(self, hosts, timeout):
        self.hosts = hosts
        return self

    def start(self, timeout=None):
        if not self.reachable:
            raise KazooTimeoutError("Connection time-out")
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def exists(self, path):
        return SimpleNamespace(version=self.nodes[path][1]) if path in self.nodes else None

    def get(self, path):
        if path not in self.nodes:
            raise NoNodeError(path)
        data, version = self.nodes[path]
        return data, SimpleNamespace(version=version)

    def create(self, path, value=b"", acl=None, makepath=False):
        if path in self.nodes:
            raise NodeExistsError(path)
        self.nodes[path] = (value, 0)

    def set(self, path, value, version=-1):
        if path not in self.nodes:
            raise NoNodeError(path)
        current = self.nodes[path][1]
        if version != -1 and version != current:
            raise BadVersionError(path)
        self.nodes[path] = (value, current + 1)


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def zk():
    return FakeZookeeper()


@pytest.fixture
def test_settings():
    return dataclasses.replace(settings, USE_ZK_CRD=True, INGRESS_BASE_DOMAIN="example.com")


@pytest.fixture
def reconciler(kube, zk, test_settings):
    return SolrCloudReconciler(kube, test_settings, zk_client_factory=zk)


@pytest.fixture
def make_cloud():
    def _make(name="example", namespace="solr", replicas=3, **spec):
        body = {
            "apiVersion": "solr.apache.org/v1beta1",
            "kind": "SolrCloud",
            "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
            "spec": {
                "replicas": replicas,
                "zookeeperRef": {"connectionInfo": {"internalConnectionString": "zk:2181"}},
            },
        }
        body["spec"].update(spec)
        return body
    return _make


@pytest.fixture
def make_pod():
    def _make(name, revision="rev-2", ready=True, started=None, image="library/solr:8.7",
              volumes=None, cloud="example", namespace="solr"):
        started = ready if started is None else started
        return {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "uid": f"uid-{name}",
                "labels": {"solr-cloud": cloud, "technology": "solr-cloud", REVISION_LABEL: revision},
            },
            "spec": {
                "nodeName": "node-a",
                "containers": [{"name": "solrcloud-node", "image": image}],
                "volumes": volumes or [],
            },
            "status": {
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
                "containerStatuses": [{"name": "solrcloud-node", "started": started}],
            },
        }
    return _make
