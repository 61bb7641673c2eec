"""
Kubernetes service layer: abstracts all K8s API interactions for the operator.

Design principles:
  - One surface for every kind: get / list / create / update / delete work on
    plain JSON dicts (camelCase, as the API server speaks), whether the kind
    is served by a typed API or by CustomObjectsApi.
  - get() returns None on 404; every other ApiException propagates.
  - No retries here; the caller requeues.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from solr_operator.config import settings

logger = logging.getLogger("kubernetes_service")

_k8s_loaded = False


def _ensure_k8s():
    """Load Kubernetes config exactly once."""
    global _k8s_loaded
    if _k8s_loaded:
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(config_file=settings.KUBECONFIG or None)
    _k8s_loaded = True


def core_api() -> client.CoreV1Api:
    _ensure_k8s()
    return client.CoreV1Api()


def apps_api() -> client.AppsV1Api:
    _ensure_k8s()
    return client.AppsV1Api()


def networking_api() -> client.NetworkingV1Api:
    _ensure_k8s()
    return client.NetworkingV1Api()


def custom_api() -> client.CustomObjectsApi:
    _ensure_k8s()
    return client.CustomObjectsApi()


@dataclass(frozen=True)
class TypedKind:
    """A kind served by one of the generated typed APIs."""
    api: Callable
    suffix: str


@dataclass(frozen=True)
class CustomKind:
    """A kind served through CustomObjectsApi."""
    group: str
    version: str
    plural: str


KINDS = {
    "Service": TypedKind(core_api, "service"),
    "ConfigMap": TypedKind(core_api, "config_map"),
    "Secret": TypedKind(core_api, "secret"),
    "Pod": TypedKind(core_api, "pod"),
    "PersistentVolumeClaim": TypedKind(core_api, "persistent_volume_claim"),
    "StatefulSet": TypedKind(apps_api, "stateful_set"),
    "Ingress": TypedKind(networking_api, "ingress"),
    "Certificate": CustomKind("cert-manager.io", "v1", "certificates"),
    "Issuer": CustomKind("cert-manager.io", "v1", "issuers"),
    "ZookeeperCluster": CustomKind("zookeeper.pravega.io", "v1beta1", "zookeeperclusters"),
    settings.CRD_KIND: CustomKind(settings.CRD_GROUP, settings.CRD_VERSION, settings.CRD_PLURAL),
}


def _label_selector(labels: Optional[dict]) -> Optional[str]:
    if not labels:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class KubernetesService:
    """Synchronous, dict-in/dict-out access to the orchestration API."""

    def __init__(self):
        self._serializer = client.ApiClient()

    def _to_dict(self, obj) -> dict:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def get(self, kind: str, namespace: str, name: str) -> Optional[dict]:
        """Read one object. Returns None if it does not exist."""
        spec = KINDS[kind]
        try:
            if isinstance(spec, CustomKind):
                return custom_api().get_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name
                )
            read = getattr(spec.api(), f"read_namespaced_{spec.suffix}")
            return self._to_dict(read(name=name, namespace=namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def list(self, kind: str, namespace: str, labels: Optional[dict] = None) -> list[dict]:
        spec = KINDS[kind]
        selector = _label_selector(labels)
        if isinstance(spec, CustomKind):
            result = custom_api().list_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, label_selector=selector or ""
            )
            return list(result.get("items", []))
        list_fn = getattr(spec.api(), f"list_namespaced_{spec.suffix}")
        result = list_fn(namespace=namespace, label_selector=selector)
        return [self._to_dict(item) for item in result.items]

    def create(self, kind: str, body: dict) -> dict:
        spec = KINDS[kind]
        namespace = body["metadata"]["namespace"]
        if isinstance(spec, CustomKind):
            return custom_api().create_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, body
            )
        create = getattr(spec.api(), f"create_namespaced_{spec.suffix}")
        return self._to_dict(create(namespace=namespace, body=body))

    def update(self, kind: str, body: dict) -> dict:
        """Replace an object. The body's resourceVersion makes this a checked write."""
        spec = KINDS[kind]
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        if isinstance(spec, CustomKind):
            return custom_api().replace_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, name, body
            )
        replace = getattr(spec.api(), f"replace_namespaced_{spec.suffix}")
        return self._to_dict(replace(name=name, namespace=namespace, body=body))

    def update_status(self, kind: str, body: dict) -> dict:
        spec = KINDS[kind]
        return custom_api().replace_namespaced_custom_object_status(
            spec.group, spec.version, body["metadata"]["namespace"], spec.plural,
            body["metadata"]["name"], body,
        )

    def delete(self, kind: str, namespace: str, name: str, uid: Optional[str] = None):
        """Delete an object, optionally only if its UID still matches."""
        spec = KINDS[kind]
        options = client.V1DeleteOptions()
        if uid:
            options.preconditions = client.V1Preconditions(uid=uid)
        if isinstance(spec, CustomKind):
            custom_api().delete_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, name, body=options
            )
            return
        delete = getattr(spec.api(), f"delete_namespaced_{spec.suffix}")
        delete(name=name, namespace=namespace, body=options)
