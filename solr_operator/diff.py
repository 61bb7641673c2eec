"""
Per-kind field copying for the resource synchronizer.

Each copy function takes the freshly generated ("desired") object and a
working copy of the live object, writes desired's significant fields into
the live copy and returns True if anything changed. Only the fields the
operator owns are compared; the API server is free to default the rest, so
a desired value matches when it is contained in the live one.
"""

import logging
from typing import Callable, Dict, Sequence

from solr_operator.resources import BACKEND_PROTOCOL_ANNOTATION

logger = logging.getLogger("solr-operator.diff")

CopyFields = Callable[[dict, dict, logging.Logger], bool]


def is_contained(desired, live) -> bool:
    """True if every value set in desired is present and equal in live."""
    if live is None and desired in ({}, []):
        return True
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_contained(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_contained(d, l) for d, l in zip(desired, live))
    return desired == live


def _get_path(obj: dict, path: Sequence[str]):
    for key in path:
        if not isinstance(obj, dict) or key not in obj:
            return None
        obj = obj[key]
    return obj


def _set_path(obj: dict, path: Sequence[str], value):
    for key in path[:-1]:
        obj = obj.setdefault(key, {})
    obj[path[-1]] = value


def copy_field(desired: dict, live: dict, path: Sequence[str], log: logging.Logger) -> bool:
    """Copy one field from desired into live when live does not already contain it."""
    want = _get_path(desired, path)
    have = _get_path(live, path)
    if want is None or is_contained(want, have):
        return False
    log.info(f"Field {'.'.join(path)} changed on {live['kind']} {live['metadata']['name']}")
    _set_path(live, path, want)
    return True


def copy_labels_and_annotations(desired: dict, live: dict, log: logging.Logger) -> bool:
    """Add or overwrite labels/annotations, never remove ones set by others."""
    changed = False
    for field in ("labels", "annotations"):
        want = desired["metadata"].get(field) or {}
        have = live["metadata"].get(field) or {}
        for key, value in want.items():
            if have.get(key) != value:
                log.info(f"Update {field[:-1]} {key} on {live['kind']} {live['metadata']['name']}")
                have[key] = value
                changed = True
        if have:
            live["metadata"][field] = have
    return changed


def _copy_paths(*paths: Sequence[str], metadata: bool = True) -> CopyFields:
    def copy(desired: dict, live: dict, log: logging.Logger = logger) -> bool:
        changed = copy_labels_and_annotations(desired, live, log) if metadata else False
        for path in paths:
            changed = copy_field(desired, live, path, log) or changed
        return changed
    return copy


copy_service_fields = _copy_paths(
    ("spec", "ports"),
    ("spec", "selector"),
    ("spec", "publishNotReadyAddresses"),
)

copy_configmap_fields = _copy_paths(("data",))

copy_statefulset_fields = _copy_paths(
    ("spec", "replicas"),
    ("spec", "updateStrategy"),
    ("spec", "podManagementPolicy"),
    ("spec", "template", "metadata", "labels"),
    ("spec", "template", "metadata", "annotations"),
    ("spec", "template", "spec"),
)

_copy_ingress_paths = _copy_paths(("spec", "rules"))


def copy_ingress_fields(desired: dict, live: dict, log: logging.Logger = logger) -> bool:
    changed = _copy_ingress_paths(desired, live, log)
    # The backend protocol follows TLS, so it is dropped again when TLS is turned off.
    want = desired["metadata"].get("annotations") or {}
    have = live["metadata"].get("annotations") or {}
    if BACKEND_PROTOCOL_ANNOTATION in have and BACKEND_PROTOCOL_ANNOTATION not in want:
        log.info(f"Remove annotation {BACKEND_PROTOCOL_ANNOTATION} from Ingress {live['metadata']['name']}")
        del have[BACKEND_PROTOCOL_ANNOTATION]
        changed = True
    return changed


copy_zookeeper_cluster_fields = _copy_paths(
    ("spec", "replicas"),
    ("spec", "image"),
    ("spec", "persistence"),
)

# Only the fields cert-manager reads when issuing; a change here needs re-issuance.
copy_create_certificate_fields = _copy_paths(
    ("spec", "secretName"),
    ("spec", "dnsNames"),
    ("spec", "subject"),
    ("spec", "issuerRef"),
    ("spec", "keystores"),
    metadata=False,
)

COPY_FIELDS: Dict[str, CopyFields] = {
    "Service": copy_service_fields,
    "ConfigMap": copy_configmap_fields,
    "StatefulSet": copy_statefulset_fields,
    "Ingress": copy_ingress_fields,
    "ZookeeperCluster": copy_zookeeper_cluster_fields,
    "Certificate": copy_create_certificate_fields,
}
