"""
Resource synchronizer: create-or-update one owned object.

Looks the object up by namespace+name; creates it (with an owner reference
back to the SolrCloud) if absent, otherwise copies the significant fields into
a working copy of the live object and writes it back only if something
changed. API errors propagate on first failure; retrying is the caller's job.
"""

import copy
import logging
from enum import Enum
from typing import Optional, Tuple

import kopf

from solr_operator import metrics
from solr_operator.diff import COPY_FIELDS
from solr_operator.services.kubernetes_service import KubernetesService

logger = logging.getLogger("solr-operator.sync")


class SyncResult(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def set_owner(obj: dict, owner: dict) -> dict:
    """Tag obj as controlled by owner so garbage collection removes it with the cloud."""
    kopf.adopt(obj, owner=owner)
    return obj


def sync_resource(
    kube: KubernetesService,
    owner: Optional[dict],
    desired: dict,
    log: logging.Logger = logger,
) -> Tuple[SyncResult, dict]:
    """Bring one object in line with desired. Returns the outcome and the live object."""
    kind = desired["kind"]
    name = desired["metadata"]["name"]
    namespace = desired["metadata"]["namespace"]

    found = kube.get(kind, namespace, name)
    if found is None:
        if owner is not None:
            set_owner(desired, owner)
        log.info(f"Creating {kind} {name}")
        created = kube.create(kind, desired)
        metrics.record_write(kind, SyncResult.CREATED.value)
        return SyncResult.CREATED, created

    working = copy.deepcopy(found)
    if COPY_FIELDS[kind](desired, working, log):
        log.info(f"Updating {kind} {name}")
        updated = kube.update(kind, working)
        metrics.record_write(kind, SyncResult.UPDATED.value)
        return SyncResult.UPDATED, updated

    return SyncResult.UNCHANGED, found
