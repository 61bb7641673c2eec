"""
TLS certificate coordination via cert-manager.

A certificate counts as issued once the Secret it names exists. Status
conditions on the Certificate can flip before the Secret is written, so they
are only ever logged, never trusted.
"""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from solr_operator.config import Settings
from solr_operator.diff import copy_create_certificate_fields
from solr_operator.errors import SolrOperatorError
from solr_operator.models import SolrCloud
from solr_operator.resources import (
    generate_certificate,
    generate_keystore_secret,
    generate_selfsigned_issuer,
)
from solr_operator.services.kubernetes_service import KubernetesService
from solr_operator.sync import set_owner

logger = logging.getLogger("solr-operator.tls")


class TLSState(str, Enum):
    CERT_REQUESTED = "CertRequested"
    SECRET_PENDING = "SecretPending"
    SPEC_CHANGED = "SpecChanged"
    READY = "Ready"


@dataclass
class TLSResult:
    state: TLSState
    needs_pkcs12_init: bool = False
    secret_version: str = ""
    requeue_after: int = 0

    @property
    def ready(self) -> bool:
        return self.state == TLSState.READY


class TLSCoordinator:
    """Drives one SolrCloud's certificate to issuance and reports what the StatefulSet needs."""

    def __init__(self, kube: KubernetesService, cloud: SolrCloud, settings: Settings,
                 log: logging.Logger = logger):
        self.kube = kube
        self.cloud = cloud
        self.settings = settings
        self.log = log

    @property
    def namespace(self) -> str:
        return self.cloud.namespace

    def reconcile(self) -> TLSResult:
        tls = self.cloud.spec.solrTLS
        if tls.autoCreate is not None:
            state = self.reconcile_auto_create()
            if state != TLSState.READY:
                if tls.autoCreate.issuerRef is None:
                    wait = self.settings.SELF_SIGNED_CERT_WAIT
                else:
                    wait = self.settings.ISSUER_CERT_WAIT
                self.log.info(f"Certificate is not ready ({state.value}), will requeue after {wait}s")
                return TLSResult(state=state, requeue_after=wait)

        secret = self.kube.get("Secret", self.namespace, tls.pkcs12Secret.name)
        if secret is None:
            raise SolrOperatorError(f"TLS secret {tls.pkcs12Secret.name} not found")

        version = ""
        if tls.restartOnTLSSecretUpdate:
            version = secret["metadata"].get("resourceVersion", "")
        needs_init = tls.pkcs12Secret.key not in (secret.get("data") or {})
        return TLSResult(state=TLSState.READY, needs_pkcs12_init=needs_init, secret_version=version)

    def reconcile_auto_create(self) -> TLSState:
        auto = self.cloud.spec.solrTLS.autoCreate

        # Steady state: the cert exists and was issued, skip the bootstrap lookups.
        found_cert = self.kube.get("Certificate", self.namespace, auto.name)
        if found_cert is not None:
            issued = self.issued_secret(found_cert)
            if issued is not None:
                return self.after_certificate_ready(found_cert, issued)

        self.log.info(f"Reconciling TLS config for {self.cloud.name}")
        self.ensure_keystore_secret()
        if auto.issuerRef is None:
            self.ensure_selfsigned_issuer()

        cert = generate_certificate(self.cloud)
        if found_cert is None:
            set_owner(cert, self.cloud.owner_body())
            self.log.info(f"Creating Certificate {auto.name}")
            self.kube.create("Certificate", cert)
            return TLSState.CERT_REQUESTED

        self.log.info(f"Certificate {auto.name} not issued yet, status: {found_cert.get('status')}")
        return TLSState.SECRET_PENDING

    def ensure_keystore_secret(self):
        desired = generate_keystore_secret(self.cloud)
        name = desired["metadata"]["name"]
        if self.kube.get("Secret", self.namespace, name) is None:
            set_owner(desired, self.cloud.owner_body())
            self.log.info(f"Creating keystore secret {name}")
            self.kube.create("Secret", desired)

    def ensure_selfsigned_issuer(self):
        name = self.cloud.selfsigned_issuer_name()
        if self.kube.get("Issuer", self.namespace, name) is not None:
            self.log.debug(f"Found self-signed Issuer {name}")
            return
        issuer = set_owner(generate_selfsigned_issuer(self.cloud, name), self.cloud.owner_body())
        self.log.info(f"Creating self-signed Issuer {name}")
        self.kube.create("Issuer", issuer)

    def issued_secret(self, cert: dict) -> Optional[dict]:
        """The Secret backing cert, or None if cert-manager has not written it yet."""
        secret_name = cert["spec"]["secretName"]
        secret = self.kube.get("Secret", self.namespace, secret_name)
        if secret is None:
            self.log.info(f"TLS secret {secret_name} not found")
            for cond in (cert.get("status") or {}).get("conditions") or []:
                if cond.get("type") == "Issuing":
                    self.log.info(f"Certificate {cert['metadata']['name']} is still issuing: {cond.get('status')}")
                    break
        return secret

    def after_certificate_ready(self, found_cert: dict, secret: dict) -> TLSState:
        """Apply drift in the cert's create-time fields, or adopt the issued secret."""
        desired = generate_certificate(self.cloud)
        working = copy.deepcopy(found_cert)
        if copy_create_certificate_fields(desired, working, self.log):
            # cert-manager only re-issues when the secret is gone, so it goes first.
            self.log.info(f"Certificate {working['metadata']['name']} fields changed, re-issuing")
            self.kube.delete("Secret", self.namespace, secret["metadata"]["name"])
            self.log.info(f"Deleted TLS secret {secret['metadata']['name']} so it gets re-created")
            self.kube.update("Certificate", working)
            return TLSState.SPEC_CHANGED

        if not secret["metadata"].get("ownerReferences"):
            # The secret was written by cert-manager; adopt it for garbage collection.
            set_owner(secret, self.cloud.owner_body())
            self.kube.update("Secret", secret)
        return TLSState.READY
