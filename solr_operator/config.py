"""
Configuration module: all settings from env vars with sensible defaults.
Follows 12-factor app methodology.

A Settings instance is handed to the reconciler at construction time, so
tests can build their own with dataclasses.replace().
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    # Kubernetes
    KUBECONFIG: str = os.environ.get("KUBECONFIG", "")

    # CRD
    CRD_GROUP: str = "solr.apache.org"
    CRD_VERSION: str = "v1beta1"
    CRD_PLURAL: str = "solrclouds"
    CRD_KIND: str = "SolrCloud"

    # Feature flags
    USE_ZK_CRD: bool = os.environ.get("USE_ZK_CRD", "true").lower() == "true"
    INGRESS_BASE_DOMAIN: str = os.environ.get("INGRESS_BASE_DOMAIN", "")

    # ZooKeeper
    ZK_CONNECT_TIMEOUT: float = float(os.environ.get("ZK_CONNECT_TIMEOUT", "5"))

    # Requeue delays (seconds)
    SELF_SIGNED_CERT_WAIT: int = 2
    ISSUER_CERT_WAIT: int = 30
    ZK_NOT_READY_WAIT: int = 5
    STORAGE_RETRY_WAIT: int = 10
    MANAGED_UPDATE_WAIT: int = 15

    # Operator runtime
    MAX_WORKERS: int = int(os.environ.get("MAX_WORKERS", "10"))
    RECONCILE_INTERVAL: int = int(os.environ.get("RECONCILE_INTERVAL", "60"))
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    # Observability
    REDIS_URL: str = os.environ.get("REDIS_URL", "")
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "0"))


settings = Settings()
