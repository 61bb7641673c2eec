"""
Pydantic models for the SolrCloud custom resource.

Field names follow the CRD's camelCase JSON so a custom object body can be
validated straight into a model and a status can be dumped straight back.
Field defaults double as the defaulting routine for user input.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Union
from enum import Enum

from solr_operator.errors import ConfigurationError


SOLR_TECHNOLOGY_LABEL = "solr-cloud"
SOLR_NODE_CONTAINER = "solrcloud-node"
BACKUP_RESTORE_VOLUME = "backup-restore"
STORAGE_FINALIZER = "storage.finalizers.solr.apache.org"
DEFAULT_SOLR_PORT = 8983
ZK_CLIENT_PORT = 2181


class ExternalMethod(str, Enum):
    INGRESS = "Ingress"
    EXTERNAL_DNS = "ExternalDNS"


class ReclaimPolicy(str, Enum):
    RETAIN = "Retain"
    DELETE = "Delete"


class UpdateMethod(str, Enum):
    MANAGED = "Managed"
    STATEFULSET = "StatefulSet"
    MANUAL = "Manual"


# ---------------------------------------------------------------------------
# Spec
# ---------------------------------------------------------------------------

class ContainerImage(BaseModel):
    repository: str = "library/solr"
    tag: str = "8.7"
    pullPolicy: Optional[str] = None

    def to_image_name(self) -> str:
        return f"{self.repository}:{self.tag}"


class ExternalAddressability(BaseModel):
    method: ExternalMethod = ExternalMethod.INGRESS
    domainName: str = ""
    useExternalAddress: bool = False
    hideNodes: bool = False
    hideCommon: bool = False
    nodePortOverride: Optional[int] = None


class SolrAddressability(BaseModel):
    podPort: int = DEFAULT_SOLR_PORT
    commonServicePort: int = 80
    external: Optional[ExternalAddressability] = None


class SecretKeySelector(BaseModel):
    name: str
    key: str


class IssuerRef(BaseModel):
    name: str
    kind: str = "ClusterIssuer"
    group: str = "cert-manager.io"


class AutoCreateTLS(BaseModel):
    name: str = ""
    subjectDistinguishedName: str = ""
    dnsNames: List[str] = []
    issuerRef: Optional[IssuerRef] = None


class SolrTLSOptions(BaseModel):
    pkcs12Secret: Optional[SecretKeySelector] = None
    keyStorePasswordSecret: Optional[SecretKeySelector] = None
    restartOnTLSSecretUpdate: bool = False
    clientAuth: str = "None"
    autoCreate: Optional[AutoCreateTLS] = None


class PersistentStorage(BaseModel):
    reclaimPolicy: ReclaimPolicy = ReclaimPolicy.RETAIN
    size: str = "5Gi"
    storageClassName: Optional[str] = None


class BackupRestoreOptions(BaseModel):
    volume: Dict[str, Any]
    directory: str = ""


class StorageOptions(BaseModel):
    persistentStorage: Optional[PersistentStorage] = None
    ephemeralStorage: Optional[Dict[str, Any]] = None
    backupRestoreOptions: Optional[BackupRestoreOptions] = None


class ManagedUpdateOptions(BaseModel):
    maxPodsUnavailable: Union[int, str] = "25%"


class UpdateStrategy(BaseModel):
    method: UpdateMethod = UpdateMethod.MANAGED
    managedUpdate: ManagedUpdateOptions = ManagedUpdateOptions()


class ZookeeperConnectionInfo(BaseModel):
    internalConnectionString: str = ""
    externalConnectionString: Optional[str] = None
    chroot: str = ""

    def connection_string(self) -> str:
        return self.internalConnectionString + self.chroot

    def has_host_and_port(self) -> bool:
        return ":" in self.connection_string()


class ProvidedZookeeper(BaseModel):
    replicas: int = 3
    image: ContainerImage = ContainerImage(repository="pravega/zookeeper", tag="0.2.9")
    chroot: str = ""
    persistence: Optional[Dict[str, Any]] = None


class ZookeeperRef(BaseModel):
    connectionInfo: Optional[ZookeeperConnectionInfo] = None
    provided: Optional[ProvidedZookeeper] = None


class ConfigMapOptions(BaseModel):
    providedConfigMap: str = ""


class CustomSolrKubeOptions(BaseModel):
    configMapOptions: Optional[ConfigMapOptions] = None


class SolrCloudSpec(BaseModel):
    replicas: int = 3
    solrImage: ContainerImage = ContainerImage()
    solrAddressability: SolrAddressability = SolrAddressability()
    solrTLS: Optional[SolrTLSOptions] = None
    storageOptions: StorageOptions = StorageOptions()
    updateStrategy: UpdateStrategy = UpdateStrategy()
    zookeeperRef: ZookeeperRef = ZookeeperRef()
    customSolrKubeOptions: CustomSolrKubeOptions = CustomSolrKubeOptions()
    solrJavaMem: str = ""
    solrOpts: str = ""
    solrLogLevel: str = "INFO"


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class SolrNodeStatus(BaseModel):
    name: str
    nodeName: str = ""
    internalAddress: str = ""
    externalAddress: Optional[str] = None
    ready: bool = False
    version: str = ""
    specUpToDate: bool = False


class SolrCloudStatus(BaseModel):
    solrNodes: List[SolrNodeStatus] = []
    replicas: int = 0
    readyReplicas: int = 0
    upToDateNodes: int = 0
    version: str = ""
    targetVersion: str = ""
    internalCommonAddress: str = ""
    externalCommonAddress: Optional[str] = None
    zookeeperConnectionInfo: ZookeeperConnectionInfo = ZookeeperConnectionInfo()
    backupRestoreReady: bool = False
    urlSchemeClusterProperty: bool = False


# ---------------------------------------------------------------------------
# The resource
# ---------------------------------------------------------------------------

class SolrCloud(BaseModel):
    """A SolrCloud custom object: the raw body plus its validated spec/status."""
    apiVersion: str = "solr.apache.org/v1beta1"
    kind: str = "SolrCloud"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    spec: SolrCloudSpec = SolrCloudSpec()
    status: SolrCloudStatus = SolrCloudStatus()

    @classmethod
    def from_body(cls, body: dict, ingress_base_domain: str = "") -> "SolrCloud":
        cloud = cls.model_validate(dict(body))
        external = cloud.spec.solrAddressability.external
        if external is not None and not external.domainName:
            external.domainName = ingress_base_domain
        tls = cloud.spec.solrTLS
        if tls is not None and tls.autoCreate is not None:
            if not tls.autoCreate.name:
                tls.autoCreate.name = f"{cloud.name}-solr-tls"
            if tls.pkcs12Secret is None:
                tls.pkcs12Secret = SecretKeySelector(
                    name=f"{tls.autoCreate.name}-secret", key="keystore.p12")
            if tls.keyStorePasswordSecret is None:
                tls.keyStorePasswordSecret = SecretKeySelector(
                    name=f"{cloud.name}-pkcs12-keystore", key="password-key")
        elif tls is not None and not cloud.being_deleted:
            if tls.pkcs12Secret is None or tls.keyStorePasswordSecret is None:
                raise ConfigurationError(
                    "solrTLS without autoCreate needs both pkcs12Secret and keyStorePasswordSecret")
        return cloud

    # --- identity ---

    @property
    def name(self) -> str:
        return self.metadata["name"]

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "default")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def being_deleted(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    def owner_body(self) -> dict:
        """Minimal body kopf needs to build an owner reference."""
        return {
            "apiVersion": self.apiVersion,
            "kind": self.kind,
            "metadata": {"name": self.name, "namespace": self.namespace, "uid": self.uid},
        }

    # --- resource names ---

    def statefulset_name(self) -> str:
        return f"{self.name}-solrcloud"

    def common_service_name(self) -> str:
        return f"{self.name}-solrcloud-common"

    def headless_service_name(self) -> str:
        return f"{self.name}-solrcloud-headless"

    def configmap_name(self) -> str:
        return f"{self.name}-solrcloud-configmap"

    def ingress_name(self) -> str:
        return f"{self.name}-solrcloud-common"

    def zookeeper_cluster_name(self) -> str:
        return f"{self.name}-solrcloud-zookeeper"

    def selfsigned_issuer_name(self) -> str:
        return f"{self.name}-selfsigned-issuer"

    def node_names(self) -> List[str]:
        return [f"{self.statefulset_name()}-{i}" for i in range(self.spec.replicas)]

    def shared_labels(self) -> Dict[str, str]:
        return {"solr-cloud": self.name}

    def selector_labels(self) -> Dict[str, str]:
        labels = self.shared_labels()
        labels["technology"] = SOLR_TECHNOLOGY_LABEL
        return labels

    # --- addressability ---

    def uses_individual_node_services(self) -> bool:
        external = self.spec.solrAddressability.external
        return (external is not None
                and external.method == ExternalMethod.INGRESS
                and not external.hideNodes)

    def uses_headless_service(self) -> bool:
        return not self.uses_individual_node_services()

    def node_port(self) -> int:
        addressability = self.spec.solrAddressability
        if addressability.external is not None and addressability.external.nodePortOverride:
            return addressability.external.nodePortOverride
        if self.uses_individual_node_services():
            return 80
        return addressability.podPort

    def internal_node_url(self, node_name: str, with_port: bool = True) -> str:
        if self.uses_headless_service():
            host = f"{node_name}.{self.headless_service_name()}.{self.namespace}"
            port = self.spec.solrAddressability.podPort
        else:
            host = f"{node_name}.{self.namespace}"
            port = self.node_port()
        return f"{host}:{port}" if with_port else host

    def internal_common_url(self, with_port: bool = True) -> str:
        host = f"{self.common_service_name()}.{self.namespace}"
        port = self.spec.solrAddressability.commonServicePort
        return f"{host}:{port}" if with_port else host

    def external_node_host(self, node_name: str) -> str:
        domain = self.spec.solrAddressability.external.domainName
        return f"{self.namespace}-{node_name}.{domain}"

    def external_common_host(self) -> str:
        domain = self.spec.solrAddressability.external.domainName
        return f"{self.namespace}-{self.name}-solrcloud.{domain}"

    def external_node_url(self, node_name: str, with_port: bool = True) -> str:
        host = self.external_node_host(node_name)
        return f"{host}:{self.node_port()}" if with_port else host

    def external_common_url(self, with_port: bool = True) -> str:
        host = self.external_common_host()
        return f"{host}:80" if with_port else host

    def advertised_node_host(self, node_name: str) -> str:
        external = self.spec.solrAddressability.external
        if external is not None and external.useExternalAddress:
            return self.external_node_host(node_name)
        return self.internal_node_url(node_name, with_port=False)

    # --- storage ---

    def deletes_storage_on_reclaim(self) -> bool:
        persistent = self.spec.storageOptions.persistentStorage
        return persistent is not None and persistent.reclaimPolicy == ReclaimPolicy.DELETE

    def provided_configmap(self) -> str:
        options = self.spec.customSolrKubeOptions.configMapOptions
        return options.providedConfigMap if options is not None else ""


def image_version(image: str) -> str:
    """The tag part of an image reference, or 'latest' if it has none."""
    name = image.rsplit("/", 1)[-1]
    if "@" in name:
        return name.split("@", 1)[1]
    if ":" in name:
        return name.split(":", 1)[1]
    return "latest"
