"""
SolrCloud reconciliation pass.

One pass reads the SolrCloud fresh, walks every owned resource toward the
desired state and ends by writing back a status computed from scratch. Passes
are re-entrant: nothing is carried between them except what lives in the
cluster.

Order of work:
  1. ZooKeeper connection (given, or a managed ZookeeperCluster)
  2. Services (common, per-node or headless) and the solr.xml ConfigMap
  3. TLS certificate (when enabled) and the urlScheme cluster property
  4. StatefulSet, unless something it depends on is not ready yet
  5. Storage finalizer / PVC cleanup
  6. Status aggregation and managed rolling updates
  7. Ingress
  8. Status write-back, only if it changed
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from kubernetes.client import ApiException

from solr_operator import metrics
from solr_operator.config import Settings, settings as default_settings
from solr_operator.errors import ConfigurationError, SolrOperatorError
from solr_operator.models import (
    ExternalMethod,
    SolrCloud,
    SolrCloudStatus,
    UpdateMethod,
    ZookeeperConnectionInfo,
)
from solr_operator.resources import (
    HOST_PORT_PLACEHOLDER,
    SOLR_XML_KEY,
    generate_common_service,
    generate_configmap,
    generate_headless_service,
    generate_ingress,
    generate_node_service,
    generate_statefulset,
    solr_xml_md5,
)
from solr_operator.rolling_update import MaxUnavailablePolicy, RollingUpdateCoordinator, UpdateSafetyPolicy
from solr_operator.services.kubernetes_service import KubernetesService
from solr_operator.services.zookeeper_service import ClientFactory
from solr_operator.status import aggregate_status
from solr_operator.storage import StorageLifecycleManager
from solr_operator.sync import sync_resource
from solr_operator.tls import TLSCoordinator
from solr_operator.zookeeper import ensure_url_scheme_https, resolve_zookeeper

logger = logging.getLogger("solr-operator")


@dataclass
class ReconcileResult:
    """Outcome of a pass. requeue_after > 0 asks for another pass after that many seconds."""
    requeue_after: int = 0
    status_written: bool = False

    def requeue_within(self, seconds: int):
        """Requeue no later than seconds from now, keeping any sooner requeue."""
        if self.requeue_after <= 0 or self.requeue_after > seconds:
            self.requeue_after = seconds


class SolrCloudReconciler:
    def __init__(
        self,
        kube: KubernetesService,
        settings: Settings = default_settings,
        update_policy: Optional[UpdateSafetyPolicy] = None,
        zk_client_factory: Optional[ClientFactory] = None,
    ):
        self.kube = kube
        self.settings = settings
        self.update_policy = update_policy or MaxUnavailablePolicy()
        self.zk_client_factory = zk_client_factory

    def reconcile(self, namespace: str, name: str, log: logging.Logger = logger) -> ReconcileResult:
        """Run one pass for the named SolrCloud."""
        body = self.kube.get(self.settings.CRD_KIND, namespace, name)
        if body is None:
            # Gone already; owned objects are garbage collected.
            return ReconcileResult()
        cloud = SolrCloud.from_body(body, self.settings.INGRESS_BASE_DOMAIN)
        with metrics.RECONCILE_DURATION.labels(namespace=namespace).time():
            if cloud.being_deleted:
                return self.reconcile_deletion(body, cloud, log)
            return self.reconcile_cloud(body, cloud, log)

    def reconcile_deletion(self, body: dict, cloud: SolrCloud, log: logging.Logger) -> ReconcileResult:
        """A deleted cloud only needs its storage finalizer released."""
        found = self.kube.get("StatefulSet", cloud.namespace, cloud.statefulset_name())
        pvc_labels = self._pvc_labels(cloud, found)
        StorageLifecycleManager(self.kube, body, cloud, self.settings, log).reconcile(
            pvc_labels, (found or {}).get("status") or {}
        )
        return ReconcileResult()

    def reconcile_cloud(self, body: dict, cloud: SolrCloud, log: logging.Logger) -> ReconcileResult:
        result = ReconcileResult()
        owner = cloud.owner_body()
        zk_info = resolve_zookeeper(self.kube, cloud, self.settings, log)
        zk_pending = zk_info is None
        block_statefulset = zk_pending
        if zk_pending:
            result.requeue_within(self.settings.ZK_NOT_READY_WAIT)
            zk_info = ZookeeperConnectionInfo()

        sync_resource(self.kube, owner, generate_common_service(cloud), log)

        host_ip_map, missing_ip = self.reconcile_node_services(cloud, owner, log)
        block_statefulset = block_statefulset or missing_ip

        if cloud.uses_headless_service():
            sync_resource(self.kube, owner, generate_headless_service(cloud), log)

        configmap_name, solr_xml_hash = self.reconcile_configmap(cloud, owner, log)

        needs_pkcs12_init = False
        tls_secret_version = ""
        url_scheme_set = False
        if cloud.spec.solrTLS is not None and not zk_pending:
            tls = TLSCoordinator(self.kube, cloud, self.settings, log).reconcile()
            if not tls.ready:
                # Don't create the StatefulSet until the certificate is issued.
                result.requeue_within(tls.requeue_after)
                return result
            needs_pkcs12_init = tls.needs_pkcs12_init
            tls_secret_version = tls.secret_version

            if cloud.status.urlSchemeClusterProperty:
                # Already pushed; a ZooKeeper blip must not stall the rest of the pass.
                url_scheme_set = True
            elif zk_info.has_host_and_port():
                url_scheme_set = ensure_url_scheme_https(
                    zk_info, self.settings.ZK_CONNECT_TIMEOUT, self.zk_client_factory, log
                )
                if not url_scheme_set:
                    result.requeue_within(self.settings.ZK_NOT_READY_WAIT)
                    return result

        # The StatefulSet needs host:port to hand to Solr.
        if not zk_info.has_host_and_port():
            block_statefulset = True

        pending_status = SolrCloudStatus(zookeeperConnectionInfo=zk_info)
        if not block_statefulset:
            desired = generate_statefulset(
                cloud, pending_status, host_ip_map, configmap_name, solr_xml_hash,
                needs_pkcs12_init, tls_secret_version,
            )
            _, statefulset = sync_resource(self.kube, owner, desired, log)
        else:
            statefulset = self.kube.get("StatefulSet", cloud.namespace, cloud.statefulset_name())
        statefulset_status = (statefulset or {}).get("status") or {}

        try:
            body = StorageLifecycleManager(self.kube, body, cloud, self.settings, log).reconcile(
                self._pvc_labels(cloud, statefulset), statefulset_status
            )
        except ApiException as e:
            log.error(f"Storage finalizer reconcile failed for {cloud.name}: {e}")
            return ReconcileResult(requeue_after=self.settings.STORAGE_RETRY_WAIT)

        pods = self.kube.list("Pod", cloud.namespace, cloud.selector_labels())
        new_status, classified = aggregate_status(cloud, pods, statefulset_status, zk_info, url_scheme_set)

        if cloud.spec.updateStrategy.method == UpdateMethod.MANAGED and classified.needs_update:
            updater = RollingUpdateCoordinator(self.kube, cloud, self.update_policy, log)
            if updater.run(classified, new_status.readyReplicas):
                result.requeue_within(self.settings.MANAGED_UPDATE_WAIT)

        external = cloud.spec.solrAddressability.external
        if external is not None and external.method == ExternalMethod.INGRESS:
            sync_resource(self.kube, owner, generate_ingress(cloud), log)

        result.status_written = self.write_status(body, new_status, log)
        return result

    def reconcile_node_services(self, cloud: SolrCloud, owner: dict,
                                log: logging.Logger) -> Tuple[Dict[str, str], bool]:
        """Sync one Service per node. Returns the host->IP map and whether an IP is still missing."""
        host_ip_map = {}
        missing_ip = False
        if not cloud.uses_individual_node_services():
            return host_ip_map, missing_ip
        advertise_external = cloud.spec.solrAddressability.external.useExternalAddress
        for node_name in cloud.node_names():
            _, service = sync_resource(self.kube, owner, generate_node_service(cloud, node_name), log)
            if not advertise_external:
                continue
            ip = (service.get("spec") or {}).get("clusterIP") or ""
            if ip:
                host_ip_map[cloud.advertised_node_host(node_name)] = ip
            else:
                # Every alias must be known before the StatefulSet can use them.
                missing_ip = True
        return host_ip_map, missing_ip

    def reconcile_configmap(self, cloud: SolrCloud, owner: dict, log: logging.Logger) -> Tuple[str, str]:
        """Sync the generated solr.xml ConfigMap, or validate the user's. Returns (name, md5 of solr.xml)."""
        provided = cloud.provided_configmap()
        if not provided:
            _, configmap = sync_resource(self.kube, owner, generate_configmap(cloud), log)
            return cloud.configmap_name(), solr_xml_md5(configmap["data"][SOLR_XML_KEY])

        found = self.kube.get("ConfigMap", cloud.namespace, provided)
        if found is None:
            raise SolrOperatorError(f"Provided ConfigMap {provided} not found")
        data = found.get("data")
        if not data:
            raise ConfigurationError(f"Provided ConfigMap {provided} has no data")
        if SOLR_XML_KEY not in data:
            raise ConfigurationError(f"Required '{SOLR_XML_KEY}' key not found in provided ConfigMap {provided}")
        solr_xml = data[SOLR_XML_KEY]
        if HOST_PORT_PLACEHOLDER not in solr_xml:
            raise ConfigurationError(
                f"Custom {SOLR_XML_KEY} in ConfigMap {provided} must contain a placeholder for the "
                f"'hostPort' variable, such as <int name=\"hostPort\">${{hostPort:80}}</int>"
            )
        return provided, solr_xml_md5(solr_xml)

    def write_status(self, body: dict, new_status: SolrCloudStatus, log: logging.Logger) -> bool:
        """Replace the stored status if it differs from new_status. Returns True if written."""
        current = SolrCloudStatus.model_validate(body.get("status") or {})
        if current == new_status:
            return False
        body = dict(body)
        body["status"] = new_status.model_dump(mode="json", exclude_none=True)
        log.info(f"Updating SolrCloud status for {body['metadata']['name']}")
        self.kube.update_status(self.settings.CRD_KIND, body)
        return True

    @staticmethod
    def _pvc_labels(cloud: SolrCloud, statefulset: Optional[dict]) -> Dict[str, str]:
        if statefulset is not None:
            labels = ((statefulset.get("spec") or {}).get("selector") or {}).get("matchLabels")
            if labels:
                return dict(labels)
        return cloud.selector_labels()
