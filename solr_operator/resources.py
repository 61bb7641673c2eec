"""
Manifest generators for everything a SolrCloud owns.

Every function here is pure: it takes the SolrCloud (plus whatever the pass
has already worked out) and returns a JSON-ready dict. Owner references are
attached by the synchronizer, not here.
"""

import base64
import hashlib
import secrets
from typing import Dict, Optional

from solr_operator.models import (
    BACKUP_RESTORE_VOLUME,
    SOLR_NODE_CONTAINER,
    SolrCloud,
    SolrCloudStatus,
    UpdateMethod,
    ZK_CLIENT_PORT,
)

SOLR_XML_KEY = "solr.xml"
SOLR_XML_MD5_ANNOTATION = "solr.apache.org/solrXmlMd5"
HOST_PORT_PLACEHOLDER = "${hostPort:"
DATA_VOLUME = "data"
SOLR_DATA_DIR = "/var/solr/data"
TLS_DIR = "/var/solr/tls"
PKCS12_DIR = "/var/solr/tls/pkcs12"
BACKEND_PROTOCOL_ANNOTATION = "nginx.ingress.kubernetes.io/backend-protocol"

DEFAULT_SOLR_XML = """<?xml version="1.0" encoding="UTF-8" ?>
<solr>
  <solrcloud>
    <str name="host">${host:}</str>
    <int name="hostPort">${hostPort:80}</int>
    <str name="hostContext">${hostContext:solr}</str>
    <bool name="genericCoreNodeNames">${genericCoreNodeNames:true}</bool>
    <int name="zkClientTimeout">${zkClientTimeout:30000}</int>
    <int name="distribUpdateSoTimeout">${distribUpdateSoTimeout:600000}</int>
    <int name="distribUpdateConnTimeout">${distribUpdateConnTimeout:60000}</int>
    <str name="zkCredentialsProvider">${zkCredentialsProvider:org.apache.solr.common.cloud.DefaultZkCredentialsProvider}</str>
    <str name="zkACLProvider">${zkACLProvider:org.apache.solr.common.cloud.DefaultZkACLProvider}</str>
  </solrcloud>
  <shardHandlerFactory name="shardHandlerFactory"
    class="HttpShardHandlerFactory">
    <int name="socketTimeout">${socketTimeout:600000}</int>
    <int name="connTimeout">${connTimeout:60000}</int>
  </shardHandlerFactory>
</solr>
"""


def _metadata(cloud: SolrCloud, name: str, labels: Optional[dict] = None) -> dict:
    meta_labels = cloud.shared_labels()
    meta_labels.update(labels or {})
    return {"name": name, "namespace": cloud.namespace, "labels": meta_labels}


def solr_xml_md5(content: str) -> str:
    return hashlib.md5(content.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

def generate_common_service(cloud: SolrCloud) -> dict:
    addressability = cloud.spec.solrAddressability
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cloud, cloud.common_service_name(), {"service-type": "common"}),
        "spec": {
            "ports": [{
                "name": "solr-client",
                "port": addressability.commonServicePort,
                "targetPort": addressability.podPort,
                "protocol": "TCP",
            }],
            "selector": cloud.selector_labels(),
        },
    }


def generate_headless_service(cloud: SolrCloud) -> dict:
    port = cloud.spec.solrAddressability.podPort
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cloud, cloud.headless_service_name(), {"service-type": "headless"}),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "ports": [{"name": "solr-client", "port": port, "targetPort": port, "protocol": "TCP"}],
            "selector": cloud.selector_labels(),
        },
    }


def generate_node_service(cloud: SolrCloud, node_name: str) -> dict:
    selector = cloud.selector_labels()
    selector["statefulset.kubernetes.io/pod-name"] = node_name
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cloud, node_name, {"service-type": "external"}),
        "spec": {
            "publishNotReadyAddresses": True,
            "ports": [{
                "name": "solr-client",
                "port": cloud.node_port(),
                "targetPort": cloud.spec.solrAddressability.podPort,
                "protocol": "TCP",
            }],
            "selector": selector,
        },
    }


# ---------------------------------------------------------------------------
# ConfigMap
# ---------------------------------------------------------------------------

def generate_configmap(cloud: SolrCloud) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(cloud, cloud.configmap_name()),
        "data": {SOLR_XML_KEY: DEFAULT_SOLR_XML},
    }


# ---------------------------------------------------------------------------
# StatefulSet
# ---------------------------------------------------------------------------

def _solr_host_pattern(cloud: SolrCloud) -> str:
    external = cloud.spec.solrAddressability.external
    if external is not None and external.useExternalAddress:
        return f"{cloud.namespace}-$(POD_HOSTNAME).{external.domainName}"
    if cloud.uses_headless_service():
        return f"$(POD_HOSTNAME).{cloud.headless_service_name()}.{cloud.namespace}"
    return f"$(POD_HOSTNAME).{cloud.namespace}"


def _tls_env(cloud: SolrCloud, needs_pkcs12_init: bool, tls_secret_version: str) -> list:
    tls = cloud.spec.solrTLS
    keystore_dir = PKCS12_DIR if needs_pkcs12_init else TLS_DIR
    keystore = f"{keystore_dir}/{tls.pkcs12Secret.key}"
    password_ref = {"secretKeyRef": {
        "name": tls.keyStorePasswordSecret.name,
        "key": tls.keyStorePasswordSecret.key,
    }}
    env = [
        {"name": "SOLR_SSL_ENABLED", "value": "true"},
        {"name": "SOLR_SSL_KEY_STORE", "value": keystore},
        {"name": "SOLR_SSL_TRUST_STORE", "value": keystore},
        {"name": "SOLR_SSL_KEY_STORE_PASSWORD", "valueFrom": password_ref},
        {"name": "SOLR_SSL_TRUST_STORE_PASSWORD", "valueFrom": password_ref},
        {"name": "SOLR_SSL_WANT_CLIENT_AUTH", "value": str(tls.clientAuth == "Want").lower()},
        {"name": "SOLR_SSL_NEED_CLIENT_AUTH", "value": str(tls.clientAuth == "Need").lower()},
    ]
    if tls.restartOnTLSSecretUpdate and tls_secret_version:
        env.append({"name": "SOLR_TLS_SECRET_VERS", "value": tls_secret_version})
    return env


def generate_statefulset(
    cloud: SolrCloud,
    status: SolrCloudStatus,
    host_ip_map: Dict[str, str],
    configmap_name: str,
    solr_xml_hash: str,
    needs_pkcs12_init: bool,
    tls_secret_version: str = "",
) -> dict:
    spec = cloud.spec
    port = spec.solrAddressability.podPort
    tls = spec.solrTLS
    scheme = "HTTPS" if tls is not None else "HTTP"

    env = [
        {"name": "SOLR_JAVA_MEM", "value": spec.solrJavaMem},
        {"name": "SOLR_HOME", "value": SOLR_DATA_DIR},
        {"name": "SOLR_PORT", "value": str(port)},
        {"name": "SOLR_NODE_PORT", "value": str(cloud.node_port())},
        {"name": "POD_HOSTNAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        {"name": "SOLR_HOST", "value": _solr_host_pattern(cloud)},
        {"name": "ZK_HOST", "value": status.zookeeperConnectionInfo.connection_string()},
        {"name": "SOLR_LOG_LEVEL", "value": spec.solrLogLevel},
        {"name": "SOLR_OPTS", "value": spec.solrOpts},
    ]
    env = [e for e in env if e.get("value") != ""]
    volume_mounts = [{"name": DATA_VOLUME, "mountPath": SOLR_DATA_DIR}]
    volumes = [{
        "name": "solr-xml",
        "configMap": {"name": configmap_name, "items": [{"key": SOLR_XML_KEY, "path": SOLR_XML_KEY}]},
    }]
    init_containers = [{
        "name": "cp-solr-xml",
        "image": "busybox:1.28.0-glibc",
        "command": ["sh", "-c", f"cp /tmp/{SOLR_XML_KEY} /tmp-config/{SOLR_XML_KEY}"],
        "volumeMounts": [
            {"name": "solr-xml", "mountPath": "/tmp"},
            {"name": DATA_VOLUME, "mountPath": "/tmp-config"},
        ],
    }]

    persistent = spec.storageOptions.persistentStorage
    if persistent is None:
        volumes.append({"name": DATA_VOLUME, "emptyDir": dict(spec.storageOptions.ephemeralStorage or {})})

    backup = spec.storageOptions.backupRestoreOptions
    if backup is not None:
        volume = dict(backup.volume)
        volume["name"] = BACKUP_RESTORE_VOLUME
        volumes.append(volume)
        backup_mount = {"name": BACKUP_RESTORE_VOLUME, "mountPath": f"{SOLR_DATA_DIR}/{BACKUP_RESTORE_VOLUME}"}
        if backup.directory:
            backup_mount["subPath"] = backup.directory
        volume_mounts.append(backup_mount)

    if tls is not None:
        env.extend(_tls_env(cloud, needs_pkcs12_init, tls_secret_version))
        volumes.append({"name": "keystore", "secret": {"secretName": tls.pkcs12Secret.name}})
        volume_mounts.append({"name": "keystore", "mountPath": TLS_DIR, "readOnly": True})
        if needs_pkcs12_init:
            volumes.append({"name": "pkcs12", "emptyDir": {}})
            volume_mounts.append({"name": "pkcs12", "mountPath": PKCS12_DIR})
            init_containers.append({
                "name": "gen-pkcs12-keystore",
                "image": spec.solrImage.to_image_name(),
                "command": ["sh", "-c", (
                    f"openssl pkcs12 -export -in {TLS_DIR}/tls.crt -in {TLS_DIR}/ca.crt "
                    f"-inkey {TLS_DIR}/tls.key -out {PKCS12_DIR}/{tls.pkcs12Secret.key} "
                    "-passout pass:${SOLR_SSL_KEY_STORE_PASSWORD}"
                )],
                "env": [{"name": "SOLR_SSL_KEY_STORE_PASSWORD", "valueFrom": {"secretKeyRef": {
                    "name": tls.keyStorePasswordSecret.name,
                    "key": tls.keyStorePasswordSecret.key,
                }}}],
                "volumeMounts": [
                    {"name": "keystore", "mountPath": TLS_DIR, "readOnly": True},
                    {"name": "pkcs12", "mountPath": PKCS12_DIR},
                ],
            })

    probe = {
        "httpGet": {"path": "/solr/admin/info/system", "port": port, "scheme": scheme},
        "periodSeconds": 10,
        "timeoutSeconds": 5,
        "failureThreshold": 3,
    }
    container = {
        "name": SOLR_NODE_CONTAINER,
        "image": spec.solrImage.to_image_name(),
        "ports": [{"name": "solr-client", "containerPort": port, "protocol": "TCP"}],
        "env": env,
        "volumeMounts": volume_mounts,
        "readinessProbe": dict(probe, initialDelaySeconds=15),
        "livenessProbe": dict(probe, initialDelaySeconds=20),
    }
    if spec.solrImage.pullPolicy:
        container["imagePullPolicy"] = spec.solrImage.pullPolicy

    pod_spec = {
        "terminationGracePeriodSeconds": 60,
        "securityContext": {"fsGroup": 8983},
        "initContainers": init_containers,
        "containers": [container],
        "volumes": volumes,
    }
    if host_ip_map:
        pod_spec["hostAliases"] = [
            {"ip": ip, "hostnames": [host]} for host, ip in sorted(host_ip_map.items())
        ]

    annotations = {}
    if solr_xml_hash:
        annotations[SOLR_XML_MD5_ANNOTATION] = solr_xml_hash

    if spec.updateStrategy.method == UpdateMethod.STATEFULSET:
        update_strategy = {"type": "RollingUpdate"}
    else:
        update_strategy = {"type": "OnDelete"}

    statefulset = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _metadata(cloud, cloud.statefulset_name()),
        "spec": {
            "replicas": spec.replicas,
            "selector": {"matchLabels": cloud.selector_labels()},
            "serviceName": cloud.headless_service_name(),
            "podManagementPolicy": "Parallel",
            "updateStrategy": update_strategy,
            "template": {
                "metadata": {"labels": cloud.selector_labels(), "annotations": annotations},
                "spec": pod_spec,
            },
        },
    }
    if persistent is not None:
        claim = {
            "metadata": {"name": DATA_VOLUME, "labels": cloud.selector_labels()},
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": persistent.size}},
            },
        }
        if persistent.storageClassName:
            claim["spec"]["storageClassName"] = persistent.storageClassName
        statefulset["spec"]["volumeClaimTemplates"] = [claim]
    return statefulset


# ---------------------------------------------------------------------------
# Ingress
# ---------------------------------------------------------------------------

def _ingress_rule(host: str, service: str, port: int) -> dict:
    return {
        "host": host,
        "http": {"paths": [{
            "path": "/",
            "pathType": "ImplementationSpecific",
            "backend": {"service": {"name": service, "port": {"number": port}}},
        }]},
    }


def generate_ingress(cloud: SolrCloud) -> dict:
    external = cloud.spec.solrAddressability.external
    rules = []
    if not external.hideCommon:
        rules.append(_ingress_rule(
            cloud.external_common_host(),
            cloud.common_service_name(),
            cloud.spec.solrAddressability.commonServicePort,
        ))
    if not external.hideNodes:
        for node_name in cloud.node_names():
            rules.append(_ingress_rule(cloud.external_node_host(node_name), node_name, cloud.node_port()))

    annotations = {}
    if cloud.spec.solrTLS is not None:
        annotations[BACKEND_PROTOCOL_ANNOTATION] = "HTTPS"
    metadata = _metadata(cloud, cloud.ingress_name())
    metadata["annotations"] = annotations
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": metadata,
        "spec": {"rules": rules},
    }


# ---------------------------------------------------------------------------
# ZooKeeper
# ---------------------------------------------------------------------------

def generate_zookeeper_cluster(cloud: SolrCloud) -> dict:
    provided = cloud.spec.zookeeperRef.provided
    spec = {
        "replicas": provided.replicas,
        "image": {"repository": provided.image.repository, "tag": provided.image.tag},
        "labels": cloud.shared_labels(),
        "ports": [{"name": "client", "containerPort": ZK_CLIENT_PORT}],
    }
    if provided.persistence is not None:
        spec["persistence"] = dict(provided.persistence)
    return {
        "apiVersion": "zookeeper.pravega.io/v1beta1",
        "kind": "ZookeeperCluster",
        "metadata": _metadata(cloud, cloud.zookeeper_cluster_name()),
        "spec": spec,
    }


# ---------------------------------------------------------------------------
# TLS
# ---------------------------------------------------------------------------

def generate_keystore_secret(cloud: SolrCloud) -> dict:
    password_ref = cloud.spec.solrTLS.keyStorePasswordSecret
    password = secrets.token_urlsafe(24)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _metadata(cloud, password_ref.name),
        "data": {password_ref.key: base64.b64encode(password.encode("utf-8")).decode("ascii")},
    }


def generate_selfsigned_issuer(cloud: SolrCloud, name: str) -> dict:
    return {
        "apiVersion": "cert-manager.io/v1",
        "kind": "Issuer",
        "metadata": _metadata(cloud, name),
        "spec": {"selfSigned": {}},
    }


def generate_certificate(cloud: SolrCloud) -> dict:
    tls = cloud.spec.solrTLS
    auto = tls.autoCreate
    if auto.issuerRef is not None:
        issuer_ref = {"name": auto.issuerRef.name, "kind": auto.issuerRef.kind, "group": auto.issuerRef.group}
    else:
        issuer_ref = {"name": cloud.selfsigned_issuer_name(), "kind": "Issuer", "group": "cert-manager.io"}

    dns_names = list(auto.dnsNames)
    if not dns_names:
        dns_names = [cloud.internal_common_url(with_port=False)]
        dns_names += [cloud.internal_node_url(node, with_port=False) for node in cloud.node_names()]
        if cloud.spec.solrAddressability.external is not None:
            dns_names.append(cloud.external_common_host())
            dns_names += [cloud.external_node_host(node) for node in cloud.node_names()]

    spec = {
        "secretName": tls.pkcs12Secret.name,
        "dnsNames": dns_names,
        "issuerRef": issuer_ref,
        "keystores": {"pkcs12": {
            "create": True,
            "passwordSecretRef": {
                "name": tls.keyStorePasswordSecret.name,
                "key": tls.keyStorePasswordSecret.key,
            },
        }},
    }
    if auto.subjectDistinguishedName:
        spec["subject"] = {"organizations": [auto.subjectDistinguishedName]}
    return {
        "apiVersion": "cert-manager.io/v1",
        "kind": "Certificate",
        "metadata": _metadata(cloud, auto.name),
        "spec": spec,
    }
