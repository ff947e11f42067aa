"""
Kubernetes API access for source secrets, mirror targets and cert-manager
Certificate resources.

The official client is synchronous, so every call is pushed onto a worker
thread with asyncio.to_thread. Secret data is exchanged as raw bytes; the
base64 wire encoding never leaks out of this module.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERTIFICATE_PLURAL = "certificates"


def _decode_data(data: Optional[Dict[str, str]]) -> Dict[str, bytes]:
    return {key: base64.b64decode(value) for key, value in (data or {}).items()}


def _encode_data(data: Dict[str, bytes]) -> Dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in data.items()}


class KubeClient:
    """Thin async facade over CoreV1Api and CustomObjectsApi."""

    def __init__(
        self,
        core_v1: Optional[client.CoreV1Api] = None,
        custom_objects: Optional[client.CustomObjectsApi] = None,
    ):
        self.core_v1 = core_v1
        self.custom_objects = custom_objects

    @classmethod
    def from_config(cls, kubeconfig: Optional[str] = None) -> "KubeClient":
        """Load cluster credentials: explicit kubeconfig, in-cluster, then default."""
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                config.load_incluster_config()
            except config.ConfigException:
                config.load_kube_config()

        return cls(core_v1=client.CoreV1Api(), custom_objects=client.CustomObjectsApi())

    # ==================== Secrets ====================

    async def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """
        Read a secret.

        Returns:
            Dict with name, namespace, type, labels, annotations and decoded
            data, or None if the secret does not exist.

        Raises:
            ApiException: For any API error other than 404.
        """
        try:
            secret = await asyncio.to_thread(
                self.core_v1.read_namespaced_secret, name, namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

        metadata = secret.metadata
        return {
            "name": metadata.name,
            "namespace": metadata.namespace,
            "type": secret.type,
            "labels": dict(metadata.labels or {}),
            "annotations": dict(metadata.annotations or {}),
            "data": _decode_data(secret.data),
        }

    async def create_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        secret_type: str,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels or {},
                annotations=annotations or {},
            ),
            type=secret_type,
            data=_encode_data(data),
        )
        await asyncio.to_thread(self.core_v1.create_namespaced_secret, namespace, body)
        logger.info(f"Created secret {namespace}/{name}")

    async def replace_secret(
        self,
        namespace: str,
        name: str,
        data: Dict[str, bytes],
        secret_type: str,
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels or {},
                annotations=annotations or {},
            ),
            type=secret_type,
            data=_encode_data(data),
        )
        await asyncio.to_thread(
            self.core_v1.replace_namespaced_secret, name, namespace, body
        )
        logger.info(f"Updated secret {namespace}/{name}")

    async def delete_secret(self, namespace: str, name: str) -> bool:
        """Delete a secret. Returns False if it was already gone."""
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_secret, name, namespace
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        logger.info(f"Deleted secret {namespace}/{name}")
        return True

    async def namespace_exists(self, name: str) -> bool:
        try:
            await asyncio.to_thread(self.core_v1.read_namespace, name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    # ==================== cert-manager Certificates ====================

    async def get_certificate(
        self, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """Read a cert-manager Certificate, or None if absent."""
        try:
            return await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object,
                CERT_MANAGER_GROUP,
                CERT_MANAGER_VERSION,
                namespace,
                CERTIFICATE_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_certificate(self, namespace: str, body: Dict[str, Any]) -> None:
        await asyncio.to_thread(
            self.custom_objects.create_namespaced_custom_object,
            CERT_MANAGER_GROUP,
            CERT_MANAGER_VERSION,
            namespace,
            CERTIFICATE_PLURAL,
            body,
        )
        logger.info(f"Created Certificate {namespace}/{body['metadata']['name']}")

    async def replace_certificate(
        self, namespace: str, name: str, body: Dict[str, Any]
    ) -> None:
        await asyncio.to_thread(
            self.custom_objects.replace_namespaced_custom_object,
            CERT_MANAGER_GROUP,
            CERT_MANAGER_VERSION,
            namespace,
            CERTIFICATE_PLURAL,
            name,
            body,
        )
        logger.info(f"Updated Certificate {namespace}/{name}")

    async def delete_certificate(self, namespace: str, name: str) -> bool:
        """Delete a Certificate. Returns False if it was already gone."""
        try:
            await asyncio.to_thread(
                self.custom_objects.delete_namespaced_custom_object,
                CERT_MANAGER_GROUP,
                CERT_MANAGER_VERSION,
                namespace,
                CERTIFICATE_PLURAL,
                name,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        logger.info(f"Deleted Certificate {namespace}/{name}")
        return True
