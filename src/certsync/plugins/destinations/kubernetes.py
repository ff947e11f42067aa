"""
Kubernetes secret mirror destination plugin.

Copies the source material into a kubernetes.io/tls secret in another
namespace. The write is skipped entirely when the target already holds
byte-identical data, so an unchanged certificate never bumps the target's
resourceVersion.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from certsync.errors import DestinationError
from certsync.kube import KubeClient
from certsync.models import TLS_SECRET_TYPE, SecretMaterial, SecretRef
from certsync.plugins.destinations.base import DestinationPlugin

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "certsync"
REFLECTED_FROM_ANNOTATION = "certsync.io/reflected-from"


class KubernetesSecretPlugin(DestinationPlugin):
    """Mirrors the certificate into a secret in a target namespace."""

    required_config = ["targetNamespace"]

    def __init__(self, kube: Optional[KubeClient] = None):
        self.kube = kube

    @property
    def name(self) -> str:
        return "Kubernetes"

    @property
    def version(self) -> str:
        return "1.0.0"

    async def initialize(self, config: Dict[str, Any]) -> None:
        if self.kube is None:
            self.kube = KubeClient.from_config(config.get("kubeconfig"))
        logger.debug("Kubernetes secret mirror plugin initialized")

    async def exists(self, config: Dict[str, Any]) -> bool:
        namespace = config.get("targetNamespace")
        name = config.get("targetSecretName")
        if not namespace or not name:
            # Default target name is the source name, unknown here
            return False
        try:
            return await self.kube.get_secret(namespace, name) is not None
        except ApiException as e:
            raise DestinationError(
                f"Failed to read secret {namespace}/{name}: {e.reason}", self.name
            )

    async def sync(self, material: SecretMaterial, config: Dict[str, Any]) -> None:
        namespace = config.get("targetNamespace")
        if not namespace:
            raise DestinationError("targetNamespace is required", self.name)
        name = config.get("targetSecretName") or material.name

        if namespace == material.namespace and name == material.name:
            raise DestinationError(
                f"Target {namespace}/{name} is the source secret itself", self.name
            )

        data = material.to_secret_data()
        labels = {MANAGED_BY_LABEL: MANAGED_BY_VALUE}
        annotations = {
            REFLECTED_FROM_ANNOTATION: f"{material.namespace}/{material.name}"
        }

        try:
            if not await self.kube.namespace_exists(namespace):
                raise DestinationError(
                    f"Target namespace {namespace} does not exist", self.name
                )

            existing = await self.kube.get_secret(namespace, name)
            if existing is None:
                await self.kube.create_secret(
                    namespace, name, data, TLS_SECRET_TYPE, labels, annotations
                )
                return

            if existing["data"] == data and existing["type"] == TLS_SECRET_TYPE:
                logger.debug(f"Secret {namespace}/{name} already up to date")
                return

            merged_labels = {**existing.get("labels", {}), **labels}
            merged_annotations = {**existing.get("annotations", {}), **annotations}
            await self.kube.replace_secret(
                namespace,
                name,
                data,
                TLS_SECRET_TYPE,
                merged_labels,
                merged_annotations,
            )
        except ApiException as e:
            raise DestinationError(
                f"Failed to write secret {namespace}/{name}: {e.reason}", self.name
            )

    async def delete(
        self, config: Dict[str, Any], source: Optional[SecretRef] = None
    ) -> None:
        namespace = config.get("targetNamespace")
        name = config.get("targetSecretName") or (source.name if source else None)
        if not namespace or not name:
            logger.warning(
                "Skipping secret mirror removal: no targetNamespace, or no "
                "targetSecretName and no source secret to derive it from"
            )
            return
        if source is not None and (namespace, name) == (source.namespace, source.name):
            logger.warning(f"Not removing {namespace}/{name}: it is the source secret")
            return
        try:
            await self.kube.delete_secret(namespace, name)
        except ApiException as e:
            raise DestinationError(
                f"Failed to delete secret {namespace}/{name}: {e.reason}", self.name
            )
