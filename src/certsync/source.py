"""
Source Resolver - finds the authoritative secret for a binding.

A binding names its material either directly (sourceSecretRef) or through a
managed certificate request that cert-manager turns into a secret. In the
managed case the Certificate resource is upserted on every pass so edits to
the binding reach the issuer.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from certsync.errors import ConfigurationError, SourceError, SourceUnavailable
from certsync.kube import CERT_MANAGER_GROUP, CERT_MANAGER_VERSION, KubeClient
from certsync.models import (
    DEFAULT_ISSUER_GROUP,
    DEFAULT_ISSUER_KIND,
    TLS_SECRET_TYPE,
    CertificateBinding,
    ManagedCertificateSpec,
    SecretMaterial,
    SecretRef,
)

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "certsync"
BINDING_LABEL = "certsync.io/binding"

# Certificate spec fields owned by the binding; cert-manager may add others
MANAGED_SPEC_FIELDS = (
    "secretName",
    "dnsNames",
    "commonName",
    "issuerRef",
    "duration",
    "renewBefore",
)


def managed_secret_name(binding: CertificateBinding) -> str:
    """Secret cert-manager writes for a managed binding."""
    certificate = binding.spec.certificate
    if certificate is not None and certificate.secret_name:
        return certificate.secret_name
    return f"{binding.name}-tls"


def source_secret_ref(binding: CertificateBinding) -> Optional[SecretRef]:
    """The secret a binding reads from, managed or referenced."""
    spec = binding.spec
    if spec.certificate is not None:
        return SecretRef(name=managed_secret_name(binding), namespace=binding.namespace)
    if spec.source_secret_ref is not None:
        return SecretRef(
            name=spec.source_secret_ref.name,
            namespace=spec.source_secret_ref.namespace or binding.namespace,
        )
    return None


def build_certificate_spec(
    certificate: ManagedCertificateSpec, secret_name: str
) -> Dict[str, Any]:
    """Render the cert-manager Certificate spec, defaulting issuer kind/group."""
    spec: Dict[str, Any] = {
        "secretName": secret_name,
        "dnsNames": list(certificate.dns_names),
        "issuerRef": {
            "name": certificate.issuer_ref.name,
            "kind": certificate.issuer_ref.kind or DEFAULT_ISSUER_KIND,
            "group": certificate.issuer_ref.group or DEFAULT_ISSUER_GROUP,
        },
    }
    if certificate.common_name:
        spec["commonName"] = certificate.common_name
    if certificate.duration:
        spec["duration"] = certificate.duration
    if certificate.renew_before:
        spec["renewBefore"] = certificate.renew_before
    return spec


def _spec_drifted(existing: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    """True when any managed field differs, including one no longer desired."""
    current = existing.get("spec") or {}
    return any(
        current.get(key) != desired.get(key) for key in MANAGED_SPEC_FIELDS
    )


class SourceResolver:
    """Resolves a binding to validated-ready SecretMaterial."""

    def __init__(self, kube: KubeClient):
        self.kube = kube

    async def resolve(self, binding: CertificateBinding) -> SecretMaterial:
        """
        Resolve the source material for a binding.

        Args:
            binding: The binding being reconciled.

        Returns:
            The secret material with its source identity.

        Raises:
            ConfigurationError: Neither or both sources set, or the secret is
                not a TLS key-pair secret.
            SourceUnavailable: The secret does not exist yet.
            SourceError: The cluster API failed.
        """
        spec = binding.spec
        if spec.certificate is None and spec.source_secret_ref is None:
            raise ConfigurationError(
                "Either certificate or sourceSecretRef must be specified"
            )
        if spec.certificate is not None and spec.source_secret_ref is not None:
            raise ConfigurationError(
                "Only one of certificate or sourceSecretRef may be specified"
            )

        if spec.certificate is not None:
            await self.ensure_certificate(binding)
        ref = source_secret_ref(binding)
        namespace, name = ref.namespace, ref.name

        try:
            secret = await self.kube.get_secret(namespace, name)
        except ApiException as e:
            raise SourceError(
                f"Failed to read source secret {namespace}/{name}: {e.reason}"
            )

        if secret is None:
            raise SourceUnavailable(namespace, name)

        if secret["type"] != TLS_SECRET_TYPE:
            raise ConfigurationError(
                f"Secret {namespace}/{name} is of type {secret['type']}, "
                f"expected {TLS_SECRET_TYPE}"
            )

        return SecretMaterial.from_secret_data(
            name, namespace, secret["data"], secret["type"]
        )

    async def ensure_certificate(self, binding: CertificateBinding) -> None:
        """
        Create the binding's Certificate resource, or update it if it drifted.

        Raises:
            SourceError: If the Certificate could not be read or written.
        """
        desired_spec = build_certificate_spec(
            binding.spec.certificate, managed_secret_name(binding)
        )
        body = {
            "apiVersion": f"{CERT_MANAGER_GROUP}/{CERT_MANAGER_VERSION}",
            "kind": "Certificate",
            "metadata": {
                "name": binding.name,
                "namespace": binding.namespace,
                "labels": {
                    MANAGED_BY_LABEL: MANAGED_BY_VALUE,
                    BINDING_LABEL: binding.name,
                },
            },
            "spec": desired_spec,
        }

        try:
            existing = await self.kube.get_certificate(binding.namespace, binding.name)
            if existing is None:
                await self.kube.create_certificate(binding.namespace, body)
                logger.info(f"Requested certificate issuance for {binding.identity}")
            elif _spec_drifted(existing, desired_spec):
                resource_version = (existing.get("metadata") or {}).get(
                    "resourceVersion"
                )
                if resource_version:
                    body["metadata"]["resourceVersion"] = resource_version
                await self.kube.replace_certificate(
                    binding.namespace, binding.name, body
                )
                logger.info(f"Updated drifted Certificate for {binding.identity}")
        except ApiException as e:
            raise SourceError(
                f"Failed to ensure Certificate {binding.identity}: {e.reason}"
            )

    async def delete_certificate(self, binding: CertificateBinding) -> bool:
        """Remove the managed Certificate, if this binding owns one."""
        if binding.spec.certificate is None:
            return False
        return await self.kube.delete_certificate(binding.namespace, binding.name)
