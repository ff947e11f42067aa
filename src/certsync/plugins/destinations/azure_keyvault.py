"""
Azure Key Vault destination plugin.

Certificates are name-addressed: the vault keeps versions under a single
certificate name, so sync() is an import that creates a new version. The
import is skipped when the current version already carries the same leaf.
"""

import logging
import os
from typing import Any, Dict, Optional, Union

import aiohttp
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.core.pipeline.transport import AioHttpTransport
from azure.identity.aio import DefaultAzureCredential
from azure.keyvault.certificates import CertificateContentType, CertificatePolicy
from azure.keyvault.certificates.aio import CertificateClient
from cryptography.hazmat.primitives import serialization

from certsync.errors import DestinationError
from certsync.material import parse_certificate
from certsync.models import SecretMaterial, SecretRef
from certsync.plugins.destinations.base import DestinationPlugin

logger = logging.getLogger(__name__)

DEFAULT_DNS_SUFFIX = "vault.azure.net"


def default_certificate_name(source: Union[SecretMaterial, SecretRef]) -> str:
    """Key Vault names allow only alphanumerics and dashes."""
    return f"{source.namespace}-{source.name}".replace(".", "-")


def combined_pem(material: SecretMaterial) -> bytes:
    """Key Vault imports PEM as one bundle: key, then leaf, then chain."""
    parts = [material.private_key or b"", material.certificate or b""]
    if material.ca_chain:
        parts.append(material.ca_chain)
    return b"\n".join(part.strip() for part in parts) + b"\n"


class AzureKeyVaultPlugin(DestinationPlugin):
    """Imports certificates into an Azure Key Vault."""

    required_config = ["keyVaultName"]

    def __init__(self):
        self.dns_suffix: str = DEFAULT_DNS_SUFFIX
        self._credential: Optional[Any] = None
        self._clients: Dict[str, Any] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def name(self) -> str:
        return "AzureKeyVault"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        return {
            "dns_suffix": os.getenv("AZURE_KEYVAULT_DNS_SUFFIX", DEFAULT_DNS_SUFFIX),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.dns_suffix = config.get("dns_suffix", self.dns_suffix)
        logger.debug(f"Azure Key Vault plugin initialized: dns_suffix={self.dns_suffix}")

    def _vault_url(self, vault_name: str) -> str:
        return f"https://{vault_name}.{self.dns_suffix}"

    def _create_client(self, vault_url: str) -> Any:
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        if self._session is None:
            self._session = aiohttp.ClientSession()
        # All vault clients share one HTTP session; close() owns its lifetime
        transport = AioHttpTransport(session=self._session, session_owner=False)
        return CertificateClient(
            vault_url=vault_url, credential=self._credential, transport=transport
        )

    def _get_client(self, config: Dict[str, Any]) -> Any:
        vault_name = config.get("keyVaultName")
        if not vault_name:
            raise DestinationError("keyVaultName is required", self.name)
        vault_url = self._vault_url(vault_name)
        if vault_url not in self._clients:
            self._clients[vault_url] = self._create_client(vault_url)
        return self._clients[vault_url]

    def _certificate_name(self, config: Dict[str, Any], material: SecretMaterial) -> str:
        return config.get("certificateName") or default_certificate_name(material)

    async def exists(self, config: Dict[str, Any]) -> bool:
        if not config.get("certificateName"):
            # Default name is derived from the source secret, unknown here
            return False
        client = self._get_client(config)
        try:
            await client.get_certificate(config["certificateName"])
        except ResourceNotFoundError:
            return False
        return True

    async def sync(self, material: SecretMaterial, config: Dict[str, Any]) -> None:
        client = self._get_client(config)
        cert_name = self._certificate_name(config, material)
        leaf_der = parse_certificate(material.certificate).public_bytes(
            serialization.Encoding.DER
        )

        try:
            existing = await client.get_certificate(cert_name)
        except ResourceNotFoundError:
            existing = None

        if existing is not None and existing.cer == leaf_der:
            logger.debug(f"Key Vault certificate {cert_name} already up to date")
            return

        policy = CertificatePolicy(
            issuer_name="Unknown", content_type=CertificateContentType.pem
        )
        try:
            await client.import_certificate(
                certificate_name=cert_name,
                certificate_bytes=combined_pem(material),
                policy=policy,
                tags={"ManagedBy": "certsync"},
            )
        except HttpResponseError as e:
            raise DestinationError(
                f"Failed to import certificate {cert_name}: {e.message}", self.name
            )

        logger.info(
            f"Imported certificate {cert_name} into Key Vault "
            f"{config.get('keyVaultName')}"
        )

    async def delete(
        self, config: Dict[str, Any], source: Optional[SecretRef] = None
    ) -> None:
        cert_name = config.get("certificateName") or (
            default_certificate_name(source) if source else None
        )
        if not cert_name:
            logger.warning(
                "Skipping Key Vault removal: no certificateName and no source "
                "secret to derive it from"
            )
            return
        client = self._get_client(config)
        try:
            await client.delete_certificate(cert_name)
        except ResourceNotFoundError:
            return
        except HttpResponseError as e:
            raise DestinationError(
                f"Failed to delete certificate {cert_name}: {e.message}", self.name
            )
        logger.info(f"Deleted certificate {cert_name} from Key Vault")

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
        if self._credential is not None:
            await self._credential.close()
            self._credential = None
        if self._session is not None:
            await self._session.close()
            self._session = None
