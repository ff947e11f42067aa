"""
AWS Certificate Manager destination plugin.

ACM certificates are ARN-addressed and immutable except through re-import.
When the rule carries a certificateArn (or a previously imported certificate
can be found by its tags) the material is re-imported in place; otherwise a
new tagged certificate is imported.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.hazmat.primitives.serialization import Encoding

from certsync.errors import DestinationError, ValidationError
from certsync.material import parse_certificate, split_leaf
from certsync.models import SecretMaterial, SecretRef
from certsync.plugins.destinations.base import DestinationPlugin

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = "ManagedBy"
MANAGED_BY_VALUE = "certsync"
NAME_TAG = "Name"

# list_certificates only returns RSA_2048 unless key types are requested
IMPORTED_KEY_TYPES = ["RSA_2048", "RSA_3072", "RSA_4096", "EC_prime256v1", "EC_secp384r1"]


def _is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ResourceNotFoundException"


def default_certificate_name(source: Union[SecretMaterial, SecretRef]) -> str:
    """Name tag for certificates imported without an explicit certificateName."""
    return f"{source.namespace}-{source.name}"


def _same_leaf(current_pem: Optional[str], leaf_pem: bytes) -> bool:
    """ACM stores only the leaf, so compare leaf to leaf by DER."""
    if not current_pem:
        return False
    try:
        current = parse_certificate(current_pem.encode())
        desired = parse_certificate(leaf_pem)
    except ValidationError:
        return False
    return current.public_bytes(Encoding.DER) == desired.public_bytes(Encoding.DER)


class AWSACMPlugin(DestinationPlugin):
    """Imports certificates into AWS Certificate Manager."""

    def __init__(self):
        self.default_region: Optional[str] = None
        self._clients: Dict[str, Any] = {}

    @property
    def name(self) -> str:
        return "AWSACM"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        return {"region": os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")}

    async def initialize(self, config: Dict[str, Any]) -> None:
        self.default_region = config.get("region") or self.default_region
        logger.debug(f"AWS ACM plugin initialized: region={self.default_region}")

    def validate_config(self, config: Dict[str, Any]) -> tuple[bool, Optional[str]]:
        if not (config.get("region") or self.default_region):
            return False, "AWSACM config must contain: region"
        return True, None

    def _create_client(self, region: str) -> Any:
        return boto3.client("acm", region_name=region)

    def _get_client(self, config: Dict[str, Any]) -> Any:
        region = config.get("region") or self.default_region
        if not region:
            raise DestinationError("region is required", self.name)
        if region not in self._clients:
            self._clients[region] = self._create_client(region)
        return self._clients[region]

    async def _find_tagged(self, client: Any, cert_name: str) -> Optional[str]:
        """Find a certificate previously imported by us under cert_name."""

        def _lookup() -> Optional[str]:
            paginator = client.get_paginator("list_certificates")
            for page in paginator.paginate(Includes={"keyTypes": IMPORTED_KEY_TYPES}):
                for summary in page.get("CertificateSummaryList", []):
                    arn = summary["CertificateArn"]
                    tags = client.list_tags_for_certificate(CertificateArn=arn).get(
                        "Tags", []
                    )
                    tag_map = {tag["Key"]: tag.get("Value") for tag in tags}
                    if (
                        tag_map.get(MANAGED_BY_TAG) == MANAGED_BY_VALUE
                        and tag_map.get(NAME_TAG) == cert_name
                    ):
                        return arn
            return None

        return await asyncio.to_thread(_lookup)

    async def _resolve_arn(
        self, client: Any, config: Dict[str, Any], cert_name: Optional[str]
    ) -> Optional[str]:
        arn = config.get("certificateArn")
        if arn:
            try:
                await asyncio.to_thread(client.describe_certificate, CertificateArn=arn)
                return arn
            except ClientError as e:
                if _is_not_found(e):
                    return None
                raise
        if cert_name:
            return await self._find_tagged(client, cert_name)
        return None

    async def exists(self, config: Dict[str, Any]) -> bool:
        client = self._get_client(config)
        try:
            arn = await self._resolve_arn(client, config, config.get("certificateName"))
        except (ClientError, BotoCoreError) as e:
            raise DestinationError(f"Failed to look up ACM certificate: {e}", self.name)
        return arn is not None

    async def sync(self, material: SecretMaterial, config: Dict[str, Any]) -> None:
        client = self._get_client(config)
        cert_name = config.get("certificateName") or default_certificate_name(material)

        # ACM takes the leaf alone; intermediates from tls.crt join the chain
        leaf, intermediates = split_leaf(material.certificate)
        chain = b"\n".join(
            part.strip() for part in (intermediates, material.ca_chain) if part
        )

        try:
            arn = await self._resolve_arn(client, config, cert_name)

            if arn:
                current = await asyncio.to_thread(
                    client.get_certificate, CertificateArn=arn
                )
                if _same_leaf(current.get("Certificate"), leaf):
                    logger.debug(f"ACM certificate {arn} already up to date")
                    return

            params: Dict[str, Any] = {
                "Certificate": leaf,
                "PrivateKey": material.private_key,
            }
            if chain:
                params["CertificateChain"] = chain

            if arn:
                params["CertificateArn"] = arn
                await asyncio.to_thread(client.import_certificate, **params)
                logger.info(f"Re-imported certificate into ACM: {arn}")
            else:
                params["Tags"] = [
                    {"Key": MANAGED_BY_TAG, "Value": MANAGED_BY_VALUE},
                    {"Key": NAME_TAG, "Value": cert_name},
                ]
                response = await asyncio.to_thread(client.import_certificate, **params)
                logger.info(
                    f"Imported new certificate into ACM: {response.get('CertificateArn')}"
                )
        except (ClientError, BotoCoreError) as e:
            raise DestinationError(f"Failed to import certificate to ACM: {e}", self.name)

    async def delete(
        self, config: Dict[str, Any], source: Optional[SecretRef] = None
    ) -> None:
        client = self._get_client(config)
        cert_name = config.get("certificateName") or (
            default_certificate_name(source) if source else None
        )
        try:
            arn = await self._resolve_arn(client, config, cert_name)
            if arn is None:
                logger.debug("No ACM certificate to remove")
                return
            await asyncio.to_thread(client.delete_certificate, CertificateArn=arn)
        except ClientError as e:
            if _is_not_found(e):
                return
            raise DestinationError(f"Failed to delete ACM certificate: {e}", self.name)
        except BotoCoreError as e:
            raise DestinationError(f"Failed to delete ACM certificate: {e}", self.name)
        logger.info(f"Deleted ACM certificate {arn}")
