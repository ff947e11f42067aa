"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from prometheus_client import CollectorRegistry

from certsync.errors import DestinationError
from certsync.metrics import SyncMetrics
from certsync.models import SecretMaterial, SecretRef
from certsync.plugins.destinations.base import DestinationPlugin
from certsync.plugins.registry import PluginRegistry


def _generate_certificate(
    common_name: str = "example.com",
    key: Optional[ec.EllipticCurvePrivateKey] = None,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
) -> Dict[str, bytes]:
    """Self-signed EC certificate and its PEM key."""
    key = key or ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    not_before = not_before or now - timedelta(days=1)
    not_after = not_after or now + timedelta(days=90)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False
        )
        .sign(key, hashes.SHA256())
    )
    return {
        "cert": cert.public_bytes(serialization.Encoding.PEM),
        "key": key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
        "not_after": not_after,
    }


@pytest.fixture
def make_certificate():
    """Factory for self-signed certificates: returns {cert, key, not_after}."""
    return _generate_certificate


@pytest.fixture
def tls_pair():
    """A valid, unexpired certificate/key pair."""
    return _generate_certificate()


@pytest.fixture
def material(tls_pair):
    """Valid secret material from the cert-manager namespace."""
    return SecretMaterial(
        name="web-tls",
        namespace="certs",
        certificate=tls_pair["cert"],
        private_key=tls_pair["key"],
    )


@pytest.fixture
def sample_spec():
    """A binding spec using a referenced secret and one mirror destination."""
    return {
        "sourceSecretRef": {"name": "web-tls", "namespace": "certs"},
        "destinationRules": [
            {
                "name": "mirror",
                "type": "Kubernetes",
                "config": {"targetNamespace": "apps"},
            }
        ],
    }


@pytest.fixture
def make_binding_row():
    """Factory for parsed certificate_bindings rows."""

    def _make(spec: Dict[str, Any], **overrides: Any) -> Dict[str, Any]:
        row = {
            "id": 1,
            "name": "web",
            "namespace": "default",
            "spec": spec,
            "spec_hash": "abc123",
            "status": {},
            "generation": 1,
            "observed_generation": 0,
            "resource_version": 1,
            "phase": "pending",
            "status_message": None,
            "retry_count": 0,
            "next_reconcile_time": None,
            "last_reconcile_time": None,
            "finalizers": ["certsync"],
            "created_at": datetime(2024, 1, 1),
            "updated_at": datetime(2024, 1, 1),
            "deleted_at": None,
        }
        row.update(overrides)
        return row

    return _make


class FakeDestination(DestinationPlugin):
    """In-memory destination that records calls and can be told to fail."""

    def __init__(self, type_tag: str = "Fake", fail_with: Optional[str] = None):
        self._type_tag = type_tag
        self.fail_with = fail_with
        self.synced: List[SecretMaterial] = []
        self.deleted: List[Dict[str, Any]] = []
        self.delete_sources: List[Optional[SecretRef]] = []
        self.store: Dict[str, bytes] = {}

    @property
    def name(self) -> str:
        return self._type_tag

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    async def exists(self, config: Dict[str, Any]) -> bool:
        return config.get("target", "default") in self.store

    async def sync(self, material: SecretMaterial, config: Dict[str, Any]) -> None:
        if self.fail_with:
            raise DestinationError(self.fail_with, self.name)
        self.synced.append(material)
        self.store[config.get("target", "default")] = material.certificate

    async def delete(
        self, config: Dict[str, Any], source: Optional[SecretRef] = None
    ) -> None:
        if self.fail_with:
            raise DestinationError(self.fail_with, self.name)
        self.deleted.append(config)
        self.delete_sources.append(source)
        self.store.pop(config.get("target", "default"), None)


@pytest.fixture
def fake_destination_class():
    return FakeDestination


@pytest.fixture
def fake_registry():
    """Registry holding FakeDestination instances for types A, B and C."""
    registry = PluginRegistry()
    for tag in ("A", "B", "C"):
        registry.register_destination_instance(FakeDestination(tag))
    return registry


@pytest.fixture
def metrics():
    """Metrics bound to a private registry."""
    return SyncMetrics(registry=CollectorRegistry())


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn
