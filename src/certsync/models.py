"""
CertificateBinding data model.

Dataclasses for the declarative binding (spec), its observed state (status)
and the secret material flowing through a reconcile pass. The wire format
uses camelCase keys, matching the resource shape accepted by the API.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_ISSUER_KIND = "Issuer"
DEFAULT_ISSUER_GROUP = "cert-manager.io"

TLS_SECRET_TYPE = "kubernetes.io/tls"

# Field names inside a kubernetes.io/tls secret
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"
CA_CERT_KEY = "ca.crt"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Optional[str]) -> Optional[float]:
    """
    Parse a Go-style duration string ("90s", "5m", "1h30m") into seconds.

    Args:
        value: Duration string, or None/empty.

    Returns:
        Number of seconds, or None if value is empty.

    Raises:
        ValueError: If the string is not a valid duration.
    """
    if not value:
        return None

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(value) or pos == 0:
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class SyncState(str, Enum):
    """Per-destination sync state."""

    SYNCED = "Synced"
    FAILED = "Failed"
    ERROR = "Error"
    RETRYING = "Retrying"
    PENDING = "Pending"


@dataclass
class IssuerRef:
    """Reference to the issuer that should sign a managed certificate."""

    name: str
    kind: str = ""
    group: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IssuerRef":
        return cls(
            name=data.get("name", ""),
            kind=data.get("kind", ""),
            group=data.get("group", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {"name": self.name}
        if self.kind:
            result["kind"] = self.kind
        if self.group:
            result["group"] = self.group
        return result


@dataclass
class ManagedCertificateSpec:
    """Request for the issuance collaborator to materialize a TLS secret."""

    dns_names: List[str]
    issuer_ref: IssuerRef
    common_name: str = ""
    secret_name: str = ""
    duration: Optional[str] = None
    renew_before: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedCertificateSpec":
        return cls(
            dns_names=list(data.get("dnsNames") or []),
            issuer_ref=IssuerRef.from_dict(data.get("issuerRef") or {}),
            common_name=data.get("commonName", ""),
            secret_name=data.get("secretName", ""),
            duration=data.get("duration"),
            renew_before=data.get("renewBefore"),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "dnsNames": list(self.dns_names),
            "issuerRef": self.issuer_ref.to_dict(),
        }
        if self.common_name:
            result["commonName"] = self.common_name
        if self.secret_name:
            result["secretName"] = self.secret_name
        if self.duration:
            result["duration"] = self.duration
        if self.renew_before:
            result["renewBefore"] = self.renew_before
        return result


@dataclass
class SecretRef:
    """Reference to a pre-existing secret."""

    name: str
    namespace: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SecretRef":
        return cls(name=data.get("name", ""), namespace=data.get("namespace", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "namespace": self.namespace}


@dataclass
class DestinationRule:
    """Where to deliver the certificate; `type` selects the plugin."""

    name: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DestinationRule":
        return cls(
            name=data.get("name", ""),
            type=data.get("type", ""),
            config=dict(data.get("config") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "config": dict(self.config)}


@dataclass
class SyncPolicy:
    """Retry bounds and run-once suppression for a binding."""

    max_retries: int = 0
    retry_interval: str = ""
    run_once: bool = False

    @property
    def retry_interval_seconds(self) -> Optional[float]:
        return parse_duration(self.retry_interval)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncPolicy":
        data = data or {}
        return cls(
            max_retries=int(data.get("maxRetries", 0) or 0),
            retry_interval=data.get("retryInterval", "") or "",
            run_once=bool(data.get("runOnce", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "maxRetries": self.max_retries,
            "retryInterval": self.retry_interval,
            "runOnce": self.run_once,
        }


@dataclass
class CertificateBindingSpec:
    """Desired state of a CertificateBinding."""

    certificate: Optional[ManagedCertificateSpec] = None
    source_secret_ref: Optional[SecretRef] = None
    destination_rules: List[DestinationRule] = field(default_factory=list)
    dry_run: bool = False
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    cleanup_on_delete: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateBindingSpec":
        certificate = data.get("certificate")
        source_secret_ref = data.get("sourceSecretRef")
        return cls(
            certificate=(
                ManagedCertificateSpec.from_dict(certificate) if certificate else None
            ),
            source_secret_ref=(
                SecretRef.from_dict(source_secret_ref) if source_secret_ref else None
            ),
            destination_rules=[
                DestinationRule.from_dict(rule)
                for rule in data.get("destinationRules") or []
            ],
            dry_run=bool(data.get("dryRun", False)),
            sync_policy=SyncPolicy.from_dict(data.get("syncPolicy")),
            cleanup_on_delete=bool(data.get("cleanupOnDelete", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "destinationRules": [rule.to_dict() for rule in self.destination_rules],
            "dryRun": self.dry_run,
            "syncPolicy": self.sync_policy.to_dict(),
            "cleanupOnDelete": self.cleanup_on_delete,
        }
        if self.certificate is not None:
            result["certificate"] = self.certificate.to_dict()
        if self.source_secret_ref is not None:
            result["sourceSecretRef"] = self.source_secret_ref.to_dict()
        return result


@dataclass
class Condition:
    """A Kubernetes-style status condition."""

    type: str
    status: str
    reason: str
    message: str = ""
    last_transition_time: Optional[datetime] = None
    observed_generation: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=_parse_time(data.get("lastTransitionTime")),
            observed_generation=int(data.get("observedGeneration", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": _format_time(self.last_transition_time),
            "observedGeneration": self.observed_generation,
        }


@dataclass
class DestinationStatus:
    """Outcome of one destination rule in one reconcile pass."""

    name: str
    type: str
    state: SyncState = SyncState.PENDING
    last_sync: Optional[datetime] = None
    error: str = ""
    retry_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DestinationStatus":
        return cls(
            name=data["name"],
            type=data.get("type", ""),
            state=SyncState(data.get("state", SyncState.PENDING.value)),
            last_sync=_parse_time(data.get("lastSync")),
            error=data.get("error", "") or "",
            retry_count=int(data.get("retryCount", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "state": self.state.value,
            "lastSync": _format_time(self.last_sync),
            "error": self.error,
            "retryCount": self.retry_count,
        }


@dataclass
class BindingStatus:
    """Observed state of a CertificateBinding. Owned by the controller."""

    ready: bool = False
    destinations: List[DestinationStatus] = field(default_factory=list)
    last_sync_time: Optional[datetime] = None
    sync_count: int = 0
    observed_generation: int = 0
    conditions: List[Condition] = field(default_factory=list)
    source_hash: str = ""

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BindingStatus":
        data = data or {}
        return cls(
            ready=bool(data.get("ready", False)),
            destinations=[
                DestinationStatus.from_dict(d) for d in data.get("destinations") or []
            ],
            last_sync_time=_parse_time(data.get("lastSyncTime")),
            sync_count=int(data.get("syncCount", 0) or 0),
            observed_generation=int(data.get("observedGeneration", 0) or 0),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
            source_hash=data.get("sourceHash", "") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ready": self.ready,
            "destinations": [d.to_dict() for d in self.destinations],
            "lastSyncTime": _format_time(self.last_sync_time),
            "syncCount": self.sync_count,
            "observedGeneration": self.observed_generation,
            "conditions": [c.to_dict() for c in self.conditions],
            "sourceHash": self.source_hash,
        }


@dataclass
class CertificateBinding:
    """A binding as loaded from the store: identity, spec, status and bookkeeping."""

    id: int
    name: str
    namespace: str
    spec: CertificateBindingSpec
    status: BindingStatus = field(default_factory=BindingStatus)
    generation: int = 1
    resource_version: int = 1
    retry_count: int = 0
    phase: str = "pending"
    raw_spec: Dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CertificateBinding":
        """
        Build a binding from a parsed database row.

        Parsing errors in the spec are left to the caller; a spec that does
        not decode is a ConfigurationError for the controller to report.
        """
        spec = row.get("spec") or {}
        return cls(
            id=row["id"],
            name=row["name"],
            namespace=row.get("namespace", "default"),
            spec=CertificateBindingSpec.from_dict(spec),
            status=BindingStatus.from_dict(row.get("status")),
            generation=row.get("generation", 1),
            resource_version=row.get("resource_version", 1),
            retry_count=row.get("retry_count", 0),
            phase=row.get("phase", "pending"),
            raw_spec=spec,
        )


@dataclass
class SecretMaterial:
    """
    Resolved certificate material plus the identity of the secret it came from.

    Field names follow the conventional encoding: `certificate`,
    `privateKey` and optional `caChain`, each a PEM byte stream.
    """

    name: str
    namespace: str
    certificate: Optional[bytes] = None
    private_key: Optional[bytes] = None
    ca_chain: Optional[bytes] = None
    secret_type: str = TLS_SECRET_TYPE

    @classmethod
    def from_secret_data(
        cls,
        name: str,
        namespace: str,
        data: Dict[str, bytes],
        secret_type: str = TLS_SECRET_TYPE,
    ) -> "SecretMaterial":
        return cls(
            name=name,
            namespace=namespace,
            certificate=data.get(TLS_CERT_KEY),
            private_key=data.get(TLS_PRIVATE_KEY_KEY),
            ca_chain=data.get(CA_CERT_KEY),
            secret_type=secret_type,
        )

    def to_secret_data(self) -> Dict[str, bytes]:
        """Render as kubernetes.io/tls secret data (ca.crt only if present)."""
        data = {
            TLS_CERT_KEY: self.certificate or b"",
            TLS_PRIVATE_KEY_KEY: self.private_key or b"",
        }
        if self.ca_chain:
            data[CA_CERT_KEY] = self.ca_chain
        return data

    def to_dict(self) -> Dict[str, Optional[bytes]]:
        return {
            "certificate": self.certificate,
            "privateKey": self.private_key,
            "caChain": self.ca_chain,
        }

    def content_hash(self) -> str:
        """SHA-256 over certificate, key and chain, used for change detection."""
        digest = hashlib.sha256()
        for part in (self.certificate, self.private_key, self.ca_chain):
            digest.update(part or b"")
            digest.update(b"\x00")
        return digest.hexdigest()
