"""
Error taxonomy for the reconciliation engine.

Every binding-specific failure is expressed as one of these types so the
controller can map it onto a condition and a next action instead of letting
it escape the control loop.
"""

from typing import Optional


class CertSyncError(Exception):
    """Base class for all certsync errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(CertSyncError):
    """The binding spec is unusable until it is edited (no retry benefit)."""


class SourceUnavailable(CertSyncError):
    """The source secret does not exist yet. Expected while issuance is pending."""

    def __init__(self, namespace: str, name: str):
        self.namespace = namespace
        self.name = name
        super().__init__(f"Source secret {namespace}/{name} not yet available")


class SourceError(CertSyncError):
    """Reading the source or upserting the issuance request failed."""


class ValidationError(CertSyncError):
    """The resolved material is not a valid, unexpired TLS key pair."""

    def __init__(self, message: str, reason: str = "invalid_tls"):
        self.reason = reason
        super().__init__(message)


class DestinationError(CertSyncError):
    """A destination backend rejected a synchronize or remove call."""

    def __init__(self, message: str, destination: Optional[str] = None):
        self.destination = destination
        super().__init__(message)


class StatusWriteConflict(CertSyncError):
    """The binding changed underneath a status write (stale resource_version)."""

    def __init__(self, binding_id: int, expected_version: int):
        self.binding_id = binding_id
        self.expected_version = expected_version
        super().__init__(
            f"Status write for binding {binding_id} conflicted "
            f"(expected resource_version {expected_version})"
        )
