"""
Material Validator - checks resolved secret material before it is trusted.

Checks run in order and stop at the first failure:
1. certificate and private key are both present
2. certificate and private key form a matching key pair
3. the certificate decodes to a single well-formed X.509 structure
4. the certificate has not expired
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from certsync.errors import ValidationError
from certsync.models import SecretMaterial, utcnow

logger = logging.getLogger(__name__)

REASON_MISSING_FIELD = "missing_field"
REASON_KEY_MISMATCH = "key_mismatch"
REASON_MALFORMED = "malformed_certificate"
REASON_EXPIRED = "expired"

_PEM_CERT_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = b"-----END CERTIFICATE-----"


def _public_key_der(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _first_pem_certificate(data: bytes) -> Optional[bytes]:
    """Return the first CERTIFICATE PEM block in data, or None."""
    start = data.find(_PEM_CERT_BEGIN)
    if start < 0:
        return None
    end = data.find(_PEM_CERT_END, start)
    if end < 0:
        return None
    return data[start : end + len(_PEM_CERT_END)] + b"\n"


def split_leaf(cert_pem: bytes) -> Tuple[bytes, bytes]:
    """Split a PEM bundle into (leaf, intermediates that follow it)."""
    leaf = _first_pem_certificate(cert_pem)
    if leaf is None:
        return cert_pem, b""
    start = cert_pem.find(_PEM_CERT_BEGIN)
    end = cert_pem.find(_PEM_CERT_END, start) + len(_PEM_CERT_END)
    return leaf, cert_pem[end:].strip()


def _check_key_pair(cert_pem: bytes, key_pem: bytes) -> None:
    # tls.crt may carry the chain after the leaf
    leaf_pem = _first_pem_certificate(cert_pem) or cert_pem
    try:
        cert = x509.load_pem_x509_certificate(leaf_pem)
        private_key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as e:
        raise ValidationError(
            f"certificate and key do not match: {e}", REASON_KEY_MISMATCH
        )

    if _public_key_der(cert.public_key()) != _public_key_der(
        private_key.public_key()
    ):
        raise ValidationError(
            "certificate and key do not match: private key does not "
            "correspond to the certificate public key",
            REASON_KEY_MISMATCH,
        )


def parse_certificate(cert_pem: bytes) -> x509.Certificate:
    """
    Decode the leaf certificate from a PEM byte stream.

    Raises:
        ValidationError: If no well-formed certificate block is present.
    """
    block = _first_pem_certificate(cert_pem)
    if block is None:
        raise ValidationError("failed to decode certificate PEM", REASON_MALFORMED)
    try:
        return x509.load_pem_x509_certificate(block)
    except ValueError as e:
        raise ValidationError(f"failed to parse certificate: {e}", REASON_MALFORMED)


def validate_material(
    material: SecretMaterial, now: Optional[datetime] = None
) -> x509.Certificate:
    """
    Validate resolved secret material.

    Args:
        material: The resolved secret material.
        now: Override for the current time (UTC).

    Returns:
        The parsed leaf certificate.

    Raises:
        ValidationError: With a human-readable cause and a machine reason.
    """
    if not material.certificate:
        raise ValidationError("missing tls.crt in secret", REASON_MISSING_FIELD)
    if not material.private_key:
        raise ValidationError("missing tls.key in secret", REASON_MISSING_FIELD)

    _check_key_pair(material.certificate, material.private_key)

    cert = parse_certificate(material.certificate)

    now = now or utcnow()
    not_after = cert.not_valid_after_utc
    if now > not_after:
        raise ValidationError(
            f"certificate is expired (expired on {not_after.isoformat()})",
            REASON_EXPIRED,
        )

    return cert


def get_certificate_expiry(material: SecretMaterial) -> Optional[datetime]:
    """Best-effort notAfter lookup; None if the certificate cannot be parsed."""
    if not material.certificate:
        return None
    try:
        return parse_certificate(material.certificate).not_valid_after_utc
    except ValidationError as e:
        logger.debug(f"Could not read certificate expiry: {e}")
        return None
