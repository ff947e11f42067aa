"""Unit tests for material.py - certificate material validation."""

from datetime import datetime, timedelta, timezone

import pytest

from certsync.errors import ValidationError
from certsync.material import (
    REASON_EXPIRED,
    REASON_KEY_MISMATCH,
    REASON_MALFORMED,
    REASON_MISSING_FIELD,
    get_certificate_expiry,
    parse_certificate,
    split_leaf,
    validate_material,
)
from certsync.models import SecretMaterial


def _material(cert, key, chain=None):
    return SecretMaterial(
        name="web-tls", namespace="certs", certificate=cert, private_key=key, ca_chain=chain
    )


class TestValidateMaterial:
    """Tests for validate_material."""

    def test_valid_pair(self, tls_pair):
        cert = validate_material(_material(tls_pair["cert"], tls_pair["key"]))
        assert cert.not_valid_after_utc > datetime.now(timezone.utc)

    def test_valid_pair_with_chain_in_cert_field(self, tls_pair, make_certificate):
        issuer = make_certificate("issuer.example.com")
        bundle = tls_pair["cert"] + issuer["cert"]
        cert = validate_material(_material(bundle, tls_pair["key"]))
        assert cert.subject.rfc4514_string() == "CN=example.com"

    def test_missing_certificate(self, tls_pair):
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(None, tls_pair["key"]))
        assert exc_info.value.reason == REASON_MISSING_FIELD
        assert "tls.crt" in exc_info.value.message

    def test_missing_key(self, tls_pair):
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(tls_pair["cert"], b""))
        assert exc_info.value.reason == REASON_MISSING_FIELD
        assert "tls.key" in exc_info.value.message

    def test_key_mismatch(self, tls_pair, make_certificate):
        other = make_certificate("other.example.com")
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(tls_pair["cert"], other["key"]))
        assert exc_info.value.reason == REASON_KEY_MISMATCH
        assert "do not match" in exc_info.value.message

    def test_undecodable_certificate_is_reported_before_expiry(self, tls_pair):
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(b"not a certificate", tls_pair["key"]))
        assert exc_info.value.reason == REASON_KEY_MISMATCH

    def test_expired(self, make_certificate):
        now = datetime.now(timezone.utc)
        expired = make_certificate(
            not_before=now - timedelta(days=30), not_after=now - timedelta(days=1)
        )
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(expired["cert"], expired["key"]))
        assert exc_info.value.reason == REASON_EXPIRED
        assert "expired" in exc_info.value.message

    def test_now_override(self, tls_pair):
        future = datetime.now(timezone.utc) + timedelta(days=365)
        with pytest.raises(ValidationError) as exc_info:
            validate_material(_material(tls_pair["cert"], tls_pair["key"]), now=future)
        assert exc_info.value.reason == REASON_EXPIRED


class TestParseCertificate:
    """Tests for parse_certificate."""

    def test_no_pem_block(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_certificate(b"garbage")
        assert exc_info.value.reason == REASON_MALFORMED
        assert exc_info.value.message == "failed to decode certificate PEM"

    def test_corrupt_pem_body(self):
        corrupt = b"-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n"
        with pytest.raises(ValidationError) as exc_info:
            parse_certificate(corrupt)
        assert exc_info.value.reason == REASON_MALFORMED


class TestSplitLeaf:
    """Tests for split_leaf."""

    def test_leaf_and_intermediates(self, tls_pair, make_certificate):
        issuer = make_certificate("issuer.example.com")["cert"]
        leaf, rest = split_leaf(tls_pair["cert"] + issuer)
        assert leaf == tls_pair["cert"]
        assert rest == issuer.strip()

    def test_single_certificate(self, tls_pair):
        assert split_leaf(tls_pair["cert"]) == (tls_pair["cert"], b"")

    def test_not_pem(self):
        assert split_leaf(b"garbage") == (b"garbage", b"")


class TestGetCertificateExpiry:
    """Tests for get_certificate_expiry."""

    def test_returns_not_after(self, tls_pair):
        expiry = get_certificate_expiry(_material(tls_pair["cert"], tls_pair["key"]))
        assert expiry == tls_pair["not_after"].replace(microsecond=0)

    def test_none_for_unparseable(self):
        assert get_certificate_expiry(_material(b"junk", b"key")) is None
        assert get_certificate_expiry(_material(None, b"key")) is None
