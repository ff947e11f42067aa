"""Unit tests for validation.py - binding spec validation."""

from certsync.validation import validate_binding_spec, validate_spec_against_schema

MANAGED = {
    "certificate": {
        "dnsNames": ["web.example.com"],
        "issuerRef": {"name": "letsencrypt", "kind": "ClusterIssuer"},
        "duration": "2160h",
        "renewBefore": "360h",
    },
    "destinationRules": [
        {"name": "vault", "type": "AzureKeyVault", "config": {"keyVaultName": "kv"}},
        {"name": "acm", "type": "AWSACM", "config": {"region": "us-east-1"}},
    ],
    "syncPolicy": {"maxRetries": 3, "retryInterval": "30s"},
}


class TestValidateSpecAgainstSchema:
    """Tests for validate_spec_against_schema."""

    def test_valid_managed_spec(self):
        assert validate_spec_against_schema(MANAGED) == (True, None)

    def test_valid_reference_spec(self, sample_spec):
        assert validate_spec_against_schema(sample_spec) == (True, None)

    def test_unknown_top_level_field(self, sample_spec):
        is_valid, error = validate_spec_against_schema({**sample_spec, "extra": 1})
        assert is_valid is False
        assert "(root)" in error
        assert "extra" in error

    def test_rule_missing_type(self):
        spec = {
            "sourceSecretRef": {"name": "web-tls"},
            "destinationRules": [{"name": "a"}],
        }
        is_valid, error = validate_spec_against_schema(spec)
        assert is_valid is False
        assert "destinationRules.0" in error
        assert "'type' is a required property" in error

    def test_negative_max_retries(self, sample_spec):
        spec = {**sample_spec, "syncPolicy": {"maxRetries": -1}}
        is_valid, error = validate_spec_against_schema(spec)
        assert is_valid is False
        assert "syncPolicy.maxRetries" in error

    def test_wrong_types(self, sample_spec):
        spec = {**sample_spec, "dryRun": "yes"}
        is_valid, error = validate_spec_against_schema(spec)
        assert is_valid is False
        assert "dryRun" in error

    def test_certificate_requires_issuer(self):
        spec = {"certificate": {"dnsNames": ["a.example.com"]}}
        is_valid, error = validate_spec_against_schema(spec)
        assert is_valid is False
        assert "issuerRef" in error

    def test_invalid_secret_name(self):
        spec = {
            "certificate": {
                "dnsNames": ["a.example.com"],
                "issuerRef": {"name": "ca"},
                "secretName": "Not_Valid",
            }
        }
        is_valid, _ = validate_spec_against_schema(spec)
        assert is_valid is False

    def test_custom_schema(self):
        schema = {"type": "object", "required": ["x"]}
        assert validate_spec_against_schema({"x": 1}, schema) == (True, None)
        assert validate_spec_against_schema({}, schema)[0] is False


class TestValidateBindingSpec:
    """Tests for validate_binding_spec."""

    def test_valid(self, sample_spec):
        assert validate_binding_spec(MANAGED) == (True, None)
        assert validate_binding_spec(sample_spec) == (True, None)

    def test_unknown_destination_type_accepted(self, sample_spec):
        spec = {
            **sample_spec,
            "destinationRules": [{"name": "x", "type": "Foo", "config": {}}],
        }
        assert validate_binding_spec(spec) == (True, None)

    def test_neither_source(self):
        is_valid, error = validate_binding_spec({"destinationRules": []})
        assert is_valid is False
        assert error == "Exactly one of certificate or sourceSecretRef must be set"

    def test_both_sources(self, sample_spec):
        spec = {**MANAGED, "sourceSecretRef": sample_spec["sourceSecretRef"]}
        is_valid, error = validate_binding_spec(spec)
        assert is_valid is False
        assert "Exactly one of" in error

    def test_duplicate_rule_names(self, sample_spec):
        rule = sample_spec["destinationRules"][0]
        spec = {**sample_spec, "destinationRules": [rule, dict(rule)]}
        is_valid, error = validate_binding_spec(spec)
        assert is_valid is False
        assert error == "Duplicate destination rule name: mirror"

    def test_invalid_retry_interval(self, sample_spec):
        spec = {**sample_spec, "syncPolicy": {"retryInterval": "ten seconds"}}
        is_valid, error = validate_binding_spec(spec)
        assert is_valid is False
        assert error.startswith("syncPolicy.retryInterval: invalid duration")

    def test_invalid_certificate_duration(self):
        spec = {
            **MANAGED,
            "certificate": {**MANAGED["certificate"], "renewBefore": "15d"},
        }
        is_valid, error = validate_binding_spec(spec)
        assert is_valid is False
        assert error.startswith("certificate.renewBefore")

    def test_schema_errors_reported_first(self):
        is_valid, error = validate_binding_spec({"bogus": True})
        assert is_valid is False
        assert "bogus" in error
