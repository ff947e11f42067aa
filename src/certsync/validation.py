"""
Binding Validation - JSON Schema and semantic checks for binding specs.

The schema covers shape; the semantic pass covers rules a schema expresses
poorly (exactly one source, unique destination names, parseable durations).
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

from certsync.models import parse_duration

logger = logging.getLogger(__name__)

_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"

BINDING_SPEC_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "certificate": {
            "type": "object",
            "properties": {
                "dnsNames": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1,
                },
                "issuerRef": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "kind": {"type": "string"},
                        "group": {"type": "string"},
                    },
                    "required": ["name"],
                },
                "commonName": {"type": "string"},
                "secretName": {"type": "string", "pattern": _NAME_PATTERN},
                "duration": {"type": "string"},
                "renewBefore": {"type": "string"},
            },
            "required": ["dnsNames", "issuerRef"],
        },
        "sourceSecretRef": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "namespace": {"type": "string"},
            },
            "required": ["name"],
        },
        "destinationRules": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "type": {"type": "string", "minLength": 1},
                    "config": {"type": "object"},
                },
                "required": ["name", "type"],
            },
        },
        "dryRun": {"type": "boolean"},
        "syncPolicy": {
            "type": "object",
            "properties": {
                "maxRetries": {"type": "integer", "minimum": 0},
                "retryInterval": {"type": "string"},
                "runOnce": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "cleanupOnDelete": {"type": "boolean"},
    },
    "additionalProperties": False,
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Optional[Dict[str, Any]] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate a binding spec against a JSON Schema.

    Args:
        spec: The binding spec to validate
        schema: Schema to validate against (defaults to BINDING_SPEC_SCHEMA)

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema or BINDING_SPEC_SCHEMA)
    errors = sorted(
        validator.iter_errors(spec), key=lambda e: [str(p) for p in e.absolute_path]
    )

    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")

    return False, "; ".join(error_messages)


def validate_binding_spec(spec: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Validate a binding spec: schema first, then semantic rules.

    Args:
        spec: The binding spec in wire form

    Returns:
        Tuple of (is_valid, error_message)
    """
    valid, error = validate_spec_against_schema(spec)
    if not valid:
        return False, error

    has_certificate = spec.get("certificate") is not None
    has_source_ref = spec.get("sourceSecretRef") is not None
    if has_certificate == has_source_ref:
        return False, "Exactly one of certificate or sourceSecretRef must be set"

    seen = set()
    for rule in spec.get("destinationRules") or []:
        if rule["name"] in seen:
            return False, f"Duplicate destination rule name: {rule['name']}"
        seen.add(rule["name"])

    sync_policy = spec.get("syncPolicy") or {}
    certificate = spec.get("certificate") or {}
    durations = [
        ("syncPolicy.retryInterval", sync_policy.get("retryInterval")),
        ("certificate.duration", certificate.get("duration")),
        ("certificate.renewBefore", certificate.get("renewBefore")),
    ]
    for path, value in durations:
        try:
            parse_duration(value)
        except ValueError:
            return False, f"{path}: invalid duration {value!r}"

    return True, None
