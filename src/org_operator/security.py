"""Credential hygiene for logs.

Raw API key material is surfaced exactly once, as connection details returned
by Create, and must never reach a log record.

SECURITY INVARIANTS:
1. Values of sensitive keys in log extras are masked before formatting
2. Connection details are never logged, only their key names
3. Masked values keep at most a short prefix for correlation
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

# Log record attributes and mapping keys whose values are never logged verbatim
SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "privateKey",
        "private_key",
        "publicKey",
        "public_key",
        "secret_string",
        "SecretString",
        "connection_details",
        "password",
        "token",
    }
)

MASK = "****"
VISIBLE_PREFIX_LENGTH = 4


def mask_secret(value: Any) -> str:
    """Mask a secret, keeping a short prefix for correlation.

    Values too short to leave anything hidden are fully masked.
    """
    text = str(value) if value is not None else ""
    if len(text) <= VISIBLE_PREFIX_LENGTH * 2:
        return MASK
    return text[:VISIBLE_PREFIX_LENGTH] + MASK


def redact(value: Any) -> Any:
    """Return a copy of a mapping (recursively) with sensitive values masked."""
    if isinstance(value, Mapping):
        return {
            k: (mask_secret(v) if k in SENSITIVE_KEYS else redact(v)) for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact(v) for v in value]
    return value


def describe_connection_details(details: Mapping[str, bytes]) -> list[str]:
    """Loggable summary of connection details: key names only."""
    return sorted(details.keys())


class SecretRedactionFilter(logging.Filter):
    """Mask sensitive extras on every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in SENSITIVE_KEYS:
            if key in record.__dict__:
                record.__dict__[key] = mask_secret(record.__dict__[key])
        for key, value in list(record.__dict__.items()):
            if isinstance(value, Mapping):
                record.__dict__[key] = redact(value)
        return True
