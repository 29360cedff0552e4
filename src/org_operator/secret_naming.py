"""Canonical credential store key names.

Observe, Update and Delete must find the record a prior Create wrote, so the
name is a pure function of the resource identity and the operator override.
"""

from __future__ import annotations

from .models import OrganizationSpec

DEFAULT_SECRET_NAMESPACE = "product/mongodb"
CREDENTIALS_SUFFIX = "credentials"

# Secrets Manager limit on secret names
MAX_SECRET_NAME_LENGTH = 512


def normalize_namespace(namespace: str) -> str:
    """Strip surrounding slashes so "ns", "/ns/" and "ns/" are equivalent."""
    return namespace.strip().strip("/")


def resolve_secret_name(
    spec: OrganizationSpec,
    *,
    namespace: str = DEFAULT_SECRET_NAMESPACE,
    external_id: str | None = None,
) -> str:
    """Derive the credential store key for an organization.

    Args:
        spec: Desired organization spec.
        namespace: Fixed namespace segment prefixed to every name.
        external_id: Identifier assigned by the organization API, if known.

    Returns:
        ``{namespace}/{secretName}`` when the spec overrides the name,
        otherwise ``{namespace}/{external_id or spec.name}/credentials``.

    Raises:
        ValueError: If the resulting name exceeds the store limit.
    """
    prefix = normalize_namespace(namespace)
    override = (spec.secrets.secret_name or "").strip().strip("/")

    if override:
        leaf = override
    else:
        leaf = f"{external_id or spec.name}/{CREDENTIALS_SUFFIX}"

    name = f"{prefix}/{leaf}" if prefix else leaf

    if len(name) > MAX_SECRET_NAME_LENGTH:
        raise ValueError(
            f"Secret name exceeds maximum length of {MAX_SECRET_NAME_LENGTH}: {name[:64]}..."
        )
    return name
