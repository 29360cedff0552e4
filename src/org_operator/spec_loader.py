"""Manifest and provider config loading with validation.

All file reads enforce size limits, and validation happens at the boundary
so malformed manifests never reach the engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFESTS
from .models import Organization, ProviderConfig

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"File not found: {path}")

    # Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"File exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"File must contain a YAML mapping: {path}")
    return raw_data


def _validate(model: type[ModelT], data: dict[str, Any], path: Path) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_manifest(path: Path) -> Organization:
    """Load and validate one Organization manifest.

    Any status section in the file is ignored: status is owned by the engine
    and persisted separately.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = _read_yaml_mapping(path)
    raw_data.pop("status", None)
    organization = _validate(Organization, raw_data, path)
    logger.debug("Loaded manifest '%s' from %s", organization.name, path)
    return organization


def load_manifests(specs_dir: Path) -> list[Organization]:
    """Load every Organization manifest in a directory.

    Raises:
        SpecLoadError: If any manifest is invalid or names collide.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory does not exist: {specs_dir}")

    paths = sorted(p for p in specs_dir.iterdir() if p.suffix in MANIFEST_SUFFIXES)
    if len(paths) > MAX_MANIFESTS:
        raise SpecLoadError(f"Too many manifests in {specs_dir}: {len(paths)} > {MAX_MANIFESTS}")

    organizations: list[Organization] = []
    seen: dict[str, Path] = {}
    for path in paths:
        organization = load_manifest(path)
        if organization.name in seen:
            raise SpecLoadError(
                f"Duplicate Organization name '{organization.name}' in {path} "
                f"and {seen[organization.name]}"
            )
        seen[organization.name] = path
        organizations.append(organization)

    logger.info("Loaded %d manifests from %s", len(organizations), specs_dir)
    return organizations


def find_manifest(specs_dir: Path, name: str) -> Organization:
    """Load the manifest for one named Organization.

    Raises:
        SpecLoadError: If no manifest declares the name.
    """
    for organization in load_manifests(specs_dir):
        if organization.name == name:
            return organization
    raise SpecLoadError(f"No Organization named '{name}' in {specs_dir}")


def load_provider_config(path: Path) -> ProviderConfig:
    """Load the provider config.

    Supports both a flat document and a Kubernetes-style wrapper with
    apiVersion/kind/metadata/spec.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    raw_data = _read_yaml_mapping(path)

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    provider_config = _validate(ProviderConfig, spec_data, path)
    logger.info("Loaded provider config '%s' from %s", provider_config.name, path)
    return provider_config
