"""Persistence of observed status between reconciliation passes.

One YAML document per resource holds the last applied spec and the observed
status. The spec snapshot lets the driver finish deleting a resource whose
manifest has been removed.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_STATUS_FILE_SIZE_BYTES
from .models import OrganizationSpec, OrganizationStatus

logger = logging.getLogger(__name__)

STATUS_FILE_SUFFIX = ".status.yaml"
VALID_RESOURCE_NAME_PATTERN = r"^[a-z0-9]([a-z0-9.-]{0,251}[a-z0-9])?$"


class StatusStoreError(Exception):
    """Raised when a status record cannot be read or written."""

    pass


@dataclass
class StatusRecord:
    name: str
    spec: OrganizationSpec
    status: OrganizationStatus


class StatusStore:
    """File-backed store of StatusRecords, one file per resource."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, name: str) -> Path:
        # Names become file names; reject anything that could escape state_dir.
        if not re.match(VALID_RESOURCE_NAME_PATTERN, name):
            raise StatusStoreError(f"Invalid resource name: {name!r}")
        return self._state_dir / f"{name}{STATUS_FILE_SUFFIX}"

    def load(self, name: str) -> StatusRecord | None:
        """Load the record for a resource, or None if none was persisted."""
        path = self._path(name)
        if not path.exists():
            return None

        if path.stat().st_size > MAX_STATUS_FILE_SIZE_BYTES:
            raise StatusStoreError(f"Status file exceeds maximum size: {path}")

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise StatusStoreError(f"Failed to read status file {path}: {e}") from e

        if not isinstance(data, dict):
            raise StatusStoreError(f"Status file must contain a YAML mapping: {path}")

        try:
            return StatusRecord(
                name=name,
                spec=OrganizationSpec.model_validate(data.get("spec", {})),
                status=OrganizationStatus.model_validate(data.get("status", {})),
            )
        except ValidationError as e:
            raise StatusStoreError(f"Invalid status file {path}: {e}") from e

    def save(self, name: str, spec: OrganizationSpec, status: OrganizationStatus) -> None:
        """Write the record atomically (temp file + rename)."""
        path = self._path(name)
        self._state_dir.mkdir(parents=True, exist_ok=True)

        document = {
            "name": name,
            "spec": spec.model_dump(mode="json", by_alias=True),
            "status": status.model_dump(mode="json", by_alias=True),
        }

        fd, tmp_name = tempfile.mkstemp(dir=self._state_dir, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(document, handle, sort_keys=False)
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StatusStoreError(f"Failed to write status file {path}: {e}") from e

    def delete(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def names(self) -> list[str]:
        """Names of all resources with a persisted record."""
        if not self._state_dir.is_dir():
            return []
        return sorted(
            p.name[: -len(STATUS_FILE_SUFFIX)]
            for p in self._state_dir.iterdir()
            if p.name.endswith(STATUS_FILE_SUFFIX)
        )
