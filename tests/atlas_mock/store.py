"""Mock credential store with in-memory records."""

from __future__ import annotations

from datetime import UTC, datetime

from org_operator.errors import ClientRequestError, NotFoundError
from org_operator.models import CredentialRecord, SecretMetadata
from org_operator.secrets_store import record_tags

from .calls import CallLog, FailureInjector


class MockCredentialStore(FailureInjector):
    """In-memory implementation of the CredentialStore contract.

    The location returned by put is the record name itself, which keeps
    assertions readable.
    """

    def __init__(self, calls: CallLog | None = None, *, usable_keys: set[str] | None = None) -> None:
        """Initialize the mock.

        Args:
            calls: Shared call log (a private one is created if omitted).
            usable_keys: Encryption key refs validate_key accepts. None
                accepts every key.
        """
        super().__init__()
        self.calls = calls or CallLog()
        self._records: dict[str, CredentialRecord] = {}
        self._tags: dict[str, dict[str, str]] = {}
        self._kms_keys: dict[str, str | None] = {}
        self._scheduled: dict[str, datetime] = {}
        self._usable_keys = usable_keys

    # State access for assertions

    @property
    def record_count(self) -> int:
        return len(self._records)

    def names(self) -> list[str]:
        return sorted(self._records)

    def get_record(self, name: str) -> CredentialRecord | None:
        return self._records.get(name)

    def kms_key_for(self, name: str) -> str | None:
        return self._kms_keys.get(name)

    def add_record(self, name: str, record: CredentialRecord, *, tags: dict[str, str] | None = None) -> None:
        """Pre-populate a record, optionally with explicit tags."""
        self._records[name] = record
        self._tags[name] = tags if tags is not None else record_tags(record)

    def remove_record(self, name: str) -> None:
        """Delete a record out of band."""
        self._records.pop(name, None)
        self._tags.pop(name, None)

    def schedule_deletion(self, name: str) -> None:
        """Mark a record as pending deletion inside its recovery window."""
        self._scheduled[name] = datetime.now(UTC)

    # CredentialStore

    async def put(self, name: str, record: CredentialRecord, kms_key_id: str | None = None) -> str:
        self.calls.record("store.put", name=name, kms_key_id=kms_key_id)
        self.check("put")
        self._records[name] = record
        self._tags[name] = record_tags(record)
        self._kms_keys[name] = kms_key_id
        self._scheduled.pop(name, None)
        return name

    async def get(self, name: str) -> CredentialRecord:
        self.calls.record("store.get", name=name)
        self.check("get")
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(f"secret {name} not found", reason="ResourceNotFoundException")
        return record

    async def describe(self, name: str) -> SecretMetadata:
        self.calls.record("store.describe", name=name)
        self.check("describe")
        if name not in self._records:
            raise NotFoundError(f"secret {name} not found", reason="ResourceNotFoundException")
        return SecretMetadata(
            name=name,
            arn=name,
            tags=dict(self._tags.get(name, {})),
            kms_key_id=self._kms_keys.get(name),
            deleted_date=self._scheduled.get(name),
        )

    async def delete(self, name: str, force_immediate: bool) -> None:
        self.calls.record("store.delete", name=name, force_immediate=force_immediate)
        self.check("delete")
        if name not in self._records:
            raise NotFoundError(f"secret {name} not found", reason="ResourceNotFoundException")
        if force_immediate:
            self.remove_record(name)
            self._scheduled.pop(name, None)
        else:
            self.schedule_deletion(name)

    async def validate_key(self, key_ref: str) -> None:
        self.calls.record("store.validate_key", key_ref=key_ref)
        self.check("validate_key")
        if self._usable_keys is not None and key_ref not in self._usable_keys:
            raise ClientRequestError(f"KMS key {key_ref} is not usable (state: Disabled)")
