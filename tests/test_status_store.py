"""Tests for status persistence."""

from __future__ import annotations

from pathlib import Path

import pytest
from atlas_mock import make_spec

from org_operator.models import ConditionType, LifecycleState, OrganizationStatus
from org_operator.status_store import StatusStore, StatusStoreError


@pytest.fixture
def status_store(tmp_path: Path) -> StatusStore:
    return StatusStore(tmp_path / "state")


class TestStatusStore:
    """Tests for StatusStore."""

    def test_missing_record(self, status_store: StatusStore) -> None:
        assert status_store.load("acme") is None

    def test_save_and_load(self, status_store: StatusStore) -> None:
        status = OrganizationStatus(
            external_id="org-42",
            credential_name="ns/org-42/credentials",
            lifecycle_state=LifecycleState.AVAILABLE,
        )
        status.set_condition(ConditionType.READY, True, reason="Available")

        status_store.save("acme", make_spec(), status)
        record = status_store.load("acme")

        assert record is not None
        assert record.spec == make_spec()
        assert record.status.external_id == "org-42"
        assert record.status.lifecycle_state == LifecycleState.AVAILABLE
        ready = record.status.get_condition(ConditionType.READY)
        assert ready is not None and ready.status is True

    def test_file_uses_wire_names(self, status_store: StatusStore) -> None:
        status_store.save("acme", make_spec(), OrganizationStatus(external_id="org-42"))

        content = (status_store.state_dir / "acme.status.yaml").read_text()

        assert "externalId: org-42" in content
        assert "ownerId: owner-1" in content

    def test_save_leaves_no_temp_files(self, status_store: StatusStore) -> None:
        status_store.save("acme", make_spec(), OrganizationStatus())
        status_store.save("acme", make_spec(), OrganizationStatus(external_id="org-42"))

        assert [p.name for p in status_store.state_dir.iterdir()] == ["acme.status.yaml"]

    def test_names_and_delete(self, status_store: StatusStore) -> None:
        status_store.save("globex", make_spec("globex"), OrganizationStatus())
        status_store.save("acme", make_spec(), OrganizationStatus())

        assert status_store.names() == ["acme", "globex"]

        status_store.delete("acme")
        status_store.delete("acme")

        assert status_store.names() == ["globex"]

    @pytest.mark.parametrize("name", ["../escape", "UPPER", "", "a/b"])
    def test_invalid_names_rejected(self, status_store: StatusStore, name: str) -> None:
        with pytest.raises(StatusStoreError, match="Invalid resource name"):
            status_store.load(name)

    def test_corrupt_file(self, status_store: StatusStore) -> None:
        status_store.state_dir.mkdir(parents=True)
        (status_store.state_dir / "acme.status.yaml").write_text("- not\n- a mapping\n")

        with pytest.raises(StatusStoreError, match="YAML mapping"):
            status_store.load("acme")

    def test_names_without_directory(self, status_store: StatusStore) -> None:
        assert status_store.names() == []
