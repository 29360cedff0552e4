"""Tests for the finalizer-gated deletion protocol."""

from __future__ import annotations

import pytest

from org_operator.errors import CompensationOutcome, NotFoundError, ServerError
from org_operator.finalizer import (
    FINALIZER,
    DeletionPhase,
    add_finalizer,
    current_phase,
    has_finalizer,
    run_deletion,
)
from org_operator.models import LifecycleState, OrganizationStatus


class Recorder:
    """Deletion callbacks that record their invocations."""

    def __init__(
        self,
        *,
        delete_error: Exception | None = None,
        cleanup: CompensationOutcome | None = None,
    ) -> None:
        self.events: list[str] = []
        self._delete_error = delete_error
        self._cleanup = cleanup or CompensationOutcome(action="delete_credential", target="c")

    async def delete_external(self) -> None:
        self.events.append("delete_external")
        if self._delete_error is not None:
            raise self._delete_error

    async def cleanup_credential(self) -> CompensationOutcome:
        self.events.append("cleanup_credential")
        return self._cleanup

    async def run(self, status: OrganizationStatus):
        return await run_deletion(
            status,
            delete_external=self.delete_external,
            cleanup_credential=self.cleanup_credential,
            resource_name="acme",
        )


class TestRunDeletion:
    """Tests for run_deletion."""

    @pytest.mark.asyncio
    async def test_first_invocation_is_a_checkpoint(self) -> None:
        """Test that without a finalizer only the token is recorded."""
        status = OrganizationStatus(external_id="org-42")
        recorder = Recorder()

        result = await recorder.run(status)

        assert result.phase == DeletionPhase.FINALIZER_PRESENT
        assert result.finished is False
        assert status.finalizer == FINALIZER
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_second_invocation_deletes_in_order(self) -> None:
        status = OrganizationStatus(external_id="org-42")
        recorder = Recorder()
        await recorder.run(status)

        result = await recorder.run(status)

        assert result.phase == DeletionPhase.REMOVED
        assert result.completed_at is not None
        assert recorder.events == ["delete_external", "cleanup_credential"]
        assert status.finalizer is None
        assert status.lifecycle_state == LifecycleState.DELETED
        assert status.deleted_at is not None

    @pytest.mark.asyncio
    async def test_not_found_counts_as_deleted(self) -> None:
        """Test that a repeated delete reporting NotFound still completes."""
        status = OrganizationStatus(external_id="org-42")
        add_finalizer(status)
        recorder = Recorder(delete_error=NotFoundError("gone", status_code=404))

        result = await recorder.run(status)

        assert result.finished is True
        assert result.external_already_absent is True
        assert recorder.events == ["delete_external", "cleanup_credential"]

    @pytest.mark.asyncio
    async def test_external_failure_keeps_finalizer(self) -> None:
        """Test that a failed external delete re-enters the same step on retry."""
        status = OrganizationStatus(external_id="org-42")
        add_finalizer(status)
        recorder = Recorder(delete_error=ServerError("unavailable", status_code=503))

        with pytest.raises(ServerError):
            await recorder.run(status)

        assert has_finalizer(status)
        assert recorder.events == ["delete_external"]
        assert current_phase(status) == DeletionPhase.DELETING

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_block_removal(self) -> None:
        status = OrganizationStatus(external_id="org-42")
        add_finalizer(status)
        failed = CompensationOutcome.failed(
            "delete_credential", "ns/org-42/credentials", ServerError("boom")
        )
        recorder = Recorder(cleanup=failed)

        result = await recorder.run(status)

        assert result.finished is True
        assert result.credential_cleanup is failed
        assert status.finalizer is None

    @pytest.mark.asyncio
    async def test_deleted_at_is_kept_across_retries(self) -> None:
        status = OrganizationStatus(external_id="org-42")
        add_finalizer(status)
        failing = Recorder(delete_error=ServerError("unavailable", status_code=503))
        with pytest.raises(ServerError):
            await failing.run(status)
        first_deleted_at = status.deleted_at

        await Recorder().run(status)

        assert status.deleted_at == first_deleted_at


class TestCurrentPhase:
    @pytest.mark.parametrize(
        ("finalizer", "state", "expected"),
        [
            (None, LifecycleState.AVAILABLE, DeletionPhase.NO_FINALIZER),
            (FINALIZER, LifecycleState.AVAILABLE, DeletionPhase.FINALIZER_PRESENT),
            (FINALIZER, LifecycleState.DELETING, DeletionPhase.DELETING),
            (None, LifecycleState.DELETED, DeletionPhase.REMOVED),
        ],
    )
    def test_phase_from_status(
        self, finalizer: str | None, state: LifecycleState, expected: DeletionPhase
    ) -> None:
        status = OrganizationStatus(finalizer=finalizer, lifecycle_state=state)

        assert current_phase(status) == expected
