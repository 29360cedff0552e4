"""Finalizer-gated deletion protocol.

Deletion is cooperative and crash-safe:

    NoFinalizer -> FinalizerPresent -> Deleting -> Removed

1. Without a finalizer token the first call only records it. No remote call
   is made, so the driver cannot drop the resource before cleanup starts.
2. With the token present the external resource is deleted. NotFound counts
   as success. Any other error propagates and the token stays, so a retry
   re-enters this same step.
3. The credential cleanup is best-effort and never blocks removal.
4. The token is removed and the protocol reports Removed.

The protocol is generic over the two cleanup callbacks so other resource kinds
sharing the driver contract can reuse it.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .errors import CompensationOutcome, NotFoundError
from .models import LifecycleState, OrganizationStatus

logger = logging.getLogger(__name__)

FINALIZER = "organization.atlas-operator.io/cleanup"


class DeletionPhase(str, Enum):
    NO_FINALIZER = "NoFinalizer"
    FINALIZER_PRESENT = "FinalizerPresent"
    DELETING = "Deleting"
    REMOVED = "Removed"


@dataclass
class DeletionResult:
    """Outcome of one invocation of the deletion protocol.

    Attributes:
        phase: Phase reached by this invocation.
        external_already_absent: True if the external delete reported NotFound.
        credential_cleanup: Outcome of the best-effort credential cleanup.
    """

    phase: DeletionPhase
    external_already_absent: bool = False
    credential_cleanup: CompensationOutcome | None = None
    completed_at: datetime | None = field(default=None)

    @property
    def finished(self) -> bool:
        return self.phase == DeletionPhase.REMOVED


def has_finalizer(status: OrganizationStatus) -> bool:
    return status.finalizer == FINALIZER


def add_finalizer(status: OrganizationStatus) -> None:
    status.finalizer = FINALIZER


def remove_finalizer(status: OrganizationStatus) -> None:
    status.finalizer = None


def current_phase(status: OrganizationStatus) -> DeletionPhase:
    """Derive the deletion phase from the persisted status."""
    if has_finalizer(status):
        if status.lifecycle_state == LifecycleState.DELETING:
            return DeletionPhase.DELETING
        return DeletionPhase.FINALIZER_PRESENT
    if status.lifecycle_state == LifecycleState.DELETED:
        return DeletionPhase.REMOVED
    return DeletionPhase.NO_FINALIZER


async def run_deletion(
    status: OrganizationStatus,
    *,
    delete_external: Callable[[], Awaitable[None]],
    cleanup_credential: Callable[[], Awaitable[CompensationOutcome]],
    resource_name: str = "",
) -> DeletionResult:
    """Advance the deletion protocol by one invocation.

    Args:
        status: Observed status; mutated in place.
        delete_external: Deletes the external resource. May raise NotFoundError.
        cleanup_credential: Best-effort credential cleanup. Must not raise.
        resource_name: Used in log records only.

    Returns:
        DeletionResult describing the phase reached.

    Raises:
        ReconcileError: If the external delete failed with anything but NotFound.
    """
    if not has_finalizer(status):
        add_finalizer(status)
        logger.info(
            "Finalizer recorded, deferring external deletion",
            extra={"resource": resource_name, "finalizer": FINALIZER},
        )
        return DeletionResult(phase=DeletionPhase.FINALIZER_PRESENT)

    status.lifecycle_state = LifecycleState.DELETING
    if status.deleted_at is None:
        status.deleted_at = datetime.now(UTC)

    already_absent = False
    try:
        await delete_external()
    except NotFoundError:
        already_absent = True
        logger.info(
            "External resource already absent, continuing cleanup",
            extra={"resource": resource_name, "external_id": status.external_id},
        )

    cleanup = await cleanup_credential()
    if not cleanup.succeeded:
        logger.warning(
            "Credential cleanup failed, removing finalizer anyway",
            extra={
                "resource": resource_name,
                "credential_name": cleanup.target,
                "error": str(cleanup.error),
            },
        )

    remove_finalizer(status)
    status.lifecycle_state = LifecycleState.DELETED
    logger.info(
        "Finalizer removed, deletion complete",
        extra={"resource": resource_name, "already_absent": already_absent},
    )
    return DeletionResult(
        phase=DeletionPhase.REMOVED,
        external_already_absent=already_absent,
        credential_cleanup=cleanup,
        completed_at=datetime.now(UTC),
    )
