"""Reconciliation driver for Organization resources.

This module implements the Kubernetes-style reconciliation pattern:
1. Load desired state from YAML manifests
2. Connect: resolve provider config into clients bound to root credentials
3. Observe the external organization and its credential
4. Create, Update or Delete as the observation requires
5. Persist the observed status, repeat on interval

The engine (external.py) never retries. This driver owns backoff: retryable
errors are re-attempted with exponential backoff, terminal errors stay
visible on the Synced condition and are retried at the normal interval.

Different resources are reconciled in parallel; passes for the same resource
never overlap within one driver.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .config import MAX_RETRY_BACKOFF_SECONDS, RETRY_BACKOFF_BASE_SECONDS, Config
from .connector import Connector
from .errors import CompensationOutcome, ReconcileError
from .external import ExternalClient
from .finalizer import has_finalizer
from .models import (
    ConditionType,
    LifecycleState,
    ObjectMeta,
    Organization,
    OrganizationSpec,
    OrganizationStatus,
)
from .security import describe_connection_details
from .spec_loader import SpecLoadError, load_manifests
from .status_store import StatusStore, StatusStoreError

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    """What a single pass did to the external resource."""

    NONE = "None"
    OBSERVED = "Observed"
    CREATED = "Created"
    UPDATED = "Updated"
    DELETE_PENDING = "DeletePending"
    DELETED = "Deleted"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass for one resource."""

    name: str
    action: ReconcileAction = ReconcileAction.NONE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    exists: bool | None = None
    up_to_date: bool | None = None
    compensation: CompensationOutcome | None = None
    connection_details: dict[str, bytes] = field(default_factory=dict, repr=False)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def retryable(self) -> bool:
        return isinstance(self.error, ReconcileError) and self.error.retryable


@dataclass
class _Backoff:
    failures: int = 0
    next_attempt: datetime | None = None


def backoff_delay_seconds(failures: int) -> float:
    """Exponential backoff with jitter for the n-th consecutive failure."""
    backoff = min(RETRY_BACKOFF_BASE_SECONDS * (2 ** max(failures - 1, 0)), MAX_RETRY_BACKOFF_SECONDS)
    jitter = random.uniform(0, backoff * 0.2)
    return backoff + jitter


class Reconciler:
    """Control loop driving the engine for every declared Organization."""

    def __init__(
        self,
        config: Config,
        connector: Connector,
        status_store: StatusStore,
        manifest_loader: Callable[[], list[Organization]] | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            config: Validated operator configuration.
            connector: Builds engines bound to resolved clients.
            status_store: Persists observed status between passes.
            manifest_loader: Returns the declared resources; defaults to
                loading config.specs_dir.
        """
        self._config = config
        self._connector = connector
        self._status_store = status_store
        self._manifest_loader = manifest_loader or (lambda: load_manifests(config.specs_dir))
        self._shutdown_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._locks: dict[str, asyncio.Lock] = {}
        self._backoff: dict[str, _Backoff] = {}

    @property
    def config(self) -> Config:
        return self._config

    async def run(self) -> None:
        """Run reconciliation passes until shutdown."""
        logger.info(
            "Starting reconciler",
            extra={
                "specs_dir": str(self._config.specs_dir),
                "state_dir": str(self._config.state_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent": self._config.max_concurrent_reconciles,
            },
        )

        while not self._shutdown_event.is_set():
            await self.reconcile_all()

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._next_wakeup_seconds(),
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _next_wakeup_seconds(self) -> float:
        interval = float(self._config.reconcile_interval_seconds)
        now = datetime.now(UTC)
        pending = [b.next_attempt for b in self._backoff.values() if b.next_attempt is not None]
        if not pending:
            return interval
        earliest = (min(pending) - now).total_seconds()
        return max(1.0, min(interval, earliest))

    def _is_due(self, name: str) -> bool:
        state = self._backoff.get(name)
        if state is None or state.next_attempt is None:
            return True
        return datetime.now(UTC) >= state.next_attempt

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every declared resource plus any orphaned status records.

        A status record without a manifest means the manifest was removed:
        the resource is deleted using the last applied spec.
        """
        try:
            organizations = self._manifest_loader()
        except SpecLoadError as e:
            logger.error("Failed to load manifests", extra={"error": str(e)})
            return []

        declared = {org.name for org in organizations}
        pending = list(organizations)

        try:
            persisted = self._status_store.names()
        except OSError as e:
            logger.error("Failed to list status records", extra={"error": str(e)})
            persisted = []

        for name in persisted:
            if name in declared:
                continue
            orphan = self._orphan_resource(name)
            if orphan is not None:
                pending.append(orphan)

        due = [org for org in pending if self._is_due(org.name)]
        results = await asyncio.gather(*(self._reconcile_bounded(org) for org in due))
        return list(results)

    def _orphan_resource(self, name: str) -> Organization | None:
        try:
            record = self._status_store.load(name)
        except StatusStoreError as e:
            logger.error("Failed to load status record", extra={"resource": name, "error": str(e)})
            return None
        if record is None:
            return None
        logger.info("Manifest removed, scheduling deletion", extra={"resource": name})
        return Organization(
            metadata=ObjectMeta(name=name, deletion_timestamp=datetime.now(UTC)),
            spec=record.spec,
            status=record.status,
        )

    async def _reconcile_bounded(self, organization: Organization) -> ReconcileResult:
        async with self._semaphore:
            result = await self.reconcile(organization)
        self._schedule(result)
        self._log_result(result)
        return result

    def _schedule(self, result: ReconcileResult) -> None:
        state = self._backoff.setdefault(result.name, _Backoff())
        now = datetime.now(UTC)

        if result.error is None:
            state.failures = 0
            # A recorded finalizer is picked up on the very next pass.
            state.next_attempt = None
            if result.action == ReconcileAction.DELETED:
                self._backoff.pop(result.name, None)
                self._locks.pop(result.name, None)
            return

        if result.retryable:
            state.failures += 1
            delay = backoff_delay_seconds(state.failures)
        else:
            state.failures = 0
            delay = float(self._config.reconcile_interval_seconds)
        state.next_attempt = now + timedelta(seconds=delay)

    async def reconcile(self, organization: Organization) -> ReconcileResult:
        """Run one reconciliation pass for a resource and persist its status."""
        name = organization.name
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            return await self._reconcile_locked(organization)

    async def _reconcile_locked(self, organization: Organization) -> ReconcileResult:
        name = organization.name
        result = ReconcileResult(name=name)

        try:
            record = self._status_store.load(name)
        except StatusStoreError as e:
            logger.error("Failed to load status record", extra={"resource": name, "error": str(e)})
            result.error = e
            result.end_time = datetime.now(UTC)
            return result

        status = record.status if record is not None else OrganizationStatus()
        spec = organization.spec
        # Deleting an orphan uses the spec that created it.
        if organization.deletion_requested and record is not None:
            spec = record.spec

        if organization.deletion_requested and not self._has_remote_footprint(status):
            result.action = ReconcileAction.DELETED
            self._status_store.delete(name)
            result.end_time = datetime.now(UTC)
            return result

        external: ExternalClient | None = None
        try:
            external = await self._connector.connect(spec)
            if organization.deletion_requested:
                await self._reconcile_deletion(external, spec, status, result)
            else:
                await self._reconcile_present(external, spec, status, result)
            status.set_condition(ConditionType.SYNCED, True, reason="ReconcileSuccess")
        except ReconcileError as e:
            result.error = e
            result.compensation = e.compensation
            status.set_condition(
                ConditionType.SYNCED, False, reason=e.kind.value, message=str(e)
            )
        except Exception as e:
            logger.exception("Unexpected error during reconciliation", extra={"resource": name})
            result.error = e
            status.set_condition(
                ConditionType.SYNCED, False, reason="ReconcileError", message=str(e)
            )
        finally:
            if external is not None:
                await external.aclose()

        self._update_ready(status)
        self._persist(name, spec, status, result)
        result.end_time = datetime.now(UTC)
        return result

    @staticmethod
    def _has_remote_footprint(status: OrganizationStatus) -> bool:
        return bool(status.external_id or status.credential_name or has_finalizer(status))

    async def _reconcile_present(
        self,
        external: ExternalClient,
        spec: OrganizationSpec,
        status: OrganizationStatus,
        result: ReconcileResult,
    ) -> None:
        observation = await external.observe(spec, status)
        result.exists = observation.exists
        result.up_to_date = observation.up_to_date
        if observation.cleanup is not None and not observation.cleanup.skipped:
            result.compensation = observation.cleanup

        if not observation.exists:
            creation = await external.create(spec, status)
            result.action = ReconcileAction.CREATED
            result.connection_details = creation.connection_details
            logger.info(
                "Connection details published",
                extra={
                    "resource": spec.name,
                    "keys": describe_connection_details(creation.connection_details),
                },
            )
            return

        if not observation.up_to_date:
            update = await external.update(spec, status)
            result.action = ReconcileAction.UPDATED if update.changed else ReconcileAction.OBSERVED
            if update.connection_details:
                result.connection_details = update.connection_details
            return

        result.action = ReconcileAction.OBSERVED

    async def _reconcile_deletion(
        self,
        external: ExternalClient,
        spec: OrganizationSpec,
        status: OrganizationStatus,
        result: ReconcileResult,
    ) -> None:
        # The finalizer is recorded before any remote delete, so no observe here.
        result.exists = bool(status.external_id)

        deletion = await external.delete(spec, status)
        if deletion.credential_cleanup is not None and not deletion.credential_cleanup.succeeded:
            result.compensation = deletion.credential_cleanup
        result.action = (
            ReconcileAction.DELETED if deletion.finished else ReconcileAction.DELETE_PENDING
        )

    @staticmethod
    def _update_ready(status: OrganizationStatus) -> None:
        match status.lifecycle_state:
            case LifecycleState.AVAILABLE:
                status.set_condition(ConditionType.READY, True, reason="Available")
            case LifecycleState.CREATING:
                status.set_condition(ConditionType.READY, False, reason="Creating")
            case LifecycleState.DELETING:
                status.set_condition(ConditionType.READY, False, reason="Deleting")
            case LifecycleState.DELETED:
                status.set_condition(ConditionType.READY, False, reason="Deleted")
            case _:
                status.set_condition(ConditionType.READY, False, reason="Unavailable")

    def _persist(
        self,
        name: str,
        spec: OrganizationSpec,
        status: OrganizationStatus,
        result: ReconcileResult,
    ) -> None:
        try:
            if result.action == ReconcileAction.DELETED and not status.credential_name:
                self._status_store.delete(name)
            else:
                self._status_store.save(name, spec, status)
        except (StatusStoreError, OSError) as e:
            logger.error("Failed to persist status", extra={"resource": name, "error": str(e)})
            if result.error is None:
                result.error = e

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "resource": result.name,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "exists": result.exists,
            "up_to_date": result.up_to_date,
        }

        if result.compensation is not None and not result.compensation.succeeded:
            extra["compensation_action"] = result.compensation.action
            extra["compensation_error"] = str(result.compensation.error)

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["retryable"] = result.retryable
            if isinstance(result.error, ReconcileError):
                extra["error_kind"] = result.error.kind.value
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
