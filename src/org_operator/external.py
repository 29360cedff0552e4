"""External client state machine for the paired (Organization, Credential) entity.

Each operation is a function of (desired spec, observed status, remote state)
to (new observed status, outcome). The status is mutated in place and handed
back to the driver, which persists it and supplies it again on the next pass.

Steps inside one operation are awaited strictly in sequence, so a failure in
step N may assume steps 1..N-1 completed. No state is shared between calls.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .atlas_client import OrganizationAPI
from .errors import (
    CompensationOutcome,
    ConfigurationInvalidError,
    NotFoundError,
    ReconcileError,
)
from .finalizer import DeletionResult, has_finalizer, run_deletion
from .models import (
    AtlasApiKey,
    CreateOrganizationRequest,
    CredentialRecord,
    LifecycleState,
    OrganizationSpec,
    OrganizationStatus,
    SecretMetadata,
)
from .secret_naming import DEFAULT_SECRET_NAMESPACE, resolve_secret_name
from .secrets_store import CredentialStore, record_tags

logger = logging.getLogger(__name__)

# Connection detail keys surfaced once at creation
CONNECTION_PUBLIC_KEY = "publicKey"
CONNECTION_PRIVATE_KEY = "privateKey"
CONNECTION_SECRET_ARN = "secretARN"


@dataclass
class ExternalObservation:
    """Result of Observe.

    Attributes:
        exists: Whether the external organization exists.
        up_to_date: Whether the credential matches the declared intent.
        cleanup: Outcome of orphaned-credential cleanup when the organization
            was found missing.
    """

    exists: bool
    up_to_date: bool = True
    cleanup: CompensationOutcome | None = None


@dataclass
class ExternalCreation:
    """Result of Create. Connection details are surfaced exactly once."""

    connection_details: dict[str, bytes] = field(default_factory=dict, repr=False)


@dataclass
class ExternalUpdate:
    changed: bool = False
    connection_details: dict[str, bytes] = field(default_factory=dict, repr=False)


class ExternalClient(abc.ABC):
    """Contract every resource kind implements for the driver.

    The driver is generic over this interface and never branches on the
    concrete kind.
    """

    @abc.abstractmethod
    async def observe(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalObservation: ...

    @abc.abstractmethod
    async def create(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalCreation: ...

    @abc.abstractmethod
    async def update(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalUpdate: ...

    @abc.abstractmethod
    async def delete(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> DeletionResult: ...

    async def aclose(self) -> None:
        """Release per-pass client resources."""


def connection_details(public_key: str, private_key: str, location: str) -> dict[str, bytes]:
    return {
        CONNECTION_PUBLIC_KEY: public_key.encode(),
        CONNECTION_PRIVATE_KEY: private_key.encode(),
        CONNECTION_SECRET_ARN: location.encode(),
    }


class OrganizationExternal(ExternalClient):
    """Reconciles an organization and the credential record derived from it."""

    def __init__(
        self,
        organizations: OrganizationAPI,
        credentials: CredentialStore,
        *,
        secret_namespace: str = DEFAULT_SECRET_NAMESPACE,
        force_delete_secrets: bool = True,
    ) -> None:
        """Initialize with already-constructed clients.

        Args:
            organizations: Organization API client.
            credentials: Credential store client.
            secret_namespace: Namespace segment prefixed to credential names.
            force_delete_secrets: Delete credentials without a recovery window.
        """
        self._organizations = organizations
        self._credentials = credentials
        self._secret_namespace = secret_namespace
        self._force_delete_secrets = force_delete_secrets

    async def aclose(self) -> None:
        close = getattr(self._organizations, "aclose", None)
        if close is not None:
            await close()

    def credential_name(self, spec: OrganizationSpec, status: OrganizationStatus) -> str:
        """Name of the credential record for this resource.

        The recorded name wins, so a changed namespace or override never
        orphans a record a previous Create wrote.
        """
        if status.credential_name:
            return status.credential_name
        return resolve_secret_name(
            spec,
            namespace=self._secret_namespace,
            external_id=status.external_id or None,
        )

    # -------------------------------------------------------------------------
    # Observe
    # -------------------------------------------------------------------------

    async def observe(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalObservation:
        """Determine whether the organization exists and is up to date.

        Raises:
            ReconcileError: Any organization lookup failure other than NotFound.
                Existence is indeterminate in that case.
        """
        if not status.external_id:
            if not has_finalizer(status):
                status.lifecycle_state = LifecycleState.ABSENT
            return ExternalObservation(exists=False)

        org_id = status.external_id
        try:
            org = await self._organizations.get(org_id)
        except NotFoundError:
            org = None

        if org is None or org.is_deleted:
            logger.warning(
                "Organization no longer exists remotely",
                extra={"org_id": org_id, "org_name": spec.name},
            )
            cleanup = await self._cleanup_credential(spec, status, reason="orphaned")
            status.external_id = ""
            status.org_name = ""
            if cleanup.succeeded:
                status.credential_name = ""
                status.credential_location = ""
                status.encryption_key_ref = None
            if not has_finalizer(status):
                status.lifecycle_state = LifecycleState.ABSENT
            return ExternalObservation(exists=False, cleanup=cleanup)

        status.org_name = org.name or status.org_name
        if has_finalizer(status):
            status.lifecycle_state = LifecycleState.DELETING
        else:
            status.lifecycle_state = LifecycleState.AVAILABLE

        up_to_date = await self._observe_credential(spec, status)
        return ExternalObservation(exists=True, up_to_date=up_to_date)

    async def _observe_credential(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> bool:
        """Best-effort existence and drift check of the credential record."""
        name = self.credential_name(spec, status)
        try:
            metadata = await self._credentials.describe(name)
        except NotFoundError:
            logger.warning(
                "Credential record missing for existing organization",
                extra={"org_id": status.external_id, "credential_name": name},
            )
            return False
        except ReconcileError as e:
            logger.info(
                "Credential describe failed, skipping drift check",
                extra={"credential_name": name, "error": str(e), "error_kind": e.kind.value},
            )
            return True

        if metadata.scheduled_for_deletion:
            logger.warning(
                "Credential record is scheduled for deletion",
                extra={"org_id": status.external_id, "credential_name": name},
            )
            return False

        status.credential_name = name
        if metadata.arn:
            status.credential_location = metadata.arn
        return self._credential_matches(spec, metadata)

    @staticmethod
    def _credential_matches(spec: OrganizationSpec, metadata: SecretMetadata) -> bool:
        # Records written without descriptive tags cannot drift-check; treat as current.
        if "Description" not in metadata.tags and "Roles" not in metadata.tags:
            return True
        expected = record_tags(
            CredentialRecord(
                public_key="",
                private_key="",
                description=spec.api_key.description,
                roles=list(spec.api_key.roles),
            )
        )
        return (
            metadata.tags.get("Description", "") == expected["Description"]
            and metadata.tags.get("Roles", "") == expected["Roles"]
        )

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalCreation:
        """Create the organization, then store its credential.

        Raises:
            ConfigurationInvalidError: Required spec fields are missing.
            ReconcileError: Key validation, organization creation or credential
                storage failed. A storage failure carries the outcome of the
                compensating organization delete in ``compensation``.
        """
        self._validate_spec(spec)

        kms_key_id = spec.secrets.kms_key_id
        if kms_key_id:
            await self._credentials.validate_key(kms_key_id)

        created = await self._organizations.create(
            CreateOrganizationRequest(
                name=spec.name,
                owner_id=spec.owner_id,
                api_key=AtlasApiKey.from_config(spec.api_key),
            )
        )
        org_id = created.organization.id
        status.external_id = org_id
        status.org_name = created.organization.name or spec.name
        logger.info("Organization created", extra={"org_id": org_id, "org_name": status.org_name})

        name = resolve_secret_name(spec, namespace=self._secret_namespace, external_id=org_id)
        now = datetime.now(UTC)
        record = CredentialRecord(
            public_key=created.api_key.public_key,
            private_key=created.api_key.private_key,
            description=spec.api_key.description,
            org_id=org_id,
            roles=list(spec.api_key.roles),
            created_at=now,
        )

        try:
            location = await self._credentials.put(name, record, kms_key_id)
        except ReconcileError as e:
            compensation = await self._compensate_organization(org_id)
            if compensation.succeeded:
                status.external_id = ""
                status.org_name = ""
                status.lifecycle_state = LifecycleState.ABSENT
            e.compensation = compensation
            logger.error(
                "Credential storage failed after organization creation",
                extra={
                    "org_id": org_id,
                    "credential_name": name,
                    "error": str(e),
                    "compensated": compensation.succeeded,
                },
            )
            raise

        status.credential_name = name
        status.credential_location = location
        status.encryption_key_ref = kms_key_id
        status.created_at = now
        status.lifecycle_state = LifecycleState.CREATING
        logger.info(
            "Credential stored",
            extra={"org_id": org_id, "credential_name": name, "credential_location": location},
        )

        return ExternalCreation(
            connection_details=connection_details(
                created.api_key.public_key, created.api_key.private_key, location
            )
        )

    async def _compensate_organization(self, org_id: str) -> CompensationOutcome:
        """Best-effort delete of an organization created earlier in this call."""
        try:
            await self._organizations.delete(org_id)
        except NotFoundError:
            return CompensationOutcome(action="delete_organization", target=org_id)
        except ReconcileError as e:
            logger.error(
                "Compensating organization delete failed",
                extra={"org_id": org_id, "error": str(e), "error_kind": e.kind.value},
            )
            return CompensationOutcome.failed("delete_organization", org_id, e)

        logger.info("Compensating organization delete succeeded", extra={"org_id": org_id})
        return CompensationOutcome(action="delete_organization", target=org_id)

    @staticmethod
    def _validate_spec(spec: OrganizationSpec) -> None:
        missing = [
            field_name
            for field_name, value in (
                ("name", spec.name),
                ("ownerId", spec.owner_id),
                ("apiKey.description", spec.api_key.description),
                ("secretsConfig.region", spec.secrets.region),
            )
            if not value
        ]
        if missing:
            raise ConfigurationInvalidError(f"missing required fields: {', '.join(missing)}")

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> ExternalUpdate:
        """Bring the credential record in line with the declared API key.

        Organization name and owner are immutable and never patched. The
        read-modify-write is not conditional: overlapping passes race and the
        last write wins.

        Raises:
            ReconcileError: Credential read or write failed.
        """
        if not status.external_id:
            return ExternalUpdate()

        if status.org_name and status.org_name != spec.name:
            logger.warning(
                "Organization name is immutable, ignoring change",
                extra={
                    "org_id": status.external_id,
                    "current_name": status.org_name,
                    "desired_name": spec.name,
                },
            )

        name = self.credential_name(spec, status)
        kms_key_id = status.encryption_key_ref or spec.secrets.kms_key_id

        try:
            record = await self._credentials.get(name)
        except NotFoundError:
            return await self._remint_credential(spec, status, name, kms_key_id)

        if record.describes(spec.api_key):
            status.credential_name = name
            return ExternalUpdate()

        merged = record.model_copy(
            update={
                "description": spec.api_key.description,
                "roles": list(spec.api_key.roles),
                "org_id": record.org_id or status.external_id,
            }
        )
        location = await self._credentials.put(name, merged, kms_key_id)
        status.credential_name = name
        status.credential_location = location or status.credential_location
        logger.info(
            "Credential metadata updated",
            extra={"org_id": status.external_id, "credential_name": name},
        )
        return ExternalUpdate(changed=True)

    async def _remint_credential(
        self,
        spec: OrganizationSpec,
        status: OrganizationStatus,
        name: str,
        kms_key_id: str | None,
    ) -> ExternalUpdate:
        """Replace a lost credential with a freshly minted key pair."""
        logger.warning(
            "Credential record missing, minting a new API key",
            extra={"org_id": status.external_id, "credential_name": name},
        )
        pair = await self._organizations.create_api_key(
            status.external_id, AtlasApiKey.from_config(spec.api_key)
        )
        record = CredentialRecord(
            public_key=pair.public_key,
            private_key=pair.private_key,
            description=spec.api_key.description,
            org_id=status.external_id,
            roles=list(spec.api_key.roles),
            created_at=datetime.now(UTC),
        )
        location = await self._credentials.put(name, record, kms_key_id)
        status.credential_name = name
        status.credential_location = location
        status.encryption_key_ref = kms_key_id
        return ExternalUpdate(
            changed=True,
            connection_details=connection_details(pair.public_key, pair.private_key, location),
        )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(
        self, spec: OrganizationSpec, status: OrganizationStatus
    ) -> DeletionResult:
        """Advance the finalizer-gated deletion by one step.

        Raises:
            ReconcileError: Organization delete failed with anything but NotFound.
        """
        org_id = status.external_id

        async def delete_organization() -> None:
            if not org_id:
                logger.debug("No organization recorded, skipping remote delete")
                return
            await self._organizations.delete(org_id)

        async def cleanup_credential() -> CompensationOutcome:
            return await self._cleanup_credential(spec, status, reason="teardown")

        result = await run_deletion(
            status,
            delete_external=delete_organization,
            cleanup_credential=cleanup_credential,
            resource_name=spec.name,
        )
        if result.finished:
            cleanup = result.credential_cleanup
            keep_credential = cleanup is not None and not cleanup.succeeded
            credential_name = status.credential_name
            credential_location = status.credential_location
            status.clear_identity()
            if keep_credential:
                status.credential_name = credential_name
                status.credential_location = credential_location
        return result

    async def _cleanup_credential(
        self, spec: OrganizationSpec, status: OrganizationStatus, *, reason: str
    ) -> CompensationOutcome:
        """Best-effort credential delete. NotFound counts as success."""
        name = self.credential_name(spec, status)
        try:
            await self._credentials.delete(name, force_immediate=self._force_delete_secrets)
        except NotFoundError:
            return CompensationOutcome(action="delete_credential", target=name)
        except ReconcileError as e:
            logger.warning(
                "Credential cleanup failed",
                extra={
                    "credential_name": name,
                    "reason": reason,
                    "error": str(e),
                    "error_kind": e.kind.value,
                },
            )
            return CompensationOutcome.failed("delete_credential", name, e)

        logger.info("Credential deleted", extra={"credential_name": name, "reason": reason})
        return CompensationOutcome(action="delete_credential", target=name)
