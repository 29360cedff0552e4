"""Pydantic models for the Organization resource and its collaborators.

These models provide:
1. Type-safe YAML parsing of Organization manifests
2. Validation at the boundary (fail fast, fail loudly)
3. Wire payloads for the organization API and the credential store
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# =============================================================================
# Desired Spec
# =============================================================================


class ApiKeyConfig(BaseModel):
    """Initial API key descriptor for a new organization."""

    model_config = ConfigDict(extra="ignore")

    description: Annotated[str, Field(min_length=1, max_length=250)]
    roles: list[str] = Field(default_factory=lambda: ["ORG_OWNER"])

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("roles must contain at least one role")
        return v


class SecretStoreConfig(BaseModel):
    """Placement of the credential record in the credential store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    region: Annotated[str, Field(min_length=1)]
    secret_name: str | None = Field(None, alias="secretName")
    kms_key_id: str | None = Field(None, alias="kmsKeyId")


class OrganizationSpec(BaseModel):
    """Operator-declared intent. Read-only for the engine."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=64)]
    owner_id: Annotated[str, Field(min_length=1, alias="ownerId")]
    api_key: ApiKeyConfig = Field(alias="apiKey")
    secrets: SecretStoreConfig = Field(alias="secretsConfig")
    provider_config_ref: str = Field("default", alias="providerConfigRef")


# =============================================================================
# Observed Status
# =============================================================================


class LifecycleState(str, Enum):
    """Informational lifecycle state, re-derived on every observation."""

    ABSENT = "Absent"
    CREATING = "Creating"
    AVAILABLE = "Available"
    DELETING = "Deleting"
    DELETED = "Deleted"


class ConditionType(str, Enum):
    READY = "Ready"
    SYNCED = "Synced"


class Condition(BaseModel):
    """Externally visible condition on the resource status."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: ConditionType
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="lastTransitionTime"
    )


class OrganizationStatus(BaseModel):
    """Observed state, owned exclusively by the engine.

    Authority lives in the two remote systems; these fields only record what
    the last pass saw so the next pass can find the same remote objects.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, validate_assignment=True)

    external_id: str = Field("", alias="externalId")
    org_name: str = Field("", alias="orgName")
    credential_name: str = Field("", alias="credentialName")
    credential_location: str = Field("", alias="credentialLocation")
    encryption_key_ref: str | None = Field(None, alias="encryptionKeyRef")
    lifecycle_state: LifecycleState = Field(LifecycleState.ABSENT, alias="lifecycleState")
    finalizer: str | None = None
    created_at: datetime | None = Field(None, alias="createdAt")
    deleted_at: datetime | None = Field(None, alias="deletedAt")
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self,
        condition_type: ConditionType,
        status: bool,
        reason: str = "",
        message: str = "",
    ) -> None:
        """Set a condition, keeping the transition time when status is unchanged."""
        existing = self.get_condition(condition_type)
        if existing is not None and existing.status == status:
            existing.reason = reason
            existing.message = message
            return

        condition = Condition(type=condition_type, status=status, reason=reason, message=message)
        self.conditions = [c for c in self.conditions if c.type != condition_type] + [condition]

    def clear_identity(self) -> None:
        """Forget the remote organization and its credential."""
        self.external_id = ""
        self.org_name = ""
        self.credential_name = ""
        self.credential_location = ""
        self.encryption_key_ref = None


class ObjectMeta(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    # DNS-1123 subdomain, as for any Kubernetes object name
    name: Annotated[
        str, Field(min_length=1, max_length=253, pattern=r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")
    ]
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    labels: dict[str, str] = Field(default_factory=dict)


class Organization(BaseModel):
    """Organization manifest as declared by the operator."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field("atlas-operator.io/v1alpha1", alias="apiVersion")
    kind: str = "Organization"
    metadata: ObjectMeta
    spec: OrganizationSpec
    status: OrganizationStatus = Field(default_factory=OrganizationStatus)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != "Organization":
            raise ValueError(f"kind must be Organization, got {v}")
        return v

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None


# =============================================================================
# Credential Store
# =============================================================================


class CredentialRecord(BaseModel):
    """API key pair plus metadata, stored opaquely in the credential store."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey", repr=False)
    description: str = ""
    org_id: str = Field("", alias="orgId")
    roles: list[str] = Field(default_factory=list)
    created_at: datetime | None = Field(None, alias="createdAt")

    def model_dump_secret(self) -> str:
        """Serialize for storage as a secret string."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def describes(self, api_key: ApiKeyConfig) -> bool:
        """Whether the descriptive fields match the declared API key."""
        return self.description == api_key.description and sorted(self.roles) == sorted(
            api_key.roles
        )


class SecretMetadata(BaseModel):
    """Credential store metadata returned by a describe call."""

    model_config = ConfigDict(extra="ignore")

    name: str
    arn: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    kms_key_id: str | None = None
    deleted_date: datetime | None = None

    @property
    def scheduled_for_deletion(self) -> bool:
        return self.deleted_date is not None


# =============================================================================
# Organization API wire types
# =============================================================================


class AtlasApiKey(BaseModel):
    """API key descriptor in organization API payloads."""

    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(alias="desc")
    roles: list[str]

    @classmethod
    def from_config(cls, config: ApiKeyConfig) -> AtlasApiKey:
        return cls(description=config.description, roles=list(config.roles))


class CreateOrganizationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    owner_id: str = Field(alias="orgOwnerId")
    api_key: AtlasApiKey = Field(alias="apiKey")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class AtlasOrganization(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str = ""
    is_deleted: bool = Field(False, alias="isDeleted")


class ApiKeyPair(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = ""
    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey", repr=False)


class CreatedOrganization(BaseModel):
    """Response of an organization creation: the org plus its first key pair."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    organization: AtlasOrganization
    api_key: ApiKeyPair = Field(alias="apiKey")


class OrganizationPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ApiCredentials(BaseModel):
    """Root API key pair used to authenticate against the organization API."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    public_key: str = Field(alias="publicKey")
    private_key: str = Field(alias="privateKey", repr=False)


# =============================================================================
# Provider Configuration
# =============================================================================


class SecretsManagerReference(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    region: Annotated[str, Field(min_length=1)]
    secret_name: str | None = Field(None, alias="secretName")


class ProviderCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source: str
    secrets_manager: SecretsManagerReference | None = Field(None, alias="secretsManager")


class ProviderConfig(BaseModel):
    """Where the connector finds the root API credentials."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = "default"
    credentials: ProviderCredentials
    base_url: str | None = Field(None, alias="baseUrl")
