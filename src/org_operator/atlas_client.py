"""Organization API client.

Thin async wrapper over the Atlas organizations API. Every failure leaves this
module as a classified ReconcileError; callers never see httpx exceptions.

Authentication is HTTP digest with the root API key pair and is treated as an
opaque property of the underlying httpx client.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .errors import (
    ConfigurationInvalidError,
    ConflictError,
    NetworkError,
    NotFoundError,
    UnclassifiedError,
    error_from_http,
)
from .models import (
    ApiCredentials,
    ApiKeyPair,
    AtlasApiKey,
    AtlasOrganization,
    CreatedOrganization,
    CreateOrganizationRequest,
    OrganizationPatch,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cloud.mongodb.com/api/atlas/v1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0


class OrganizationAPI(Protocol):
    """Contract the engine consumes from an organization API client."""

    async def create(self, request: CreateOrganizationRequest) -> CreatedOrganization: ...

    async def get(self, org_id: str) -> AtlasOrganization: ...

    async def update(self, org_id: str, patch: OrganizationPatch) -> AtlasOrganization: ...

    async def delete(self, org_id: str) -> None: ...

    async def create_api_key(self, org_id: str, api_key: AtlasApiKey) -> ApiKeyPair: ...


class AtlasOrganizationClient:
    """Async client for organization CRUD against the Atlas API."""

    def __init__(
        self,
        credentials: ApiCredentials,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            credentials: Root API key pair used for digest authentication.
            base_url: API base URL.
            timeout_seconds: Per-request timeout.
            transport: Optional transport override (tests use httpx.MockTransport).
        """
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            auth=httpx.DigestAuth(credentials.public_key, credentials.private_key),
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AtlasOrganizationClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def create(self, request: CreateOrganizationRequest) -> CreatedOrganization:
        """Create an organization together with its first API key.

        Raises:
            ConfigurationInvalidError: If name or owner is empty.
            ReconcileError: Classified API failure.
        """
        if not request.name:
            raise ConfigurationInvalidError("organization name cannot be empty")
        if not request.owner_id:
            raise ConfigurationInvalidError("organization owner id cannot be empty")

        data = await self._request("POST", "/orgs", payload=request.to_payload())
        created = self._parse(CreatedOrganization, data, "create organization")
        if not created.organization.name:
            created.organization.name = request.name
        return created

    async def get(self, org_id: str) -> AtlasOrganization:
        self._require_id(org_id)
        data = await self._request("GET", f"/orgs/{org_id}")
        return self._parse(AtlasOrganization, data, "get organization")

    async def update(self, org_id: str, patch: OrganizationPatch) -> AtlasOrganization:
        self._require_id(org_id)
        data = await self._request("PATCH", f"/orgs/{org_id}", payload=patch.to_payload())
        return self._parse(AtlasOrganization, data, "update organization")

    async def delete(self, org_id: str) -> None:
        self._require_id(org_id)
        await self._request("DELETE", f"/orgs/{org_id}")

    async def create_api_key(self, org_id: str, api_key: AtlasApiKey) -> ApiKeyPair:
        """Mint an additional API key in an existing organization."""
        self._require_id(org_id)
        data = await self._request(
            "POST",
            f"/orgs/{org_id}/apiKeys",
            payload=api_key.model_dump(by_alias=True),
        )
        return self._parse(ApiKeyPair, data, "create API key")

    async def verify_deletion(self, org_id: str) -> None:
        """Confirm an organization is gone.

        Raises:
            ConflictError: If the organization still exists.
            ReconcileError: If the check itself failed.
        """
        try:
            org = await self.get(org_id)
        except NotFoundError:
            return
        if org.is_deleted:
            return
        raise ConflictError(f"organization {org_id} still exists")

    @staticmethod
    def _require_id(org_id: str) -> None:
        if not org_id:
            raise ConfigurationInvalidError("organization id cannot be empty")

    @staticmethod
    def _parse(model: Any, data: dict[str, Any] | None, operation: str) -> Any:
        if data is None:
            raise UnclassifiedError(f"{operation}: empty response body")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise UnclassifiedError(f"{operation}: unexpected response shape: {e}") from e

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Issue a request and classify the outcome.

        Returns:
            Decoded JSON object, or None for empty responses.

        Raises:
            NetworkError: If no response was received.
            ReconcileError: Classified error for status >= 400.
        """
        logger.debug("Organization API request", extra={"method": method, "path": path})

        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {path}: {type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            error = error_from_http(response.status_code, response.content)
            logger.debug(
                "Organization API error",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "error_kind": error.kind.value,
                },
            )
            raise error

        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None

        try:
            data = response.json()
        except ValueError as e:
            raise UnclassifiedError(f"{method} {path}: cannot decode response: {e}") from e

        if not isinstance(data, dict):
            raise UnclassifiedError(f"{method} {path}: expected a JSON object")
        return data
