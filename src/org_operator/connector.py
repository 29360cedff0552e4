"""Connector: resolves provider configuration into constructed API clients.

Client construction is injected per Connector instance. Nothing here touches
package-level state, so tests and the driver each pass their own factories.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .atlas_client import DEFAULT_BASE_URL, AtlasOrganizationClient, OrganizationAPI
from .config import Config
from .errors import ConfigurationInvalidError
from .external import OrganizationExternal
from .models import ApiCredentials, OrganizationSpec, ProviderConfig
from .secrets_store import CredentialStore, SecretsManagerStore

logger = logging.getLogger(__name__)

CREDENTIALS_SOURCE_AWS = "AWS"

OrganizationClientFactory = Callable[[ApiCredentials, str], OrganizationAPI]
CredentialStoreFactory = Callable[[str], CredentialStore]


class Connector:
    """Builds an engine bound to resolved credentials for one reconciliation."""

    def __init__(
        self,
        provider_config: ProviderConfig,
        *,
        config: Config,
        organization_client_factory: OrganizationClientFactory | None = None,
        credential_store_factory: CredentialStoreFactory | None = None,
    ) -> None:
        """Initialize the connector.

        Args:
            provider_config: Where the root API credentials live.
            config: Operator configuration (timeouts, namespace, base URL).
            organization_client_factory: Builds an organization client from
                root credentials and a base URL.
            credential_store_factory: Builds a credential store for a region.
        """
        self._provider_config = provider_config
        self._config = config
        self._organization_client_factory = (
            organization_client_factory or self._default_organization_client
        )
        self._credential_store_factory = credential_store_factory or self._default_store

    @property
    def provider_config(self) -> ProviderConfig:
        return self._provider_config

    def _default_organization_client(
        self, credentials: ApiCredentials, base_url: str
    ) -> OrganizationAPI:
        return AtlasOrganizationClient(
            credentials,
            base_url=base_url,
            timeout_seconds=self._config.request_timeout_seconds,
        )

    def _default_store(self, region: str) -> CredentialStore:
        return SecretsManagerStore(
            region,
            call_timeout_seconds=self._config.request_timeout_seconds,
            recovery_window_days=self._config.secret_recovery_window_days,
        )

    async def resolve(self, spec: OrganizationSpec) -> tuple[OrganizationAPI, CredentialStore]:
        """Resolve the provider config into an organization client and a store.

        Raises:
            ConfigurationInvalidError: The provider config is unusable.
            ReconcileError: Reading the root credentials failed.
        """
        if spec.provider_config_ref != self._provider_config.name:
            raise ConfigurationInvalidError(
                f"unknown provider config '{spec.provider_config_ref}', "
                f"expected '{self._provider_config.name}'"
            )

        credentials = self._provider_config.credentials
        if credentials.source != CREDENTIALS_SOURCE_AWS:
            raise ConfigurationInvalidError(
                f"provider config must use credentials source {CREDENTIALS_SOURCE_AWS}, "
                f"got '{credentials.source}'"
            )
        reference = credentials.secrets_manager
        if reference is None or not reference.secret_name:
            raise ConfigurationInvalidError(
                "provider config must reference a Secrets Manager secret holding "
                "publicKey and privateKey"
            )

        provider_store = self._credential_store_factory(reference.region)
        root_record = await provider_store.get(reference.secret_name)
        root_credentials = ApiCredentials(
            public_key=root_record.public_key, private_key=root_record.private_key
        )

        base_url = (
            self._provider_config.base_url or self._config.atlas_base_url or DEFAULT_BASE_URL
        )
        organizations = self._organization_client_factory(root_credentials, base_url)

        if spec.secrets.region == reference.region:
            store = provider_store
        else:
            store = self._credential_store_factory(spec.secrets.region)

        logger.debug(
            "Provider config resolved",
            extra={
                "provider_config": self._provider_config.name,
                "provider_region": reference.region,
                "credential_region": spec.secrets.region,
            },
        )
        return organizations, store

    async def connect(self, spec: OrganizationSpec) -> OrganizationExternal:
        """Resolve clients and bind them to a fresh engine."""
        organizations, store = await self.resolve(spec)
        return OrganizationExternal(
            organizations,
            store,
            secret_namespace=self._config.secret_namespace,
            force_delete_secrets=self._config.force_delete_secrets,
        )
