"""Credential store client backed by AWS Secrets Manager and KMS.

boto3 is synchronous, so every call runs in the default executor and is
bounded by a timeout. The executor thread is abandoned on timeout or
cancellation; the coroutine returns promptly either way.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .errors import (
    ClientRequestError,
    ConflictError,
    NetworkError,
    UnclassifiedError,
    error_from_boto,
)
from .models import CredentialRecord, SecretMetadata

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_RECOVERY_WINDOW_DAYS = 7
MIN_RECOVERY_WINDOW_DAYS = 7
MAX_RECOVERY_WINDOW_DAYS = 30

PROVIDER_TAG_VALUE = "atlas-org-operator"

# Secrets Manager tag values are limited to 256 characters
MAX_TAG_VALUE_LENGTH = 256


class CredentialStore(Protocol):
    """Contract the engine consumes from a credential store client."""

    async def put(
        self, name: str, record: CredentialRecord, kms_key_id: str | None = None
    ) -> str: ...

    async def get(self, name: str) -> CredentialRecord: ...

    async def describe(self, name: str) -> SecretMetadata: ...

    async def delete(self, name: str, force_immediate: bool) -> None: ...

    async def validate_key(self, key_ref: str) -> None: ...


def record_tags(record: CredentialRecord) -> dict[str, str]:
    """Tags written alongside a credential record.

    Description and roles are duplicated into tags so a describe call can
    detect drift without reading the secret value.
    """
    return {
        "Provider": PROVIDER_TAG_VALUE,
        "OrgID": record.org_id,
        "Description": record.description[:MAX_TAG_VALUE_LENGTH],
        "Roles": ",".join(sorted(record.roles))[:MAX_TAG_VALUE_LENGTH],
    }


class SecretsManagerStore:
    """Async credential store over Secrets Manager, with KMS key validation."""

    def __init__(
        self,
        region: str,
        *,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        recovery_window_days: int = DEFAULT_RECOVERY_WINDOW_DAYS,
        secrets_client: Any | None = None,
        kms_client: Any | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            region: AWS region of the secrets.
            call_timeout_seconds: Timeout applied to every AWS call.
            recovery_window_days: Recovery window for non-forced deletes.
            secrets_client: Optional pre-built secretsmanager client.
            kms_client: Optional pre-built kms client.
        """
        if not MIN_RECOVERY_WINDOW_DAYS <= recovery_window_days <= MAX_RECOVERY_WINDOW_DAYS:
            raise ValueError(
                f"recovery_window_days must be between {MIN_RECOVERY_WINDOW_DAYS} "
                f"and {MAX_RECOVERY_WINDOW_DAYS}"
            )

        self._region = region
        self._timeout = call_timeout_seconds
        self._recovery_window_days = recovery_window_days

        # botocore retries internally by default; the driver owns retries here.
        boto_config = BotoConfig(
            region_name=region,
            retries={"max_attempts": 1, "mode": "standard"},
            connect_timeout=call_timeout_seconds,
            read_timeout=call_timeout_seconds,
        )
        self._secrets = secrets_client or boto3.client("secretsmanager", config=boto_config)
        self._kms = kms_client or boto3.client("kms", config=boto_config)

    @property
    def region(self) -> str:
        return self._region

    async def put(
        self, name: str, record: CredentialRecord, kms_key_id: str | None = None
    ) -> str:
        """Create the secret, or overwrite it if it already exists.

        Returns:
            ARN of the stored secret.
        """
        secret_string = record.model_dump_secret()
        tags = record_tags(record)

        create_args: dict[str, Any] = {
            "Name": name,
            "SecretString": secret_string,
            "Description": f"Atlas API credentials for organization {record.org_id}",
            "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
        }
        if kms_key_id:
            create_args["KmsKeyId"] = kms_key_id

        try:
            response = await self._call("create_secret", self._secrets.create_secret, **create_args)
            return str(response.get("ARN", ""))
        except ConflictError as e:
            if e.reason != "ResourceExistsException":
                raise

        logger.info("Secret already exists, updating in place", extra={"secret_name": name})

        update_args: dict[str, Any] = {"SecretId": name, "SecretString": secret_string}
        if kms_key_id:
            update_args["KmsKeyId"] = kms_key_id
        response = await self._call("update_secret", self._secrets.update_secret, **update_args)
        arn = str(response.get("ARN", ""))

        await self._call(
            "tag_resource",
            self._secrets.tag_resource,
            SecretId=arn or name,
            Tags=[{"Key": k, "Value": v} for k, v in tags.items()],
        )
        return arn

    async def get(self, name: str) -> CredentialRecord:
        response = await self._call(
            "get_secret_value", self._secrets.get_secret_value, SecretId=name
        )
        secret_string = response.get("SecretString")
        if not secret_string:
            raise UnclassifiedError(f"secret {name} has no string value")
        try:
            return CredentialRecord.model_validate_json(secret_string)
        except ValidationError as e:
            # Do not echo the payload: it contains key material.
            raise UnclassifiedError(
                f"secret {name} is not a valid credential record ({e.error_count()} errors)"
            ) from e

    async def describe(self, name: str) -> SecretMetadata:
        response = await self._call("describe_secret", self._secrets.describe_secret, SecretId=name)
        return SecretMetadata(
            name=response.get("Name", name),
            arn=response.get("ARN", ""),
            tags={t["Key"]: t.get("Value", "") for t in response.get("Tags", [])},
            kms_key_id=response.get("KmsKeyId"),
            deleted_date=response.get("DeletedDate"),
        )

    async def delete(self, name: str, force_immediate: bool) -> None:
        args: dict[str, Any] = {"SecretId": name}
        if force_immediate:
            args["ForceDeleteWithoutRecovery"] = True
        else:
            args["RecoveryWindowInDays"] = self._recovery_window_days
        await self._call("delete_secret", self._secrets.delete_secret, **args)

    async def validate_key(self, key_ref: str) -> None:
        """Check that a KMS key exists and is usable for encryption.

        Raises:
            ClientRequestError: If the key is disabled or not in Enabled state.
            ReconcileError: Classified KMS failure.
        """
        response = await self._call("describe_key", self._kms.describe_key, KeyId=key_ref)
        metadata = response.get("KeyMetadata", {})
        state = metadata.get("KeyState", "")
        if not metadata.get("Enabled", False) or state != "Enabled":
            raise ClientRequestError(f"KMS key {key_ref} is not usable (state: {state or 'unknown'})")

    async def _call(self, operation: str, method: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a blocking boto3 call in the executor with a timeout.

        Raises:
            NetworkError: On timeout.
            ReconcileError: Classified botocore failure.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(method, **kwargs)),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise NetworkError(f"{operation} timed out after {self._timeout}s") from e
        except (ClientError, BotoCoreError) as e:
            raise error_from_boto(e, operation) from e
