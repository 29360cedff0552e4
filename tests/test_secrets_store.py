"""Tests for the Secrets Manager credential store using botocore's Stubber."""

from __future__ import annotations

import time
from collections.abc import Generator
from datetime import UTC, datetime
from typing import Any
from unittest import mock

import boto3
import pytest
from botocore.stub import Stubber

from org_operator.errors import (
    ClientRequestError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    UnclassifiedError,
)
from org_operator.models import CredentialRecord
from org_operator.secrets_store import SecretsManagerStore, record_tags

REGION = "us-east-1"
NAME = "ns/org-42/credentials"
ARN = f"arn:aws:secretsmanager:{REGION}:123456789012:secret:{NAME}-AbCdEf"


def make_record(**updates: Any) -> CredentialRecord:
    record = CredentialRecord(
        public_key="pubkey",
        private_key="private-secret",
        description="acme automation key",
        org_id="org-42",
        roles=["ORG_OWNER"],
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )
    return record.model_copy(update=updates)


def boto_client(service: str) -> Any:
    return boto3.client(
        service,
        region_name=REGION,
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def secrets_client() -> Any:
    return boto_client("secretsmanager")


@pytest.fixture
def kms_client() -> Any:
    return boto_client("kms")


@pytest.fixture
def secrets_stub(secrets_client: Any) -> Generator[Stubber, None, None]:
    with Stubber(secrets_client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def kms_stub(kms_client: Any) -> Generator[Stubber, None, None]:
    with Stubber(kms_client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def store(secrets_client: Any, kms_client: Any) -> SecretsManagerStore:
    return SecretsManagerStore(REGION, secrets_client=secrets_client, kms_client=kms_client)


def tag_list(record: CredentialRecord) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in record_tags(record).items()]


class TestPut:
    """Tests for put."""

    @pytest.mark.asyncio
    async def test_create_secret(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        record = make_record()
        secrets_stub.add_response(
            "create_secret",
            {"ARN": ARN, "Name": NAME},
            {
                "Name": NAME,
                "SecretString": record.model_dump_secret(),
                "Description": "Atlas API credentials for organization org-42",
                "Tags": tag_list(record),
            },
        )

        assert await store.put(NAME, record) == ARN

    @pytest.mark.asyncio
    async def test_create_secret_with_kms_key(
        self, store: SecretsManagerStore, secrets_stub: Stubber
    ) -> None:
        record = make_record()
        secrets_stub.add_response(
            "create_secret",
            {"ARN": ARN, "Name": NAME},
            {
                "Name": NAME,
                "SecretString": record.model_dump_secret(),
                "Description": "Atlas API credentials for organization org-42",
                "Tags": tag_list(record),
                "KmsKeyId": "alias/atlas",
            },
        )

        assert await store.put(NAME, record, "alias/atlas") == ARN

    @pytest.mark.asyncio
    async def test_existing_secret_is_overwritten(
        self, store: SecretsManagerStore, secrets_stub: Stubber
    ) -> None:
        """Test that put falls back to update_secret and re-tags."""
        record = make_record(description="rotated")
        secrets_stub.add_client_error(
            "create_secret",
            service_error_code="ResourceExistsException",
            service_message="already exists",
            http_status_code=400,
        )
        secrets_stub.add_response(
            "update_secret",
            {"ARN": ARN, "Name": NAME},
            {"SecretId": NAME, "SecretString": record.model_dump_secret()},
        )
        secrets_stub.add_response(
            "tag_resource", {}, {"SecretId": ARN, "Tags": tag_list(record)}
        )

        assert await store.put(NAME, record) == ARN

    @pytest.mark.asyncio
    async def test_other_conflict_propagates(
        self, store: SecretsManagerStore, secrets_stub: Stubber
    ) -> None:
        secrets_stub.add_client_error(
            "create_secret",
            service_error_code="InvalidRequestException",
            service_message="scheduled for deletion",
            http_status_code=400,
        )

        with pytest.raises(ConflictError) as exc_info:
            await store.put(NAME, make_record())

        assert exc_info.value.reason == "InvalidRequestException"

    @pytest.mark.asyncio
    async def test_throttled(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        secrets_stub.add_client_error(
            "create_secret",
            service_error_code="ThrottlingException",
            service_message="Rate exceeded",
            http_status_code=400,
        )

        with pytest.raises(RateLimitedError):
            await store.put(NAME, make_record())


class TestGet:
    """Tests for get."""

    @pytest.mark.asyncio
    async def test_get_record(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        record = make_record()
        secrets_stub.add_response(
            "get_secret_value",
            {"ARN": ARN, "Name": NAME, "SecretString": record.model_dump_secret()},
            {"SecretId": NAME},
        )

        fetched = await store.get(NAME)

        assert fetched == record

    @pytest.mark.asyncio
    async def test_not_found(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        secrets_stub.add_client_error(
            "get_secret_value",
            service_error_code="ResourceNotFoundException",
            http_status_code=400,
        )

        with pytest.raises(NotFoundError):
            await store.get(NAME)

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_echoed(
        self, store: SecretsManagerStore, secrets_stub: Stubber
    ) -> None:
        """Test that a malformed secret never leaks its value in the error."""
        secrets_stub.add_response(
            "get_secret_value",
            {"ARN": ARN, "Name": NAME, "SecretString": '{"privateKey": "leaky-value"}'},
            {"SecretId": NAME},
        )

        with pytest.raises(UnclassifiedError) as exc_info:
            await store.get(NAME)

        assert "leaky-value" not in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_binary_secret_is_unclassified(
        self, store: SecretsManagerStore, secrets_stub: Stubber
    ) -> None:
        secrets_stub.add_response(
            "get_secret_value",
            {"ARN": ARN, "Name": NAME, "SecretBinary": b"\x00"},
            {"SecretId": NAME},
        )

        with pytest.raises(UnclassifiedError, match="no string value"):
            await store.get(NAME)


class TestDescribe:
    @pytest.mark.asyncio
    async def test_describe(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        deleted = datetime(2026, 2, 1, tzinfo=UTC)
        secrets_stub.add_response(
            "describe_secret",
            {
                "ARN": ARN,
                "Name": NAME,
                "KmsKeyId": "alias/atlas",
                "Tags": [{"Key": "OrgID", "Value": "org-42"}],
                "DeletedDate": deleted,
            },
            {"SecretId": NAME},
        )

        metadata = await store.describe(NAME)

        assert metadata.arn == ARN
        assert metadata.tags == {"OrgID": "org-42"}
        assert metadata.kms_key_id == "alias/atlas"
        assert metadata.scheduled_for_deletion is True


class TestDelete:
    @pytest.mark.asyncio
    async def test_force_delete(self, store: SecretsManagerStore, secrets_stub: Stubber) -> None:
        secrets_stub.add_response(
            "delete_secret",
            {"ARN": ARN, "Name": NAME},
            {"SecretId": NAME, "ForceDeleteWithoutRecovery": True},
        )

        await store.delete(NAME, force_immediate=True)

    @pytest.mark.asyncio
    async def test_delete_with_recovery_window(
        self, secrets_client: Any, kms_client: Any, secrets_stub: Stubber
    ) -> None:
        store = SecretsManagerStore(
            REGION, recovery_window_days=14, secrets_client=secrets_client, kms_client=kms_client
        )
        secrets_stub.add_response(
            "delete_secret",
            {"ARN": ARN, "Name": NAME},
            {"SecretId": NAME, "RecoveryWindowInDays": 14},
        )

        await store.delete(NAME, force_immediate=False)

    @pytest.mark.parametrize("days", [6, 31])
    def test_recovery_window_bounds(self, days: int, secrets_client: Any, kms_client: Any) -> None:
        with pytest.raises(ValueError, match="recovery_window_days"):
            SecretsManagerStore(
                REGION,
                recovery_window_days=days,
                secrets_client=secrets_client,
                kms_client=kms_client,
            )


class TestValidateKey:
    """Tests for KMS key validation."""

    @pytest.mark.asyncio
    async def test_enabled_key(self, store: SecretsManagerStore, kms_stub: Stubber) -> None:
        kms_stub.add_response(
            "describe_key",
            {"KeyMetadata": {"KeyId": "key-1", "Enabled": True, "KeyState": "Enabled"}},
            {"KeyId": "alias/atlas"},
        )

        await store.validate_key("alias/atlas")

    @pytest.mark.asyncio
    async def test_disabled_key(self, store: SecretsManagerStore, kms_stub: Stubber) -> None:
        kms_stub.add_response(
            "describe_key",
            {"KeyMetadata": {"KeyId": "key-1", "Enabled": False, "KeyState": "Disabled"}},
            {"KeyId": "alias/atlas"},
        )

        with pytest.raises(ClientRequestError, match="Disabled"):
            await store.validate_key("alias/atlas")

    @pytest.mark.asyncio
    async def test_pending_deletion_key(
        self, store: SecretsManagerStore, kms_stub: Stubber
    ) -> None:
        kms_stub.add_response(
            "describe_key",
            {"KeyMetadata": {"KeyId": "key-1", "Enabled": True, "KeyState": "PendingDeletion"}},
            {"KeyId": "alias/atlas"},
        )

        with pytest.raises(ClientRequestError):
            await store.validate_key("alias/atlas")

    @pytest.mark.asyncio
    async def test_unknown_key(self, store: SecretsManagerStore, kms_stub: Stubber) -> None:
        kms_stub.add_client_error(
            "describe_key", service_error_code="NotFoundException", http_status_code=400
        )

        with pytest.raises(NotFoundError):
            await store.validate_key("alias/missing")


@pytest.mark.asyncio
async def test_call_timeout_is_network_error() -> None:
    """Test that a hung AWS call is bounded by the store timeout."""
    slow_client = mock.MagicMock()
    slow_client.describe_secret.side_effect = lambda **kwargs: time.sleep(0.5)
    store = SecretsManagerStore(
        REGION,
        call_timeout_seconds=0.05,
        secrets_client=slow_client,
        kms_client=mock.MagicMock(),
    )

    with pytest.raises(NetworkError, match="timed out"):
        await store.describe(NAME)
