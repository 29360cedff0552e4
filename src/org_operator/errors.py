"""Error taxonomy and classification for both remote backends.

Every outcome from the organization API or the credential store is mapped to
exactly one ErrorKind. The kind decides whether the driver re-invokes the
operation later (retryable) or surfaces a persistent failure (terminal).

The engine itself never sleeps or retries: both retryable and terminal errors
are raised to the caller, which owns backoff scheduling.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
)


class ErrorKind(str, Enum):
    """Semantic error kinds shared by both backends."""

    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    RATE_LIMITED = "RateLimited"
    SERVER_ERROR = "ServerError"
    CLIENT_ERROR = "ClientError"
    NETWORK_ERROR = "NetworkError"
    UNCLASSIFIED = "Unclassified"
    CONFIGURATION_INVALID = "ConfigurationInvalid"
    COMPENSATION_FAILED = "CompensationFailed"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.NOT_FOUND,
        ErrorKind.CONFLICT,
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVER_ERROR,
        ErrorKind.NETWORK_ERROR,
    }
)

# AWS service error codes, checked before the HTTP status because AWS reports
# most of these with a plain 400.
AWS_NOT_FOUND_CODES = frozenset({"ResourceNotFoundException", "NotFoundException"})
AWS_CONFLICT_CODES = frozenset(
    {"ResourceExistsException", "InvalidRequestException", "ConflictException"}
)
AWS_THROTTLING_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "LimitExceededException",
    }
)
AWS_SERVER_CODES = frozenset(
    {
        "InternalServiceError",
        "InternalServiceErrorException",
        "InternalFailure",
        "ServiceUnavailable",
        "KMSInternalException",
        "DependencyTimeoutException",
    }
)
AWS_CLIENT_CODES = frozenset(
    {
        "DisabledException",
        "KMSInvalidStateException",
        "AccessDeniedException",
        "InvalidParameterException",
        "MalformedPolicyDocumentException",
    }
)


def is_retryable_kind(kind: ErrorKind) -> bool:
    """Check whether the driver should re-invoke after an error of this kind."""
    return kind in RETRYABLE_KINDS


def classify_status(status_code: int | None, *, has_error_body: bool = True) -> ErrorKind:
    """Map an HTTP outcome to an ErrorKind.

    Args:
        status_code: HTTP status, or None when no response was received.
        has_error_body: Whether the response carried a parsable error body.

    Returns:
        The semantic error kind.
    """
    if status_code is None:
        return ErrorKind.NETWORK_ERROR

    if not has_error_body:
        if status_code >= 500:
            return ErrorKind.SERVER_ERROR
        return ErrorKind.UNCLASSIFIED

    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorKind.CLIENT_ERROR
    return ErrorKind.UNCLASSIFIED


@dataclass(frozen=True)
class CompensationOutcome:
    """Outcome of a best-effort secondary action.

    Secondary actions (compensating deletes, orphan cleanup) are logged but
    never escalated. Carrying the outcome separately from the primary result
    lets callers and tests assert both independently.
    """

    action: str
    target: str
    succeeded: bool = True
    skipped: bool = False
    error: Exception | None = None

    @property
    def kind(self) -> ErrorKind | None:
        """CompensationFailed when the action failed, else None."""
        if self.succeeded or self.skipped:
            return None
        return ErrorKind.COMPENSATION_FAILED

    @classmethod
    def skip(cls, action: str, target: str = "") -> CompensationOutcome:
        """Outcome for an action that had nothing to do."""
        return cls(action=action, target=target, succeeded=True, skipped=True)

    @classmethod
    def failed(cls, action: str, target: str, error: Exception) -> CompensationOutcome:
        """Outcome for an action that raised."""
        return cls(action=action, target=target, succeeded=False, error=error)


class ReconcileError(Exception):
    """Base class for every classified failure.

    Attributes:
        kind: Semantic error kind.
        status_code: HTTP status if a response was received.
        reason: Short reason reported by the backend.
        detail: Longer detail reported by the backend.
        compensation: Outcome of a compensating action performed before the
            error was raised, if any. The error itself is always the primary
            failure.
    """

    kind: ErrorKind = ErrorKind.UNCLASSIFIED

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.detail = detail
        self.compensation: CompensationOutcome | None = None

    @property
    def retryable(self) -> bool:
        """Whether the driver's backoff should re-invoke the operation."""
        return is_retryable_kind(self.kind)


class NotFoundError(ReconcileError):
    """The remote resource does not exist."""

    kind = ErrorKind.NOT_FOUND


class ConflictError(ReconcileError):
    """The remote resource is mid-transition or was concurrently modified."""

    kind = ErrorKind.CONFLICT


class RateLimitedError(ReconcileError):
    kind = ErrorKind.RATE_LIMITED


class ServerError(ReconcileError):
    kind = ErrorKind.SERVER_ERROR


class ClientRequestError(ReconcileError):
    """The request was malformed or unauthorized. Not retryable."""

    kind = ErrorKind.CLIENT_ERROR


class NetworkError(ReconcileError):
    """Transport failure before any response was received."""

    kind = ErrorKind.NETWORK_ERROR


class UnclassifiedError(ReconcileError):
    """An error that could not be classified. Treated as terminal."""

    kind = ErrorKind.UNCLASSIFIED


class ConfigurationInvalidError(ReconcileError):
    """Required spec fields are missing or invalid. Never retried."""

    kind = ErrorKind.CONFIGURATION_INVALID


_ERROR_CLASSES: dict[ErrorKind, type[ReconcileError]] = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.SERVER_ERROR: ServerError,
    ErrorKind.CLIENT_ERROR: ClientRequestError,
    ErrorKind.NETWORK_ERROR: NetworkError,
    ErrorKind.UNCLASSIFIED: UnclassifiedError,
    ErrorKind.CONFIGURATION_INVALID: ConfigurationInvalidError,
}


def error_for_kind(
    kind: ErrorKind,
    message: str,
    *,
    status_code: int | None = None,
    reason: str | None = None,
    detail: str | None = None,
) -> ReconcileError:
    """Build the ReconcileError subclass matching a kind."""
    error_class = _ERROR_CLASSES.get(kind, UnclassifiedError)
    return error_class(message, status_code=status_code, reason=reason, detail=detail)


def _parse_error_body(body: bytes | str | None) -> dict[str, Any] | None:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def error_from_http(status_code: int, body: bytes | str | None) -> ReconcileError:
    """Classify an organization API error response.

    The API reports errors as ``{"error": 404, "reason": "...", "detail": "..."}``.
    A body that is missing or not a JSON object counts as unparsable.

    Args:
        status_code: HTTP status of the response.
        body: Raw response body.

    Returns:
        The classified error (not raised).
    """
    parsed = _parse_error_body(body)
    kind = classify_status(status_code, has_error_body=parsed is not None)

    if parsed is None:
        return error_for_kind(kind, f"HTTP {status_code}", status_code=status_code)

    reason = str(parsed.get("reason") or "")
    detail = str(parsed.get("detail") or "")
    message = f"Organization API error {status_code}: {reason} - {detail}"
    return error_for_kind(
        kind,
        message,
        status_code=status_code,
        reason=reason or None,
        detail=detail or None,
    )


def error_from_boto(exc: Exception, operation: str = "") -> ReconcileError:
    """Classify a botocore failure from the credential store or KMS.

    Args:
        exc: The botocore exception.
        operation: Name of the failed call, used in the message.

    Returns:
        The classified error (not raised).
    """
    prefix = f"{operation} failed: " if operation else ""

    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message", "") or str(exc)
        status_code = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

        if code in AWS_NOT_FOUND_CODES:
            kind = ErrorKind.NOT_FOUND
        elif code in AWS_CONFLICT_CODES:
            kind = ErrorKind.CONFLICT
        elif code in AWS_THROTTLING_CODES:
            kind = ErrorKind.RATE_LIMITED
        elif code in AWS_SERVER_CODES:
            kind = ErrorKind.SERVER_ERROR
        elif code in AWS_CLIENT_CODES:
            kind = ErrorKind.CLIENT_ERROR
        elif status_code is None:
            # A response arrived, it just carried no status.
            kind = ErrorKind.UNCLASSIFIED
        else:
            kind = classify_status(status_code, has_error_body=bool(code))

        return error_for_kind(
            kind,
            f"{prefix}{code}: {message}",
            status_code=status_code,
            reason=code or None,
            detail=message or None,
        )

    if isinstance(exc, NoCredentialsError | PartialCredentialsError):
        return ClientRequestError(f"{prefix}{exc}")

    if isinstance(exc, BotoCoreError):
        return NetworkError(f"{prefix}{exc}")

    return UnclassifiedError(f"{prefix}{exc}")
