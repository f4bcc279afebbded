"""
Failure Classification — Error Taxonomy and Response Envelope.

Every mutating operation either succeeds or raises exactly one KnownError
subclass. There is no silent partial success.

Response types:
- Success: Operation completed successfully
- KnownFailure: System knows why it failed (one of the taxonomy kinds)
- UnknownFailure: System does not know why it failed

The API layer converts KnownError into an ApiResponse with the error's
HTTP status. Anything else becomes an UnknownFailure with status 500.
"""

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """Classification of failure types."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"

    # Stale status/version observed at write time
    CONFLICT = "conflict"

    INSUFFICIENT_ASSETS = "insufficient_assets"
    SUPPLY_EXHAUSTED = "supply_exhausted"
    CONTENT_UNAVAILABLE = "content_unavailable"
    FORBIDDEN = "forbidden"
    INSTANCE_BUSY = "instance_busy"
    ALREADY_CLOSED = "already_closed"

    UNKNOWN = "unknown"


class OutcomeType(str, Enum):
    """High-level outcome classification."""

    SUCCESS = "success"
    KNOWN_FAILURE = "known_failure"
    UNKNOWN_FAILURE = "unknown_failure"


T = TypeVar("T")


class FailureDetail(BaseModel):
    """Why an operation was refused, and what the caller can do about it."""

    kind: FailureKind = Field(
        ...,
        description="Taxonomy entry, e.g. instance_busy or already_closed",
    )
    message: str = Field(
        ...,
        description="Human-readable reason the operation was refused",
    )
    detail: str | None = Field(
        default=None,
        description="Entity ids and statuses involved, for support and logs",
    )
    suggestion: str | None = Field(
        default=None,
        description="Next step for the caller, when there is one",
    )


class ApiResponse(BaseModel, Generic[T]):
    """
    Response envelope for failures surfaced by the API.

    Successful endpoints return their own response models; failures are
    always wrapped in this envelope so the caller sees the specific reason.
    """

    outcome: OutcomeType = Field(
        ...,
        description="success, known_failure or unknown_failure",
    )
    data: T | None = Field(
        default=None,
        description="Payload; only set on success",
    )
    failure: FailureDetail | None = Field(
        default=None,
        description="Set for every non-success outcome",
    )

    @classmethod
    def success(cls, data: T) -> "ApiResponse[T]":
        return cls(outcome=OutcomeType.SUCCESS, data=data)

    @classmethod
    def known_failure(
        cls,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ) -> "ApiResponse[Any]":
        return cls(
            outcome=OutcomeType.KNOWN_FAILURE,
            failure=FailureDetail(
                kind=kind,
                message=message,
                detail=detail,
                suggestion=suggestion,
            ),
        )

    @classmethod
    def unknown_failure(
        cls,
        detail: str | None = None,
    ) -> "ApiResponse[Any]":
        """
        Create an unknown failure response.

        The message is fixed; only the technical detail varies.
        """
        return cls(
            outcome=OutcomeType.UNKNOWN_FAILURE,
            failure=FailureDetail(
                kind=FailureKind.UNKNOWN,
                message="The operation failed for an unexpected reason.",
                detail=detail,
                suggestion="Retry the request. If this persists, please report the issue.",
            ),
        )


class KnownError(Exception):
    """
    A refusal the engine can explain.

    Raised from inside a transaction; the surrounding `atomic` block rolls
    back before the API layer turns it into an envelope.
    """

    kind: FailureKind = FailureKind.UNKNOWN
    status_code: int = 400

    def __init__(
        self,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ):
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        super().__init__(message)

    def to_response(self) -> ApiResponse[Any]:
        return ApiResponse.known_failure(
            kind=self.kind,
            message=self.message,
            detail=self.detail,
            suggestion=self.suggestion,
        )


class ValidationError(KnownError):
    """Malformed or self-contradictory request."""

    kind = FailureKind.VALIDATION
    status_code = 400


class NotFoundError(KnownError):
    kind = FailureKind.NOT_FOUND
    status_code = 404


class ConflictError(KnownError):
    """
    A compare-and-swap write matched no rows.

    Someone else changed the entity after it was read. Safe to retry.
    """

    kind = FailureKind.CONFLICT
    status_code = 409

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            message,
            detail=detail,
            suggestion="Reload and retry the operation.",
        )


class InsufficientAssetsError(KnownError):
    """A party no longer owns the instances or packs an exchange needs."""

    kind = FailureKind.INSUFFICIENT_ASSETS
    status_code = 409


class SupplyExhaustedError(KnownError):
    kind = FailureKind.SUPPLY_EXHAUSTED
    status_code = 409

    def __init__(self, definition_id: int, rarity: str, total_copies: int):
        self.definition_id = definition_id
        self.rarity = rarity
        self.total_copies = total_copies
        super().__init__(
            f"All {total_copies} copies of this card at {rarity} rarity have been minted.",
            detail=f"definition={definition_id} rarity={rarity}",
        )


class ContentUnavailableError(KnownError):
    """Rarity tier is outside its availability window."""

    kind = FailureKind.CONTENT_UNAVAILABLE
    status_code = 403


class ForbiddenError(KnownError):
    kind = FailureKind.FORBIDDEN
    status_code = 403


class InstanceBusyError(KnownError):
    """Instance is claimed by another subsystem (listed, grading, retired)."""

    kind = FailureKind.INSTANCE_BUSY
    status_code = 409

    def __init__(self, instance_id: int, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Card instance {instance_id} is not available (currently {status}).",
            suggestion="Cancel the listing or finish grading first.",
        )


class AlreadyClosedError(KnownError):
    """Cancel-class operation on an entity that is already closed."""

    kind = FailureKind.ALREADY_CLOSED
    status_code = 409

    def __init__(self, entity: str, entity_id: int, status: str):
        self.entity = entity
        self.entity_id = entity_id
        self.status = status
        super().__init__(
            f"{entity.capitalize()} {entity_id} is already {status}.",
            detail=f"{entity}={entity_id} status={status}",
        )
