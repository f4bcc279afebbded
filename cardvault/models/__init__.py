from cardvault.models.card import (
    ALLOWED_TRANSITIONS,
    CardSnapshot,
    InstanceStatus,
    ListingStatus,
    OfferStatus,
    RarityTier,
    TradeSide,
    TradeStatus,
)
from cardvault.models.failure import (
    AlreadyClosedError,
    ApiResponse,
    ConflictError,
    ContentUnavailableError,
    FailureDetail,
    FailureKind,
    ForbiddenError,
    InstanceBusyError,
    InsufficientAssetsError,
    KnownError,
    NotFoundError,
    OutcomeType,
    SupplyExhaustedError,
    ValidationError,
)
from cardvault.models.identity import Caller

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AlreadyClosedError",
    "ApiResponse",
    "Caller",
    "CardSnapshot",
    "ConflictError",
    "ContentUnavailableError",
    "FailureDetail",
    "FailureKind",
    "ForbiddenError",
    "InstanceBusyError",
    "InstanceStatus",
    "InsufficientAssetsError",
    "KnownError",
    "ListingStatus",
    "NotFoundError",
    "OfferStatus",
    "OutcomeType",
    "RarityTier",
    "SupplyExhaustedError",
    "TradeSide",
    "TradeStatus",
    "ValidationError",
]
