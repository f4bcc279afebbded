from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class InstanceStatus(str, Enum):
    """Single authoritative status of a card instance."""

    AVAILABLE = "available"
    LISTED = "listed"
    GRADING_REQUESTED = "grading_requested"
    GRADING_COMPLETE = "grading_complete"
    RETIRED = "retired"


# Allowed (current -> next) moves. AVAILABLE -> AVAILABLE is an ownership
# transfer that only bumps the version.
ALLOWED_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.AVAILABLE: frozenset(
        {
            InstanceStatus.AVAILABLE,
            InstanceStatus.LISTED,
            InstanceStatus.GRADING_REQUESTED,
            InstanceStatus.RETIRED,
        }
    ),
    InstanceStatus.LISTED: frozenset({InstanceStatus.AVAILABLE}),
    InstanceStatus.GRADING_REQUESTED: frozenset({InstanceStatus.GRADING_COMPLETE}),
    InstanceStatus.GRADING_COMPLETE: frozenset({InstanceStatus.AVAILABLE}),
    InstanceStatus.RETIRED: frozenset(),
}


class ListingStatus(str, Enum):
    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class OfferStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    # Closed because another offer on the same listing was accepted
    SUPERSEDED = "superseded"


class TradeStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TradeSide(str, Enum):
    OFFERED = "offered"
    REQUESTED = "requested"


@dataclass(frozen=True)
class CardSnapshot:
    """
    Display attributes of an instance captured when an exchange references it.

    Snapshots are informational only. Every commit re-reads the live
    instance rather than trusting a snapshot.
    """

    instance_id: int
    name: str
    rarity: str
    mint_number: int
    image_url: str = ""
    flavor_text: str | None = None
    slabbed: bool = False
    grade: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RarityTier:
    """Supply definition for one rarity of a card."""

    rarity: str
    total_copies: int
    available_from: datetime | None = None
    available_to: datetime | None = None
