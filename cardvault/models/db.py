"""
SQLAlchemy ORM models for persistent storage.

The card instance row is the single source of truth for ownership and
status. Listings, offers and trades only reference instances; they never
hold a separate "busy" flag of their own.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cardvault.models.card import (
    InstanceStatus,
    ListingStatus,
    OfferStatus,
    TradeSide,
    TradeStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _enum_column(enum_cls: type[PyEnum]) -> Enum:
    """Store enums by value as plain strings (no native DB enum)."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class UserDB(Base):
    """
    A user known to the engine.

    `packs` is the packs ledger balance. It is only ever changed by
    conditional updates inside an exchange commit.
    """

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("packs >= 0", name="ck_user_packs_non_negative"),)

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    packs: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return f"<UserDB(id={self.id}, packs={self.packs})>"


class CardDefinitionDB(Base):
    """Template metadata shared by all copies of a card."""

    __tablename__ = "card_definitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    image_url: Mapped[str] = mapped_column(Text, default="")
    flavor_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    rarities: Mapped[list["RarityTierDB"]] = relationship(
        back_populates="definition", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<CardDefinitionDB(id={self.id}, name={self.name})>"


class RarityTierDB(Base):
    """
    One rarity of a card definition with its supply cap.

    `minted_count` is the allocation counter. It only moves through a
    single conditional UPDATE and never decreases.
    """

    __tablename__ = "rarity_tiers"
    __table_args__ = (
        UniqueConstraint("definition_id", "rarity", name="uq_definition_rarity"),
        CheckConstraint("total_copies >= 1", name="ck_tier_total_copies_positive"),
        CheckConstraint("minted_count <= total_copies", name="ck_tier_within_cap"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("card_definitions.id", ondelete="CASCADE"), index=True
    )
    rarity: Mapped[str] = mapped_column(String(50))
    total_copies: Mapped[int] = mapped_column(Integer)
    minted_count: Mapped[int] = mapped_column(Integer, default=0)
    available_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    available_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    definition: Mapped["CardDefinitionDB"] = relationship(back_populates="rarities")

    def __repr__(self) -> str:
        return (
            f"<RarityTierDB(definition={self.definition_id}, rarity={self.rarity}, "
            f"minted={self.minted_count}/{self.total_copies})>"
        )


class CardInstanceDB(Base):
    """
    One uniquely mint-numbered copy of a card definition at a rarity.

    Rows are never deleted. Returning an instance to the pool retires it.
    """

    __tablename__ = "card_instances"
    __table_args__ = (
        UniqueConstraint("definition_id", "rarity", "mint_number", name="uq_instance_mint"),
        CheckConstraint("mint_number >= 1", name="ck_instance_mint_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    definition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("card_definitions.id"), index=True
    )
    rarity: Mapped[str] = mapped_column(String(50))
    mint_number: Mapped[int] = mapped_column(Integer)
    owner_id: Mapped[str | None] = mapped_column(
        String(255), ForeignKey("users.id"), nullable=True, index=True
    )
    status: Mapped[InstanceStatus] = mapped_column(
        _enum_column(InstanceStatus), default=InstanceStatus.AVAILABLE, index=True
    )
    slabbed: Mapped[bool] = mapped_column(Boolean, default=False)
    grade: Mapped[float | None] = mapped_column(Float, nullable=True)
    grading_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    graded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    # Bumped by every compare-and-swap write
    version: Mapped[int] = mapped_column(Integer, default=1)

    def __repr__(self) -> str:
        return (
            f"<CardInstanceDB(id={self.id}, mint={self.mint_number}, "
            f"owner={self.owner_id}, status={self.status})>"
        )


class MintLogDB(Base):
    """Append-only record of every allocation."""

    __tablename__ = "mint_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    instance_id: Mapped[int] = mapped_column(Integer, ForeignKey("card_instances.id"))
    definition_id: Mapped[int] = mapped_column(Integer)
    rarity: Mapped[str] = mapped_column(String(50))
    mint_number: Mapped[int] = mapped_column(Integer)
    total_copies: Mapped[int] = mapped_column(Integer)
    minted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ListingDB(Base):
    """
    A market listing for one instance.

    Closed listings are kept as tombstones with a non-active status.
    """

    __tablename__ = "listings"
    __table_args__ = (
        # At most one active listing per instance
        Index(
            "uq_active_listing_instance",
            "instance_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), index=True)
    instance_id: Mapped[int] = mapped_column(Integer, ForeignKey("card_instances.id"))
    card: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[ListingStatus] = mapped_column(
        _enum_column(ListingStatus), default=ListingStatus.ACTIVE, index=True
    )
    close_reason: Mapped[str] = mapped_column(String(255), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    offers: Mapped[list["OfferDB"]] = relationship(
        back_populates="listing", cascade="all, delete-orphan", order_by="OfferDB.id"
    )

    def __repr__(self) -> str:
        return f"<ListingDB(id={self.id}, instance={self.instance_id}, status={self.status})>"


class OfferDB(Base):
    """An offer of instances and/or packs against a listing."""

    __tablename__ = "offers"
    __table_args__ = (
        # One active offer per offerer per listing
        Index(
            "uq_active_offer_per_offerer",
            "listing_id",
            "offerer_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        CheckConstraint("offered_packs >= 0", name="ck_offer_packs_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("listings.id", ondelete="CASCADE"), index=True
    )
    offerer_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), index=True)
    offered_instance_ids: Mapped[list[int]] = mapped_column(JSON, default=list)
    offered_cards: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    offered_packs: Mapped[int] = mapped_column(Integer, default=0)
    message: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[OfferStatus] = mapped_column(
        _enum_column(OfferStatus), default=OfferStatus.ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    listing: Mapped["ListingDB"] = relationship(back_populates="offers")

    def __repr__(self) -> str:
        return f"<OfferDB(id={self.id}, listing={self.listing_id}, status={self.status})>"


class TradeDB(Base):
    """A direct two-party proposed exchange."""

    __tablename__ = "trades"
    __table_args__ = (
        CheckConstraint("offered_packs >= 0", name="ck_trade_offered_packs"),
        CheckConstraint("requested_packs >= 0", name="ck_trade_requested_packs"),
        CheckConstraint("sender_id <> recipient_id", name="ck_trade_distinct_parties"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), index=True)
    recipient_id: Mapped[str] = mapped_column(String(255), ForeignKey("users.id"), index=True)
    offered_packs: Mapped[int] = mapped_column(Integer, default=0)
    requested_packs: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[TradeStatus] = mapped_column(
        _enum_column(TradeStatus), default=TradeStatus.PENDING, index=True
    )
    counter_of_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trades.id"), nullable=True
    )
    cancellation_reason: Mapped[str] = mapped_column(String(255), default="")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["TradeItemDB"]] = relationship(
        back_populates="trade", cascade="all, delete-orphan", order_by="TradeItemDB.id"
    )

    def instance_ids(self, side: TradeSide) -> list[int]:
        return [item.instance_id for item in self.items if item.side == side]

    def __repr__(self) -> str:
        return f"<TradeDB(id={self.id}, {self.sender_id}->{self.recipient_id}, {self.status})>"


class TradeItemDB(Base):
    """One instance referenced by a trade, with its creation-time snapshot."""

    __tablename__ = "trade_items"
    __table_args__ = (UniqueConstraint("trade_id", "instance_id", name="uq_trade_instance"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("trades.id", ondelete="CASCADE"), index=True
    )
    instance_id: Mapped[int] = mapped_column(Integer, ForeignKey("card_instances.id"), index=True)
    side: Mapped[TradeSide] = mapped_column(_enum_column(TradeSide))
    card: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    trade: Mapped["TradeDB"] = relationship(back_populates="items")


class SettingDB(Base):
    """
    Key/value configuration owned by admins.

    Holds display-only values. Nothing in the allocation path reads it.
    """

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
