"""Tests for scheduled jobs."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.config import settings
from cardvault.jobs.expire_exchanges import run_expiry
from cardvault.models.card import InstanceStatus, ListingStatus, TradeStatus
from cardvault.models.identity import Caller
from cardvault.services.market import create_listing, get_listing
from cardvault.services.registry import get_instance
from cardvault.services.trading import create_trade, get_trade
from cardvault.timeutil import utcnow


@pytest.fixture
async def stale_exchanges(
    session: AsyncSession, make_user, make_card, mint, monkeypatch: pytest.MonkeyPatch
) -> dict[str, int]:
    """One listing and one expiring trade, both created now."""
    monkeypatch.setattr(settings, "trade_expiry_days", 3)
    await make_user("alice")
    await make_user("bob")
    card = await make_card()
    listed = (await mint(card.id, "alice")).id
    offered = (await mint(card.id, "alice")).id

    listing = await create_listing(session, Caller("alice"), listed)
    trade = await create_trade(session, Caller("alice"), "bob", [offered])
    return {"listing": listing.id, "trade": trade.id, "instance": listed}


class TestRunExpiry:
    async def test_nothing_stale_yet(self, session_factory, stale_exchanges) -> None:
        result = await run_expiry(session_factory, now=utcnow())

        assert result == {"listings": 0, "trades": 0}

    async def test_expires_listings_and_trades(
        self, session: AsyncSession, session_factory, stale_exchanges
    ) -> None:
        """Listings and trades past their age are closed and their cards released."""
        result = await run_expiry(session_factory, now=utcnow() + timedelta(days=10))

        assert result == {"listings": 1, "trades": 1}
        listing = await get_listing(session, stale_exchanges["listing"])
        assert listing.status == ListingStatus.EXPIRED
        trade = await get_trade(session, stale_exchanges["trade"])
        assert trade.status == TradeStatus.CANCELLED
        instance = await get_instance(session, stale_exchanges["instance"])
        assert instance.status == InstanceStatus.AVAILABLE

    async def test_listing_failure_does_not_stop_trades(
        self, session_factory, stale_exchanges
    ) -> None:
        """An error in one half is logged and the other half still runs."""
        with patch(
            "cardvault.jobs.expire_exchanges.expire_stale_listings",
            new_callable=AsyncMock,
            side_effect=RuntimeError("replica lag"),
        ):
            result = await run_expiry(session_factory, now=utcnow() + timedelta(days=10))

        assert result == {"listings": 0, "trades": 1}
