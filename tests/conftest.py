from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardvault.db import atomic, create_card_definition, create_user
from cardvault.models.card import RarityTier
from cardvault.models.db import Base, CardDefinitionDB, CardInstanceDB, UserDB
from cardvault.services.events import get_event_bus
from cardvault.services.supply import allocate_instance


@pytest.fixture(autouse=True)
def clear_event_bus():
    """Drop subscribers left behind by other tests."""
    get_event_bus().clear()
    yield
    get_event_bus().clear()


@pytest.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory) -> AsyncSession:
    """Provide a database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(session: AsyncSession) -> Callable[..., Any]:
    """Factory: register a committed user with a packs balance."""

    async def _make(user_id: str, packs: int = 0) -> UserDB:
        async with atomic(session):
            user = await create_user(session, user_id, f"{user_id}-name", packs)
        return user

    return _make


@pytest.fixture
def make_card(session: AsyncSession) -> Callable[..., Any]:
    """Factory: create a committed card definition (defaults to one Rare tier of 300)."""

    async def _make(
        name: str = "Ember Drake", tiers: list[RarityTier] | None = None
    ) -> CardDefinitionDB:
        async with atomic(session):
            definition = await create_card_definition(
                session,
                name,
                tiers or [RarityTier("Rare", 300), RarityTier("Event", 50)],
                image_url=f"https://img.example/{name.lower().replace(' ', '-')}.png",
                flavor_text="It remembers every fire.",
            )
        return definition

    return _make


@pytest.fixture
def mint(session: AsyncSession) -> Callable[..., Any]:
    """Factory: allocate an instance through the Supply Allocator."""

    async def _mint(definition_id: int, owner_id: str, rarity: str = "Rare") -> CardInstanceDB:
        return await allocate_instance(session, definition_id, rarity, owner_id)

    return _mint


class EventRecorder:
    """Collects events delivered through the process-wide bus."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def listen(self, *names: str) -> None:
        bus = get_event_bus()
        for name in names:
            bus.subscribe(name, self._handler(name))

    def _handler(self, name: str) -> Callable[..., None]:
        def handle(**payload: Any) -> None:
            self.events.append((name, payload))

        return handle

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[dict[str, Any]]:
        return [payload for event, payload in self.events if event == name]


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
