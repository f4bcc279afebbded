"""End-to-end tests for the HTTP API."""

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from cardvault.db import atomic
from cardvault.db.database import get_read_session, get_session
from cardvault.main import app
from cardvault.models.db import CardInstanceDB
from cardvault.timeutil import utcnow

ADMIN = {"X-User-Id": "root", "X-User-Admin": "true"}


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
async def client(session_factory):
    """Provide an async test client with overridden database sessions."""

    async def override_get_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_read_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_read_session] = override_get_read_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
async def world(client: AsyncClient) -> dict[str, int]:
    """Alice owns one Rare drake; Bob holds packs."""
    for user_id, packs in (("alice", 0), ("bob", 6)):
        response = await client.post(
            "/admin/users",
            json={"id": user_id, "username": user_id.title(), "packs": packs},
            headers=ADMIN,
        )
        assert response.status_code == 201

    response = await client.post(
        "/admin/cards",
        json={
            "name": "Ember Drake",
            "image_url": "https://img.example/ember-drake.png",
            "rarities": [
                {"rarity": "Rare", "total_copies": 300},
                {"rarity": "Event", "total_copies": 50},
            ],
        },
        headers=ADMIN,
    )
    assert response.status_code == 201
    card_id = response.json()["id"]

    response = await client.post(
        f"/admin/cards/{card_id}/allocate",
        json={"rarity": "Rare", "owner_id": "alice"},
        headers=ADMIN,
    )
    assert response.status_code == 201
    return {"card": card_id, "instance": response.json()["id"]}


class TestIdentity:
    async def test_missing_identity_is_forbidden(self, client: AsyncClient) -> None:
        response = await client.post("/listings", json={"instance_id": 1})

        assert response.status_code == 403
        body = response.json()
        assert body["outcome"] == "known_failure"
        assert body["failure"]["kind"] == "forbidden"

    async def test_admin_routes_require_admin(self, client: AsyncClient) -> None:
        response = await client.post(
            "/admin/users", json={"id": "eve", "username": "Eve"}, headers=as_user("eve")
        )

        assert response.status_code == 403


class TestAdminAndSupply:
    async def test_card_definition_and_supply(self, client: AsyncClient, world) -> None:
        response = await client.get(f"/cards/{world['card']}")

        assert response.status_code == 200
        tiers = {t["rarity"]: t for t in response.json()["rarities"]}
        assert tiers["Rare"]["minted_count"] == 1

        response = await client.get(f"/cards/{world['card']}/supply/Rare")
        assert response.json()["remaining"] == 299

    async def test_display_override_never_affects_allocation(
        self, client: AsyncClient, world
    ) -> None:
        card = world["card"]
        response = await client.put(
            f"/admin/cards/{card}/supply/Event/display", json={"value": 0}, headers=ADMIN
        )
        assert response.status_code == 200
        assert response.json()["displayed_remaining"] == 0
        assert response.json()["remaining"] == 50

        shown = await client.get(f"/cards/{card}/supply/Event")
        assert shown.json()["remaining"] == 0

        response = await client.post(
            f"/admin/cards/{card}/allocate",
            json={"rarity": "Event", "owner_id": "bob"},
            headers=ADMIN,
        )
        assert response.status_code == 201
        assert response.json()["mint_number"] == 1

    async def test_duplicate_user_conflicts(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/admin/users", json={"id": "alice", "username": "Alice"}, headers=ADMIN
        )

        assert response.status_code == 409
        assert response.json()["failure"]["kind"] == "conflict"

    async def test_exhausted_supply(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/admin/cards",
            json={"name": "One Of One", "rarities": [{"rarity": "Mythic", "total_copies": 1}]},
            headers=ADMIN,
        )
        card = response.json()["id"]
        payload = {"rarity": "Mythic", "owner_id": "bob"}
        first = await client.post(f"/admin/cards/{card}/allocate", json=payload, headers=ADMIN)
        second = await client.post(f"/admin/cards/{card}/allocate", json=payload, headers=ADMIN)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["failure"]["kind"] == "supply_exhausted"


class TestMarketFlow:
    async def test_list_offer_accept(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/listings", json={"instance_id": world["instance"]}, headers=as_user("alice")
        )
        assert response.status_code == 201
        listing = response.json()
        assert listing["card"]["mint_number"] == 1

        response = await client.post(
            f"/listings/{listing['id']}/offers",
            json={"offered_packs": 4, "message": "Four packs?"},
            headers=as_user("bob"),
        )
        assert response.status_code == 201
        offer_id = response.json()["id"]

        response = await client.post(
            f"/listings/{listing['id']}/offers/{offer_id}/accept", headers=as_user("alice")
        )
        assert response.status_code == 200
        assert response.json()["status"] == "sold"
        assert response.json()["offers"][0]["status"] == "accepted"

        alice = (await client.get("/collection/alice")).json()
        bob = (await client.get("/collection/bob")).json()
        assert alice["packs"] == 4
        assert alice["total_instances"] == 0
        assert bob["packs"] == 2
        assert [i["id"] for i in bob["instances"]] == [world["instance"]]

    async def test_browse_active_listings(self, client: AsyncClient, world) -> None:
        await client.post(
            "/listings", json={"instance_id": world["instance"]}, headers=as_user("alice")
        )

        response = await client.get("/listings", params={"rarity": "Rare"})

        assert response.status_code == 200
        assert response.json()["count"] == 1

    async def test_listed_card_is_busy(self, client: AsyncClient, world) -> None:
        await client.post(
            "/listings", json={"instance_id": world["instance"]}, headers=as_user("alice")
        )

        response = await client.post(
            f"/grading/{world['instance']}/request", headers=as_user("alice")
        )

        assert response.status_code == 409
        assert response.json()["failure"]["kind"] == "instance_busy"

    async def test_cancel_twice_is_already_closed(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/listings", json={"instance_id": world["instance"]}, headers=as_user("alice")
        )
        listing_id = response.json()["id"]

        first = await client.post(f"/listings/{listing_id}/cancel", headers=as_user("alice"))
        second = await client.post(f"/listings/{listing_id}/cancel", headers=as_user("alice"))

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert second.status_code == 409
        assert second.json()["failure"]["kind"] == "already_closed"

    async def test_unknown_listing(self, client: AsyncClient) -> None:
        response = await client.get("/listings/999")

        assert response.status_code == 404
        assert response.json()["failure"]["kind"] == "not_found"

    async def test_negative_packs_rejected_by_schema(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/listings/1/offers", json={"offered_packs": -1}, headers=as_user("bob")
        )

        assert response.status_code == 422


class TestTradeFlow:
    async def test_propose_and_accept(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/trades",
            json={
                "recipient_id": "bob",
                "offered_instance_ids": [world["instance"]],
                "requested_packs": 3,
            },
            headers=as_user("alice"),
        )
        assert response.status_code == 201
        trade = response.json()
        assert trade["status"] == "pending"
        assert trade["offered_cards"][0]["name"] == "Ember Drake"

        incoming = (await client.get("/trades?direction=incoming", headers=as_user("bob"))).json()
        assert incoming["count"] == 1

        response = await client.post(f"/trades/{trade['id']}/accept", headers=as_user("bob"))
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        bob = (await client.get("/collection/bob")).json()
        assert bob["packs"] == 3
        assert [i["id"] for i in bob["instances"]] == [world["instance"]]

    async def test_outsider_cannot_view_trade(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/trades",
            json={"recipient_id": "bob", "offered_instance_ids": [world["instance"]]},
            headers=as_user("alice"),
        )
        trade_id = response.json()["id"]

        outsider = await client.get(f"/trades/{trade_id}", headers=as_user("mallory"))
        admin = await client.get(f"/trades/{trade_id}", headers=ADMIN)

        assert outsider.status_code == 403
        assert admin.status_code == 200

    async def test_self_trade_is_validation_error(self, client: AsyncClient, world) -> None:
        response = await client.post(
            "/trades",
            json={"recipient_id": "alice", "offered_instance_ids": [world["instance"]]},
            headers=as_user("alice"),
        )

        assert response.status_code == 400
        assert response.json()["failure"]["kind"] == "validation"


class TestGradingFlow:
    async def test_request_complete_reveal(self, client: AsyncClient, world) -> None:
        instance_id = world["instance"]

        response = await client.post(f"/grading/{instance_id}/request", headers=as_user("alice"))
        assert response.json()["status"] == "grading_requested"

        early = await client.post(
            f"/grading/{instance_id}/complete", json={}, headers=as_user("alice")
        )
        assert early.status_code == 403

        response = await client.post(
            f"/grading/{instance_id}/complete",
            json={"grade": 8.5, "admin_override": True},
            headers=ADMIN,
        )
        assert response.status_code == 200
        assert response.json()["slabbed"] is True

        response = await client.post(f"/grading/{instance_id}/reveal", headers=as_user("alice"))
        assert response.json()["status"] == "available"
        assert response.json()["grade"] == 8.5

    async def test_collection_finalizes_due_grading(
        self, client: AsyncClient, session_factory, world
    ) -> None:
        instance_id = world["instance"]
        await client.post(f"/grading/{instance_id}/request", headers=as_user("alice"))
        async with session_factory() as session, atomic(session):
            await session.execute(
                update(CardInstanceDB)
                .where(CardInstanceDB.id == instance_id)
                .values(grading_requested_at=utcnow() - timedelta(hours=25))
            )

        status = (await client.get(f"/grading/{instance_id}")).json()
        assert status["ready"] is True

        collection = (await client.get("/collection/alice")).json()

        assert collection["finalized_gradings"] == [instance_id]
        [instance] = collection["instances"]
        assert instance["status"] == "grading_complete"
        assert 1 <= instance["grade"] <= 10

    async def test_grade_out_of_range(self, client: AsyncClient, world) -> None:
        response = await client.post(
            f"/grading/{world['instance']}/complete",
            json={"grade": 12, "admin_override": True},
            headers=ADMIN,
        )

        assert response.status_code == 422

    async def test_retired_card_cannot_be_graded(self, client: AsyncClient, world) -> None:
        instance_id = world["instance"]
        response = await client.post(
            f"/admin/instances/{instance_id}/return-to-pool", headers=ADMIN
        )
        assert response.json()["status"] == "retired"

        response = await client.post(f"/grading/{instance_id}/request", headers=as_user("alice"))

        assert response.status_code == 403
