"""Tests for the people/moments routes and the outbox rows they write."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from cherish_api.dependencies import get_user_session
from cherish_engine.state.repository import PersonRepository, SyncConnectionRepository, SyncLinkRepository
from cherish_engine.state.tables import SyncOutboxTable

USER = "test-user"


@pytest_asyncio.fixture()
async def people_client(app, async_session, make_token):
    async def _override():
        yield async_session

    app.dependency_overrides[get_user_session] = _override
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {make_token(sub=USER)}"},
    ) as ac:
        yield ac


@pytest_asyncio.fixture()
async def linked_person(async_session):
    conn = await SyncConnectionRepository(async_session, USER).create("https://peer.example", "shared-secret-0001")
    person = await PersonRepository(async_session, USER).create("Alex")
    await SyncLinkRepository(async_session, USER).upsert(
        conn.id, "their-alex", local_person_id=person.id, link_status="linked"
    )
    return person


async def _outbox(session) -> list[SyncOutboxTable]:
    result = await session.execute(select(SyncOutboxTable).order_by(SyncOutboxTable.id))
    return list(result.scalars().all())


class TestPeople:
    @pytest.mark.asyncio
    async def test_create_and_list(self, people_client):
        created = await people_client.post("/api/v1/people", json={"name": "Casey", "relationship_type": "friend"})
        assert created.status_code == 201
        assert created.json()["relationship_type"] == "friend"

        listed = await people_client.get("/api/v1/people")
        assert [p["name"] for p in listed.json()] == ["Casey"]

    @pytest.mark.asyncio
    async def test_unlinked_person_writes_no_outbox(self, people_client, async_session):
        await people_client.post("/api/v1/people", json={"name": "Casey"})
        assert await _outbox(async_session) == []

    @pytest.mark.asyncio
    async def test_update_linked_person_queues_snapshot(self, people_client, linked_person, async_session):
        resp = await people_client.patch(f"/api/v1/people/{linked_person.id}", json={"name": "Alexandra"})

        assert resp.status_code == 200
        assert resp.json()["name"] == "Alexandra"
        (row,) = await _outbox(async_session)
        assert (row.entity_type, row.entity_uid, row.operation) == ("person", "their-alex", "upsert")
        assert row.payload["name"] == "Alexandra"

    @pytest.mark.asyncio
    async def test_update_unknown_person(self, people_client):
        resp = await people_client.patch("/api/v1/people/nope", json={"name": "X"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_blank_name_rejected(self, people_client):
        resp = await people_client.post("/api/v1/people", json={"name": ""})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("name:")


class TestMoments:
    @pytest.mark.asyncio
    async def test_create_defaults_date_from_happened_at(self, people_client, linked_person, async_session):
        resp = await people_client.post(
            "/api/v1/moments",
            json={
                "title": "Concert",
                "happened_at": "2026-10-10T20:00:00+00:00",
                "partner_ids": [linked_person.id],
            },
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["moment_date"] == "2026-10-10"
        assert body["partner_ids"] == [linked_person.id]
        (row,) = await _outbox(async_session)
        assert (row.entity_type, row.entity_uid) == ("moment", body["moment_uid"])

    @pytest.mark.asyncio
    async def test_unknown_partner_ids_rejected(self, people_client):
        resp = await people_client.post("/api/v1/moments", json={"title": "Concert", "partner_ids": ["ghost"]})

        assert resp.status_code == 400
        assert "ghost" in resp.json()["error"]

    @pytest.mark.asyncio
    async def test_update_and_delete(self, people_client, linked_person, async_session):
        created = await people_client.post(
            "/api/v1/moments", json={"title": "Concert", "partner_ids": [linked_person.id]}
        )
        moment_id = created.json()["id"]

        updated = await people_client.patch(f"/api/v1/moments/{moment_id}", json={"impact_level": 5})
        assert updated.json()["impact_level"] == 5

        deleted = await people_client.delete(f"/api/v1/moments/{moment_id}")
        assert deleted.json() == {"success": True, "id": moment_id}

        operations = [row.operation for row in await _outbox(async_session)]
        assert operations == ["upsert", "upsert", "delete"]

        again = await people_client.delete(f"/api/v1/moments/{moment_id}")
        assert again.status_code == 404
