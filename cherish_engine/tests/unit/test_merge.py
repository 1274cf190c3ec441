"""Unit tests for cherish_engine.sync.merge.MergeEngine."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from cherish_engine.errors import NotFoundError, ValidationError
from cherish_engine.state.repository import MomentRepository, PersonRepository, SyncLinkRepository
from cherish_engine.state.tables import (
    MomentTable,
    PartnerConnectionTable,
    PartnerLikeTable,
    PersonTable,
    SyncMergeLogTable,
    SyncOutboxTable,
    SyncPersonLinkTable,
)
from cherish_engine.sync.merge import MergeEngine, _replace_and_dedup

USER = "user-1"


async def _partner_ids(session, moment_id: str) -> list[str]:
    result = await session.execute(select(MomentTable.partner_ids).where(MomentTable.id == moment_id))
    return result.scalar_one()


async def _person_state(session, person_id: str) -> tuple[bool, str | None]:
    result = await session.execute(
        select(PersonTable.archived, PersonTable.merged_into_person_id).where(PersonTable.id == person_id)
    )
    return tuple(result.one())


async def _links(session) -> list[tuple[str, str, str | None]]:
    result = await session.execute(
        select(
            SyncPersonLinkTable.connection_id,
            SyncPersonLinkTable.remote_person_uid,
            SyncPersonLinkTable.local_person_id,
        ).order_by(SyncPersonLinkTable.connection_id, SyncPersonLinkTable.remote_person_uid)
    )
    return [tuple(row) for row in result.all()]


async def _outbox(session, after: int = 0) -> list[tuple[str, str, str | None]]:
    result = await session.execute(
        select(SyncOutboxTable).where(SyncOutboxTable.id > after).order_by(SyncOutboxTable.id)
    )
    return [(row.entity_type, row.entity_uid, row.payload.get("person_uid")) for row in result.scalars().all()]


@pytest.fixture
def people(async_session):
    return PersonRepository(async_session, USER)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestReplaceAndDedup:
    def test_replaces_drop(self):
        assert _replace_and_dedup(["b", "c"], "b", "a") == ["a", "c"]

    def test_dedups_keep_already_present(self):
        assert _replace_and_dedup(["a", "b"], "b", "a") == ["a"]

    def test_preserves_order(self):
        assert _replace_and_dedup(["c", "b", "a"], "b", "a") == ["c", "a"]


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


class TestMerge:
    @pytest.mark.asyncio
    async def test_merge_rewrites_moments_links_details_and_tombstones(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        moments = MomentRepository(async_session, USER)
        only_drop = await moments.create(title="One", partner_ids=[drop.id])
        both = await moments.create(title="Two", partner_ids=[keep.id, drop.id])
        await SyncLinkRepository(async_session, USER).upsert(
            "conn-1", "remote-1", local_person_id=drop.id, link_status="linked"
        )
        async_session.add(PartnerLikeTable(user_id=USER, partner_id=drop.id, item="jazz"))
        async_session.add(PartnerConnectionTable(user_id=USER, partner_id=keep.id, connected_partner_id=drop.id))
        await async_session.flush()

        result = await MergeEngine(async_session, USER).merge(keep.id, drop.id)

        assert result.moments_updated == 2
        assert result.links_repointed == 1
        assert result.links_deleted == 0
        assert await _partner_ids(async_session, only_drop.id) == [keep.id]
        assert await _partner_ids(async_session, both.id) == [keep.id]
        assert await _links(async_session) == [("conn-1", "remote-1", keep.id)]
        assert await _person_state(async_session, drop.id) == (True, keep.id)

        likes = await async_session.execute(select(PartnerLikeTable.partner_id))
        assert likes.scalars().all() == [keep.id]
        connected = await async_session.execute(select(PartnerConnectionTable.connected_partner_id))
        assert connected.scalars().all() == [keep.id]

        as_dict = result.as_dict()
        assert as_dict["success"] is True
        assert as_dict["merge_log_id"] == result.merge_log_id

    @pytest.mark.asyncio
    async def test_log_written_with_snapshots(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        moment = await MomentRepository(async_session, USER).create(title="One", partner_ids=[drop.id, keep.id])

        result = await MergeEngine(async_session, USER).merge(keep.id, drop.id)

        log = (await async_session.execute(select(SyncMergeLogTable))).scalar_one()
        assert log.id == result.merge_log_id
        assert log.merged_person_snapshot["id"] == drop.id
        assert log.merged_person_snapshot["archived"] is False
        assert log.moments_snapshot == [{"id": moment.id, "partner_ids": [drop.id, keep.id]}]
        assert log.links_snapshot == []
        assert log.undone_at is None

    @pytest.mark.asyncio
    async def test_link_to_same_remote_person_is_deleted(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        links = SyncLinkRepository(async_session, USER)
        await links.upsert("conn-2", "remote-1", local_person_id=keep.id, link_status="linked")
        await links.upsert("conn-1", "remote-1", local_person_id=drop.id, link_status="linked")

        result = await MergeEngine(async_session, USER).merge(keep.id, drop.id)

        assert result.links_deleted == 1
        assert result.links_repointed == 0
        assert await _links(async_session) == [("conn-2", "remote-1", keep.id)]

    @pytest.mark.asyncio
    async def test_self_merge_rejected(self, async_session, people):
        alex = await people.create("Alex")
        with pytest.raises(ValidationError):
            await MergeEngine(async_session, USER).merge(alex.id, alex.id)

    @pytest.mark.asyncio
    async def test_missing_ids_rejected(self, async_session):
        with pytest.raises(ValidationError):
            await MergeEngine(async_session, USER).merge("", "p2")

    @pytest.mark.asyncio
    async def test_other_users_person_not_found(self, async_session, people):
        keep = await people.create("Alex")
        foreign = await PersonRepository(async_session, "someone-else").create("Alex")

        with pytest.raises(NotFoundError):
            await MergeEngine(async_session, USER).merge(keep.id, foreign.id)
        assert (await async_session.execute(select(SyncMergeLogTable))).first() is None

    @pytest.mark.asyncio
    async def test_merge_queues_rewritten_moments_and_kept_person(self, async_session, connection, link_person, people):
        keep = await link_person(connection, "Alex", "remote-keep")
        drop = await people.create("Alex S.")
        moment = await MomentRepository(async_session, USER).create(title="One", partner_ids=[drop.id])

        result = await MergeEngine(async_session, USER).merge(keep.id, drop.id)

        assert result.outbox_rows == 2
        assert await _outbox(async_session) == [
            ("person", "remote-keep", None),
            ("moment", moment.moment_uid, "remote-keep"),
        ]

    @pytest.mark.asyncio
    async def test_merge_without_links_queues_nothing(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        await MomentRepository(async_session, USER).create(title="One", partner_ids=[drop.id])

        result = await MergeEngine(async_session, USER).merge(keep.id, drop.id)

        assert result.outbox_rows == 0
        assert await _outbox(async_session) == []


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_restores_person_moments_and_links(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        moments = MomentRepository(async_session, USER)
        only_drop = await moments.create(title="One", partner_ids=[drop.id])
        both = await moments.create(title="Two", partner_ids=[keep.id, drop.id])
        await SyncLinkRepository(async_session, USER).upsert(
            "conn-1", "remote-1", local_person_id=drop.id, link_status="linked"
        )
        engine = MergeEngine(async_session, USER)
        merged = await engine.merge(keep.id, drop.id)

        undone = await engine.undo(merged.merge_log_id)

        assert undone.restored_person_id == drop.id
        assert undone.moments_restored == 2
        assert undone.links_restored == 1
        assert await _person_state(async_session, drop.id) == (False, None)
        assert await _partner_ids(async_session, only_drop.id) == [drop.id]
        assert await _partner_ids(async_session, both.id) == [keep.id, drop.id]
        assert await _links(async_session) == [("conn-1", "remote-1", drop.id)]

    @pytest.mark.asyncio
    async def test_undo_reinserts_deleted_link(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        links = SyncLinkRepository(async_session, USER)
        await links.upsert("conn-2", "remote-1", local_person_id=keep.id, link_status="linked")
        await links.upsert("conn-1", "remote-1", local_person_id=drop.id, link_status="linked")
        engine = MergeEngine(async_session, USER)
        merged = await engine.merge(keep.id, drop.id)

        await engine.undo(merged.merge_log_id)

        assert await _links(async_session) == [
            ("conn-1", "remote-1", drop.id),
            ("conn-2", "remote-1", keep.id),
        ]

    @pytest.mark.asyncio
    async def test_undo_is_single_use(self, async_session, people):
        keep = await people.create("Alex")
        drop = await people.create("Alex S.")
        engine = MergeEngine(async_session, USER)
        merged = await engine.merge(keep.id, drop.id)

        await engine.undo(merged.merge_log_id)
        with pytest.raises(NotFoundError):
            await engine.undo(merged.merge_log_id)

    @pytest.mark.asyncio
    async def test_unknown_log(self, async_session):
        with pytest.raises(NotFoundError):
            await MergeEngine(async_session, USER).undo("no-such-log")

    @pytest.mark.asyncio
    async def test_undo_queues_restored_person_and_moments(self, async_session, connection, link_person):
        keep = await link_person(connection, "Alex", "remote-keep")
        drop = await link_person(connection, "Alex S.", "remote-drop")
        moment = await MomentRepository(async_session, USER).create(title="One", partner_ids=[drop.id])
        engine = MergeEngine(async_session, USER)
        merged = await engine.merge(keep.id, drop.id)
        last_id = (await async_session.execute(select(func.max(SyncOutboxTable.id)))).scalar_one()

        undone = await engine.undo(merged.merge_log_id)

        assert undone.outbox_rows == 2
        assert await _outbox(async_session, after=last_id) == [
            ("person", "remote-drop", None),
            ("moment", moment.moment_uid, "remote-drop"),
        ]
