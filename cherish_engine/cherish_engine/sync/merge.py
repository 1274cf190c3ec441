"""Merge of two local people and its single-use undo.

A merge folds ``drop`` into ``keep``:

1. both people must belong to the user;
2. a merge log holding the dropped person, its links and the ``partner_ids``
   of every moment referencing it is committed first;
3. moment ``partner_ids`` are rewritten (``drop`` -> ``keep``, de-duplicated);
4. links are reconciled: a link of ``drop`` whose remote uid ``keep`` already
   links is deleted, any other is repointed;
5. likes, dislikes, nicknames, profile details and connections are repointed;
6. ``drop`` is tombstoned (``archived`` + ``merged_into_person_id``).

The rewritten moments and ``keep`` are then queued in the outbox for every
connection that links them; undo queues the restored person and moments.

Steps 3-6 share the caller's transaction.  Step 2 is committed on its own so
that a failure part-way through still leaves an undoable log behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_engine.errors import NotFoundError, ValidationError
from cherish_engine.state.database import set_user_context
from cherish_engine.state.repository import (
    MergeLogRepository,
    MomentRepository,
    PersonDetailRepository,
    PersonRepository,
    SyncLinkRepository,
)
from cherish_engine.sync.outbox import OutboxWriter
from cherish_engine.sync.snapshots import LinkRecord, MomentPartnersRecord, PersonRecord

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    merge_log_id: str
    kept_person_id: str
    merged_person_id: str
    moments_updated: int = 0
    links_repointed: int = 0
    links_deleted: int = 0
    details_moved: dict[str, int] = field(default_factory=dict)
    outbox_rows: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "merge_log_id": self.merge_log_id,
            "kept_person_id": self.kept_person_id,
            "merged_person_id": self.merged_person_id,
            "moments_updated": self.moments_updated,
            "links_repointed": self.links_repointed,
            "links_deleted": self.links_deleted,
        }


@dataclass
class UndoResult:
    merge_log_id: str
    restored_person_id: str
    moments_restored: int = 0
    links_restored: int = 0
    outbox_rows: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "merge_log_id": self.merge_log_id,
            "restored_person_id": self.restored_person_id,
            "moments_restored": self.moments_restored,
            "links_restored": self.links_restored,
        }


def _replace_and_dedup(partner_ids: list[str], drop_id: str, keep_id: str) -> list[str]:
    out: list[str] = []
    for pid in partner_ids:
        target = keep_id if pid == drop_id else pid
        if target not in out:
            out.append(target)
    return out


class MergeEngine:
    """Merge and undo-merge for the people of one user."""

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._session = session
        self._user_id = user_id
        self._people = PersonRepository(session, user_id)
        self._moments = MomentRepository(session, user_id)
        self._links = SyncLinkRepository(session, user_id)
        self._logs = MergeLogRepository(session, user_id)

    async def merge(self, keep_id: str, drop_id: str) -> MergeResult:
        """Fold *drop_id* into *keep_id*.

        Raises
        ------
        ValidationError
            If either id is missing or both are the same person.
        NotFoundError
            If either person does not belong to the user.
        """
        if not keep_id or not drop_id:
            raise ValidationError("keep_person_id and drop_person_id are required")
        if keep_id == drop_id:
            raise ValidationError("Cannot merge a person into themselves")

        keep = await self._people.get(keep_id)
        drop = await self._people.get(drop_id)
        if keep is None or drop is None:
            raise NotFoundError("Person not found")

        drop_links = [LinkRecord.of(link) for link in await self._links.list_for_local_person(drop_id)]
        moments = [
            MomentPartnersRecord(id=m.id, partner_ids=list(m.partner_ids or []))
            for m in await self._moments.list_referencing([drop_id])
        ]

        log = await self._logs.create(
            keep_id,
            drop_id,
            merged_person_snapshot=PersonRecord.of(drop).model_dump(mode="json"),
            links_snapshot=[link.model_dump(mode="json") for link in drop_links],
            moments_snapshot=[m.model_dump(mode="json") for m in moments],
        )
        log_id = log.id
        await self._session.commit()
        # Row-level security context is transaction-scoped.
        await set_user_context(self._session, self._user_id)

        result = MergeResult(merge_log_id=log_id, kept_person_id=keep_id, merged_person_id=drop_id)

        for moment in moments:
            rewritten = _replace_and_dedup(moment.partner_ids, drop_id, keep_id)
            await self._moments.set_partner_ids(moment.id, rewritten)
            result.moments_updated += 1

        kept_remote = {link.remote_person_uid for link in await self._links.list_for_local_person(keep_id)}
        for link in drop_links:
            if link.remote_person_uid in kept_remote:
                await self._links.delete(link.id)
                result.links_deleted += 1
            else:
                await self._links.repoint(link.id, keep_id)
                result.links_repointed += 1

        result.details_moved = await PersonDetailRepository(self._session, self._user_id).repoint(drop_id, keep_id)
        await self._people.tombstone(drop_id, keep_id)

        result.outbox_rows = await self._publish(keep_id, [m.id for m in moments])

        logger.info(
            "Merged person %s into %s (log=%s moments=%d links_repointed=%d links_deleted=%d)",
            drop_id,
            keep_id,
            log_id,
            result.moments_updated,
            result.links_repointed,
            result.links_deleted,
        )
        return result

    async def undo(self, log_id: str) -> UndoResult:
        """Reverse the merge recorded by *log_id*.

        Moment ``partner_ids`` are overwritten with their snapshotted value,
        not merged.  A log can be undone once; a second attempt raises
        :class:`NotFoundError`.
        """
        log = await self._logs.get_open(log_id)
        if log is None:
            raise NotFoundError("Merge log not found or already undone")

        person = PersonRecord.model_validate(log.merged_person_snapshot)
        await self._people.restore(
            person.id,
            archived=person.archived,
            merged_into_person_id=person.merged_into_person_id,
        )

        result = UndoResult(merge_log_id=log_id, restored_person_id=person.id)

        moment_ids: list[str] = []
        for raw in log.moments_snapshot or []:
            moment = MomentPartnersRecord.model_validate(raw)
            await self._moments.set_partner_ids(moment.id, moment.partner_ids)
            moment_ids.append(moment.id)
            result.moments_restored += 1

        for raw in log.links_snapshot or []:
            link = LinkRecord.model_validate(raw)
            await self._links.restore(link.model_dump())
            result.links_restored += 1

        await self._logs.mark_undone(log_id)
        result.outbox_rows = await self._publish(person.id, moment_ids)
        logger.info("Undid merge %s, person %s restored", log_id, person.id)
        return result

    async def _publish(self, person_id: str, moment_ids: list[str]) -> int:
        """Queue *person_id* and the given moments for every linking connection."""
        outbox = OutboxWriter(self._session, self._user_id)
        appended = 0
        person = await self._people.get(person_id)
        if person is not None:
            appended += await outbox.record_person_change(person)
        for moment_id in moment_ids:
            moment = await self._moments.get(moment_id)
            if moment is not None:
                appended += await outbox.record_moment_change(moment)
        return appended
