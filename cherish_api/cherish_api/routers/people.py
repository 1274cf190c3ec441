"""People and moments: the local mutation path that feeds the sync outbox.

Every write here ends with an :class:`OutboxWriter` call, which appends one
snapshot row per connection that links the affected person.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter

from cherish_api.dependencies import SessionDep, UserDep
from cherish_api.schemas import (
    MomentCreate,
    MomentResponse,
    MomentUpdate,
    PersonCreate,
    PersonResponse,
    PersonUpdate,
)
from cherish_engine.errors import NotFoundError, ValidationError
from cherish_engine.state.repository import MomentRepository, PersonRepository
from cherish_engine.state.tables import MomentTable, PersonTable
from cherish_engine.sync.outbox import OutboxWriter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["people"])


async def _require_people(people: PersonRepository, person_ids: list[str]) -> None:
    found = {p.id for p in await people.list_by_ids(person_ids)}
    missing = [pid for pid in person_ids if pid not in found]
    if missing:
        raise ValidationError(f"Unknown partner ids: {missing}")


@router.get("/people", response_model=list[PersonResponse])
async def list_people(session: SessionDep, user_id: UserDep) -> Any:
    return await PersonRepository(session, user_id).list_active()


@router.post("/people", response_model=PersonResponse, status_code=201)
async def create_person(body: PersonCreate, session: SessionDep, user_id: UserDep) -> PersonTable:
    person = await PersonRepository(session, user_id).create(body.name, body.relationship_type)
    await OutboxWriter(session, user_id).record_person_change(person)
    return person


@router.patch("/people/{person_id}", response_model=PersonResponse)
async def update_person(person_id: str, body: PersonUpdate, session: SessionDep, user_id: UserDep) -> PersonTable:
    person = await PersonRepository(session, user_id).get(person_id)
    if person is None or person.merged_into_person_id is not None:
        raise NotFoundError("Person not found")

    for key, value in body.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(person, key, value)
    person.updated_at = datetime.now(UTC)
    await session.flush()

    await OutboxWriter(session, user_id).record_person_change(person)
    return person


@router.post("/moments", response_model=MomentResponse, status_code=201)
async def create_moment(body: MomentCreate, session: SessionDep, user_id: UserDep) -> MomentTable:
    await _require_people(PersonRepository(session, user_id), body.partner_ids)

    fields = body.model_dump()
    if fields["moment_date"] is None:
        happened_at = fields["happened_at"]
        fields["moment_date"] = happened_at.date() if happened_at else datetime.now(UTC).date()

    moment = await MomentRepository(session, user_id).create(**fields)
    await OutboxWriter(session, user_id).record_moment_change(moment)
    return moment


@router.patch("/moments/{moment_id}", response_model=MomentResponse)
async def update_moment(moment_id: str, body: MomentUpdate, session: SessionDep, user_id: UserDep) -> MomentTable:
    moment = await MomentRepository(session, user_id).get(moment_id)
    if moment is None or moment.deleted_at is not None:
        raise NotFoundError("Moment not found")

    changes = body.model_dump(exclude_unset=True)
    if changes.get("partner_ids") is not None:
        await _require_people(PersonRepository(session, user_id), changes["partner_ids"])
    for key, value in changes.items():
        if value is not None or key in ("description", "happened_at", "event_type"):
            setattr(moment, key, value)
    moment.updated_at = datetime.now(UTC)
    await session.flush()

    await OutboxWriter(session, user_id).record_moment_change(moment)
    return moment


@router.delete("/moments/{moment_id}")
async def delete_moment(moment_id: str, session: SessionDep, user_id: UserDep) -> dict[str, Any]:
    moments = MomentRepository(session, user_id)
    moment = await moments.get(moment_id)
    if moment is None or moment.deleted_at is not None:
        raise NotFoundError("Moment not found")

    await moments.soft_delete(moment.id)
    await OutboxWriter(session, user_id).record_moment_change(moment, "delete")
    return {"success": True, "id": moment.id}
