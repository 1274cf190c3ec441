"""Versioned snapshot models carried by the outbox, the wire and the merge log.

Outbox payloads are full-entity snapshots tagged by ``entity_type`` so that a
consumer can validate the shape before applying it.  Bump
``SNAPSHOT_SCHEMA_VERSION`` when a field changes meaning.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from cherish_engine.state.tables import MomentTable, PersonTable, SyncPersonLinkTable

SNAPSHOT_SCHEMA_VERSION = 1

EntityType = Literal["person", "moment"]
Operation = Literal["upsert", "delete"]


# ---------------------------------------------------------------------------
# Entity snapshots (outbox / wire)
# ---------------------------------------------------------------------------


class PersonSnapshot(BaseModel):
    """Replicated view of a person."""

    model_config = ConfigDict(extra="ignore")

    entity_type: Literal["person"] = "person"
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    name: str
    relationship_label: str | None = None
    updated_at: datetime | None = None


class MomentSnapshot(BaseModel):
    """Replicated view of a moment.

    ``person_uid`` is the uid of the first linked person as known to the
    receiving side.
    """

    model_config = ConfigDict(extra="ignore")

    entity_type: Literal["moment"] = "moment"
    schema_version: int = SNAPSHOT_SCHEMA_VERSION
    title: str
    description: str | None = None
    moment_date: date | None = None
    happened_at: datetime | None = None
    impact_level: int | None = None
    attachments: list[Any] | None = None
    event_type: str | None = None
    is_celebrated_annually: bool = False
    person_uid: str | None = None
    updated_at: datetime | None = None


EntitySnapshot = Annotated[PersonSnapshot | MomentSnapshot, Field(discriminator="entity_type")]

_snapshot_adapter: TypeAdapter[PersonSnapshot | MomentSnapshot] = TypeAdapter(EntitySnapshot)


def parse_snapshot(entity_type: str, payload: dict[str, Any]) -> PersonSnapshot | MomentSnapshot:
    """Validate *payload* as the snapshot variant named by *entity_type*.

    Raises ``pydantic.ValidationError`` on shape mismatch.
    """
    return _snapshot_adapter.validate_python({**payload, "entity_type": entity_type})


class SyncEvent(BaseModel):
    """One replicated mutation as sent over the wire."""

    entity_type: EntityType
    entity_uid: str = Field(min_length=1, max_length=64)
    operation: Operation = "upsert"
    payload: dict[str, Any] = Field(default_factory=dict)

    def snapshot(self) -> PersonSnapshot | MomentSnapshot:
        return parse_snapshot(self.entity_type, self.payload)


def person_snapshot(person: PersonTable) -> PersonSnapshot:
    return PersonSnapshot(
        name=person.name,
        relationship_label=person.relationship_type,
        updated_at=person.updated_at,
    )


def moment_snapshot(moment: MomentTable, person_uid: str | None) -> MomentSnapshot:
    return MomentSnapshot(
        title=moment.title,
        description=moment.description,
        moment_date=moment.moment_date,
        happened_at=moment.happened_at,
        impact_level=moment.impact_level,
        attachments=moment.attachments,
        event_type=moment.event_type,
        is_celebrated_annually=moment.is_celebrated_annually,
        person_uid=person_uid,
        updated_at=moment.updated_at,
    )


# ---------------------------------------------------------------------------
# Merge log records
# ---------------------------------------------------------------------------


class PersonRecord(BaseModel):
    """Row image of a merged-away person, enough to revive it."""

    id: str
    person_uid: str
    name: str
    relationship_type: str
    archived: bool
    merged_into_person_id: str | None = None

    @classmethod
    def of(cls, person: PersonTable) -> PersonRecord:
        return cls(
            id=person.id,
            person_uid=person.person_uid,
            name=person.name,
            relationship_type=person.relationship_type,
            archived=person.archived,
            merged_into_person_id=person.merged_into_person_id,
        )


class LinkRecord(BaseModel):
    id: str
    connection_id: str
    local_person_id: str | None
    remote_person_uid: str
    link_status: str
    is_enabled: bool

    @classmethod
    def of(cls, link: SyncPersonLinkTable) -> LinkRecord:
        return cls(
            id=link.id,
            connection_id=link.connection_id,
            local_person_id=link.local_person_id,
            remote_person_uid=link.remote_person_uid,
            link_status=link.link_status,
            is_enabled=link.is_enabled,
        )


class MomentPartnersRecord(BaseModel):
    """A moment's ``partner_ids`` exactly as they were before the merge."""

    id: str
    partner_ids: list[str]
