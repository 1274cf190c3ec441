"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that endpoint payloads are validated and documented
in the OpenAPI schema.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from cherish_engine.sync.snapshots import SyncEvent

# ---------------------------------------------------------------------------
# Allowance schemas
# ---------------------------------------------------------------------------


class AllowanceView(BaseModel):
    """Current-period balance as shown to the user."""

    period_id: str
    period_start: datetime
    period_end: datetime
    source: str
    role: str
    ai_enabled: bool
    tokens_granted: int
    tokens_used: int
    tokens_remaining: int
    tokens_per_credit: int
    credits_granted: float
    credits_used: float
    credits_remaining: float
    plan_base_credits: float
    rollover_credits: float
    low_balance: bool


class EnsureAllowanceRequest(BaseModel):
    """Body of ``POST /allowance/ensure``.  Both fields are admin features."""

    user_id: str | None = None
    batch_init: bool = False


class SetAllowanceRequest(BaseModel):
    tokens_granted: int = Field(ge=0)
    tokens_used: int = Field(ge=0)


class CreditSettingsBody(BaseModel):
    tokens_per_credit: int | None = Field(default=None, gt=0)
    credits_free_per_month: int | None = Field(default=None, ge=0)
    credits_premium_per_month: int | None = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Suggestion schemas
# ---------------------------------------------------------------------------


class ActivitySuggestionRequest(BaseModel):
    partner_id: str | None = None
    idempotency_key: str | None = Field(default=None, max_length=128)


class ActivitySuggestionResponse(BaseModel):
    suggestion: str
    charged: bool
    credits_remaining: float
    low_balance: bool


# ---------------------------------------------------------------------------
# People and moments
# ---------------------------------------------------------------------------


class PersonCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    relationship_type: str = Field(default="partner", max_length=64)


class PersonUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    relationship_type: str | None = Field(default=None, max_length=64)


class PersonResponse(BaseModel):
    id: str
    person_uid: str
    name: str
    relationship_type: str
    archived: bool
    merged_into_person_id: str | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class MomentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    moment_date: date | None = None
    happened_at: datetime | None = None
    impact_level: int = Field(default=2, ge=1, le=5)
    event_type: str | None = None
    is_celebrated_annually: bool = False
    partner_ids: list[str] = Field(default_factory=list)


class MomentUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    moment_date: date | None = None
    happened_at: datetime | None = None
    impact_level: int | None = Field(default=None, ge=1, le=5)
    event_type: str | None = None
    is_celebrated_annually: bool | None = None
    partner_ids: list[str] | None = None


class MomentResponse(BaseModel):
    id: str
    moment_uid: str
    title: str
    description: str | None = None
    moment_date: date | None = None
    happened_at: datetime | None = None
    impact_level: int | None = None
    event_type: str | None = None
    is_celebrated_annually: bool = False
    partner_ids: list[str] = Field(default_factory=list)
    source: str = "local"
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Sync (user-facing)
# ---------------------------------------------------------------------------


class ConnectionCreate(BaseModel):
    remote_base_url: str = Field(min_length=8, max_length=512)
    shared_secret: str = Field(min_length=16, max_length=256)
    remote_app: str = Field(default="cherishly", max_length=64)


class ConnectionResponse(BaseModel):
    """A sync connection.  The shared secret is never returned."""

    id: str
    remote_app: str
    remote_base_url: str
    status: str
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    model_config = {"from_attributes": True}


class ConnectionRef(BaseModel):
    connection_id: str | None = None


MappingActionType = Literal["link", "exclude", "create_local", "create_remote"]


class MappingAction(BaseModel):
    """One user decision about a remote or local person."""

    action: MappingActionType
    remote_person_uid: str | None = None
    local_person_id: str | None = None
    remote_person_name: str | None = None
    relationship_label: str | None = None


class ApplyMappingRequest(BaseModel):
    connection_id: str | None = None
    actions: list[MappingAction] = Field(min_length=1, max_length=200)


class MergeRequest(BaseModel):
    keep_person_id: str = ""
    drop_person_id: str = ""


class UndoMergeRequest(BaseModel):
    merge_log_id: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Sync (server-to-server)
# ---------------------------------------------------------------------------


class PullRequest(BaseModel):
    since_outbox_id: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1)


class PullResponse(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)
    last_outbox_id: int


class PushRequest(BaseModel):
    events: list[SyncEvent] = Field(default_factory=list, max_length=500)


class RevokeRequest(BaseModel):
    revoked_by: str | None = None
