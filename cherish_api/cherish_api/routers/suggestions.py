"""AI suggestion endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Header

from cherish_api.dependencies import AIClientDep, SessionDep, UserDep
from cherish_api.schemas import ActivitySuggestionRequest, ActivitySuggestionResponse
from cherish_api.services.suggestion_service import SuggestionService

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


@router.post("/activity", response_model=ActivitySuggestionResponse)
async def suggest_activity(
    body: ActivitySuggestionRequest,
    session: SessionDep,
    user_id: UserDep,
    ai_client: AIClientDep,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key", max_length=128)] = None,
) -> dict[str, Any]:
    """One small activity idea for a Cherished person.

    Re-checks the allowance server-side before calling the model.  A retry
    with the same ``Idempotency-Key`` is never charged twice.
    """
    service = SuggestionService(session, user_id, ai_client)
    return await service.suggest_activity(body.partner_id, idempotency_key or body.idempotency_key)
