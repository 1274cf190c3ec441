"""AI activity suggestions, gated and charged through the allowance engine.

Order of operations: re-check the allowance server-side, call the
completion gateway, then record usage.  A failed gateway call raises before
anything is charged.

A retried request carrying an idempotency key the user already spent gets the
stored suggestion back without another gateway call.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from cherish_api.services.ai_client import CompletionClient, sanitize_prompt_value
from cherish_engine.allowance.engine import AllowanceEngine
from cherish_engine.errors import NotFoundError
from cherish_engine.state.repository import PersonDetailRepository, PersonRepository, UsageEventRepository
from cherish_engine.state.tables import PersonTable

logger = logging.getLogger(__name__)

FEATURE_SUGGEST_ACTIVITY = "suggest_activity"
FALLBACK_SUGGESTION = "Try something thoughtful today 💕"
AI_PROVIDER = "ai_gateway"

_SYSTEM_PROMPT = """**Role & Voice**
You are Cherishly's gentle companion. Suggest one small, specific activity that could brighten the bond between the user and one of their Cherished people. Be warm, personal, and realistic for today or this week. One emoji max. No gender assumptions. Keep under ~200 characters.

**Context you have received:**
{context}

**Current Date/Time:**
NOW (ISO): {now}

**Rules**
1. Don't assume gender or cohabitation; adapt wording: use "create" if together; "send" or "share" if apart or unknown.
2. Prefer ideas doable today/this week.
3. Use known likes when possible and avoid known dislikes.
4. Offer small, creative actions; avoid expensive or complex plans.
5. If context is sparse, suggest a universally kind micro-gesture.
6. If the user has no Cherished profiles, suggest they add someone special first.

Return ONLY the suggestion text, nothing else."""


def build_activity_messages(
    person: PersonTable | None,
    likes: list[str],
    dislikes: list[str],
    now: datetime,
) -> list[dict[str, str]]:
    """Assemble the chat messages for one suggestion request."""
    if person is None:
        context = "**NOTE:** User has no Cherished profiles yet."
    else:
        context = "\n".join(
            [
                f"**RELATIONSHIP_TYPE:** {sanitize_prompt_value(person.relationship_type or 'partner')}",
                f"**CHERISHED_NAME:** {sanitize_prompt_value(person.name)}",
                f"**CHERISHED_LIKES:** {', '.join(sanitize_prompt_value(i) for i in likes) or 'none listed'}",
                f"**CHERISHED_DISLIKES:** {', '.join(sanitize_prompt_value(i) for i in dislikes) or 'none listed'}",
            ]
        )
    return [
        {"role": "system", "content": _SYSTEM_PROMPT.format(context=context, now=now.isoformat())},
        {"role": "user", "content": "Generate one activity suggestion for me."},
    ]


class SuggestionService:
    def __init__(self, session: AsyncSession, user_id: str, ai_client: CompletionClient) -> None:
        self._session = session
        self._user_id = user_id
        self._ai = ai_client

    async def _target_person(self, partner_id: str | None) -> PersonTable | None:
        people = PersonRepository(self._session, self._user_id)
        if partner_id:
            person = await people.get(partner_id)
            if person is None or person.archived:
                raise NotFoundError("Partner not found")
            return person
        active = await people.list_active()
        return active[0] if active else None

    async def suggest_activity(self, partner_id: str | None, idempotency_key: str | None = None) -> dict[str, Any]:
        """Return one suggestion and the balance left after charging it.

        Raises
        ------
        AllowanceDeniedError
            Non-premium plan or no credits left.
        UpstreamError
            Gateway rate limit (429), gateway credits (402) or other failure.
        """
        engine = AllowanceEngine(self._session)
        if idempotency_key:
            previous = await UsageEventRepository(self._session, self._user_id).get_by_key(idempotency_key)
            if previous is not None:
                logger.info("Replaying suggestion user=%s key=%s", self._user_id, idempotency_key)
                stored = (previous.metadata_json or {}).get("suggestion")
                return await self._result(engine, stored or FALLBACK_SUGGESTION, charged=False)

        await engine.require_credits(self._user_id)

        person = await self._target_person(partner_id)
        likes: list[str] = []
        dislikes: list[str] = []
        if person is not None:
            likes, dislikes = await PersonDetailRepository(self._session, self._user_id).list_preferences(person.id)

        messages = build_activity_messages(person, likes, dislikes, datetime.now(UTC))
        completion = await self._ai.complete(messages, temperature=0.9, max_tokens=200)
        text = completion.text or FALLBACK_SUGGESTION

        key = idempotency_key or f"{FEATURE_SUGGEST_ACTIVITY}_{uuid.uuid4()}"
        charged = await engine.record_usage(
            self._user_id,
            key,
            completion.prompt_tokens,
            completion.completion_tokens,
            FEATURE_SUGGEST_ACTIVITY,
            model=completion.model,
            provider=AI_PROVIDER,
            metadata={"partner_id": person.id if person else None, "suggestion": text},
        )
        return await self._result(engine, text, charged=charged)

    async def _result(self, engine: AllowanceEngine, text: str, *, charged: bool) -> dict[str, Any]:
        _, balance = await engine.get_balance(self._user_id)
        return {
            "suggestion": text,
            "charged": charged,
            "credits_remaining": balance.remaining_credits,
            "low_balance": balance.low_balance,
        }
