"""HTTP client for the chat-completion gateway."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from cherish_engine.errors import UpstreamError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt input sanitization
# ---------------------------------------------------------------------------

_PROMPT_INJECTION_PATTERNS = re.compile(
    r"<\|system\|>|<\|user\|>|<\|assistant\|>|"
    r"\[INST\]|\[/INST\]|"
    r"<<SYS>>|<</SYS>>|"
    r"<\|im_start\|>|<\|im_end\|>",
    re.IGNORECASE,
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_MAX_FIELD_SIZE = 500


def sanitize_prompt_value(value: str) -> str:
    """Strip control characters and role markers from user-derived prompt text.

    Parameters
    ----------
    value:
        Raw string taken from user data (a person's name, a label).

    Returns
    -------
    str
        The cleaned string, truncated to a short field size.
    """
    cleaned = _CONTROL_CHARS.sub("", value)
    cleaned = _PROMPT_INJECTION_PATTERNS.sub("", cleaned)
    return cleaned[:_MAX_FIELD_SIZE].strip()


@dataclass(frozen=True)
class Completion:
    """Text and token usage returned by one completion call."""

    text: str
    prompt_tokens: int
    completion_tokens: int
    model: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class CompletionClient:
    """Thin async wrapper around an OpenAI-compatible ``/chat/completions`` API.

    Unlike a best-effort advisory client, failures here must be visible to
    the caller (nothing may be charged for a failed call), so every error is
    raised as :class:`UpstreamError` with a distinguishable message.

    Parameters
    ----------
    base_url:
        Root URL of the gateway, e.g. ``https://gateway.example/v1``.
    api_key:
        Bearer key for the gateway.
    model:
        Default model identifier.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional transport override (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.9,
        max_tokens: int = 200,
        model: str | None = None,
    ) -> Completion:
        """Run one chat completion.

        Raises
        ------
        UpstreamError
            ``429`` → "Rate limit exceeded", ``402`` → "AI credits exhausted",
            anything else non-2xx or a transport failure → 502.
        """
        payload: dict[str, Any] = {
            "model": model or self._model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            resp = await self._client.post("/chat/completions", json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("AI gateway returned %d", status)
            if status == 429:
                raise UpstreamError("Rate limit exceeded", status_code=429, upstream_status=status) from exc
            if status == 402:
                raise UpstreamError("AI credits exhausted", status_code=402, upstream_status=status) from exc
            raise UpstreamError("AI gateway error", status_code=502, upstream_status=status) from exc
        except httpx.RequestError as exc:
            logger.warning("AI gateway request failed: %s", exc)
            raise UpstreamError("AI gateway unavailable", status_code=502) from exc

        try:
            body = resp.json()
        except ValueError as exc:
            logger.warning("AI gateway returned a non-JSON body")
            raise UpstreamError("AI gateway returned invalid JSON", status_code=502) from exc
        if not isinstance(body, dict):
            raise UpstreamError("AI gateway returned invalid JSON", status_code=502)
        choices = body.get("choices") or [{}]
        text = ((choices[0].get("message") or {}).get("content") or "").strip()
        usage = body.get("usage") or {}
        return Completion(
            text=text,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
            model=body.get("model") or payload["model"],
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
