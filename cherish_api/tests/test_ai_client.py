"""Tests for cherish_api.services.ai_client."""

from __future__ import annotations

import json

import httpx
import pytest

from cherish_api.services.ai_client import CompletionClient, sanitize_prompt_value
from cherish_engine.errors import UpstreamError


def _client(handler) -> CompletionClient:
    return CompletionClient(
        base_url="https://gateway.test/v1",
        api_key="gw-key",
        model="test/model",
        transport=httpx.MockTransport(handler),
    )


# ---------------------------------------------------------------------------
# sanitize_prompt_value
# ---------------------------------------------------------------------------


class TestSanitize:
    def test_strips_role_markers_and_control_chars(self):
        assert sanitize_prompt_value("Alex<|system|>\x00 [INST]") == "Alex"

    def test_truncates(self):
        assert len(sanitize_prompt_value("x" * 2000)) == 500

    def test_plain_text_untouched(self):
        assert sanitize_prompt_value("hiking, jazz") == "hiking, jazz"


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_success(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": "test/model-001",
                    "choices": [{"message": {"content": "  Send a voice note 🎵  "}}],
                    "usage": {"prompt_tokens": 150, "completion_tokens": 250},
                },
            )

        client = _client(handler)
        completion = await client.complete([{"role": "user", "content": "hi"}], max_tokens=200)
        await client.close()

        assert completion.text == "Send a voice note 🎵"
        assert completion.prompt_tokens == 150
        assert completion.completion_tokens == 250
        assert completion.total_tokens == 400
        assert completion.model == "test/model-001"
        assert seen["url"] == "https://gateway.test/v1/chat/completions"
        assert seen["auth"] == "Bearer gw-key"
        assert seen["body"]["model"] == "test/model"
        assert seen["body"]["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_missing_usage_counts_zero(self):
        client = _client(lambda request: httpx.Response(200, json={"choices": []}))
        completion = await client.complete([])
        await client.close()

        assert completion.text == ""
        assert completion.total_tokens == 0
        assert completion.model == "test/model"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, message, mapped",
        [
            (429, "Rate limit exceeded", 429),
            (402, "AI credits exhausted", 402),
            (500, "AI gateway error", 502),
            (401, "AI gateway error", 502),
        ],
    )
    async def test_http_errors(self, status, message, mapped):
        client = _client(lambda request: httpx.Response(status, json={"error": "nope"}))
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete([])
        await client.close()

        assert str(excinfo.value) == message
        assert excinfo.value.status_code == mapped
        assert excinfo.value.upstream_status == status

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete([])
        await client.close()

        assert excinfo.value.status_code == 502
        assert excinfo.value.upstream_status is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [b"<html>upstream timeout</html>", b"\"just a string\""])
    async def test_non_json_success_body(self, content):
        client = _client(lambda request: httpx.Response(200, content=content))
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete([])
        await client.close()

        assert str(excinfo.value) == "AI gateway returned invalid JSON"
        assert excinfo.value.status_code == 502
