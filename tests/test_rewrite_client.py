"""Tests for the Gemini rewrite client."""

import asyncio
import json

import httpx
import pytest
import respx

from content_processor.clients.rewrite_client import (
    GEMINI_API_BASE,
    RewriteClient,
    RewriteRequest,
    RewriteResponse,
    RewriteTimeoutError,
    build_payload,
    is_accepted_finish,
    parse_response,
)
from content_processor.core.config import RewriteSettings
from content_processor.core.exceptions import GovernanceError, ProviderError

MODEL_URL = f"{GEMINI_API_BASE}/models/gemini-2.5-flash:generateContent"


def gemini_body(text="Rewritten", finish="STOP"):
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "thinking...", "thought": True},
                        {"text": text},
                    ]
                },
                "finishReason": finish,
            }
        ],
        "usageMetadata": {
            "promptTokenCount": 10,
            "candidatesTokenCount": 4,
            "thoughtsTokenCount": 2,
            "totalTokenCount": 16,
        },
    }


def make_request(**overrides):
    request = RewriteRequest.from_settings("# Source", RewriteSettings())
    for key, value in overrides.items():
        setattr(request, key, value)
    return request


class TestPayload:
    """Tests for request building and response parsing."""

    def test_build_payload_defaults(self):
        payload = build_payload(make_request())

        assert payload["contents"][0]["parts"][0]["text"] == "# Source"
        config = payload["generationConfig"]
        assert config["temperature"] == 0.2
        assert config["thinkingConfig"] == {"thinkingBudget": -1}
        assert "maxOutputTokens" not in config

    def test_build_payload_max_tokens_and_thinking_off(self):
        payload = build_payload(make_request(max_output_tokens=512, thinking_budget=0))

        config = payload["generationConfig"]
        assert config["maxOutputTokens"] == 512
        assert config["thinkingConfig"] == {"thinkingBudget": 0}

    def test_build_payload_without_thinking(self):
        payload = build_payload(make_request(thinking_budget=None))
        assert "thinkingConfig" not in payload["generationConfig"]

    def test_empty_system_instruction_replaced(self):
        request = RewriteRequest.from_settings(
            "text", RewriteSettings(system_instruction="")
        )
        assert request.system_instruction == " "

    def test_config_dict_excludes_text(self):
        config = make_request().config_dict()
        assert "text" not in config
        assert config["model"] == "gemini-2.5-flash"

    def test_parse_response_skips_thoughts(self):
        response = parse_response(gemini_body())

        assert response.text == "Rewritten"
        assert response.finish_reason == "STOP"
        assert response.usage.total_tokens == 16
        assert response.usage.thoughts_tokens == 2

    def test_parse_response_without_candidates(self):
        response = parse_response({})
        assert response.text == ""
        assert response.finish_reason is None

    @pytest.mark.parametrize(
        "reason,accepted",
        [
            ("STOP", True),
            ("FINISH_REASON_UNSPECIFIED", True),
            (None, True),
            ("MAX_TOKENS", False),
            ("SAFETY", False),
        ],
    )
    def test_finish_reasons(self, reason, accepted):
        assert is_accepted_finish(reason) is accepted


class TestRewriteClient:
    """Tests for RewriteClient.rewrite."""

    @pytest.mark.asyncio
    async def test_success_sends_key_header(self):
        with respx.mock:
            route = respx.post(MODEL_URL).mock(
                return_value=httpx.Response(200, json=gemini_body())
            )

            response = await RewriteClient("gemini-test").rewrite(make_request())

        assert response.text == "Rewritten"
        sent = route.calls[0].request
        assert sent.headers["x-goog-api-key"] == "gemini-test"
        assert json.loads(sent.content)["systemInstruction"]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(GovernanceError, match="API key was not provided"):
            await RewriteClient("").rewrite(make_request())

    @pytest.mark.asyncio
    async def test_error_message_from_body(self):
        with respx.mock:
            respx.post(MODEL_URL).mock(
                return_value=httpx.Response(
                    400, json={"error": {"message": "Invalid argument"}}
                )
            )

            with pytest.raises(ProviderError) as exc_info:
                await RewriteClient("k", retry_base_delay=0).rewrite(make_request())

        assert str(exc_info.value) == "[400] Invalid argument"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self):
        with respx.mock:
            route = respx.post(MODEL_URL).mock(return_value=httpx.Response(500))

            with pytest.raises(ProviderError):
                await RewriteClient("k", retry_base_delay=0).rewrite(make_request())

        assert route.call_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        with respx.mock:
            route = respx.post(MODEL_URL).mock(
                side_effect=[
                    httpx.Response(429, json={"error": {"message": "quota"}}),
                    httpx.Response(200, json=gemini_body("Second try")),
                ]
            )

            response = await RewriteClient("k", retry_base_delay=0).rewrite(
                make_request()
            )

        assert route.call_count == 2
        assert response.text == "Second try"

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        with respx.mock:
            route = respx.post(MODEL_URL).mock(return_value=httpx.Response(429))

            with pytest.raises(ProviderError) as exc_info:
                await RewriteClient("k", retry_base_delay=0).rewrite(
                    make_request(retries=2)
                )

        assert route.call_count == 3
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_local_timeout_abandons_call(self):
        release = asyncio.Event()
        client = RewriteClient("k", retry_base_delay=0)

        async def slow_post(request):
            await release.wait()
            return RewriteResponse(text="late")

        client._post = slow_post

        with pytest.raises(RewriteTimeoutError, match="Local timeout"):
            await client.rewrite(make_request(timeout_seconds=0.01, retries=0))

        assert client.abandoned_calls == 1

        release.set()
        await asyncio.sleep(0.01)
        assert client.abandoned_calls == 0

    @pytest.mark.asyncio
    async def test_timeout_retried_then_succeeds(self):
        client = RewriteClient("k", retry_base_delay=0)
        attempts = []
        never = asyncio.Event()

        async def flaky_post(request):
            attempts.append(1)
            if len(attempts) == 1:
                await never.wait()
            return RewriteResponse(text="ok", finish_reason="STOP")

        client._post = flaky_post

        response = await client.rewrite(make_request(timeout_seconds=0.01, retries=1))

        assert response.text == "ok"
        assert len(attempts) == 2
        never.set()
        await asyncio.sleep(0.01)
