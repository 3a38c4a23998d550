"""
Unit tests for the generation service client.
"""

import json

import httpx
import pytest

from aves.core.errors import ExternalServiceError, RateLimitError, ValidationError
from aves.generation import GenerationClient, parse_json_payload


def completion(content, status=200, **headers):
    """Chat-completions style response carrying `content`."""
    body = {
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 80},
    }
    return httpx.Response(status, json=body, headers=headers)


def make_client(handler):
    return GenerationClient(
        api_url="http://generator.test/",
        api_key="secret",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def requests_seen():
    """Requests captured by the mock transport."""
    return []


class TestParseJsonPayload:
    def test_plain_object(self):
        assert parse_json_payload('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        assert parse_json_payload('```json\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_prose(self):
        text = 'Here is your exercise:\n{"type": "contextual_fill"}\nEnjoy!'
        assert parse_json_payload(text) == {"type": "contextual_fill"}

    @pytest.mark.parametrize("text", ["not json at all", "[1, 2, 3]", '{"a": '])
    def test_rejects_non_objects(self, text):
        with pytest.raises(ValidationError):
            parse_json_payload(text)


class TestGenerationClient:
    @pytest.mark.asyncio
    async def test_generate_success(self, requests_seen, contextual_fill_payload):
        """Posts a chat completion request and parses the JSON reply."""

        def handler(request):
            requests_seen.append(request)
            return completion(json.dumps(contextual_fill_payload))

        async with make_client(handler) as client:
            payload = await client.generate("Write an exercise about el pico")

        assert payload == contextual_fill_payload
        request = requests_seen[0]
        assert request.method == "POST"
        assert str(request.url) == "http://generator.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert body["messages"][-1] == {"role": "user", "content": "Write an exercise about el pico"}

    @pytest.mark.asyncio
    async def test_fenced_reply(self):
        async with make_client(lambda request: completion('```json\n{"ok": true}\n```')) as client:
            assert await client.generate("prompt") == {"ok": True}

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        """429 surfaces as RateLimitError with the server's Retry-After."""

        def handler(request):
            return httpx.Response(429, json={"error": "quota"}, headers={"Retry-After": "12"})

        async with make_client(handler) as client:
            with pytest.raises(RateLimitError) as exc_info:
                await client.generate("prompt")

        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with make_client(lambda request: httpx.Response(503, text="overloaded")) as client:
            with pytest.raises(ExternalServiceError) as exc_info:
                await client.generate("prompt")

        assert not isinstance(exc_info.value, RateLimitError)
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(ExternalServiceError):
                await client.generate("prompt")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        async with make_client(handler) as client:
            with pytest.raises(ExternalServiceError) as exc_info:
                await client.generate("prompt")

        assert "timed out" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"choices": []},
            {"result": "no choices"},
            {"choices": [{"message": {"content": None}}]},
        ],
    )
    async def test_unexpected_shape(self, body):
        async with make_client(lambda request: httpx.Response(200, json=body)) as client:
            with pytest.raises(ValidationError):
                await client.generate("prompt")

    @pytest.mark.asyncio
    async def test_health_check(self):
        def handler(request):
            return httpx.Response(200 if request.url.path == "/health" else 404)

        async with make_client(handler) as client:
            assert await client.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with make_client(handler) as client:
            assert await client.health_check() is False
