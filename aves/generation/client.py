"""
Exercise generation service client.

Talks to an OpenAI-compatible chat completions endpoint and returns the
JSON object the model produced. One attempt per call; retries and backoff
belong to the generation cache.
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
from loguru import logger

from aves.core.errors import ExternalServiceError, RateLimitError, ValidationError

SYSTEM_PROMPT = (
    "You write short vocabulary exercises that teach Spanish bird anatomy terms "
    "to English speakers. Respond with a single JSON object and nothing else."
)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_json_payload(text: str) -> dict[str, Any]:
    """
    Parse a model reply into a JSON object.

    Tolerates a surrounding ```json fenced block and leading/trailing prose
    around a single object.

    Raises:
        ValidationError: No JSON object could be parsed
    """
    content = text.strip()
    match = _FENCE.match(content)
    if match:
        content = match.group(1)
    elif not content.startswith("{"):
        start, end = content.find("{"), content.rfind("}")
        if start != -1 and end > start:
            content = content[start : end + 1]

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(
            "Generation reply is not valid JSON",
            {"error": str(e), "preview": text[:200]},
        ) from e

    if not isinstance(payload, dict):
        raise ValidationError(
            "Generation reply must be a JSON object",
            {"received": type(payload).__name__},
        )
    return payload


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GenerationClient:
    """HTTP client for the external generation service."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_url: Base URL of the service
            api_key: Bearer token (omitted from requests when None)
            model: Model identifier sent with each request
            timeout_seconds: Per-request HTTP timeout
            temperature: Sampling temperature
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.api_url = api_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=headers,
            transport=transport,
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> GenerationClient:
        return cls(
            api_url=settings.generation_api_url,
            api_key=settings.generation_api_key,
            model=settings.generation_model,
            timeout_seconds=settings.generation_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> GenerationClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def generate(self, prompt: str, system: str = SYSTEM_PROMPT) -> dict[str, Any]:
        """
        Generate one structured payload.

        Args:
            prompt: User prompt describing the exercise
            system: System instructions

        Returns:
            Parsed JSON object (not yet schema-validated)

        Raises:
            RateLimitError: HTTP 429
            ExternalServiceError: Transport failure or non-success status
            ValidationError: Reply did not contain a JSON object
        """
        body = {
            "model": self.model,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }

        try:
            response = await self.client.post(f"{self.api_url}/v1/chat/completions", json=body)
        except httpx.TimeoutException as e:
            logger.warning(f"Generation request timed out: {e}")
            raise ExternalServiceError("Generation request timed out", {"url": self.api_url}) from e
        except httpx.RequestError as e:
            logger.warning(f"Generation request failed: {e}")
            raise ExternalServiceError(
                "Generation service unreachable", {"url": self.api_url, "error": str(e)}
            ) from e

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning(f"Generation service rate limited (retry_after={retry_after})")
            raise RateLimitError("Generation service rate limit exceeded", retry_after=retry_after)

        if response.is_error:
            logger.error(f"Generation service returned {response.status_code}")
            raise ExternalServiceError(
                f"Generation service returned {response.status_code}",
                {"status_code": response.status_code, "body": response.text[:500]},
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
            if not isinstance(content, str):
                raise TypeError("message content is not text")
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ValidationError(
                "Generation response has an unexpected shape",
                {"body": response.text[:500]},
            ) from e

        usage = data.get("usage") or {}
        logger.debug(
            f"Generated payload with {self.model} "
            f"(prompt_tokens={usage.get('prompt_tokens')}, completion_tokens={usage.get('completion_tokens')})"
        )
        return parse_json_payload(content)

    async def health_check(self) -> bool:
        """
        Check if the generation service is reachable.

        Returns:
            True if it answers /health with 200, False otherwise
        """
        try:
            response = await self.client.get(f"{self.api_url}/health", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False
