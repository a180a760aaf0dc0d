"""Generation service client for the Jarvis gateway."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from jarvis_orchestrator.errors import UpstreamRejected, UpstreamTimeout

logger = logging.getLogger(__name__)

MAX_SOURCES = 3
DEFAULT_ATTEMPTS = 2


@dataclass
class GenerationResult:
    """Text produced by the generation service plus optional sources."""
    text: str
    sources: list[dict[str, str]] = field(default_factory=list)


@dataclass
class GenerationOutcome:
    """Tagged result of the retry policy.

    ``status`` is one of "ok", "timeout" or "rejected"; callers turn the
    non-ok statuses into an apology instead of raising.
    """
    status: str
    text: str = ""
    sources: list[dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class GenerationClient:
    """Client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Build request headers."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate(self, prompt: str, max_output_tokens: int) -> GenerationResult:
        """
        Ask the generation service for a completion of ``prompt``.

        Raises:
            UpstreamTimeout: The service did not answer within the timeout
            UpstreamRejected: Any other transport, HTTP or payload failure
        """
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_output_tokens,
            "temperature": 0.6,
        }
        endpoint = f"{self.base_url}/v1/chat/completions"
        client = await self.get_client()
        logger.debug(f"Making request to {endpoint} (max_tokens={max_output_tokens})")

        try:
            response = await client.post(endpoint, json=payload, headers=self.headers)
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"Generation service timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise UpstreamRejected(f"Generation service unreachable: {e}") from e

        if not response.is_success:
            logger.error(f"LLM API error: {response.status_code} - {response.text[:250]}")
            raise UpstreamRejected(
                f"LLM API error: {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
            text = (data["choices"][0]["message"]["content"] or "").strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamRejected(f"Malformed generation response: {e}") from e

        return GenerationResult(text=text, sources=extract_sources(data))


async def generate_with_retry(
    client: GenerationClient,
    prompt: str,
    max_output_tokens: int,
    attempts: int = DEFAULT_ATTEMPTS,
) -> GenerationOutcome:
    """Call the generation service up to ``attempts`` times.

    Never raises for upstream failures; the last failure is reported in the
    returned outcome.
    """
    attempts = max(1, attempts)
    outcome = GenerationOutcome(status="rejected", error="not attempted")
    for attempt in range(1, attempts + 1):
        try:
            result = await client.generate(prompt, max_output_tokens)
        except UpstreamTimeout as e:
            logger.warning(f"Generation attempt {attempt}/{attempts} timed out: {e}")
            outcome = GenerationOutcome(status="timeout", error=str(e), attempts=attempt)
            continue
        except UpstreamRejected as e:
            logger.warning(f"Generation attempt {attempt}/{attempts} rejected: {e}")
            outcome = GenerationOutcome(status="rejected", error=str(e), attempts=attempt)
            continue
        return GenerationOutcome(
            status="ok",
            text=result.text,
            sources=result.sources,
            attempts=attempt,
        )
    logger.error(f"Generation failed after {attempts} attempts: {outcome.error}")
    return outcome


def extract_sources(data: Any) -> list[dict[str, str]]:
    """Pull up to three sources from ``citations`` or ``search_results``."""
    if not isinstance(data, dict):
        return []
    sources: list[dict[str, str]] = []
    for item in data.get("search_results") or []:
        if isinstance(item, dict) and item.get("url"):
            sources.append({"title": str(item.get("title") or item["url"]), "url": str(item["url"])})
    if not sources:
        for item in data.get("citations") or []:
            if isinstance(item, str) and item:
                sources.append({"title": item, "url": item})
            elif isinstance(item, dict) and item.get("url"):
                sources.append({"title": str(item.get("title") or item["url"]), "url": str(item["url"])})
    return sources[:MAX_SOURCES]
