"""AI text-extraction capability.

The pipeline only depends on the ``TextExtractionCapability`` protocol, so it
can run against the HTTP client below or a deterministic fake. Implementations
raise ``TransientExtractionError`` for failures worth retrying and
``ExtractionUnavailable`` for everything else.
"""

import json
import logging
from typing import Any, Protocol

import httpx

from shipment_intake.config import settings
from shipment_intake.exceptions import ExtractionUnavailable, ParseFailure, TransientExtractionError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 425, 429}


class TextExtractionCapability(Protocol):
    async def extract_text(self, image_bytes: bytes, content_type: str = "image/png") -> str: ...

    async def parse_structured(self, text: str) -> dict[str, Any]: ...


def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    if resp.is_success:
        return
    if resp.status_code >= 500 or resp.status_code in _TRANSIENT_STATUS:
        raise TransientExtractionError(
            f"{operation} returned HTTP {resp.status_code}", {"status": resp.status_code}
        )
    raise ExtractionUnavailable(f"{operation} rejected with HTTP {resp.status_code}", {"status": resp.status_code})


def decode_structured(body: Any) -> dict[str, Any]:
    """Accept either a JSON object or an object wrapping a JSON string under ``content``."""
    if isinstance(body, dict) and isinstance(body.get("content"), str):
        body = body["content"]
    if isinstance(body, str):
        text = body.strip()
        # Models like to wrap JSON in a markdown fence
        if text.startswith("```"):
            text = text.strip("`")
            if text.lower().startswith("json"):
                text = text[4:]
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseFailure(f"Structured output is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise ParseFailure(f"Structured output must be a JSON object, got {type(body).__name__}")
    return body


class HttpExtractionClient:
    """Talks to the extraction service at ``AI_BASE_URL``.

    POST /v1/extract-text   raw image bytes          -> {"text": "..."}
    POST /v1/parse          {"text": ..., "schema"}  -> shipment JSON
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.AI_BASE_URL).rstrip("/")
        self.api_key = settings.AI_API_KEY if api_key is None else api_key
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, headers=headers, transport=self._transport
        )

    async def extract_text(self, image_bytes: bytes, content_type: str = "image/png") -> str:
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/v1/extract-text", content=image_bytes, headers={"Content-Type": content_type}
                )
        except httpx.TimeoutException as e:
            raise TransientExtractionError(f"Text extraction timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientExtractionError(f"Text extraction transport error: {e}") from e
        _raise_for_status(resp, "Text extraction")
        try:
            text = resp.json().get("text")
        except (ValueError, AttributeError) as e:
            raise ExtractionUnavailable("Text extraction returned an unreadable body") from e
        if not isinstance(text, str):
            raise ExtractionUnavailable("Text extraction returned no text")
        return text

    async def parse_structured(self, text: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post("/v1/parse", json={"text": text, "schema": "shipment"})
        except httpx.TimeoutException as e:
            raise TransientExtractionError(f"Structured parsing timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientExtractionError(f"Structured parsing transport error: {e}") from e
        _raise_for_status(resp, "Structured parsing")
        try:
            body = resp.json()
        except ValueError as e:
            raise ParseFailure("Structured parsing returned non-JSON output") from e
        return decode_structured(body)
