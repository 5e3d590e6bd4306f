"""OpenAICompletionClient: OpenAI-compatible chat completions via httpx.

Works with api.openai.com or any server exposing /v1/chat/completions.
Requests may be routed through an HTTP proxy.
"""

from __future__ import annotations

import json
import logging

import httpx

from ..types import CompletionRequest, CompletionResponse, CompletionServiceError

logger = logging.getLogger(__name__)


class OpenAICompletionClient:
    """Completion service client. One pooled ``httpx.AsyncClient`` per instance.

    An ``error`` object in the response body is returned as part of the
    ``CompletionResponse`` whatever the HTTP status; only transport and
    decoding failures (including a JSON body of the wrong shape) raise
    ``CompletionServiceError``. Nothing is retried.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        proxy: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.last_usage: dict = {}  # populated after each complete() call
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            proxy=proxy or None,
            transport=transport,
        )

    def _get_headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        url = f"{self.base_url}/chat/completions"
        try:
            response = await self._client.post(
                url, headers=self._get_headers(), json=request.to_payload(),
            )
        except httpx.HTTPError as e:
            raise CompletionServiceError(f"HTTP error: {e}") from e

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CompletionServiceError(
                f"HTTP {response.status_code}: undecodable body: {response.text[:200]}",
                status_code=response.status_code,
            ) from e
        if not isinstance(data, dict):
            raise CompletionServiceError(
                f"HTTP {response.status_code}: unexpected body type {type(data).__name__}",
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            logger.warning(
                "Completion service returned HTTP %d for model %s",
                response.status_code, request.model,
            )
        try:
            result = CompletionResponse.from_dict(data)
        except (AttributeError, TypeError, ValueError) as e:
            raise CompletionServiceError(
                f"HTTP {response.status_code}: malformed completion body: {e}",
                status_code=response.status_code,
            ) from e
        usage = data.get("usage")
        self.last_usage = usage if isinstance(usage, dict) else {}
        return result

    async def aclose(self) -> None:
        await self._client.aclose()
