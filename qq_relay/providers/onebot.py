"""OneBotMessenger: outbound delivery through the gateway's HTTP API."""

from __future__ import annotations

import json
import logging

import httpx

from ..types import DeliveryError, UserID

logger = logging.getLogger(__name__)


class OneBotMessenger:
    """Sends private messages via ``POST {base_url}/send_private_msg``."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:5700",
        access_token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def send_private_message(self, user_id: UserID, text: str) -> dict:
        return await self._send("send_private_msg", {"user_id": user_id, "message": text})

    async def _send(self, endpoint: str, payload: dict) -> dict:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = await self._client.post(url, headers=self._get_headers(), json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"HTTP error: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            ack = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}
        return ack if isinstance(ack, dict) else {}

    async def aclose(self) -> None:
        await self._client.aclose()
