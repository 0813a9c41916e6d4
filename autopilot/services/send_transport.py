"""
HTTP send transport — delivers outgoing chat messages to the messaging bridge.
"""

import logging
from typing import Optional

import httpx

from autopilot.config import settings
from autopilot.core.errors import SendFailure

logger = logging.getLogger(__name__)


class HttpSendTransport:
    """
    POSTs ``{"chatId": ..., "text": ...}`` to the bridge's send endpoint.

    Any transport error or non-2xx response raises ``SendFailure`` so the
    scheduler marks the action failed.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url or settings.send_url
        self.token = token if token is not None else settings.send_token
        self.timeout = timeout or settings.send_timeout_seconds
        self._http = client

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def send(self, chat_id: str, text: str) -> None:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)

        try:
            resp = await self._http.post(
                self.url,
                json={"chatId": chat_id, "text": text},
                headers=self._headers(),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SendFailure(
                f"Send failed with HTTP {e.response.status_code}", chat_id=chat_id
            ) from e
        except httpx.HTTPError as e:
            raise SendFailure(f"Send failed: {e}", chat_id=chat_id) from e

        logger.debug(f"[SEND] Delivered {len(text)} chars to {chat_id}")

    async def close(self):
        if self._http is not None:
            await self._http.aclose()
            self._http = None
