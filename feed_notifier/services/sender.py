"""Broadcast sender.

Delivers a message to a ``platform:guild`` target. Adapters report every
failure as a DeliveryError with a DeliveryErrorKind so the delivery queue
never has to inspect transport-specific details.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from feed_notifier.config import SenderConfig
from feed_notifier.errors import DeliveryError, DeliveryErrorKind
from feed_notifier.log_system.unified_logger import UnifiedLogger


@dataclass(frozen=True)
class Target:
    """A delivery destination."""

    platform: str
    guild_id: str

    def __str__(self) -> str:
        return f"{self.platform}:{self.guild_id}"


class BroadcastSender(Protocol):
    async def send(self, target: Target, message: str) -> None:
        """Deliver ``message`` or raise DeliveryError."""


_STATUS_KINDS = {
    403: DeliveryErrorKind.PERMISSION_DENIED,
    404: DeliveryErrorKind.TARGET_MISSING,
    410: DeliveryErrorKind.TARGET_MISSING,
    415: DeliveryErrorKind.UNSUPPORTED_CONTENT,
}


class WebhookSender:
    """Posts messages as JSON to a bot gateway webhook.

    The gateway receives ``{"platform", "guild_id", "message"}`` and answers
    2xx on success. Error bodies may carry a ``code`` or ``retcode`` field
    with the chat platform's own error code.
    """

    def __init__(self, config: SenderConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.url:
            raise ValueError("Sender URL is not configured")
        self.config = config
        self._client = client
        self.logger = UnifiedLogger.get_logger(__name__)

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.config.token:
            headers["Authorization"] = f"Bearer {self.config.token}"
        return headers

    @staticmethod
    def _error_from_response(response: httpx.Response) -> DeliveryError:
        code = None
        detail = response.text[:200]
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code", body.get("retcode"))
            detail = body.get("message") or body.get("msg") or detail

        message = f"HTTP {response.status_code}: {detail}"
        if code is not None:
            error = DeliveryError.from_code(code, message)
            if error.kind != DeliveryErrorKind.TRANSIENT:
                return error
        kind = _STATUS_KINDS.get(response.status_code, DeliveryErrorKind.TRANSIENT)
        return DeliveryError(message, kind=kind, code=None if code is None else str(code))

    async def _post(self, client: httpx.AsyncClient, target: Target, message: str) -> httpx.Response:
        return await client.post(
            self.config.url,
            json={"platform": target.platform, "guild_id": target.guild_id, "message": message},
            headers=self._headers(),
        )

    async def send(self, target: Target, message: str) -> None:
        """Deliver one message.

        Raises:
            DeliveryError: On any transport or gateway failure
        """
        try:
            if self._client is not None:
                response = await self._post(self._client, target, message)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                    response = await self._post(client, target, message)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Transport error: {e}", kind=DeliveryErrorKind.TRANSIENT) from e

        if response.is_success:
            body = None
            try:
                body = response.json()
            except ValueError:
                pass
            # OneBot-style gateways report failures inside a 200 response
            if isinstance(body, dict) and body.get("retcode") not in (None, 0):
                raise DeliveryError.from_code(
                    body["retcode"], body.get("message") or body.get("msg") or "Gateway error"
                )
            self.logger.debug(f"Message delivered to {target}")
            return

        raise self._error_from_response(response)
