"""
TelegramNotifier — fire-and-forget Telegram Bot API notification sink.

Implements the trading core's Notifier protocol over native httpx. Delivery
failures are logged and swallowed: a notification must never break a
trading cycle.

Usage:
    notifier = TelegramNotifier(bot_token="123:abc", chat_id="42")
    await notifier.notify("✅ take-profit YES BTC ...")
"""

import time

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rpoly.errors import GatewayError, TransientNetworkError

logger = structlog.get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
_MAX_MESSAGE_LENGTH = 4096


class TelegramRateLimitError(TransientNetworkError):
    error_code = "TELEGRAM_RATE_LIMIT"


class TelegramNotifier:
    """Async Telegram sender with retry on rate limits."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._chat_id = chat_id
        self._client = httpx.AsyncClient(
            base_url=f"{TELEGRAM_API_URL}/bot{bot_token}",
            http2=True,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(15.0, connect=5.0),
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        start = time.monotonic()
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}", endpoint=path) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection failed: {e}", endpoint=path) from e

        latency_ms = (time.monotonic() - start) * 1000

        if resp.status_code == 429:
            logger.warning("telegram_rate_limited", path=path, latency_ms=round(latency_ms))
            raise TelegramRateLimitError("Rate limit exceeded", endpoint=path)

        data = resp.json()
        # Telegram wraps responses in {"ok": bool, "result": ...}
        if not data.get("ok", False):
            raise GatewayError(
                f"Telegram API error {data.get('error_code', resp.status_code)}: "
                f"{data.get('description', 'Unknown error')}",
                endpoint=path,
            )

        logger.debug("telegram_request", path=path, status=resp.status_code, latency_ms=round(latency_ms))
        return data.get("result") or {}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type(TelegramRateLimitError),
        reraise=True,
    )
    async def send_message(self, text: str) -> dict:
        payload = {"chat_id": self._chat_id, "text": text[:_MAX_MESSAGE_LENGTH]}
        result = await self._request("POST", "/sendMessage", json=payload)
        logger.info("telegram_message_sent", message_id=result.get("message_id"))
        return result

    async def notify(self, text: str) -> None:
        """Send ``text``; never raises on delivery failure."""
        try:
            await self.send_message(text)
        except (GatewayError, ValueError) as e:
            logger.warning("telegram_notify_failed", error=str(e))

    async def close(self):
        await self._client.aclose()
