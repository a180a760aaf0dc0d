"""Async Telegram Bot API client used on the webhook request path."""

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

CONFIRM_SAVE = "confirm:save"
CONFIRM_EDIT = "confirm:edit"
CONFIRM_CANCEL = "confirm:cancel"


def build_confirm_keyboard() -> dict:
    """Inline keyboard offering Save / Edit / Cancel for a pending draft."""
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Save", "callback_data": CONFIRM_SAVE},
                {"text": "✏️ Edit", "callback_data": CONFIRM_EDIT},
                {"text": "❌ Cancel", "callback_data": CONFIRM_CANCEL},
            ]
        ]
    }


class TelegramAPIError(Exception):
    """A Bot API call failed or returned ``ok: false``."""

    def __init__(self, method: str, message: str, status_code: int | None = None):
        super().__init__(f"Telegram {method} failed: {message}")
        self.method = method
        self.status_code = status_code


class TelegramClient:
    """Thin async wrapper over the Bot API methods the gateway needs."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = TELEGRAM_API_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

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

    async def call(self, method: str, payload: dict[str, Any]) -> Any:
        """Invoke a Bot API method and return its ``result``.

        Raises:
            TelegramAPIError: on transport errors, HTTP errors or ``ok: false``
        """
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        client = await self.get_client()
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TelegramAPIError(method, str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.is_success or not data.get("ok", False):
            description = data.get("description") or response.text[:250]
            raise TelegramAPIError(method, description, status_code=response.status_code)
        return data.get("result")

    async def send_message(
        self,
        chat_id: Any,
        text: str,
        reply_markup: Optional[dict] = None,
        disable_web_page_preview: bool = True,
    ) -> Any:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": disable_web_page_preview,
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self.call("sendMessage", payload)

    async def answer_callback_query(self, callback_query_id: str, text: str = "OK") -> Any:
        return await self.call(
            "answerCallbackQuery",
            {"callback_query_id": callback_query_id, "text": text, "show_alert": False},
        )

    async def send_chat_action(self, chat_id: Any, action: str = "typing") -> bool:
        """Best effort: a failed typing indicator is logged and ignored."""
        try:
            await self.call("sendChatAction", {"chat_id": chat_id, "action": action})
            return True
        except TelegramAPIError as e:
            logger.debug(f"sendChatAction failed for {chat_id}: {e}")
            return False

    async def set_webhook(self, url: str) -> Any:
        result = await self.call(
            "setWebhook",
            {"url": url, "allowed_updates": ["message", "callback_query"]},
        )
        logger.info(f"Webhook set to {url}")
        return result

    async def get_webhook_info(self) -> Any:
        return await self.call("getWebhookInfo", {})
