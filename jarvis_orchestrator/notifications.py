"""Reminder delivery through the Telegram Bot API.

The scheduler runs in its own thread, so delivery here is synchronous
(requests) and reports a plain success flag: a failed reminder is logged
and dropped, never retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


@dataclass
class DeliveryResult:
    """Result of a notification delivery attempt."""

    ok: bool
    channel: str
    message_id: Optional[int] = None
    error: Optional[str] = None
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for audit logging."""
        return {
            "ok": self.ok,
            "channel": self.channel,
            "message_id": self.message_id,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class TelegramPublisher:
    """Synchronous sendMessage publisher used by the reminder scheduler."""

    def __init__(self, bot_token: str, api_base: str = TELEGRAM_API_BASE, timeout: float = 10.0):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "jarvis-scheduler/1.0"})

    def send(self, channel: str, text: str) -> DeliveryResult:
        url = f"{self.api_base}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": channel,
            "text": text,
            "disable_web_page_preview": True,
        }
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to deliver reminder to {channel}: {e}")
            return DeliveryResult(ok=False, channel=str(channel), error=str(e))
        except ValueError as e:
            logger.error(f"Unreadable sendMessage response for {channel}: {e}")
            return DeliveryResult(ok=False, channel=str(channel), error=str(e))

        if not data.get("ok", False):
            description = data.get("description", "unknown error")
            logger.error(f"Telegram rejected reminder for {channel}: {description}")
            return DeliveryResult(ok=False, channel=str(channel), error=description)

        message_id = (data.get("result") or {}).get("message_id")
        logger.info(f"Delivered reminder to {channel} (message_id={message_id})")
        return DeliveryResult(ok=True, channel=str(channel), message_id=message_id)

    def publish(self, channel: str, text: str) -> bool:
        """Scheduler-facing adapter: ``publish_fn(channel, text) -> bool``."""
        return self.send(channel, text).ok

    def close(self):
        """Close the session"""
        self.session.close()
