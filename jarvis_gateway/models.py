"""Pydantic models for Telegram webhook updates and gateway responses.

Only the fields the gateway reads are declared; everything else Telegram
sends is accepted and ignored.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TelegramUser(BaseModel):
    """Sender of a message or callback."""
    model_config = ConfigDict(extra="allow")

    id: int
    is_bot: bool = False
    first_name: str = ""
    username: Optional[str] = None


class TelegramChat(BaseModel):
    """Chat a message belongs to."""
    model_config = ConfigDict(extra="allow")

    id: int
    type: str = "private"


class TelegramMessage(BaseModel):
    """An inbound message. ``text`` is None for stickers, photos and the like."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message_id: int = 0
    date: Optional[int] = None
    chat: TelegramChat
    from_user: Optional[TelegramUser] = Field(default=None, alias="from")
    text: Optional[str] = None


class CallbackQuery(BaseModel):
    """An inline keyboard button press."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    from_user: TelegramUser = Field(alias="from")
    message: Optional[TelegramMessage] = None
    data: Optional[str] = None


class TelegramUpdate(BaseModel):
    """Top-level webhook payload."""
    model_config = ConfigDict(extra="allow")

    update_id: Optional[int] = None
    message: Optional[TelegramMessage] = None
    callback_query: Optional[CallbackQuery] = None

    @property
    def chat_id(self) -> Optional[int]:
        if self.callback_query is not None and self.callback_query.message is not None:
            return self.callback_query.message.chat.id
        if self.message is not None:
            return self.message.chat.id
        return None


# Response models
class WebhookAck(BaseModel):
    ok: bool = True


class CronResult(BaseModel):
    ok: bool = True
    sent: int = 0
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    storage: str
    durable: bool


class DebugState(BaseModel):
    ok: bool = True
    storage: str
    durable: bool
    pending_reminders: int
    dedup_window: int
    scheduler_running: bool


class DebugWebhook(BaseModel):
    ok: bool
    result: Optional[Any] = None
    error: Optional[str] = None
