"""Update dispatcher: the glue between the webhook and the controller.

Runs after the webhook has already answered 200. Drops duplicates and
throttled messages, hands the rest to the controller and sends its reply.
Nothing raised here reaches the HTTP layer.
"""

import logging
from typing import Optional

from .conversation import ConversationController, Reply
from .idempotency import DeliveryDeduplicator, make_dedupe_key
from .models import CallbackQuery, TelegramMessage, TelegramUpdate
from .rate_limiter import UserRateLimiter
from .telegram_client import TelegramAPIError, TelegramClient, build_confirm_keyboard

logger = logging.getLogger(__name__)

ERROR_REPLY = "Something went wrong on my side. Please try again in a moment."


class UpdateDispatcher:
    """Processes one Telegram update end to end."""

    def __init__(
        self,
        controller: ConversationController,
        telegram: TelegramClient,
        deduplicator: DeliveryDeduplicator,
        rate_limiter: Optional[UserRateLimiter] = None,
    ):
        self.controller = controller
        self.telegram = telegram
        self.deduplicator = deduplicator
        self.rate_limiter = rate_limiter or UserRateLimiter(0)

    async def handle_update(self, update: TelegramUpdate) -> None:
        """Process an update. Never raises."""
        try:
            await self._dispatch(update)
        except Exception as e:
            logger.exception(f"Failed to process update {update.update_id}: {e}")
            await self._send_error_reply(update.chat_id)

    async def _dispatch(self, update: TelegramUpdate) -> None:
        message = update.message
        key = make_dedupe_key(
            update.update_id,
            chat_id=update.chat_id,
            text=(message.text or "") if message else "",
            timestamp=message.date if message else None,
        )
        if self.deduplicator.seen(key):
            logger.info(f"Duplicate update {key}, skipping")
            return

        if update.callback_query is not None:
            await self._handle_callback(update.callback_query)
            return

        if message is None or message.text is None:
            logger.debug(f"Ignoring update {update.update_id} without text")
            return
        await self._handle_message(message)

    async def _handle_message(self, message: TelegramMessage) -> None:
        chat_id = message.chat.id
        user_id = message.from_user.id if message.from_user else chat_id

        if not self.rate_limiter.allow(str(user_id)):
            logger.info(f"Throttled message from user {user_id}")
            return

        logger.info(f"Message from user {user_id} in chat {chat_id}: {message.text[:80]!r}")
        reply = await self.controller.handle_message(str(user_id), str(chat_id), message.text)
        if reply is not None:
            await self._send(chat_id, reply)

    async def _handle_callback(self, callback: CallbackQuery) -> None:
        try:
            await self.telegram.answer_callback_query(callback.id)
        except TelegramAPIError as e:
            logger.warning(f"answerCallbackQuery failed: {e}")

        if callback.message is None:
            logger.debug(f"Callback {callback.id} has no message, ignoring")
            return

        chat_id = callback.message.chat.id
        user_id = callback.from_user.id
        logger.info(f"Callback {callback.data!r} from user {user_id} in chat {chat_id}")
        reply = await self.controller.handle_callback(str(user_id), str(chat_id), callback.data or "")
        if reply is not None:
            await self._send(chat_id, reply)

    async def _send(self, chat_id: int, reply: Reply) -> None:
        await self.telegram.send_message(
            chat_id,
            reply.text,
            reply_markup=build_confirm_keyboard() if reply.with_confirm_keyboard else None,
            disable_web_page_preview=reply.disable_web_page_preview,
        )

    async def _send_error_reply(self, chat_id: Optional[int]) -> None:
        if chat_id is None:
            return
        try:
            await self.telegram.send_message(chat_id, ERROR_REPLY)
        except Exception as e:
            logger.warning(f"Could not send error reply to {chat_id}: {e}")
