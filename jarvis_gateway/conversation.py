"""Conversation controller: per-user draft/confirm/edit/cancel flow.

Given a classified message (or a button press) and the user's pending
state, decides the reply and the side effects. The controller never talks
to Telegram; it returns ``Reply`` values and the dispatcher sends them.

Per-message priority:
1. Reminder commands are handled first regardless of pending state.
2. A user who is editing a draft has the whole message taken as the new text.
3. Otherwise the message is dispatched by intent.
"""

import asyncio
import html
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from jarvis_orchestrator.errors import MalformedCommand, NoPendingAction
from jarvis_orchestrator.reminders import (
    MIN_ID_PREFIX,
    REMINDER_USAGE,
    DueQueue,
    format_timestamp_local,
    parse_reminder,
)
from storage.chat_memory import ChatMemoryStore
from storage.notes_store import NoteStore

from .intent_parser import Intent, IntentType, classify
from .llm_client import DEFAULT_ATTEMPTS, GenerationClient, generate_with_retry
from .pending_actions import PendingAction, PendingIntent, PendingMode, PendingStateStore
from .response_modes import MAX_TOKENS, ResponseMode, build_prompt, detect_mode, extract_first_url, search_url
from .telegram_client import CONFIRM_CANCEL, CONFIRM_EDIT, CONFIRM_SAVE

logger = logging.getLogger(__name__)

NOTES_LIST_LIMIT = 5

HELP_TEXT = (
    "Hi 🙂\n\n"
    "• plain text: I answer\n"
    "• <b>note: ...</b> saves a note (after you confirm)\n"
    "• <b>notes</b> shows your latest notes\n"
    "• <b>remind in 10 minutes ...</b> or <b>remind tomorrow at 09:00 ...</b>\n"
    "• <b>reminders</b> lists them, <b>cancel reminder &lt;id&gt;</b> removes one\n\n"
    "Tip: \"give me a link to ...\" returns just the URL."
)
APOLOGY_TEXT = "I can't answer right now. Please try again a bit later."
NOTHING_TO_SAVE = "Nothing to save 🙂"
NOTHING_TO_EDIT = "Nothing to edit 🙂"
NOTHING_TO_CANCEL = "Nothing to cancel 🙂"


@dataclass
class Reply:
    """Outbound message produced by the controller."""
    text: str
    with_confirm_keyboard: bool = False
    disable_web_page_preview: bool = True


def escape(text: str) -> str:
    return html.escape(text, quote=False)


class ConversationController:
    """Routes intents to stores and the generation service."""

    def __init__(
        self,
        pending_store: PendingStateStore,
        note_store: NoteStore,
        reminder_store: DueQueue,
        generation_client: GenerationClient,
        chat_memory: Optional[ChatMemoryStore] = None,
        generation_attempts: int = DEFAULT_ATTEMPTS,
        typing_fn: Optional[Callable[[str], Awaitable[object]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.pending_store = pending_store
        self.note_store = note_store
        self.reminder_store = reminder_store
        self.generation_client = generation_client
        self.chat_memory = chat_memory
        self.generation_attempts = generation_attempts
        self.typing_fn = typing_fn
        self.clock = clock or datetime.now
        # A user's lock lives only while some call holds or awaits it.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        key = str(user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def handle_message(self, user_id: str, channel_id: str, text: Optional[str]) -> Optional[Reply]:
        """Handle an inbound text message. Returns None when no reply is due."""
        intent = classify(text)
        async with self._user_lock(user_id):
            return await self._route_message(str(user_id), str(channel_id), intent)

    async def handle_callback(self, user_id: str, channel_id: str, action: str) -> Optional[Reply]:
        """Handle a Save/Edit/Cancel button press."""
        async with self._user_lock(user_id):
            try:
                if action == CONFIRM_SAVE:
                    return self._save(str(user_id))
                if action == CONFIRM_EDIT:
                    return self._edit(str(user_id))
                if action == CONFIRM_CANCEL:
                    return self._cancel(str(user_id))
            except NoPendingAction as e:
                logger.info(f"Callback {action} from user {user_id} with nothing pending")
                return Reply(str(e))
        logger.info(f"Ignoring unknown callback data {action!r} from user {user_id}")
        return None

    async def _route_message(self, user_id: str, channel_id: str, intent: Intent) -> Optional[Reply]:
        if intent.type == IntentType.EMPTY:
            return None

        if intent.is_reminder_command:
            return self._handle_reminder(user_id, channel_id, intent)

        pending = self.pending_store.get_pending(user_id)
        if pending is not None and pending.mode == PendingMode.EDITING:
            return self._apply_edit(user_id, pending, intent.text)

        if intent.type == IntentType.START:
            return Reply(HELP_TEXT)
        if intent.type == IntentType.LIST_NOTES:
            return self._list_notes(user_id)
        if intent.type == IntentType.CREATE_NOTE:
            return self._draft_note(user_id, intent.payload)
        return await self._chat(user_id, channel_id, intent.payload)

    # Reminders

    def _handle_reminder(self, user_id: str, channel_id: str, intent: Intent) -> Reply:
        if intent.type == IntentType.LIST_REMINDERS:
            return self._list_reminders(channel_id)
        if intent.type == IntentType.CANCEL_REMINDER:
            return self._cancel_reminder(channel_id, intent.payload)
        try:
            return self._create_reminder(channel_id, intent.text)
        except MalformedCommand as e:
            logger.info(f"Malformed reminder from user {user_id}: {intent.text[:80]!r}")
            return Reply(f"{escape(str(e))}\n\n{escape(e.usage)}")

    def _create_reminder(self, channel_id: str, text: str) -> Reply:
        parsed = parse_reminder(text, now=self.clock())
        if parsed is None:
            raise MalformedCommand("I couldn't understand when to remind you.", usage=REMINDER_USAGE)
        reminder_id = self.reminder_store.add_reminder(channel_id, parsed.body, parsed.fire_at_ms)
        when = format_timestamp_local(parsed.fire_at_ms)
        logger.info(f"Scheduled reminder {reminder_id[:8]} for {channel_id} at {when}")
        return Reply(
            f"OK 👍 I'll remind you: <b>{escape(parsed.body)}</b>\n"
            f"When: {escape(when)}\n"
            f"ID: <code>{reminder_id[:8]}</code>"
        )

    def _list_reminders(self, channel_id: str) -> Reply:
        entries = self.reminder_store.list_reminders(channel_id)
        if not entries:
            return Reply("No reminders.")
        lines = [
            f"<code>{entry.short_id}</code> {escape(format_timestamp_local(entry.fire_at))}: "
            f"{escape(entry.payload_text)}"
            for entry in entries
        ]
        return Reply("📌 <b>Reminders:</b>\n" + "\n".join(lines))

    def _cancel_reminder(self, channel_id: str, id_prefix: str) -> Reply:
        if len(id_prefix) < MIN_ID_PREFIX:
            return Reply(f"Use at least {MIN_ID_PREFIX} characters of the reminder ID.")
        removed = self.reminder_store.cancel_reminder(channel_id, id_prefix)
        if removed is None:
            return Reply(f"No reminder matches <code>{escape(id_prefix)}</code>.")
        logger.info(f"Cancelled reminder {removed[:8]} for {channel_id}")
        return Reply(f"Reminder <code>{removed[:8]}</code> cancelled ❌")

    # Notes

    def _list_notes(self, user_id: str) -> Reply:
        notes = self.note_store.list_notes(user_id, limit=NOTES_LIST_LIMIT)
        if not notes:
            return Reply("No notes yet.")
        lines = [f"{i}) {escape(note.text)}" for i, note in enumerate(notes, start=1)]
        return Reply("<b>Notes:</b>\n" + "\n".join(lines))

    def _draft_note(self, user_id: str, note_text: str) -> Reply:
        self.pending_store.set_pending(
            user_id,
            PendingAction(intent=PendingIntent.CREATE_NOTE, fields={"text": note_text}),
        )
        return Reply(f"Save this note?\n\n<b>{escape(note_text)}</b>", with_confirm_keyboard=True)

    def _apply_edit(self, user_id: str, pending: PendingAction, new_text: str) -> Reply:
        updated = pending.with_fields({**pending.fields, "text": new_text}).with_mode(PendingMode.DRAFT)
        self.pending_store.set_pending(user_id, updated)
        return Reply(
            f"Updated ✏️\n\n<b>Note:</b>\n{escape(new_text)}\n\nSave?",
            with_confirm_keyboard=True,
        )

    def _save(self, user_id: str) -> Reply:
        pending = self.pending_store.get_pending(user_id)
        if pending is None:
            raise NoPendingAction(NOTHING_TO_SAVE)
        note = self.note_store.add_note(user_id, pending.fields.get("text", ""))
        self.pending_store.clear_pending(user_id)
        return Reply(f"Saved ✅\n\n<b>Note:</b>\n{escape(note.text)}")

    def _edit(self, user_id: str) -> Reply:
        pending = self.pending_store.get_pending(user_id)
        if pending is None:
            raise NoPendingAction(NOTHING_TO_EDIT)
        self.pending_store.set_pending(user_id, pending.with_mode(PendingMode.EDITING))
        return Reply("OK. Send the new text in one message ✍️")

    def _cancel(self, user_id: str) -> Reply:
        pending = self.pending_store.get_pending(user_id)
        if pending is None:
            raise NoPendingAction(NOTHING_TO_CANCEL)
        self.pending_store.clear_pending(user_id)
        return Reply("Cancelled ❌")

    # Chat

    async def _chat(self, user_id: str, channel_id: str, text: str) -> Reply:
        if self.typing_fn is not None:
            await self.typing_fn(channel_id)

        mode = detect_mode(text)
        history = self.chat_memory.get_recent_turns(user_id) if self.chat_memory else []
        prompt = build_prompt(text, mode, history)

        outcome = await generate_with_retry(
            self.generation_client,
            prompt,
            MAX_TOKENS[mode],
            attempts=self.generation_attempts,
        )
        if not outcome.ok:
            logger.warning(f"Generation {outcome.status} for user {user_id}: {outcome.error}")
            return Reply(APOLOGY_TEXT)

        if mode == ResponseMode.LINK_ONLY:
            url = extract_first_url(outcome.text) or search_url(text)
            self._remember(user_id, text, url)
            return Reply(escape(url), disable_web_page_preview=False)

        answer = outcome.text or "…"
        self._remember(user_id, text, answer)
        reply_text = escape(answer)
        if outcome.sources:
            links = [
                f'{i}. <a href="{html.escape(source["url"])}">{escape(source["title"])}</a>'
                for i, source in enumerate(outcome.sources, start=1)
            ]
            reply_text += "\n\n<b>Sources:</b>\n" + "\n".join(links)
        return Reply(reply_text)

    def _remember(self, user_id: str, question: str, answer: str) -> None:
        if self.chat_memory is None:
            return
        try:
            self.chat_memory.append_turn(user_id, "user", question)
            self.chat_memory.append_turn(user_id, "assistant", answer)
        except Exception as e:
            logger.warning(f"Failed to store conversation turn for user {user_id}: {e}")
