"""Intent classifier for inbound chat messages.

Maps raw text to a structured intent using literal, case-insensitive
command recognition. There is no semantic parsing: anything that is not a
recognized command is chat for the generation service.

Rules are evaluated in priority order and the first match wins. Reminder
management commands ("reminders", "cancel reminder <id>") are checked before
the "remind" trigger so they are never parsed as new reminders.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class IntentType(Enum):
    """Supported intent types."""
    EMPTY = "empty"
    START = "start"
    LIST_NOTES = "list_notes"
    LIST_REMINDERS = "list_reminders"
    CANCEL_REMINDER = "cancel_reminder"
    CREATE_NOTE = "create_note"
    CREATE_REMINDER = "create_reminder"
    CHAT = "chat"


REMINDER_INTENTS = frozenset({
    IntentType.CREATE_REMINDER,
    IntentType.LIST_REMINDERS,
    IntentType.CANCEL_REMINDER,
})

START_TOKENS = frozenset({"/start", "/help", "start", "help"})
LIST_NOTES_TOKENS = frozenset({"/notes", "notes", "заметки"})
LIST_REMINDERS_TOKENS = frozenset({
    "/reminders",
    "reminders",
    "my reminders",
    "напоминания",
    "мои напоминания",
})
NOTE_PREFIXES = ("note:", "заметка:")
REMIND_TRIGGERS = ("remind", "напомни")

_CANCEL_REMINDER_RE = re.compile(
    r"^(?:cancel|delete|удали)\s+(?:reminder|напоминание)\s+(\S+)$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Intent:
    """Result of classifying a message.

    Attributes:
        type: The classified intent
        payload: Intent-specific text (note body, reminder remainder, chat text, id)
        text: The trimmed original message
    """
    type: IntentType
    payload: str = ""
    text: str = ""

    @property
    def is_reminder_command(self) -> bool:
        return self.type in REMINDER_INTENTS


Rule = Callable[[str, str], Optional[Intent]]


def _empty(text: str, lower: str) -> Optional[Intent]:
    if not text:
        return Intent(IntentType.EMPTY)
    return None


def _start(text: str, lower: str) -> Optional[Intent]:
    if lower in START_TOKENS:
        return Intent(IntentType.START, text=text)
    return None


def _list_notes(text: str, lower: str) -> Optional[Intent]:
    if lower in LIST_NOTES_TOKENS:
        return Intent(IntentType.LIST_NOTES, text=text)
    return None


def _list_reminders(text: str, lower: str) -> Optional[Intent]:
    if _collapse_spaces(lower) in LIST_REMINDERS_TOKENS:
        return Intent(IntentType.LIST_REMINDERS, text=text)
    return None


def _cancel_reminder(text: str, lower: str) -> Optional[Intent]:
    match = _CANCEL_REMINDER_RE.match(text)
    if match:
        return Intent(IntentType.CANCEL_REMINDER, payload=match.group(1).lower(), text=text)
    return None


def _create_note(text: str, lower: str) -> Optional[Intent]:
    if not lower.startswith(NOTE_PREFIXES):
        return None
    note_text = text.split(":", 1)[1].strip()
    if not note_text:
        # Never drop the message: a bare "note:" is treated as chat.
        return Intent(IntentType.CHAT, payload=text, text=text)
    return Intent(IntentType.CREATE_NOTE, payload=note_text, text=text)


def _create_reminder(text: str, lower: str) -> Optional[Intent]:
    parts = text.split(maxsplit=1)
    if parts[0].lower() in REMIND_TRIGGERS:
        rest = parts[1] if len(parts) > 1 else ""
        return Intent(IntentType.CREATE_REMINDER, payload=rest.strip(), text=text)
    return None


def _chat(text: str, lower: str) -> Optional[Intent]:
    return Intent(IntentType.CHAT, payload=text, text=text)


RULES: tuple[Rule, ...] = (
    _empty,
    _start,
    _list_notes,
    _list_reminders,
    _cancel_reminder,
    _create_note,
    _create_reminder,
    _chat,
)


def classify(raw_text: Optional[str]) -> Intent:
    """Classify a message into an intent. Never raises; None maps to EMPTY."""
    text = raw_text.strip() if isinstance(raw_text, str) else ""
    lower = text.lower()
    for rule in RULES:
        intent = rule(text, lower)
        if intent is not None:
            return intent
    # Unreachable: _chat always matches.
    return Intent(IntentType.CHAT, payload=text, text=text)


def _collapse_spaces(text: str) -> str:
    return " ".join(text.split())
