"""Response modes and prompt assembly for free-form chat.

The mode is picked from literal trigger phrases in the user's message and
controls both the instructions sent to the generation service and the
output token budget.
"""

import re
from enum import Enum
from typing import Optional, Sequence
from urllib.parse import quote_plus

from storage.chat_memory import ConversationTurn


class ResponseMode(Enum):
    LINK_ONLY = "link_only"
    DETAILED = "detailed"
    NORMAL = "normal"


MAX_TOKENS = {
    ResponseMode.LINK_ONLY: 80,
    ResponseMode.DETAILED: 700,
    ResponseMode.NORMAL: 320,
}

LINK_ONLY_TRIGGERS = (
    "give me a link",
    "send me a link",
    "link to",
    "only the link",
    "just the link",
    "дай ссылку",
    "скинь ссылку",
    "пришли ссылку",
    "кинь ссылку",
    "только ссылку",
    "ссылку на",
    "ссылка на",
)

DETAILED_TRIGGERS = (
    "explain",
    "in detail",
    "tell me about",
    "step by step",
    "расскажи",
    "объясни",
    "подробно",
    "детально",
    "развернуто",
)

PERSONA = (
    "You are Jarvis, a personal assistant. Be precise and to the point. "
    "Do not describe yourself as a bot or a model unless asked. "
    "Answer in the language of the request."
)

MODE_RULES = {
    ResponseMode.LINK_ONLY: "Reply with exactly one URL (http/https) and nothing else. No text, no lists.",
    ResponseMode.DETAILED: "Reply in detail: a 1-2 line summary first, then the explanation, then up to 5 steps.",
    ResponseMode.NORMAL: "Reply briefly and to the point (1-6 sentences). Offer more detail if it would help.",
}

SEARCH_URL = "https://www.google.com/search?q="

_URL_RE = re.compile(r"https?://[^\s<>\"')\]]+", re.IGNORECASE)
_LINK_REQUEST_PREFIX_RE = re.compile(
    r"^(?:give me a link to|send me a link to|link to|дай ссылку на|дай ссылку|ссылку на)\s*",
    re.IGNORECASE,
)


def detect_mode(text: Optional[str]) -> ResponseMode:
    lowered = (text or "").lower()
    if any(trigger in lowered for trigger in LINK_ONLY_TRIGGERS):
        return ResponseMode.LINK_ONLY
    if any(trigger in lowered for trigger in DETAILED_TRIGGERS):
        return ResponseMode.DETAILED
    return ResponseMode.NORMAL


def extract_first_url(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = _URL_RE.search(text)
    return match.group(0) if match else None


def search_url(text: str) -> str:
    """Web-search URL used when a link-only answer contains no URL."""
    query = _LINK_REQUEST_PREFIX_RE.sub("", text.strip())[:120]
    return SEARCH_URL + quote_plus(query or text.strip()[:120])


def build_prompt(
    text: str,
    mode: ResponseMode,
    history: Sequence[ConversationTurn] = (),
) -> str:
    """Assemble persona, mode rules, recent history and the request."""
    context = "\n".join(
        f"{'User' if turn.role == 'user' else 'Assistant'}: {turn.content}"
        for turn in history
    )
    parts = [PERSONA, MODE_RULES[mode]]
    if context:
        parts.append(f"\nContext:\n{context}")
    parts.append(f"\nRequest:\n{text}")
    return "\n".join(parts)
