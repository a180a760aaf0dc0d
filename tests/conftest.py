from __future__ import annotations

pytest_plugins = ("pytest_asyncio",)

from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from jarvis_gateway.conversation import ConversationController
from jarvis_gateway.llm_client import GenerationResult
from jarvis_gateway.pending_actions import PendingActionStore
from jarvis_orchestrator.config import Config
from jarvis_orchestrator.reminders import ReminderStore
from storage.chat_memory import ChatMemoryStore
from storage.notes_store import NoteStore

FIXED_NOW = datetime(2026, 3, 14, 12, 0, 0)


@pytest.fixture
def pending_store(tmp_path: Path):
    store = PendingActionStore(tmp_path / "pending_actions.db")
    yield store
    store.close()


@pytest.fixture
def note_store(tmp_path: Path):
    store = NoteStore(tmp_path / "notes.db")
    yield store
    store.close()


@pytest.fixture
def reminder_store(tmp_path: Path):
    store = ReminderStore(tmp_path / "reminders.db")
    yield store
    store.close()


@pytest.fixture
def chat_memory(tmp_path: Path):
    store = ChatMemoryStore(tmp_path / "chat_memory.db", max_turns=8)
    yield store
    store.close()


@pytest.fixture
def generation_client():
    client = AsyncMock()
    client.generate.return_value = GenerationResult(text="Paris is the capital of France.")
    return client


@pytest.fixture
def controller(pending_store, note_store, reminder_store, generation_client, chat_memory):
    return ConversationController(
        pending_store=pending_store,
        note_store=note_store,
        reminder_store=reminder_store,
        generation_client=generation_client,
        chat_memory=chat_memory,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def make_config(tmp_path: Path):
    """Build a Config without reading the environment."""

    def _make(**overrides) -> Config:
        values = dict(
            bot_token="123:abc",
            public_url="",
            debug_key="",
            llm_api_url="https://llm.example.com",
            llm_api_key="sk-test",
            llm_model="test-model",
            llm_timeout=10.0,
            llm_max_attempts=2,
            state_dir=tmp_path / "state",
            storage_backend="sqlite",
            pending_ttl_seconds=1800,
            reminder_poll_interval=1.0,
            reminder_batch_size=50,
            dedup_capacity=700,
            rate_limit_ms=0,
            history_turns=8,
            host="127.0.0.1",
            port=3000,
            log_level="INFO",
        )
        values.update(overrides)
        return Config(**values)

    return _make
