"""Tests for the conversation controller state machine."""

import asyncio
from datetime import datetime, timedelta

import pytest

from jarvis_gateway.conversation import (
    APOLOGY_TEXT,
    NOTHING_TO_CANCEL,
    NOTHING_TO_EDIT,
    NOTHING_TO_SAVE,
)
from jarvis_gateway.llm_client import GenerationResult
from jarvis_gateway.pending_actions import PendingMode
from jarvis_gateway.telegram_client import CONFIRM_CANCEL, CONFIRM_EDIT, CONFIRM_SAVE
from jarvis_orchestrator.errors import UpstreamRejected, UpstreamTimeout

FIXED_NOW = datetime(2026, 3, 14, 12, 0, 0)

USER = "42"
CHAT = "42"


class TestNoteFlow:
    @pytest.mark.asyncio
    async def test_note_then_save(self, controller, pending_store, note_store):
        reply = await controller.handle_message(USER, CHAT, "note: buy milk")
        assert reply.with_confirm_keyboard
        assert "buy milk" in reply.text
        assert pending_store.get_pending(USER).fields == {"text": "buy milk"}
        assert note_store.count(USER) == 0

        reply = await controller.handle_callback(USER, CHAT, CONFIRM_SAVE)
        assert "Saved" in reply.text
        assert [n.text for n in note_store.list_notes(USER)] == ["buy milk"]
        assert pending_store.get_pending(USER) is None

    @pytest.mark.asyncio
    async def test_edit_replaces_text(self, controller, pending_store, note_store):
        await controller.handle_message(USER, CHAT, "note: buy milk")
        reply = await controller.handle_callback(USER, CHAT, CONFIRM_EDIT)
        assert "new text" in reply.text
        assert pending_store.get_pending(USER).mode == PendingMode.EDITING

        reply = await controller.handle_message(USER, CHAT, "buy oat milk")
        assert reply.with_confirm_keyboard
        pending = pending_store.get_pending(USER)
        assert pending.mode == PendingMode.DRAFT
        assert pending.fields["text"] == "buy oat milk"

        await controller.handle_callback(USER, CHAT, CONFIRM_SAVE)
        assert [n.text for n in note_store.list_notes(USER)] == ["buy oat milk"]

    @pytest.mark.asyncio
    async def test_message_while_editing_is_not_sent_to_generation(self, controller, generation_client):
        await controller.handle_message(USER, CHAT, "note: draft")
        await controller.handle_callback(USER, CHAT, CONFIRM_EDIT)
        await controller.handle_message(USER, CHAT, "what is the weather?")
        generation_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_save_while_editing_saves_current_fields(self, controller, note_store):
        await controller.handle_message(USER, CHAT, "note: keep me")
        await controller.handle_callback(USER, CHAT, CONFIRM_EDIT)
        await controller.handle_callback(USER, CHAT, CONFIRM_SAVE)
        assert [n.text for n in note_store.list_notes(USER)] == ["keep me"]

    @pytest.mark.asyncio
    async def test_cancel_clears_pending(self, controller, pending_store, note_store):
        await controller.handle_message(USER, CHAT, "note: never mind")
        reply = await controller.handle_callback(USER, CHAT, CONFIRM_CANCEL)
        assert "Cancelled" in reply.text
        assert pending_store.get_pending(USER) is None
        assert note_store.count(USER) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "action, expected",
        [
            (CONFIRM_SAVE, NOTHING_TO_SAVE),
            (CONFIRM_EDIT, NOTHING_TO_EDIT),
            (CONFIRM_CANCEL, NOTHING_TO_CANCEL),
        ],
    )
    async def test_callbacks_with_nothing_pending(self, controller, note_store, action, expected):
        reply = await controller.handle_callback(USER, CHAT, action)
        assert reply.text == expected
        assert note_store.count(USER) == 0

    @pytest.mark.asyncio
    async def test_unknown_callback_is_ignored(self, controller, pending_store):
        await controller.handle_message(USER, CHAT, "note: stays")
        assert await controller.handle_callback(USER, CHAT, "confirm:explode") is None
        assert pending_store.get_pending(USER) is not None

    @pytest.mark.asyncio
    async def test_new_note_overwrites_draft(self, controller, pending_store):
        await controller.handle_message(USER, CHAT, "note: first")
        await controller.handle_message(USER, CHAT, "note: second")
        assert pending_store.get_pending(USER).fields["text"] == "second"

    @pytest.mark.asyncio
    async def test_list_notes(self, controller, note_store):
        reply = await controller.handle_message(USER, CHAT, "notes")
        assert reply.text == "No notes yet."

        for i in range(7):
            note_store.add_note(USER, f"note {i}")
        reply = await controller.handle_message(USER, CHAT, "/notes")
        assert "1) note 6" in reply.text
        assert "5) note 2" in reply.text
        assert "note 1" not in reply.text

    @pytest.mark.asyncio
    async def test_note_text_is_html_escaped(self, controller):
        reply = await controller.handle_message(USER, CHAT, "note: a <b> & c")
        assert "a &lt;b&gt; &amp; c" in reply.text

    @pytest.mark.asyncio
    async def test_users_are_independent(self, controller, pending_store):
        await controller.handle_message("1", "1", "note: one")
        await controller.handle_callback("2", "2", CONFIRM_EDIT)
        assert pending_store.get_pending("1").mode == PendingMode.DRAFT
        assert pending_store.get_pending("2") is None


class TestReminderFlow:
    @pytest.mark.asyncio
    async def test_create_reminder(self, controller, reminder_store):
        reply = await controller.handle_message(USER, CHAT, "remind me in 10 minutes buy water")
        assert "buy water" in reply.text

        entries = reminder_store.list_reminders(CHAT)
        assert len(entries) == 1
        assert entries[0].payload_text == "buy water"
        expected = int((FIXED_NOW + timedelta(minutes=10)).timestamp() * 1000)
        assert entries[0].fire_at == expected
        assert entries[0].short_id in reply.text

    @pytest.mark.asyncio
    async def test_malformed_reminder_gets_usage(self, controller, reminder_store):
        reply = await controller.handle_message(USER, CHAT, "remind me sometime")
        assert "remind in 10 minutes" in reply.text
        assert reminder_store.count() == 0

    @pytest.mark.asyncio
    async def test_reminder_while_editing_is_handled_as_reminder(
        self, controller, pending_store, reminder_store
    ):
        await controller.handle_message(USER, CHAT, "note: draft text")
        await controller.handle_callback(USER, CHAT, CONFIRM_EDIT)

        await controller.handle_message(USER, CHAT, "remind me in 5 minutes stretch")

        assert reminder_store.count() == 1
        pending = pending_store.get_pending(USER)
        assert pending.mode == PendingMode.EDITING
        assert pending.fields["text"] == "draft text"

    @pytest.mark.asyncio
    async def test_list_and_cancel(self, controller, reminder_store):
        await controller.handle_message(USER, CHAT, "remind in 1 hour call mom")
        entry = reminder_store.list_reminders(CHAT)[0]

        reply = await controller.handle_message(USER, CHAT, "reminders")
        assert "call mom" in reply.text
        assert entry.short_id in reply.text

        reply = await controller.handle_message(USER, CHAT, f"cancel reminder {entry.short_id}")
        assert "cancelled" in reply.text
        assert reminder_store.count() == 0

    @pytest.mark.asyncio
    async def test_cancel_unknown_reminder(self, controller):
        reply = await controller.handle_message(USER, CHAT, "cancel reminder deadbeef")
        assert "No reminder matches" in reply.text

    @pytest.mark.asyncio
    async def test_empty_reminder_list(self, controller):
        reply = await controller.handle_message(USER, CHAT, "my reminders")
        assert reply.text == "No reminders."


class TestChatFlow:
    @pytest.mark.asyncio
    async def test_empty_message_gets_no_reply(self, controller):
        assert await controller.handle_message(USER, CHAT, "   ") is None

    @pytest.mark.asyncio
    async def test_start_shows_help(self, controller, generation_client):
        reply = await controller.handle_message(USER, CHAT, "/start")
        assert "note:" in reply.text
        generation_client.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_chat_uses_generation_and_history(self, controller, generation_client, chat_memory):
        reply = await controller.handle_message(USER, CHAT, "capital of France?")
        assert reply.text == "Paris is the capital of France."

        prompt, max_tokens = generation_client.generate.call_args.args
        assert "capital of France?" in prompt
        assert max_tokens == 320

        turns = chat_memory.get_recent_turns(USER)
        assert [(t.role, t.content) for t in turns] == [
            ("user", "capital of France?"),
            ("assistant", "Paris is the capital of France."),
        ]

        await controller.handle_message(USER, CHAT, "and Germany?")
        prompt, _ = generation_client.generate.call_args.args
        assert "Paris is the capital of France." in prompt

    @pytest.mark.asyncio
    async def test_timeout_twice_apologizes(self, controller, generation_client, chat_memory):
        generation_client.generate.side_effect = UpstreamTimeout("slow")
        reply = await controller.handle_message(USER, CHAT, "hello?")
        assert reply.text == APOLOGY_TEXT
        assert generation_client.generate.call_count == 2
        assert chat_memory.get_recent_turns(USER) == []

    @pytest.mark.asyncio
    async def test_retry_succeeds_on_second_attempt(self, controller, generation_client):
        generation_client.generate.side_effect = [
            UpstreamRejected("503", status_code=503),
            GenerationResult(text="second try"),
        ]
        reply = await controller.handle_message(USER, CHAT, "hello?")
        assert reply.text == "second try"

    @pytest.mark.asyncio
    async def test_link_only_mode(self, controller, generation_client):
        generation_client.generate.return_value = GenerationResult(
            text="Here you go: https://docs.python.org/3/ enjoy"
        )
        reply = await controller.handle_message(USER, CHAT, "give me a link to python docs")
        assert reply.text == "https://docs.python.org/3/"
        assert reply.disable_web_page_preview is False
        assert generation_client.generate.call_args.args[1] == 80

    @pytest.mark.asyncio
    async def test_link_only_falls_back_to_search(self, controller, generation_client):
        generation_client.generate.return_value = GenerationResult(text="I am not sure.")
        reply = await controller.handle_message(USER, CHAT, "give me a link to python docs")
        assert reply.text.startswith("https://www.google.com/search?q=python+docs")

    @pytest.mark.asyncio
    async def test_sources_are_appended(self, controller, generation_client):
        generation_client.generate.return_value = GenerationResult(
            text="Answer.",
            sources=[{"title": "Example", "url": "https://example.com"}],
        )
        reply = await controller.handle_message(USER, CHAT, "explain something")
        assert reply.text.startswith("Answer.")
        assert '<a href="https://example.com">Example</a>' in reply.text
        assert generation_client.generate.call_args.args[1] == 700


class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_user_calls_are_serialized(self, controller, generation_client):
        active = 0
        max_active = 0

        async def slow_generate(prompt, max_tokens):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            active -= 1
            return GenerationResult(text="ok")

        generation_client.generate.side_effect = slow_generate
        await asyncio.gather(
            controller.handle_message(USER, CHAT, "one"),
            controller.handle_message(USER, CHAT, "two"),
        )
        assert max_active == 1

    @pytest.mark.asyncio
    async def test_different_users_run_concurrently(self, controller, generation_client):
        active = 0
        max_active = 0

        async def slow_generate(prompt, max_tokens):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            active -= 1
            return GenerationResult(text="ok")

        generation_client.generate.side_effect = slow_generate
        await asyncio.gather(
            controller.handle_message("1", "1", "one"),
            controller.handle_message("2", "2", "two"),
        )
        assert max_active == 2

    @pytest.mark.asyncio
    async def test_user_locks_are_released_after_calls(self, controller):
        for i in range(1000):
            await controller.handle_message(str(i), str(i), "")
        await controller.handle_callback("5", "5", CONFIRM_CANCEL)
        assert len(controller._locks) == 0
        assert len(controller._lock_users) == 0

    @pytest.mark.asyncio
    async def test_user_lock_survives_while_a_call_waits(self, controller, generation_client):
        release = asyncio.Event()

        async def blocked_generate(prompt, max_tokens):
            await release.wait()
            return GenerationResult(text="ok")

        generation_client.generate.side_effect = blocked_generate
        first = asyncio.create_task(controller.handle_message(USER, CHAT, "one"))
        second = asyncio.create_task(controller.handle_message(USER, CHAT, "two"))
        await asyncio.sleep(0.01)
        assert list(controller._locks) == [USER]
        assert controller._lock_users[USER] == 2

        release.set()
        await asyncio.gather(first, second)
        assert controller._locks == {}
