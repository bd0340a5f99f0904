"""Tests for conversation persistence (ChatHistory and the DAL beneath it)."""

import pytest

from models.message_record import ConversationRecord, MessageRecord
from services.realtime.chat_history import ChatHistory, conversation_title
from utils.database_cleaner import DatabaseCleaner


def _record(message_id, conversation_id, role, content, **kwargs):
    return MessageRecord(id=None, message_id=message_id, conversation_id=conversation_id, role=role, content=content, **kwargs)


class TestConversationTitle:

    def test_short_text_kept(self):
        assert conversation_title("  What is   asyncio? ") == "What is asyncio?"

    def test_long_text_truncated(self):
        title = conversation_title("x" * 80)
        assert title == "x" * 50 + "..."

    def test_blank_text(self):
        assert conversation_title("   ") == "New conversation"


@pytest.mark.asyncio
class TestChatHistory:

    async def test_creates_conversation_when_missing(self, db_initializer):
        history = ChatHistory(db_initializer)
        conversation_id, created = await history.ensure_conversation(None, content="Hello there", model="gpt-4o-mini")
        assert created
        stored = await history.conversations.get_conversation(conversation_id)
        assert stored.title == "Hello there"
        assert stored.model == "gpt-4o-mini"

    async def test_unknown_client_id_is_created_with_that_id(self, db_initializer):
        history = ChatHistory(db_initializer)
        assert await history.ensure_conversation("c-custom", content="hi", model="m") == ("c-custom", True)
        assert await history.ensure_conversation("c-custom", content="again", model="m") == ("c-custom", False)

    async def test_save_is_idempotent_per_message_and_role(self, db_initializer):
        history = ChatHistory(db_initializer)
        conversation_id, _ = await history.ensure_conversation(None, content="hi", model="m")
        first = await history.save(_record("m1", conversation_id, "user", "hi", image_count=2))
        again = await history.save(_record("m1", conversation_id, "user", "hi (resent)"))
        reply = await history.save(_record("m1", conversation_id, "assistant", "hello", metadata={"tokens": 1}))

        assert first is not None
        assert again is None
        assert reply is not None
        stored = await history.messages.get_by_message_id("m1", "user")
        assert stored.content == "hi"
        assert stored.image_count == 2
        answer = await history.messages.get_by_message_id("m1", "assistant")
        assert answer.metadata == {"tokens": 1}

    async def test_recent_returns_oldest_first_within_limit(self, db_initializer):
        history = ChatHistory(db_initializer)
        conversation_id, _ = await history.ensure_conversation(None, content="hi", model="m")
        for index in range(5):
            await history.save(_record(f"m{index}", conversation_id, "user", f"turn {index}"))

        recent = await history.recent(conversation_id, 3)

        assert [record.content for record in recent] == ["turn 2", "turn 3", "turn 4"]
        assert await history.recent(conversation_id, 0) == []

    async def test_list_conversations(self, db_initializer):
        history = ChatHistory(db_initializer)
        first, _ = await history.ensure_conversation(None, content="one", model="m")
        second, _ = await history.ensure_conversation(None, content="two", model="m")
        listed = await history.conversations.list_conversations()
        assert {record.id for record in listed} == {first, second}
        assert await history.conversations.touch(first) is True
        assert await history.conversations.touch("missing") is False


@pytest.mark.asyncio
async def test_cleaner_prunes_old_messages_and_empty_conversations(db_initializer):
    history = ChatHistory(db_initializer)
    await history.conversations.create_conversation(ConversationRecord(id="old", title="t", created_at=1, updated_at=1))
    await history.messages.create_message(_record("m-old", "old", "user", "ancient", created_at=1))
    fresh_id, _ = await history.ensure_conversation(None, content="new", model="m")
    await history.save(_record("m-new", fresh_id, "user", "recent"))

    removed = await DatabaseCleaner(db_initializer, retention_seconds=60).prune_expired_messages()

    assert removed == 1
    assert await history.conversations.get_conversation("old") is None
    assert await history.conversations.get_conversation(fresh_id) is not None
    assert [record.content for record in await history.recent(fresh_id, 10)] == ["recent"]
