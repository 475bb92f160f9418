from pathlib import Path

import pytest

from agent_relay.store import ChatStore


@pytest.mark.asyncio
async def test_messages_are_listed_in_insertion_order(tmp_path: Path):
    store = ChatStore(tmp_path / "db" / "chats.db")
    try:
        await store.save_message("chat-1", "user", "hi")
        await store.save_message("chat-2", "user", "other chat")
        await store.save_message(
            "chat-1",
            "assistant",
            "hello",
            {"toolCalls": [{"tool_name": "chart", "result": {"points": [1]}}]},
        )

        messages = await store.list_messages("chat-1")
    finally:
        await store.close()

    assert [(m.role, m.content) for m in messages] == [("user", "hi"), ("assistant", "hello")]
    assert messages[1].metadata == {"toolCalls": [{"tool_name": "chart", "result": {"points": [1]}}]}
    assert messages[0].to_dict()["chatId"] == "chat-1"


@pytest.mark.asyncio
async def test_messages_survive_reopening(tmp_path: Path):
    path = tmp_path / "chats.db"
    store = ChatStore(path)
    await store.save_message("c", "user", "persisted")
    await store.close()

    reopened = ChatStore(path)
    try:
        messages = await reopened.list_messages("c")
    finally:
        await reopened.close()

    assert [m.content for m in messages] == ["persisted"]


@pytest.mark.asyncio
async def test_unknown_chat_is_empty(tmp_path: Path):
    store = ChatStore(tmp_path / "chats.db")
    try:
        assert await store.list_messages("nope") == []
    finally:
        await store.close()
