import pytest

from agent_relay.conversation import (
    ConversationTurn,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    rewrite_history,
    to_anthropic_messages,
    turns_from_wire,
)
from agent_relay.exceptions import ConversationError


def _use(call_id: str, name: str = "get_x") -> ToolUseBlock:
    return ToolUseBlock(id=call_id, name=name, raw_arguments="{}", arguments={})


def _result(call_id: str, payload: str = "{}") -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=call_id, payload=payload)


def test_rewrite_appends_assistant_and_tool_turns_in_use_order():
    history = (ConversationTurn.text("user", "hi"),)
    assistant = ConversationTurn(role="assistant", content=(TextBlock("checking"), _use("a"), _use("b")))

    rewritten = rewrite_history(history, assistant, [_result("b", "B"), _result("a", "A")])

    assert len(rewritten) == 3
    assert rewritten[0] is history[0]
    assert rewritten[1] is assistant
    assert rewritten[2].role == "tool"
    assert [r.tool_use_id for r in rewritten[2].tool_results] == ["a", "b"]
    assert [r.payload for r in rewritten[2].tool_results] == ["A", "B"]
    assert history == (ConversationTurn.text("user", "hi"),)


def test_rewrite_rejects_missing_result():
    assistant = ConversationTurn(role="assistant", content=(_use("a"), _use("b")))

    with pytest.raises(ConversationError):
        rewrite_history((), assistant, [_result("a")])


def test_rewrite_rejects_duplicate_and_unknown_results():
    assistant = ConversationTurn(role="assistant", content=(_use("a"),))

    with pytest.raises(ConversationError):
        rewrite_history((), assistant, [_result("a"), _result("a")])
    with pytest.raises(ConversationError):
        rewrite_history((), assistant, [_result("a"), _result("z")])


def test_rewrite_rejects_turn_without_tool_uses():
    with pytest.raises(ConversationError):
        rewrite_history((), ConversationTurn.text("assistant", "done"), [])


def test_tool_turns_are_sent_as_user_tool_results():
    turns = [
        ConversationTurn.text("user", "go"),
        ConversationTurn(role="assistant", content=(TextBlock(""), _use("a"))),
        ConversationTurn(role="tool", content=(ToolResultBlock(tool_use_id="a", payload='{"error": "x"}', is_error=True),)),
    ]

    messages = to_anthropic_messages(turns)

    assert messages[1] == {
        "role": "assistant",
        "content": [{"type": "tool_use", "id": "a", "name": "get_x", "input": {}}],
    }
    assert messages[2] == {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": "a", "content": '{"error": "x"}', "is_error": True}],
    }


def test_turns_from_wire_accepts_parts_content_arrays_and_strings():
    messages = [
        {"role": "system", "content": "ignored"},
        {"role": "user", "parts": [{"type": "text", "text": "first"}, {"type": "image"}]},
        {"role": "assistant", "content": [{"type": "text", "text": "second"}]},
        {"role": "user", "content": "  third  "},
        {"role": "user", "content": "   "},
        "garbage",
    ]

    turns = turns_from_wire(messages)

    assert [(t.role, t.plain_text) for t in turns] == [
        ("user", "first"),
        ("assistant", "second"),
        ("user", "third"),
    ]


def test_turns_from_wire_non_list_is_empty():
    assert turns_from_wire({"role": "user"}) == []
