"""Conversation turns, content blocks, and the tool-exchange rewriter."""

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Sequence, Union

from agent_relay.exceptions import ConversationError
from agent_relay.logging import get_logger

log = get_logger(__name__)

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool call requested by the model."""

    id: str
    name: str
    raw_arguments: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    """The outcome of a tool call, fed back to the model."""

    tool_use_id: str
    payload: str
    is_error: bool = False


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass(frozen=True)
class ConversationTurn:
    """One turn of the conversation. Never mutated once appended."""

    role: Role
    content: tuple[ContentBlock, ...]

    @classmethod
    def text(cls, role: Role, text: str) -> "ConversationTurn":
        return cls(role=role, content=(TextBlock(text),))

    @property
    def tool_uses(self) -> tuple[ToolUseBlock, ...]:
        return tuple(b for b in self.content if isinstance(b, ToolUseBlock))

    @property
    def tool_results(self) -> tuple[ToolResultBlock, ...]:
        return tuple(b for b in self.content if isinstance(b, ToolResultBlock))

    @property
    def plain_text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))


def rewrite_history(
    history: Sequence[ConversationTurn],
    assistant_turn: ConversationTurn,
    results: Sequence[ToolResultBlock],
) -> tuple[ConversationTurn, ...]:
    """Append an assistant tool-use turn and its matching tool turn.

    Results are reordered to follow the tool-use order of ``assistant_turn``,
    so callers may pass them in any order as long as each id pairs exactly once.

    Raises:
        ConversationError: the results don't pair one-to-one with the tool uses
    """
    if assistant_turn.role != "assistant":
        raise ConversationError(f"Expected an assistant turn, got {assistant_turn.role!r}")

    uses = assistant_turn.tool_uses
    if not uses:
        raise ConversationError("Assistant turn has no tool uses to answer")

    by_id: dict[str, ToolResultBlock] = {}
    for result in results:
        if result.tool_use_id in by_id:
            raise ConversationError(f"Duplicate tool result for {result.tool_use_id}")
        by_id[result.tool_use_id] = result

    use_ids = [use.id for use in uses]
    if len(set(use_ids)) != len(use_ids):
        raise ConversationError("Assistant turn repeats a tool use id")
    if set(use_ids) != set(by_id):
        missing = sorted(set(use_ids) - set(by_id))
        extra = sorted(set(by_id) - set(use_ids))
        raise ConversationError(f"Tool results don't match tool uses (missing={missing}, extra={extra})")

    tool_turn = ConversationTurn(role="tool", content=tuple(by_id[use_id] for use_id in use_ids))
    log.debug("Rewrote history", added_turns=2, tool_calls=len(use_ids), history_len=len(history) + 2)
    return (*history, assistant_turn, tool_turn)


def to_anthropic_messages(turns: Iterable[ConversationTurn]) -> list[dict[str, Any]]:
    """Convert turns to Messages API format.

    Tool turns become ``user`` messages carrying ``tool_result`` blocks.
    """
    result: list[dict[str, Any]] = []
    for turn in turns:
        blocks: list[dict[str, Any]] = []
        for block in turn.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.arguments,
                })
            elif isinstance(block, ToolResultBlock):
                entry: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": block.payload,
                }
                if block.is_error:
                    entry["is_error"] = True
                blocks.append(entry)
        if not blocks:
            continue
        role = "user" if turn.role == "tool" else turn.role
        result.append({"role": role, "content": blocks})
    return result


def _text_from_parts(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    texts = [
        str(part.get("text") or "")
        for part in parts
        if isinstance(part, dict) and part.get("type") == "text"
    ]
    return "\n".join(texts)


def turns_from_wire(messages: Any) -> list[ConversationTurn]:
    """Build user/assistant turns from a client message array.

    Accepts ``parts`` arrays, ``content`` block arrays, and plain string
    content. Other roles and turns without text are dropped.
    """
    if not isinstance(messages, list):
        return []
    turns: list[ConversationTurn] = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role not in ("user", "assistant"):
            continue

        content = _text_from_parts(msg.get("parts"))
        raw_content = msg.get("content")
        if not content and isinstance(raw_content, list):
            content = _text_from_parts(raw_content)
        if not content and raw_content is not None and not isinstance(raw_content, list):
            content = raw_content if isinstance(raw_content, str) else str(raw_content)

        content = content.strip()
        if content:
            turns.append(ConversationTurn.text(role, content))
    return turns
