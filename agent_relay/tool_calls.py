"""Buffer streamed tool-call arguments and parse them once the call closes."""

import json
from dataclasses import dataclass
from typing import Any

from agent_relay.logging import get_logger

log = get_logger(__name__)


@dataclass
class PendingToolCall:
    """A tool call between its start and finish events."""

    id: str
    name: str
    argument_buffer: str = ""


@dataclass(frozen=True)
class ParsedToolCall:
    """A finished tool call with a valid JSON object as arguments."""

    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str


@dataclass(frozen=True)
class MalformedToolCall:
    """A finished tool call whose arguments could not be used."""

    id: str
    name: str
    raw_arguments: str
    reason: str


class ToolCallAccumulator:
    """Collects argument fragments per call id.

    Fragments are concatenated exactly as received. Parsing happens only in
    :meth:`finish`, and the pending state is dropped whatever the outcome.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingToolCall] = {}

    @property
    def open_call_ids(self) -> list[str]:
        return list(self._pending)

    def start(self, call_id: str, name: str) -> None:
        if call_id in self._pending:
            log.warning("Tool call restarted before finishing", call_id=call_id, tool=name)
        self._pending[call_id] = PendingToolCall(id=call_id, name=name)
        log.debug("Tool call started", call_id=call_id, tool=name)

    def append(self, call_id: str, fragment: str) -> None:
        pending = self._pending.get(call_id)
        if pending is None:
            log.error("Argument fragment for unknown tool call", call_id=call_id)
            return
        pending.argument_buffer += fragment

    def finish(self, call_id: str) -> ParsedToolCall | MalformedToolCall | None:
        """Close a call and parse its arguments.

        Returns:
            ``ParsedToolCall`` on success, ``MalformedToolCall`` when the buffer
            is not a JSON object, ``None`` for an empty buffer or unknown id.
        """
        pending = self._pending.pop(call_id, None)
        if pending is None:
            log.error("Finish for unknown tool call", call_id=call_id)
            return None

        raw = pending.argument_buffer
        if not raw.strip():
            log.warning("Tool call has no arguments, skipping", call_id=call_id, tool=pending.name)
            return None

        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            log.error(
                "Invalid JSON in tool arguments",
                call_id=call_id,
                tool=pending.name,
                raw_arguments=raw,
                error=str(e),
            )
            return MalformedToolCall(id=call_id, name=pending.name, raw_arguments=raw, reason=str(e))

        if not isinstance(arguments, dict):
            log.error(
                "Tool arguments are not an object",
                call_id=call_id,
                tool=pending.name,
                raw_arguments=raw,
            )
            return MalformedToolCall(
                id=call_id,
                name=pending.name,
                raw_arguments=raw,
                reason=f"expected object, got {type(arguments).__name__}",
            )

        return ParsedToolCall(id=call_id, name=pending.name, arguments=arguments, raw_arguments=raw)

    def discard(self) -> list[PendingToolCall]:
        """Drop calls that never finished (stream cut short)."""
        dropped = list(self._pending.values())
        self._pending.clear()
        for call in dropped:
            log.warning("Discarding unfinished tool call", call_id=call.id, tool=call.name)
        return dropped
