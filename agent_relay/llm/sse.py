"""Incremental server-sent event decoder for the upstream model stream.

Bytes arrive in whatever pieces the network hands us. The decoder keeps
an incremental UTF-8 decoder and the incomplete trailing line between
``feed`` calls, so splitting the same byte stream at any offset yields
the same events.

Each complete ``data:`` line is parsed as JSON and translated from the
provider's Anthropic-style event vocabulary into the small set of typed
events the agent loop understands:

* :class:`TextFragment` for ``text_delta`` content,
* :class:`ToolCallStarted` / :class:`ToolCallArgumentFragment` /
  :class:`ToolCallFinished` for ``tool_use`` content blocks,
* :class:`TurnFinished` for ``message_stop`` (or a ``[DONE]`` line).

A frame that fails to parse is logged and skipped. A provider ``error``
event raises :class:`UpstreamError`. After the body ends, :meth:`SSEDecoder.close`
raises :class:`StreamTerminatedError` if no terminal marker was seen.
"""

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, Union

from agent_relay.exceptions import StreamTerminatedError, UpstreamError
from agent_relay.logging import get_logger

log = get_logger(__name__)

DONE_MARKER = "[DONE]"


@dataclass(frozen=True)
class TextFragment:
    """A piece of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallStarted:
    """The model opened a tool-use block."""

    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgumentFragment:
    """Partial JSON text for an open tool call's arguments."""

    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallFinished:
    """The tool-use block closed; its arguments are complete."""

    id: str


@dataclass(frozen=True)
class TurnFinished:
    """Terminal marker for one upstream response."""

    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


StreamEvent = Union[
    TextFragment,
    ToolCallStarted,
    ToolCallArgumentFragment,
    ToolCallFinished,
    TurnFinished,
]


class SSEDecoder:
    """Turn raw SSE bytes from one upstream connection into typed events."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._finished = False
        self._stop_reason = ""
        self._usage: dict[str, int] = {}
        # content block index -> tool call id
        self._tool_blocks: dict[int, str] = {}
        # content block index -> input sent up front, used only if no deltas follow
        self._initial_inputs: dict[int, str] = {}

    @property
    def finished(self) -> bool:
        """Whether the terminal marker has been decoded."""
        return self._finished

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Decode one network read and return the events it completes."""
        if not chunk:
            return []
        self._pending += self._utf8.decode(chunk)
        return self._drain_lines()

    def close(self) -> list[StreamEvent]:
        """Flush buffered input at end of body.

        Raises:
            StreamTerminatedError: the connection closed before a terminal marker
        """
        self._pending += self._utf8.decode(b"", final=True)
        events = self._drain_lines()
        if not self._finished and self._pending.strip():
            # Last line without a trailing newline.
            line, self._pending = self._pending, ""
            events.extend(self._handle_line(line))
        self._pending = ""
        if not self._finished:
            raise StreamTerminatedError("Upstream stream closed before the response finished")
        return events

    def _drain_lines(self) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        while "\n" in self._pending:
            line, self._pending = self._pending.split("\n", 1)
            events.extend(self._handle_line(line))
        return events

    def _handle_line(self, line: str) -> list[StreamEvent]:
        if self._finished:
            return []
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            # event:, id:, retry:, comments and blank separators carry nothing we need
            return []
        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if data.strip() == DONE_MARKER:
            return [self._finish()]
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            log.warning("Skipping malformed stream frame", error=str(e), frame=data[:200])
            return []
        if not isinstance(payload, dict):
            log.warning("Skipping non-object stream frame", frame=data[:200])
            return []
        return self._translate(payload)

    def _finish(self) -> TurnFinished:
        self._finished = True
        self._tool_blocks.clear()
        return TurnFinished(stop_reason=self._stop_reason, usage=dict(self._usage))

    def _translate(self, payload: dict[str, Any]) -> list[StreamEvent]:
        """Map one provider event onto the generic event vocabulary."""
        event_type = payload.get("type")

        if event_type == "content_block_start":
            block = payload.get("content_block") or {}
            index = payload.get("index")
            block_type = block.get("type")
            if block_type == "tool_use":
                call_id = str(block.get("id") or f"toolu_block_{index}")
                name = str(block.get("name") or "")
                self._tool_blocks[index] = call_id
                # Some providers send the full input up front instead of deltas.
                initial_input = block.get("input")
                if isinstance(initial_input, dict) and initial_input:
                    self._initial_inputs[index] = json.dumps(initial_input)
                return [ToolCallStarted(id=call_id, name=name)]
            if block_type == "text" and block.get("text"):
                return [TextFragment(text=str(block["text"]))]
            return []

        if event_type == "content_block_delta":
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text") or ""
                return [TextFragment(text=text)] if text else []
            if delta_type == "input_json_delta":
                index = payload.get("index")
                call_id = self._tool_blocks.get(index)
                if call_id is None:
                    log.error("Argument fragment without an open tool call", index=index)
                    return []
                fragment = delta.get("partial_json") or ""
                if not fragment:
                    return []
                self._initial_inputs.pop(index, None)
                return [ToolCallArgumentFragment(id=call_id, fragment=fragment)]
            return []

        if event_type == "content_block_stop":
            index = payload.get("index")
            call_id = self._tool_blocks.pop(index, None)
            initial_input = self._initial_inputs.pop(index, None)
            if call_id is None:
                return []
            if initial_input is not None:
                return [ToolCallArgumentFragment(id=call_id, fragment=initial_input), ToolCallFinished(id=call_id)]
            return [ToolCallFinished(id=call_id)]

        if event_type == "message_start":
            usage = (payload.get("message") or {}).get("usage") or {}
            self._merge_usage(usage)
            return []

        if event_type == "message_delta":
            delta = payload.get("delta") or {}
            if delta.get("stop_reason"):
                self._stop_reason = str(delta["stop_reason"])
            self._merge_usage(payload.get("usage") or {})
            return []

        if event_type == "message_stop":
            return [self._finish()]

        if event_type == "error":
            error = payload.get("error") or {}
            message = str(error.get("message") or "Upstream stream error")
            raise UpstreamError(message, error_type=str(error.get("type") or ""))

        # ping and unknown event types
        return []

    def _merge_usage(self, usage: dict[str, Any]) -> None:
        for key in ("input_tokens", "output_tokens"):
            value = usage.get(key)
            if isinstance(value, int):
                self._usage[key] = value
