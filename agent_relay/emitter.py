"""Client-facing frame protocol.

One response is a single text run, no matter how many upstream iterations
produce it::

    text-start, text-delta*, (text-end | error)

``tool-call`` frames for display tools travel alongside the run without
opening or closing it. Frames are written as server-sent event lines,
``data: {json}\\n\\n``.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from agent_relay.logging import get_logger
from agent_relay.safety import DownstreamChannel

log = get_logger(__name__)


@dataclass(frozen=True)
class TextStart:
    pass


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class TextEnd:
    pass


@dataclass(frozen=True)
class ErrorFrame:
    message: str


@dataclass(frozen=True)
class ToolDisplay:
    """Out-of-band result of a tool designated for client display."""

    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None


DownstreamFrame = Union[TextStart, TextDelta, TextEnd, ErrorFrame, ToolDisplay]


def frame_to_dict(frame: DownstreamFrame, response_id: str) -> dict[str, Any]:
    """Wire representation of a frame."""
    if isinstance(frame, TextStart):
        return {"type": "text-start", "id": response_id}
    if isinstance(frame, TextDelta):
        return {"type": "text-delta", "id": response_id, "delta": frame.text}
    if isinstance(frame, TextEnd):
        return {"type": "text-end", "id": response_id}
    if isinstance(frame, ErrorFrame):
        return {"type": "error", "id": response_id, "errorText": frame.message}
    if isinstance(frame, ToolDisplay):
        return {
            "type": "tool-call",
            "id": response_id,
            "toolCallId": frame.tool_call_id,
            "toolName": frame.tool_name,
            "args": frame.arguments,
            "result": frame.result,
        }
    raise TypeError(f"Unknown frame type: {type(frame).__name__}")


def encode_frame(frame: DownstreamFrame, response_id: str) -> bytes:
    payload = json.dumps(frame_to_dict(frame, response_id), ensure_ascii=False, default=str)
    return f"data: {payload}\n\n".encode("utf-8")


def new_response_id() -> str:
    return f"msg-{uuid.uuid4().hex[:24]}"


class DownstreamEmitter:
    """Translate loop activity into frames with exactly-once terminal framing."""

    def __init__(self, channel: DownstreamChannel, response_id: str | None = None):
        self.channel = channel
        self.response_id = response_id or new_response_id()
        self.frames: list[DownstreamFrame] = []
        self._started = False
        self._terminated = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def _emit(self, frame: DownstreamFrame) -> None:
        self.frames.append(frame)
        await self.channel.write(encode_frame(frame, self.response_id))

    async def text(self, fragment: str) -> None:
        """Stream a text fragment, opening the run on the first one."""
        if not fragment or self._terminated:
            return
        if not self._started:
            self._started = True
            await self._emit(TextStart())
        await self._emit(TextDelta(fragment))

    async def tool_display(
        self,
        tool_call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        result: Any,
    ) -> None:
        if self._terminated:
            return
        await self._emit(ToolDisplay(tool_call_id, tool_name, dict(arguments), result))

    async def finish(self) -> None:
        """Close the run. Emits ``text-end`` only if ``text-start`` went out."""
        if self._terminated:
            return
        self._terminated = True
        if self._started:
            await self._emit(TextEnd())

    async def error(self, message: str) -> None:
        """Terminate with an error. The error frame also closes an open text run."""
        if self._terminated:
            log.debug("Error after terminal frame dropped", error=message)
            return
        self._terminated = True
        await self._emit(ErrorFrame(message or "Stream error"))
