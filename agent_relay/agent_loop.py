"""Agent loop: stream a model turn, run its tool calls, feed results back, repeat.

Per request the controller walks::

    CALLING -> DECODING -> (DISPATCHING) -> DECIDING -> CALLING ... -> DONE

All mutable state lives in one :class:`AgentLoopState` owned by the
controller instance serving that request. The iteration bound and the
wall-clock budget are checked in a single place, :meth:`AgentLoopController._stop_reason`,
right before another upstream call would start.
"""

import asyncio
import json
import time
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Sequence

from agent_relay.config import LoopConfig
from agent_relay.conversation import (
    ContentBlock,
    ConversationTurn,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    rewrite_history,
)
from agent_relay.emitter import DownstreamEmitter
from agent_relay.exceptions import (
    LLMAPIError,
    RequestTimeoutError,
    StreamTerminatedError,
    UpstreamError,
)
from agent_relay.llm import LLMProvider
from agent_relay.llm.sse import (
    StreamEvent,
    TextFragment,
    ToolCallArgumentFragment,
    ToolCallFinished,
    ToolCallStarted,
    TurnFinished,
)
from agent_relay.logging import get_logger
from agent_relay.safety import DownstreamChannel, SafetyShell
from agent_relay.tool_calls import MalformedToolCall, ParsedToolCall, ToolCallAccumulator
from agent_relay.tools.registry import ToolInvocationResult, ToolRegistry, render_tool_output

log = get_logger(__name__)

MALFORMED_ARGUMENTS_ERROR = "malformed_arguments"


class LoopPhase(str, Enum):
    CALLING = "calling"
    DECODING = "decoding"
    DISPATCHING = "dispatching"
    DECIDING = "deciding"
    DONE = "done"


class StopReason(str, Enum):
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class AgentLoopState:
    """Everything one request's loop mutates."""

    history: tuple[ConversationTurn, ...]
    iteration: int = 1
    accumulated_text: str = ""
    phase: LoopPhase = LoopPhase.CALLING
    upstream_calls: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    display_payloads: list[dict] = field(default_factory=list)


@dataclass
class UpstreamTurn:
    """What one upstream response produced."""

    blocks: list[ContentBlock] = field(default_factory=list)
    calls: list[ParsedToolCall | MalformedToolCall] = field(default_factory=list)
    stop_reason: str = ""

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.blocks if isinstance(b, ToolUseBlock)]


@dataclass
class AgentLoopOutcome:
    reason: StopReason
    iterations: int
    text: str
    history: tuple[ConversationTurn, ...]
    usage: dict[str, int]
    display_payloads: list[dict]
    error: str | None = None


class AgentLoopController:
    """Drive one client request through repeated upstream calls."""

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        emitter: DownstreamEmitter,
        loop_config: LoopConfig | None = None,
        system_prompt: str = "",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.registry = registry
        self.emitter = emitter
        self.config = loop_config or LoopConfig()
        self.system_prompt = system_prompt
        self._clock = clock
        self._deadline = 0.0
        self.state: AgentLoopState | None = None

    def _remaining(self) -> float:
        return self._deadline - self._clock()

    async def run(self, history: Sequence[ConversationTurn]) -> AgentLoopOutcome:
        """Run the loop to completion. Known failures end in an error frame, not an exception."""
        state = self.state = AgentLoopState(history=tuple(history))
        self._deadline = self._clock() + self.config.request_timeout_seconds
        reason = StopReason.COMPLETED
        error: str | None = None
        final_blocks: list[ContentBlock] = []

        try:
            while True:
                turn = await self._stream_turn(state)

                state.phase = LoopPhase.DECIDING
                if not turn.tool_uses:
                    final_blocks = turn.blocks
                    break

                await self._dispatch(state, turn)

                state.phase = LoopPhase.DECIDING
                stop = self._stop_reason(state)
                if stop is not None:
                    reason = stop
                    break
                state.iteration += 1
        except RequestTimeoutError as e:
            reason, error = StopReason.TIMEOUT, str(e)
            log.warning("Request time budget exhausted", iteration=state.iteration, phase=state.phase.value)
            await self.emitter.error(error)
        except (LLMAPIError, UpstreamError, StreamTerminatedError) as e:
            reason, error = StopReason.ERROR, str(e) or "Stream error"
            log.error("Upstream failure", iteration=state.iteration, phase=state.phase.value, error=error)
            await self.emitter.error(error)
        else:
            if reason is StopReason.ITERATION_LIMIT:
                log.warning(
                    "Hit iteration limit, response may be incomplete",
                    max_iterations=self.config.max_iterations,
                )
                if self.config.iteration_limit_notice:
                    await self.emitter.text(self.config.iteration_limit_notice)
            await self.emitter.finish()
        finally:
            state.phase = LoopPhase.DONE

        final_history = state.history
        if final_blocks:
            final_history = (*final_history, ConversationTurn(role="assistant", content=tuple(final_blocks)))

        log.info(
            "Agent loop done",
            reason=reason.value,
            iterations=state.iteration,
            upstream_calls=state.upstream_calls,
            text_chars=len(state.accumulated_text),
        )
        return AgentLoopOutcome(
            reason=reason,
            iterations=state.iteration,
            text=state.accumulated_text,
            history=final_history,
            usage=dict(state.usage),
            display_payloads=list(state.display_payloads),
            error=error,
        )

    def _stop_reason(self, state: AgentLoopState) -> StopReason | None:
        """The single guard in front of every follow-up upstream call."""
        if state.iteration >= self.config.max_iterations:
            return StopReason.ITERATION_LIMIT
        if self._remaining() <= 0:
            return StopReason.TIMEOUT
        return None

    async def _stream_turn(self, state: AgentLoopState) -> UpstreamTurn:
        """CALLING + DECODING for one upstream response."""
        remaining = self._remaining()
        if remaining <= 0:
            raise RequestTimeoutError(self.config.request_timeout_seconds)

        state.phase = LoopPhase.CALLING
        state.upstream_calls += 1
        log.info("Upstream call", iteration=state.iteration, history_len=len(state.history))

        turn = UpstreamTurn()
        accumulator = ToolCallAccumulator()
        pending_text: list[str] = []

        def flush_text() -> None:
            if pending_text:
                turn.blocks.append(TextBlock("".join(pending_text)))
                pending_text.clear()

        try:
            async with asyncio.timeout(remaining):
                async with AsyncExitStack() as stack:
                    events = await stack.enter_async_context(
                        self.provider.stream(
                            list(state.history),
                            tools=self.registry.get_definitions() or None,
                            system=self.system_prompt,
                        )
                    )
                    events = await stack.enter_async_context(aclosing(events))
                    state.phase = LoopPhase.DECODING
                    async for event in events:
                        await self._handle_event(state, turn, accumulator, event, pending_text, flush_text)
        except TimeoutError as e:
            raise RequestTimeoutError(self.config.request_timeout_seconds) from e
        finally:
            accumulator.discard()

        flush_text()
        return turn

    async def _handle_event(
        self,
        state: AgentLoopState,
        turn: UpstreamTurn,
        accumulator: ToolCallAccumulator,
        event: StreamEvent,
        pending_text: list[str],
        flush_text: Callable[[], None],
    ) -> None:
        if isinstance(event, TextFragment):
            state.accumulated_text += event.text
            pending_text.append(event.text)
            await self.emitter.text(event.text)
        elif isinstance(event, ToolCallStarted):
            flush_text()
            accumulator.start(event.id, event.name)
        elif isinstance(event, ToolCallArgumentFragment):
            accumulator.append(event.id, event.fragment)
        elif isinstance(event, ToolCallFinished):
            call = accumulator.finish(event.id)
            if isinstance(call, ParsedToolCall):
                turn.calls.append(call)
                turn.blocks.append(
                    ToolUseBlock(id=call.id, name=call.name, raw_arguments=call.raw_arguments, arguments=call.arguments)
                )
            elif isinstance(call, MalformedToolCall) and self.config.malformed_tool_calls == "error_result":
                turn.calls.append(call)
                turn.blocks.append(ToolUseBlock(id=call.id, name=call.name, raw_arguments=call.raw_arguments))
        elif isinstance(event, TurnFinished):
            turn.stop_reason = event.stop_reason
            for key, value in event.usage.items():
                state.usage[key] = state.usage.get(key, 0) + value
            log.debug(
                "Upstream turn finished",
                iteration=state.iteration,
                stop_reason=event.stop_reason,
                tool_calls=len(turn.calls),
            )

    async def _dispatch(self, state: AgentLoopState, turn: UpstreamTurn) -> None:
        """DISPATCHING: run tool calls one at a time, then rewrite history."""
        state.phase = LoopPhase.DISPATCHING
        results: list[ToolResultBlock] = []

        for call in turn.calls:
            if isinstance(call, MalformedToolCall):
                results.append(
                    ToolResultBlock(
                        tool_use_id=call.id,
                        payload=json.dumps({"error": MALFORMED_ARGUMENTS_ERROR}),
                        is_error=True,
                    )
                )
                continue

            remaining = self._remaining()
            if remaining <= 0:
                result = ToolInvocationResult(
                    tool_call_id=call.id,
                    error="Request time budget exhausted before the tool could run",
                )
            else:
                result = await self.registry.invoke(
                    call.name,
                    call.arguments,
                    tool_call_id=call.id,
                    timeout=remaining,
                )

            payload = render_tool_output(result, self.config.max_tool_result_chars)
            results.append(ToolResultBlock(tool_use_id=call.id, payload=payload, is_error=not result.success))

            if result.success and self.registry.is_display_tool(call.name):
                state.display_payloads.append({
                    "tool_call_id": call.id,
                    "tool_name": call.name,
                    "arguments": call.arguments,
                    "result": result.output,
                })
                await self.emitter.tool_display(call.id, call.name, call.arguments, result.output)

        assistant_turn = ConversationTurn(role="assistant", content=tuple(turn.blocks))
        state.history = rewrite_history(state.history, assistant_turn, results)
        log.info("Continuing with tool results", iteration=state.iteration, tool_results=len(results))


PersistCallback = Callable[[AgentLoopState], Awaitable[None]]


async def relay_conversation(
    history: Sequence[ConversationTurn],
    channel: DownstreamChannel,
    *,
    provider: LLMProvider,
    registry: ToolRegistry,
    loop_config: LoopConfig | None = None,
    system_prompt: str = "",
    response_id: str | None = None,
    persist: PersistCallback | None = None,
    cleanup: Sequence[Callable[[], Awaitable[object]]] = (),
) -> AgentLoopOutcome | None:
    """Serve one client request end to end inside a :class:`SafetyShell`.

    Returns the loop outcome, or ``None`` if an unexpected error was turned
    into an error frame by the shell.
    """
    emitter = DownstreamEmitter(channel, response_id=response_id)
    controller = AgentLoopController(
        provider,
        registry,
        emitter,
        loop_config=loop_config,
        system_prompt=system_prompt,
    )

    async def _persist() -> None:
        if persist is not None and controller.state is not None:
            await persist(controller.state)

    outcome: AgentLoopOutcome | None = None
    async with SafetyShell(channel, emitter, persist=_persist) as shell:
        for callback in cleanup:
            shell.push_async_callback(callback)
        outcome = await controller.run(history)
    return outcome


__all__ = [
    "AgentLoopController",
    "AgentLoopOutcome",
    "AgentLoopState",
    "LoopPhase",
    "StopReason",
    "relay_conversation",
]
