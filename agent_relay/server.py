"""HTTP surface: a streaming chat endpoint in front of the agent loop."""

import asyncio
import signal
from typing import Any

from aiohttp import web

from agent_relay import __version__
from agent_relay.agent_loop import AgentLoopState, relay_conversation
from agent_relay.config import Config
from agent_relay.conversation import turns_from_wire
from agent_relay.emitter import new_response_id
from agent_relay.llm import LLMProvider, provider_from_config
from agent_relay.logging import bind_request_context, clear_request_context, get_logger
from agent_relay.safety import DownstreamChannel
from agent_relay.store import ChatStore, new_chat_id
from agent_relay.tools.plugins import load_tool_plugins
from agent_relay.tools.registry import ToolRegistry

log = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class RelayServer:
    """Owns the shared provider, tool registry and chat store for all requests."""

    def __init__(
        self,
        config: Config,
        provider: LLMProvider | None = None,
        registry: ToolRegistry | None = None,
        store: ChatStore | None = None,
    ):
        self.config = config
        self.provider = provider or provider_from_config(config.model)
        if registry is None:
            registry = ToolRegistry(default_timeout_seconds=config.tools.default_timeout_seconds)
            load_tool_plugins(registry, config.tools.plugins)
        self.registry = registry
        if store is None and config.store.enabled:
            store = ChatStore(config.store.path)
        self.store = store

    @staticmethod
    def _extract_caller(request: web.Request) -> str | None:
        """Extract caller identity from ``Authorization: Bearer <caller>``."""
        auth = request.headers.get("Authorization", "").strip()
        if not auth.lower().startswith("bearer "):
            return None
        token = auth[7:].strip()
        return token or None

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "version": __version__,
            "tools": self.registry.list_tools(),
        })

    async def list_chat_messages(self, request: web.Request) -> web.Response:
        """``GET /api/chats/{chat_id}/messages``: persisted messages of one chat."""
        if self._extract_caller(request) is None:
            return _json_error("Unauthorized", 401)
        if self.store is None:
            return _json_error("Chat persistence is disabled", 404)
        chat_id = request.match_info["chat_id"]
        messages = await self.store.list_messages(chat_id)
        return web.json_response({
            "chatId": chat_id,
            "messages": [m.to_dict() for m in messages],
        })

    async def chat(self, request: web.Request) -> web.Response | web.StreamResponse:
        """``POST /api/chat``: run the agent loop and stream frames back."""
        caller = self._extract_caller(request)
        if caller is None:
            return _json_error("Unauthorized", 401)

        try:
            body = await request.json()
        except Exception:
            return _json_error("Invalid JSON in request body", 400)
        if not isinstance(body, dict):
            return _json_error("Invalid JSON in request body", 400)

        messages = body.get("messages")
        if not messages:
            if isinstance(messages, list):
                return _json_error("Messages cannot be empty", 400)
            return _json_error("Messages is required", 400)
        if not isinstance(messages, list):
            return _json_error("Messages must be an array", 400)

        history = turns_from_wire(messages)
        if not history:
            return _json_error("No valid messages to process", 400)

        raw_chat_id = body.get("chatId")
        chat_id = str(raw_chat_id) if raw_chat_id not in (None, "") else new_chat_id()
        response_id = new_response_id()
        bind_request_context(caller=caller, chat_id=chat_id, response_id=response_id)
        log.info("Chat request", messages=len(messages), turns=len(history))

        try:
            last_user = next((t for t in reversed(history) if t.role == "user"), None)
            if last_user is not None and self.store is not None:
                try:
                    await self.store.save_message(chat_id, "user", last_user.plain_text)
                except Exception as e:
                    log.error("Saving user message failed", error=str(e))

            resp = web.StreamResponse(
                status=200,
                reason="OK",
                headers={**SSE_HEADERS, "X-Chat-Id": chat_id},
            )
            await resp.prepare(request)
            channel = DownstreamChannel(resp.write, resp.write_eof)

            async def persist(state: AgentLoopState) -> None:
                if self.store is None or not state.accumulated_text.strip():
                    return
                metadata: dict[str, Any] = {"responseId": response_id, "iterations": state.iteration}
                if state.display_payloads:
                    metadata["toolCalls"] = state.display_payloads
                if state.usage:
                    metadata["usage"] = state.usage
                await self.store.save_message(chat_id, "assistant", state.accumulated_text, metadata)

            await relay_conversation(
                history,
                channel,
                provider=self.provider,
                registry=self.registry,
                loop_config=self.config.loop,
                system_prompt=self.config.model.system_prompt,
                response_id=response_id,
                persist=persist,
            )
            return resp
        finally:
            clear_request_context()

    async def close(self) -> None:
        await self.provider.close()
        if self.store is not None:
            await self.store.close()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.close()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/api/health", self.health)
        app.router.add_post("/api/chat", self.chat)
        app.router.add_get("/api/chats/{chat_id}/messages", self.list_chat_messages)
        app.on_cleanup.append(self._on_cleanup)
        return app


async def _run_server(config: Config) -> None:
    """Start the server and block until SIGINT/SIGTERM."""
    server = RelayServer(config)
    loop = asyncio.get_running_loop()

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.server.host
    port = config.server.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    log.info("Server started", host=host, port=port, tools=server.registry.list_tools())
    print(f"\n  Agent Relay listening on http://{host}:{port}")
    print("  Press Ctrl+C to stop.\n")

    await stop_event.wait()

    print("\nShutting down...")
    await runner.cleanup()


def run_server(config: Config) -> None:
    """Entry point for running the server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass  # Signal handler handles graceful shutdown.
