"""Command-line entry point for Agent Relay."""

import asyncio
import json
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from agent_relay import __version__
from agent_relay.agent_loop import relay_conversation
from agent_relay.config import Config, set_config
from agent_relay.conversation import ConversationTurn
from agent_relay.exceptions import ConfigurationError
from agent_relay.llm import provider_from_config
from agent_relay.logging import configure_logging, log
from agent_relay.safety import DownstreamChannel
from agent_relay.tools.plugins import load_tool_plugins
from agent_relay.tools.registry import ToolRegistry

cli = typer.Typer(help="Agent Relay - streaming tool-calling agent loop")
console = Console()


def _load_config(config: str, model: str, verbose: bool) -> Config:
    if verbose:
        os.environ["RELAY_LOGGING__LEVEL"] = "DEBUG"

    try:
        cfg = Config.from_yaml(Path(config)) if config else Config.load()
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if model:
        cfg.model.model = model
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


class TerminalFrameWriter:
    """Render encoded client frames to the terminal."""

    def __init__(self, out: Console):
        self.out = out
        self.failed = False

    async def write(self, data: bytes) -> None:
        for line in data.decode("utf-8").splitlines():
            if not line.startswith("data: "):
                continue
            frame = json.loads(line[6:])
            kind = frame.get("type")
            if kind == "text-delta":
                self.out.print(frame.get("delta", ""), end="", markup=False, highlight=False)
            elif kind == "text-end":
                self.out.print()
            elif kind == "error":
                self.failed = True
                self.out.print()
                self.out.print(f"[red]Error:[/red] {frame.get('errorText', '')}")
            elif kind == "tool-call":
                body = json.dumps(frame.get("result"), indent=2, ensure_ascii=False, default=str)
                self.out.print(Panel(body, title=f"tool: {frame.get('toolName', '')}", expand=False))


async def _ask(cfg: Config, prompt: str) -> bool:
    provider = provider_from_config(cfg.model)
    registry = ToolRegistry(default_timeout_seconds=cfg.tools.default_timeout_seconds)
    load_tool_plugins(registry, cfg.tools.plugins)

    writer = TerminalFrameWriter(console)
    channel = DownstreamChannel(writer.write)
    outcome = await relay_conversation(
        [ConversationTurn.text("user", prompt)],
        channel,
        provider=provider,
        registry=registry,
        loop_config=cfg.loop,
        system_prompt=cfg.model.system_prompt,
        cleanup=[provider.close],
    )
    if outcome is not None:
        log.debug("Ask finished", reason=outcome.reason.value, iterations=outcome.iterations)
    return outcome is not None and not writer.failed


@cli.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the HTTP server."""
    from agent_relay.server import run_server

    cfg = _load_config(config, model, verbose)
    if host:
        cfg.server.host = host
    if port:
        cfg.server.port = port

    try:
        run_server(cfg)
    except ConfigurationError as e:
        log.error("Invalid configuration", error=str(e))
        sys.exit(1)


@cli.command()
def ask(
    prompt: str = typer.Argument(..., help="User message"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one conversation turn and stream the answer to the terminal."""
    cfg = _load_config(config, model, verbose)
    try:
        ok = asyncio.run(_ask(cfg, prompt))
    except ConfigurationError as e:
        log.error("Invalid configuration", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)
    if not ok:
        sys.exit(1)


@cli.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"agent-relay {__version__}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
