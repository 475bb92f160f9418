"""Load tools named in configuration as ``module:attribute`` specs."""

import importlib
import inspect
from typing import Any, Iterable

from agent_relay.exceptions import ToolPluginError
from agent_relay.logging import get_logger
from agent_relay.tools.registry import Tool, ToolRegistry

log = get_logger(__name__)


def _resolve(spec: str) -> Any:
    module_name, sep, attr_path = spec.partition(":")
    if not sep or not module_name.strip() or not attr_path.strip():
        raise ToolPluginError(spec, "expected 'module:attribute'")
    try:
        target: Any = importlib.import_module(module_name.strip())
    except ImportError as e:
        raise ToolPluginError(spec, str(e)) from e
    for part in attr_path.strip().split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise ToolPluginError(spec, f"missing attribute '{part}'") from e
    return target


def load_tool_plugin(registry: ToolRegistry, spec: str) -> list[str]:
    """Register the tool(s) a single spec points at.

    The attribute may be a ``Tool`` subclass, a ``Tool`` instance, or a
    callable that takes the registry and registers tools itself.

    Returns:
        Names of tools that the plugin added
    """
    target = _resolve(spec)
    before = set(registry.list_tools())
    metadata = {"source": "plugin", "spec": spec}

    if inspect.isclass(target) and issubclass(target, Tool):
        registry.register(target(), metadata=metadata)
    elif isinstance(target, Tool):
        registry.register(target, metadata=metadata)
    elif callable(target):
        target(registry)
    else:
        raise ToolPluginError(spec, f"unsupported plugin target {type(target).__name__}")

    added = [name for name in registry.list_tools() if name not in before]
    log.info("Loaded tool plugin", spec=spec, tools=added)
    return added


def load_tool_plugins(registry: ToolRegistry, specs: Iterable[str]) -> list[str]:
    """Load every configured plugin, failing fast on the first bad spec."""
    loaded: list[str] = []
    for spec in specs:
        cleaned = str(spec or "").strip()
        if cleaned:
            loaded.extend(load_tool_plugin(registry, cleaned))
    return loaded
