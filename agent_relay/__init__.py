"""Agent Relay - streaming tool-calling agent loop between a client and an LLM."""

__version__ = "0.1.0"

from agent_relay.config import Config

__all__ = ["Config", "__version__"]
