"""Adapter registry.

Maps agent names to adapter instances. Registries are constructed by the
runtime and passed to the executor; adding an agent means registering one
more adapter here.
"""

from typing import Optional

from fetch_harness.exceptions import AdapterNotFoundError
from fetch_harness.harness.adapters import ClaudeAdapter, CopilotAdapter, GeminiAdapter, HarnessAdapter
from fetch_harness.harness.types import AdapterCapabilities
from fetch_harness.logging import EventLogger, LogLevel


DEFAULT_AGENT = "claude"


class AdapterRegistry:
    """Lookup table of adapters keyed by agent name."""

    def __init__(self, event_logger: Optional[EventLogger] = None):
        self.event_logger = event_logger
        self._adapters: dict[str, HarnessAdapter] = {}

    def register(self, adapter: HarnessAdapter) -> None:
        """Add an adapter, replacing any earlier one for the same agent."""
        if adapter.agent in self._adapters and self.event_logger:
            self.event_logger.log_event(
                "adapter_overwritten",
                {"agent": adapter.agent},
                LogLevel.IMPORTANT,
            )
        self._adapters[adapter.agent] = adapter

    def get(self, agent: str) -> HarnessAdapter:
        """
        Return the adapter for an agent.

        Raises:
            AdapterNotFoundError: If no adapter is registered for the agent.
        """
        adapter = self._adapters.get(agent)
        if adapter is None:
            raise AdapterNotFoundError(agent)
        return adapter

    def has(self, agent: str) -> bool:
        return agent in self._adapters

    def list_agents(self) -> list[str]:
        return list(self._adapters)

    def all(self) -> list[HarnessAdapter]:
        return list(self._adapters.values())

    def capabilities(self) -> dict[str, AdapterCapabilities]:
        """Capabilities of every registered agent, keyed by name."""
        return {name: adapter.capabilities() for name, adapter in self._adapters.items()}


def create_default_registry(
    event_logger: Optional[EventLogger] = None,
    enabled: Optional[list[str]] = None,
) -> AdapterRegistry:
    """
    Build a registry with the built-in adapters.

    Args:
        event_logger: Optional event logger.
        enabled: Agent names to register. Defaults to all built-in agents.
    """
    registry = AdapterRegistry(event_logger)
    for adapter in (ClaudeAdapter(), GeminiAdapter(), CopilotAdapter()):
        if enabled is None or adapter.agent in enabled:
            registry.register(adapter)
    return registry
