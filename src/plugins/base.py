"""
Core plugin types, context and errors.

This module contains shared types used across the cleanup plugin system.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)


class PluginError(Exception):
    """Base class for plugin registry errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PluginNotFoundError(PluginError):
    """Raised when a plugin name is not registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin {name} not found")


class PluginAlreadyRegisteredError(PluginError):
    """Raised when registering a second plugin under an existing name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin {name} is already registered")


class PluginAlreadyEnabledError(PluginError):
    """Raised when enabling a plugin that is already in the execution order."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"plugin {name} is already enabled")


class PluginExecutionError(PluginError):
    """A cleanup plugin failed; wraps the underlying cause."""

    def __init__(self, plugin_name: str, cause: BaseException):
        self.plugin_name = plugin_name
        self.cause = cause
        super().__init__(f"plugin {plugin_name} failed: {cause}")


class CleanupCancelledError(Exception):
    """Cleanup was interrupted because the process is shutting down."""


@dataclass
class CleanupContext:
    """Context passed to cleanup plugins for one cleanup attempt."""

    node_name: str
    attempt: int = 1
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.shutdown_event.is_set()

    async def sleep(self, seconds: float) -> None:
        """
        Sleep for the given time unless shutdown is requested first.

        Raises:
            CleanupCancelledError: If shutdown was requested.
        """
        if await wait_for_shutdown(self.shutdown_event, seconds):
            raise CleanupCancelledError(
                f"cleanup of node {self.node_name} cancelled by shutdown"
            )


async def wait_for_shutdown(event: asyncio.Event, timeout: Optional[float]) -> bool:
    """
    Wait until event is set or timeout elapses.

    Returns:
        True if the event was set, False on timeout.
    """
    if event.is_set():
        return True
    try:
        await asyncio.wait_for(event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True
