"""
Cleanup Plugin Base - Abstract interface for node cleanup actions.

A cleanup plugin is one named step of the work that must finish before a
node is allowed to leave the cluster. The registry decides the order; a
plugin only decides whether it applies to a node and how to clean up.
"""

from abc import ABC, abstractmethod
from typing import Dict

from node_store import Node
from plugins.base import CleanupContext


class CleanupPlugin(ABC):
    """
    Abstract base class for cleanup plugins.

    Plugins must be idempotent: after a failure the whole enabled sequence
    is retried from the start, so a plugin may run again for a node it has
    already partially or fully cleaned up.
    """

    def __init__(self):
        self.options: Dict[str, str] = {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this plugin (e.g., 'portworx')."""
        pass

    @property
    def version(self) -> str:
        """Plugin version string."""
        return "1.0.0"

    def configure(self, options: Dict[str, str]) -> None:
        """
        Apply plugin options.

        Called once before the plugin is registered. Option values are
        opaque strings interpreted only by the plugin itself.

        Args:
            options: Plugin-specific option dictionary
        """
        self.options = dict(options)

    @abstractmethod
    def should_run(self, node: Node) -> bool:
        """
        Decide whether this plugin applies to the node.

        Must not have side effects; it is evaluated on every attempt.
        """
        pass

    @abstractmethod
    async def cleanup(self, ctx: CleanupContext, node: Node) -> None:
        """
        Perform the cleanup for a node pending deletion.

        Raise any exception to fail the attempt. Long-running work should
        watch ctx.shutdown_event (or use ctx.sleep) and raise
        CleanupCancelledError when the process is shutting down.

        Args:
            ctx: The cleanup context for this attempt
            node: Freshly read node state
        """
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, str]:
        """
        Load plugin-specific options from environment variables.

        Override this method in subclasses to define how the plugin
        loads its options from the environment.

        Returns:
            Dictionary of option values for this plugin.
        """
        return {}
