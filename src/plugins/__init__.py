"""
Plugin system for the Node Cleanup Controller.

This package provides the ordered cleanup plugin architecture: the plugin
contract, the registry that enables plugins in order, and the built-in plugins.
"""

from plugins.base import (
    CleanupCancelledError,
    CleanupContext,
    PluginAlreadyEnabledError,
    PluginAlreadyRegisteredError,
    PluginError,
    PluginExecutionError,
    PluginNotFoundError,
)
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "CleanupCancelledError",
    "CleanupContext",
    "PluginAlreadyEnabledError",
    "PluginAlreadyRegisteredError",
    "PluginError",
    "PluginExecutionError",
    "PluginNotFoundError",
    "PluginRegistry",
    "get_registry",
]
