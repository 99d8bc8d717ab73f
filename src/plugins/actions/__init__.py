"""
Cleanup action plugins package.

Cleanup plugins implement the work that runs before a node is removed
(storage decommission, notifications, ...).
"""

from plugins.actions.base import CleanupPlugin

__all__ = ["CleanupPlugin"]
