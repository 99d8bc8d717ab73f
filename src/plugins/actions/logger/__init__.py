"""Logger cleanup plugin."""

from plugins.actions.logger.plugin import LoggerPlugin

__all__ = ["LoggerPlugin"]
