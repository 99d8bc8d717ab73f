"""
Logger Cleanup Plugin - Records node details before the node is removed.

Always applies. Useful on its own as an audit trail, and as the first step
of a sequence so every deletion leaves a record even if a later step fails.
"""

import json
import logging
import os
from typing import Any, Dict

from config import parse_duration
from constants import LOGGER_PLUGIN_NAME
from node_store import Node
from plugins.actions.base import CleanupPlugin
from plugins.base import CleanupContext

logger = logging.getLogger(__name__)


def _iso(value) -> str:
    return value.isoformat() if value is not None else ""


class LoggerPlugin(CleanupPlugin):
    """Cleanup plugin that logs node metadata."""

    def __init__(self):
        super().__init__()
        self.format: str = "pretty"
        self.verbosity: str = "info"
        self.delay: float = 0.0

    @property
    def name(self) -> str:
        return LOGGER_PLUGIN_NAME

    @classmethod
    def load_config_from_env(cls) -> Dict[str, str]:
        """Load logger plugin options from environment variables."""
        return {
            "format": os.getenv("LOGGER_FORMAT", "pretty"),
            "verbosity": os.getenv("LOGGER_VERBOSITY", "info"),
            "delay": os.getenv("LOGGER_DELAY", "0s"),
        }

    def configure(self, options: Dict[str, str]) -> None:
        super().configure(options)
        self.format = options.get("format", self.format).lower()
        if self.format not in ("pretty", "json"):
            logger.warning(f"Unknown logger format '{self.format}', using pretty")
            self.format = "pretty"
        self.verbosity = options.get("verbosity", self.verbosity).lower()
        self.delay = parse_duration(options.get("delay"), 0.0)

    def should_run(self, node: Node) -> bool:
        return True

    def summarize(self, node: Node) -> Dict[str, Any]:
        """Build the structured record logged for a node."""
        summary: Dict[str, Any] = {
            "node": node.name,
            "uid": node.uid,
            "createdAt": _iso(node.creation_timestamp),
            "deletionTimestamp": _iso(node.deletion_timestamp),
            "labelCount": len(node.labels),
            "conditionCount": len(node.conditions),
        }
        if self.verbosity == "debug":
            summary["labels"] = dict(node.labels)
            summary["conditions"] = dict(node.conditions)
        return summary

    async def cleanup(self, ctx: CleanupContext, node: Node) -> None:
        summary = self.summarize(node)

        if self.format == "json":
            logger.info(json.dumps(summary, sort_keys=True))
        else:
            logger.info(f"Cleanup started for node {node.name}")
            logger.info(f"  Created:     {summary['createdAt']}")
            logger.info(f"  Deleting at: {summary['deletionTimestamp']}")
            logger.info(f"  UID:         {summary['uid']}")
            for key, value in sorted(node.labels.items()):
                logger.debug(f"  label {key}: {value}")
            for cond_type, status in sorted(node.conditions.items()):
                logger.debug(f"  condition {cond_type}: {status}")

        if self.delay > 0:
            logger.info(f"Holding deletion of node {node.name} for {self.delay}s")
            await ctx.sleep(self.delay)

        logger.info(f"Node {node.name} recorded (attempt {ctx.attempt})")
