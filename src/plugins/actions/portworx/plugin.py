"""
Portworx Cleanup Plugin - Decommissions a node from the Portworx cluster.

Applies only to storage nodes, detected by label. Decommission goes through
the Portworx REST API; a node Portworx no longer knows about counts as
already decommissioned so retries stay idempotent.
"""

import asyncio
import logging
import os
from typing import Dict, List, Optional, Tuple

import aiohttp

from config import parse_duration
from constants import (
    DEFAULT_PORTWORX_API_ENDPOINT,
    DEFAULT_PORTWORX_LABEL_SELECTOR,
    PORTWORX_PLUGIN_NAME,
    PORTWORX_STATUS_LABEL,
)
from node_store import Node
from plugins.actions.base import CleanupPlugin
from plugins.base import CleanupContext

logger = logging.getLogger(__name__)


class PortworxDecommissionError(Exception):
    """Raised when the Portworx API refuses or fails a decommission."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


def parse_label_selector(selector: str) -> List[Tuple[str, Optional[str]]]:
    """
    Parse an equality label selector such as 'px/enabled=true,zone'.

    Returns:
        List of (key, value) requirements; value None means "key exists".
    """
    requirements: List[Tuple[str, Optional[str]]] = []
    for term in selector.split(","):
        term = term.strip()
        if not term:
            continue
        if "=" in term:
            key, value = term.split("=", 1)
            requirements.append((key.strip(), value.strip()))
        else:
            requirements.append((term, None))
    return requirements


def matches_selector(
    labels: Dict[str, str], requirements: List[Tuple[str, Optional[str]]]
) -> bool:
    if not requirements:
        return False
    for key, value in requirements:
        if key not in labels:
            return False
        if value is not None and labels[key] != value:
            return False
    return True


class PortworxPlugin(CleanupPlugin):
    """Cleanup plugin that decommissions Portworx storage nodes."""

    def __init__(self):
        super().__init__()
        self.label_selector: str = DEFAULT_PORTWORX_LABEL_SELECTOR
        self.api_endpoint: str = DEFAULT_PORTWORX_API_ENDPOINT
        self.timeout: float = 300.0
        self._requirements = parse_label_selector(self.label_selector)

    @property
    def name(self) -> str:
        return PORTWORX_PLUGIN_NAME

    @classmethod
    def load_config_from_env(cls) -> Dict[str, str]:
        """Load Portworx plugin options from environment variables."""
        return {
            "labelSelector": os.getenv(
                "PORTWORX_LABEL_SELECTOR", DEFAULT_PORTWORX_LABEL_SELECTOR
            ),
            "apiEndpoint": os.getenv(
                "PORTWORX_API_ENDPOINT", DEFAULT_PORTWORX_API_ENDPOINT
            ),
            "timeout": os.getenv("PORTWORX_TIMEOUT", "300s"),
        }

    def configure(self, options: Dict[str, str]) -> None:
        super().configure(options)
        self.label_selector = (
            options.get("labelSelector") or DEFAULT_PORTWORX_LABEL_SELECTOR
        )
        self.api_endpoint = (
            options.get("apiEndpoint") or DEFAULT_PORTWORX_API_ENDPOINT
        ).rstrip("/")
        self.timeout = parse_duration(options.get("timeout"), 300.0)
        self._requirements = parse_label_selector(self.label_selector)

        logger.debug(
            f"Portworx plugin configured: selector={self.label_selector}, "
            f"endpoint={self.api_endpoint}, timeout={self.timeout}s"
        )

    def should_run(self, node: Node) -> bool:
        if matches_selector(node.labels, self._requirements):
            logger.debug(f"Portworx node detected: {node.name} ({self.label_selector})")
            return True

        if PORTWORX_STATUS_LABEL in node.labels:
            logger.debug(
                f"Portworx node detected: {node.name} "
                f"({PORTWORX_STATUS_LABEL}={node.labels[PORTWORX_STATUS_LABEL]})"
            )
            return True

        return False

    def decommission_url(self, node_name: str) -> str:
        return f"{self.api_endpoint}/v1/cluster/decommission/{node_name}"

    async def _post(self, url: str) -> Tuple[int, str]:
        """POST to the Portworx API and return (status, body)."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(url) as response:
                return response.status, await response.text()

    async def cleanup(self, ctx: CleanupContext, node: Node) -> None:
        url = self.decommission_url(node.name)
        logger.info(f"Starting Portworx decommission for node {node.name}: {url}")

        try:
            status, body = await self._post(url)
        except aiohttp.ClientError as e:
            raise PortworxDecommissionError(
                f"Portworx API request failed for node {node.name}: {e}"
            ) from e
        except asyncio.TimeoutError as e:
            raise PortworxDecommissionError(
                f"Portworx API timed out after {self.timeout}s for node {node.name}"
            ) from e

        if status == 404:
            logger.info(
                f"Portworx does not know node {node.name}; treating as decommissioned"
            )
            return

        if not 200 <= status < 300:
            raise PortworxDecommissionError(
                f"Portworx API returned status {status} for node {node.name}: "
                f"{body[:200]}",
                status=status,
            )

        logger.info(f"Portworx decommission completed for node {node.name}")
