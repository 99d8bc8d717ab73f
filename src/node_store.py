"""
Node Store - Access to the cluster's Node objects.

Wraps the Kubernetes API behind a small async interface (list, get, watch and
a finalizer merge patch). The informer and the watcher only talk to a
NodeStore, never to the Kubernetes client directly.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import urllib3
from kubernetes import client, watch
from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from config import KubernetesConfig
from constants import SKIP_CLEANUP_ANNOTATION, SKIP_CLEANUP_VALUE

logger = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

_WATCH_CLOSED = object()


class NodeStoreError(Exception):
    """Raised when a request against the Node Store fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class NodeNotFoundError(NodeStoreError):
    """The node no longer exists."""


class ConflictError(NodeStoreError):
    """A write lost an optimistic concurrency race (HTTP 409)."""


class WatchExpiredError(NodeStoreError):
    """The watch resource version is too old and a relist is required (HTTP 410)."""


@dataclass
class Node:
    """The subset of a Kubernetes Node the cleanup controller works with."""

    name: str
    uid: str = ""
    resource_version: str = ""
    creation_timestamp: Optional[datetime] = None
    deletion_timestamp: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    conditions: Dict[str, str] = field(default_factory=dict)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def skip_cleanup(self) -> bool:
        return self.annotations.get(SKIP_CLEANUP_ANNOTATION) == SKIP_CLEANUP_VALUE

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def copy(self) -> "Node":
        return replace(
            self,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
            finalizers=list(self.finalizers),
            conditions=dict(self.conditions),
        )

    @classmethod
    def from_k8s(cls, obj: client.V1Node) -> "Node":
        """
        Build a Node from a kubernetes client V1Node.

        Args:
            obj: The V1Node returned by the API.

        Returns:
            A new Node instance.
        """
        meta = obj.metadata
        conditions: Dict[str, str] = {}
        status = getattr(obj, "status", None)
        if status is not None and status.conditions:
            for condition in status.conditions:
                conditions[condition.type] = condition.status

        return cls(
            name=meta.name,
            uid=meta.uid or "",
            resource_version=meta.resource_version or "",
            creation_timestamp=meta.creation_timestamp,
            deletion_timestamp=meta.deletion_timestamp,
            labels=dict(meta.labels or {}),
            annotations=dict(meta.annotations or {}),
            finalizers=list(meta.finalizers or []),
            conditions=conditions,
        )


def with_finalizer(finalizers: List[str], finalizer: str) -> List[str]:
    """Return a copy of finalizers containing finalizer exactly once."""
    if finalizer in finalizers:
        return list(finalizers)
    return list(finalizers) + [finalizer]


def without_finalizer(finalizers: List[str], finalizer: str) -> List[str]:
    """Return a copy of finalizers with every occurrence of finalizer removed."""
    return [f for f in finalizers if f != finalizer]


def build_finalizers_patch(
    finalizers: List[str], resource_version: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build a JSON merge patch replacing metadata.finalizers.

    When resource_version is given it is included so the API server rejects
    the patch with 409 if the node changed since it was read.
    """
    metadata: Dict[str, Any] = {"finalizers": list(finalizers)}
    if resource_version:
        metadata["resourceVersion"] = resource_version
    return {"metadata": metadata}


class NodeStore(ABC):
    """Abstract access to the cluster's nodes."""

    @abstractmethod
    async def list_nodes(self) -> Tuple[List[Node], str]:
        """
        List all nodes.

        Returns:
            Tuple of (nodes, list resource version) usable to start a watch.
        """
        pass

    @abstractmethod
    async def get_node(self, name: str) -> Node:
        """
        Read the current state of a node.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        pass

    @abstractmethod
    async def patch_node_finalizers(
        self,
        name: str,
        finalizers: List[str],
        resource_version: Optional[str] = None,
    ) -> Node:
        """
        Replace a node's finalizer list with a merge patch.

        Raises:
            ConflictError: If resource_version no longer matches.
            NodeNotFoundError: If the node does not exist.
        """
        pass

    @abstractmethod
    def watch_nodes(
        self, resource_version: str, timeout_seconds: int = 300
    ) -> AsyncIterator[Tuple[str, Node]]:
        """
        Stream node changes after resource_version.

        Yields (event_type, node) with event_type one of ADDED, MODIFIED,
        DELETED. Ends normally when the server closes the watch.

        Raises:
            WatchExpiredError: If resource_version is too old.
        """
        pass


def _translate_api_exception(e: ApiException, action: str) -> NodeStoreError:
    message = f"Failed to {action}: {e.status} {e.reason}"
    if e.status == 404:
        return NodeNotFoundError(message, status=e.status)
    if e.status == 409:
        return ConflictError(message, status=e.status)
    if e.status == 410:
        return WatchExpiredError(message, status=e.status)
    return NodeStoreError(message, status=e.status)


class KubernetesNodeStore(NodeStore):
    """NodeStore backed by the Kubernetes CoreV1 API."""

    def __init__(self, core_v1: client.CoreV1Api):
        self.core_v1 = core_v1

    @classmethod
    def from_config(cls, kube_cfg: KubernetesConfig) -> "KubernetesNodeStore":
        """
        Create a store from kubeconfig or in-cluster configuration.

        Args:
            kube_cfg: Kubernetes client configuration section.

        Returns:
            A KubernetesNodeStore using a dedicated ApiClient.
        """
        if kube_cfg.kubeconfig:
            kube_config.load_kube_config(config_file=kube_cfg.kubeconfig)
            logger.info(f"Using kubeconfig {kube_cfg.kubeconfig}")
        else:
            kube_config.load_incluster_config()
            logger.info("Using in-cluster configuration")

        configuration = client.Configuration.get_default_copy()
        if kube_cfg.insecure_skip_tls_verify:
            logger.warning(
                "TLS verification disabled for kube-apiserver - "
                "not recommended for production"
            )
            configuration.verify_ssl = False
            configuration.ssl_ca_cert = None

        return cls(client.CoreV1Api(client.ApiClient(configuration)))

    async def _call(self, action: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise _translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise NodeStoreError(f"Failed to {action}: {e}") from e

    async def list_nodes(self) -> Tuple[List[Node], str]:
        result = await self._call("list nodes", self.core_v1.list_node)
        nodes = [Node.from_k8s(item) for item in result.items]
        return nodes, result.metadata.resource_version or ""

    async def get_node(self, name: str) -> Node:
        result = await self._call(f"get node {name}", self.core_v1.read_node, name)
        return Node.from_k8s(result)

    async def patch_node_finalizers(
        self,
        name: str,
        finalizers: List[str],
        resource_version: Optional[str] = None,
    ) -> Node:
        body = build_finalizers_patch(finalizers, resource_version)
        result = await self._call(
            f"patch node {name}",
            self.core_v1.patch_node,
            name,
            body,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
        )
        return Node.from_k8s(result)

    async def watch_nodes(
        self, resource_version: str, timeout_seconds: int = 300
    ) -> AsyncIterator[Tuple[str, Node]]:
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()
        node_watch = watch.Watch()

        stream_kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            stream_kwargs["resource_version"] = resource_version

        def deliver(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(events.put_nowait, item)
            except RuntimeError:
                # Event loop is closed, nobody is listening any more
                node_watch.stop()

        def pump() -> None:
            try:
                for event in node_watch.stream(self.core_v1.list_node, **stream_kwargs):
                    deliver(event)
            except Exception as e:
                deliver(e)
            finally:
                deliver(_WATCH_CLOSED)

        # The blocking stream runs on a daemon thread so shutdown never
        # waits for the server-side watch timeout.
        thread = threading.Thread(target=pump, name="node-watch", daemon=True)
        thread.start()

        try:
            while True:
                item = await events.get()
                if item is _WATCH_CLOSED:
                    return
                if isinstance(item, ApiException):
                    raise _translate_api_exception(item, "watch nodes") from item
                if isinstance(item, Exception):
                    raise NodeStoreError(f"Failed to watch nodes: {item}") from item

                event_type = item["type"]
                if event_type == "ERROR":
                    raw = item.get("raw_object") or item.get("object") or {}
                    code = raw.get("code")
                    message = (
                        f"Watch error {code} {raw.get('reason', '')}: "
                        f"{raw.get('message', '')}"
                    )
                    if code == 410:
                        raise WatchExpiredError(message, status=code)
                    raise NodeStoreError(message, status=code)
                if event_type not in ("ADDED", "MODIFIED", "DELETED"):
                    continue

                yield event_type, Node.from_k8s(item["object"])
        finally:
            node_watch.stop()
