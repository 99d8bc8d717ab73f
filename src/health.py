"""
Health Server - Liveness/readiness probes and cleanup event stream.

Serves a small FastAPI app next to the watcher:
- GET /healthz: process is alive
- GET /readyz: node cache synced and startup sweep finished
- GET /api/v1/plugins: registered cleanup plugins and execution order
- GET /api/v1/events: Server-Sent Events stream of cleanup events
"""

import asyncio
import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from events import CleanupEvent, EventBus
from plugins.registry import PluginRegistry

logger = logging.getLogger(__name__)


class PluginInfo(BaseModel):
    """Response model for a registered cleanup plugin."""

    name: str
    version: str
    enabled: bool
    position: Optional[int] = None


class PluginListResponse(BaseModel):
    """Response model for the plugin listing."""

    plugins: List[PluginInfo]
    execution_order: List[str]


class HealthServer:
    """Serves probes and the event stream for a running watcher."""

    def __init__(
        self,
        watcher,
        registry: PluginRegistry,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8080,
        log_level: str = "info",
    ):
        self.watcher = watcher
        self.registry = registry
        self.event_bus = event_bus
        self.host = host
        self.port = port
        self.log_level = log_level.lower()
        self.server: Optional[uvicorn.Server] = None

        self.app = FastAPI(
            title="Node Cleanup Controller",
            description="Health probes and cleanup event stream",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        @self.app.get("/healthz")
        async def healthz():
            """Liveness probe."""
            return {"status": "ok"}

        @self.app.get("/readyz")
        async def readyz():
            """Readiness probe."""
            if not self.watcher.is_ready:
                return JSONResponse(
                    status_code=503,
                    content={"status": "not ready"},
                )
            return {"status": "ready"}

        @self.app.get("/api/v1/plugins", response_model=PluginListResponse)
        async def list_plugins():
            """List registered cleanup plugins."""
            plugins = [
                PluginInfo(**self.registry.get_plugin_info(name))
                for name in self.registry.list_plugins()
            ]
            return PluginListResponse(
                plugins=plugins,
                execution_order=self.registry.execution_order,
            )

        @self.app.get("/api/v1/events")
        async def stream_events(node: Optional[str] = None):
            """SSE stream of cleanup events.

            Optionally filter by node name.
            """
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            if node:
                node_name = node

                def filter_fn(event: CleanupEvent) -> bool:
                    return event.node_name == node_name

            else:
                filter_fn = None

            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Serve until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting health server on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the health server gracefully."""
        logger.info("Stopping health server")
        if self.server:
            self.server.should_exit = True
