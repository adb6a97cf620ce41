"""
Status server for a podslice worker.

Provides REST endpoints for:
- Liveness (/health), also the target of the http peer probe
- Readiness (/ready), 200 only once the rendezvous is READY
- Rendezvous progress (/status)
"""

import asyncio
import logging
from typing import Optional, List, Dict, Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from core.errors import ConfigurationError
from worker.rendezvous import GroupRendezvous


logger = logging.getLogger(__name__)


# Pydantic models for API

class PeerStatusModel(BaseModel):
    """Probe progress for one peer."""
    ordinal: int = Field(..., ge=0)
    host: str
    port: int
    reachable: bool
    attempts: int = Field(..., ge=0)
    last_error: Optional[str] = None
    reached_after: Optional[float] = None


class RendezvousStatusModel(BaseModel):
    """Rendezvous status response."""
    state: str = Field(..., description="Rendezvous state")
    ordinal: int = Field(..., description="This worker's ordinal", ge=0)
    total: int = Field(..., description="Number of workers in the group", gt=0)
    timeout: float = Field(..., description="Rendezvous deadline in seconds")
    elapsed: float = Field(..., description="Seconds spent in rendezvous")
    peers: List[PeerStatusModel] = Field(default_factory=list)


def create_app(rendezvous: GroupRendezvous) -> FastAPI:
    """
    Build the status API for one rendezvous.

    Args:
        rendezvous: Rendezvous to report on

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="podslice worker",
        description="Worker rendezvous status",
        version="0.1.0",
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Liveness check."""
        return {"status": "ok", "ordinal": rendezvous.identity.ordinal}

    @app.get("/ready")
    async def ready():
        """Readiness check, for the orchestrator's readiness probe."""
        body = {
            "ready": rendezvous.is_ready(),
            "state": rendezvous.state.value,
            "pending": [p.host for p in rendezvous.pending_peers()],
        }
        return JSONResponse(status_code=200 if body["ready"] else 503, content=body)

    @app.get("/status", response_model=RendezvousStatusModel)
    async def status():
        """Full rendezvous status."""
        return rendezvous.get_status()

    return app


class StatusServer:
    """Runs the status API with uvicorn in a background task."""

    def __init__(
        self,
        rendezvous: GroupRendezvous,
        host: str = "0.0.0.0",
        port: int = 8080,
        log_level: str = "warning"
    ):
        """
        Initialize status server.

        Args:
            rendezvous: Rendezvous to report on
            host: Bind address
            port: Bind port
            log_level: uvicorn log level
        """
        self.host = host
        self.port = port
        self.app = create_app(rendezvous)
        self._server = uvicorn.Server(uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_level=log_level.lower(),
            access_log=False,
        ))
        self._task: Optional[asyncio.Task] = None

    async def _serve(self):
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the process when it cannot bind
            raise OSError(f"uvicorn exited with code {e.code}") from None

    async def start(self):
        """
        Start serving in the background.

        Returns once the server is accepting connections.

        Raises:
            ConfigurationError: If the server cannot start, e.g. the port is taken
        """
        if self._task is not None:
            logger.warning("Status server already running")
            return

        task = asyncio.create_task(self._serve(), name="status-server")
        try:
            while not self._server.started and not task.done():
                await asyncio.sleep(0.01)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not self._server.started:
            error = None
            try:
                await task
            except Exception as e:
                error = e
            raise ConfigurationError(
                f"status server failed to start on {self.host}:{self.port}: {error}"
            ) from error

        self._task = task
        logger.info(f"Status server listening on {self.host}:{self.port}")

    async def stop(self):
        """Stop serving. Safe to call more than once."""
        if self._task is None:
            return

        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            logger.warning(f"Status server exited with error: {e}")
        self._task = None

        logger.info("Status server stopped")
