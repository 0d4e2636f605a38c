#!/usr/bin/env python3
"""
FastAPI server module for autoscaler API endpoints
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__

logger = logging.getLogger(__name__)


# Pydantic models for request/response
class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, description="Replica count to apply on the next cycle")
    reason: Optional[str] = None


class RolloutRequest(BaseModel):
    revision: str = Field(..., min_length=1, description="Revision to roll the workload over to")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class APIServer:
    """FastAPI server exposing loop status and operator overrides"""

    def __init__(self, service):
        """
        Initialize API server

        Args:
            service: AutoscalerService owning the control loops
        """
        self.service = service
        self.app = FastAPI(
            title="Replica Autoscaler API",
            description="Status and manual overrides for replica autoscaling loops",
            version=__version__
        )
        self._server: Optional[uvicorn.Server] = None
        self._setup_routes()

    def _get_loop(self, namespace: str, name: str):
        loop = self.service.loops.get(f"{namespace}/{name}")
        if loop is None:
            raise HTTPException(status_code=404, detail=f"Replica set {namespace}/{name} not found")
        return loop

    def _setup_routes(self):
        """Setup API routes"""

        @self.app.get("/")
        async def root():
            return {
                "service": "Replica Autoscaler",
                "version": __version__,
                "timestamp": _now()
            }

        @self.app.get("/health")
        async def health_check():
            healthy = self.service.is_healthy()
            return JSONResponse(
                content={
                    "status": "healthy" if healthy else "unhealthy",
                    "loops": {name: loop.running for name, loop in self.service.loops.items()},
                    "timestamp": _now()
                },
                status_code=200 if healthy else 503
            )

        @self.app.get("/status")
        async def get_status() -> Dict[str, Any]:
            return self.service.get_status()

        @self.app.get("/config")
        async def get_config() -> Dict[str, Any]:
            return self.service.settings.get_config_dict()

        @self.app.get("/replicasets/{namespace}/{name}")
        async def get_replica_set(namespace: str, name: str) -> Dict[str, Any]:
            return self._get_loop(namespace, name).get_status()

        @self.app.post("/replicasets/{namespace}/{name}/scale", status_code=202)
        async def manual_scale(namespace: str, name: str, request: ScaleRequest):
            """Queue a manual override applied on the next cycle"""
            loop = self._get_loop(namespace, name)
            try:
                loop.manual_override(request.replicas, request.reason or "")
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            logger.info(f"Manual scale of {loop.name} to {request.replicas} requested via API")
            return {
                "replica_set": loop.name,
                "pending_override": request.replicas,
                "timestamp": _now()
            }

        @self.app.post("/replicasets/{namespace}/{name}/rollout", status_code=202)
        async def rollout(namespace: str, name: str, request: RolloutRequest):
            """Queue a rolling update applied on the next cycle"""
            loop = self._get_loop(namespace, name)
            loop.request_rollout(request.revision)
            return {
                "replica_set": loop.name,
                "pending_rollout": request.revision,
                "timestamp": _now()
            }

    def run(self, host: str = "0.0.0.0", port: int = 8080):
        """Serve the API; blocks until ``shutdown`` is called"""
        config = uvicorn.Config(self.app, host=host, port=port, log_level="warning")
        self._server = uvicorn.Server(config)
        logger.info(f"API server listening on {host}:{port}")
        self._server.run()

    def shutdown(self):
        if self._server is not None:
            self._server.should_exit = True
