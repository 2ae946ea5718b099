"""
Health Check HTTP Server for the ZIG DEX Indexer Worker

Provides HTTP endpoints for health monitoring, compatible with Kubernetes
liveness and readiness probes.
"""

from datetime import datetime, timezone
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
import uvicorn
import structlog


logger = structlog.get_logger()


class HealthServer:
    """HTTP server for health checks and monitoring.

    ``worker`` is anything exposing ``is_running`` and an async
    ``health_check()`` returning a dict with a ``status`` key.
    """

    def __init__(self, worker, port: int = 8080):
        self.worker = worker
        self.port = port
        self.app = FastAPI(
            title="ZIG DEX Indexer Health API",
            description="Health check endpoints",
            version="1.0.0"
        )
        self._setup_routes()

    def _setup_routes(self):
        """Setup HTTP routes."""

        @self.app.get("/health", response_class=JSONResponse)
        async def health_check():
            """Main health check endpoint."""
            try:
                health_status = await self.worker.health_check()
                status_code = 200 if health_status.get("status") == "healthy" else 503
                return JSONResponse(content=health_status, status_code=status_code)
            except Exception as e:
                logger.error("Health check failed", error=str(e))
                raise HTTPException(
                    status_code=503,
                    detail={"status": "unhealthy", "error": str(e)}
                )

        @self.app.get("/health/live", response_class=JSONResponse)
        async def liveness_probe():
            """Kubernetes liveness probe endpoint."""
            if self.worker.is_running:
                return JSONResponse(
                    content={"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()},
                    status_code=200
                )
            return JSONResponse(content={"status": "not_running"}, status_code=503)

        @self.app.get("/health/ready", response_class=JSONResponse)
        async def readiness_probe():
            """Ready once storage and cache answer; RPC lag does not block readiness."""
            try:
                health_status = await self.worker.health_check()
            except Exception as e:
                logger.error("Readiness probe failed", error=str(e))
                raise HTTPException(status_code=503, detail=str(e))

            components = health_status.get("components", {})
            required = ("mongodb", "redis")
            if all(components.get(name, {}).get("status") == "healthy" for name in required):
                return JSONResponse(content={"status": "ready"}, status_code=200)
            return JSONResponse(
                content={"status": "not_ready", "components": components},
                status_code=503
            )

        @self.app.get("/", response_class=JSONResponse)
        async def root():
            """Root endpoint with basic info."""
            return JSONResponse(content={
                "service": "ZIG DEX Indexer Worker",
                "version": "1.0.0",
                "status": "running" if self.worker.is_running else "stopped",
                "endpoints": {
                    "health": "/health",
                    "liveness": "/health/live",
                    "readiness": "/health/ready"
                }
            })

    async def start(self):
        """Start the health server."""
        config = uvicorn.Config(
            self.app,
            host="0.0.0.0",
            port=self.port,
            log_level="warning",
            access_log=False
        )
        server = uvicorn.Server(config)

        logger.info("Starting health server", port=self.port)
        await server.serve()
