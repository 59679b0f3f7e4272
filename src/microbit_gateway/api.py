"""HTTP API for listing devices and sending them commands."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .config import Config
from .gateway import Gateway
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .sender import SendStatus


class CommandRequest(BaseModel):
    """Payload for sending a command to a device."""

    command: str = Field(default="", description="Text forwarded to the device")


class DeviceOut(BaseModel):
    """Device response model."""

    id: str
    customId: Optional[str]
    name: str
    connected: bool
    lastSeen: int
    sensorData: Dict[str, str]


class CommandOut(BaseModel):
    """Result of a command that the transport accepted."""

    id: str
    status: str
    success: bool
    payload: Optional[str]
    peerAcknowledged: Optional[bool]


_STATUS_CODES = {
    SendStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    SendStatus.NOT_CONNECTED: status.HTTP_409_CONFLICT,
    SendStatus.NO_WRITE_CHANNEL: status.HTTP_409_CONFLICT,
    SendStatus.INVALID_COMMAND: status.HTTP_400_BAD_REQUEST,
    SendStatus.TRANSPORT_ERROR: status.HTTP_502_BAD_GATEWAY,
}


def create_app(config: Config, gateway: Gateway) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("gateway.api")
    request_logger = get_logger("gateway.api.middleware")
    app = FastAPI(
        title="micro:bit BLE Gateway API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error")
            response = JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error"},
            )
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(
            request.method,
            path_template,
            response.status_code,
            duration_seconds,
        )
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        subsystems = gateway.health.snapshot()
        overall = "ok" if all(s["status"] == "ok" for s in subsystems.values()) else "degraded"
        return {"status": overall, "subsystems": subsystems}

    @app.get("/status")
    async def status_() -> Dict[str, Any]:
        return gateway.status()

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/api/devices", response_model=Dict[str, DeviceOut])
    async def list_devices() -> Dict[str, Any]:
        return gateway.list_devices()

    @app.post("/api/devices/{device_id}/command", response_model=CommandOut)
    async def send_command(device_id: str, payload: CommandRequest) -> Dict[str, Any]:
        result = await gateway.send_command(device_id, payload.command)
        if not result.ok:
            raise HTTPException(
                status_code=_STATUS_CODES[result.status],
                detail={"status": result.status.value, "error": result.error},
            )
        return result.as_dict()

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, gateway: Gateway) -> None:
        self.config = config
        self.gateway = gateway
        self.logger = get_logger("gateway.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[Any] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.gateway)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
