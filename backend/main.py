#!/usr/bin/env python3
"""
Raptor Backend - Container Orchestration Control Panel
Manages containers on remote daemons: network allocations, lifecycle
commands, and log/metrics streaming.

IMPORTANT: Lifecycle State
--------------------------
The panel's container state is authoritative and only changes through the
LifecycleManager (command outcomes and daemon reports). Commands return the
state at acceptance time, e.g. `starting`; the confirmed state follows.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from allocations.routes import router as allocations_router
from config.paths import ensure_data_dirs
from config.settings import AppConfig, setup_logging, HealthCheckFilter
from containers.routes import router as containers_router
from control_plane import ControlPlane, build_control_plane
from daemons.routes import router as daemons_router
from database import get_database_manager
from errors import OrchestrationError
from event_bus import get_event_bus
from streaming.channel import LOGS

logger = logging.getLogger(__name__)


def create_app(control_plane: Optional[ControlPlane] = None, health_loop: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        control_plane: Prebuilt services (tests); built from AppConfig when omitted
        health_loop: Run the background daemon health loop
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle"""
        # Validate configuration early to fail fast on misconfiguration
        AppConfig.validate()

        plane = control_plane
        if plane is None:
            ensure_data_dirs()
            setup_logging()
            plane = build_control_plane(get_database_manager(AppConfig.DATABASE_URL), event_bus=get_event_bus())

        # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
        logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

        logger.info("Starting Raptor backend...")
        app.state.control_plane = plane
        await plane.start(health_loop=health_loop)

        yield

        logger.info("Shutting down Raptor backend...")
        try:
            await plane.stop()
        except Exception as e:
            logger.error(f"Error stopping control plane: {e}", exc_info=True)

        if control_plane is None:
            # Dispose SQLAlchemy engine (run in thread pool to avoid blocking event loop)
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, plane.db.dispose)
                logger.info("SQLAlchemy engine disposed")
            except Exception as e:
                logger.error(f"Error disposing database engine: {e}")

    app = FastAPI(title="Raptor API", version="1.0.0", lifespan=lifespan)

    @app.exception_handler(OrchestrationError)
    async def orchestration_exception_handler(request: Request, exc: OrchestrationError):
        """Every rejected command returns its error kind and a human-readable detail"""
        if exc.http_status >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.kind}: {exc.detail}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """
        Custom handler for Pydantic validation errors.
        Returns user-friendly error messages with field-level details.
        """
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(x) for x in error['loc'])
            errors.append({
                "field": field,
                "message": error['msg'],
                "type": error['type']
            })

        logger.warning(f"Validation failed for {request.url.path}: {errors}")

        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationFailed",
                "detail": "Invalid request data",
                "errors": errors
            }
        )

    app.include_router(daemons_router)
    app.include_router(allocations_router)
    app.include_router(containers_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.websocket("/ws/containers/{container_id}/{kind}")
    async def container_stream(websocket: WebSocket, container_id: str, kind: str):
        """
        Attach to a container's log or stats stream.

        Frames from the daemon are relayed as text. On the logs stream, text
        sent by the client is console input, accepted only while the
        container runs. The socket closes when the stream ends for good.
        """
        plane: ControlPlane = websocket.app.state.control_plane
        await websocket.accept()

        try:
            queue = await plane.multiplexer.attach(container_id, kind)
        except OrchestrationError as e:
            await websocket.send_json(e.to_dict())
            await websocket.close(code=1008, reason=e.kind)
            return

        async def relay():
            while True:
                data = await queue.get()
                if data is None:
                    await websocket.close(code=1000)
                    return
                await websocket.send_text(data)

        async def console():
            while True:
                text = await websocket.receive_text()
                if kind != LOGS:
                    continue
                try:
                    await plane.multiplexer.send_input(container_id, text)
                except OrchestrationError as e:
                    await websocket.send_json(e.to_dict())

        tasks = {asyncio.create_task(relay()), asyncio.create_task(console())}
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    logger.error(f"Stream socket error for container {container_id[:8]}: {error}")
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await plane.multiplexer.detach(container_id, kind, queue)
            logger.debug(f"{kind} consumer detached from container {container_id[:8]}")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=AppConfig.HOST, port=AppConfig.PORT, log_level=AppConfig.LOG_LEVEL.lower())
