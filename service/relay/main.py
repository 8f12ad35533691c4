"""FastAPI entry-point for the WhatsApp relay."""
from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import psutil
import uvicorn
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis import exceptions as redis_ex

from .config import Settings, get_settings
from .dispatch.queue import DispatchQueue
from .dispatch.worker import WorkerPool, build_pool
from .errors import AuthenticationError, RelayError
from .logging_config import configure_logging
from .session_controller import SessionController
from .status import describe

logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    number: Optional[str] = None
    message: Optional[str] = None


def _error(status_code: int, code: str, description: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "code": code, "description": description},
    )


def _log_unhandled_async_error(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("Unhandled async error: %s", context.get("message"), exc_info=exc)


def create_app(
    *,
    settings: Optional[Settings] = None,
    controller: Optional[SessionController] = None,
    queue: Optional[DispatchQueue] = None,
    pool: Optional[WorkerPool] = None,
    start_workers: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    controller = controller or SessionController(settings=settings)
    queue = queue or DispatchQueue.from_settings(settings)
    pool = pool or build_pool(queue, controller, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.log_directory, settings.log_retention_days)
        asyncio.get_running_loop().set_exception_handler(_log_unhandled_async_error)

        # Session bring-up launches a browser; it must not hold up the HTTP surface.
        init_task = asyncio.create_task(controller.initialize(), name="session-initialize")
        try:
            if start_workers:
                await pool.start()
            logger.info("Application started successfully")
        except Exception as e:
            logger.exception("Failed to start dispatch workers: %s", e)
            logger.error("Application startup degraded - queued messages will wait")

        try:
            yield
        finally:
            try:
                await pool.stop()
                await controller.stop()
                if not init_task.done():
                    init_task.cancel()
                    try:
                        await init_task
                    except asyncio.CancelledError:
                        pass
                await queue.aclose()
                logger.info("Application shutdown complete")
            except Exception as e:
                logger.exception("Error during shutdown: %s", e)

    app = FastAPI(title="whatsapp-relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = controller
    app.state.queue = queue
    app.state.pool = pool

    def require_api_key(request: Request) -> None:
        header = request.headers.get("authorization")
        if not header:
            raise AuthenticationError("Missing authentication token.")
        token = header.split(" ", 1)[1] if " " in header else ""
        if not secrets.compare_digest(token, settings.api_key):
            raise AuthenticationError("Invalid authentication token.")

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc)
        return _error(exc.http_status, exc.code, exc.description)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
        return _error(status.HTTP_400_BAD_REQUEST, "validation_error", "Malformed request body.")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all so callers never see a stack trace."""
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "Internal server error.")

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        memory = psutil.Process().memory_info()
        return JSONResponse({
            "status": "ok",
            "phase": controller.phase.value,
            "workers_running": pool.running,
            "memory_rss_mb": round(memory.rss / (1024 * 1024), 1),
        })

    @app.get("/status", dependencies=[Depends(require_api_key)])
    async def connection_status() -> JSONResponse:
        current = controller.status()
        return JSONResponse({
            "status": "success",
            "connectionStatus": current.value,
            "description": describe(current),
        })

    @app.get("/qrcode", dependencies=[Depends(require_api_key)])
    async def qrcode_image() -> JSONResponse:
        qr = await controller.get_qr_code()
        return JSONResponse({
            "status": "success",
            "qrCode": qr.encoded,
            "qrCodeType": qr.encoding,
            "qrCodeRaw": qr.raw,
            "description": "QR code generated. Scan it with your phone.",
        })

    @app.post("/send-message", dependencies=[Depends(require_api_key)])
    async def send_message(payload: SendMessageRequest) -> JSONResponse:
        try:
            job_id = await queue.enqueue(payload.number, payload.message)
        except redis_ex.RedisError as e:
            logger.error("Failed to enqueue message: %s", e)
            return _error(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "queue_failure",
                f"Failed to add the message to the queue. Details: {e}",
            )
        return JSONResponse({
            "status": "success",
            "jobId": job_id,
            "description": "Message added to the send queue.",
        })

    @app.get("/jobs/failed", dependencies=[Depends(require_api_key)])
    async def failed_jobs(limit: int = 50) -> JSONResponse:
        jobs = await queue.dead_letters(limit)
        return JSONResponse({"status": "success", "jobs": [job.as_dict() for job in jobs]})

    @app.get("/jobs/{job_id}", dependencies=[Depends(require_api_key)])
    async def job_status(job_id: str) -> JSONResponse:
        job = await queue.get_job(job_id)
        if job is None:
            return _error(status.HTTP_404_NOT_FOUND, "job_not_found", f"Job {job_id} not found or already expired.")
        return JSONResponse({"status": "success", "job": job.as_dict()})

    @app.websocket("/ws/events")
    async def events_socket(ws: WebSocket) -> None:
        token = ws.query_params.get("token", "")
        if not secrets.compare_digest(token, settings.api_key):
            await ws.close(code=4401)
            return

        await ws.accept()
        events = controller.register_ui()

        async def forward() -> None:
            while True:
                event = await events.get()
                payload: Dict[str, Any] = {
                    "type": event.type,
                    "phase": event.phase.value,
                    "data": event.data,
                }
                if event.error:
                    payload["error"] = event.error
                await ws.send_json(payload)

        forwarder = asyncio.create_task(forward(), name="ui-events-forward")
        try:
            # Inbound frames are ignored; reading only detects the client going away.
            while not forwarder.done():
                await ws.receive_text()
        except WebSocketDisconnect:
            logger.debug("UI websocket disconnected")
        finally:
            controller.unregister_ui(events)
            forwarder.cancel()
            try:
                await forwarder
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("WebSocket send failed (client disconnected): %s", e)

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("relay.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
