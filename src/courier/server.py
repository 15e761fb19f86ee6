"""Courier HTTP API.

Endpoints::

    POST /tasks              create a task (dispatcher)
    GET  /tasks[/{id}]       list / fetch task records
    POST /process-task       worker endpoint called by the delivery queue
    POST /messages           publish a message
    GET  /messages[/{id}]    list / fetch message records
    GET  /task-types         action catalogue
    GET  /stream/{view}      Server-Sent Events snapshots (``tasks`` or ``messages``)
    WS   /ws/{view}          same snapshots as JSON frames
    GET  /healthz, /metrics

Run with ``uvicorn --factory courier.server:create_app`` or ``courier serve``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from courier.actions import ACTIONS
from courier.config import Settings
from courier.errors import InvalidInputError, NotFoundError, register_error_handlers
from courier.log import configure_logging
from courier.metrics import get_collector
from courier.models import (
    CreateTaskRequest,
    ListMessagesResponse,
    ListTasksResponse,
    ProcessTaskRequest,
    PublishMessageRequest,
)
from courier.projection import VIEWS, Subscription, View
from courier.services import (
    Services,
    TransportRunner,
    build_delivery_agent,
    build_services,
    build_subscribers,
)
from courier.transport import HEADER_QUEUE_NAME, HEADER_TASK_NAME

logger = logging.getLogger(__name__)

_LIST_LIMIT = 50
_MAX_LIST_LIMIT = 500

router = APIRouter()


def _services(request: Request | WebSocket) -> Services:
    return request.app.state.services


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _view(name: str) -> View:
    view = VIEWS.get(name)
    if view is None:
        raise NotFoundError(f"Unknown view: {name}", details={"views": sorted(VIEWS)})
    return view


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post("/tasks")
async def create_task(body: CreateTaskRequest, request: Request) -> dict[str, Any]:
    response = await _services(request).dispatcher.create_task(
        body.action, body.data, body.schedule_delay_seconds
    )
    return _dump(response)


@router.get("/tasks")
async def list_tasks(
    request: Request,
    limit: int = Query(_LIST_LIMIT, ge=1, le=_MAX_LIST_LIMIT),
) -> dict[str, Any]:
    tasks = await _services(request).tasks.list_recent(limit)
    return _dump(ListTasksResponse(tasks=tasks))


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request) -> dict[str, Any]:
    record = await _services(request).tasks.require(task_id)
    return {"success": True, "task": _dump(record)}


@router.post("/process-task")
async def process_task(body: ProcessTaskRequest, request: Request) -> dict[str, Any]:
    """Worker endpoint. Non-2xx responses make the delivery queue retry."""
    if not body.task_id or not body.action:
        raise InvalidInputError("Missing taskId or action")
    task_name = request.headers.get(HEADER_TASK_NAME)
    queue_name = request.headers.get(HEADER_QUEUE_NAME)
    if not task_name or not queue_name:
        logger.warning("process-task called without delivery headers (taskId=%s)", body.task_id)
    else:
        logger.info("Delivery %s from queue %s", task_name, queue_name)
    response = await _services(request).worker.process_task(body.task_id, body.action, body.data)
    return _dump(response)


@router.get("/task-types")
async def task_types() -> dict[str, Any]:
    return {"success": True, "taskTypes": [spec.to_dict() for spec in ACTIONS.values()]}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.post("/messages")
async def publish_message(body: PublishMessageRequest, request: Request) -> dict[str, Any]:
    response = await _services(request).publisher.publish(
        body.topic, body.message, body.attributes
    )
    return _dump(response)


@router.get("/messages")
async def list_messages(
    request: Request,
    limit: int = Query(_LIST_LIMIT, ge=1, le=_MAX_LIST_LIMIT),
) -> dict[str, Any]:
    messages = await _services(request).messages.list_recent(limit)
    return _dump(ListMessagesResponse(messages=messages))


@router.get("/messages/{message_id}")
async def get_message(message_id: str, request: Request) -> dict[str, Any]:
    record = await _services(request).messages.require(message_id)
    return {"success": True, "message": _dump(record)}


# ---------------------------------------------------------------------------
# Realtime views
# ---------------------------------------------------------------------------


async def sse_snapshots(subscription: Subscription) -> AsyncIterator[str]:
    """Format each snapshot from *subscription* as one SSE ``data:`` event."""
    try:
        async for snapshot in subscription:
            yield f"data: {json.dumps(snapshot)}\n\n"
    finally:
        subscription.unsubscribe()


@router.get("/stream/{view_name}")
async def stream_view(
    view_name: str,
    request: Request,
    limit: int | None = Query(None, ge=1, le=_MAX_LIST_LIMIT),
    order_by: str | None = Query(None),
) -> StreamingResponse:
    view = _view(view_name)
    subscription = _services(request).projection.subscribe(
        view.collection, limit or view.default_limit, order_by or view.order_field
    )
    return StreamingResponse(sse_snapshots(subscription), media_type="text/event-stream")


@router.websocket("/ws/{view_name}")
async def ws_view(websocket: WebSocket, view_name: str) -> None:
    """Push a JSON snapshot frame on every change until the client disconnects."""
    await websocket.accept()
    view = VIEWS.get(view_name)
    if view is None:
        await websocket.send_json({"error": f"Unknown view: {view_name}"})
        await websocket.close(code=1008)
        return

    try:
        limit = int(websocket.query_params.get("limit", view.default_limit))
    except ValueError:
        limit = view.default_limit
    order_by = websocket.query_params.get("order_by") or view.order_field
    subscription = _services(websocket).projection.subscribe(
        view.collection, max(1, limit), order_by
    )

    async def pump() -> None:
        async for snapshot in subscription:
            await websocket.send_json(snapshot)

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except WebSocketDisconnect:
        pass
    finally:
        subscription.unsubscribe()
        pump_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await pump_task


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.get("/healthz")
async def healthz(request: Request) -> JSONResponse:
    try:
        await _services(request).documents.ping()
    except Exception as exc:
        logger.warning("Health check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "unavailable", "redis": str(exc)})
    return JSONResponse(content={"status": "ok", "redis": "ok"})


@router.get("/metrics")
async def metrics() -> dict[str, Any]:
    return get_collector().get_snapshot()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, *, services: Services | None = None) -> FastAPI:
    """Create the Courier API.

    Args:
        settings: Configuration; defaults to :meth:`Settings.from_env`.
        services: Pre-built, already connected services. When omitted the
            app builds and connects its own in the lifespan.
    """
    if settings is None:
        settings = services.settings if services is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        if owned:
            configure_logging(settings.log_level, settings.log_format)
            svc = build_services(settings)
            await svc.connect()
            app.state.services = svc
        svc = app.state.services

        runner: TransportRunner | None = None
        if settings.embedded_transports:
            runner = TransportRunner(build_delivery_agent(svc), build_subscribers(svc))
            await runner.start()
        logger.info("Courier API ready (queue=%s)", settings.queue_name)
        try:
            yield
        finally:
            if runner is not None:
                await runner.stop()
            if owned:
                await svc.disconnect()

    app = FastAPI(title="Courier", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    if services is not None:
        app.state.services = services
    register_error_handlers(app)
    app.include_router(router)
    return app
