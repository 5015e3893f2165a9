"""HTTP and WebSocket API for the reminder engine."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.websockets import WebSocketState

from nudge.app.engine_app import EngineApp
from nudge.errors import ParseFailure, ReminderNotFound
from nudge.models.reminder import DismissMethod, PushKeys, Reminder, ReminderPatch
from nudge.utils.logger import log_debug, log_error, log_info


class CamelModel(BaseModel):
    """Accepts both snake_case and the camelCase names browsers send."""
    model_config = ConfigDict(populate_by_name=True)


class CreateReminderRequest(CamelModel):
    text: str = Field(..., description="Sentence to parse, or the bare task when due_at is given")
    due_at: Optional[datetime] = Field(default=None, alias="dueAt")
    voice_enabled: bool = Field(default=True, alias="voiceEnabled")
    repeat_count: Optional[int] = Field(default=None, alias="repeatCount")


class UpdateReminderRequest(CamelModel):
    text: Optional[str] = None
    due_at: Optional[datetime] = Field(default=None, alias="dueAt")
    voice_enabled: Optional[bool] = Field(default=None, alias="voiceEnabled")
    repeat_count: Optional[int] = Field(default=None, alias="repeatCount")


class DismissRequest(BaseModel):
    method: DismissMethod = DismissMethod.MANUAL


class SnoozeRequest(BaseModel):
    minutes: Optional[int] = Field(default=None, description="Defaults to the configured snooze length")


class PushSubscribeRequest(CamelModel):
    endpoint: str
    keys: PushKeys
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class PushUnsubscribeRequest(BaseModel):
    endpoint: str


class PushActionRequest(CamelModel):
    reminder_id: str = Field(..., alias="reminderId")
    action: str = Field(..., description="dismiss or snooze")


class ReminderList(BaseModel):
    reminders: List[Reminder]
    count: int


class NotificationBatch(BaseModel):
    notifications: List[Dict[str, Any]]


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the registry's live connection interface.

    Sends are serialized; the socket counts as alive while it is connected and
    the client has spoken within ``heartbeat_timeout`` seconds.
    """

    def __init__(self, websocket: WebSocket, heartbeat_timeout: float):
        self.websocket = websocket
        self.heartbeat_timeout = heartbeat_timeout
        self.last_seen = time.monotonic()
        self._send_lock = asyncio.Lock()

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def is_alive(self) -> bool:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return False
        return time.monotonic() - self.last_seen < self.heartbeat_timeout

    async def send_json(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def close(self, code: int = status.WS_1001_GOING_AWAY) -> None:
        async with self._send_lock:
            if self.websocket.application_state == WebSocketState.CONNECTED:
                await self.websocket.close(code=code)


async def _heartbeat(engine: EngineApp, connection: WebSocketConnection, client_id: str) -> None:
    """Send periodic heartbeats and close the socket once the client goes quiet.

    Clients answer with any message (``pong`` is accepted silently).
    """
    interval = connection.heartbeat_timeout / 2
    try:
        while True:
            await asyncio.sleep(interval)
            if not connection.is_alive():
                log_info(f"Closing silent live client {client_id}", component="api")
                engine.reminder_service.unregister_live_client(client_id)
                await connection.close()
                return
            await connection.send_json({"type": "heartbeat", "timestamp": _timestamp()})
    except (RuntimeError, WebSocketDisconnect) as exc:
        log_debug(f"Heartbeat for {client_id} stopped: {exc!r}", component="api")


def get_engine(app: FastAPI) -> EngineApp:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise RuntimeError("Engine instance is not configured on the application state")
    return engine


def _timestamp() -> str:
    return datetime.now().isoformat()


def create_app(engine_instance: EngineApp | None = None) -> FastAPI:
    engine = engine_instance or EngineApp()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine
        await engine.startup()
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(
        title="Nudge Reminder API",
        version="1.0.0",
        description="REST and WebSocket API for natural-language reminders.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ParseFailure)
    async def parse_failure_handler(request: Request, exc: ParseFailure) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc), "reason": exc.reason, "input": exc.text},
        )

    @app.exception_handler(ReminderNotFound)
    async def not_found_handler(request: Request, exc: ReminderNotFound) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_input_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Invalid request", "errors": exc.errors()},
        )

    def service():
        return get_engine(app).reminder_service

    # Reminders

    @app.post("/reminders", response_model=Reminder, status_code=status.HTTP_201_CREATED)
    async def create_reminder_endpoint(payload: CreateReminderRequest) -> Reminder:
        return await service().create_reminder(
            payload.text,
            due_at=payload.due_at,
            voice_enabled=payload.voice_enabled,
            repeat_count=payload.repeat_count,
        )

    @app.get("/reminders", response_model=ReminderList)
    async def list_reminders_endpoint(filter: str = Query(default="all")) -> ReminderList:
        reminders = await service().list_reminders(filter)
        return ReminderList(reminders=reminders, count=len(reminders))

    @app.get("/reminders/{reminder_id}", response_model=Reminder)
    async def get_reminder_endpoint(reminder_id: str) -> Reminder:
        return await service().get_reminder(reminder_id)

    @app.put("/reminders/{reminder_id}", response_model=Reminder)
    async def update_reminder_endpoint(reminder_id: str, payload: UpdateReminderRequest) -> Reminder:
        patch = ReminderPatch(**payload.model_dump(exclude_unset=True))
        return await service().update_reminder(reminder_id, patch)

    @app.put("/reminders/{reminder_id}/dismiss", response_model=Reminder)
    async def dismiss_reminder_endpoint(reminder_id: str, payload: Optional[DismissRequest] = None) -> Reminder:
        method = payload.method if payload else DismissMethod.MANUAL
        return await service().dismiss_reminder(reminder_id, method)

    @app.put("/reminders/{reminder_id}/snooze", response_model=Reminder)
    async def snooze_reminder_endpoint(reminder_id: str, payload: Optional[SnoozeRequest] = None) -> Reminder:
        return await service().snooze_reminder(reminder_id, payload.minutes if payload else None)

    @app.delete("/reminders/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_reminder_endpoint(reminder_id: str) -> None:
        if not await service().delete_reminder(reminder_id):
            raise ReminderNotFound(reminder_id)

    # Push subscriptions

    @app.get("/push/vapid-public-key")
    async def vapid_public_key_endpoint() -> Dict[str, Any]:
        key = get_engine(app).config.push.vapid_public_key
        if not key:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                                detail="Push notifications are not configured")
        return {"publicKey": key}

    @app.post("/push/subscribe", status_code=status.HTTP_201_CREATED)
    async def push_subscribe_endpoint(payload: PushSubscribeRequest, request: Request) -> Dict[str, Any]:
        user_agent = payload.user_agent or request.headers.get("user-agent", "unknown")
        subscription = await service().register_push_subscription(payload.endpoint, payload.keys, user_agent)
        return {"success": True, "endpoint": subscription.endpoint}

    @app.post("/push/unsubscribe")
    async def push_unsubscribe_endpoint(payload: PushUnsubscribeRequest) -> Dict[str, Any]:
        removed = await service().unregister_push_subscription(payload.endpoint)
        return {"success": removed}

    @app.post("/push/test")
    async def push_test_endpoint() -> Dict[str, Any]:
        result = await service().send_test_notification()
        return {"success": result["sent"] > 0, **result}

    @app.post("/push/action")
    async def push_action_endpoint(payload: PushActionRequest) -> Dict[str, Any]:
        reminder = await service().handle_push_action(payload.reminder_id, payload.action)
        return {"success": True, "action": payload.action, "reminder": reminder.model_dump(mode="json")}

    @app.get("/push/status")
    async def push_status_endpoint() -> Dict[str, Any]:
        push_status = await service().push_status()
        return {
            "enabled": push_status["enabled"],
            "configured": bool(get_engine(app).config.push.vapid_public_key),
            "activeSubscriptions": push_status["active_subscriptions"],
            "subscriptions": [
                {
                    "endpoint": subscription.endpoint,
                    "userAgent": subscription.user_agent,
                    "createdAt": subscription.created_at.isoformat(),
                    "isActive": subscription.is_active,
                }
                for subscription in push_status["subscriptions"]
            ],
        }

    # Monitoring

    @app.post("/monitor/check")
    async def monitor_check_endpoint() -> Dict[str, Any]:
        result = await service().check_now()
        return {"success": True, **result.to_dict(), "timestamp": _timestamp()}

    @app.get("/notifications", response_model=NotificationBatch)
    async def notifications_endpoint(limit: int = 20, flush: bool = True) -> NotificationBatch:
        notifications = await get_engine(app).get_notifications(limit=limit, flush=flush)
        return NotificationBatch(notifications=notifications)

    @app.get("/health")
    async def health_endpoint() -> Dict[str, Any]:
        return get_engine(app).snapshot()

    @app.get("/stats")
    async def stats_endpoint() -> Dict[str, Any]:
        return service().get_stats()

    # Live clients

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        running = get_engine(app)
        connection = WebSocketConnection(websocket, running.config.server.heartbeat_timeout_seconds)
        client_id = running.reminder_service.register_live_client(connection)
        heartbeat = asyncio.create_task(_heartbeat(running, connection, client_id))

        try:
            await connection.send_json({
                "type": "connection",
                "clientId": client_id,
                "message": "Connected to reminder service",
                "timestamp": _timestamp(),
            })

            while True:
                message = await websocket.receive_json()
                connection.touch()
                await _handle_client_message(running, connection, message)
        except WebSocketDisconnect:
            log_debug(f"Live client {client_id} disconnected", component="api")
        except Exception as exc:
            log_error(f"Live client {client_id} failed: {exc!r}", component="api")
        finally:
            heartbeat.cancel()
            running.reminder_service.unregister_live_client(client_id)

    log_info("API application created", component="api")
    return app


async def _handle_client_message(engine: EngineApp, connection: WebSocketConnection, message: Any) -> None:
    message_type = message.get("type") if isinstance(message, dict) else None

    if message_type == "ping":
        await connection.send_json({"type": "pong", "timestamp": _timestamp()})
    elif message_type == "pong":
        return
    elif message_type == "get_status":
        await connection.send_json({
            "type": "status",
            "data": engine.reminder_service.get_stats(),
            "timestamp": _timestamp(),
        })
    elif message_type == "manual_check":
        result = await engine.reminder_service.check_now()
        await connection.send_json({
            "type": "manual_check_complete",
            "data": result.to_dict(),
            "timestamp": _timestamp(),
        })
    else:
        await connection.send_json({
            "type": "error",
            "message": f"Unknown message type: {message_type}",
            "timestamp": _timestamp(),
        })


app = create_app()
