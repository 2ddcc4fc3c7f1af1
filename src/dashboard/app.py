"""FastAPI application exposing the results engine to the dashboard."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from engine.config import EnginePolicy, load_policy
from engine.service import ResultsEngine
from notifications import ObserverRegistry, SystemNotice
from results import (
    Actor,
    ConflictError,
    EngineError,
    NotFoundError,
    PermissionDeniedError,
    Role,
    StateError,
    ValidationError,
    utcnow,
)
from verification import Action

__all__ = ["STATUS_ACTIONS", "create_app"]

LOGGER = logging.getLogger(__name__)

STATUS_ACTIONS = {
    "verified": Action.VERIFY,
    "flagged": Action.FLAG,
    "rejected": Action.REJECT,
}

_STATUS_CODES = (
    (ValidationError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StateError, 409),
)


class StatusPayload(BaseModel):
    status: str
    reason: Optional[str] = None


class ResolvePayload(BaseModel):
    approved_result_id: str = Field(min_length=1)
    reason: str = ""


class NoticePayload(BaseModel):
    user_ids: List[str] = Field(min_length=1)
    message: str = Field(min_length=1)


def _actor(
    x_actor_id: str = Header(default="anonymous"),
    x_actor_role: str = Header(default=Role.AGENT.value),
) -> Actor:
    try:
        role = Role(x_actor_role.strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unknown role {x_actor_role!r}.", role=x_actor_role) from exc
    return Actor(id=x_actor_id.strip() or "anonymous", role=role)


def _status_code(exc: EngineError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 400


def create_app(
    db_path: Path | str = Path("data/results.db"),
    *,
    policy: Optional[EnginePolicy] = None,
    admin_ids: Iterable[str] = (),
    registered_centers: Optional[int] = None,
) -> FastAPI:
    """Return a configured FastAPI application for the dashboard."""

    registry = ObserverRegistry()
    configured_admins = tuple(admin_ids)

    def current_admins() -> List[str]:
        connected = [
            observer.user_id
            for observer in registry.snapshot()
            if observer.role == Role.ADMIN.value and observer.user_id
        ]
        return [*configured_admins, *connected]

    engine = ResultsEngine(
        db_path,
        policy=policy or load_policy(),
        registry=registry,
        admin_ids=current_admins,
        registered_centers=registered_centers,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        engine.close()

    app = FastAPI(title="Election Results Console", lifespan=lifespan)
    app.state.engine = engine

    @app.exception_handler(EngineError)
    async def engine_error(request: Request, exc: EngineError) -> JSONResponse:
        code = _status_code(exc)
        LOGGER.info("%s %s -> %d: %s", request.method, request.url.path, code, exc.message)
        return JSONResponse(exc.as_dict(), status_code=code)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    @app.post("/api/results", status_code=201)
    def submit_result(
        payload: Dict[str, Any] = Body(...),
        actor: Actor = Depends(_actor),
    ) -> Dict[str, Any]:
        return engine.submit_result(payload, actor).dict()

    @app.get("/api/results")
    def list_results(
        status: Optional[str] = None,
        source: Optional[str] = None,
        category: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        try:
            results = engine.list_results(status=status, source=source, category=category)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return [result.dict() for result in results]

    @app.get("/api/results/{result_id}")
    def get_result(result_id: str) -> Dict[str, Any]:
        return engine.get_result(result_id).dict()

    @app.get("/api/results/{result_id}/audit")
    def audit_trail(result_id: str) -> List[Dict[str, Any]]:
        return [asdict(entry) for entry in engine.audit_trail(result_id)]

    @app.patch("/api/results/{result_id}/status")
    def update_status(
        result_id: str,
        payload: StatusPayload,
        actor: Actor = Depends(_actor),
    ) -> Dict[str, Any]:
        action = STATUS_ACTIONS.get(payload.status.strip().lower())
        if action is None:
            raise ValidationError(
                f"Unsupported status {payload.status!r}.",
                allowed=sorted(STATUS_ACTIONS),
            )
        return engine.transition(result_id, actor, action, payload.reason).dict()

    # ------------------------------------------------------------------
    # Duplicate groups
    # ------------------------------------------------------------------
    @app.get("/api/duplicate-results")
    def duplicate_groups() -> List[Dict[str, Any]]:
        groups = engine.list_duplicate_groups()
        return [engine.describe_group(group_id) for group_id in sorted(groups)]

    @app.get("/api/duplicate-results/{group_id}")
    def duplicate_group(group_id: str) -> Dict[str, Any]:
        return engine.describe_group(group_id)

    @app.post("/api/duplicate-results/{group_id}/resolve")
    def resolve_group(
        group_id: str,
        payload: ResolvePayload,
        actor: Actor = Depends(_actor),
    ) -> Dict[str, Any]:
        engine.resolve_group(group_id, actor, payload.approved_result_id, payload.reason)
        return engine.describe_group(group_id)

    # ------------------------------------------------------------------
    # Reconciliation and analytics
    # ------------------------------------------------------------------
    @app.get("/api/comparison")
    def comparison(
        category: Optional[str] = None,
        constituency: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            rows = engine.compare(category, constituency)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return {
            "rows": [row.as_dict() for row in rows],
            "summary": engine.comparator.summarize(rows),
        }

    @app.get("/api/analytics")
    def analytics() -> Dict[str, Any]:
        return engine.analytics()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    @app.get("/api/notifications")
    def list_notifications(
        limit: Optional[int] = Query(default=None, ge=1),
        unread_only: bool = False,
        actor: Actor = Depends(_actor),
    ) -> Dict[str, Any]:
        notifications = engine.list_notifications(actor.id, limit=limit, unread_only=unread_only)
        return {
            "notifications": [notification.dict() for notification in notifications],
            "unread_count": engine.unread_count(actor.id),
        }

    @app.post("/api/notifications/{notification_id}/read")
    def mark_read(notification_id: str, actor: Actor = Depends(_actor)) -> Dict[str, Any]:
        if not engine.mark_read(notification_id, actor.id):
            raise NotFoundError(
                f"Notification {notification_id} not found.",
                entity="notification",
                notification_id=notification_id,
            )
        return {"id": notification_id, "is_read": True}

    @app.post("/api/notifications/read-all")
    def mark_all_read(actor: Actor = Depends(_actor)) -> Dict[str, Any]:
        return {"updated": engine.mark_all_read(actor.id)}

    @app.delete("/api/notifications/{notification_id}")
    def delete_notification(notification_id: str, actor: Actor = Depends(_actor)) -> Dict[str, Any]:
        if not engine.delete_notification(notification_id, actor.id):
            raise NotFoundError(
                f"Notification {notification_id} not found.",
                entity="notification",
                notification_id=notification_id,
            )
        return {"id": notification_id, "deleted": True}

    @app.post("/api/notifications/system", status_code=202)
    def system_notice(payload: NoticePayload, actor: Actor = Depends(_actor)) -> Dict[str, Any]:
        if actor.role is not Role.ADMIN:
            raise PermissionDeniedError(
                "Only administrators can send system notices.",
                actor_id=actor.id,
                role=actor.role.value,
            )
        engine.publish(SystemNotice(user_ids=tuple(payload.user_ids), message=payload.message))
        return {"recipients": len(payload.user_ids)}

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------
    @app.websocket("/ws")
    async def live_updates(
        websocket: WebSocket,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        await websocket.accept()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def send(message: Dict[str, Any]) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, message)

        with registry.connection(send, user_id=user_id, role=role) as connection_id:
            await websocket.send_json(
                {"type": "connected", "data": {"connection_id": connection_id}, "timestamp": utcnow()}
            )
            closed = asyncio.ensure_future(_wait_for_close(websocket))
            try:
                while True:
                    pending = asyncio.ensure_future(queue.get())
                    done, _ = await asyncio.wait({pending, closed}, return_when=asyncio.FIRST_COMPLETED)
                    if pending not in done:
                        pending.cancel()
                        break
                    await websocket.send_json(pending.result())
            except WebSocketDisconnect:
                LOGGER.debug("Observer %s went away mid-push", connection_id)
            finally:
                closed.cancel()

    return app


async def _wait_for_close(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return
