import json
import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect, status

from app.auth.deps import Principal, get_current_principal, require_admin
from app.core.config import settings
from app.core.limiter import limiter
from app.notifications.audience import AudienceResolver
from app.notifications.dispatcher import PushDispatcher
from app.notifications.hub import ConnectionHub, ConnectionSession
from app.notifications.models import UserRole
from app.notifications.orchestrator import DeliveryOrchestrator
from app.notifications.registry import EndpointRegistry
from app.notifications.schemas import (
    AdminPushTestRequest,
    DeliverySummary,
    DispatchRequest,
    MessageResponse,
    OnlineStatus,
    PushTokenRegister,
    PushTokenRemove,
    TargetSpec,
)

router = APIRouter(tags=["notifications"])

# Configure logging
logger = logging.getLogger(__name__)

NOTIFIABLE_ROLES = {role.value for role in UserRole}


# ── collaborators wired at startup (see app.main) ──────────────

def get_registry(request: Request) -> EndpointRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> DeliveryOrchestrator:
    return request.app.state.orchestrator


def get_dispatcher(request: Request) -> PushDispatcher:
    return request.app.state.dispatcher


def get_resolver(request: Request) -> AudienceResolver:
    return request.app.state.resolver


def get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub


def _require_notifiable(principal: Principal) -> UserRole:
    if principal.role not in NOTIFIABLE_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only teachers and students can manage push tokens",
        )
    return UserRole(principal.role)


# ── push endpoints ─────────────────────────────────────────────

@router.post("/push-token", response_model=MessageResponse)
@limiter.limit(settings.PUSH_TOKEN_RATE_LIMIT)
async def register_push_token(
    request: Request,
    payload: PushTokenRegister,
    principal: Annotated[Principal, Depends(get_current_principal)],
    registry: Annotated[EndpointRegistry, Depends(get_registry)],
):
    """Register (or replace) the push token of the caller's current device."""
    role = _require_notifiable(principal)
    await registry.register(principal.user_id, role, payload.token, payload.device_id)
    return MessageResponse(message="Push token registered successfully")


@router.delete("/push-token", response_model=MessageResponse)
async def remove_push_token(
    payload: PushTokenRemove,
    principal: Annotated[Principal, Depends(get_current_principal)],
    registry: Annotated[EndpointRegistry, Depends(get_registry)],
):
    role = _require_notifiable(principal)
    await registry.unregister(principal.user_id, role, payload.device_id)
    return MessageResponse(message="Push token removed successfully")


@router.post("/dispatch", response_model=DeliverySummary)
@limiter.limit(settings.DISPATCH_RATE_LIMIT)
async def dispatch_notification(
    request: Request,
    payload: DispatchRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    orchestrator: Annotated[DeliveryOrchestrator, Depends(get_orchestrator)],
):
    """
    Deliver one event to a target audience over push and realtime.

    Malformed targets answer 422 and unknown single users 404; delivery
    failures never fail the request and show up in the summary counts.
    """
    logger.info(f"Admin {admin.user_id} dispatching {payload.event.type} {payload.event.id}")
    return await orchestrator.dispatch_for_event(payload.event, payload.target)


@router.post("/admin/test-notification")
async def send_test_notification(
    payload: AdminPushTestRequest,
    admin: Annotated[Principal, Depends(require_admin)],
    resolver: Annotated[AudienceResolver, Depends(get_resolver)],
    dispatcher: Annotated[PushDispatcher, Depends(get_dispatcher)],
):
    """Push-only test send to every registered device of the chosen group."""
    tokens = await resolver.resolve_tokens(TargetSpec(kind=payload.target))
    if not tokens:
        return {"success": True, "message": "No push tokens registered for target", "sent": 0, "ok": 0, "errors": 0}

    receipts = await dispatcher.send_batch(tokens, payload.title, payload.body, {"type": "test"})
    ok = sum(1 for r in receipts if r.ok)
    logger.info(f"Admin {admin.user_id} sent test notification to {len(tokens)} devices")
    return {
        "success": True,
        "message": f"Test notification sent to {len(tokens)} devices",
        "sent": len(tokens),
        "ok": ok,
        "errors": len(receipts) - ok,
    }


# ── presence ───────────────────────────────────────────────────

@router.get("/online/{role}/{user_id}", response_model=OnlineStatus)
async def user_online_status(
    role: UserRole,
    user_id: str,
    principal: Annotated[Principal, Depends(get_current_principal)],
    hub: Annotated[ConnectionHub, Depends(get_hub)],
):
    return OnlineStatus(user_id=user_id, role=role.value, online=hub.is_online(user_id, role))


@router.get("/health")
async def notifications_health(hub: Annotated[ConnectionHub, Depends(get_hub)]):
    """Health check for the realtime notification service"""
    return {
        "status": "healthy",
        "active_connections": hub.connection_count,
        "authenticated_connections": len(hub.connected_users()),
        "push_enabled": settings.PUSH_ENABLED,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── realtime ───────────────────────────────────────────────────

def _room_from(data) -> str | None:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        return data.get("room")
    return None


async def _handle_client_event(hub: ConnectionHub, session: ConnectionSession, websocket: WebSocket, frame) -> None:
    if not isinstance(frame, dict):
        await websocket.send_json({"event": "error", "data": {"message": "Frames must be JSON objects"}})
        return

    event = frame.get("event")
    data = frame.get("data")

    if event == "authenticate":
        data = data if isinstance(data, dict) else {}
        await hub.authenticate(session, data.get("userId"), data.get("userType"), data.get("token"))
    elif event == "join-room":
        room = _room_from(data)
        if room:
            await hub.join_room(session, room)
    elif event == "leave-room":
        room = _room_from(data)
        if room:
            await hub.leave_room(session, room)
    elif event == "ping":
        await websocket.send_json({"event": "pong", "data": {"timestamp": datetime.now(timezone.utc).isoformat()}})
    else:
        await websocket.send_json({"event": "error", "data": {"message": f"Unknown event: {event}"}})


@router.websocket("/ws")
async def ws_notifications(websocket: WebSocket):
    """
    WebSocket endpoint for real-time notifications

    **Protocol:** JSON frames ``{"event": ..., "data": ...}``.

    Client events:
    - ``authenticate`` ``{"userId", "userType", "token"}``; answered by
      ``authenticated`` ``{"success": true, "room": "teacher:<id>"}`` or ``error``
    - ``join-room`` / ``leave-room`` ``"<room>"`` or ``{"room": "<room>"}``
    - ``ping``; answered by ``pong``

    Server events: ``new-notification`` ``{"type": "notification", "data": {...}}``,
    ``system-message``, ``error``.

    **Usage:**
    ```javascript
    const ws = new WebSocket('ws://localhost:8000/api/v1/notifications/ws');
    ws.onopen = () => ws.send(JSON.stringify({
        event: 'authenticate', data: {userId, userType: 'teacher', token}
    }));
    ws.onmessage = (event) => console.log(JSON.parse(event.data));
    ```
    """
    hub: ConnectionHub = websocket.app.state.hub
    await websocket.accept()
    session = await hub.on_connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON frame"}})
                continue
            await _handle_client_event(hub, session, websocket, frame)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: session {session.session_id}")
    except Exception as e:
        logger.error(f"WebSocket error for session {session.session_id}: {e}")
    finally:
        await hub.on_disconnect(session)
