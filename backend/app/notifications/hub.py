"""Realtime connection hub: live connections, rooms and targeted delivery."""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set
from uuid import uuid4

from app.notifications.models import UserRole

logger = logging.getLogger(__name__)

IDENTITY_ROLES = tuple(role.value for role in UserRole)


class Connection(Protocol):
    """Anything that can push a JSON frame to one client (e.g. a FastAPI WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class ConnectionSession:
    connection: Connection
    session_id: str = field(default_factory=lambda: uuid4().hex)
    user_id: Optional[str] = None
    role: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: SessionState = SessionState.ANONYMOUS

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED


def _role_name(role) -> Optional[str]:
    if role is None:
        return None
    return role.value if isinstance(role, Enum) else str(role)


def user_room(role, user_id) -> str:
    return f"{_role_name(role)}:{user_id}"


def role_room(role) -> str:
    return f"role:{_role_name(role)}"


def class_room(class_name: str, section: Optional[str] = None) -> str:
    return f"class:{class_name}:{section}" if section else f"class:{class_name}"


def _is_reserved_room(room: str) -> bool:
    prefix = room.split(":", 1)[0]
    return ":" in room and (prefix in IDENTITY_ROLES or prefix == "role")


class ConnectionHub:
    """
    In-process index of live realtime sessions.

    Sessions start anonymous, become authenticated after a successful
    handshake and are closed on disconnect. Delivery is fire-and-forget:
    a user without a live session simply receives nothing, and a connection
    whose send fails is treated as gone. The index is private to this
    process, so delivery only reaches clients connected to it.
    """

    def __init__(self, credential_verifier: Optional[Callable[[str, str, str], bool]] = None):
        self._verify_credential = credential_verifier
        self._sessions: Dict[str, ConnectionSession] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    # ── lifecycle ──────────────────────────────────────────────

    async def on_connect(self, connection: Connection) -> ConnectionSession:
        session = ConnectionSession(connection=connection)
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.info(f"Realtime client connected: {session.session_id}. Total connections: {len(self._sessions)}")
        return session

    async def authenticate(self, session: ConnectionSession, user_id, role, credential) -> bool:
        if session.is_closed:
            return False

        user_id = str(user_id) if user_id not in (None, "") else None
        role = _role_name(role) if role else None
        ok = bool(user_id and role and credential) and role in IDENTITY_ROLES
        if ok and self._verify_credential is not None:
            ok = self._verify_credential(user_id, role, credential)

        if not ok:
            logger.warning(f"Realtime authentication failed for session {session.session_id}")
            await self._emit(session, "error", {"message": "Authentication failed"})
            return False

        async with self._lock:
            # Re-authentication as someone else drops the previous identity rooms
            if session.is_authenticated:
                for room in (user_room(session.role, session.user_id), role_room(session.role)):
                    self._leave(session, room)
            session.user_id = user_id
            session.role = role
            session.state = SessionState.AUTHENTICATED
            self._join(session, user_room(role, user_id))
            self._join(session, role_room(role))

        logger.info(f"Realtime user authenticated: {role} - {user_id}")
        await self._emit(session, "authenticated", {"success": True, "room": user_room(role, user_id)})
        return True

    async def on_disconnect(self, session: ConnectionSession) -> None:
        async with self._lock:
            if session.is_closed:
                return
            for room in list(session.rooms):
                self._leave(session, room)
            session.state = SessionState.CLOSED
            self._sessions.pop(session.session_id, None)
        who = f"{session.role} - {session.user_id}" if session.user_id else f"anonymous {session.session_id}"
        logger.info(f"Realtime client disconnected: {who}. Total connections: {len(self._sessions)}")

    async def close(self) -> None:
        """Close every live connection; used at application shutdown."""
        async with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            try:
                await session.connection.close(code=1001)
            except Exception as e:
                logger.debug(f"Error closing realtime connection {session.session_id}: {e}")
            await self.on_disconnect(session)

    # ── rooms ──────────────────────────────────────────────────

    def _join(self, session: ConnectionSession, room: str) -> None:
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(session.session_id)

    def _leave(self, session: ConnectionSession, room: str) -> None:
        session.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(session.session_id)
            if not members:
                del self._rooms[room]

    def _entitled_rooms(self, session: ConnectionSession) -> Set[str]:
        if not session.is_authenticated:
            return set()
        return {user_room(session.role, session.user_id), role_room(session.role)}

    async def join_room(self, session: ConnectionSession, room: str) -> bool:
        if session.is_closed or not room:
            return False
        if _is_reserved_room(room) and room not in self._entitled_rooms(session):
            await self._emit(session, "error", {"message": f"Not allowed to join room {room}"})
            return False
        async with self._lock:
            self._join(session, room)
        logger.info(f"Session {session.session_id} joined room: {room}")
        return True

    async def leave_room(self, session: ConnectionSession, room: str) -> None:
        async with self._lock:
            self._leave(session, room)
        logger.info(f"Session {session.session_id} left room: {room}")

    # ── delivery ───────────────────────────────────────────────

    async def _emit(self, session: ConnectionSession, event: str, data: Any) -> bool:
        try:
            await session.connection.send_json({"event": event, "data": data})
            return True
        except Exception as e:
            logger.debug(f"Failed to send to realtime session {session.session_id}: {e}")
            return False

    async def _emit_to_sessions(self, sessions: Iterable[ConnectionSession], event: str, data: Any) -> int:
        delivered = 0
        gone = []
        for session in sessions:
            if await self._emit(session, event, data):
                delivered += 1
            else:
                gone.append(session)
        for session in gone:
            # Close the socket too so the client sees the drop and reconnects
            try:
                await session.connection.close(code=1011)
            except Exception as e:
                logger.debug(f"Error closing realtime connection {session.session_id}: {e}")
            await self.on_disconnect(session)
        return delivered

    async def _sessions_in_room(self, room: str) -> list[ConnectionSession]:
        async with self._lock:
            return [self._sessions[sid] for sid in self._rooms.get(room, ()) if sid in self._sessions]

    async def broadcast_to_room(self, room: str, payload: Any, event: str = "new-notification") -> int:
        sessions = await self._sessions_in_room(room)
        return await self._emit_to_sessions(sessions, event, _envelope(event, payload))

    async def broadcast_to_all(self, payload: Any) -> int:
        async with self._lock:
            sessions = list(self._sessions.values())
        delivered = await self._emit_to_sessions(sessions, "new-notification", _envelope("new-notification", payload))
        logger.info(f"Notification broadcasted to {delivered} connections")
        return delivered

    async def send_to_user(self, user_id, role: str, payload: Any) -> int:
        delivered = await self.broadcast_to_room(user_room(role, user_id), payload)
        logger.debug(f"Notification sent to {_role_name(role)} {user_id} ({delivered} connections)")
        return delivered

    async def send_to_users(self, user_ids: Iterable, role: str, payload: Any) -> int:
        delivered = 0
        for user_id in user_ids:
            delivered += await self.send_to_user(user_id, role, payload)
        return delivered

    async def send_to_role(self, role: str, payload: Any) -> int:
        delivered = await self.broadcast_to_room(role_room(role), payload)
        logger.info(f"Notification sent to all {_role_name(role)}s ({delivered} connections)")
        return delivered

    async def send_to_class(self, class_name: str, section: Optional[str], payload: Any) -> int:
        return await self.broadcast_to_room(class_room(class_name, section), payload)

    async def send_system_message(self, user_id, role: str, message: str) -> int:
        data = {
            "type": "system",
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return await self.broadcast_to_room(user_room(role, user_id), data, event="system-message")

    # ── presence ───────────────────────────────────────────────

    def is_online(self, user_id, role: str) -> bool:
        return bool(self._rooms.get(user_room(role, user_id)))

    @property
    def connection_count(self) -> int:
        return len(self._sessions)

    def connected_users(self, role: Optional[str] = None) -> list[dict]:
        return [
            {
                "session_id": s.session_id,
                "user_id": s.user_id,
                "role": s.role,
                "connected_at": s.connected_at.isoformat(),
            }
            for s in self._sessions.values()
            if s.is_authenticated and (role is None or s.role == role)
        ]


def _envelope(event: str, payload: Any) -> Any:
    if event == "new-notification":
        return {"type": "notification", "data": payload}
    return payload
