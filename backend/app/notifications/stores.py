"""
Storage collaborators used by the delivery core.

The core only depends on the ``UserStore`` and ``NotificationStore`` protocols.
The SQL implementations below wrap the app's sync SQLModel sessions and run
them in Starlette's threadpool so callers can await every database access.
"""
import logging
import threading
from typing import Callable, Iterable, Optional, Protocol, Sequence
from uuid import UUID

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session
from sqlmodel import select
from starlette.concurrency import run_in_threadpool

from app.core.database import SessionLocal
from app.notifications.models import USER_MODELS, Notification, SchoolUserBase, Student, UserRole
from app.notifications.schemas import NotificationEvent, Recipient, TargetSpec

logger = logging.getLogger(__name__)


class UserStore(Protocol):
    async def get(self, user_id: str, role: UserRole) -> Optional[SchoolUserBase]: ...

    async def replace_endpoint_token(self, user_id, role: UserRole, token: str, device_id: str) -> bool: ...

    async def remove_endpoint_token(self, user_id, role: UserRole, device_id: str) -> Optional[bool]: ...

    async def find_eligible(
        self, role: UserRole, class_name: str | None = None, section: str | None = None
    ) -> list[SchoolUserBase]: ...

    async def remove_tokens(self, tokens: Iterable[str]) -> int: ...


class NotificationStore(Protocol):
    async def create(
        self, event: NotificationEvent, recipients: Sequence[Recipient], target: TargetSpec
    ) -> str: ...


def _parse_uuid(value) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class SqlUserStore:
    """
    Teacher/Student access backed by SQLModel tables.

    Token slot changes read and write the ``push_tokens`` list inside one
    transaction holding the row (``SELECT ... FOR UPDATE``), so writers for
    different devices of the same user never overwrite each other. SQLite
    has no row locks; the class-level lock serialises slot writers within
    this process.
    """

    _slot_lock = threading.Lock()

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def get(self, user_id, role: UserRole) -> Optional[SchoolUserBase]:
        return await run_in_threadpool(self._get, user_id, UserRole(role))

    def _get(self, user_id, role: UserRole) -> Optional[SchoolUserBase]:
        uid = _parse_uuid(user_id)
        if uid is None:
            return None
        with self._session_factory() as db:
            return db.get(USER_MODELS[role], uid)

    async def replace_endpoint_token(self, user_id, role: UserRole, token: str, device_id: str) -> bool:
        """Set the token for one device slot. False when the user does not exist."""
        changed = await run_in_threadpool(
            self._update_user, user_id, UserRole(role), lambda user: user.replace_endpoint_token(token, device_id)
        )
        return changed is not None

    async def remove_endpoint_token(self, user_id, role: UserRole, device_id: str) -> Optional[bool]:
        """Clear one device slot. None when the user does not exist."""
        return await run_in_threadpool(
            self._update_user, user_id, UserRole(role), lambda user: user.remove_endpoint_token(device_id)
        )

    def _update_user(self, user_id, role: UserRole, change: Callable[[SchoolUserBase], object]):
        uid = _parse_uuid(user_id)
        if uid is None:
            return None
        model = USER_MODELS[role]
        with self._slot_lock, self._session_factory() as db:
            user = db.scalars(select(model).where(model.id == uid).with_for_update()).first()
            if user is None:
                return None
            result = change(user)
            db.add(user)
            db.commit()
            return True if result is None else result

    async def find_eligible(
        self, role: UserRole, class_name: str | None = None, section: str | None = None
    ) -> list[SchoolUserBase]:
        return await run_in_threadpool(self._find_eligible, UserRole(role), class_name, section)

    def _find_eligible(self, role: UserRole, class_name: str | None, section: str | None) -> list[SchoolUserBase]:
        model = USER_MODELS[role]
        stmt = select(model).where(model.is_verified.is_(True), model.is_active.is_(True))
        if class_name is not None:
            if model is not Student:
                raise ValueError("Only students belong to classes")
            stmt = stmt.where(Student.class_name == class_name)
            if section:
                stmt = stmt.where(Student.section == section)
        with self._session_factory() as db:
            return list(db.scalars(stmt).all())

    async def remove_tokens(self, tokens: Iterable[str]) -> int:
        return await run_in_threadpool(self._remove_tokens, set(tokens))

    def _remove_tokens(self, tokens: set[str]) -> int:
        if not tokens:
            return 0
        removed = 0
        with self._slot_lock, self._session_factory() as db:
            for model in USER_MODELS.values():
                # Only rows whose serialised token list mentions a dead token
                stored = cast(model.push_tokens, String)
                stmt = select(model).where(or_(*(stored.contains(token) for token in tokens))).with_for_update()
                for user in db.scalars(stmt).all():
                    if user.remove_tokens(tokens):
                        removed += 1
                        db.add(user)
            db.commit()
        return removed


class SqlNotificationStore:
    """Persists one Notification row per dispatched event."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    async def create(
        self, event: NotificationEvent, recipients: Sequence[Recipient], target: TargetSpec
    ) -> str:
        return await run_in_threadpool(self._create, event, list(recipients), target)

    def _create(self, event: NotificationEvent, recipients: list[Recipient], target: TargetSpec) -> str:
        record = Notification(
            title=event.title,
            message=event.body,
            type=event.type,
            priority=event.priority,
            related_content_type=event.type,
            related_content_id=event.id,
            created_by=event.created_by,
            created_by_type=event.created_by_type,
            created_by_name=event.created_by_name,
            details={
                "targetType": target.kind,
                "targetClass": target.class_name,
                "targetSection": target.section,
                "actionUrl": event.action_url,
            },
        )
        for recipient in recipients:
            record.add_target_user(recipient.user_id, recipient.role.value)
        with self._session_factory() as db:
            db.add(record)
            db.commit()
            logger.info(f"Stored notification {record.id} for {record.sent_count} recipients")
            return str(record.id)
