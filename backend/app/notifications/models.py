# app/notifications/models.py
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4
from typing import ClassVar, Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, DateTime
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


class EndpointToken(BaseModel):
    """One push endpoint registered from one device installation."""
    token: str
    device_id: str
    added_at: datetime


class SchoolUserBase(SQLModel):
    """
    Capabilities shared by every notifiable user variant.

    Push tokens are embedded in the owning row as a JSON list, so their
    lifecycle follows the user record. There is at most one entry per
    device id; registering from a known device replaces its entry.
    """
    role: ClassVar[UserRole]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(default="", max_length=120)
    email: Optional[str] = Field(default=None, index=True)
    is_verified: bool = Field(default=False)
    is_active: bool = Field(default=True)
    push_tokens: List[dict] = Field(default_factory=list, sa_type=JSON)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

    @property
    def is_eligible(self) -> bool:
        """Only verified and active users receive notifications."""
        return bool(self.is_verified and self.is_active)

    def endpoint_tokens(self) -> list[EndpointToken]:
        return [EndpointToken.model_validate(entry) for entry in (self.push_tokens or [])]

    def token_values(self) -> list[str]:
        return [entry["token"] for entry in (self.push_tokens or [])]

    def replace_endpoint_token(self, token: str, device_id: str, added_at: datetime | None = None) -> None:
        entry = EndpointToken(token=token, device_id=device_id, added_at=added_at or _utcnow())
        kept = [t for t in (self.push_tokens or []) if t["device_id"] != device_id]
        # Reassign so SQLAlchemy sees the JSON column as dirty
        self.push_tokens = kept + [entry.model_dump(mode="json")]

    def remove_endpoint_token(self, device_id: str) -> bool:
        current = self.push_tokens or []
        kept = [t for t in current if t["device_id"] != device_id]
        if len(kept) == len(current):
            return False
        self.push_tokens = kept
        return True

    def remove_tokens(self, tokens: Iterable[str]) -> int:
        dead = set(tokens)
        current = self.push_tokens or []
        kept = [t for t in current if t["token"] not in dead]
        removed = len(current) - len(kept)
        if removed:
            self.push_tokens = kept
        return removed


class Teacher(SchoolUserBase, table=True):
    __tablename__ = "teachers"
    __table_args__ = {"extend_existing": True}

    role: ClassVar[UserRole] = UserRole.TEACHER

    subject: Optional[str] = Field(default=None)


class Student(SchoolUserBase, table=True):
    __tablename__ = "students"
    __table_args__ = {"extend_existing": True}

    role: ClassVar[UserRole] = UserRole.STUDENT

    class_name: Optional[str] = Field(default=None, index=True)
    section: Optional[str] = Field(default=None)


USER_MODELS: dict[UserRole, type[SchoolUserBase]] = {
    UserRole.TEACHER: Teacher,
    UserRole.STUDENT: Student,
}


class Notification(SQLModel, table=True):
    """Durable record of one notification event and who it was sent to."""
    __tablename__ = "notifications"
    __table_args__ = {"extend_existing": True}

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    title: str
    message: str
    type: str = Field(default="announcement", index=True)
    priority: str = Field(default="medium")
    target_users: List[dict] = Field(default_factory=list, sa_type=JSON)
    related_content_type: Optional[str] = Field(default=None)
    related_content_id: Optional[str] = Field(default=None, index=True)
    created_by: Optional[str] = Field(default=None)
    created_by_type: Optional[str] = Field(default=None)
    created_by_name: Optional[str] = Field(default=None)
    details: dict = Field(default_factory=dict, sa_type=JSON)
    is_active: bool = Field(default=True)
    sent_count: int = Field(default=0)
    read_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True))

    def add_target_user(self, user_id, user_type: str) -> bool:
        if any(t["user_id"] == str(user_id) and t["user_type"] == user_type for t in self.target_users):
            return False
        self.target_users = self.target_users + [
            {"user_id": str(user_id), "user_type": user_type, "is_read": False, "read_at": None}
        ]
        self.sent_count += 1
        return True

    def mark_as_read(self, user_id, user_type: str) -> bool:
        updated = False
        targets = []
        for target in self.target_users:
            if target["user_id"] == str(user_id) and target["user_type"] == user_type and not target["is_read"]:
                target = {**target, "is_read": True, "read_at": _utcnow().isoformat()}
                updated = True
            targets.append(target)
        if updated:
            self.target_users = targets
            self.read_count += 1
        return updated
