# app/notifications/schemas.py
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID, uuid4
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.notifications.models import UserRole

# Values allowed in push/realtime ``data`` maps (client deep-link parameters)
Primitive = Union[str, int, float, bool, None]

NotificationType = Literal["announcement", "post", "question", "reply", "grade", "fee", "general"]
Priority = Literal["low", "medium", "high", "urgent"]


# ─────────────────────────  TARGETING  ──────────────────────────
class TargetSpec(BaseModel):
    """Logical audience of a notification event."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    kind: Literal["all", "teachers", "students", "class", "user"]
    class_name: Optional[str] = Field(default=None, alias="className")
    section: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    role: Optional[UserRole] = None

    @field_validator("user_id", mode="before")
    @classmethod
    def stringify_user_id(cls, v):
        return str(v) if isinstance(v, UUID) else v

    @model_validator(mode="after")
    def check_required_fields(self):
        if self.kind == "class" and not (self.class_name and self.class_name.strip()):
            raise ValueError("class target requires a class name")
        if self.kind == "user" and (not self.user_id or self.role is None):
            raise ValueError("user target requires both user id and role")
        return self

    @classmethod
    def everyone(cls) -> "TargetSpec":
        return cls(kind="all")

    @classmethod
    def teachers(cls) -> "TargetSpec":
        return cls(kind="teachers")

    @classmethod
    def students(cls) -> "TargetSpec":
        return cls(kind="students")

    @classmethod
    def for_class(cls, class_name: str, section: str | None = None) -> "TargetSpec":
        return cls(kind="class", class_name=class_name, section=section)

    @classmethod
    def single_user(cls, user_id, role: UserRole | str) -> "TargetSpec":
        return cls(kind="user", user_id=str(user_id), role=role)


@dataclass(frozen=True)
class Recipient:
    user_id: str
    role: UserRole


# ─────────────────────────  EVENTS  ──────────────────────────
class NotificationEvent(BaseModel):
    """Read-only description of something that happened and should be announced."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    type: NotificationType = "announcement"
    title: str = Field(..., min_length=1)
    body: str = ""
    priority: Priority = "medium"
    created_by: Optional[str] = Field(default=None, alias="createdBy")
    created_by_type: Optional[str] = Field(default=None, alias="createdByType")
    created_by_name: Optional[str] = Field(default=None, alias="createdByName")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")
    action_url: Optional[str] = Field(default=None, alias="actionUrl")
    data: Dict[str, Primitive] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v):
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()


class PushContent(BaseModel):
    """The {title, body, data} triple delivered to every device."""
    title: str
    body: str
    data: Dict[str, Primitive] = Field(default_factory=dict)


# ─────────────────────────  REQUESTS  ──────────────────────────
class PushTokenRegister(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(..., min_length=1, description="Expo push token")
    device_id: str = Field(..., min_length=1, alias="deviceId")


class PushTokenRemove(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., min_length=1, alias="deviceId")


class DispatchRequest(BaseModel):
    event: NotificationEvent
    # Parsed by the audience resolver so malformed targets surface as ResolutionFailure
    target: dict


class AdminPushTestRequest(BaseModel):
    target: Literal["teachers", "students", "all"] = "all"
    title: str = "Test Notification"
    body: str = "This is a test notification"


# ───────────────────────────  RESPONSES  ───────────────────────────
class MessageResponse(BaseModel):
    success: bool = True
    message: str


class DeliverySummary(BaseModel):
    recipient_count: int = 0
    token_count: int = 0
    push_receipt_count: int = 0
    push_ok_count: int = 0
    push_error_count: int = 0
    realtime_attempted: int = 0
    notification_id: Optional[str] = None


class OnlineStatus(BaseModel):
    user_id: str
    role: str
    online: bool
