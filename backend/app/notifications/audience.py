"""Audience resolution: from a logical target to concrete users and push tokens."""
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from app.notifications.exceptions import ResolutionFailure, UserNotFound
from app.notifications.models import SchoolUserBase, UserRole
from app.notifications.schemas import Recipient, TargetSpec
from app.notifications.stores import UserStore

logger = logging.getLogger(__name__)


@dataclass
class Audience:
    recipients: list[Recipient] = field(default_factory=list)
    tokens: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.recipients

    def user_ids_by_role(self) -> dict[UserRole, list[str]]:
        grouped: dict[UserRole, list[str]] = {}
        for recipient in self.recipients:
            grouped.setdefault(recipient.role, []).append(recipient.user_id)
        return grouped


def parse_target(raw: Any) -> TargetSpec:
    if isinstance(raw, TargetSpec):
        return raw
    if not isinstance(raw, dict):
        raise ResolutionFailure(f"Target specification must be an object, got {type(raw).__name__}")
    try:
        return TargetSpec.model_validate(raw)
    except ValidationError as exc:
        reasons = "; ".join(err["msg"] for err in exc.errors())
        raise ResolutionFailure(f"Invalid target specification: {reasons}") from exc


def target_for_announcement(
    target_type: str, class_name: Optional[str] = None, section: Optional[str] = None
) -> TargetSpec:
    """Map an announcement's targetType (all/teachers/students/class) to a target."""
    if target_type in ("all", "teachers", "students"):
        return parse_target({"kind": target_type})
    if target_type == "class":
        return parse_target({"kind": "class", "class_name": class_name, "section": section})
    raise ResolutionFailure(f"Announcements targeting {target_type!r} are not delivered")


def target_for_post(recipients: str, target_class: Optional[str] = None) -> TargetSpec:
    """Map a school post's recipients field (teachers/students/both/class) to a target."""
    if recipients == "both":
        return TargetSpec.everyone()
    if recipients in ("teachers", "students"):
        return parse_target({"kind": recipients})
    if recipients == "class":
        return parse_target({"kind": "class", "class_name": target_class})
    raise ResolutionFailure(f"Unknown post recipients {recipients!r}")


class AudienceResolver:
    def __init__(self, store: UserStore):
        self._store = store

    async def _users_for(self, target: TargetSpec) -> list[SchoolUserBase]:
        if target.kind == "all":
            teachers = await self._store.find_eligible(UserRole.TEACHER)
            students = await self._store.find_eligible(UserRole.STUDENT)
            return [*teachers, *students]
        if target.kind == "teachers":
            return await self._store.find_eligible(UserRole.TEACHER)
        if target.kind == "students":
            return await self._store.find_eligible(UserRole.STUDENT)
        if target.kind == "class":
            return await self._store.find_eligible(
                UserRole.STUDENT, class_name=target.class_name, section=target.section
            )
        # single user: loaded directly, whatever its status
        user = await self._store.get(target.user_id, target.role)
        if user is None:
            raise UserNotFound(target.user_id, target.role.value)
        return [user]

    async def resolve(self, target) -> Audience:
        target = parse_target(target)
        users = await self._users_for(target)

        recipients = [Recipient(user_id=str(user.id), role=user.role) for user in users]
        # Flatten token collections, keeping first occurrence order
        tokens = list(dict.fromkeys(token for user in users for token in user.token_values()))

        logger.info(
            f"Resolved target {target.kind} to {len(recipients)} recipients and {len(tokens)} push tokens"
        )
        return Audience(recipients=recipients, tokens=tokens)

    async def resolve_tokens(self, target) -> list[str]:
        return (await self.resolve(target)).tokens
