"""Endpoint registry: which push tokens belong to which (user, device)."""
import logging
from typing import Callable, Iterable

from app.notifications.exceptions import InvalidTokenFormat, UserNotFound
from app.notifications.models import UserRole
from app.notifications.stores import UserStore

logger = logging.getLogger(__name__)


class EndpointRegistry:
    """
    Register and remove device push tokens on the owning user record.

    Each (user, device id) pair holds at most one token. Concurrent writes
    for the same device are last-write-wins; different devices of the same
    user occupy independent slots.
    """

    def __init__(self, store: UserStore, is_valid_token: Callable[[str], bool]):
        self._store = store
        self._is_valid_token = is_valid_token

    async def register(self, user_id, role: UserRole | str, token: str, device_id: str) -> None:
        if not self._is_valid_token(token):
            raise InvalidTokenFormat(token)

        role = UserRole(role)
        if not await self._store.replace_endpoint_token(user_id, role, token, device_id):
            raise UserNotFound(user_id, role.value)
        logger.info(f"Registered push token for {role.value} {user_id} (device {device_id})")

    async def unregister(self, user_id, role: UserRole | str, device_id: str) -> None:
        role = UserRole(role)
        removed = await self._store.remove_endpoint_token(user_id, role, device_id)
        if removed is None:
            raise UserNotFound(user_id, role.value)

        if removed:
            logger.info(f"Removed push token for {role.value} {user_id} (device {device_id})")
        else:
            logger.debug(f"No push token for {role.value} {user_id} on device {device_id}")

    async def prune(self, tokens: Iterable[str]) -> int:
        """Drop tokens the provider reported as no longer registered."""
        tokens = set(tokens)
        if not tokens:
            return 0
        removed = await self._store.remove_tokens(tokens)
        logger.info(f"Pruned {len(tokens)} dead push tokens from {removed} users")
        return removed
