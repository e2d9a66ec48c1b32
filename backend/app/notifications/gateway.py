"""
Push delivery gateways.

A gateway knows the provider's token format, its maximum batch size and how
to submit one batch. ``ExpoPushGateway`` talks to the Expo push service over
httpx; ``NullPushGateway`` is used when push delivery is switched off.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Literal, Optional, Protocol

import httpx

from app.core.config import settings
from app.notifications.exceptions import ProviderBatchFailure
from app.notifications.schemas import PushContent

logger = logging.getLogger(__name__)

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")
_UUID_TOKEN_RE = re.compile(
    r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE
)

EXPO_MAX_BATCH_SIZE = 100
EXPO_MAX_RECEIPT_IDS = 1000


def is_expo_push_token(token) -> bool:
    """Same acceptance rule as Expo's own SDKs."""
    if not isinstance(token, str):
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


@dataclass
class DeliveryReceipt:
    """Outcome for one token submitted in one batch."""
    token: str
    status: Literal["ok", "error"]
    message: Optional[str] = None
    error: Optional[str] = None
    ticket_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class PushGateway(Protocol):
    max_batch_size: int

    def is_valid_token(self, token: str) -> bool: ...

    def build_message(self, token: str, content: PushContent) -> dict: ...

    async def send(self, messages: list[dict]) -> list[DeliveryReceipt]: ...

    async def aclose(self) -> None: ...


class ExpoPushGateway:
    """Submit message batches to the Expo push API."""

    max_batch_size = EXPO_MAX_BATCH_SIZE

    def __init__(
        self,
        push_url: str = settings.EXPO_PUSH_URL,
        receipts_url: str = settings.EXPO_RECEIPTS_URL,
        access_token: str = settings.EXPO_ACCESS_TOKEN,
        timeout: float = settings.PUSH_BATCH_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ):
        self._push_url = push_url
        self._receipts_url = receipts_url
        self._access_token = access_token
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def is_valid_token(self, token: str) -> bool:
        return is_expo_push_token(token)

    def _headers(self) -> dict:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    def build_message(self, token: str, content: PushContent) -> dict:
        return {
            "to": token,
            "sound": "default",
            "title": content.title,
            "body": content.body,
            "data": content.data,
            "priority": "high",
            "badge": 1,
        }

    async def send(self, messages: list[dict]) -> list[DeliveryReceipt]:
        if len(messages) > self.max_batch_size:
            raise ValueError(f"Expo accepts at most {self.max_batch_size} messages per request")

        try:
            response = await self._client.post(self._push_url, json=messages, headers=self._headers())
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderBatchFailure(
                f"Expo push request failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderBatchFailure(f"Expo push request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderBatchFailure("Expo push response is not valid JSON") from exc

        return self._receipts_from_response(messages, body)

    def _receipts_from_response(self, messages: list[dict], body) -> list[DeliveryReceipt]:
        if not isinstance(body, dict):
            raise ProviderBatchFailure("Unexpected Expo push response shape")
        if body.get("errors"):
            raise ProviderBatchFailure(f"Expo rejected the batch: {body['errors']}")

        tickets = body.get("data")
        if isinstance(tickets, dict):
            tickets = [tickets]
        if not isinstance(tickets, list) or len(tickets) != len(messages):
            raise ProviderBatchFailure(
                f"Expected {len(messages)} push tickets, got "
                f"{len(tickets) if isinstance(tickets, list) else 'none'}"
            )

        # Expo returns tickets in the same order as the submitted messages
        receipts = []
        for message, ticket in zip(messages, tickets):
            status = "ok" if ticket.get("status") == "ok" else "error"
            details = ticket.get("details") or {}
            receipts.append(DeliveryReceipt(
                token=message["to"],
                status=status,
                message=ticket.get("message"),
                error=details.get("error"),
                ticket_id=ticket.get("id"),
            ))
        return receipts

    def fetch_receipts(self, ticket_ids: Iterable[str], client: httpx.Client | None = None) -> dict[str, dict]:
        """Look up delivery receipts for previously issued tickets (blocking)."""
        ids = list(ticket_ids)
        receipts: dict[str, dict] = {}
        owns_client = client is None
        client = client or httpx.Client(timeout=self._timeout)
        try:
            for start in range(0, len(ids), EXPO_MAX_RECEIPT_IDS):
                chunk = ids[start:start + EXPO_MAX_RECEIPT_IDS]
                try:
                    response = client.post(self._receipts_url, json={"ids": chunk}, headers=self._headers())
                    response.raise_for_status()
                    receipts.update(response.json().get("data") or {})
                except (httpx.HTTPError, ValueError) as exc:
                    logger.error(f"Failed to fetch push receipts for {len(chunk)} tickets: {exc}")
        finally:
            if owns_client:
                client.close()
        return receipts

    async def aclose(self) -> None:
        await self._client.aclose()


class NullPushGateway:
    """Drops every push; used when PUSH_ENABLED is off."""

    max_batch_size = EXPO_MAX_BATCH_SIZE

    def is_valid_token(self, token: str) -> bool:
        return is_expo_push_token(token)

    def build_message(self, token: str, content: PushContent) -> dict:
        return {"to": token, "title": content.title, "body": content.body, "data": content.data}

    async def send(self, messages: list[dict]) -> list[DeliveryReceipt]:
        logger.debug(f"Push notifications disabled; dropping {len(messages)} messages")
        return []

    def fetch_receipts(self, ticket_ids: Iterable[str], client=None) -> dict[str, dict]:
        return {}

    async def aclose(self) -> None:
        return None


def build_push_gateway() -> PushGateway:
    if not settings.PUSH_ENABLED:
        logger.info("Push notifications are disabled")
        return NullPushGateway()
    return ExpoPushGateway()
