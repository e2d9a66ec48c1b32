import asyncio
import logging

import httpx
from celery import Task

from app.celery_app import celery_app
from app.core.config import settings
from app.notifications.gateway import ExpoPushGateway, is_expo_push_token
from app.notifications.registry import EndpointRegistry
from app.notifications.stores import SqlUserStore

# Configure logging
logger = logging.getLogger(__name__)

DEVICE_NOT_REGISTERED = "DeviceNotRegistered"


class ReceiptTask(Task):
    """Base task for push receipt checks; retried when Expo is unreachable."""

    autoretry_for = (httpx.TransportError, ConnectionError, TimeoutError)
    max_retries = 3
    default_retry_delay = 60  # 1 minute
    retry_backoff = True
    retry_backoff_max = 600  # 10 minutes
    retry_jitter = True


@celery_app.task(bind=True, base=ReceiptTask, name="app.notifications.tasks.check_push_receipts")
def check_push_receipts(self, ticket_tokens: dict) -> dict:
    """
    Look up Expo delivery receipts for earlier push tickets.

    Args:
        ticket_tokens: mapping of Expo ticket id -> push token it was issued for

    Returns:
        dict: ``checked`` receipts found, ``errors`` among them, ``pruned`` users
        that lost a token because its device is no longer registered
    """
    if not ticket_tokens:
        return {"checked": 0, "errors": 0, "pruned": 0}

    logger.info(f"Checking {len(ticket_tokens)} push receipts (task_id: {self.request.id})")

    receipts = ExpoPushGateway().fetch_receipts(ticket_tokens.keys())

    errors = 0
    dead_tokens = set()
    for ticket_id, receipt in receipts.items():
        if receipt.get("status") == "ok":
            continue
        errors += 1
        error = (receipt.get("details") or {}).get("error")
        logger.warning(f"Push receipt {ticket_id} failed: {error or 'unknown'} {receipt.get('message') or ''}".rstrip())
        if error == DEVICE_NOT_REGISTERED and ticket_id in ticket_tokens:
            dead_tokens.add(ticket_tokens[ticket_id])

    pruned = 0
    if dead_tokens:
        registry = EndpointRegistry(SqlUserStore(), is_expo_push_token)
        pruned = asyncio.run(registry.prune(dead_tokens))

    result = {"checked": len(receipts), "errors": errors, "pruned": pruned}
    logger.info(f"Push receipt check finished: {result}")
    return result


def schedule_receipt_check(ticket_tokens: dict[str, str]) -> None:
    """Queue a receipt check once Expo has had time to hand the messages over."""
    check_push_receipts.apply_async(
        args=[ticket_tokens],
        countdown=settings.PUSH_RECEIPT_CHECK_DELAY_SECONDS,
    )
    logger.debug(f"Queued push receipt check for {len(ticket_tokens)} tickets")
