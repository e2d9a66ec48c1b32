"""Delivery orchestration: one event in, push and realtime fan-out out."""
import asyncio
import logging
from typing import Callable, Optional

from app.core.config import settings
from app.notifications.audience import Audience, AudienceResolver, parse_target
from app.notifications.dispatcher import PushDispatcher
from app.notifications.gateway import DeliveryReceipt
from app.notifications.hub import ConnectionHub
from app.notifications.schemas import DeliverySummary, NotificationEvent, TargetSpec
from app.notifications.stores import NotificationStore

logger = logging.getLogger(__name__)

ReceiptScheduler = Callable[[dict[str, str]], None]


def preview(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text


class DeliveryOrchestrator:
    """
    Entry point for collaborators that want an event delivered.

    Push and realtime delivery run concurrently and are isolated from each
    other: a failure in one never stops the other. Only resolution errors
    (malformed target, unknown single user) propagate to the caller.
    """

    def __init__(
        self,
        resolver: AudienceResolver,
        dispatcher: PushDispatcher,
        hub: ConnectionHub,
        notification_store: Optional[NotificationStore] = None,
        receipt_scheduler: Optional[ReceiptScheduler] = None,
        body_preview_length: int = settings.PUSH_BODY_PREVIEW_LENGTH,
    ):
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._hub = hub
        self._notification_store = notification_store
        self._receipt_scheduler = receipt_scheduler
        self._body_preview_length = body_preview_length

    async def dispatch_for_event(self, event: NotificationEvent, target) -> DeliverySummary:
        target = parse_target(target)
        audience = await self._resolver.resolve(target)

        if audience.is_empty:
            logger.info(f"No eligible recipients for {event.type} {event.id}; nothing to deliver")
            return DeliverySummary()

        notification_id = await self._persist(event, audience, target)

        push_task = self._deliver_push(event, audience, notification_id)
        realtime_task = self._deliver_realtime(event, audience, target, notification_id)
        receipts, realtime_attempted = await asyncio.gather(push_task, realtime_task)

        summary = DeliverySummary(
            recipient_count=len(audience.recipients),
            token_count=len(audience.tokens),
            push_receipt_count=len(receipts),
            push_ok_count=sum(1 for r in receipts if r.ok),
            push_error_count=sum(1 for r in receipts if not r.ok),
            realtime_attempted=realtime_attempted,
            notification_id=notification_id,
        )
        logger.info(f"Delivered {event.type} {event.id}: {summary.model_dump()}")
        return summary

    async def _persist(self, event: NotificationEvent, audience: Audience, target: TargetSpec) -> Optional[str]:
        if self._notification_store is None:
            return None
        try:
            return await self._notification_store.create(event, audience.recipients, target)
        except Exception as e:
            logger.error(f"Failed to store notification for {event.type} {event.id}: {e}", exc_info=True)
            return None

    def push_content(self, event: NotificationEvent, notification_id: Optional[str] = None) -> tuple[str, str, dict]:
        """
        Title, body preview and data for the push message.

        ``event.data`` is merged over the default ``type``/``id`` keys on
        purpose: the mobile client routes on ``data.type``, and posts are
        delivered as ``school_post``. ``actionUrl`` and ``notificationId``
        are applied last and cannot be overridden.
        """
        data = {"type": event.type, "id": event.id, **event.data}
        if event.action_url:
            data["actionUrl"] = event.action_url
        if notification_id:
            data["notificationId"] = notification_id
        return event.title, preview(event.body, self._body_preview_length), data

    def realtime_payload(
        self, event: NotificationEvent, target: TargetSpec, notification_id: Optional[str] = None
    ) -> dict:
        return {
            "id": event.id,
            "notificationId": notification_id,
            "title": event.title,
            "message": event.body,
            "type": event.type,
            "priority": event.priority,
            "createdBy": event.created_by_name,
            "createdAt": event.created_at.isoformat(),
            "targetType": target.kind,
            "actionUrl": event.action_url,
            "data": event.data,
        }

    async def _deliver_push(
        self, event: NotificationEvent, audience: Audience, notification_id: Optional[str]
    ) -> list[DeliveryReceipt]:
        if not audience.tokens:
            logger.debug(f"No push tokens for {event.type} {event.id}")
            return []
        title, body, data = self.push_content(event, notification_id)
        try:
            receipts = await self._dispatcher.send_batch(audience.tokens, title, body, data)
        except Exception as e:
            logger.error(f"Push delivery failed for {event.type} {event.id}: {e}", exc_info=True)
            return []

        self._schedule_receipt_check(receipts)
        return receipts

    def _schedule_receipt_check(self, receipts: list[DeliveryReceipt]) -> None:
        if self._receipt_scheduler is None:
            return
        tickets = {r.ticket_id: r.token for r in receipts if r.ok and r.ticket_id}
        if not tickets:
            return
        try:
            self._receipt_scheduler(tickets)
        except Exception as e:
            logger.error(f"Failed to queue push receipt check for {len(tickets)} tickets: {e}")

    async def _deliver_realtime(
        self,
        event: NotificationEvent,
        audience: Audience,
        target: TargetSpec,
        notification_id: Optional[str],
    ) -> int:
        payload = self.realtime_payload(event, target, notification_id)
        attempted = 0
        for role, user_ids in audience.user_ids_by_role().items():
            attempted += len(user_ids)
            try:
                await self._hub.send_to_users(user_ids, role, payload)
            except Exception as e:
                logger.error(f"Realtime delivery to {role.value}s failed for {event.type} {event.id}: {e}", exc_info=True)
        logger.info(f"Real-time {event.type} sent to {attempted} users")
        return attempted
