"""
Notification delivery core for the school service.

Delivers notification events to teachers and students over two channels:
mobile push (Expo) and realtime WebSocket connections.

Components:
- EndpointRegistry: per-device push token registration
- PushDispatcher: batched, concurrent push submission
- AudienceResolver: logical target -> recipients and push tokens
- ConnectionHub: live realtime sessions and rooms
- DeliveryOrchestrator: one event, both channels

Usage:
    from app.notifications.events import event_for_announcement
    from app.notifications.schemas import TargetSpec

    orchestrator = app.state.orchestrator
    await orchestrator.dispatch_for_event(
        event_for_announcement(announcement.id, announcement.title, announcement.message),
        TargetSpec.for_class("5", section="A"),
    )
"""

from .audience import AudienceResolver
from .dispatcher import PushDispatcher
from .hub import ConnectionHub
from .orchestrator import DeliveryOrchestrator
from .registry import EndpointRegistry

__all__ = [
    "AudienceResolver",
    "ConnectionHub",
    "DeliveryOrchestrator",
    "EndpointRegistry",
    "PushDispatcher",
]
