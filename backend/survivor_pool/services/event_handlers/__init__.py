"""
backend/survivor_pool/services/event_handlers/__init__.py

Purpose:
    Central registration entrypoint for event bus subscribers.

Dependencies:
    - survivor_pool.services.event_bus
    - survivor_pool.services.event_handlers.survivor_handlers
"""

from __future__ import annotations

from survivor_pool.services.event_bus import InMemoryEventBus
from survivor_pool.services.event_handlers.survivor_handlers import make_survivor_handlers


def register_event_handlers(bus: InMemoryEventBus, db) -> None:
    for event_type, handler in make_survivor_handlers(db).items():
        bus.subscribe(event_type, handler, handler_name=event_type.split(".", 1)[1], concurrency=1)
