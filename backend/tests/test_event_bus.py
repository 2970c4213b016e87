"""
backend/tests/test_event_bus.py

Purpose:
    Unit tests for the in-memory event bus, the bus-backed notification sink
    and the survivor outbox subscribers.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from survivor_pool.services.event_bus import InMemoryEventBus
from survivor_pool.services.event_handlers import register_event_handlers
from survivor_pool.services.event_models import GameCompletedEvent, ParticipantEliminatedEvent
from survivor_pool.services.notifications import EventBusNotificationSink


def _bus(**overrides) -> InMemoryEventBus:
    kwargs = {"ingress_maxsize": 10, "handler_maxsize": 10, "default_concurrency": 1, "error_buffer_size": 10}
    kwargs.update(overrides)
    return InMemoryEventBus(**kwargs)


def _eliminated(**overrides) -> ParticipantEliminatedEvent:
    fields = {
        "source": "test",
        "correlation_id": "corr-1",
        "game_id": "g1",
        "participant_id": "p1",
        "player_id": "alice",
        "week": 3,
        "reason": "incorrect_pick",
    }
    fields.update(overrides)
    return ParticipantEliminatedEvent(**fields)


@pytest.mark.asyncio
async def test_event_bus_fanout_and_correlation() -> None:
    bus = _bus()
    seen: list[tuple[str, str]] = []

    async def handler_a(event):
        seen.append(("a", event.correlation_id))

    async def handler_b(event):
        seen.append(("b", event.correlation_id))

    bus.subscribe("survivor.participant_eliminated", handler_a, handler_name="a", concurrency=1)
    bus.subscribe("survivor.participant_eliminated", handler_b, handler_name="b", concurrency=1)
    await bus.start()

    assert bus.publish(_eliminated()) is True
    await asyncio.sleep(0.05)
    await bus.stop()

    assert ("a", "corr-1") in seen
    assert ("b", "corr-1") in seen
    stats = bus.stats()
    assert stats["published_total"] == 1
    assert stats["failed_total"] == 0
    assert stats["per_handler"]["survivor.participant_eliminated:a"]["handled_total"] == 1


@pytest.mark.asyncio
async def test_event_bus_handler_failure_isolated() -> None:
    bus = _bus()
    success_calls = 0

    async def failing(_event):
        raise RuntimeError("boom")

    async def success(_event):
        nonlocal success_calls
        success_calls += 1

    bus.subscribe("survivor.participant_eliminated", failing, handler_name="failing", concurrency=1)
    bus.subscribe("survivor.participant_eliminated", success, handler_name="success", concurrency=1)
    await bus.start()
    bus.publish(_eliminated(correlation_id="corr-2"))
    await asyncio.sleep(0.05)
    await bus.stop()

    stats = bus.stats()
    assert success_calls == 1
    assert stats["failed_total"] >= 1
    assert stats["recent_errors"][0]["handler_name"] == "failing"


@pytest.mark.asyncio
async def test_event_bus_overflow_drops() -> None:
    bus = _bus(ingress_maxsize=1, handler_maxsize=1)
    event = _eliminated(correlation_id="corr-3")
    assert bus.publish(event) is True
    assert bus.publish(event.model_copy(update={"event_id": "evt-2"})) is False

    stats = bus.stats()
    assert stats["published_total"] == 1
    assert stats["dropped_total"] == 1


@pytest.mark.asyncio
async def test_notification_sink_publishes_survivor_events() -> None:
    bus = _bus()
    received = []

    async def collect(event):
        received.append(event)

    bus.subscribe("survivor.participant_eliminated", collect, handler_name="collect")
    bus.subscribe("survivor.game_completed", collect, handler_name="collect")
    await bus.start()

    sink = EventBusNotificationSink(bus)
    sink.participant_eliminated(game_id="g1", participant_id="p1", player_id="bob", week=1, reason="incorrect_pick")
    sink.game_completed(game_id="g1", winner_id="alice", co_winner_ids=[])
    await asyncio.sleep(0.05)
    await bus.stop()

    kinds = {type(e) for e in received}
    assert kinds == {ParticipantEliminatedEvent, GameCompletedEvent}
    assert all(e.source == "survivor_service" for e in received)


class _FakeNotifications:
    def __init__(self):
        self.docs: dict[str, dict] = {}

    async def update_one(self, query, update, upsert=False):
        if query["_id"] not in self.docs:
            self.docs[query["_id"]] = update["$setOnInsert"]


@pytest.mark.asyncio
async def test_outbox_handlers_are_idempotent() -> None:
    notifications = _FakeNotifications()
    bus = _bus()
    register_event_handlers(bus, SimpleNamespace(survivor_notifications=notifications))
    await bus.start()

    eliminated = _eliminated()
    completed = GameCompletedEvent(source="test", game_id="g1", winner_id=None, co_winner_ids=["bob", "carol"])
    bus.publish(eliminated)
    bus.publish(eliminated)
    bus.publish(completed)
    await asyncio.sleep(0.05)
    await bus.stop()

    assert len(notifications.docs) == 2
    assert notifications.docs[eliminated.event_id]["recipients"] == ["alice"]
    assert notifications.docs[completed.event_id]["recipients"] == ["bob", "carol"]
