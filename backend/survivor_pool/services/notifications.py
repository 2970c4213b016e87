"""
backend/survivor_pool/services/notifications.py

Purpose:
    Notification sink contract for elimination and win alerts, plus the event
    bus backed implementation. Sinks are fire-and-forget: they must not block
    and their failures never roll back game state.

Dependencies:
    - survivor_pool.services.event_bus
    - survivor_pool.services.event_models
"""

from __future__ import annotations

import logging
from typing import Protocol

from survivor_pool.services.event_bus import InMemoryEventBus
from survivor_pool.services.event_models import (
    GameCompletedEvent,
    ParticipantEliminatedEvent,
    WeekProcessedEvent,
)

logger = logging.getLogger("survivor_pool.notifications")


class NotificationSink(Protocol):
    def participant_eliminated(
        self, *, game_id: str, participant_id: str, player_id: str, week: int, reason: str,
    ) -> None: ...

    def game_completed(
        self, *, game_id: str, winner_id: str | None, co_winner_ids: list[str],
    ) -> None: ...

    def week_processed(
        self, *, game_id: str, week: int, picks_resolved: int, participants_eliminated: int,
    ) -> None: ...


class LoggingNotificationSink:
    """Used when the event bus is disabled."""

    def participant_eliminated(self, *, game_id, participant_id, player_id, week, reason) -> None:
        logger.info(
            "Notify eliminated: game=%s player=%s week=%d reason=%s",
            game_id, player_id, week, reason,
        )

    def game_completed(self, *, game_id, winner_id, co_winner_ids) -> None:
        logger.info("Notify completed: game=%s winner=%s co_winners=%s", game_id, winner_id, co_winner_ids)

    def week_processed(self, *, game_id, week, picks_resolved, participants_eliminated) -> None:
        logger.debug("Week processed: game=%s week=%d", game_id, week)


class EventBusNotificationSink:
    def __init__(self, bus: InMemoryEventBus, *, source: str = "survivor_service") -> None:
        self._bus = bus
        self._source = source

    def participant_eliminated(self, *, game_id, participant_id, player_id, week, reason) -> None:
        self._bus.publish(ParticipantEliminatedEvent(
            source=self._source,
            game_id=game_id,
            participant_id=participant_id,
            player_id=player_id,
            week=week,
            reason=reason,
        ))

    def game_completed(self, *, game_id, winner_id, co_winner_ids) -> None:
        self._bus.publish(GameCompletedEvent(
            source=self._source,
            game_id=game_id,
            winner_id=winner_id,
            co_winner_ids=list(co_winner_ids),
        ))

    def week_processed(self, *, game_id, week, picks_resolved, participants_eliminated) -> None:
        self._bus.publish(WeekProcessedEvent(
            source=self._source,
            game_id=game_id,
            week=week,
            picks_resolved=picks_resolved,
            participants_eliminated=participants_eliminated,
        ))
