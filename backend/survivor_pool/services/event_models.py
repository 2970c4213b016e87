"""
backend/survivor_pool/services/event_models.py

Purpose:
    Domain event contracts for in-process reactive workflows. Compact ID-first
    payloads so publishers stay decoupled from subscribers.

Dependencies:
    - pydantic
    - survivor_pool.utils
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from survivor_pool.utils import ensure_utc, utcnow

EventType = Literal[
    "survivor.participant_eliminated",
    "survivor.game_completed",
    "survivor.week_processed",
]


def make_event_id() -> str:
    return str(uuid.uuid4())


def make_correlation_id() -> str:
    return str(uuid.uuid4())


class BaseEvent(BaseModel):
    event_id: str = Field(default_factory=make_event_id)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=make_correlation_id)
    source: str


class ParticipantEliminatedEvent(BaseEvent):
    event_type: Literal["survivor.participant_eliminated"] = "survivor.participant_eliminated"
    game_id: str
    participant_id: str
    player_id: str
    week: int
    reason: str


class GameCompletedEvent(BaseEvent):
    event_type: Literal["survivor.game_completed"] = "survivor.game_completed"
    game_id: str
    winner_id: str | None = None
    co_winner_ids: list[str] = Field(default_factory=list)


class WeekProcessedEvent(BaseEvent):
    event_type: Literal["survivor.week_processed"] = "survivor.week_processed"
    game_id: str
    week: int
    picks_resolved: int = 0
    participants_eliminated: int = 0


def normalize_event_time(event: BaseEvent) -> BaseEvent:
    if event.occurred_at.tzinfo is None:
        return event.model_copy(update={"occurred_at": ensure_utc(event.occurred_at)})
    return event
