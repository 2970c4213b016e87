"""
backend/survivor_pool/services/event_handlers/survivor_handlers.py

Purpose:
    Subscribers for survivor events. Eliminations and game completions are
    written to the survivor_notifications outbox that email/SMS delivery reads
    from. Writes are keyed by event_id so redelivery is a no-op.

Dependencies:
    - motor (database handle passed in)
    - survivor_pool.services.event_models
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from survivor_pool.services.event_models import BaseEvent
from survivor_pool.utils import utcnow

logger = logging.getLogger("survivor_pool.event_handlers.survivor")


def _outbox_doc(event: BaseEvent, kind: str, recipients: list[str], payload: dict) -> dict:
    return {
        "kind": kind,
        "recipients": recipients,
        "payload": payload,
        "correlation_id": event.correlation_id,
        "occurred_at": event.occurred_at,
        "created_at": utcnow(),
        "delivered_at": None,
    }


def make_survivor_handlers(db) -> dict[str, Callable[[BaseEvent], Awaitable[None]]]:
    async def handle_participant_eliminated(event: BaseEvent) -> None:
        player_id = str(getattr(event, "player_id", "") or "")
        if not player_id:
            return
        doc = _outbox_doc(event, "eliminated", [player_id], {
            "game_id": getattr(event, "game_id", None),
            "week": getattr(event, "week", None),
            "reason": getattr(event, "reason", None),
        })
        await db.survivor_notifications.update_one(
            {"_id": event.event_id}, {"$setOnInsert": doc}, upsert=True,
        )
        logger.info("Queued elimination alert: player=%s game=%s", player_id, doc["payload"]["game_id"])

    async def handle_game_completed(event: BaseEvent) -> None:
        winner_id = getattr(event, "winner_id", None)
        co_winner_ids = list(getattr(event, "co_winner_ids", []) or [])
        recipients = [winner_id] if winner_id else co_winner_ids
        doc = _outbox_doc(event, "game_completed", recipients, {
            "game_id": getattr(event, "game_id", None),
            "winner_id": winner_id,
            "co_winner_ids": co_winner_ids,
        })
        await db.survivor_notifications.update_one(
            {"_id": event.event_id}, {"$setOnInsert": doc}, upsert=True,
        )
        logger.info("Queued completion alert: game=%s winner=%s", doc["payload"]["game_id"], winner_id)

    return {
        "survivor.participant_eliminated": handle_participant_eliminated,
        "survivor.game_completed": handle_game_completed,
    }
