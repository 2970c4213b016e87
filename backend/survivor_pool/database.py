"""
backend/survivor_pool/database.py

Purpose:
    MongoDB connection bootstrap and index management for the survivor
    collections. The caller owns the returned client; nothing is kept in
    module globals.

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - survivor_pool.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from survivor_pool.config import Settings

logger = logging.getLogger("survivor_pool.database")


async def connect_db(settings: Settings) -> tuple[AsyncIOMotorClient, AsyncIOMotorDatabase]:
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
        serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
    )
    await client.admin.command("ping")
    logger.info("Connected to MongoDB: %s", settings.MONGO_DB)
    db = client[settings.MONGO_DB]
    await ensure_indexes(db)
    return client, db


async def close_db(client: AsyncIOMotorClient | None) -> None:
    if client:
        client.close()


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Games ----
    await db.survivor_games.create_index([("status", 1), ("created_at", -1)])
    await db.survivor_games.create_index("season")

    # ---- Participants ----
    # One participant row per player per game (backs AlreadyJoined under races).
    try:
        await db.survivor_participants.create_index(
            [("game_id", 1), ("player_id", 1)], unique=True,
        )
    except (DuplicateKeyError, OperationFailure) as exc:
        logger.warning("Skipped unique participant index due to duplicate data: %s", exc)
    await db.survivor_participants.create_index([("game_id", 1), ("status", 1)])

    # ---- Picks ----
    # Re-submission before lock-in overwrites the same (participant, week, slot).
    await db.survivor_picks.create_index(
        [("participant_id", 1), ("week", 1), ("slot", 1)], unique=True,
    )
    await db.survivor_picks.create_index([("participant_id", 1), ("season", 1), ("team_id", 1)])
    await db.survivor_picks.create_index([("game_id", 1), ("week", 1), ("correct", 1)])

    # ---- Matchups (score feed mirror) ----
    await db.survivor_matchups.create_index([("season", 1), ("week", 1), ("scheduled_start", 1)])

    # ---- Week results ----
    await db.survivor_week_results.create_index(
        [("game_id", 1), ("participant_id", 1), ("week", 1)], unique=True,
    )

    logger.info("Survivor indexes ensured")
