"""
backend/survivor_pool/services/survivor_repository.py

Purpose:
    Persistence contract for the survivor core plus its MongoDB implementation.
    All status transitions are guarded writes (compare-and-set on the current
    value) so re-runs are idempotent, and multi-document work runs through
    run_in_transaction(), which leaves retries to the driver's
    ClientSession.with_transaction().

Dependencies:
    - motor (client sessions)
    - pymongo
    - survivor_pool.errors
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar

from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from survivor_pool.errors import AlreadyJoined, StoreUnavailable
from survivor_pool.utils import new_id

logger = logging.getLogger("survivor_pool.survivor_repository")

T = TypeVar("T")

_RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


class SurvivorStore(Protocol):
    """Everything the survivor core needs from durable storage.

    Documents are plain dicts keyed by string ``_id``. Methods that change a
    status return ``True`` only when this call performed the transition.
    """

    async def run_in_transaction(self, fn: Callable[["SurvivorStore"], Awaitable[T]]) -> T: ...

    # ---- games ----
    async def insert_game(self, doc: dict) -> dict: ...
    async def get_game(self, game_id: str) -> dict | None: ...
    async def list_games(self, statuses: list[str] | None = None) -> list[dict]: ...
    async def update_game(
        self,
        game_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: list[str] | None = None,
        expected_revision: int | None = None,
    ) -> bool: ...
    async def bump_game_revision(self, game_id: str) -> None: ...

    # ---- participants ----
    async def insert_participant(self, doc: dict) -> dict: ...
    async def get_participant(self, participant_id: str) -> dict | None: ...
    async def find_participant(self, game_id: str, player_id: str) -> dict | None: ...
    async def list_participants(self, game_id: str, status: str | None = None) -> list[dict]: ...
    async def count_participants(self, game_id: str, status: str | None = None) -> int: ...
    async def eliminate_participant(
        self, participant_id: str, week: int, reason: str, at: datetime,
    ) -> bool: ...
    async def touch_participant(self, participant_id: str, at: datetime) -> None: ...

    # ---- matchups ----
    async def get_matchup(self, matchup_id: str) -> dict | None: ...
    async def list_matchups(self, season: int, week: int) -> list[dict]: ...
    async def upsert_matchup(self, doc: dict) -> None: ...

    # ---- picks ----
    async def upsert_pick(self, doc: dict) -> dict: ...
    async def list_picks(
        self,
        *,
        game_id: str | None = None,
        participant_id: str | None = None,
        season: int | None = None,
        week: int | None = None,
        unresolved_only: bool = False,
    ) -> list[dict]: ...
    async def resolve_pick(self, pick_id: str, correct: bool, at: datetime) -> bool: ...

    # ---- week results ----
    async def record_week_result(self, doc: dict) -> bool: ...
    async def list_week_results(self, game_id: str) -> list[dict]: ...


class MongoSurvivorStore:
    """SurvivorStore on MongoDB. Transactions need a replica set deployment."""

    def __init__(self, db, client=None, *, max_attempts: int = 5, session=None) -> None:
        self._db = db
        self._client = client
        self._max_attempts = max(1, int(max_attempts))
        self._session = session

    def _bind(self, session) -> "MongoSurvivorStore":
        return MongoSurvivorStore(
            self._db, self._client, max_attempts=self._max_attempts, session=session,
        )

    async def run_in_transaction(self, fn: Callable[[SurvivorStore], Awaitable[T]]) -> T:
        if self._session is not None:
            # Already inside a transaction: join it.
            return await fn(self)
        if self._client is None:
            raise StoreUnavailable("Transactions need a Mongo client.")

        attempts = 0

        async def _callback(session) -> T:
            # The driver re-runs this on TransientTransactionError and retries
            # only the commit on UnknownTransactionCommitResult.
            nonlocal attempts
            attempts += 1
            if attempts > self._max_attempts:
                raise StoreUnavailable(
                    f"Transaction still conflicting after {self._max_attempts} attempts."
                )
            if attempts > 1:
                logger.warning("Transaction conflict, retrying (attempt %d/%d)", attempts, self._max_attempts)
            return await fn(self._bind(session))

        try:
            async with await self._client.start_session() as session:
                return await session.with_transaction(_callback)
        except PyMongoError as exc:
            retryable = any(exc.has_error_label(label) for label in _RETRYABLE_LABELS)
            if isinstance(exc, ConnectionFailure) or retryable:
                raise StoreUnavailable(str(exc)) from exc
            raise

    # ---- games ----

    async def insert_game(self, doc: dict) -> dict:
        await self._db.survivor_games.insert_one(doc, session=self._session)
        return doc

    async def get_game(self, game_id: str) -> dict | None:
        return await self._db.survivor_games.find_one({"_id": game_id}, session=self._session)

    async def list_games(self, statuses: list[str] | None = None) -> list[dict]:
        query: dict[str, Any] = {}
        if statuses:
            query["status"] = {"$in": list(statuses)}
        cursor = self._db.survivor_games.find(query, session=self._session).sort("created_at", -1)
        return await cursor.to_list(length=1000)

    async def update_game(
        self,
        game_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: list[str] | None = None,
        expected_revision: int | None = None,
    ) -> bool:
        query: dict[str, Any] = {"_id": game_id}
        if expected_statuses is not None:
            query["status"] = {"$in": list(expected_statuses)}
        if expected_revision is not None:
            query["revision"] = expected_revision
        result = await self._db.survivor_games.update_one(
            query,
            {"$set": fields, "$inc": {"revision": 1}},
            session=self._session,
        )
        return result.modified_count == 1

    async def bump_game_revision(self, game_id: str) -> None:
        await self._db.survivor_games.update_one(
            {"_id": game_id}, {"$inc": {"revision": 1}}, session=self._session,
        )

    # ---- participants ----

    async def insert_participant(self, doc: dict) -> dict:
        try:
            await self._db.survivor_participants.insert_one(doc, session=self._session)
        except DuplicateKeyError:
            raise AlreadyJoined(game_id=doc.get("game_id"), player_id=doc.get("player_id"))
        return doc

    async def get_participant(self, participant_id: str) -> dict | None:
        return await self._db.survivor_participants.find_one(
            {"_id": participant_id}, session=self._session,
        )

    async def find_participant(self, game_id: str, player_id: str) -> dict | None:
        return await self._db.survivor_participants.find_one(
            {"game_id": game_id, "player_id": player_id}, session=self._session,
        )

    async def list_participants(self, game_id: str, status: str | None = None) -> list[dict]:
        query: dict[str, Any] = {"game_id": game_id}
        if status:
            query["status"] = status
        cursor = self._db.survivor_participants.find(query, session=self._session).sort("joined_at", 1)
        return await cursor.to_list(length=10_000)

    async def count_participants(self, game_id: str, status: str | None = None) -> int:
        query: dict[str, Any] = {"game_id": game_id}
        if status:
            query["status"] = status
        return await self._db.survivor_participants.count_documents(query, session=self._session)

    async def eliminate_participant(
        self, participant_id: str, week: int, reason: str, at: datetime,
    ) -> bool:
        result = await self._db.survivor_participants.update_one(
            {"_id": participant_id, "status": "active"},
            {"$set": {
                "status": "eliminated",
                "eliminated_week": week,
                "eliminated_reason": reason,
                "eliminated_at": at,
                "updated_at": at,
            }},
            session=self._session,
        )
        return result.modified_count == 1

    async def touch_participant(self, participant_id: str, at: datetime) -> None:
        await self._db.survivor_participants.update_one(
            {"_id": participant_id},
            {"$set": {"updated_at": at}, "$inc": {"pick_revision": 1}},
            session=self._session,
        )

    # ---- matchups ----

    async def get_matchup(self, matchup_id: str) -> dict | None:
        return await self._db.survivor_matchups.find_one({"_id": matchup_id}, session=self._session)

    async def list_matchups(self, season: int, week: int) -> list[dict]:
        cursor = self._db.survivor_matchups.find(
            {"season": season, "week": week}, session=self._session,
        ).sort("scheduled_start", 1)
        return await cursor.to_list(length=100)

    async def upsert_matchup(self, doc: dict) -> None:
        fields = {k: v for k, v in doc.items() if k != "_id"}
        await self._db.survivor_matchups.update_one(
            {"_id": doc["_id"]}, {"$set": fields}, upsert=True, session=self._session,
        )

    # ---- picks ----

    async def upsert_pick(self, doc: dict) -> dict:
        key = {
            "participant_id": doc["participant_id"],
            "week": doc["week"],
            "slot": doc["slot"],
        }
        fields = {k: v for k, v in doc.items() if k not in key and k != "_id"}
        return await self._db.survivor_picks.find_one_and_update(
            key,
            {"$set": fields, "$setOnInsert": {"_id": doc.get("_id") or new_id()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=self._session,
        )

    async def list_picks(
        self,
        *,
        game_id: str | None = None,
        participant_id: str | None = None,
        season: int | None = None,
        week: int | None = None,
        unresolved_only: bool = False,
    ) -> list[dict]:
        query: dict[str, Any] = {}
        if game_id is not None:
            query["game_id"] = game_id
        if participant_id is not None:
            query["participant_id"] = participant_id
        if season is not None:
            query["season"] = season
        if week is not None:
            query["week"] = week
        if unresolved_only:
            query["correct"] = None
        cursor = self._db.survivor_picks.find(query, session=self._session).sort(
            [("week", 1), ("slot", 1)]
        )
        return await cursor.to_list(length=10_000)

    async def resolve_pick(self, pick_id: str, correct: bool, at: datetime) -> bool:
        result = await self._db.survivor_picks.update_one(
            {"_id": pick_id, "correct": None},
            {"$set": {"correct": bool(correct), "resolved_at": at}},
            session=self._session,
        )
        return result.modified_count == 1

    # ---- week results ----

    async def record_week_result(self, doc: dict) -> bool:
        key = {
            "game_id": doc["game_id"],
            "participant_id": doc["participant_id"],
            "week": doc["week"],
        }
        result = await self._db.survivor_week_results.update_one(
            key,
            {"$setOnInsert": {**doc, "_id": doc.get("_id") or new_id()}},
            upsert=True,
            session=self._session,
        )
        return result.upserted_id is not None

    async def list_week_results(self, game_id: str) -> list[dict]:
        cursor = self._db.survivor_week_results.find({"game_id": game_id}, session=self._session)
        return await cursor.to_list(length=100_000)
