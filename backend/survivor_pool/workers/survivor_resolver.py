"""Scheduled survivor results job.

Syncs matchups from the score feed and runs weekly processing for every
open/active game, plus finished games whose picks still await a result.
Everything it calls is idempotent, so overlapping or repeated runs only
cost time.
"""

import logging

from survivor_pool.errors import InfrastructureError, SurvivorError
from survivor_pool.models.survivor import GameStatus
from survivor_pool.services.score_feed import ScoreSyncService
from survivor_pool.services.survivor_service import SurvivorService
from survivor_pool.utils import ensure_utc, utcnow

logger = logging.getLogger("survivor_pool.survivor_resolver")


class SurvivorResultsJob:
    def __init__(self, service: SurvivorService, score_sync: ScoreSyncService | None):
        self._service = service
        self._score_sync = score_sync

    async def _needs_sync(self, season: int, week: int) -> bool:
        """Unknown weeks and weeks with kicked-off but unfinished matchups."""
        matchups = await self._service.store.list_matchups(season, week)
        if not matchups:
            return True
        now = utcnow()
        return any(
            not m.get("complete") and ensure_utc(m["scheduled_start"]) <= now
            for m in matchups
        )

    async def _has_results(self, season: int, week: int) -> bool:
        matchups = await self._service.store.list_matchups(season, week)
        return any(m.get("complete") for m in matchups)

    async def _sync(self, key: tuple[int, int], synced: set[tuple[int, int]]) -> None:
        if not self._score_sync or key in synced or not await self._needs_sync(*key):
            return
        try:
            await self._score_sync.sync_week(*key)
        except InfrastructureError as e:
            logger.warning("Score sync failed for %d week %d: %s", key[0], key[1], e)
        synced.add(key)

    async def _finished_games_with_open_picks(self) -> list[tuple[dict, list[int]]]:
        """Completed/cancelled games whose picks still wait for a matchup result."""
        finished = await self._service.list_games([GameStatus.completed.value, GameStatus.cancelled.value])
        pending = []
        for game in finished:
            picks = await self._service.store.list_picks(game_id=game["_id"], unresolved_only=True)
            if picks:
                pending.append((game, sorted({p["week"] for p in picks})))
        return pending

    async def run(self) -> dict:
        games = await self._service.list_games([GameStatus.open.value, GameStatus.active.value])
        settling = await self._finished_games_with_open_picks()
        if not games and not settling:
            logger.debug("Smart sleep: no open or active survivor games")
            return {"games": 0, "synced_weeks": 0, "processed_weeks": 0}

        synced: set[tuple[int, int]] = set()
        processed = 0
        for game in games:
            for week in range(game["start_week"], game["end_week"] + 1):
                key = (game["season"], week)
                await self._sync(key, synced)
                if not await self._has_results(*key):
                    continue
                try:
                    result = await self._service.process_week(game["_id"], week)
                except SurvivorError as e:
                    logger.error("Survivor processing failed: game=%s week=%d: %s", game["_id"], week, e)
                    break
                processed += 1
                if result.game_status != GameStatus.active:
                    break

        for game, weeks in settling:
            for week in weeks:
                key = (game["season"], week)
                await self._sync(key, synced)
                if not await self._has_results(*key):
                    continue
                try:
                    await self._service.process_week(game["_id"], week)
                except SurvivorError as e:
                    logger.error("Survivor settling failed: game=%s week=%d: %s", game["_id"], week, e)
                    continue
                processed += 1

        total = len(games) + len(settling)
        logger.info(
            "Survivor results run: %d games, %d weeks synced, %d weeks processed",
            total, len(synced), processed,
        )
        return {"games": total, "synced_weeks": len(synced), "processed_weeks": processed}
