"""
backend/survivor_pool/services/score_feed.py

Purpose:
    Score feed contract, the static schedule feed, the prioritized fallback
    chain (ESPN first, static file last) and the sync step that mirrors feed
    rows into the survivor_matchups collection.

Dependencies:
    - pydantic (MatchupData validation)
    - survivor_pool.providers.espn
    - survivor_pool.services.survivor_repository
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

import httpx
from pydantic import ValidationError

from survivor_pool.config import Settings
from survivor_pool.errors import ScoreFeedUnavailable
from survivor_pool.models.survivor import MatchupData, ScoreSyncResult
from survivor_pool.providers.espn import EspnScoreFeed, matchup_key
from survivor_pool.services.survivor_repository import SurvivorStore
from survivor_pool.utils import utcnow

logger = logging.getLogger("survivor_pool.score_feed")


class ScoreFeed(Protocol):
    name: str

    async def fetch_week(self, season: int, week: int) -> list[MatchupData]: ...


class StaticScoreFeed:
    """Schedule/results from a JSON file: a list of rows or ``{"matchups": [...]}``.

    Rows without an ``id`` get the canonical ``season-week-AWAY@HOME`` key.
    """

    name = "static"

    def __init__(self, path: str | Path):
        self._path = Path(path)

    def _load_rows(self) -> list[dict]:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ScoreFeedUnavailable(f"Static schedule {self._path} unreadable: {exc}") from exc
        rows = raw.get("matchups", []) if isinstance(raw, dict) else raw
        if not isinstance(rows, list):
            raise ScoreFeedUnavailable(f"Static schedule {self._path} has no matchup list")
        return rows

    async def fetch_week(self, season: int, week: int) -> list[MatchupData]:
        matchups: list[MatchupData] = []
        for row in self._load_rows():
            if not isinstance(row, dict) or row.get("season") != season or row.get("week") != week:
                continue
            payload = {**row, "source": self.name}
            payload.setdefault(
                "id", matchup_key(season, week, row.get("away_team_id", ""), row.get("home_team_id", "")),
            )
            try:
                matchups.append(MatchupData.model_validate(payload))
            except ValidationError as exc:
                logger.warning("Static feed: skipping invalid row %s: %s", payload.get("id"), exc)
        return matchups


class PrioritizedScoreFeed:
    """Try feeds in order; the first one that answers with rows wins."""

    name = "prioritized"

    def __init__(self, feeds: list[ScoreFeed]):
        self._feeds = list(feeds)

    @property
    def feed_names(self) -> list[str]:
        return [feed.name for feed in self._feeds]

    async def fetch_week(self, season: int, week: int) -> list[MatchupData]:
        errors: list[str] = []
        for feed in self._feeds:
            try:
                matchups = await feed.fetch_week(season, week)
            except ScoreFeedUnavailable as exc:
                logger.warning("Score feed %s unavailable, trying next: %s", feed.name, exc)
                errors.append(f"{feed.name}: {exc}")
                continue
            if matchups:
                return matchups
            logger.info("Score feed %s returned no matchups for %d week %d", feed.name, season, week)
        raise ScoreFeedUnavailable(
            f"No score feed delivered season {season} week {week}"
            + (f" ({'; '.join(errors)})" if errors else "")
        )


def build_score_feed(settings: Settings, http_client: httpx.AsyncClient | None = None) -> PrioritizedScoreFeed:
    feeds: list[ScoreFeed] = []
    for name in settings.score_feed_names():
        if name == "espn":
            feeds.append(EspnScoreFeed(
                settings.ESPN_BASE_URL,
                timeout=settings.SCORE_FEED_TIMEOUT_SECONDS,
                client=http_client,
            ))
        elif name == "static":
            if settings.STATIC_SCHEDULE_PATH:
                feeds.append(StaticScoreFeed(settings.STATIC_SCHEDULE_PATH))
        else:
            logger.warning("Unknown score feed %r in SCORE_FEEDS, ignored", name)
    return PrioritizedScoreFeed(feeds)


def _malformed_reason(matchup: MatchupData, season: int, week: int) -> str | None:
    if matchup.season != season or matchup.week != week:
        return f"belongs to {matchup.season} week {matchup.week}"
    if not matchup.home_team_id or not matchup.away_team_id or matchup.home_team_id == matchup.away_team_id:
        return "invalid teams"
    if matchup.complete:
        for score in (matchup.home_score, matchup.away_score):
            if score is None or score < 0:
                return "complete without valid scores"
    return None


class ScoreSyncService:
    """Mirror one season week from the feed into survivor_matchups."""

    def __init__(self, store: SurvivorStore, feed: ScoreFeed):
        self._store = store
        self._feed = feed

    async def sync_week(self, season: int, week: int) -> ScoreSyncResult:
        matchups = await self._feed.fetch_week(season, week)
        result = ScoreSyncResult(season=season, week=week)
        now = utcnow()

        for matchup in matchups:
            reason = _malformed_reason(matchup, season, week)
            if reason:
                logger.warning("Skipping malformed matchup %s: %s", matchup.id, reason)
                result.skipped += 1
                continue

            existing = await self._store.get_matchup(matchup.id)
            if existing and existing.get("complete") and not matchup.complete:
                # A lagging feed must not reopen a final result.
                result.skipped += 1
                continue

            await self._store.upsert_matchup({
                "_id": matchup.id,
                "season": matchup.season,
                "week": matchup.week,
                "home_team_id": matchup.home_team_id,
                "away_team_id": matchup.away_team_id,
                "home_score": matchup.home_score,
                "away_score": matchup.away_score,
                "complete": matchup.complete,
                "scheduled_start": matchup.scheduled_start,
                "source": matchup.source,
                "synced_at": now,
            })
            result.upserted += 1
            result.source = result.source or matchup.source

        logger.info(
            "Score sync %d week %d: %d upserted, %d skipped (source=%s)",
            season, week, result.upserted, result.skipped, result.source,
        )
        return result
