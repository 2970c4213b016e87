import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from survivor_pool.errors import ScoreFeedUnavailable
from survivor_pool.models.survivor import MatchupData
from survivor_pool.utils import ensure_utc

logger = logging.getLogger("survivor_pool.espn")

REGULAR_SEASON_WEEKS = 18

# ESPN abbreviations that differ from ours.
TEAM_ALIASES = {"WSH": "WAS"}


def matchup_key(season: int, week: int, away_team_id: str, home_team_id: str) -> str:
    """Feed-independent matchup id, so a fallback feed updates the same row."""
    return f"{season}-{week}-{away_team_id}@{home_team_id}"


def _team_id(competitor: dict) -> str:
    abbreviation = str(competitor.get("team", {}).get("abbreviation", "")).upper()
    return TEAM_ALIASES.get(abbreviation, abbreviation)


def _parse_score(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        raw = raw.get("value")
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return None


def _parse_date(raw: str) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
    except ValueError:
        return None


class EspnScoreFeed:
    """ESPN public NFL scoreboard: free, no key."""

    name = "espn"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_scoreboard(self, season: int, week: int) -> list[dict]:
        # Weeks after the regular season live in ESPN's postseason (type 3).
        if week > REGULAR_SEASON_WEEKS:
            season_type, espn_week = 3, week - REGULAR_SEASON_WEEKS
        else:
            season_type, espn_week = 2, week
        params = {"dates": str(season), "seasontype": str(season_type), "week": str(espn_week)}
        try:
            resp = await self._client.get(f"{self._base_url}/scoreboard", params=params)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ScoreFeedUnavailable(f"ESPN scoreboard failed for {season} week {week}: {e}") from e
        return data.get("events", [])

    async def fetch_week(self, season: int, week: int) -> list[MatchupData]:
        events = await self._fetch_scoreboard(season, week)

        matchups = []
        for event in events:
            competitions = event.get("competitions", [])
            if not competitions:
                continue
            comp = competitions[0]

            competitors = comp.get("competitors", [])
            if len(competitors) < 2:
                continue

            home = None
            away = None
            for c in competitors:
                if c.get("homeAway") == "home":
                    home = c
                else:
                    away = c
            if not home or not away:
                home, away = competitors[0], competitors[1]

            home_team_id, away_team_id = _team_id(home), _team_id(away)
            kickoff = _parse_date(event.get("date") or comp.get("date", ""))
            if not home_team_id or not away_team_id or kickoff is None:
                logger.warning("ESPN: skipping event %s without teams or kickoff", event.get("id"))
                continue

            status_type = comp.get("status", {}).get("type", {})
            started = status_type.get("state") in ("in", "post")
            matchups.append(MatchupData(
                id=matchup_key(season, week, away_team_id, home_team_id),
                season=season,
                week=week,
                home_team_id=home_team_id,
                away_team_id=away_team_id,
                home_score=_parse_score(home.get("score")) if started else None,
                away_score=_parse_score(away.get("score")) if started else None,
                complete=bool(status_type.get("completed")),
                scheduled_start=kickoff,
                source=self.name,
            ))

        logger.info("ESPN: %d matchups for season %d week %d", len(matchups), season, week)
        return matchups
