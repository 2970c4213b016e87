"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import paths, an in-memory SurvivorStore with
    transaction rollback and fault injection, a recording notification sink,
    a controllable clock and matchup/game builders.
"""

from __future__ import annotations

import asyncio
import copy
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from survivor_pool.errors import AlreadyJoined  # noqa: E402
from survivor_pool.services.survivor_service import SurvivorService  # noqa: E402
from survivor_pool.utils import new_id  # noqa: E402

SEASON = 2024
KICKOFF = datetime(2024, 9, 8, 17, 0, tzinfo=timezone.utc)


@dataclass
class _State:
    games: dict[str, dict] = field(default_factory=dict)
    participants: dict[str, dict] = field(default_factory=dict)
    matchups: dict[str, dict] = field(default_factory=dict)
    picks: dict[str, dict] = field(default_factory=dict)
    week_results: dict[str, dict] = field(default_factory=dict)

    def snapshot(self) -> "_State":
        return copy.deepcopy(self)


class InMemorySurvivorStore:
    """SurvivorStore double. Transactions are serialized and roll back on error."""

    def __init__(self, *, _state=None, _lock=None, _faults=None, _in_tx=False) -> None:
        self.state = _state or _State()
        self._lock = _lock or asyncio.Lock()
        self._faults: list[tuple[str, Callable[..., bool], Exception]] = _faults if _faults is not None else []
        self._in_tx = _in_tx
        self.transactions = 0

    def fail(self, method: str, exc: Exception, when: Callable[..., bool] = lambda *a, **k: True) -> None:
        self._faults.append((method, when, exc))

    def _check(self, method: str, *args, **kwargs) -> None:
        for name, when, exc in self._faults:
            if name == method and when(*args, **kwargs):
                raise exc

    async def run_in_transaction(self, fn):
        if self._in_tx:
            return await fn(self)
        async with self._lock:
            self.transactions += 1
            before = self.state.snapshot()
            tx = InMemorySurvivorStore(_state=self.state, _lock=self._lock, _faults=self._faults, _in_tx=True)
            try:
                return await fn(tx)
            except BaseException:
                self._restore(before)
                raise

    def _restore(self, before: _State) -> None:
        self.state.games = before.games
        self.state.participants = before.participants
        self.state.matchups = before.matchups
        self.state.picks = before.picks
        self.state.week_results = before.week_results

    # ---- games ----

    async def insert_game(self, doc: dict) -> dict:
        self._check("insert_game", doc)
        self.state.games[doc["_id"]] = copy.deepcopy(doc)
        return doc

    async def get_game(self, game_id: str) -> dict | None:
        self._check("get_game", game_id)
        return copy.deepcopy(self.state.games.get(game_id))

    async def list_games(self, statuses: list[str] | None = None) -> list[dict]:
        games = [g for g in self.state.games.values() if not statuses or g["status"] in statuses]
        return copy.deepcopy(sorted(games, key=lambda g: g["created_at"], reverse=True))

    async def update_game(self, game_id, fields, *, expected_statuses=None, expected_revision=None) -> bool:
        self._check("update_game", game_id, fields)
        game = self.state.games.get(game_id)
        if game is None:
            return False
        if expected_statuses is not None and game["status"] not in expected_statuses:
            return False
        if expected_revision is not None and game.get("revision", 0) != expected_revision:
            return False
        game.update(copy.deepcopy(fields))
        game["revision"] = game.get("revision", 0) + 1
        return True

    async def bump_game_revision(self, game_id: str) -> None:
        game = self.state.games.get(game_id)
        if game is not None:
            game["revision"] = game.get("revision", 0) + 1

    # ---- participants ----

    async def insert_participant(self, doc: dict) -> dict:
        self._check("insert_participant", doc)
        for existing in self.state.participants.values():
            if existing["game_id"] == doc["game_id"] and existing["player_id"] == doc["player_id"]:
                raise AlreadyJoined(game_id=doc["game_id"], player_id=doc["player_id"])
        self.state.participants[doc["_id"]] = copy.deepcopy(doc)
        return doc

    async def get_participant(self, participant_id: str) -> dict | None:
        self._check("get_participant", participant_id)
        return copy.deepcopy(self.state.participants.get(participant_id))

    async def find_participant(self, game_id: str, player_id: str) -> dict | None:
        for p in self.state.participants.values():
            if p["game_id"] == game_id and p["player_id"] == player_id:
                return copy.deepcopy(p)
        return None

    async def list_participants(self, game_id: str, status: str | None = None) -> list[dict]:
        rows = [
            p for p in self.state.participants.values()
            if p["game_id"] == game_id and (status is None or p["status"] == status)
        ]
        return copy.deepcopy(sorted(rows, key=lambda p: p["joined_at"]))

    async def count_participants(self, game_id: str, status: str | None = None) -> int:
        return len(await self.list_participants(game_id, status))

    async def eliminate_participant(self, participant_id, week, reason, at) -> bool:
        self._check("eliminate_participant", participant_id)
        p = self.state.participants.get(participant_id)
        if p is None or p["status"] != "active":
            return False
        p.update({
            "status": "eliminated",
            "eliminated_week": week,
            "eliminated_reason": reason,
            "eliminated_at": at,
            "updated_at": at,
        })
        return True

    async def touch_participant(self, participant_id: str, at: datetime) -> None:
        p = self.state.participants.get(participant_id)
        if p is not None:
            p["updated_at"] = at
            p["pick_revision"] = p.get("pick_revision", 0) + 1

    # ---- matchups ----

    async def get_matchup(self, matchup_id: str) -> dict | None:
        self._check("get_matchup", matchup_id)
        return copy.deepcopy(self.state.matchups.get(matchup_id))

    async def list_matchups(self, season: int, week: int) -> list[dict]:
        self._check("list_matchups", season, week)
        rows = [m for m in self.state.matchups.values() if m["season"] == season and m["week"] == week]
        return copy.deepcopy(sorted(rows, key=lambda m: m["scheduled_start"]))

    async def upsert_matchup(self, doc: dict) -> None:
        self._check("upsert_matchup", doc)
        existing = self.state.matchups.setdefault(doc["_id"], {"_id": doc["_id"]})
        existing.update(copy.deepcopy(doc))

    # ---- picks ----

    async def upsert_pick(self, doc: dict) -> dict:
        self._check("upsert_pick", doc)
        for pick in self.state.picks.values():
            if (pick["participant_id"], pick["week"], pick["slot"]) == (doc["participant_id"], doc["week"], doc["slot"]):
                pick.update({k: copy.deepcopy(v) for k, v in doc.items() if k != "_id"})
                return copy.deepcopy(pick)
        stored = {**copy.deepcopy(doc), "_id": doc.get("_id") or new_id()}
        self.state.picks[stored["_id"]] = stored
        return copy.deepcopy(stored)

    async def list_picks(self, *, game_id=None, participant_id=None, season=None, week=None, unresolved_only=False):
        self._check("list_picks", participant_id=participant_id, week=week)
        rows = [
            p for p in self.state.picks.values()
            if (game_id is None or p["game_id"] == game_id)
            and (participant_id is None or p["participant_id"] == participant_id)
            and (season is None or p["season"] == season)
            and (week is None or p["week"] == week)
            and (not unresolved_only or p["correct"] is None)
        ]
        return copy.deepcopy(sorted(rows, key=lambda p: (p["week"], p["slot"])))

    async def resolve_pick(self, pick_id: str, correct: bool, at: datetime) -> bool:
        self._check("resolve_pick", pick_id)
        pick = self.state.picks.get(pick_id)
        if pick is None or pick["correct"] is not None:
            return False
        pick["correct"] = bool(correct)
        pick["resolved_at"] = at
        return True

    # ---- week results ----

    async def record_week_result(self, doc: dict) -> bool:
        key = f"{doc['game_id']}:{doc['participant_id']}:{doc['week']}"
        if key in self.state.week_results:
            return False
        self.state.week_results[key] = {**copy.deepcopy(doc), "_id": doc.get("_id") or new_id()}
        return True

    async def list_week_results(self, game_id: str) -> list[dict]:
        return copy.deepcopy([r for r in self.state.week_results.values() if r["game_id"] == game_id])


class RecordingSink:
    def __init__(self) -> None:
        self.eliminated: list[dict[str, Any]] = []
        self.completed: list[dict[str, Any]] = []
        self.weeks: list[dict[str, Any]] = []

    def participant_eliminated(self, **kwargs) -> None:
        self.eliminated.append(kwargs)

    def game_completed(self, **kwargs) -> None:
        self.completed.append(kwargs)

    def week_processed(self, **kwargs) -> None:
        self.weeks.append(kwargs)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_matchup(
    away: str,
    home: str,
    *,
    week: int = 1,
    season: int = SEASON,
    kickoff: datetime = KICKOFF,
    home_score: int | None = None,
    away_score: int | None = None,
    complete: bool = False,
) -> dict:
    return {
        "_id": f"{season}-{week}-{away}@{home}",
        "season": season,
        "week": week,
        "home_team_id": home,
        "away_team_id": away,
        "home_score": home_score,
        "away_score": away_score,
        "complete": complete,
        "scheduled_start": kickoff,
        "source": "test",
    }


async def finish(store: InMemorySurvivorStore, matchup_id: str, *, home: int, away: int) -> None:
    await store.upsert_matchup({"_id": matchup_id, "home_score": home, "away_score": away, "complete": True})


@pytest.fixture
def store() -> InMemorySurvivorStore:
    return InMemorySurvivorStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> FakeClock:
    # Wednesday before the week 1 kickoff; picks are still open.
    return FakeClock(KICKOFF - timedelta(days=4))


@pytest.fixture
def service(store, sink, clock) -> SurvivorService:
    return SurvivorService(store, sink, clock=clock)


@pytest.fixture
def game_factory(service):
    async def _create(**overrides) -> dict:
        config = {
            "name": "Office Pool",
            "season": SEASON,
            "capacity": 100,
            "start_week": 1,
            "end_week": 18,
            "two_pick_week": 12,
            **overrides,
        }
        return await service.create_game(config)

    return _create
