"""
backend/tests/test_pick_validator.py

Purpose:
    Pick submission rules, their evaluation order and upsert semantics.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from survivor_pool.errors import (
    GameNotFound,
    InvalidSlotForWeek,
    MatchupLocked,
    NotActiveParticipant,
    TeamAlreadyUsed,
    TeamNotInMatchup,
    WeekOutOfRange,
)

from conftest import KICKOFF, finish, make_matchup


def _week_kickoff(week: int):
    return KICKOFF + timedelta(days=7 * (week - 1))


@pytest.fixture
def setup(service, store, game_factory):
    async def _setup():
        game = await game_factory()
        participant = await service.join_game(game["_id"], "alice")
        for week in (1, 2, 12):
            for away, home in (("KC", "DEN"), ("BUF", "MIA"), ("SF", "SEA")):
                await store.upsert_matchup(make_matchup(away, home, week=week, kickoff=_week_kickoff(week)))
        return game, participant

    return _setup


def _mid(week: int, away: str, home: str) -> str:
    return f"2024-{week}-{away}@{home}"


@pytest.mark.asyncio
async def test_valid_pick_is_stored_unresolved(service, setup):
    game, participant = await setup()
    pick = await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))

    assert pick["participant_id"] == participant["_id"]
    assert pick["team_id"] == "KC"
    assert pick["opponent_team_id"] == "DEN"
    assert pick["slot"] == 1
    assert pick["correct"] is None
    assert pick["season"] == 2024


@pytest.mark.asyncio
async def test_resubmission_overwrites_and_frees_team(service, store, setup):
    game, _ = await setup()
    first = await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))
    second = await service.submit_pick(game["_id"], "alice", 1, "MIA", _mid(1, "BUF", "MIA"))

    assert second["_id"] == first["_id"]
    assert len(await store.list_picks(game_id=game["_id"])) == 1

    # KC is no longer used, so it can be picked in week 2.
    pick = await service.submit_pick(game["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN"))
    assert pick["team_id"] == "KC"


@pytest.mark.asyncio
async def test_team_already_used_rejected_without_write(service, store, setup):
    game, _ = await setup()
    await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))

    with pytest.raises(TeamAlreadyUsed) as exc:
        await service.submit_pick(game["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN"))

    assert exc.value.code == "team_already_used"
    picks = await store.list_picks(game_id=game["_id"])
    assert [(p["week"], p["team_id"]) for p in picks] == [(1, "KC")]


@pytest.mark.asyncio
async def test_unknown_game(service, setup):
    with pytest.raises(GameNotFound):
        await service.submit_pick("missing", "alice", 1, "KC", _mid(1, "KC", "DEN"))


@pytest.mark.asyncio
async def test_non_participant_and_eliminated_rejected(service, setup):
    game, participant = await setup()
    with pytest.raises(NotActiveParticipant):
        await service.submit_pick(game["_id"], "mallory", 1, "KC", _mid(1, "KC", "DEN"))

    await service.start_game(game["_id"])
    await service.tracker.eliminate(participant["_id"], 1, "incorrect_pick")
    with pytest.raises(NotActiveParticipant):
        await service.submit_pick(game["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN"))


@pytest.mark.asyncio
async def test_cancelled_game_rejects_picks(service, setup):
    game, _ = await setup()
    await service.cancel_game(game["_id"])
    with pytest.raises(NotActiveParticipant):
        await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))


@pytest.mark.asyncio
async def test_matchup_locked_after_kickoff_or_completion(service, store, clock, setup):
    game, _ = await setup()
    with pytest.raises(MatchupLocked):
        await service.submit_pick(game["_id"], "alice", 1, "KC", "2024-1-NOPE@NONE")

    await store.upsert_matchup({"_id": _mid(2, "SF", "SEA"), "complete": True, "home_score": 1, "away_score": 0})
    with pytest.raises(MatchupLocked):
        await service.submit_pick(game["_id"], "alice", 2, "SF", _mid(2, "SF", "SEA"))

    clock.now = KICKOFF
    with pytest.raises(MatchupLocked):
        await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))


@pytest.mark.asyncio
async def test_team_not_in_matchup(service, setup):
    game, _ = await setup()
    with pytest.raises(TeamNotInMatchup):
        await service.submit_pick(game["_id"], "alice", 1, "BUF", _mid(1, "KC", "DEN"))


@pytest.mark.asyncio
async def test_week_out_of_range(service, game_factory, store, setup):
    game, _ = await setup()
    # Matchup belongs to week 2, pick claims week 1.
    with pytest.raises(WeekOutOfRange):
        await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(2, "KC", "DEN"))

    short = await game_factory(name="Short", start_week=1, end_week=1, two_pick_week=1)
    await service.join_game(short["_id"], "alice")
    with pytest.raises(WeekOutOfRange):
        await service.submit_pick(short["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN"))


@pytest.mark.asyncio
async def test_slot_rules(service, setup):
    game, _ = await setup()
    with pytest.raises(InvalidSlotForWeek):
        await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"), slot=2)
    with pytest.raises(InvalidSlotForWeek):
        await service.submit_pick(game["_id"], "alice", 12, "KC", _mid(12, "KC", "DEN"), slot=3)

    first = await service.submit_pick(game["_id"], "alice", 12, "KC", _mid(12, "KC", "DEN"), slot=1)
    second = await service.submit_pick(game["_id"], "alice", 12, "MIA", _mid(12, "BUF", "MIA"), slot=2)
    assert (first["slot"], second["slot"]) == (1, 2)


@pytest.mark.asyncio
async def test_first_failing_rule_wins(service, clock, setup):
    game, _ = await setup()
    await service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN"))

    # Used team and invalid slot: the ledger check comes first.
    with pytest.raises(TeamAlreadyUsed):
        await service.submit_pick(game["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN"), slot=2)

    # Kicked off and wrong team: the lock check comes first.
    clock.now = KICKOFF + timedelta(minutes=5)
    with pytest.raises(MatchupLocked):
        await service.submit_pick(game["_id"], "alice", 1, "BUF", _mid(1, "KC", "DEN"))


@pytest.mark.asyncio
async def test_concurrent_submissions_never_reuse_team(service, store, setup):
    game, _ = await setup()
    results = await asyncio.gather(
        service.submit_pick(game["_id"], "alice", 1, "KC", _mid(1, "KC", "DEN")),
        service.submit_pick(game["_id"], "alice", 2, "KC", _mid(2, "KC", "DEN")),
        return_exceptions=True,
    )
    assert sum(isinstance(r, dict) for r in results) == 1
    assert sum(isinstance(r, TeamAlreadyUsed) for r in results) == 1
    teams = [p["team_id"] for p in await store.list_picks(game_id=game["_id"])]
    assert teams == ["KC"]


@pytest.mark.asyncio
async def test_stored_pick_locks_at_its_own_kickoff(service, store, clock, setup):
    game, participant = await setup()
    await store.upsert_matchup(make_matchup("BUF", "MIA", kickoff=KICKOFF + timedelta(hours=4)))
    await service.submit_pick(game["_id"], "alice", 1, "DEN", _mid(1, "KC", "DEN"))

    # The later game is still open, but the pick it would replace already kicked off.
    clock.now = KICKOFF + timedelta(minutes=30)
    with pytest.raises(MatchupLocked) as exc:
        await service.submit_pick(game["_id"], "alice", 1, "MIA", _mid(1, "BUF", "MIA"))
    assert exc.value.context["matchup_id"] == _mid(1, "KC", "DEN")

    # Still locked once the game is final and lost.
    await finish(store, _mid(1, "KC", "DEN"), home=10, away=30)
    with pytest.raises(MatchupLocked):
        await service.submit_pick(game["_id"], "alice", 1, "MIA", _mid(1, "BUF", "MIA"))

    picks = await store.list_picks(participant_id=participant["_id"])
    assert [(p["team_id"], p["matchup_id"]) for p in picks] == [("DEN", _mid(1, "KC", "DEN"))]
    assert "DEN" not in (await service.get_available_teams(game["_id"], "alice"))["available_team_ids"]
