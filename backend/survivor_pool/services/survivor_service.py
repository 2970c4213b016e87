"""Survivor mode: pick one (later two) winning teams per week, eliminated on loss or tie.

Components, leaf first:

- ``TeamUsageLedger``: teams a participant already used this season.
- ``PickValidator``: accepts or rejects a pick, upserts it per (participant, week, slot).
- ``resolve_matchup``: win/loss/tie for a completed matchup (pure).
- ``WeeklyResultProcessor``: resolves a week's picks and hands losers over.
- ``EliminationTracker``: active -> eliminated, then one finalization per batch.
- ``GameLifecycleManager``: create/join/start/cancel and winner determination.

``SurvivorService`` wires them around one injected store, notification sink
and clock. Every multi-document change runs inside ``store.run_in_transaction``;
notifications are sent only after the transaction committed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from survivor_pool.errors import (
    AlreadyJoined,
    GameFull,
    GameNotFound,
    GameNotOpen,
    InfrastructureError,
    InvalidConfiguration,
    InvalidSlotForWeek,
    InvalidTransition,
    InvariantViolation,
    MalformedMatchup,
    MatchupLocked,
    NotActiveParticipant,
    TeamAlreadyUsed,
    TeamNotInMatchup,
    WeekOutOfRange,
)
from survivor_pool.models.survivor import (
    EliminationReason,
    GameStatus,
    InvariantReport,
    MatchupOutcome,
    MatchupResolution,
    ParticipantStatus,
    SurvivorGameCreate,
    WeekProcessingResult,
)
from survivor_pool.services.notifications import LoggingNotificationSink, NotificationSink
from survivor_pool.services.survivor_repository import SurvivorStore
from survivor_pool.utils import ensure_utc, new_id, utcnow

logger = logging.getLogger("survivor_pool.survivor_service")

Clock = Callable[[], datetime]

# Highest NFL week including postseason.
MAX_WEEK = 22
MAX_SLOTS = 2

NFL_TEAM_IDS: tuple[str, ...] = (
    "ARI", "ATL", "BAL", "BUF", "CAR", "CHI", "CIN", "CLE",
    "DAL", "DEN", "DET", "GB", "HOU", "IND", "JAX", "KC",
    "LAC", "LAR", "LV", "MIA", "MIN", "NE", "NO", "NYG",
    "NYJ", "PHI", "PIT", "SEA", "SF", "TB", "TEN", "WAS",
)

ALLOWED_TRANSITIONS: dict[GameStatus, set[GameStatus]] = {
    GameStatus.open: {GameStatus.active, GameStatus.cancelled},
    GameStatus.active: {GameStatus.completed},
    GameStatus.completed: set(),  # terminal
    GameStatus.cancelled: set(),  # terminal
}

# Games in which players can still submit picks.
PICKABLE_STATUSES = frozenset({GameStatus.open.value, GameStatus.active.value})


def _notify(method: Callable[..., None], **kwargs: Any) -> None:
    try:
        method(**kwargs)
    except Exception:
        logger.exception("Notification sink failed: %s", getattr(method, "__name__", method))


def required_picks(game: dict, week: int) -> int:
    return 2 if week >= game["two_pick_week"] else 1


# ---------------------------------------------------------------------------
# Result Resolver
# ---------------------------------------------------------------------------


def _score(value: Any, side: str, matchup_id: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedMatchup(f"Invalid {side} score {value!r} for matchup {matchup_id}", matchup_id)
    return value


def resolve_matchup(matchup: dict) -> MatchupResolution:
    """Win/loss/tie for a completed matchup. Tie is its own outcome; callers apply tie policy."""
    matchup_id = str(matchup.get("_id"))
    home_team_id = matchup.get("home_team_id")
    away_team_id = matchup.get("away_team_id")
    if not home_team_id or not away_team_id or home_team_id == away_team_id:
        raise MalformedMatchup(f"Matchup {matchup_id} has invalid teams", matchup_id)

    home = _score(matchup.get("home_score"), "home", matchup_id)
    away = _score(matchup.get("away_score"), "away", matchup_id)
    if home > away:
        return MatchupResolution(outcome=MatchupOutcome.home_win, winning_team_id=home_team_id)
    if away > home:
        return MatchupResolution(outcome=MatchupOutcome.away_win, winning_team_id=away_team_id)
    return MatchupResolution(outcome=MatchupOutcome.tie, winning_team_id=None)


# ---------------------------------------------------------------------------
# Team Usage Ledger
# ---------------------------------------------------------------------------


class TeamUsageLedger:
    """Read-only view of the teams a participant already picked in a season."""

    def __init__(self, store: SurvivorStore) -> None:
        self._store = store

    async def used_team_ids(
        self,
        participant_id: str,
        season: int,
        *,
        excluding: tuple[int, int] | None = None,
    ) -> set[str]:
        """Teams used so far. ``excluding`` is a (week, slot) whose pick is about to be replaced."""
        picks = await self._store.list_picks(participant_id=participant_id, season=season)
        return {
            pick["team_id"]
            for pick in picks
            if excluding is None or (pick["week"], pick["slot"]) != excluding
        }

    async def is_used(
        self,
        participant_id: str,
        season: int,
        team_id: str,
        *,
        excluding: tuple[int, int] | None = None,
    ) -> bool:
        return team_id in await self.used_team_ids(participant_id, season, excluding=excluding)

    async def available_team_ids(
        self, participant_id: str, season: int, all_team_ids: Iterable[str] = NFL_TEAM_IDS,
    ) -> list[str]:
        used = await self.used_team_ids(participant_id, season)
        return [team_id for team_id in all_team_ids if team_id not in used]


# ---------------------------------------------------------------------------
# Game Lifecycle Manager
# ---------------------------------------------------------------------------


def _validate_config(config: SurvivorGameCreate) -> None:
    problems: list[str] = []
    if not config.name or not config.name.strip():
        problems.append("name is required")
    if config.capacity < 1:
        problems.append("capacity must be at least 1")
    if config.season < 1:
        problems.append("season is required")
    if not 1 <= config.start_week <= MAX_WEEK or not 1 <= config.end_week <= MAX_WEEK:
        problems.append(f"weeks must be between 1 and {MAX_WEEK}")
    if config.start_week > config.end_week:
        problems.append("start_week must not be after end_week")
    if not config.start_week <= config.two_pick_week <= config.end_week:
        problems.append("two_pick_week must lie within start_week..end_week")
    if config.entry_fee < 0 or config.prize_pool < 0:
        problems.append("entry_fee and prize_pool must not be negative")
    if problems:
        raise InvalidConfiguration("; ".join(problems), problems=problems)


class GameLifecycleManager:
    def __init__(
        self,
        store: SurvivorStore,
        notifications: NotificationSink,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._clock = clock

    async def create_game(self, config: SurvivorGameCreate | dict) -> dict:
        if isinstance(config, dict):
            config = SurvivorGameCreate(**config)
        _validate_config(config)

        now = self._clock()
        game = {
            "_id": new_id(),
            "name": config.name.strip(),
            "description": config.description,
            "created_by": config.created_by,
            "entry_fee": float(config.entry_fee),
            "prize_pool": float(config.prize_pool),
            "capacity": config.capacity,
            "season": config.season,
            "start_week": config.start_week,
            "end_week": config.end_week,
            "two_pick_week": config.two_pick_week,
            "ties_eliminate": config.ties_eliminate,
            "status": GameStatus.open.value,
            "winner_id": None,
            "winner_player_id": None,
            "co_winner_ids": [],
            "revision": 0,
            "created_at": now,
            "started_at": None,
            "completed_at": None,
            "cancelled_at": None,
            "updated_at": now,
        }
        await self._store.insert_game(game)
        logger.info("Created survivor game: %s (%s) season=%d", game["name"], game["_id"], game["season"])
        return game

    async def join_game(self, game_id: str, player_id: str) -> dict:
        async def _join(tx: SurvivorStore) -> dict:
            game = await tx.get_game(game_id)
            if game is None:
                raise GameNotFound(game_id=game_id)
            if game["status"] != GameStatus.open.value:
                raise GameNotOpen(game_id=game_id, status=game["status"])
            if await tx.count_participants(game_id) >= game["capacity"]:
                raise GameFull(game_id=game_id, capacity=game["capacity"])
            if await tx.find_participant(game_id, player_id):
                raise AlreadyJoined(game_id=game_id, player_id=player_id)

            now = self._clock()
            participant = {
                "_id": new_id(),
                "game_id": game_id,
                "player_id": player_id,
                "status": ParticipantStatus.active.value,
                "eliminated_week": None,
                "eliminated_reason": None,
                "eliminated_at": None,
                "joined_at": now,
                "updated_at": now,
            }
            await tx.insert_participant(participant)
            # Concurrent joins both write the game, so one of them retries and re-counts.
            await tx.bump_game_revision(game_id)
            return participant

        participant = await self._store.run_in_transaction(_join)
        logger.info("Player %s joined survivor game %s", player_id, game_id)
        return participant

    async def start_game(self, game_id: str) -> dict:
        """open -> active. Registration closes; already active games pass through."""
        async def _start(tx: SurvivorStore) -> dict:
            game = await tx.get_game(game_id)
            if game is None:
                raise GameNotFound(game_id=game_id)
            if game["status"] == GameStatus.active.value:
                return game
            if game["status"] != GameStatus.open.value:
                raise GameNotOpen(game_id=game_id, status=game["status"])
            return await self._transition(tx, game, GameStatus.active, {"started_at": self._clock()})

        return await self._store.run_in_transaction(_start)

    async def cancel_game(self, game_id: str) -> dict:
        async def _cancel(tx: SurvivorStore) -> dict:
            game = await tx.get_game(game_id)
            if game is None:
                raise GameNotFound(game_id=game_id)
            return await self._transition(tx, game, GameStatus.cancelled, {"cancelled_at": self._clock()})

        return await self._store.run_in_transaction(_cancel)

    async def finalize_if_complete(self, game_id: str, *, season_over: bool = False) -> dict:
        """Complete the game when at most one participant is still active.

        With ``season_over`` (end week fully processed) the game also completes
        while several participants are still alive; they share the win.
        Calling this again after completion changes nothing.
        """
        # Player ids of co-winners, filled only by the attempt that completed the game.
        completed: list[list[str]] = []

        async def _finalize(tx: SurvivorStore) -> dict:
            completed.clear()
            game = await tx.get_game(game_id)
            if game is None:
                raise GameNotFound(game_id=game_id)
            if game["status"] != GameStatus.active.value:
                return game

            active = await tx.list_participants(game_id, status=ParticipantStatus.active.value)
            if len(active) > 1 and not season_over:
                return game

            fields: dict[str, Any] = {"winner_id": None, "winner_player_id": None, "co_winner_ids": []}
            co_winners: list[dict] = []
            if len(active) == 1:
                fields["winner_id"] = active[0]["_id"]
                fields["winner_player_id"] = active[0]["player_id"]
            elif not active:
                co_winners = await self._last_eliminated(tx, game_id)
            else:
                co_winners = active
            fields["co_winner_ids"] = [p["_id"] for p in co_winners]

            game = await self._transition(
                tx, game, GameStatus.completed, {**fields, "completed_at": self._clock()},
            )
            completed.append([p["player_id"] for p in co_winners])
            return game

        game = await self._store.run_in_transaction(_finalize)
        if completed:
            logger.info(
                "Survivor game %s completed. Winner: %s co-winners=%s",
                game_id, game.get("winner_player_id") or "No winner", completed[0],
            )
            _notify(
                self._notifications.game_completed,
                game_id=game_id,
                winner_id=game.get("winner_player_id"),
                co_winner_ids=completed[0],
            )
        return game

    async def _last_eliminated(self, tx: SurvivorStore, game_id: str) -> list[dict]:
        """Participants who fell in the latest elimination week (a shared last place standing)."""
        eliminated = await tx.list_participants(game_id, status=ParticipantStatus.eliminated.value)
        weeks = [p["eliminated_week"] for p in eliminated if p.get("eliminated_week") is not None]
        if not weeks:
            return []
        last_week = max(weeks)
        return [p for p in eliminated if p.get("eliminated_week") == last_week]

    async def _transition(
        self,
        tx: SurvivorStore,
        game: dict,
        to_status: GameStatus,
        extra_fields: dict[str, Any],
    ) -> dict:
        current = GameStatus(game["status"])
        if to_status not in ALLOWED_TRANSITIONS[current]:
            allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
            raise InvalidTransition(
                f"Invalid game transition: {current.value} -> {to_status.value}. Allowed: {allowed}",
                game_id=game["_id"],
            )

        fields = {**extra_fields, "status": to_status.value, "updated_at": self._clock()}
        updated = await tx.update_game(
            game["_id"],
            fields,
            expected_statuses=[current.value],
            expected_revision=game.get("revision", 0),
        )
        if not updated:
            raise InvariantViolation(
                f"Game {game['_id']} changed during {current.value} -> {to_status.value}",
                game_id=game["_id"],
            )
        logger.info("Survivor game %s: %s -> %s", game["_id"], current.value, to_status.value)
        return {**game, **fields, "revision": game.get("revision", 0) + 1}


# ---------------------------------------------------------------------------
# Pick Validator
# ---------------------------------------------------------------------------


def _has_kicked_off(matchup: dict | None, now: datetime) -> bool:
    if matchup is None:
        return False
    if matchup.get("complete"):
        return True
    start = matchup.get("scheduled_start")
    return start is not None and ensure_utc(start) <= now


class PickValidator:
    def __init__(self, store: SurvivorStore, *, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def submit_pick(
        self,
        game_id: str,
        player_id: str,
        week: int,
        team_id: str,
        matchup_id: str,
        slot: int = 1,
    ) -> dict:
        """Validate and upsert a pick. The first failing rule wins:

        1. player is an active participant of a running game
        2. neither the pick being replaced nor the new matchup has kicked off
        3. team plays in the matchup
        4. team not used earlier this season
        5. week/slot fit the game (slot 2 only from the two-pick week)
        """
        async def _submit(tx: SurvivorStore) -> dict:
            now = self._clock()

            game = await tx.get_game(game_id)
            if game is None:
                raise GameNotFound(game_id=game_id)
            participant = await tx.find_participant(game_id, player_id)
            if (
                participant is None
                or participant["status"] != ParticipantStatus.active.value
                or game["status"] not in PICKABLE_STATUSES
            ):
                raise NotActiveParticipant(game_id=game_id, player_id=player_id)

            stored = next(
                (
                    p for p in await tx.list_picks(participant_id=participant["_id"], week=week)
                    if p["slot"] == slot
                ),
                None,
            )
            if stored is not None and (
                stored.get("correct") is not None
                or _has_kicked_off(await tx.get_matchup(stored["matchup_id"]), now)
            ):
                raise MatchupLocked(
                    "Your pick for this week is locked; its matchup has already started.",
                    matchup_id=stored["matchup_id"],
                )

            matchup = await tx.get_matchup(matchup_id)
            if matchup is None or matchup.get("complete") or not matchup.get("scheduled_start"):
                raise MatchupLocked(matchup_id=matchup_id)
            if ensure_utc(matchup["scheduled_start"]) <= now:
                raise MatchupLocked("Matchup has already started.", matchup_id=matchup_id)

            home_team_id, away_team_id = matchup["home_team_id"], matchup["away_team_id"]
            if team_id not in (home_team_id, away_team_id):
                raise TeamNotInMatchup(team_id=team_id, matchup_id=matchup_id)

            ledger = TeamUsageLedger(tx)
            if await ledger.is_used(participant["_id"], game["season"], team_id, excluding=(week, slot)):
                raise TeamAlreadyUsed(f"'{team_id}' has already been used. Choose a different team.", team_id=team_id)

            if (
                not game["start_week"] <= week <= game["end_week"]
                or matchup.get("week") != week
                or matchup.get("season") != game["season"]
            ):
                raise WeekOutOfRange(week=week, matchup_id=matchup_id)
            if slot not in range(1, MAX_SLOTS + 1) or slot > required_picks(game, week):
                raise InvalidSlotForWeek(week=week, slot=slot)

            pick = await tx.upsert_pick({
                "game_id": game_id,
                "participant_id": participant["_id"],
                "player_id": player_id,
                "matchup_id": matchup_id,
                "team_id": team_id,
                "opponent_team_id": away_team_id if team_id == home_team_id else home_team_id,
                "season": game["season"],
                "week": week,
                "slot": slot,
                "correct": None,
                "resolved_at": None,
                "submitted_at": now,
            })
            # Serializes concurrent submissions of one participant so the ledger check holds.
            await tx.touch_participant(participant["_id"], now)
            return pick

        pick = await self._store.run_in_transaction(_submit)
        logger.info(
            "Survivor pick: game=%s player=%s team=%s week=%d slot=%d",
            game_id, player_id, team_id, week, slot,
        )
        return pick


# ---------------------------------------------------------------------------
# Elimination Tracker
# ---------------------------------------------------------------------------


class EliminationTracker:
    """active -> eliminated (terminal). The sole survivor stays ``active`` and is named on the game."""

    def __init__(
        self,
        store: SurvivorStore,
        lifecycle: GameLifecycleManager,
        notifications: NotificationSink,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._notifications = notifications
        self._clock = clock

    async def apply(
        self,
        tx: SurvivorStore,
        participant: dict,
        week: int,
        reason: str,
        *,
        team_ids: list[str] | None = None,
    ) -> dict | None:
        """Transactional step. Returns the eliminated participant, or None if it already was."""
        now = self._clock()
        if not await tx.eliminate_participant(participant["_id"], week, reason, now):
            return None
        # Any finalizer that read the old active set now conflicts and re-reads.
        await tx.bump_game_revision(participant["game_id"])
        await tx.record_week_result({
            "game_id": participant["game_id"],
            "participant_id": participant["_id"],
            "player_id": participant["player_id"],
            "week": week,
            "survived": False,
            "reason": reason,
            "team_ids": team_ids or [],
            "recorded_at": now,
        })
        return {
            **participant,
            "status": ParticipantStatus.eliminated.value,
            "eliminated_week": week,
            "eliminated_reason": reason,
            "eliminated_at": now,
        }

    def announce(self, participant: dict) -> None:
        logger.info(
            "Survivor eliminated: player=%s game=%s week=%s reason=%s",
            participant["player_id"], participant["game_id"],
            participant["eliminated_week"], participant["eliminated_reason"],
        )
        _notify(
            self._notifications.participant_eliminated,
            game_id=participant["game_id"],
            participant_id=participant["_id"],
            player_id=participant["player_id"],
            week=participant["eliminated_week"],
            reason=participant["eliminated_reason"],
        )

    async def eliminate(self, participant_id: str, week: int, reason: str) -> bool:
        """Eliminate one participant. No-op (False) when already eliminated."""
        async def _eliminate(tx: SurvivorStore) -> dict | None:
            participant = await tx.get_participant(participant_id)
            if participant is None:
                raise InvariantViolation(f"Unknown participant {participant_id}", participant_id=participant_id)
            if participant["status"] != ParticipantStatus.active.value:
                return None
            return await self.apply(tx, participant, week, reason)

        eliminated = await self._store.run_in_transaction(_eliminate)
        if eliminated is None:
            return False
        self.announce(eliminated)
        return True

    async def eliminate_batch(
        self, game_id: str, entries: Iterable[tuple[str, int, str]],
    ) -> tuple[int, dict]:
        """Eliminate (participant_id, week, reason) entries, then finalize the game exactly once."""
        count = 0
        for participant_id, week, reason in entries:
            if await self.eliminate(participant_id, week, reason):
                count += 1
        game = await self.close_batch(game_id)
        return count, game

    async def close_batch(self, game_id: str, *, season_over: bool = False) -> dict:
        return await self._lifecycle.finalize_if_complete(game_id, season_over=season_over)


# ---------------------------------------------------------------------------
# Weekly Result Processor
# ---------------------------------------------------------------------------


@dataclass
class _ParticipantWeek:
    resolved: int = 0
    eliminated: dict | None = None


@dataclass
class _WeekBoard:
    """Resolutions for one season week, keyed by matchup id."""
    resolutions: dict[str, tuple[dict, MatchupResolution]] = field(default_factory=dict)
    malformed: list[str] = field(default_factory=list)
    complete: bool = False


class WeeklyResultProcessor:
    def __init__(
        self,
        store: SurvivorStore,
        lifecycle: GameLifecycleManager,
        tracker: EliminationTracker,
        notifications: NotificationSink,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._tracker = tracker
        self._notifications = notifications
        self._clock = clock
        self._reported_malformed: set[tuple[int, int, str]] = set()

    async def process_week(self, game_id: str, week: int) -> WeekProcessingResult:
        """Resolve the week's picks, eliminate losers and missing pickers, then finalize once.

        Safe to re-run: only unresolved picks are resolved, eliminated
        participants are left alone and week results are written once.
        A failing participant is skipped and the rest of the batch continues.
        Completed or cancelled games only get their late picks resolved.
        """
        game = await self._store.get_game(game_id)
        if game is None:
            raise GameNotFound(game_id=game_id)
        if game["status"] in (GameStatus.completed.value, GameStatus.cancelled.value):
            return await self._settle_picks(game, week)
        if not game["start_week"] <= week <= game["end_week"]:
            raise WeekOutOfRange(week=week, game_id=game_id)
        if game["status"] == GameStatus.open.value:
            game = await self._lifecycle.start_game(game_id)

        board = await self._load_board(game["season"], week)
        result = self._result(game, week)
        result.week_complete = board.complete
        result.skipped_matchups = list(board.malformed)

        participants = await self._store.list_participants(game_id)
        for participant in participants:
            outcome = await self._run_participant(game, participant["_id"], week, board, result)
            if outcome is None:
                continue
            result.picks_resolved += outcome.resolved
            if outcome.eliminated is not None:
                result.participants_eliminated += 1
                self._tracker.announce(outcome.eliminated)

        if result.skipped_participants or result.invariant_violations:
            # A skipped participant may still be alive; deciding a winner now could be wrong.
            logger.warning(
                "Game %s week %d left unfinalized: %d skipped, %d invariant violations",
                game_id, week, len(result.skipped_participants), len(result.invariant_violations),
            )
            game = await self._store.get_game(game_id)
        else:
            season_over = (
                board.complete
                and week >= game["end_week"]
                and await self._earlier_weeks_settled(game, week)
            )
            game = await self._tracker.close_batch(game_id, season_over=season_over)
        result.game_status = GameStatus(game["status"])
        result.winner_id = game.get("winner_player_id")

        logger.info(
            "Week %d processing complete for game %s: %d picks resolved, %d eliminated, status=%s",
            week, game_id, result.picks_resolved, result.participants_eliminated, game["status"],
        )
        _notify(
            self._notifications.week_processed,
            game_id=game_id,
            week=week,
            picks_resolved=result.picks_resolved,
            participants_eliminated=result.participants_eliminated,
        )
        return result

    @staticmethod
    def _result(game: dict, week: int) -> WeekProcessingResult:
        return WeekProcessingResult(
            game_id=game["_id"],
            week=week,
            game_status=GameStatus(game["status"]),
            winner_id=game.get("winner_player_id"),
        )

    async def _run_participant(
        self,
        game: dict,
        participant_id: str,
        week: int,
        board: _WeekBoard,
        result: WeekProcessingResult,
        *,
        settle_only: bool = False,
    ) -> _ParticipantWeek | None:
        """One participant-week in its own transaction. None when it failed and was reported."""
        try:
            return await self._store.run_in_transaction(
                lambda tx: self._process_participant(
                    tx, game, participant_id, week, board, settle_only=settle_only,
                )
            )
        except InvariantViolation as exc:
            logger.error(
                "Invariant violation: game=%s week=%d participant=%s: %s",
                game["_id"], week, participant_id, exc, exc_info=True,
            )
            result.invariant_violations.append(
                InvariantReport(participant_id=participant_id, message=str(exc))
            )
        except InfrastructureError as exc:
            logger.warning(
                "Skipped participant %s for game=%s week=%d: %s", participant_id, game["_id"], week, exc,
            )
            result.skipped_participants.append(participant_id)
        return None

    async def _settle_picks(self, game: dict, week: int) -> WeekProcessingResult:
        """Finished games: record outcomes of picks whose matchups ended after the game did."""
        result = self._result(game, week)
        pending = await self._store.list_picks(game_id=game["_id"], week=week, unresolved_only=True)
        if not pending:
            logger.debug("Smart skip: game %s already %s", game["_id"], game["status"])
            return result

        board = await self._load_board(game["season"], week)
        result.week_complete = board.complete
        result.skipped_matchups = list(board.malformed)
        for participant_id in dict.fromkeys(pick["participant_id"] for pick in pending):
            outcome = await self._run_participant(
                game, participant_id, week, board, result, settle_only=True,
            )
            if outcome is not None:
                result.picks_resolved += outcome.resolved

        logger.info(
            "Settled %d picks for %s game %s week %d",
            result.picks_resolved, game["status"], game["_id"], week,
        )
        return result

    async def _earlier_weeks_settled(self, game: dict, week: int) -> bool:
        """Every still-active participant has a recorded result for each earlier week."""
        earlier = set(range(game["start_week"], week))
        if not earlier:
            return True
        recorded: dict[str, set[int]] = defaultdict(set)
        for row in await self._store.list_week_results(game["_id"]):
            recorded[row["participant_id"]].add(row["week"])
        active = await self._store.list_participants(game["_id"], status=ParticipantStatus.active.value)
        unsettled = [p["_id"] for p in active if not earlier <= recorded[p["_id"]]]
        if unsettled:
            logger.warning(
                "Game %s: end week %d processed before earlier weeks for %d participants; not closing the season",
                game["_id"], week, len(unsettled),
            )
        return not unsettled

    async def _load_board(self, season: int, week: int) -> _WeekBoard:
        board = _WeekBoard()
        matchups = await self._store.list_matchups(season, week)
        for matchup in matchups:
            if not matchup.get("complete"):
                continue
            try:
                board.resolutions[matchup["_id"]] = (matchup, resolve_matchup(matchup))
            except MalformedMatchup as exc:
                matchup_id = str(matchup.get("_id"))
                board.malformed.append(matchup_id)
                if (season, week, matchup_id) in self._reported_malformed:
                    logger.debug("Skipping malformed matchup %s: %s", matchup_id, exc)
                    continue
                self._reported_malformed.add((season, week, matchup_id))
                logger.error(
                    "Malformed matchup %s keeps season %d week %d open until repaired: %s",
                    matchup_id, season, week, exc,
                )
        board.complete = bool(matchups) and len(board.resolutions) == len(matchups)
        return board

    @staticmethod
    def _is_correct(game: dict, pick: dict, resolution: MatchupResolution) -> bool:
        if resolution.outcome == MatchupOutcome.tie:
            return not game.get("ties_eliminate", True)
        return pick["team_id"] == resolution.winning_team_id

    async def _process_participant(
        self,
        tx: SurvivorStore,
        game: dict,
        participant_id: str,
        week: int,
        board: _WeekBoard,
        *,
        settle_only: bool = False,
    ) -> _ParticipantWeek:
        outcome = _ParticipantWeek()
        participant = await tx.get_participant(participant_id)
        if participant is None:
            return outcome

        picks = await tx.list_picks(participant_id=participant_id, week=week)
        slots = [pick["slot"] for pick in picks]
        if len(slots) != len(set(slots)):
            raise InvariantViolation(f"Duplicate pick slots {slots} in week {week}", participant_id=participant_id)
        required = required_picks(game, week)
        if len(picks) > required:
            raise InvariantViolation(
                f"{len(picks)} picks stored for a {required}-pick week {week}", participant_id=participant_id,
            )

        now = self._clock()
        for pick in picks:
            if pick["correct"] is not None:
                continue
            entry = board.resolutions.get(pick["matchup_id"])
            if entry is None:
                continue
            matchup, resolution = entry
            if pick["team_id"] not in (matchup["home_team_id"], matchup["away_team_id"]):
                raise InvariantViolation(
                    f"Pick {pick['_id']} team {pick['team_id']} not in matchup {matchup['_id']}",
                    participant_id=participant_id,
                )
            correct = self._is_correct(game, pick, resolution)
            if await tx.resolve_pick(pick["_id"], correct, now):
                outcome.resolved += 1
            pick["correct"] = correct

        if settle_only or participant["status"] != ParticipantStatus.active.value:
            return outcome

        team_ids = [pick["team_id"] for pick in picks]
        reason: str | None = None
        if any(pick["correct"] is False for pick in picks):
            reason = EliminationReason.incorrect_pick.value
        elif board.complete:
            if any(pick["correct"] is None for pick in picks):
                raise InvariantViolation(
                    f"Week {week} is complete but a pick is unresolved", participant_id=participant_id,
                )
            if len(picks) < required:
                reason = EliminationReason.missing_pick.value

        if reason is not None:
            outcome.eliminated = await self._tracker.apply(tx, participant, week, reason, team_ids=team_ids)
        elif board.complete:
            await tx.record_week_result({
                "game_id": game["_id"],
                "participant_id": participant_id,
                "player_id": participant["player_id"],
                "week": week,
                "survived": True,
                "reason": None,
                "team_ids": team_ids,
                "recorded_at": now,
            })
        return outcome


# ---------------------------------------------------------------------------
# Service façade
# ---------------------------------------------------------------------------


class SurvivorService:
    """Entry point for routers and workers."""

    def __init__(
        self,
        store: SurvivorStore,
        notifications: NotificationSink | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.notifications = notifications or LoggingNotificationSink()
        self.lifecycle = GameLifecycleManager(store, self.notifications, clock=clock)
        self.tracker = EliminationTracker(store, self.lifecycle, self.notifications, clock=clock)
        self.validator = PickValidator(store, clock=clock)
        self.processor = WeeklyResultProcessor(
            store, self.lifecycle, self.tracker, self.notifications, clock=clock,
        )
        self.ledger = TeamUsageLedger(store)

    # ---- commands ----

    async def create_game(self, config: SurvivorGameCreate | dict) -> dict:
        return await self.lifecycle.create_game(config)

    async def join_game(self, game_id: str, player_id: str) -> dict:
        return await self.lifecycle.join_game(game_id, player_id)

    async def start_game(self, game_id: str) -> dict:
        return await self.lifecycle.start_game(game_id)

    async def cancel_game(self, game_id: str) -> dict:
        return await self.lifecycle.cancel_game(game_id)

    async def submit_pick(
        self, game_id: str, player_id: str, week: int, team_id: str, matchup_id: str, slot: int = 1,
    ) -> dict:
        return await self.validator.submit_pick(game_id, player_id, week, team_id, matchup_id, slot)

    async def process_week(self, game_id: str, week: int) -> WeekProcessingResult:
        return await self.processor.process_week(game_id, week)

    async def finalize_if_complete(self, game_id: str) -> dict:
        return await self.lifecycle.finalize_if_complete(game_id)

    # ---- read accessors ----

    async def get_game(self, game_id: str) -> dict:
        game = await self.store.get_game(game_id)
        if game is None:
            raise GameNotFound(game_id=game_id)
        return {
            **game,
            "participant_count": await self.store.count_participants(game_id),
            "active_count": await self.store.count_participants(game_id, ParticipantStatus.active.value),
        }

    async def list_games(self, statuses: list[str] | None = None) -> list[dict]:
        return await self.store.list_games(statuses)

    async def get_participant_status(self, game_id: str, player_id: str) -> dict | None:
        game = await self.get_game(game_id)
        participant = await self.store.find_participant(game_id, player_id)
        if participant is None:
            return None
        return {**participant, "is_winner": game.get("winner_id") == participant["_id"]}

    async def get_player_picks(self, game_id: str, player_id: str) -> list[dict]:
        await self.get_game(game_id)
        participant = await self.store.find_participant(game_id, player_id)
        if participant is None:
            return []
        return await self.store.list_picks(participant_id=participant["_id"])

    async def get_available_teams(self, game_id: str, player_id: str) -> dict:
        game = await self.get_game(game_id)
        participant = await self.store.find_participant(game_id, player_id)
        if participant is None:
            return {"available_team_ids": list(NFL_TEAM_IDS), "used_team_ids": []}
        return {
            "available_team_ids": await self.ledger.available_team_ids(participant["_id"], game["season"]),
            "used_team_ids": sorted(await self.ledger.used_team_ids(participant["_id"], game["season"])),
        }

    async def get_leaderboard(self, game_id: str) -> list[dict]:
        """Active players first (winner on top), then by weeks survived and elimination week."""
        game = await self.get_game(game_id)
        participants = await self.store.list_participants(game_id)
        survived: dict[str, int] = defaultdict(int)
        for row in await self.store.list_week_results(game_id):
            if row.get("survived"):
                survived[row["participant_id"]] += 1

        def _sort_key(p: dict) -> tuple:
            return (
                p["_id"] != game.get("winner_id"),
                p["status"] != ParticipantStatus.active.value,
                -survived[p["_id"]],
                -(p.get("eliminated_week") or 0),
                ensure_utc(p["joined_at"]),
            )

        return [
            {
                "rank": index + 1,
                "player_id": p["player_id"],
                "status": p["status"],
                "is_winner": p["_id"] == game.get("winner_id") or p["_id"] in game.get("co_winner_ids", []),
                "weeks_survived": survived[p["_id"]],
                "eliminated_week": p.get("eliminated_week"),
                "eliminated_reason": p.get("eliminated_reason"),
                "joined_at": p["joined_at"],
            }
            for index, p in enumerate(sorted(participants, key=_sort_key))
        ]
