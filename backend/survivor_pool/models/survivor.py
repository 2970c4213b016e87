"""Survivor pool models: pick one (later two) winning teams per week, eliminated on loss."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from survivor_pool.config import settings
from survivor_pool.utils import utcnow


class GameStatus(str, Enum):
    open = "open"
    active = "active"
    completed = "completed"
    cancelled = "cancelled"


class ParticipantStatus(str, Enum):
    active = "active"
    eliminated = "eliminated"


class MatchupOutcome(str, Enum):
    home_win = "home_win"
    away_win = "away_win"
    tie = "tie"


class EliminationReason(str, Enum):
    incorrect_pick = "incorrect_pick"
    missing_pick = "missing_pick"


def current_season() -> int:
    """NFL seasons are named after the year they kick off (January games belong to the prior year)."""
    now = utcnow()
    return now.year if now.month >= 3 else now.year - 1


class SurvivorGameCreate(BaseModel):
    """Request body for creating a survivor game. Bounds are checked by the lifecycle manager."""
    name: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    entry_fee: float = 0.0
    prize_pool: float = 0.0
    capacity: int = Field(default_factory=lambda: settings.SURVIVOR_DEFAULT_CAPACITY)
    season: int = Field(default_factory=current_season)
    start_week: int = Field(default_factory=lambda: settings.SURVIVOR_DEFAULT_START_WEEK)
    end_week: int = Field(default_factory=lambda: settings.SURVIVOR_DEFAULT_END_WEEK)
    two_pick_week: int = Field(default_factory=lambda: settings.SURVIVOR_DEFAULT_TWO_PICK_WEEK)
    ties_eliminate: bool = Field(default_factory=lambda: settings.SURVIVOR_TIES_ELIMINATE)


class SurvivorJoinRequest(BaseModel):
    player_id: str


class SurvivorPickCreate(BaseModel):
    """Request body for submitting a survivor pick."""
    player_id: str
    week: int
    team_id: str
    matchup_id: str
    slot: int = 1


class MatchupData(BaseModel):
    """One matchup as delivered by a score feed."""
    id: str
    season: int
    week: int
    home_team_id: str
    away_team_id: str
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    complete: bool = False
    scheduled_start: datetime
    source: str = "unknown"


class MatchupResolution(BaseModel):
    outcome: MatchupOutcome
    winning_team_id: Optional[str] = None


class SurvivorGameResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    created_by: Optional[str] = None
    entry_fee: float
    prize_pool: float
    capacity: int
    season: int
    start_week: int
    end_week: int
    two_pick_week: int
    ties_eliminate: bool
    status: GameStatus
    winner_id: Optional[str] = None
    winner_player_id: Optional[str] = None
    co_winner_ids: list[str] = []
    participant_count: int = 0
    active_count: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class ParticipantResponse(BaseModel):
    id: str
    game_id: str
    player_id: str
    status: ParticipantStatus
    is_winner: bool = False
    eliminated_week: Optional[int] = None
    eliminated_reason: Optional[str] = None
    eliminated_at: Optional[datetime] = None
    joined_at: datetime


class PickResponse(BaseModel):
    id: str
    game_id: str
    participant_id: str
    matchup_id: str
    team_id: str
    opponent_team_id: Optional[str] = None
    season: int
    week: int
    slot: int
    correct: Optional[bool] = None
    submitted_at: datetime
    resolved_at: Optional[datetime] = None


class LeaderboardEntry(BaseModel):
    rank: int
    player_id: str
    status: ParticipantStatus
    is_winner: bool = False
    weeks_survived: int = 0
    eliminated_week: Optional[int] = None
    eliminated_reason: Optional[str] = None
    joined_at: datetime


class AvailableTeamsResponse(BaseModel):
    available_team_ids: list[str]
    used_team_ids: list[str]


class InvariantReport(BaseModel):
    participant_id: str
    message: str


class WeekProcessingResult(BaseModel):
    game_id: str
    week: int
    picks_resolved: int = 0
    participants_eliminated: int = 0
    skipped_participants: list[str] = []
    skipped_matchups: list[str] = []
    invariant_violations: list[InvariantReport] = []
    week_complete: bool = False
    game_status: GameStatus
    winner_id: Optional[str] = None


class ScoreSyncResult(BaseModel):
    season: int
    week: int
    source: Optional[str] = None
    upserted: int = 0
    skipped: int = 0
