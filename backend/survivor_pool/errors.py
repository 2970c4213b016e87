"""
backend/survivor_pool/errors.py

Purpose:
    Error taxonomy for the survivor core. Business-rule violations are expected
    rejections shown to the player as-is. Infrastructure errors mean a
    collaborator (store, score feed) failed and the operation is safe to re-run.
    Invariant violations are bugs and are never folded into either group.
"""

from __future__ import annotations


class SurvivorError(Exception):
    """Base class for everything raised by the survivor core."""


class BusinessRuleViolation(SurvivorError):
    code = "business_rule_violation"
    status_code = 400
    default_message = "Request violates a game rule."

    def __init__(self, message: str | None = None, **context) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class InvalidConfiguration(BusinessRuleViolation):
    code = "invalid_configuration"
    status_code = 422
    default_message = "Game configuration is inconsistent."


class GameNotFound(BusinessRuleViolation):
    code = "game_not_found"
    status_code = 404
    default_message = "Survivor game not found."


class GameNotOpen(BusinessRuleViolation):
    code = "game_not_open"
    status_code = 409
    default_message = "Game is not open for new participants."


class GameFull(BusinessRuleViolation):
    code = "game_full"
    status_code = 409
    default_message = "Game is full."


class AlreadyJoined(BusinessRuleViolation):
    code = "already_joined"
    status_code = 409
    default_message = "Player already joined this game."


class NotActiveParticipant(BusinessRuleViolation):
    code = "not_active_participant"
    status_code = 403
    default_message = "Player is not active in this game."


class MatchupLocked(BusinessRuleViolation):
    code = "matchup_locked"
    default_message = "Matchup is locked."


class TeamNotInMatchup(BusinessRuleViolation):
    code = "team_not_in_matchup"
    default_message = "Team is not playing in this matchup."


class TeamAlreadyUsed(BusinessRuleViolation):
    code = "team_already_used"
    status_code = 409
    default_message = "Team has already been used this season."


class InvalidSlotForWeek(BusinessRuleViolation):
    code = "invalid_slot_for_week"
    default_message = "Pick slot is not valid for this week."


class WeekOutOfRange(BusinessRuleViolation):
    code = "week_out_of_range"
    default_message = "Week is outside the game's range."


class InvalidTransition(BusinessRuleViolation):
    code = "invalid_transition"
    status_code = 409
    default_message = "Game status transition is not allowed."


class InfrastructureError(SurvivorError):
    """A collaborator failed. Callers may retry the whole operation later."""


class StoreUnavailable(InfrastructureError):
    pass


class ScoreFeedUnavailable(InfrastructureError):
    pass


class MalformedMatchup(InfrastructureError):
    def __init__(self, message: str, matchup_id: str | None = None) -> None:
        self.matchup_id = matchup_id
        super().__init__(message)


class InvariantViolation(SurvivorError):
    """Internal state contradicts itself. Always a bug, never a user error."""

    def __init__(self, message: str, **context) -> None:
        self.context = context
        super().__init__(message)
