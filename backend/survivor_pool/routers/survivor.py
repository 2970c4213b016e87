"""Survivor pool endpoints: games, picks, standings and admin processing."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from survivor_pool.models.survivor import (
    AvailableTeamsResponse,
    LeaderboardEntry,
    ParticipantResponse,
    PickResponse,
    ScoreSyncResult,
    SurvivorGameCreate,
    SurvivorGameResponse,
    SurvivorJoinRequest,
    SurvivorPickCreate,
    WeekProcessingResult,
)
from survivor_pool.services.score_feed import ScoreSyncService
from survivor_pool.services.survivor_service import SurvivorService

router = APIRouter(prefix="/api/survivor", tags=["survivor"])


def get_survivor_service(request: Request) -> SurvivorService:
    return request.app.state.survivor_service


def get_score_sync(request: Request) -> Optional[ScoreSyncService]:
    return getattr(request.app.state, "score_sync", None)


@router.post("/games", status_code=status.HTTP_201_CREATED, response_model=SurvivorGameResponse)
async def create_game(body: SurvivorGameCreate, service: SurvivorService = Depends(get_survivor_service)):
    game = await service.create_game(body)
    return _game_response(await service.get_game(game["_id"]))


@router.get("/games", response_model=list[SurvivorGameResponse])
async def list_games(
    status_filter: Optional[list[str]] = Query(None, alias="status"),
    service: SurvivorService = Depends(get_survivor_service),
):
    return [_game_response(g) for g in await service.list_games(status_filter)]


@router.get("/games/{game_id}", response_model=SurvivorGameResponse)
async def get_game(game_id: str, service: SurvivorService = Depends(get_survivor_service)):
    return _game_response(await service.get_game(game_id))


@router.post("/games/{game_id}/join", status_code=status.HTTP_201_CREATED, response_model=ParticipantResponse)
async def join_game(
    game_id: str,
    body: SurvivorJoinRequest,
    service: SurvivorService = Depends(get_survivor_service),
):
    participant = await service.join_game(game_id, body.player_id)
    return _participant_response(participant)


@router.post("/games/{game_id}/start", response_model=SurvivorGameResponse)
async def start_game(game_id: str, service: SurvivorService = Depends(get_survivor_service)):
    await service.start_game(game_id)
    return _game_response(await service.get_game(game_id))


@router.post("/games/{game_id}/cancel", response_model=SurvivorGameResponse)
async def cancel_game(game_id: str, service: SurvivorService = Depends(get_survivor_service)):
    await service.cancel_game(game_id)
    return _game_response(await service.get_game(game_id))


@router.post("/games/{game_id}/picks", status_code=status.HTTP_201_CREATED, response_model=PickResponse)
async def submit_pick(
    game_id: str,
    body: SurvivorPickCreate,
    service: SurvivorService = Depends(get_survivor_service),
):
    """Submit or replace the pick for a week/slot until the matchup kicks off."""
    pick = await service.submit_pick(
        game_id,
        body.player_id,
        week=body.week,
        team_id=body.team_id,
        matchup_id=body.matchup_id,
        slot=body.slot,
    )
    return _pick_response(pick)


@router.get("/games/{game_id}/picks", response_model=list[PickResponse])
async def get_picks(
    game_id: str,
    player_id: str = Query(...),
    service: SurvivorService = Depends(get_survivor_service),
):
    return [_pick_response(p) for p in await service.get_player_picks(game_id, player_id)]


@router.get("/games/{game_id}/available-teams", response_model=AvailableTeamsResponse)
async def get_available_teams(
    game_id: str,
    player_id: str = Query(...),
    service: SurvivorService = Depends(get_survivor_service),
):
    return await service.get_available_teams(game_id, player_id)


@router.get("/games/{game_id}/leaderboard", response_model=list[LeaderboardEntry])
async def get_leaderboard(game_id: str, service: SurvivorService = Depends(get_survivor_service)):
    return await service.get_leaderboard(game_id)


@router.get("/games/{game_id}/my-status")
async def get_my_status(
    game_id: str,
    player_id: str = Query(...),
    service: SurvivorService = Depends(get_survivor_service),
):
    participant = await service.get_participant_status(game_id, player_id)
    if not participant:
        return {"status": "not_joined", "game_id": game_id, "player_id": player_id}
    return _participant_response(participant)


# ---- Admin ----

@router.post("/admin/process-week/{game_id}/{week}", response_model=WeekProcessingResult)
async def process_week(game_id: str, week: int, service: SurvivorService = Depends(get_survivor_service)):
    return await service.process_week(game_id, week)


@router.post("/admin/sync-scores/{season}/{week}", response_model=ScoreSyncResult)
async def sync_scores(
    season: int,
    week: int,
    score_sync: Optional[ScoreSyncService] = Depends(get_score_sync),
):
    if score_sync is None:
        raise HTTPException(status_code=503, detail="No score feed configured.")
    return await score_sync.sync_week(season, week)


def _game_response(game: dict) -> dict:
    return SurvivorGameResponse(id=str(game["_id"]), **{k: v for k, v in game.items() if k != "_id"}).model_dump()


def _participant_response(participant: dict) -> dict:
    return ParticipantResponse(
        id=str(participant["_id"]),
        **{k: v for k, v in participant.items() if k != "_id"},
    ).model_dump()


def _pick_response(pick: dict) -> dict:
    return PickResponse(id=str(pick["_id"]), **{k: v for k, v in pick.items() if k != "_id"}).model_dump()
