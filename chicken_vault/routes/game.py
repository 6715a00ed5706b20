"""
Module routes/game.py
Rôle:
- Cycle de partie piloté par le croupier : démarrage, démo, préparation de manche, révélation, reset.

Intégrations:
- GameEngine : toutes les transitions (les gardes de phase lèvent PreconditionViolation -> 400).
- pick-insider renvoie la révélation privée (nom de l'initié + suit) pour l'overlay croupier.
- GET /insider relit la révélation, y compris l'initié tiré automatiquement par start-investigation.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from chicken_vault.deps.auth import dealer_required
from chicken_vault.deps.engine import get_engine, snapshot_of
from chicken_vault.services.game_engine import GameEngine

router = APIRouter(prefix="/game", tags=["game"], dependencies=[Depends(dealer_required)])


class SecretCardPayload(BaseModel):
    card: str = Field(..., min_length=2)


# ---------------------------------------------------------------------------
# Cycle de partie
# ---------------------------------------------------------------------------
@router.post("/start")
async def start_game(engine: GameEngine = Depends(get_engine)):
    engine.start_game()
    return snapshot_of(engine)


@router.post("/reset")
async def reset_game(engine: GameEngine = Depends(get_engine)):
    engine.reset_to_lobby()
    return snapshot_of(engine)


@router.post("/demo/run")
async def run_demo(engine: GameEngine = Depends(get_engine)):
    engine.start_demo()
    return snapshot_of(engine)


@router.post("/start-real")
async def start_real_game(engine: GameEngine = Depends(get_engine)):
    await engine.start_real_game_after_demo()
    return snapshot_of(engine)


# ---------------------------------------------------------------------------
# Préparation de manche
# ---------------------------------------------------------------------------
@router.post("/setup/secret-card")
async def set_secret_card(payload: SecretCardPayload, engine: GameEngine = Depends(get_engine)):
    engine.set_secret_card(payload.card)
    return snapshot_of(engine)


@router.post("/setup/pick-insider")
async def pick_insider(engine: GameEngine = Depends(get_engine)):
    return engine.pick_insider().model_dump(mode="json")


@router.post("/setup/start-investigation")
async def start_investigation(engine: GameEngine = Depends(get_engine)):
    engine.start_investigation()
    return snapshot_of(engine)


@router.post("/reveal/next")
async def next_round(engine: GameEngine = Depends(get_engine)):
    engine.next_round()
    return snapshot_of(engine)


@router.get("/insider")
async def current_insider(engine: GameEngine = Depends(get_engine)):
    return engine.current_insider_reveal().model_dump(mode="json")
