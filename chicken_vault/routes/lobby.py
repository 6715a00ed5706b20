"""
Module routes/lobby.py
Rôle:
- État public de la table, configuration de partie, préflight, initialisation du classeur.

Intégrations:
- GameEngine (app.state.engine) : toutes les commandes lui sont déléguées.
- Le chemin du classeur est verrouillé par l'environnement : toute tentative de le changer
  par l'API est refusée (400).
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict

from chicken_vault.deps.auth import dealer_required
from chicken_vault.deps.engine import get_engine, snapshot_of
from chicken_vault.services.errors import PreconditionViolation
from chicken_vault.services.game_engine import GameEngine

router = APIRouter(tags=["lobby"])

ENV_LOCKED_MESSAGE = "Workbook path is env-locked; set WORKBOOK_PATH in the environment."
LOCKED_KEYS = {"workbook_path", "workbookPath", "excel_path", "excelPath"}


class ConfigPayload(BaseModel):
    rounds: Optional[int] = None
    investigation_seconds: Optional[int] = None
    scoring_seconds: Optional[int] = None
    vault_start: Optional[int] = None
    insider_enabled: Optional[bool] = None
    poll_interval_ms: Optional[int] = None
    ack_writes_enabled: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class PreflightPayload(BaseModel):
    confirmed_local_availability: bool
    confirmed_desktop_excel_closed: bool


@router.get("/state")
async def get_state(engine: GameEngine = Depends(get_engine)):
    """Snapshot public (sans carte secrète ni initié)."""
    return snapshot_of(engine)


@router.put("/config", dependencies=[Depends(dealer_required)])
async def update_config(body: Dict[str, Any] = Body(...), engine: GameEngine = Depends(get_engine)):
    if LOCKED_KEYS & set(body):
        raise PreconditionViolation(ENV_LOCKED_MESSAGE)
    payload = ConfigPayload.model_validate(body)
    engine.update_config(payload.model_dump(exclude_none=True))
    return snapshot_of(engine)


@router.put("/preflight", dependencies=[Depends(dealer_required)])
async def set_preflight(payload: PreflightPayload, engine: GameEngine = Depends(get_engine)):
    engine.set_preflight(payload.confirmed_local_availability, payload.confirmed_desktop_excel_closed)
    return snapshot_of(engine)


@router.post("/workbook/initialize", dependencies=[Depends(dealer_required)])
async def initialize_workbook(engine: GameEngine = Depends(get_engine)):
    await engine.initialize_workbook()
    return snapshot_of(engine)


@router.post("/workbook/select-path", dependencies=[Depends(dealer_required)])
async def select_workbook_path():
    raise PreconditionViolation(ENV_LOCKED_MESSAGE)
