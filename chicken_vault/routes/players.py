"""
Module routes/players.py
Rôle:
- Gestion des joueurs assis à la table (LOBBY uniquement) : ajout, édition, retrait, ordre des sièges.

Notes:
- `/players/reorder` est déclaré AVANT `/players/{player_id}` pour ne pas être capturé par le paramètre.
- Toute modification invalide l'initialisation du classeur (noms d'onglets dérivés du siège).
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from chicken_vault.deps.auth import dealer_required
from chicken_vault.deps.engine import get_engine, snapshot_of
from chicken_vault.models.player import TeamId
from chicken_vault.services.game_engine import GameEngine

router = APIRouter(prefix="/players", tags=["players"], dependencies=[Depends(dealer_required)])


class PlayerCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    team: TeamId


class PlayerUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    team: Optional[TeamId] = None


class ReorderPayload(BaseModel):
    player_ids: List[str] = Field(..., min_length=1)


@router.post("", status_code=201)
async def add_player(payload: PlayerCreatePayload, engine: GameEngine = Depends(get_engine)):
    player = engine.add_player(payload.name, payload.team)
    return player.model_dump(mode="json")


@router.put("/reorder")
async def reorder_players(payload: ReorderPayload, engine: GameEngine = Depends(get_engine)):
    engine.reorder_players(payload.player_ids)
    return snapshot_of(engine)


@router.put("/{player_id}")
async def update_player(player_id: str, payload: PlayerUpdatePayload, engine: GameEngine = Depends(get_engine)):
    engine.update_player(player_id, name=payload.name, team=payload.team)
    return snapshot_of(engine)


@router.delete("/{player_id}", status_code=204)
async def remove_player(player_id: str, engine: GameEngine = Depends(get_engine)):
    engine.remove_player(player_id)
    return Response(status_code=204)
