"""
Module routes/health.py
Rôle:
- Endpoint de santé (service OK + diagnostic rapide du classeur et des sockets).

Intégrations:
- settings: nom d'app.
- GameEngine: phase courante et présence du fichier classeur.
"""
from pathlib import Path

from fastapi import APIRouter, Depends

from chicken_vault.config.settings import settings
from chicken_vault.deps.engine import get_engine
from chicken_vault.services.game_engine import GameEngine
from chicken_vault.services.ws_manager import WS

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(engine: GameEngine = Depends(get_engine)):
    """Renvoie un OK minimal avec le nom de service configuré."""
    return {
        "ok": True,
        "service": settings.APP_NAME,
        "phase": engine.phase,
        "workbook_present": Path(engine.config.workbook_path).exists(),
        "sockets": WS.stats()["connections"],
    }
