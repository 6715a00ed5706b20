"""
Dépendance moteur : récupère l'instance GameEngine de l'application (app.state.engine).
Une instance par application = une session de jeu; aucun état global de module.
"""
from fastapi import Request

from chicken_vault.services.game_engine import GameEngine


def get_engine(request: Request) -> GameEngine:
    return request.app.state.engine


def snapshot_of(engine: GameEngine) -> dict:
    """Snapshot public sérialisé (réponse standard des commandes)."""
    return engine.get_snapshot().model_dump(mode="json")
