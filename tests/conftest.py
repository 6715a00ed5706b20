from __future__ import annotations

import random

import pytest
from openpyxl import Workbook

from chicken_vault.models.game import GameConfig
from chicken_vault.services.event_bus import EventBus
from chicken_vault.services.game_engine import GameEngine
from chicken_vault.services.scheduler import ManualScheduler
from chicken_vault.services.workbook_service import WorkbookAdapter


class PickLast(random.Random):
    """Tirages déterministes : toujours le dernier élément."""

    def choice(self, seq):
        return seq[-1]


@pytest.fixture
def workbook_path(tmp_path):
    path = tmp_path / "chicken-vaults.xlsx"
    Workbook().save(path)
    return path


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_engine(workbook_path, scheduler, bus):
    def _make(config: dict | None = None, **kwargs) -> GameEngine:
        kwargs.setdefault("workbook", WorkbookAdapter(workbook_path, read_base_delay=0, write_base_delay=0))
        kwargs.setdefault("scheduler", scheduler)
        kwargs.setdefault("bus", bus)
        kwargs.setdefault("rng", PickLast())
        return GameEngine(GameConfig(workbook_path=str(workbook_path), **(config or {})), **kwargs)

    return _make


def seat_players(engine: GameEngine, roster=(("Ana", "A"), ("Ben", "B"), ("Cy", "A"))):
    """Ajoute les joueurs dans l'ordre des sièges et valide le préflight."""
    players = [engine.add_player(name, team) for name, team in roster]
    engine.set_preflight(True, True)
    return players
