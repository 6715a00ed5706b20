"""
Utils: sheets.py
Rôle:
- Helpers de sièges (rotation horaire, tri, recherche par siège).
- Dérivation des noms d'onglets joueurs du classeur.

Règles de nommage d'onglet:
- Préfixe de siège "P01_", "P02_"... (siège 0-based + 1, sur 2 chiffres).
- Nom nettoyé (ASCII, [A-Za-z0-9 _-], espaces -> "_"), tronqué à 20 caractères.
- 31 caractères max (limite Excel); collisions suffixées "_2", "_3"...
"""
from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional, Set

from chicken_vault.models.player import Player

MAX_SHEET_NAME = 31


def seat_after(seat_index: int, player_count: int) -> int:
    """Siège suivant dans le sens horaire (bouclage sur 0)."""
    if player_count <= 0:
        return 0
    return (seat_index + 1) % player_count


def sort_players_by_seat(players: Iterable[Player]) -> List[Player]:
    return sorted(players, key=lambda p: p.seat_index)


def find_player_by_seat(players: Iterable[Player], seat_index: int) -> Optional[Player]:
    for player in players:
        if player.seat_index == seat_index:
            return player
    return None


def _sanitize_name(name: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^a-zA-Z0-9 _-]", "", ascii_name).strip()
    cleaned = re.sub(r"\s+", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned[:20]


def make_player_sheet_name(player: Player, used_names: Set[str]) -> str:
    """Calcule un nom d'onglet unique pour `player` et l'ajoute à `used_names`."""
    prefix = f"P{player.seat_index + 1:02d}"
    base = f"{prefix}_{_sanitize_name(player.name) or 'Player'}"[:MAX_SHEET_NAME]

    if base not in used_names:
        used_names.add(base)
        return base

    for counter in range(2, 100):
        suffix = f"_{counter}"
        candidate = f"{base[:MAX_SHEET_NAME - len(suffix)]}{suffix}"
        if candidate not in used_names:
            used_names.add(candidate)
            return candidate

    raise ValueError(f"Unable to generate unique sheet name for {player.name}")
