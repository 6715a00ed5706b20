"""
Models / player.py
Rôle:
- Définir la structure d'un joueur assis à la table.

Champs:
- id: identifiant unique (uuid4 hex) généré à l'ajout.
- name: nom affiché (saisi par le croupier).
- team: équipe "A" ou "B".
- seat_index: siège 0-based; les sièges forment toujours la suite 0..n-1.
- sheet_name: onglet du classeur attribué au joueur (vide tant que le classeur n'est pas initialisé).
"""
from typing import Literal

from pydantic import BaseModel

TeamId = Literal["A", "B"]


class Player(BaseModel):
    """Joueur de la session (sérialisé tel quel dans le snapshot public)."""
    id: str
    name: str
    team: TeamId
    seat_index: int
    sheet_name: str = ""
