"""
Models / workbook.py
Rôle:
- Types échangés entre l'adaptateur de classeur et le moteur de manche.

Notes:
- `SheetRow` est la ligne brute d'une manche pour un joueur, déjà normalisée
  (chaînes en majuscules, numéro de manche en int ou None). Aucune règle métier ici :
  la réconciliation (validité, correspondance de manche) appartient au moteur.
- `WorkbookAlert` est dédupliquée par `id` côté moteur.
"""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AlertType = Literal[
    "PATH_MISSING",
    "NEWER_DUPLICATE",
    "SYNC_STALE",
    "LOCKED",
    "PARSE_RETRY",
    "INVALID_SUBMISSION",
]


class WorkbookCandidate(BaseModel):
    path: str
    mtime: float


class WorkbookAlert(BaseModel):
    """Diagnostic transitoire affiché en bannière (non bloquant)."""
    id: str
    type: AlertType
    message: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    candidates: Optional[List[WorkbookCandidate]] = None


class SheetRow(BaseModel):
    """Contenu brut de la ligne de manche d'un joueur."""
    round_number: Optional[int] = None
    round_code: str = ""
    status: str = ""
    color: str = ""
    suit: str = ""
    number: str = ""
    level: str = ""
    accepted_at: str = ""
    validation_message: str = ""


class WorkbookSnapshot(BaseModel):
    mtime: float
    rows: Dict[str, SheetRow] = Field(default_factory=dict)  # player_id -> ligne
    parse_retries: int = 0


class AckUpdate(BaseModel):
    """Retour d'information écrit dans l'onglet d'un joueur (optionnel)."""
    sheet_name: str
    accepted_at: Optional[str] = None
    validation_message: Optional[str] = None


class WorkbookStatus(BaseModel):
    active_path: str
    last_mtime: Optional[float] = None
    initialized: bool = False
    alerts: List[WorkbookAlert] = Field(default_factory=list)
