"""
Models / event.py
Rôle:
- Définir les événements émis par le moteur de manche vers l'extérieur (UI, WS).

Notes:
- `EngineEvent.type` restreint à un jeu de valeurs (Literal) pour éviter les fautes de frappe.
- Les événements sont figés (frozen) : un abonné ne peut pas modifier ce que voient les autres.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

EventType = Literal["state", "toast", "insider_reveal"]
ToastLevel = Literal["info", "warning", "success", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToastEvent(BaseModel):
    """Notification courte affichée au croupier."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    message: str
    level: ToastLevel = "info"
    ts: datetime = Field(default_factory=_utcnow)


class EngineEvent(BaseModel):
    """Enveloppe publiée sur le bus d'événements (snapshot d'état, toast, révélation privée)."""
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)
