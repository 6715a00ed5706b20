"""
Service: event_bus.py
Rôle:
- Diffusion des événements du moteur (snapshot d'état, toasts, révélation de l'initié) aux abonnés.
- Le moteur ne connaît ni le WS ni l'UI : il publie, les abonnés consomment.

Notes:
- Abonnés synchrones; un abonné qui lève une exception est journalisé, les autres reçoivent quand même.
- Historique borné des derniers événements (debug / tests).
"""
from __future__ import annotations

import logging
from collections import deque
from threading import RLock
from typing import Callable, Deque, List

from chicken_vault.models.event import EngineEvent

logger = logging.getLogger(__name__)

Listener = Callable[[EngineEvent], None]


class EventBus:
    def __init__(self, history_size: int = 100) -> None:
        self._lock = RLock()
        self._listeners: List[Listener] = []
        self.recent: Deque[EngineEvent] = deque(maxlen=history_size)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Ajoute un abonné; renvoie la fonction de désabonnement."""
        with self._lock:
            self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            self.recent.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed", extra={"event_type": event.type})

    def of_type(self, event_type: str) -> List[EngineEvent]:
        with self._lock:
            return [e for e in self.recent if e.type == event_type]
