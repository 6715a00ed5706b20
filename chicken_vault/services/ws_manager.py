# chicken_vault/services/ws_manager.py
"""
Service: ws_manager.py
- Registre des sockets de l'UI croupier (table / écran partagé).
- Abonné de l'EventBus : les événements publics sont relayés tels quels {type, payload, ts}.
- Les événements privés (insider_reveal) ne passent jamais par /ws, socket non authentifiée.
- Snapshots immuables pour éviter "set changed size during iteration".
- Encodage JSON via orjson (datetimes ISO natifs).
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Callable, Optional, Set

import orjson
from starlette.websockets import WebSocket

from chicken_vault.models.event import EngineEvent
from chicken_vault.services.event_bus import EventBus

logger = logging.getLogger(__name__)

# Jamais relayés sur /ws (lus via les routes croupier)
PRIVATE_EVENT_TYPES = frozenset({"insider_reveal"})


@dataclass
class WSManager:
    _lock: RLock = field(default_factory=RLock, init=False, repr=False)
    connections: Set[WebSocket] = field(default_factory=set)
    _unsubscribe: Optional[Callable[[], None]] = field(default=None, init=False, repr=False)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        with self._lock:
            self.connections.add(ws)

    def _forget(self, ws: WebSocket) -> None:
        with self._lock:
            self.connections.discard(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        """Ferme proprement la connexion et nettoie le registre."""
        self._forget(ws)
        try:
            await ws.close()
        except RuntimeError:
            # déjà fermée côté client
            pass

    async def _send_json_one(self, ws: WebSocket, payload: Any) -> bool:
        """Envoie à un WS; renvoie True si succès, sinon False (et retire le WS mort)."""
        try:
            await ws.send_text(orjson.dumps(payload).decode("utf-8"))
            return True
        except Exception:
            logger.debug("Dropping dead websocket", exc_info=True)
            self._forget(ws)
            return False

    async def send_json(self, ws: WebSocket, payload: Any) -> bool:
        return await self._send_json_one(ws, payload)

    def _snapshot_all(self) -> list[WebSocket]:
        with self._lock:
            return list(self.connections)

    async def broadcast(self, payload: Any) -> int:
        success = 0
        for ws in self._snapshot_all():
            if await self._send_json_one(ws, payload):
                success += 1
        return success

    # ---------- pont EventBus ----------
    def on_event(self, event: EngineEvent) -> None:
        if event.type in PRIVATE_EVENT_TYPES or not self.connections:
            return
        _run_async(self.broadcast(event.model_dump(mode="json")))

    def attach(self, bus: EventBus) -> None:
        self.detach()
        self._unsubscribe = bus.subscribe(self.on_event)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ---------- admin ----------
    def stats(self) -> dict:
        with self._lock:
            return {"connections": len(self.connections)}

    async def close_all(self) -> dict:
        for ws in self._snapshot_all():
            await self.disconnect(ws)
        return self.stats()


WS = WSManager()

# =====================================================
# WRAPPER THREAD-SAFE (utilisable depuis un contexte sync)
# =====================================================
_background: Set[asyncio.Task] = set()


def _run_async(coro):
    """
    Exécute une coroutine depuis un contexte potentiellement synchrone.
    - Essaie anyio.from_thread.run si on est dans un worker anyio.
    - Sinon, planifie sur la loop courante si elle tourne, ou crée une loop.
    """
    import anyio as _anyio

    async def _runner():
        return await coro

    try:
        return _anyio.from_thread.run(_runner)
    except RuntimeError:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            task = loop.create_task(_runner())  # fire-and-forget
            _background.add(task)
            task.add_done_callback(_background.discard)
            return None
        return asyncio.run(_runner())
