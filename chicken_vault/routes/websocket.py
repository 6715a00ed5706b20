# chicken_vault/routes/websocket.py
"""
WebSocket endpoint.

- /ws : flux de l'UI croupier. Snapshot complet à la connexion ({"type": "state", ...}),
  puis les événements moteur publics (state / toast) relayés par WS (abonné EventBus).
  La révélation de l'initié n'y passe jamais : /ws n'est pas authentifié.
- Ping/pong pour heartbeat; les autres messages sont ignorés (les commandes passent par HTTP).
"""
from __future__ import annotations

import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chicken_vault.services.ws_manager import WS

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    engine = ws.app.state.engine
    await WS.connect(ws)
    await WS.send_json(ws, {"type": "state", "payload": engine.get_snapshot().model_dump(mode="json")})
    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await WS.send_json(ws, {"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await WS.disconnect(ws)
