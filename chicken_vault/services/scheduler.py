"""
Service: scheduler.py
Rôle:
- Minuteries du moteur (fin d'enquête, fin de scoring, poll du classeur) derrière une interface injectable.

Implémentations:
- AsyncioScheduler : tâches asyncio réelles (serveur).
- ManualScheduler  : horloge virtuelle pilotée par `advance()` (tests, aucune attente réelle).

Contrat:
- call_later(delay, cb) / call_every(interval, cb) renvoient un ScheduledTask annulable.
- Un callback peut annuler sa propre minuterie sans s'interrompre lui-même.
- time() : secondes (epoch pour asyncio, virtuelles pour le manuel); sert aux échéances affichées.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time as _time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


@dataclass
class ScheduledTask:
    """Poignée d'annulation commune aux deux ordonnanceurs."""
    name: str = ""
    cancelled: bool = False
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # depuis son propre callback : le drapeau suffit, la boucle s'arrête d'elle-même
        if task is not current:
            task.cancel()


class Scheduler(Protocol):
    def time(self) -> float: ...

    def call_later(self, delay: float, callback: Callback, name: str = "") -> ScheduledTask: ...

    def call_every(self, interval: float, callback: Callback, name: str = "") -> ScheduledTask: ...


async def _invoke(handle: ScheduledTask, callback: Callback) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Scheduled callback failed", extra={"timer": handle.name})


# -----------------------------
# Asyncio (production)
# -----------------------------
class AsyncioScheduler:
    def time(self) -> float:
        return _time.time()

    def call_later(self, delay: float, callback: Callback, name: str = "") -> ScheduledTask:
        handle = ScheduledTask(name=name)

        async def _runner():
            try:
                await asyncio.sleep(max(0.0, delay))
                if not handle.cancelled:
                    await _invoke(handle, callback)
            except asyncio.CancelledError:
                return

        handle._task = asyncio.create_task(_runner())
        return handle

    def call_every(self, interval: float, callback: Callback, name: str = "") -> ScheduledTask:
        handle = ScheduledTask(name=name)

        async def _runner():
            try:
                while not handle.cancelled:
                    await asyncio.sleep(max(0.0, interval))
                    if handle.cancelled:
                        break
                    await _invoke(handle, callback)
            except asyncio.CancelledError:
                return

        handle._task = asyncio.create_task(_runner())
        return handle


# -----------------------------
# Horloge virtuelle (tests)
# -----------------------------
@dataclass
class _Entry:
    due: float
    seq: int
    callback: Callback
    handle: ScheduledTask
    interval: Optional[float] = None


class ManualScheduler:
    """Ordonnanceur déterministe : rien ne se déclenche tant qu'on n'appelle pas advance()."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._entries: List[_Entry] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callback, name: str = "") -> ScheduledTask:
        handle = ScheduledTask(name=name)
        self._entries.append(_Entry(self._now + max(0.0, delay), next(self._seq), callback, handle))
        return handle

    def call_every(self, interval: float, callback: Callback, name: str = "") -> ScheduledTask:
        handle = ScheduledTask(name=name)
        step = max(0.001, interval)
        self._entries.append(_Entry(self._now + step, next(self._seq), callback, handle, interval=step))
        return handle

    def pending(self) -> List[str]:
        """Noms des minuteries encore actives."""
        return [e.handle.name for e in self._entries if not e.handle.cancelled]

    async def advance(self, seconds: float) -> None:
        """Avance l'horloge et exécute, dans l'ordre, tout ce qui arrive à échéance."""
        target = self._now + seconds
        while True:
            self._entries = [e for e in self._entries if not e.handle.cancelled]
            due = [e for e in self._entries if e.due <= target]
            if not due:
                break
            entry = min(due, key=lambda e: (e.due, e.seq))
            self._now = entry.due
            if entry.interval is None:
                self._entries.remove(entry)
            else:
                entry.due += entry.interval
            await _invoke(entry.handle, entry.callback)
        self._now = target
