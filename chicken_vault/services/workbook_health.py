"""
Service: workbook_health.py
Rôle:
- Diagnostics du classeur actif à chaque poll (fichier absent, doublon plus récent, synchro figée).
- Fabriques des alertes émises par le moteur (verrou, retries de lecture, soumission invalide).

Notes:
- Fonctions synchrones (os.stat / os.scandir) : le moteur les appelle via un thread worker.
- Les alertes sont des diagnostics, jamais des blocages.
"""
from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import List, Optional

from chicken_vault.models.workbook import WorkbookAlert, WorkbookCandidate

# Doublon considéré "plus récent" au-delà de cette marge (secondes)
NEWER_DUPLICATE_GRACE_SECONDS = 2.0
# Pas de nouvelle écriture observée depuis ce délai pendant SCORING
SYNC_STALE_SECONDS = 15.0
MAX_CANDIDATES = 8


def _normalize_stem(name: str) -> str:
    """'Chicken Vaults (1).xlsx' -> 'chickenvaults'."""
    stem = Path(name).stem.lower()
    stem = re.sub(r"\(\d+\)", "", stem)
    stem = re.sub(r"[-_ ]?(copy|copie)(\s*\d+)?$", "", stem.strip())
    return re.sub(r"[^a-z0-9]", "", stem)


def _is_similar(base: str, other: str) -> bool:
    if not base or not other:
        return False
    return other == base or other.startswith(base) or base.startswith(other)


def list_candidate_workbooks(active_path: str) -> List[WorkbookCandidate]:
    """Fichiers .xlsx du même dossier au nom similaire, plus récents d'abord."""
    active = Path(active_path)
    folder = active.parent
    base = _normalize_stem(active.name)
    if not folder.is_dir():
        return []

    candidates: List[WorkbookCandidate] = []
    with os.scandir(folder) as entries:
        for entry in entries:
            if not entry.is_file() or not entry.name.lower().endswith(".xlsx"):
                continue
            if entry.name.startswith("~$"):
                continue  # fichiers verrou d'Excel
            if not _is_similar(base, _normalize_stem(entry.name)):
                continue
            try:
                mtime = entry.stat().st_mtime
            except OSError:
                continue  # supprimé ou renommé par la synchro entre-temps
            candidates.append(WorkbookCandidate(path=entry.path, mtime=mtime))

    candidates.sort(key=lambda c: c.mtime, reverse=True)
    return candidates[:MAX_CANDIDATES]


def _path_missing_alert(active_path: str) -> WorkbookAlert:
    candidates = list_candidate_workbooks(active_path)
    return WorkbookAlert(
        id="path-missing",
        type="PATH_MISSING",
        message=f"Active workbook not found: {active_path}",
        candidates=candidates or None,
    )


def detect_alerts(
    active_path: str,
    last_known_mtime: Optional[float],
    scoring_active: bool,
    now: Optional[float] = None,
) -> List[WorkbookAlert]:
    """Calcule les alertes de santé du classeur actif (liste remplacée à chaque poll)."""
    now = time.time() if now is None else now
    alerts: List[WorkbookAlert] = []
    active = Path(active_path)

    if not active.exists():
        return [_path_missing_alert(active_path)]
    try:
        current_mtime = active.stat().st_mtime
    except OSError:
        # disparu entre exists() et stat() (renommage OneDrive)
        return [_path_missing_alert(active_path)]

    newer = [
        c for c in list_candidate_workbooks(active_path)
        if Path(c.path).resolve() != active.resolve()
        and c.mtime > current_mtime + NEWER_DUPLICATE_GRACE_SECONDS
    ]
    if newer:
        alerts.append(
            WorkbookAlert(
                id="newer-duplicate",
                type="NEWER_DUPLICATE",
                message="A newer similarly-named workbook exists. OneDrive may have created a conflict copy.",
                candidates=newer,
            )
        )

    if (
        scoring_active
        and last_known_mtime is not None
        and current_mtime <= last_known_mtime
        and now - last_known_mtime > SYNC_STALE_SECONDS
    ):
        alerts.append(
            WorkbookAlert(
                id="sync-stale",
                type="SYNC_STALE",
                message="No workbook changes seen recently. Check that OneDrive sync is running.",
            )
        )

    return alerts


# -----------------------------
# Alertes émises par le moteur
# -----------------------------
def parse_retry_alert(retries: int) -> WorkbookAlert:
    return WorkbookAlert(
        id="parse-retry",
        type="PARSE_RETRY",
        message=f"Workbook read needed {retries} retr{'y' if retries == 1 else 'ies'} (file was mid-sync).",
    )


def lock_alert(detail: str) -> WorkbookAlert:
    return WorkbookAlert(id="lock-alert", type="LOCKED", message=detail)


def invalid_submission_alert(player_id: str, round_number: int, message: str) -> WorkbookAlert:
    return WorkbookAlert(
        id=f"invalid-{player_id}-{round_number}",
        type="INVALID_SUBMISSION",
        message=message,
    )
