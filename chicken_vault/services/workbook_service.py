"""
Service: workbook_service.py
Rôle:
- Adaptateur I/O du classeur partagé (.xlsx) qui sert de canal de soumission aux joueurs.
- Le fichier est édité à l'extérieur (Excel, OneDrive) : lectures/écritures avec retries
  et backoff exponentiel, aucune règle métier ici (la réconciliation est dans le moteur).

Disposition (une ligne par manche):
- Un onglet par joueur, nommé "P<siège+1>_<nom>" (voir utils/sheets.py).
- Ligne 1 : en-têtes. Ligne `manche + 1` : la manche `manche`.
- Colonnes B..E avec listes déroulantes (couleur, suit, rang, niveau).

Politique d'initialisation:
- Remise à zéro complète (le fichier est recréé avec uniquement les onglets joueurs).
  Relancer avec le même ensemble de joueurs donne les mêmes onglets.

API:
- initialize_for_players(players) -> players avec sheet_name
- prepare_scoring_round(players, round_number, round_code)
- close_scoring_round(players, round_number)
- read_snapshot(players, round_number) -> WorkbookSnapshot (avec parse_retries)
- write_acknowledgements(round_number, updates)
- write_player_inputs(sheet_name, round_number, ...)  (simulation / démo)
"""
from __future__ import annotations

import asyncio
import errno
import logging
import os
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple
from zipfile import BadZipFile

import anyio
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.datavalidation import DataValidation
from openpyxl.worksheet.worksheet import Worksheet

from chicken_vault.models.player import Player
from chicken_vault.models.workbook import AckUpdate, SheetRow, WorkbookSnapshot
from chicken_vault.services.errors import TransientIOFailure
from chicken_vault.utils.cards import COLORS, SUBMISSION_LEVELS, SUITS, WORKBOOK_RANKS, normalize_token
from chicken_vault.utils.sheets import make_player_sheet_name, sort_players_by_seat

logger = logging.getLogger(__name__)

HEADERS = ["Round", "Color", "Suits", "Number", "Level", "Round Code", "Status", "Accepted At", "Validation"]
COL_ROUND = 1
COL_COLOR = 2
COL_SUIT = 3
COL_NUMBER = 4
COL_LEVEL = 5
COL_ROUND_CODE = 6
COL_STATUS = 7
COL_ACCEPTED_AT = 8
COL_VALIDATION = 9
INPUT_COLUMNS = (COL_COLOR, COL_SUIT, COL_NUMBER, COL_LEVEL)

# Nombre de lignes de manche pré-remplies (borne haute de GameConfig.rounds)
ROUND_ROWS = 10

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"

LOCK_ERRNOS = frozenset({errno.EBUSY, errno.EPERM, errno.EACCES})
READ_ERRORS = (OSError, BadZipFile, InvalidFileException, KeyError, ValueError, EOFError)

DROPDOWNS = {
    "B": COLORS,
    "C": SUITS,
    "D": WORKBOOK_RANKS,
    "E": SUBMISSION_LEVELS,
}


def _is_lock_error(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in LOCK_ERRNOS


def _round_row(round_number: int) -> int:
    return round_number + 1


def _cell_int(value) -> Optional[int]:
    token = normalize_token(value)
    if not token:
        return None
    try:
        return int(float(token))
    except ValueError:
        return None


def _build_player_sheet(workbook: Workbook, player: Player) -> Worksheet:
    """Crée l'onglet d'un joueur : en-têtes, lignes de manche et listes déroulantes."""
    sheet = workbook.create_sheet(player.sheet_name)
    sheet.append(HEADERS)
    for round_number in range(1, ROUND_ROWS + 1):
        row = _round_row(round_number)
        sheet.cell(row=row, column=COL_ROUND, value=round_number)
        sheet.cell(row=row, column=COL_STATUS, value=STATUS_CLOSED)

    last_row = _round_row(ROUND_ROWS)
    for column, values in DROPDOWNS.items():
        validation = DataValidation(type="list", formula1=f'"{",".join(values)}"', allow_blank=True)
        validation.error = "Choose a value from the list."
        validation.errorTitle = "Chicken Vault"
        sheet.add_data_validation(validation)
        validation.add(f"{column}2:{column}{last_row}")
    return sheet


def _ensure_sheet(workbook: Workbook, player: Player) -> Worksheet:
    if player.sheet_name in workbook.sheetnames:
        return workbook[player.sheet_name]
    return _build_player_sheet(workbook, player)


def _read_row(sheet: Optional[Worksheet], round_number: int) -> SheetRow:
    if sheet is None:
        return SheetRow()
    row = _round_row(round_number)

    def cell(column: int):
        return sheet.cell(row=row, column=column).value

    return SheetRow(
        round_number=_cell_int(cell(COL_ROUND)),
        round_code=normalize_token(cell(COL_ROUND_CODE)),
        status=normalize_token(cell(COL_STATUS)),
        color=normalize_token(cell(COL_COLOR)),
        suit=normalize_token(cell(COL_SUIT)),
        number=normalize_token(cell(COL_NUMBER)),
        level=normalize_token(cell(COL_LEVEL)),
        accepted_at=str(cell(COL_ACCEPTED_AT) or "").strip(),
        validation_message=str(cell(COL_VALIDATION) or "").strip(),
    )


class WorkbookAdapter:
    """
    Accès au classeur partagé.
    - Toutes les opérations passent par un verrou asyncio : jamais deux accès simultanés au fichier.
    - Les I/O bloquantes (openpyxl) tournent dans un thread worker (anyio).
    """

    def __init__(
        self,
        path: str | os.PathLike,
        *,
        max_read_attempts: int = 5,
        max_write_attempts: int = 4,
        read_base_delay: float = 0.15,
        write_base_delay: float = 0.2,
    ) -> None:
        self.path = Path(path)
        self.max_read_attempts = max_read_attempts
        self.max_write_attempts = max_write_attempts
        self.read_base_delay = read_base_delay
        self.write_base_delay = write_base_delay
        self._lock = asyncio.Lock()

    # -----------------------------
    # I/O brutes (thread worker)
    # -----------------------------
    def _load(self) -> Tuple[Workbook, float]:
        mtime = os.stat(self.path).st_mtime
        return load_workbook(self.path), mtime

    def _save(self, workbook: Workbook) -> None:
        workbook.save(self.path)

    async def _read_with_retry(self) -> Tuple[Workbook, float, int]:
        attempts = self.max_read_attempts
        delay = self.read_base_delay
        for attempt in range(1, attempts + 1):
            try:
                workbook, mtime = await anyio.to_thread.run_sync(self._load)
                return workbook, mtime, attempt - 1
            except READ_ERRORS as exc:
                if attempt >= attempts:
                    raise TransientIOFailure(f"Workbook read failed after {attempt} attempt(s): {exc}") from exc
                logger.warning(
                    "Workbook read failed, retrying",
                    extra={"workbook_path": str(self.path), "attempt": attempt, "error": str(exc)},
                )
                await anyio.sleep(delay)
                delay *= 2
        raise TransientIOFailure("Workbook read failed")

    async def _write_with_retry(self, workbook: Workbook) -> None:
        delay = self.write_base_delay
        for attempt in range(1, self.max_write_attempts + 1):
            try:
                await anyio.to_thread.run_sync(self._save, workbook)
                return
            except OSError as exc:
                if not _is_lock_error(exc):
                    raise TransientIOFailure(f"Workbook write failed: {exc}") from exc
                if attempt >= self.max_write_attempts:
                    raise TransientIOFailure(
                        f"Workbook locked after {attempt} write attempt(s); close Excel desktop if open."
                    ) from exc
                logger.warning(
                    "Workbook locked, retrying write",
                    extra={"workbook_path": str(self.path), "attempt": attempt, "errno": exc.errno},
                )
                await anyio.sleep(delay)
                delay *= 2

    async def _load_or_create(self) -> Workbook:
        # fichier illisible -> TransientIOFailure (jamais d'écrasement par un classeur vide)
        if not self.path.exists():
            logger.warning("Workbook missing, starting from a blank workbook", extra={"workbook_path": str(self.path)})
            return Workbook()
        workbook, _mtime, _retries = await self._read_with_retry()
        return workbook

    async def _mutate(self, mutator: Callable[[Workbook], None]) -> None:
        """Charge, modifie puis réécrit le classeur sous verrou."""
        async with self._lock:
            workbook = await self._load_or_create()
            mutator(workbook)
            await self._write_with_retry(workbook)

    # -----------------------------
    # API publique
    # -----------------------------
    async def initialize_for_players(self, players: Iterable[Player]) -> List[Player]:
        """Recrée le classeur avec un onglet par joueur; renvoie les joueurs avec leur sheet_name."""
        used: set[str] = set()
        updated = [
            player.model_copy(update={"sheet_name": make_player_sheet_name(player, used)})
            for player in sort_players_by_seat(players)
        ]

        workbook = Workbook()
        default_sheet = workbook.active
        for player in updated:
            _build_player_sheet(workbook, player)
        workbook.remove(default_sheet)

        async with self._lock:
            await self._write_with_retry(workbook)
        logger.info(
            "Workbook initialized",
            extra={"workbook_path": str(self.path), "sheets": [p.sheet_name for p in updated]},
        )
        return updated

    async def prepare_scoring_round(self, players: Iterable[Player], round_number: int, round_code: str) -> None:
        """Ouvre la ligne de manche de chaque joueur (numéro, code, statut OPEN, saisies vidées)."""
        players = list(players)
        row = _round_row(round_number)

        def mutate(workbook: Workbook) -> None:
            for player in players:
                sheet = _ensure_sheet(workbook, player)
                sheet.cell(row=row, column=COL_ROUND, value=round_number)
                sheet.cell(row=row, column=COL_ROUND_CODE, value=round_code)
                sheet.cell(row=row, column=COL_STATUS, value=STATUS_OPEN)
                for column in INPUT_COLUMNS + (COL_ACCEPTED_AT, COL_VALIDATION):
                    sheet.cell(row=row, column=column, value=None)

        await self._mutate(mutate)

    async def close_scoring_round(self, players: Iterable[Player], round_number: int) -> None:
        players = list(players)
        row = _round_row(round_number)

        def mutate(workbook: Workbook) -> None:
            for player in players:
                if player.sheet_name in workbook.sheetnames:
                    workbook[player.sheet_name].cell(row=row, column=COL_STATUS, value=STATUS_CLOSED)

        await self._mutate(mutate)

    async def read_snapshot(self, players: Iterable[Player], round_number: int) -> WorkbookSnapshot:
        """Lit la ligne de la manche pour chaque joueur (valeurs normalisées en majuscules)."""
        async with self._lock:
            workbook, mtime, retries = await self._read_with_retry()

        rows = {}
        for player in players:
            sheet = workbook[player.sheet_name] if player.sheet_name in workbook.sheetnames else None
            rows[player.id] = _read_row(sheet, round_number)
        return WorkbookSnapshot(mtime=mtime, rows=rows, parse_retries=retries)

    async def write_acknowledgements(self, round_number: int, updates: List[AckUpdate]) -> None:
        if not updates:
            return
        row = _round_row(round_number)

        def mutate(workbook: Workbook) -> None:
            for update in updates:
                if update.sheet_name not in workbook.sheetnames:
                    continue
                sheet = workbook[update.sheet_name]
                if update.accepted_at:
                    sheet.cell(row=row, column=COL_ACCEPTED_AT, value=update.accepted_at)
                if update.validation_message is not None:
                    sheet.cell(row=row, column=COL_VALIDATION, value=update.validation_message)

        await self._mutate(mutate)

    async def write_player_inputs(
        self,
        sheet_name: str,
        round_number: int,
        *,
        level: str = "",
        color: str = "",
        suit: str = "",
        number: str = "",
    ) -> None:
        """Écrit les saisies d'un joueur comme le ferait Excel (utilisé par la démo)."""
        row = _round_row(round_number)
        values = {COL_LEVEL: level, COL_COLOR: color, COL_SUIT: suit, COL_NUMBER: number}

        def mutate(workbook: Workbook) -> None:
            if sheet_name not in workbook.sheetnames:
                return
            sheet = workbook[sheet_name]
            for column, value in values.items():
                sheet.cell(row=row, column=column, value=value or None)

        await self._mutate(mutate)
