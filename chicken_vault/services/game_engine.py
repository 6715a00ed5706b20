"""
Service: game_engine.py
Rôle:
- Machine à états d'une session Chicken Vault (une instance par session, aucun état global).
- Réconciliation des soumissions lues dans le classeur partagé pendant le SCORING.
- Minuteries (enquête, scoring, poll, démo) via un Scheduler injecté.

Phases:
- LOBBY → SETUP → INVESTIGATION → SCORING → REVEAL → (SETUP | DONE)
- reset_to_lobby() ramène en LOBBY depuis n'importe quelle phase.

Règles clés:
- Après chaque `await`, on revérifie la phase et le code de manche : un finalize ou un reset
  survenu entre-temps est respecté (on abandonne silencieusement).
- Les erreurs d'I/O du classeur deviennent des alertes, sauf à l'initialisation (propagée).
- Les événements (state / toast / insider_reveal) partent sur l'EventBus; le transport est ailleurs.
  insider_reveal est privé : jamais relayé sur /ws, relu via current_insider_reveal() (route croupier).

API interne exposée aux routes:
- lobby: add_player, update_player, remove_player, reorder_players, update_config, set_preflight,
         initialize_workbook
- jeu:   start_game, set_secret_card, pick_insider, current_insider_reveal, start_investigation, resolve_question,
         analyze_question_from_transcript, analyze_question_from_audio, call_vault, next_round
- démo:  start_demo, start_real_game_after_demo
- divers: get_snapshot, reset_to_lobby, close
"""
from __future__ import annotations

import functools
import logging
import random
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import anyio

from chicken_vault.config.settings import Settings, settings
from chicken_vault.models.event import EngineEvent, ToastEvent, ToastLevel
from chicken_vault.models.game import (
    AUTO_CALLER,
    AiQuestionOutcome,
    DemoState,
    GameConfig,
    GamePhase,
    GameSnapshot,
    InsiderReveal,
    PreflightState,
    QuestionEntry,
    RoundPrivate,
    RoundResultRow,
    RoundState,
    RoundSummary,
    Submission,
    SubmissionTrackerEntry,
    TeamTotals,
)
from chicken_vault.models.player import Player, TeamId
from chicken_vault.models.workbook import AckUpdate, SheetRow, WorkbookAlert, WorkbookStatus
from chicken_vault.services.errors import (
    ConfigurationFailure,
    DataIntegrityViolation,
    ExternalServiceFailure,
    PreconditionViolation,
    TransientIOFailure,
)
from chicken_vault.services.event_bus import EventBus
from chicken_vault.services.question_analyzer import QuestionAnalyzer
from chicken_vault.services.scheduler import AsyncioScheduler, ScheduledTask, Scheduler
from chicken_vault.services.workbook_health import (
    detect_alerts,
    invalid_submission_alert,
    lock_alert,
    parse_retry_alert,
)
from chicken_vault.services.workbook_service import WorkbookAdapter
from chicken_vault.utils.cards import (
    COLORS,
    RANKS,
    SUBMISSION_LEVELS,
    SUITS,
    WORKBOOK_RANKS,
    apply_caller_modifier,
    calculate_guess_points,
    card_facts,
    compose_bold_guess,
    is_submission_level,
    normalize_guess,
    parse_card_code,
    validate_guess,
)
from chicken_vault.utils.sheets import find_player_by_seat, seat_after, sort_players_by_seat

logger = logging.getLogger(__name__)

ROUND_CODE_WORDS = ("KITE", "SPARK", "LIME", "ECHO", "PRISM", "EMBER", "NOVA", "FROST", "RIVER", "BLAZE")
MAX_ALERTS = 20
HEALTH_ALERT_TYPES = frozenset({"PATH_MISSING", "NEWER_DUPLICATE", "SYNC_STALE"})

ROUND_MISMATCH_MESSAGE = "Submission ignored: round code/status mismatch."
INVALID_FORMAT_MESSAGE = "Invalid Level/Guess format. Check the Level and guess columns."
ACCEPTED_MESSAGE = "Accepted"
STATE_CHANGED_MESSAGE = "Game state changed during analysis."

# -----------------------------
# Démo (manche abrégée, sans IA)
# -----------------------------
DEMO_INVESTIGATION_SECONDS = 20
DEMO_SCORING_SECONDS = 25
DEMO_POLL_INTERVAL_MS = 1000
DEMO_QUESTION_INTERVAL_SECONDS = 3.0
DEMO_SUBMIT_DELAY_SECONDS = 2.0
DEMO_REVEAL_SECONDS = 6.0

DEMO_SCRIPT: Tuple[Tuple[str, Callable[[Dict[str, Any]], bool]], ...] = (
    ("Is the card red?", lambda facts: facts["color"] == "RED"),
    ("Is it a face card?", lambda facts: facts["isFaceCard"]),
    ("Is the rank higher than seven?", lambda facts: facts["rankValue"] > 7),
    ("Is it a spade?", lambda facts: facts["suit"] == "S"),
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _guess_from_row(row: SheetRow) -> str:
    """Pari brut selon le niveau saisi (vide = rien à lire pour l'instant)."""
    level = row.level
    if level == "SAFE":
        return row.color
    if level == "MEDIUM":
        return row.suit
    if level == "BOLD":
        if not row.number or not row.suit:
            return ""
        return compose_bold_guess(row.number, row.suit) or f"{row.number}{row.suit}"
    return row.color or row.suit or row.number


class GameEngine:
    def __init__(
        self,
        config: GameConfig,
        *,
        workbook: Optional[WorkbookAdapter] = None,
        scheduler: Optional[Scheduler] = None,
        bus: Optional[EventBus] = None,
        analyzer: Optional[QuestionAnalyzer] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        path = (config.workbook_path or "").strip()
        if not path:
            raise ConfigurationFailure("WORKBOOK_PATH is required; set it in the environment or .env.")
        if not Path(path).exists():
            raise ConfigurationFailure(f"Workbook not found at WORKBOOK_PATH: {path}")

        self.config = config.model_copy(update={"workbook_path": path}).clamped()
        self.workbook = workbook or WorkbookAdapter(path)
        self.scheduler = scheduler or AsyncioScheduler()
        self.bus = bus or EventBus()
        self.analyzer = analyzer
        self.rng = rng or random.Random()

        self.phase: GamePhase = "LOBBY"
        self.preflight = PreflightState()
        self.players: List[Player] = []
        self.round = RoundState()
        self.private = RoundPrivate()
        self.team_scores = TeamTotals()
        self.history: List[RoundSummary] = []
        self.workbook_initialized = False
        self.workbook_last_mtime: Optional[float] = None
        self.alerts: List[WorkbookAlert] = []
        self.demo = DemoState()
        self.last_actions: Dict[str, str] = {}

        self._previous_dealer_seat: Optional[int] = None
        self._finalizing = False
        self._demo_config: Optional[GameConfig] = None
        self._demo_script: List[Tuple[str, Callable[[Dict[str, Any]], bool]]] = []

        self._investigation_timer: Optional[ScheduledTask] = None
        self._scoring_timer: Optional[ScheduledTask] = None
        self._poll_timer: Optional[ScheduledTask] = None
        self._demo_timer: Optional[ScheduledTask] = None

    # -----------------------------
    # Snapshot & événements
    # -----------------------------
    def get_snapshot(self) -> GameSnapshot:
        return GameSnapshot(
            phase=self.phase,
            config=self.config,
            preflight=self.preflight,
            players=sort_players_by_seat(self.players),
            round=self.round,
            team_scores=self.team_scores,
            history=self.history,
            workbook=WorkbookStatus(
                active_path=self.config.workbook_path,
                last_mtime=self.workbook_last_mtime,
                initialized=self.workbook_initialized,
                alerts=self.alerts,
            ),
            demo=self.demo,
            last_actions=self.last_actions,
        )

    def _emit_state(self) -> None:
        self.bus.publish(EngineEvent(type="state", payload=self.get_snapshot().model_dump(mode="json")))

    def _toast(self, message: str, level: ToastLevel = "info") -> None:
        toast = ToastEvent(message=message, level=level)
        self.bus.publish(EngineEvent(type="toast", payload=toast.model_dump(mode="json")))

    def close(self) -> None:
        """Annule toutes les minuteries (arrêt du serveur)."""
        self._cancel_all_timers()

    # -----------------------------
    # Alertes
    # -----------------------------
    def _add_alert(self, alert: WorkbookAlert) -> None:
        others = [a for a in self.alerts if a.id != alert.id]
        self.alerts = [alert, *others][:MAX_ALERTS]
        logger.warning("Workbook alert", extra={"alert_id": alert.id, "alert_type": alert.type})

    def _set_alerts(self, alerts: List[WorkbookAlert]) -> None:
        self.alerts = alerts[:MAX_ALERTS]

    # -----------------------------
    # Minuteries
    # -----------------------------
    @staticmethod
    def _cancel(handle: Optional[ScheduledTask]) -> None:
        if handle is not None:
            handle.cancel()

    def _cancel_scoring_timers(self) -> None:
        self._cancel(self._scoring_timer)
        self._cancel(self._poll_timer)
        self._scoring_timer = None
        self._poll_timer = None

    def _cancel_all_timers(self) -> None:
        self._cancel(self._investigation_timer)
        self._cancel(self._demo_timer)
        self._investigation_timer = None
        self._demo_timer = None
        self._cancel_scoring_timers()

    @property
    def timings(self) -> GameConfig:
        """Durées actives : celles de la démo pendant la démo, sinon la config réelle."""
        return self._demo_config or self.config

    # -----------------------------
    # Gardes
    # -----------------------------
    def _require_phase(self, phase: GamePhase, message: str) -> None:
        if self.phase != phase:
            raise PreconditionViolation(message)

    def _require_lobby(self) -> None:
        self._require_phase("LOBBY", "Lobby controls are only available in LOBBY phase.")

    def _require_players(self, minimum: int = 2) -> None:
        if len(self.players) < minimum:
            raise PreconditionViolation(f"At least {minimum} players are required.")

    def _require_preflight(self) -> None:
        if not self.preflight.preflight_passed:
            raise PreconditionViolation("Preflight confirmations are required first.")

    def _player_by_id(self, player_id: str) -> Player:
        for player in self.players:
            if player.id == player_id:
                return player
        raise PreconditionViolation("Player not found.")

    def _player_at_seat(self, seat_index: int) -> Player:
        player = find_player_by_seat(self.players, seat_index)
        if player is None:
            raise PreconditionViolation(f"No player in seat {seat_index}.")
        return player

    def _scoring_still(self, round_code: str) -> bool:
        return self.phase == "SCORING" and self.round.round_code == round_code and not self._finalizing

    # -----------------------------
    # Lobby
    # -----------------------------
    def _roster_changed(self) -> None:
        # les noms d'onglets dépendent du siège et du nom
        self.workbook_initialized = False

    def add_player(self, name: str, team: TeamId) -> Player:
        self._require_lobby()
        name = (name or "").strip()
        if not name:
            raise DataIntegrityViolation("Player name is required.")
        player = Player(id=uuid4().hex, name=name, team=team, seat_index=len(self.players))
        self.players.append(player)
        self._roster_changed()
        logger.info("Player added", extra={"player_id": player.id, "seat": player.seat_index})
        self._emit_state()
        return player

    def update_player(self, player_id: str, *, name: Optional[str] = None, team: Optional[TeamId] = None) -> Player:
        self._require_lobby()
        player = self._player_by_id(player_id)
        if name is not None:
            name = name.strip()
            if not name:
                raise DataIntegrityViolation("Player name cannot be empty.")
            player.name = name
        if team is not None:
            player.team = team
        self._roster_changed()
        self._emit_state()
        return player

    def remove_player(self, player_id: str) -> None:
        self._require_lobby()
        self._player_by_id(player_id)
        remaining = sort_players_by_seat(p for p in self.players if p.id != player_id)
        for index, player in enumerate(remaining):
            player.seat_index = index
        self.players = remaining
        self._roster_changed()
        self._emit_state()

    def reorder_players(self, player_ids: List[str]) -> None:
        self._require_lobby()
        if len(player_ids) != len(self.players):
            raise DataIntegrityViolation("Reorder list does not match player count.")
        if len(set(player_ids)) != len(player_ids):
            raise DataIntegrityViolation("Reorder list contains duplicates.")
        by_id = {p.id: p for p in self.players}
        reordered: List[Player] = []
        for index, player_id in enumerate(player_ids):
            player = by_id.get(player_id)
            if player is None:
                raise DataIntegrityViolation("Reorder list contains unknown player.")
            reordered.append(player.model_copy(update={"seat_index": index}))
        self.players = reordered
        self._roster_changed()
        self._emit_state()

    def update_config(self, changes: Dict[str, Any]) -> GameConfig:
        self._require_lobby()
        if "workbook_path" in changes:
            raise PreconditionViolation("Workbook path is env-locked; set WORKBOOK_PATH in the environment.")
        merged = GameConfig.model_validate({**self.config.model_dump(), **changes})
        self.config = merged.clamped()
        self._emit_state()
        return self.config

    def set_preflight(self, confirmed_local_availability: bool, confirmed_desktop_excel_closed: bool) -> None:
        self.preflight = PreflightState(
            confirmed_local_availability=confirmed_local_availability,
            confirmed_desktop_excel_closed=confirmed_desktop_excel_closed,
            preflight_passed=confirmed_local_availability and confirmed_desktop_excel_closed,
        )
        self._emit_state()

    async def _write_fresh_workbook(self) -> None:
        try:
            updated = await self.workbook.initialize_for_players(self.players)
        except TransientIOFailure as exc:
            self._add_alert(lock_alert(str(exc)))
            self._emit_state()
            raise
        self.players = sort_players_by_seat(updated)
        self.workbook_initialized = True
        self._set_alerts([])
        self._toast("Workbook initialized successfully.", "success")
        self._emit_state()

    async def initialize_workbook(self) -> None:
        self._require_lobby()
        self._require_preflight()
        self._require_players()
        await self._write_fresh_workbook()

    # -----------------------------
    # Manches
    # -----------------------------
    def _pick_dealer_seat(self, player_count: int) -> int:
        seats = list(range(player_count))
        previous = self._previous_dealer_seat
        if player_count >= 2 and previous is not None and previous in seats:
            seats.remove(previous)
        return self.rng.choice(seats)

    def _reset_round(self, round_number: int) -> None:
        self._require_players()
        count = len(self.players)
        dealer_seat = self._pick_dealer_seat(count)
        dealer = self._player_at_seat(dealer_seat)
        self._previous_dealer_seat = dealer_seat

        self.round = RoundState(
            round_number=round_number,
            dealer_seat_index=dealer_seat,
            dealer_id=dealer.id,
            current_turn_seat_index=seat_after(dealer_seat, count),
            vault_value=self.config.vault_start,
            submission_tracker={p.id: SubmissionTrackerEntry() for p in self.players},
        )
        self.private = RoundPrivate()
        self.last_actions = {}
        self._finalizing = False

    def _start_first_round(self) -> None:
        self.team_scores = TeamTotals()
        self.history = []
        self._previous_dealer_seat = None
        self.phase = "SETUP"
        self._reset_round(1)

    def start_game(self) -> None:
        self._require_lobby()
        self._require_players()
        self._require_preflight()
        if not self.workbook_initialized:
            raise PreconditionViolation("Initialize workbook before starting the game.")
        self._start_first_round()
        logger.info("Game started", extra={"players": len(self.players), "rounds": self.config.rounds})
        self._toast("Game started. Round 1 setup.", "success")
        self._emit_state()

    def set_secret_card(self, code: str) -> None:
        self._require_phase("SETUP", "Secret card can only be set during SETUP.")
        parsed = parse_card_code(code)
        if parsed is None:
            raise DataIntegrityViolation("Invalid card code. Use Rank+Suit (e.g., QD).")
        self.private.secret_card = parsed.code
        self._toast("Secret card stored for this round.", "success")
        self._emit_state()

    def _choose_insider(self) -> InsiderReveal:
        insider = self.rng.choice(sort_players_by_seat(self.players))
        self.private.insider_id = insider.id
        parsed = parse_card_code(self.private.secret_card)
        reveal = InsiderReveal(insider_name=insider.name, suit=parsed.suit)
        self.bus.publish(EngineEvent(type="insider_reveal", payload=reveal.model_dump(mode="json")))
        return reveal

    def pick_insider(self) -> InsiderReveal:
        self._require_phase("SETUP", "Insider can only be picked during SETUP.")
        if not self.config.insider_enabled:
            raise PreconditionViolation("Insider twist is disabled.")
        if not self.private.secret_card:
            raise PreconditionViolation("Set secret card before picking insider.")
        if self.private.insider_id:
            raise PreconditionViolation("Insider already selected for this round.")
        reveal = self._choose_insider()
        self._toast("Insider selected. Private overlay ready.", "info")
        self._emit_state()
        return reveal

    def current_insider_reveal(self) -> InsiderReveal:
        """Révélation privée de la manche (y compris un initié tiré automatiquement)."""
        if not self.private.insider_id or not self.private.secret_card:
            raise PreconditionViolation("No insider selected for this round.")
        insider = self._player_by_id(self.private.insider_id)
        return InsiderReveal(insider_name=insider.name, suit=parse_card_code(self.private.secret_card).suit)

    def start_investigation(self) -> None:
        self._require_phase("SETUP", "Investigation can only start from SETUP.")
        if not self.private.secret_card:
            self.private.secret_card = f"{self.rng.choice(RANKS)}{self.rng.choice(SUITS)}"
        if self.config.insider_enabled and not self.private.insider_id:
            self._choose_insider()

        seconds = self.timings.investigation_seconds
        self.phase = "INVESTIGATION"
        self.round.current_turn_seat_index = seat_after(self.round.dealer_seat_index, len(self.players))
        self.round.investigation_ends_at = self.scheduler.time() + seconds

        self._cancel(self._investigation_timer)
        self._investigation_timer = self.scheduler.call_later(
            seconds, self._on_investigation_timeout, name="investigation"
        )
        logger.info("Investigation started", extra={"round": self.round.round_number, "seconds": seconds})

        first = self._player_at_seat(self.round.current_turn_seat_index)
        self._toast(f"It's {first.name}'s turn.", "info")
        self._emit_state()

    async def _on_investigation_timeout(self) -> None:
        if self.phase == "INVESTIGATION":
            await self.call_vault(AUTO_CALLER)

    def resolve_question(self, question: str, answer: str) -> QuestionEntry:
        self._require_phase("INVESTIGATION", "Questions can only be resolved during INVESTIGATION.")
        question = (question or "").strip()
        if not question:
            raise DataIntegrityViolation("Question text is required.")
        answer = (answer or "").strip().upper()
        if answer not in ("YES", "NO"):
            raise DataIntegrityViolation("Answer must be YES or NO.")

        asker = self._player_at_seat(self.round.current_turn_seat_index)
        entry = QuestionEntry(asker_player_id=asker.id, question=question, answer=answer)
        self.round.questions.append(entry)
        self.round.vault_value += 1
        self.last_actions[asker.id] = "asked Q"

        next_seat = seat_after(self.round.current_turn_seat_index, len(self.players))
        self.round.current_turn_seat_index = next_seat
        self._toast(f"It's {self._player_at_seat(next_seat).name}'s turn.", "info")
        self._emit_state()
        return entry

    # -----------------------------
    # Assistant IA
    # -----------------------------
    def _turn_marker(self) -> Tuple[int, int, int]:
        return (self.round.round_number, self.round.current_turn_seat_index, len(self.round.questions))

    def _require_analysis_ready(self) -> str:
        self._require_phase("INVESTIGATION", "Questions can only be analyzed during INVESTIGATION.")
        if not self.private.secret_card:
            raise PreconditionViolation("Secret card is required before AI analysis.")
        return self.private.secret_card

    def _turn_unchanged(self, marker: Tuple[int, int, int]) -> bool:
        return self.phase == "INVESTIGATION" and self._turn_marker() == marker

    async def _decide_and_resolve(
        self, transcript: str, secret_card: str, started: float, marker: Tuple[int, int, int]
    ) -> AiQuestionOutcome:
        """`marker` est pris avant le premier appel IA : une question résolue entre-temps annule la décision."""

        def outcome(status, reason, **extra) -> AiQuestionOutcome:
            latency_ms = int((time.monotonic() - started) * 1000)
            return AiQuestionOutcome(
                status=status, transcript=transcript, reason=reason, latency_ms=latency_ms, **extra
            )

        transcript = (transcript or "").strip()
        if not self._turn_unchanged(marker):
            return outcome("RETRY", "ERROR", error=STATE_CHANGED_MESSAGE)
        if not transcript:
            return outcome("RETRY", "NO_VALID_QUESTION")
        if self.analyzer is None:
            return outcome("RETRY", "ERROR", error="AI question analysis is not configured.")

        try:
            decision = await anyio.to_thread.run_sync(self.analyzer.decide, transcript, secret_card)
        except ExternalServiceFailure as exc:
            logger.warning("AI question analysis failed", exc_info=True, extra={"round": self.round.round_number})
            return outcome("RETRY", "ERROR", error=str(exc))

        if not self._turn_unchanged(marker):
            return outcome("RETRY", "ERROR", error=STATE_CHANGED_MESSAGE)
        if decision.model_refused:
            return outcome("RETRY", "MODEL_REFUSED")
        if not decision.should_respond or decision.answer is None:
            return outcome("RETRY", "NO_VALID_QUESTION")

        self.resolve_question(decision.edited_question, decision.answer)
        return outcome("RESOLVED", "OK", edited_question=decision.edited_question, answer=decision.answer)

    async def analyze_question_from_transcript(self, transcript: str) -> AiQuestionOutcome:
        secret_card = self._require_analysis_ready()
        return await self._decide_and_resolve(transcript, secret_card, time.monotonic(), self._turn_marker())

    async def analyze_question_from_audio(self, audio: bytes, mime_type: str = "audio/webm") -> AiQuestionOutcome:
        secret_card = self._require_analysis_ready()
        if not audio:
            raise DataIntegrityViolation("Audio file is required.")
        started = time.monotonic()
        marker = self._turn_marker()
        if self.analyzer is None:
            return AiQuestionOutcome(
                status="RETRY", transcript="", reason="ERROR", error="AI question analysis is not configured."
            )
        try:
            transcript = await anyio.to_thread.run_sync(self.analyzer.transcribe, audio, mime_type)
        except ExternalServiceFailure as exc:
            logger.warning("AI transcription failed", exc_info=True, extra={"round": self.round.round_number})
            return AiQuestionOutcome(
                status="RETRY",
                transcript="",
                reason="ERROR",
                latency_ms=int((time.monotonic() - started) * 1000),
                error=str(exc),
            )
        return await self._decide_and_resolve(transcript, secret_card, started, marker)

    # -----------------------------
    # Coffre & scoring
    # -----------------------------
    def _generate_round_code(self) -> str:
        return f"R{self.round.round_number}-{self.rng.choice(ROUND_CODE_WORDS)}"

    async def call_vault(self, called_by: str) -> None:
        self._require_phase("INVESTIGATION", "Vault can only be called during INVESTIGATION.")
        if called_by != AUTO_CALLER:
            current = self._player_at_seat(self.round.current_turn_seat_index)
            if current.id != called_by:
                raise PreconditionViolation("Only the current turn player can call vault.")
            self.last_actions[called_by] = "called vault"

        self.round.called_by = called_by
        self._cancel(self._investigation_timer)
        self._investigation_timer = None

        timings = self.timings
        code = self._generate_round_code()
        round_number = self.round.round_number
        self.phase = "SCORING"
        self._finalizing = False
        self.round.round_code = code
        self.round.investigation_ends_at = None
        self.round.scoring_ends_at = self.scheduler.time() + timings.scoring_seconds
        self.round.submissions = {}
        self.round.submission_tracker = {p.id: SubmissionTrackerEntry() for p in self.players}

        self._cancel_scoring_timers()
        self._scoring_timer = self.scheduler.call_later(
            timings.scoring_seconds, functools.partial(self.finalize_scoring, "timer"), name="scoring"
        )
        self._poll_timer = self.scheduler.call_every(
            timings.poll_interval_ms / 1000, self.poll_workbook_once, name="poll"
        )
        logger.info("Vault called", extra={"round": round_number, "round_code": code, "called_by": called_by})

        if called_by == AUTO_CALLER:
            self._toast("Vault called automatically (investigation timer expired).", "warning")
        else:
            self._toast(f"Vault called by {self._player_by_id(called_by).name}.", "warning")
        self._emit_state()

        try:
            await self.workbook.prepare_scoring_round(self.players, round_number, code)
        except TransientIOFailure as exc:
            self._add_alert(lock_alert(str(exc)))
        if self.phase == "SCORING" and self.round.round_code == code:
            self._emit_state()

    def _all_submitted(self) -> bool:
        return all(p.id in self.round.submissions for p in self.players)

    async def poll_workbook_once(self) -> None:
        """Un passage de réconciliation : santé du fichier, lecture, validation, accusés de réception."""
        if self.phase != "SCORING" or self._finalizing:
            return
        code = self.round.round_code
        round_number = self.round.round_number
        alert_ids_before = [a.id for a in self.alerts]

        health = await anyio.to_thread.run_sync(
            detect_alerts, self.config.workbook_path, self.workbook_last_mtime, True
        )
        if not self._scoring_still(code):
            return
        known = set(alert_ids_before)
        if any(alert.id not in known for alert in health):
            self._toast("Excel sync issue detected. Check OneDrive.", "warning")
        others = [a for a in self.alerts if a.type not in HEALTH_ALERT_TYPES]
        self._set_alerts(health + others)

        try:
            snapshot = await self.workbook.read_snapshot(self.players, round_number)
        except TransientIOFailure:
            if self._scoring_still(code):
                self._add_alert(lock_alert("Workbook read failed. File may be locked or mid-sync."))
                self._emit_state()
            return
        if not self._scoring_still(code):
            return

        self.workbook_last_mtime = snapshot.mtime
        if snapshot.parse_retries > 0:
            self._add_alert(parse_retry_alert(snapshot.parse_retries))

        ack_enabled = self.config.ack_writes_enabled
        acks: List[AckUpdate] = []
        changed = False
        seen_at = datetime.now(timezone.utc)

        for player in sort_players_by_seat(self.players):
            tracker = self.round.submission_tracker.setdefault(player.id, SubmissionTrackerEntry())
            tracker.last_seen_at = seen_at
            if player.id in self.round.submissions:
                continue

            row = snapshot.rows.get(player.id)
            if row is None or not row.level:
                continue
            guess = _guess_from_row(row)
            if not guess:
                continue

            if row.round_number != round_number or row.round_code != code.upper() or row.status != "OPEN":
                if tracker.validation_message != ROUND_MISMATCH_MESSAGE:
                    tracker.validation_message = ROUND_MISMATCH_MESSAGE
                    changed = True
                if ack_enabled:
                    acks.append(AckUpdate(sheet_name=player.sheet_name, validation_message=ROUND_MISMATCH_MESSAGE))
                continue

            if not is_submission_level(row.level) or not validate_guess(row.level, guess):
                if tracker.validation_message != INVALID_FORMAT_MESSAGE:
                    tracker.validation_message = INVALID_FORMAT_MESSAGE
                    changed = True
                self._add_alert(
                    invalid_submission_alert(player.id, round_number, f"{player.name}: {INVALID_FORMAT_MESSAGE}")
                )
                if ack_enabled:
                    acks.append(AckUpdate(sheet_name=player.sheet_name, validation_message=INVALID_FORMAT_MESSAGE))
                continue

            self.round.submissions[player.id] = Submission(
                player_id=player.id, level=row.level, guess=normalize_guess(guess)
            )
            tracker.submitted = True
            tracker.validation_message = None
            self.last_actions[player.id] = "submitted"
            changed = True
            logger.info("Submission accepted", extra={"player_id": player.id, "round": round_number})
            if ack_enabled:
                acks.append(
                    AckUpdate(sheet_name=player.sheet_name, accepted_at=_now_iso(), validation_message=ACCEPTED_MESSAGE)
                )

        if acks:
            try:
                await self.workbook.write_acknowledgements(round_number, acks)
            except TransientIOFailure as exc:
                if self._scoring_still(code):
                    self._add_alert(lock_alert(str(exc)))
            if not self._scoring_still(code):
                return

        if changed or [a.id for a in self.alerts] != alert_ids_before:
            self._emit_state()

        if self._all_submitted():
            await self.finalize_scoring("all")

    async def finalize_scoring(self, reason: str = "timer") -> Optional[RoundSummary]:
        """SCORING -> REVEAL. Sans effet si déjà en cours ou si la phase a changé."""
        if self.phase != "SCORING" or self._finalizing:
            return None
        self._finalizing = True
        try:
            self._cancel_scoring_timers()
            secret_card = self.private.secret_card
            if not secret_card:
                raise DataIntegrityViolation("Secret card missing during scoring finalize.")

            vault_value = self.round.vault_value
            rows: List[RoundResultRow] = []
            round_totals = TeamTotals()
            for player in sort_players_by_seat(self.players):
                submission = self.round.submissions.get(player.id)
                points = 0
                if submission is not None:
                    points = calculate_guess_points(submission.level, submission.guess, secret_card, vault_value)
                if self.round.called_by == player.id:
                    points = apply_caller_modifier(points)
                rows.append(
                    RoundResultRow(
                        player_id=player.id,
                        player_name=player.name,
                        team=player.team,
                        submitted=submission is not None,
                        level=submission.level if submission else None,
                        guess=submission.guess if submission else None,
                        points=points,
                    )
                )
                round_totals.add(player.team, points)

            self.team_scores = TeamTotals(A=self.team_scores.A + round_totals.A, B=self.team_scores.B + round_totals.B)
            summary = RoundSummary(
                round_number=self.round.round_number,
                rows=rows,
                team_round_totals=round_totals,
                team_running_totals=self.team_scores.model_copy(),
                secret_card=secret_card,
                called_by=self.round.called_by,
            )
            self.history.append(summary)
            self.round.latest_result = summary
            self.round.scoring_ends_at = None
            self.phase = "REVEAL"
            logger.info(
                "Round finalized",
                extra={"round": summary.round_number, "reason": reason, "team_a": round_totals.A, "team_b": round_totals.B},
            )
        finally:
            self._finalizing = False

        if reason == "all":
            self._toast("All submissions received. Revealing.", "success")
        else:
            self._toast("Scoring timer expired. Revealing.", "warning")
        self._emit_state()

        if self.demo.status == "RUNNING":
            self._cancel(self._demo_timer)
            self._demo_timer = self.scheduler.call_later(DEMO_REVEAL_SECONDS, self._finish_demo_after_reveal, name="demo")

        try:
            await self.workbook.close_scoring_round(self.players, summary.round_number)
        except TransientIOFailure:
            logger.warning("Could not close scoring row", exc_info=True, extra={"round": summary.round_number})
        return summary

    def next_round(self) -> None:
        self._require_phase("REVEAL", "Next round is only available in REVEAL phase.")
        if self.demo.status == "RUNNING":
            self._finish_demo()
            return
        if self.round.round_number >= self.config.rounds:
            self.phase = "DONE"
            logger.info("Game complete", extra={"team_a": self.team_scores.A, "team_b": self.team_scores.B})
            self._toast("Game complete. Final scores are ready.", "success")
            self._emit_state()
            return
        next_number = self.round.round_number + 1
        self.phase = "SETUP"
        self._reset_round(next_number)
        self._toast(f"Round {next_number} setup started.", "info")
        self._emit_state()

    def reset_to_lobby(self) -> None:
        """Retour immédiat au LOBBY; joueurs et config conservés."""
        self._cancel_all_timers()
        self.phase = "LOBBY"
        self.round = RoundState()
        self.private = RoundPrivate()
        self.team_scores = TeamTotals()
        self.history = []
        self.last_actions = {}
        self.demo = DemoState()
        self._demo_config = None
        self._demo_script = []
        self._previous_dealer_seat = None
        self._finalizing = False
        logger.info("Game reset to lobby")
        self._toast("Game reset to lobby.", "info")
        self._emit_state()

    # -----------------------------
    # Démo
    # -----------------------------
    def start_demo(self) -> None:
        self._require_lobby()
        self._require_players()
        self._require_preflight()
        if not self.workbook_initialized:
            raise PreconditionViolation("Initialize workbook before running the demo.")

        self._demo_config = self.config.model_copy(
            update={
                "rounds": 1,
                "investigation_seconds": DEMO_INVESTIGATION_SECONDS,
                "scoring_seconds": DEMO_SCORING_SECONDS,
                "poll_interval_ms": DEMO_POLL_INTERVAL_MS,
            }
        )
        self.demo = DemoState(status="RUNNING")
        self._start_first_round()
        self._toast("Demo round started.", "info")
        logger.info("Demo started")
        self.start_investigation()

        self._demo_script = list(DEMO_SCRIPT)
        self._cancel(self._demo_timer)
        self._demo_timer = self.scheduler.call_every(DEMO_QUESTION_INTERVAL_SECONDS, self._demo_tick, name="demo")

    async def _demo_tick(self) -> None:
        if self.demo.status != "RUNNING" or self.phase != "INVESTIGATION":
            self._cancel(self._demo_timer)
            return
        if self._demo_script:
            question, predicate = self._demo_script.pop(0)
            facts = card_facts(self.private.secret_card)
            self.resolve_question(question, "YES" if predicate(facts) else "NO")
            return

        self._cancel(self._demo_timer)
        caller = self._player_at_seat(self.round.current_turn_seat_index)
        await self.call_vault(caller.id)
        if self.phase == "SCORING":
            self._demo_timer = self.scheduler.call_later(DEMO_SUBMIT_DELAY_SECONDS, self._demo_submit, name="demo")

    def _random_inputs(self, level: str) -> Dict[str, str]:
        if level == "SAFE":
            return {"color": self.rng.choice(COLORS)}
        if level == "MEDIUM":
            return {"suit": self.rng.choice(SUITS)}
        return {"number": self.rng.choice(WORKBOOK_RANKS), "suit": self.rng.choice(SUITS)}

    async def _demo_submit(self) -> None:
        if self.demo.status != "RUNNING" or self.phase != "SCORING":
            return
        code = self.round.round_code
        round_number = self.round.round_number
        for player in sort_players_by_seat(self.players):
            level = self.rng.choice(SUBMISSION_LEVELS)
            try:
                await self.workbook.write_player_inputs(
                    player.sheet_name, round_number, level=level, **self._random_inputs(level)
                )
            except TransientIOFailure as exc:
                if self._scoring_still(code):
                    self._add_alert(lock_alert(str(exc)))
                    self._emit_state()
                return
            if not self._scoring_still(code):
                return

    async def _finish_demo_after_reveal(self) -> None:
        if self.phase == "REVEAL" and self.demo.status == "RUNNING":
            self._finish_demo()

    def _finish_demo(self) -> None:
        self._cancel(self._demo_timer)
        self._demo_timer = None
        self._demo_config = None
        self.phase = "DONE"
        self.demo = DemoState(status="READY_TO_START")
        logger.info("Demo complete")
        self._toast("Demo complete. Start the real game when ready.", "success")
        self._emit_state()

    async def start_real_game_after_demo(self) -> None:
        self._require_phase("DONE", "Real game can only start once the demo is done.")
        if self.demo.status != "READY_TO_START":
            raise PreconditionViolation("Run the demo before starting the real game from here.")
        self._require_players()

        await self._write_fresh_workbook()
        if self.phase != "DONE" or self.demo.status != "READY_TO_START":
            return

        self.demo = DemoState()
        self._start_first_round()
        logger.info("Real game started after demo", extra={"players": len(self.players)})
        self._toast("Game started. Round 1 setup.", "success")
        self._emit_state()


def build_engine(app_settings: Optional[Settings] = None, **overrides) -> GameEngine:
    """Construit le moteur à partir de l'environnement (échec immédiat si WORKBOOK_PATH est invalide)."""
    app_settings = app_settings or settings
    config = GameConfig(
        workbook_path=app_settings.WORKBOOK_PATH.strip(),
        ack_writes_enabled=app_settings.ACK_WRITES_ENABLED,
    )
    overrides.setdefault("analyzer", QuestionAnalyzer.from_settings(app_settings))
    return GameEngine(config, **overrides)
