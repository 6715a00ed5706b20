"""
Models / game.py
Rôle:
- Définir l'état typé d'une session Chicken Vault (config, manche, scores, snapshot public).

Champs clés:
- GameConfig: paramètres modifiables en LOBBY uniquement (bornés par `clamped()`).
- RoundState: état public de la manche courante (recréé à chaque manche).
- RoundPrivate: carte secrète + initié; jamais sérialisé dans le snapshot.
- GameSnapshot: ce que reçoit l'UI après chaque commande ou événement.
"""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from chicken_vault.models.player import Player, TeamId
from chicken_vault.models.workbook import WorkbookStatus

GamePhase = Literal["LOBBY", "SETUP", "INVESTIGATION", "SCORING", "REVEAL", "DONE"]
QuestionAnswer = Literal["YES", "NO"]
SubmissionLevel = Literal["SAFE", "MEDIUM", "BOLD"]
DemoStatus = Literal["IDLE", "RUNNING", "READY_TO_START"]
AUTO_CALLER = "AUTO"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


class GameConfig(BaseModel):
    rounds: int = 3
    investigation_seconds: int = 180
    scoring_seconds: int = 60
    vault_start: int = 4
    insider_enabled: bool = True
    poll_interval_ms: int = 2000
    workbook_path: str = ""
    ack_writes_enabled: bool = False

    def clamped(self) -> "GameConfig":
        """Copie bornée (mêmes bornes que l'UI croupier)."""
        return self.model_copy(
            update={
                "rounds": _clamp(self.rounds, 1, 10),
                "investigation_seconds": _clamp(self.investigation_seconds, 10, 900),
                "scoring_seconds": _clamp(self.scoring_seconds, 10, 600),
                "vault_start": _clamp(self.vault_start, 1, 99),
                "poll_interval_ms": _clamp(self.poll_interval_ms, 1000, 10000),
            }
        )


class PreflightState(BaseModel):
    confirmed_local_availability: bool = False
    confirmed_desktop_excel_closed: bool = False
    preflight_passed: bool = False


class QuestionEntry(BaseModel):
    asker_player_id: str
    question: str
    answer: QuestionAnswer
    ts: datetime = Field(default_factory=_utcnow)


class Submission(BaseModel):
    player_id: str
    level: SubmissionLevel
    guess: str
    ts: datetime = Field(default_factory=_utcnow)


class SubmissionTrackerEntry(BaseModel):
    submitted: bool = False
    last_seen_at: Optional[datetime] = None
    validation_message: Optional[str] = None


class TeamTotals(BaseModel):
    A: int = 0
    B: int = 0

    def add(self, team: TeamId, points: int) -> None:
        setattr(self, team, getattr(self, team) + points)


class RoundResultRow(BaseModel):
    player_id: str
    player_name: str
    team: TeamId
    submitted: bool
    level: Optional[SubmissionLevel] = None
    guess: Optional[str] = None
    points: int


class RoundSummary(BaseModel):
    round_number: int
    rows: List[RoundResultRow]
    team_round_totals: TeamTotals
    team_running_totals: TeamTotals
    secret_card: str
    called_by: Optional[str] = None


class RoundState(BaseModel):
    round_number: int = 0
    dealer_seat_index: int = 0
    dealer_id: Optional[str] = None
    current_turn_seat_index: int = 0
    vault_value: int = 0
    called_by: Optional[str] = None  # player_id ou "AUTO"
    questions: List[QuestionEntry] = Field(default_factory=list)
    round_code: str = ""
    investigation_ends_at: Optional[float] = None
    scoring_ends_at: Optional[float] = None
    submissions: Dict[str, Submission] = Field(default_factory=dict)
    submission_tracker: Dict[str, SubmissionTrackerEntry] = Field(default_factory=dict)
    latest_result: Optional[RoundSummary] = None


class RoundPrivate(BaseModel):
    secret_card: Optional[str] = None
    insider_id: Optional[str] = None


class DemoState(BaseModel):
    status: DemoStatus = "IDLE"


class InsiderReveal(BaseModel):
    insider_name: str
    suit: str


AiQuestionStatus = Literal["RESOLVED", "RETRY"]
AiQuestionReason = Literal["OK", "NO_VALID_QUESTION", "MODEL_REFUSED", "ERROR"]


class AiQuestionOutcome(BaseModel):
    status: AiQuestionStatus
    transcript: str
    edited_question: Optional[str] = None
    answer: Optional[QuestionAnswer] = None
    reason: AiQuestionReason
    latency_ms: int = 0
    error: Optional[str] = None


class GameSnapshot(BaseModel):
    """Snapshot public (sans RoundPrivate)."""
    phase: GamePhase
    config: GameConfig
    preflight: PreflightState
    players: List[Player]
    round: RoundState
    team_scores: TeamTotals
    history: List[RoundSummary]
    workbook: WorkbookStatus
    demo: DemoState
    last_actions: Dict[str, str]
