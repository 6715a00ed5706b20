"""
Service: question_analyzer.py
- Centralise les appels au fournisseur IA (API compatible OpenAI) pour l'assistant croupier.
- Transcrit la question d'un joueur (audio) puis décide OUI/NON à partir des faits dérivés de la carte.

Règles:
- Le modèle ne reçoit QUE des faits dérivés (rang, valeur, suit, couleur, figure, as) + la transcription.
- Réponse contrainte par un schéma JSON strict, validée par pydantic; repli tolérant si le JSON
  est exploitable mais non conforme.
- Refus du modèle -> model_refused=True (jamais une réponse inventée).

Fonctions principales:
- QuestionAnalyzer.decide(transcript, secret_card) -> QuestionDecision
- QuestionAnalyzer.transcribe(audio, mime_type) -> str
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Literal, Optional, Tuple
from uuid import uuid4

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from chicken_vault.services.errors import AIServiceError, MalformedModelOutput
from chicken_vault.utils.cards import card_facts

logger = logging.getLogger(__name__)

DEFAULT_CHAT_TIMEOUT: Tuple[float, float] = (5.0, 30.0)  # connect, read
DEFAULT_TRANSCRIBE_TIMEOUT: Tuple[float, float] = (5.0, 60.0)

TRANSCRIPTION_PROMPT = (
    "You are transcribing a noisy party-game room recording. "
    "Transcribe only the question spoken by the current player. "
    "Ignore side chatter, laughter, table talk, and overlapping non-question speech. "
    "Do not invent or guess text. "
    "If there is no single clear player question, return an empty transcript."
)

DECISION_DEVELOPER_NOTE = (
    "You are the dealer assistant for a hidden-card yes/no game. "
    "Return only valid JSON for the provided strict schema. "
    "Use hidden-card facts and transcript only. "
    "Do not invent facts or infer context that is not provided. "
    "When the transcript contains side chatter, focus on the current player question if one is present."
)

IgnoreReason = Literal["NO_QUESTION", "CHATTER", "NOT_CARD_RELATED", "UNCLEAR"]
IGNORE_REASONS = ("NO_QUESTION", "CHATTER", "NOT_CARD_RELATED", "UNCLEAR")

QUESTION_DECISION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["shouldRespond", "editedQuestion", "answer", "ignoreReason"],
    "properties": {
        "shouldRespond": {
            "type": "boolean",
            "description": "True only when transcript contains a clear card-related question from the current player.",
        },
        "editedQuestion": {
            "type": "string",
            "description": "Minimal cleanup of filler words keeping the original meaning. Empty when no question.",
        },
        "answer": {"type": ["string", "null"], "enum": ["YES", "NO", None]},
        "ignoreReason": {"type": ["string", "null"], "enum": [*IGNORE_REASONS, None]},
    },
}

AUDIO_EXTENSIONS = (
    ("webm", "webm"),
    ("mp4", "m4a"),
    ("m4a", "m4a"),
    ("aac", "m4a"),
    ("wav", "wav"),
    ("wave", "wav"),
    ("ogg", "ogg"),
    ("mpeg", "mp3"),
    ("mp3", "mp3"),
    ("aiff", "aiff"),
)


class QuestionDecision(BaseModel):
    """Décision structurée renvoyée par le modèle."""
    should_respond: bool = Field(alias="shouldRespond")
    edited_question: str = Field(default="", alias="editedQuestion")
    answer: Optional[Literal["YES", "NO"]] = None
    ignore_reason: Optional[IgnoreReason] = Field(default=None, alias="ignoreReason")
    model_refused: bool = False

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    @model_validator(mode="after")
    def _check_consistency(self) -> "QuestionDecision":
        self.edited_question = self.edited_question.strip()
        if self.should_respond:
            if not self.edited_question:
                raise ValueError("editedQuestion is required when shouldRespond=true")
            if self.answer is None:
                raise ValueError("answer is required when shouldRespond=true")
            if self.ignore_reason is not None:
                raise ValueError("ignoreReason must be null when shouldRespond=true")
        else:
            if self.answer is not None:
                raise ValueError("answer must be null when shouldRespond=false")
            if self.ignore_reason is None:
                raise ValueError("ignoreReason is required when shouldRespond=false")
        return self

    @classmethod
    def skipped(cls, reason: IgnoreReason = "UNCLEAR", *, refused: bool = False) -> "QuestionDecision":
        return cls(should_respond=False, edited_question="", answer=None, ignore_reason=reason, model_refused=refused)


def _unwrap(value: Any) -> Any:
    # certains modèles renvoient {"value": ...} au lieu de la valeur brute
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


def normalize_decision(payload: Any, transcript: str) -> QuestionDecision:
    """Repli tolérant pour un JSON valide mais hors schéma."""
    source = payload if isinstance(payload, dict) else {}
    should_respond = _unwrap(source.get("shouldRespond"))
    edited = _unwrap(source.get("editedQuestion"))
    answer = _unwrap(source.get("answer"))
    reason = _unwrap(source.get("ignoreReason"))

    edited = edited.strip() if isinstance(edited, str) else ""
    if should_respond is True and answer in ("YES", "NO"):
        return QuestionDecision(
            should_respond=True,
            edited_question=edited or transcript.strip(),
            answer=answer,
            ignore_reason=None,
        )
    return QuestionDecision.skipped(reason if reason in IGNORE_REASONS else "UNCLEAR")


def extension_for_mime_type(mime_type: str) -> str:
    lower = (mime_type or "").lower()
    for marker, extension in AUDIO_EXTENSIONS:
        if marker in lower:
            return extension
    return "webm"


def _extract_content(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(chunk.get("text", "") for chunk in content if isinstance(chunk, dict)).strip()
    return ""


class QuestionAnalyzer:
    """
    Client HTTP synchrone (requests) vers le fournisseur IA.
    - Retries avec backoff exponentiel sur 429/5xx.
    - Chaque requête journalisée avec un identifiant de corrélation.
    - Appelé depuis un thread worker par le moteur (jamais sur la boucle asyncio).
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        question_model: str = "gpt-5-nano",
        transcribe_model: str = "gpt-4o-transcribe",
        transcribe_language: str = "",
        session: Optional[requests.Session] = None,
        chat_timeout: Tuple[float, float] = DEFAULT_CHAT_TIMEOUT,
        transcribe_timeout: Tuple[float, float] = DEFAULT_TRANSCRIBE_TIMEOUT,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.question_model = question_model
        self.transcribe_model = transcribe_model
        self.transcribe_language = transcribe_language
        self.session = session or self._build_session()
        self.chat_timeout = chat_timeout
        self.transcribe_timeout = transcribe_timeout

    @classmethod
    def from_settings(cls, settings) -> "QuestionAnalyzer":
        return cls(
            settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_API_BASE_URL,
            question_model=settings.OPENAI_QUESTION_MODEL,
            transcribe_model=settings.OPENAI_TRANSCRIBE_MODEL,
            transcribe_language=settings.OPENAI_TRANSCRIBE_LANGUAGE,
        )

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"POST"}),
            respect_retry_after_header=True,
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _headers(self) -> Dict[str, str]:
        key = (self.api_key or "").strip()
        if not key:
            raise AIServiceError("OPENAI_API_KEY is required for AI question analysis.")
        return {"Authorization": f"Bearer {key}"}

    def _post(self, path: str, *, request_id: str, timeout: Tuple[float, float], **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = self._headers()
        try:
            logger.debug("AI request start", extra={"ai_url": url, "ai_request_id": request_id})
            response = self.session.post(url, headers=headers, timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            logger.warning("AI request timeout", extra={"ai_url": url, "ai_request_id": request_id})
            raise AIServiceError("AI request timed out") from exc
        except requests.RequestException as exc:
            logger.error("AI request failed", exc_info=True, extra={"ai_url": url, "ai_request_id": request_id})
            raise AIServiceError("AI request failed") from exc

        try:
            payload = response.json() if response.content else {}
        except ValueError as exc:
            raise AIServiceError(f"AI API returned non-JSON response (status {response.status_code}).") from exc

        if not response.ok:
            message = ((payload or {}).get("error") or {}).get("message") or (
                f"AI API request failed ({response.status_code})."
            )
            logger.error(
                "AI request rejected",
                extra={"ai_url": url, "ai_request_id": request_id, "status": response.status_code},
            )
            raise AIServiceError(message)
        return payload

    # -----------------------------
    # Transcription
    # -----------------------------
    def transcribe(self, audio: bytes, mime_type: str = "audio/webm") -> str:
        if not audio:
            return ""
        mime_type = (mime_type or "").strip() or "audio/webm"
        data = {"model": self.transcribe_model, "prompt": TRANSCRIPTION_PROMPT}
        if self.transcribe_language.strip():
            data["language"] = self.transcribe_language.strip()
        files = {"file": (f"question-audio.{extension_for_mime_type(mime_type)}", audio, mime_type)}

        request_id = f"transcribe-{uuid4().hex}"
        payload = self._post(
            "/audio/transcriptions",
            request_id=request_id,
            timeout=self.transcribe_timeout,
            data=data,
            files=files,
        )
        text = str(payload.get("text") or "").strip()
        logger.info("AI transcription done", extra={"ai_request_id": request_id, "chars": len(text)})
        return text

    # -----------------------------
    # Décision OUI/NON
    # -----------------------------
    def decide(self, transcript: str, secret_card: str) -> QuestionDecision:
        facts = card_facts(secret_card)
        user_content = "\n".join(
            [
                "Hidden card facts:",
                json.dumps(facts, separators=(",", ":")),
                f'Transcript: "{transcript}"',
            ]
        )
        body = {
            "model": self.question_model,
            "reasoning_effort": "minimal",
            "max_completion_tokens": 800,
            "messages": [
                {"role": "developer", "content": DECISION_DEVELOPER_NOTE},
                {"role": "user", "content": user_content},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "question_decision_v1", "strict": True, "schema": QUESTION_DECISION_SCHEMA},
            },
        }

        request_id = f"decide-{uuid4().hex}"
        payload = self._post("/chat/completions", request_id=request_id, timeout=self.chat_timeout, json=body)
        choices = payload.get("choices") or [{}]
        message = choices[0].get("message") or {}

        refusal = message.get("refusal")
        if isinstance(refusal, str) and refusal.strip():
            logger.info("AI model refused", extra={"ai_request_id": request_id})
            return QuestionDecision.skipped(refused=True)

        content = _extract_content(message)
        if not content:
            return QuestionDecision.skipped()

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("Invalid JSON from question model", extra={"ai_request_id": request_id})
            raise MalformedModelOutput("Question decision model returned invalid JSON.") from exc

        try:
            decision = QuestionDecision.model_validate(parsed)
        except ValidationError:
            logger.warning("Question decision off-schema, normalizing", extra={"ai_request_id": request_id})
            decision = normalize_decision(parsed, transcript)

        logger.info(
            "AI question decided",
            extra={"ai_request_id": request_id, "should_respond": decision.should_respond, "answer": decision.answer},
        )
        return decision
