"""
Module routes/investigation.py
Rôle:
- Phase d'enquête : résolution manuelle d'une question, assistant IA (texte / audio), appel du coffre.

Notes:
- L'endpoint texte sert aux tests et au dev; désactivable via ENABLE_AI_TEXT_ENDPOINT.
- Les échecs IA ne sont PAS des erreurs HTTP : le moteur renvoie un résultat RETRY (raison + message).
- Audio limité à 10 Mo (multipart, champ "audio").
"""
from typing import Literal

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field

from chicken_vault.config.settings import settings
from chicken_vault.deps.auth import dealer_required
from chicken_vault.deps.engine import get_engine, snapshot_of
from chicken_vault.services.errors import DataIntegrityViolation, PreconditionViolation
from chicken_vault.services.game_engine import GameEngine

router = APIRouter(prefix="/game/investigation", tags=["investigation"], dependencies=[Depends(dealer_required)])

MAX_AUDIO_BYTES = 10 * 1024 * 1024


class ResolveQuestionPayload(BaseModel):
    question: str = Field(..., min_length=1)
    answer: Literal["YES", "NO"]


class TranscriptPayload(BaseModel):
    transcript: str


class CallVaultPayload(BaseModel):
    called_by: str = Field(..., min_length=1, description="player_id du joueur courant, ou \"AUTO\"")


@router.post("/resolve-question")
async def resolve_question(payload: ResolveQuestionPayload, engine: GameEngine = Depends(get_engine)):
    engine.resolve_question(payload.question, payload.answer)
    return snapshot_of(engine)


@router.post("/analyze-question-text")
async def analyze_question_text(payload: TranscriptPayload, engine: GameEngine = Depends(get_engine)):
    if not settings.ENABLE_AI_TEXT_ENDPOINT:
        raise PreconditionViolation("Text analysis endpoint is disabled.")
    outcome = await engine.analyze_question_from_transcript(payload.transcript)
    return outcome.model_dump(mode="json")


@router.post("/analyze-question-audio")
async def analyze_question_audio(audio: UploadFile = File(...), engine: GameEngine = Depends(get_engine)):
    data = await audio.read()
    if not data:
        raise DataIntegrityViolation("Audio file is required.")
    if len(data) > MAX_AUDIO_BYTES:
        raise DataIntegrityViolation("Audio file is too large (10 MB max).")
    outcome = await engine.analyze_question_from_audio(data, audio.content_type or "audio/webm")
    return outcome.model_dump(mode="json")


@router.post("/call-vault")
async def call_vault(payload: CallVaultPayload, engine: GameEngine = Depends(get_engine)):
    await engine.call_vault(payload.called_by.strip())
    return snapshot_of(engine)
