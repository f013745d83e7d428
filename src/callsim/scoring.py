"""
Call scoring.

Scores a finished call on five cold-calling criteria:
- accroche / mise en confiance (opening, building trust)
- écoute / adaptation (listening, adapting)
- gestion des objections (handling objections)
- clarté / structure (clarity, structure)
- conclusion / engagement (closing, commitment)

The OpenAI scorer asks for a JSON object and validates it with pydantic. When it
fails, a deterministic fallback derived from transcript statistics is used so the
trainee always gets a result.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from src.callsim.config import get_config
from src.callsim.personas import get_contact
from src.callsim.types import Speaker, Turn

logger = structlog.get_logger(__name__)


class ScoringError(Exception):
    """The scoring collaborator failed or returned an unusable analysis."""
    pass


class CriterionScore(BaseModel):
    score: int = Field(ge=0, le=100, description="Score for this criterion, 0 to 100")
    commentaire: str = Field(default="", description="Short justification, in French")


class CriteriaBreakdown(BaseModel):
    """Per-criterion scores (keys match the dashboard)."""

    accroche_mise_en_confiance: CriterionScore
    ecoute_adaptation: CriterionScore
    gestion_objections: CriterionScore
    clarte_structure: CriterionScore
    conclusion_engagement: CriterionScore
    analyse_generale: str = Field(default="", description="Overall analysis, in French")

    def criteria_scores(self) -> Dict[str, int]:
        return {
            "accroche": self.accroche_mise_en_confiance.score,
            "ecoute": self.ecoute_adaptation.score,
            "objections": self.gestion_objections.score,
            "clarte": self.clarte_structure.score,
            "conclusion": self.conclusion_engagement.score,
        }


class CallAnalysis(BaseModel):
    """What a scorer returns."""

    score: int = Field(ge=0, le=100)
    strengths: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    detailed_breakdown: Optional[CriteriaBreakdown] = None
    detailed_feedback: Optional[str] = None


class SessionResult(BaseModel):
    """Final outcome of one call, handed to the surrounding application."""

    score: int = Field(ge=0, le=100)
    feedback: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    duration: int = Field(ge=0, description="Connected duration, whole seconds")
    detailed_analysis: Optional[str] = None
    criteria_scores: Optional[Dict[str, int]] = None
    transcript: List[Dict[str, Any]] = Field(default_factory=list)
    persona: str = ""
    difficulty: str = ""
    end_reason: str = ""
    error: Optional[str] = None
    fallback: bool = False


class CallScorer(ABC):
    @abstractmethod
    async def score_call(
        self,
        transcript: Sequence[Turn],
        persona: str,
        difficulty: str,
        duration_seconds: float,
    ) -> CallAnalysis:
        raise NotImplementedError


# Fallback texts (French UI)
_FALLBACK_STRENGTHS = ["Tu as participé à la conversation", "Effort de communication visible"]
_FALLBACK_RECOMMENDATIONS = [
    "Prépare une accroche de 30 secondes",
    "Structure ton discours commercial",
    "Entraîne-toi quotidiennement",
]
_FALLBACK_IMPROVEMENTS_LOW = [
    "Conversation trop courte",
    "Manque de structure commerciale",
    "Pas assez d'engagement",
]
_FALLBACK_IMPROVEMENTS = [
    "Gestion des objections",
    "Techniques de questionnement",
    "Closing commercial",
]


def fallback_score(transcript: Sequence[Turn], duration_seconds: float = 0.0) -> CallAnalysis:
    """
    Deterministic score from user-turn and word counts.

    Low for empty or very short exchanges, capped at 60 for longer ones.
    """
    user_turns = [t for t in transcript if t.speaker == Speaker.USER]
    word_count = sum(len(t.text.split()) for t in user_turns)

    if not user_turns:
        score = 0
    elif len(user_turns) == 1 and word_count < 10:
        score = 15
    elif word_count < 25:
        score = 35
    else:
        score = min(60, 25 + len(user_turns) * 5)

    if score < 30:
        level = "très insuffisante"
        advice = "Il faut au minimum te présenter et expliquer l'objet de l'appel."
    elif score < 50:
        level = "insuffisante"
        advice = "Continue à t'entraîner pour améliorer ta technique commerciale."
    else:
        level = "correcte"
        advice = "Continue à t'entraîner pour améliorer ta technique commerciale."

    return CallAnalysis(
        score=score,
        strengths=list(_FALLBACK_STRENGTHS) if score > 30 else [],
        recommendations=list(_FALLBACK_RECOMMENDATIONS),
        improvements=list(_FALLBACK_IMPROVEMENTS_LOW if score < 40 else _FALLBACK_IMPROVEMENTS),
        detailed_feedback=f"Performance {level}. {advice}",
    )


def format_transcript(transcript: Sequence[Turn], persona: str) -> str:
    contact = get_contact(persona)
    lines = []
    for turn in transcript:
        who = "Commercial" if turn.speaker == Speaker.USER else contact.name
        lines.append(f"{who}: {turn.text}")
    return "\n".join(lines)


def _scoring_prompt(transcript: Sequence[Turn], persona: str, difficulty: str, duration_seconds: float) -> str:
    contact = get_contact(persona)
    return f"""Analyse cet appel de prospection téléphonique (cold call) de manière STRICTE.

Interlocuteur: {contact.name}, {contact.title} chez {contact.company}
Difficulté: {difficulty}
Durée: {int(duration_seconds)} secondes

Transcription:
{format_transcript(transcript, persona) or "(aucun échange)"}

Évalue le commercial sur 5 critères (score de 0 à 100 chacun):
- accroche_mise_en_confiance
- ecoute_adaptation
- gestion_objections
- clarte_structure
- conclusion_engagement

Un appel très court ou sans présentation doit obtenir un score faible.

Réponds uniquement avec un objet JSON:
{{
  "score": <0-100>,
  "strengths": ["..."],
  "recommendations": ["..."],
  "improvements": ["..."],
  "detailed_breakdown": {{
    "accroche_mise_en_confiance": {{"score": <0-100>, "commentaire": "..."}},
    "ecoute_adaptation": {{"score": <0-100>, "commentaire": "..."}},
    "gestion_objections": {{"score": <0-100>, "commentaire": "..."}},
    "clarte_structure": {{"score": <0-100>, "commentaire": "..."}},
    "conclusion_engagement": {{"score": <0-100>, "commentaire": "..."}},
    "analyse_generale": "..."
  }}
}}"""


def parse_analysis(raw: str) -> CallAnalysis:
    """Validate the model's JSON; raises ScoringError."""
    try:
        analysis = CallAnalysis.model_validate_json(raw)
    except ValidationError as e:
        raise ScoringError(f"Invalid analysis: {e.error_count()} validation errors") from e

    if not analysis.recommendations:
        raise ScoringError("Analysis has no recommendations")
    return analysis


class OpenAICallScorer(CallScorer):
    """Scores calls with an OpenAI chat model in JSON mode."""

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or get_config()
        self.model = self.config.openai_scoring_model
        self._client = client or AsyncOpenAI(api_key=self.config.openai_api_key)

    async def score_call(
        self,
        transcript: Sequence[Turn],
        persona: str,
        difficulty: str,
        duration_seconds: float,
    ) -> CallAnalysis:
        start_time = asyncio.get_running_loop().time()
        prompt = _scoring_prompt(transcript, persona, difficulty, duration_seconds)

        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": "Tu es un coach en prospection commerciale exigeant. Tu réponds en JSON.",
                    },
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.3,
            )
        except Exception as e:
            logger.error("Scoring request failed", error=str(e), model=self.model)
            raise ScoringError(str(e)) from e

        raw = (response.choices[0].message.content or "") if response.choices else ""
        if not raw.strip():
            raise ScoringError("Empty scoring response")

        analysis = parse_analysis(raw)
        logger.info(
            "Call scored",
            score=analysis.score,
            latency_ms=round((asyncio.get_running_loop().time() - start_time) * 1000, 2),
        )
        return analysis


def build_session_result(
    analysis: CallAnalysis,
    transcript: Sequence[Turn],
    *,
    duration_seconds: float,
    persona: str,
    difficulty: str,
    end_reason: str,
    error: Optional[str] = None,
    fallback: bool = False,
) -> SessionResult:
    breakdown = analysis.detailed_breakdown
    if breakdown is not None:
        detailed = json.dumps(breakdown.model_dump(), ensure_ascii=False)
        criteria = breakdown.criteria_scores()
    else:
        detailed = analysis.detailed_feedback
        criteria = None

    return SessionResult(
        score=max(0, min(100, analysis.score)),
        feedback=list(analysis.strengths),
        recommendations=list(analysis.recommendations),
        improvements=list(analysis.improvements),
        duration=max(0, int(round(duration_seconds))),
        detailed_analysis=detailed,
        criteria_scores=criteria,
        transcript=[
            {"speaker": t.speaker.value, "text": t.text, "timestamp": t.timestamp}
            for t in transcript
        ],
        persona=persona,
        difficulty=difficulty,
        end_reason=end_reason,
        error=error,
        fallback=fallback,
    )
