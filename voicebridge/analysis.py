"""Post-call transcript analysis: summaries, lead scoring, alerts.

Runs after the call has ended, off the audio path. Every function here
is best effort: an OpenAI failure produces a logged error and a neutral
default, never an exception into the recorder or the event bus.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from voicebridge.config import settings
from voicebridge.datalayer import DataLayer
from voicebridge.errors import DataLayerError
from voicebridge.events import LEAD_SCORED, LifecycleEvent, LifecycleEventBus

log = logging.getLogger("voicebridge.analysis")

SENTIMENTS = ("positive", "neutral", "frustrated", "angry")

SUMMARY_PROMPT = """You are an expert at summarizing business phone calls.
Return JSON with keys:
- summary: 2-3 sentence summary of why the caller called and what happened
- action_items: array of short follow-up tasks for the business (may be empty)"""

LEAD_PROMPT = """Analyze this call transcript. Return JSON with:
- intent: 0-10 (buying intent, 10 = ready to buy)
- sentiment: "positive" | "neutral" | "frustrated" | "angry"
- urgency: 0-10 (how urgent is their need)
- summary: 1-sentence summary of the caller's request
- key_topics: array of main topics discussed
- follow_up_required: boolean (true if the caller needs a callback)"""


class CallSummary(BaseModel):
    summary: str
    action_items: list[str] = Field(default_factory=list)


class LeadAnalysis(BaseModel):
    intent: int = 5
    sentiment: str = "neutral"
    urgency: int = 5
    summary: str = ""
    key_topics: list[str] = Field(default_factory=list)
    follow_up_required: bool = False

    @field_validator("intent", "urgency", mode="before")
    @classmethod
    def _clamp(cls, v):
        try:
            return min(10, max(0, int(v)))
        except (TypeError, ValueError):
            return 5

    @field_validator("sentiment", mode="before")
    @classmethod
    def _known_sentiment(cls, v):
        return v if v in SENTIMENTS else "neutral"


class AlertDecision(BaseModel):
    should_alert: bool = False
    priority: str = "none"
    reason: str = ""


def calculate_lead_score(analysis: LeadAnalysis, existing_score: int = 0) -> int:
    """Cumulative lead score, capped at 100.

    intent counts double, urgency once, then a sentiment bonus:
    positive +5, frustrated +15, angry +25.
    """
    score = existing_score + analysis.intent * 2 + analysis.urgency
    score += {"positive": 5, "frustrated": 15, "angry": 25}.get(analysis.sentiment, 0)
    return min(score, 100)


def should_alert(analysis: LeadAnalysis) -> AlertDecision:
    if analysis.urgency > 8:
        return AlertDecision(should_alert=True, priority="high", reason="High urgency detected")
    if analysis.sentiment == "angry":
        return AlertDecision(
            should_alert=True, priority="critical",
            reason="Angry customer - immediate attention needed",
        )
    if analysis.sentiment == "frustrated" and analysis.intent > 6:
        return AlertDecision(should_alert=True, priority="high", reason="Frustrated high-intent lead")
    if analysis.intent >= 9:
        return AlertDecision(should_alert=True, priority="medium", reason="Hot lead - ready to buy")
    return AlertDecision()


class TranscriptAnalyzer:
    """OpenAI chat completions in JSON mode over a finished transcript."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.summary_model

    async def _complete_json(self, system_prompt: str, transcript: str, max_tokens: int) -> dict:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": transcript},
            ],
            response_format={"type": "json_object"},
            temperature=0.3,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content or "{}"
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        return data

    async def summarize(self, transcript: str) -> Optional[CallSummary]:
        """Summary and action items, or None when there is nothing to summarize or the request fails."""
        if not transcript or len(transcript.strip()) < 20:
            return None
        try:
            data = await self._complete_json(SUMMARY_PROMPT, transcript, max_tokens=400)
            return CallSummary.model_validate(data)
        except (openai.OpenAIError, ValueError, ValidationError) as e:
            log.error("Call summary failed: %s", e)
            return None

    async def analyze_lead(self, transcript: str) -> LeadAnalysis:
        if not transcript or len(transcript.strip()) < 20:
            return LeadAnalysis(summary="Brief call")
        try:
            data = await self._complete_json(LEAD_PROMPT, transcript, max_tokens=300)
            return LeadAnalysis.model_validate(data)
        except (openai.OpenAIError, ValueError, ValidationError) as e:
            log.error("Lead analysis failed: %s", e)
            return LeadAnalysis(summary="Analysis unavailable")


class LeadScoringSubscriber:
    """``call.completed`` handler: score the caller and emit ``lead.scored``."""

    def __init__(
        self,
        analyzer: TranscriptAnalyzer,
        data_layer: DataLayer,
        bus: LifecycleEventBus,
    ) -> None:
        self._analyzer = analyzer
        self._data_layer = data_layer
        self._bus = bus

    async def __call__(self, event: LifecycleEvent) -> None:
        data = event["data"]
        transcript = data.get("transcript", "")
        if not transcript:
            log.debug("No transcript for %s, skipping lead scoring", event["call_sid"])
            return

        analysis = await self._analyzer.analyze_lead(transcript)
        score = calculate_lead_score(analysis)
        alert = should_alert(analysis)

        record_id = data.get("record_id")
        if record_id:
            try:
                await self._data_layer.update_call_session(
                    record_id, {"lead_score": score, "sentiment": analysis.sentiment}
                )
            except DataLayerError as e:
                log.error("Failed to store lead score for %s: %s", event["call_sid"], e)

        log.info(
            "Lead scored: call_sid=%s score=%d sentiment=%s alert=%s",
            event["call_sid"], score, analysis.sentiment, alert.priority,
        )
        self._bus.emit(
            LEAD_SCORED,
            event["tenant_id"],
            event["call_sid"],
            {
                "record_id": record_id,
                "score": score,
                "analysis": analysis.model_dump(),
                "alert": alert.model_dump(),
            },
        )
