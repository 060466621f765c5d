"""
Core data models for the CallPilot system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class CallStatus(str, Enum):
    QUEUED = "queued"
    DIALING = "dialing"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    OPTED_OUT = "opted-out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.BUSY,
    CallStatus.OPTED_OUT,
})


class ConversationState(str, Enum):
    AWAITING_AI_RESPONSE = "awaiting_ai_response"
    AWAITING_HUMAN_SPEECH = "awaiting_human_speech"
    ESCALATING = "escalating"


class Speaker(str, Enum):
    AI = "ai"
    HUMAN = "human"


class CallEventType(str, Enum):
    CALL_QUEUED = "call-queued"
    CALL_STARTED = "call-started"
    CALL_ANSWERED = "call-answered"
    CALL_ENDED = "call-ended"
    TRANSCRIPT_UPDATED = "transcript-updated"
    SENTIMENT_UPDATED = "sentiment-updated"
    ESCALATION = "escalation"
    OPT_OUT = "opt-out"
    RETRY_SCHEDULED = "retry-scheduled"
    RECORDING_AVAILABLE = "recording-available"
    ERROR = "error"


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Conversation - immutable turns and audit events
# ──────────────────────────────────────────────────────────────

class ConversationTurn(BaseModel):
    """One utterance in a call transcript. Append-only."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    call_id: str
    speaker: Speaker
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    audio_url: Optional[str] = None
    confidence: Optional[float] = None
    sentiment_score: Optional[float] = None


class CallEvent(BaseModel):
    """Audit record of something that happened to a call."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    call_id: str
    type: CallEventType
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = {}


class CallError(BaseModel):
    kind: str
    message: str = ""


# ──────────────────────────────────────────────────────────────
#  Call - one outbound attempt
# ──────────────────────────────────────────────────────────────

class Call(BaseModel):
    id: str = Field(default_factory=new_id)
    campaign_id: str
    contact_id: str
    phone_number: str
    provider_session_id: Optional[str] = None
    status: CallStatus = CallStatus.QUEUED
    conversation_state: Optional[ConversationState] = None

    queued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: int = 0                         # seconds, meaningful only if answered

    transcript: list[ConversationTurn] = []
    recording_url: Optional[str] = None
    sentiment_score: Optional[float] = None
    sentiment_label: Optional[str] = None
    dtmf_inputs: list[str] = []

    answered: bool = False
    opted_out: bool = False
    human_escalation: bool = False

    attempts: int = 1
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    retry_of: Optional[str] = None            # id of the attempt this call retries

    error: Optional[CallError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ──────────────────────────────────────────────────────────────
#  Campaign & Contact - inputs owned by external collaborators
# ──────────────────────────────────────────────────────────────

class Campaign(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    status: CampaignStatus = CampaignStatus.DRAFT
    script: str = ""
    use_ai_conversation: bool = True
    max_call_duration: int = 300              # seconds
    max_retries: int = Field(default=3, ge=1)   # total attempts, first call included
    retry_interval: int = 60                  # minutes
    ai_personality: str = "friendly and professional"
    conversation_goals: list[str] = []
    language: str = "en"
    voice_model: str = "alloy"
    speech_speed: float = 1.0
    audio_format: str = "mp3"
    use_personalization: bool = True
    personalization_fields: list[str] = []
    greeting_template: str = ""
    concurrency_limit: int = 5
    contact_ids: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)


class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    first_name: str
    last_name: str = ""
    phone_number: str
    email: str = ""
    company: str = ""
    title: str = ""
    timezone: str = "UTC"
    preferred_language: str = "en"
    custom_fields: dict[str, Any] = {}
    total_calls: int = 0
    last_called: Optional[datetime] = None
    last_call_status: Optional[str] = None
    opted_out: bool = False
    opt_out_date: Optional[datetime] = None
    tags: list[str] = []

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class CampaignRuntimeConfig(BaseModel):
    """Frozen campaign snapshot taken when a call is dispatched."""
    model_config = ConfigDict(frozen=True)

    campaign_id: str
    campaign_name: str
    script: str = ""
    goals: tuple[str, ...] = ()
    personality: str = ""
    language: str = "en"
    voice: str = "alloy"
    speech_speed: float = 1.0
    audio_format: str = "mp3"
    max_call_duration: int = 300
    max_retries: int = Field(default=3, ge=1)
    retry_interval: timedelta = timedelta(minutes=60)
    use_personalization: bool = True
    personalization_fields: tuple[str, ...] = ()
    greeting_template: str = ""

    @classmethod
    def from_campaign(cls, campaign: Campaign) -> "CampaignRuntimeConfig":
        return cls(
            campaign_id=campaign.id,
            campaign_name=campaign.name,
            script=campaign.script,
            goals=tuple(campaign.conversation_goals),
            personality=campaign.ai_personality,
            language=campaign.language,
            voice=campaign.voice_model,
            speech_speed=campaign.speech_speed,
            audio_format=campaign.audio_format,
            max_call_duration=campaign.max_call_duration,
            max_retries=campaign.max_retries,
            retry_interval=timedelta(minutes=campaign.retry_interval),
            use_personalization=campaign.use_personalization,
            personalization_fields=tuple(campaign.personalization_fields),
            greeting_template=campaign.greeting_template,
        )


class ConversationContext(BaseModel):
    """Everything the conversation engine needs to produce the next turn."""
    config: CampaignRuntimeConfig
    contact_name: str
    personalization: dict[str, Any] = {}
    turns: list[ConversationTurn] = []

    @classmethod
    def build(
        cls,
        config: CampaignRuntimeConfig,
        contact: Contact,
        turns: Optional[list[ConversationTurn]] = None,
    ) -> "ConversationContext":
        personalization: dict[str, Any] = {}
        if config.use_personalization:
            personalization = {
                k: contact.custom_fields[k]
                for k in config.personalization_fields
                if k in contact.custom_fields
            }
        return cls(
            config=config,
            contact_name=contact.first_name,
            personalization=personalization,
            turns=list(turns or []),
        )


# ──────────────────────────────────────────────────────────────
#  Engine results
# ──────────────────────────────────────────────────────────────

class TranscriptionResult(BaseModel):
    text: str
    confidence: float = 0.0
    duration: float = 0.0


class SentimentResult(BaseModel):
    score: float = 0.0                        # [-1, 1]
    magnitude: float = 0.0                    # [0, 1]
    label: str = "neutral"
    confidence: float = 0.0
    emotions: dict[str, float] = {}

    @classmethod
    def neutral(cls) -> "SentimentResult":
        return cls(
            score=0.0, magnitude=0.0, label="neutral", confidence=0.0,
            emotions={e: 0.0 for e in ("joy", "anger", "fear", "sadness", "surprise", "trust")},
        )


class IntentResult(BaseModel):
    intent: str = "unknown"
    entities: dict[str, Any] = {}
    confidence: float = 0.0
    requires_escalation: bool = False
    suggested_response: Optional[str] = None


class EscalationDecision(BaseModel):
    decision: bool = False
    reason: str = ""
    urgency: str = "low"                      # low | medium | high


class EscalationSignals(BaseModel):
    """Per-call signals the state machine feeds to the escalation check."""
    low_confidence_streak: int = 0
    latest_intent: Optional[IntentResult] = None
    latest_sentiment: Optional[SentimentResult] = None


# ──────────────────────────────────────────────────────────────
#  Provider webhook
# ──────────────────────────────────────────────────────────────

class ProviderWebhook(BaseModel):
    """Normalized telephony status/gather callback."""
    session_id: str
    status: str = ""                          # raw provider status, lower-cased
    from_number: str = ""
    to_number: str = ""
    duration: int = 0
    recording_url: str = ""
    error_code: str = ""
    error_message: str = ""
    speech_result: str = ""
    speech_confidence: Optional[float] = None
    digits: str = ""
    raw: dict[str, Any] = {}
