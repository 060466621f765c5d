"""Shared test fixtures for CallPilot."""
import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from config.settings import Settings
from database.audio_store import AudioStore
from database.store_memory import InMemoryCallStore
from models.schemas import (
    Call, Campaign, CampaignRuntimeConfig, CampaignStatus, Contact, EscalationDecision,
    IntentResult, SentimentResult, TranscriptionResult,
)
from telephony.twilio_client import TwilioClient
from telephony.twiml import render_control_document
from voice.latency import CallLatencyTracker

BASE_URL = "https://callpilot.example.com"


class FakeClock:
    """Deterministic clock; tests move time with advance()."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """TelephonyGateway with recorded calls and the real Twilio parsing/rendering."""

    parse_status_webhook = staticmethod(TwilioClient.parse_status_webhook)
    render_control_document = staticmethod(render_control_document)

    def __init__(self):
        self._sids = itertools.count(1)
        self.place_call = AsyncMock(side_effect=self._place)
        self.update_live_call = AsyncMock(return_value=None)
        self.hang_up = AsyncMock(return_value=None)
        self.fetch_recording = AsyncMock(return_value=None)
        self.download_media = AsyncMock(return_value=b"RIFF-recording")
        self.close = AsyncMock(return_value=None)

    def _place(self, destination, control_document_url, callback_url, options=None):
        return f"CA{next(self._sids):032d}"


class FakeEngine:
    """ConversationEngine stand-in; every operation is an AsyncMock."""

    def __init__(self):
        self.generate_greeting = AsyncMock(return_value="Hi Ada, I'm calling about your plan renewal.")
        self.synthesize = AsyncMock(return_value=b"ID3-audio")
        self.transcribe = AsyncMock(return_value=TranscriptionResult(text="yes please", confidence=0.92))
        self.next_utterance = AsyncMock(return_value="Great, let me note that down.")
        self.score_sentiment = AsyncMock(return_value=SentimentResult(score=0.2, label="neutral"))
        self.extract_intent = AsyncMock(return_value=IntentResult(intent="interested", confidence=0.9))
        self.should_escalate = AsyncMock(return_value=EscalationDecision(decision=False))


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.telephony.base_url = BASE_URL
    s.telephony.escalation_number = "+15550009999"
    s.calls.backoff_base_s = 0.0
    s.calls.backoff_max_s = 0.0
    s.escalation.use_llm_review = False
    s.dispatcher.calls_per_second = 1000.0
    s.dispatcher.burst = 1000
    return s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def audio_store() -> AudioStore:
    return AudioStore()


@pytest.fixture
def contact() -> Contact:
    return Contact(
        id="contact-ada",
        first_name="Ada",
        last_name="Lovelace",
        phone_number="+14155550100",
        custom_fields={"plan": "Gold", "ssn_last4": "1234"},
    )


@pytest.fixture
def campaign(contact) -> Campaign:
    return Campaign(
        id="camp-renewals",
        name="Plan Renewals",
        status=CampaignStatus.ACTIVE,
        script="Remind the customer that their plan renews next month.",
        conversation_goals=["confirm renewal", "answer questions"],
        max_call_duration=300,
        max_retries=3,
        retry_interval=30,
        personalization_fields=["plan"],
        concurrency_limit=2,
        contact_ids=[contact.id],
    )


@pytest.fixture
def runtime_config(campaign) -> CampaignRuntimeConfig:
    return CampaignRuntimeConfig.from_campaign(campaign)


@pytest.fixture
def make_machine(settings, engine, gateway, store, audio_store, clock, runtime_config, contact):
    """Build a CallStateMachine around a freshly stored Call."""
    from calls.state_machine import CallStateMachine

    async def _make(call: Call = None, config: CampaignRuntimeConfig = None, on_terminal=None):
        call = call or Call(
            campaign_id=runtime_config.campaign_id,
            contact_id=contact.id,
            phone_number=contact.phone_number,
            queued_at=clock(),
        )
        await store.create_call(call)
        await store.upsert_contact(contact)
        return CallStateMachine(
            call=call,
            config=config or runtime_config,
            contact=contact,
            engine=engine,
            gateway=gateway,
            store=store,
            audio_store=audio_store,
            settings=settings,
            latency=CallLatencyTracker(call.id),
            clock=clock,
            on_terminal=on_terminal,
        )

    return _make
