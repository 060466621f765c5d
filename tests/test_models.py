"""Tests for core data models and error taxonomy."""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.errors import (
    ENGINE_ERRORS, InvalidDestination, MalformedResponse, ProviderUnavailable, RateLimited,
    SessionNotFound, UpstreamUnavailable, error_kind,
)
from models.schemas import (
    TERMINAL_STATUSES, Call, CallEvent, CallEventType, CallStatus, Campaign, CampaignRuntimeConfig,
    ConversationContext, ConversationTurn, SentimentResult, Speaker,
)


class TestCallStatus:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {
            CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.NO_ANSWER,
            CallStatus.BUSY, CallStatus.OPTED_OUT,
        }
        assert not CallStatus.IN_PROGRESS.is_terminal
        assert CallStatus.BUSY.is_terminal

    def test_wire_values(self):
        assert CallStatus("in-progress") == CallStatus.IN_PROGRESS
        assert CallStatus("opted-out") == CallStatus.OPTED_OUT

    def test_new_call_defaults(self):
        call = Call(campaign_id="k", contact_id="c", phone_number="+1")
        assert call.status == CallStatus.QUEUED
        assert call.attempts == 1
        assert call.transcript == []
        assert call.queued_at.tzinfo is not None
        assert not call.is_terminal


class TestImmutableRecords:
    def test_turns_are_frozen(self):
        turn = ConversationTurn(call_id="c1", speaker=Speaker.HUMAN, content="hi")
        with pytest.raises(ValidationError):
            turn.content = "edited"

    def test_events_are_frozen(self):
        event = CallEvent(call_id="c1", type=CallEventType.OPT_OUT)
        with pytest.raises(ValidationError):
            event.type = CallEventType.ERROR


class TestRuntimeConfig:
    def test_snapshot_from_campaign(self, campaign):
        config = CampaignRuntimeConfig.from_campaign(campaign)
        assert config.retry_interval == timedelta(minutes=30)
        assert config.goals == ("confirm renewal", "answer questions")
        with pytest.raises(ValidationError):
            config.max_retries = 10

    def test_snapshot_ignores_later_campaign_edits(self, campaign):
        config = CampaignRuntimeConfig.from_campaign(campaign)
        campaign.conversation_goals.append("upsell")
        campaign.max_retries = 9
        assert "upsell" not in config.goals
        assert config.max_retries == 3

    def test_context_personalization_filtered(self, runtime_config, contact):
        ctx = ConversationContext.build(runtime_config, contact)
        assert ctx.contact_name == "Ada"
        assert ctx.personalization == {"plan": "Gold"}

    def test_personalization_disabled(self, runtime_config, contact):
        config = runtime_config.model_copy(update={"use_personalization": False})
        assert ConversationContext.build(config, contact).personalization == {}

    def test_attempt_budget_must_allow_a_first_call(self):
        with pytest.raises(ValidationError):
            Campaign(name="Empty budget", max_retries=0)
        assert Campaign(name="One shot", max_retries=1).max_retries == 1


class TestSentimentResult:
    def test_neutral(self):
        neutral = SentimentResult.neutral()
        assert neutral.score == 0.0
        assert neutral.label == "neutral"
        assert set(neutral.emotions) == {"joy", "anger", "fear", "sadness", "surprise", "trust"}


class TestErrors:
    def test_retryable_flags(self):
        assert ProviderUnavailable().retryable
        assert UpstreamUnavailable().retryable
        assert not InvalidDestination().retryable
        assert not SessionNotFound().retryable

    def test_engine_errors(self):
        assert set(ENGINE_ERRORS) == {UpstreamUnavailable, RateLimited, MalformedResponse}

    def test_error_kind(self):
        assert error_kind(InvalidDestination("x")) == "InvalidDestination"
        assert error_kind(KeyError("x")) == "KeyError"
