"""Tests for ConversationEngine - prompt history, JSON parsing, error classification, greetings."""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from core.engine import ConversationEngine, estimate_tokens, trim_history
from core.errors import MalformedResponse, RateLimited, UpstreamUnavailable
from models.schemas import (
    ConversationContext, ConversationTurn, EscalationSignals, IntentResult, SentimentResult, Speaker,
)


class RateLimitError(Exception):
    """Same class name the OpenAI and Anthropic SDKs use."""


@pytest.fixture
def llm_engine(settings):
    eng = ConversationEngine(settings, llm_client=object(), audio_client=SimpleNamespace())
    eng._call_llm = AsyncMock(return_value="")
    return eng


@pytest.fixture
def context(runtime_config, contact):
    return ConversationContext.build(runtime_config, contact)


def turn(speaker, content):
    return ConversationTurn(call_id="c1", speaker=speaker, content=content)


class TestHistory:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_recent_turns_always_kept(self):
        turns = [turn(Speaker.HUMAN, "x" * 40) for _ in range(10)]
        kept = trim_history(turns, budget=30, min_recent=4)
        assert kept == turns[-4:]

    def test_older_turns_fill_remaining_budget(self):
        turns = [turn(Speaker.HUMAN, "x" * 40) for _ in range(10)]
        kept = trim_history(turns, budget=60, min_recent=4)
        assert kept == turns[-6:]

    def test_messages_do_not_repeat_latest_speech(self, llm_engine, runtime_config, contact):
        turns = [turn(Speaker.AI, "Hi Ada"), turn(Speaker.HUMAN, "who is this")]
        ctx = ConversationContext.build(runtime_config, contact, turns)
        messages = llm_engine._build_messages(ctx, "who is this")
        assert messages == [
            {"role": "user", "content": "[Call connected]"},
            {"role": "assistant", "content": "Hi Ada"},
            {"role": "user", "content": "who is this"},
        ]

    def test_system_prompt_includes_personalization(self, llm_engine, context):
        prompt = llm_engine._build_system_prompt(context)
        assert "Plan Renewals" in prompt
        assert "- plan: Gold" in prompt
        assert "ssn_last4" not in prompt


class TestNextUtterance:
    @pytest.mark.asyncio
    async def test_returns_stripped_reply(self, llm_engine, context):
        llm_engine._call_llm.return_value = "  Sure, next Tuesday works.  "
        assert await llm_engine.next_utterance(context, "Tuesday?") == "Sure, next Tuesday works."

    @pytest.mark.asyncio
    async def test_empty_reply_is_malformed(self, llm_engine, context):
        llm_engine._call_llm.return_value = "   "
        with pytest.raises(MalformedResponse):
            await llm_engine.next_utterance(context, "hello")

    @pytest.mark.asyncio
    async def test_rate_limit_classified(self, llm_engine, context):
        llm_engine._call_llm.side_effect = RateLimitError("slow down")
        with pytest.raises(RateLimited):
            await llm_engine.next_utterance(context, "hello")

    @pytest.mark.asyncio
    async def test_outage_classified(self, llm_engine, context):
        llm_engine._call_llm.side_effect = ConnectionError("reset")
        with pytest.raises(UpstreamUnavailable):
            await llm_engine.next_utterance(context, "hello")

    @pytest.mark.asyncio
    async def test_anthropic_message_shape(self, settings, context):
        settings.llm.provider = "anthropic"
        client = SimpleNamespace(messages=SimpleNamespace(create=AsyncMock(
            return_value=SimpleNamespace(content=[SimpleNamespace(text="Happy to help.")]),
        )))
        eng = ConversationEngine(settings, llm_client=client)
        assert await eng.next_utterance(context, "can you help") == "Happy to help."
        kwargs = client.messages.create.await_args.kwargs
        assert "Plan Renewals" in kwargs["system"]
        assert kwargs["messages"][-1] == {"role": "user", "content": "can you help"}


class TestAnalysis:
    @pytest.mark.asyncio
    async def test_sentiment_is_clamped_and_completed(self, llm_engine):
        llm_engine._call_llm.return_value = json.dumps({"score": 3, "magnitude": 0.4,
                                                        "emotions": {"joy": 2}})
        result = await llm_engine.score_sentiment("love it")
        assert result.score == 1.0
        assert result.label == "positive"
        assert result.emotions["joy"] == 1.0
        assert set(result.emotions) == {"joy", "anger", "fear", "sadness", "surprise", "trust"}

    @pytest.mark.asyncio
    async def test_sentiment_accepts_fenced_json(self, llm_engine):
        llm_engine._call_llm.return_value = '```json\n{"score": -0.6, "label": "negative"}\n```'
        result = await llm_engine.score_sentiment("terrible")
        assert result.score == pytest.approx(-0.6)
        assert result.label == "negative"

    @pytest.mark.asyncio
    async def test_sentiment_garbage_is_malformed(self, llm_engine):
        llm_engine._call_llm.return_value = "I think they are happy"
        with pytest.raises(MalformedResponse):
            await llm_engine.score_sentiment("ok")

    @pytest.mark.asyncio
    async def test_intent(self, llm_engine, context):
        llm_engine._call_llm.return_value = json.dumps({
            "intent": "callback_request", "entities": {"day": "friday"}, "confidence": 0.83,
        })
        result = await llm_engine.extract_intent("call me friday", context)
        assert result.intent == "callback_request"
        assert result.entities == {"day": "friday"}
        assert result.confidence == pytest.approx(0.83)
        assert result.requires_escalation is False


class TestEscalation:
    @pytest.mark.asyncio
    async def test_human_request_phrase(self, llm_engine, context):
        turns = [turn(Speaker.HUMAN, "Can I talk to a human please")]
        decision = await llm_engine.should_escalate(turns, context)
        assert decision.decision is True
        assert decision.reason == "human_requested"
        llm_engine._call_llm.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_compliance_keyword(self, llm_engine, context):
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "I'll call my lawyer")], context)
        assert decision.reason == "compliance_sensitive"
        assert decision.urgency == "high"

    @pytest.mark.asyncio
    async def test_distress(self, llm_engine, context):
        signals = EscalationSignals(latest_sentiment=SentimentResult(score=-0.2, emotions={"anger": 0.9}))
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "ugh")], context, signals)
        assert decision.reason == "distress"

    @pytest.mark.asyncio
    async def test_low_confidence_streak(self, llm_engine, context):
        signals = EscalationSignals(low_confidence_streak=2,
                                    latest_intent=IntentResult(intent="unclear", confidence=0.1))
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "mmm")], context, signals)
        assert decision.reason == "low_confidence"

    @pytest.mark.asyncio
    async def test_no_rule_no_review(self, llm_engine, context):
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "sounds good")], context)
        assert decision.decision is False
        llm_engine._call_llm.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_review(self, llm_engine, context, settings):
        settings.escalation.use_llm_review = True
        llm_engine._call_llm.return_value = '{"escalate": true, "reason": "confused", "urgency": "low"}'
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "what?")], context)
        assert decision.decision is True
        assert decision.reason == "confused"
        assert decision.urgency == "low"

    @pytest.mark.asyncio
    async def test_review_failure_does_not_escalate(self, llm_engine, context, settings):
        settings.escalation.use_llm_review = True
        llm_engine._call_llm.side_effect = ConnectionError("down")
        decision = await llm_engine.should_escalate([turn(Speaker.HUMAN, "what?")], context)
        assert decision.decision is False
        assert decision.reason == "review_unavailable"


class TestGreeting:
    @pytest.mark.asyncio
    async def test_valid_greeting_used(self, llm_engine, context):
        llm_engine._call_llm.return_value = '"Hi Ada, this is Sam about your Gold plan renewal."'
        assert await llm_engine.generate_greeting(context) == "Hi Ada, this is Sam about your Gold plan renewal."

    @pytest.mark.asyncio
    async def test_long_greeting_falls_back(self, llm_engine, context):
        llm_engine._call_llm.return_value = "Hi Ada " + "really " * 40
        greeting = await llm_engine.generate_greeting(context)
        assert greeting == "Hello Ada, thank you for taking my call. I'm calling about Plan Renewals."

    @pytest.mark.asyncio
    async def test_greeting_without_name_falls_back(self, llm_engine, context):
        llm_engine._call_llm.return_value = "Hello there, calling about renewals."
        assert "Ada" in await llm_engine.generate_greeting(context)

    @pytest.mark.asyncio
    async def test_failure_uses_template(self, llm_engine, runtime_config, contact):
        config = runtime_config.model_copy(update={
            "greeting_template": "Hi {first_name}, quick call about your {plan} plan from {campaign}.",
        })
        ctx = ConversationContext.build(config, contact)
        llm_engine._call_llm.side_effect = ConnectionError("down")
        assert await llm_engine.generate_greeting(ctx) == \
            "Hi Ada, quick call about your Gold plan from Plan Renewals."


class TestAudio:
    @pytest.mark.asyncio
    async def test_transcribe_confidence_from_logprobs(self, settings):
        create = AsyncMock(return_value=SimpleNamespace(
            text=" next tuesday ", segments=[{"avg_logprob": 0.0}, {"avg_logprob": 0.0}], duration=2.5,
        ))
        audio = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))
        eng = ConversationEngine(settings, llm_client=object(), audio_client=audio)

        result = await eng.transcribe(b"RIFF", "en-US")
        assert result.text == "next tuesday"
        assert result.confidence == pytest.approx(1.0)
        assert result.duration == 2.5
        assert create.await_args.kwargs["language"] == "en"

    @pytest.mark.asyncio
    async def test_synthesize(self, settings):
        create = AsyncMock(return_value=SimpleNamespace(content=b"ID3"))
        audio = SimpleNamespace(audio=SimpleNamespace(speech=SimpleNamespace(create=create)))
        eng = ConversationEngine(settings, llm_client=object(), audio_client=audio)

        assert await eng.synthesize("hello", voice="nova", speed=1.1, fmt="wav") == b"ID3"
        kwargs = create.await_args.kwargs
        assert kwargs["voice"] == "nova"
        assert kwargs["response_format"] == "wav"

    @pytest.mark.asyncio
    async def test_empty_audio_is_malformed(self, settings):
        create = AsyncMock(return_value=SimpleNamespace(content=b""))
        audio = SimpleNamespace(audio=SimpleNamespace(speech=SimpleNamespace(create=create)))
        eng = ConversationEngine(settings, llm_client=object(), audio_client=audio)
        with pytest.raises(MalformedResponse):
            await eng.synthesize("hello")
