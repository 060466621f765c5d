"""
Call State Machine - lifecycle and conversation turns of one outbound call.

One instance per Call, driven only by that call's CallWorker, so every
mutation of the Call happens inside handle() on a single task.

Lifecycle:
    queued → dialing → in-progress → completed
                     ↘ busy | no-answer | failed      (retry policy)
    in-progress → opted-out                           (opt-out phrase / digit)

While in-progress the call also has a conversation sub-state:
    awaiting_human_speech ⇄ awaiting_ai_response → escalating

Each human turn runs: opt-out check → intent → escalation check →
next utterance → speech synthesis → next gather document. Sentiment is
scored off the turn path and folded back in as an EMA in turn order.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from calls.events import (
    AudioReceived, CallAnswered, CallInput, CallPlaced, CancelRequested, DtmfReceived,
    PlacementFailed, ProviderStatus, SentimentScored, SpeechReceived,
)
from config.settings import Settings, get_settings
from core.engine import ConversationEngine
from core.errors import (
    ENGINE_ERRORS, CallPilotError, ProviderUnavailable, SessionNotFound, error_kind,
)
from database.audio_store import AudioStore
from database.store_base import BaseCallStore
from models.schemas import (
    Call, CallError, CallEvent, CallEventType, CallStatus, CampaignRuntimeConfig, Contact,
    ConversationContext, ConversationState, ConversationTurn, EscalationSignals, IntentResult,
    SentimentResult, Speaker, utcnow,
)
from telephony.base import CallbackUrls, TelephonyGateway
from telephony.twiml import ControlDocumentKind, hangup_document
from voice.latency import CallLatencyTracker, TurnStage

logger = structlog.get_logger()

MAX_SILENT_PROMPTS = 2
REPROMPT_TEXT = "Sorry, I didn't catch that. Could you say that again?"
SILENCE_TEXT = "Are you still there?"
OPT_OUT_TEXT = "I understand. We won't call you again. Have a good day. Goodbye."
TIME_LIMIT_TEXT = "I'm afraid we're out of time for today. Thank you for speaking with me. Goodbye."
HANDOFF_TEXT = "Let me connect you with a member of our team."

_PERSISTED_FIELDS = (
    "provider_session_id", "status", "conversation_state", "started_at", "ended_at",
    "duration", "recording_url", "sentiment_score", "sentiment_label", "dtmf_inputs",
    "answered", "opted_out", "human_escalation", "attempts", "last_attempt_at",
    "next_retry_at", "error",
)

# Provider status → what it means for the call
_DIALING = {"queued", "initiated", "ringing"}
_RETRYABLE = {"busy": CallStatus.BUSY, "no-answer": CallStatus.NO_ANSWER, "failed": CallStatus.FAILED}


def sentiment_label(score: float) -> str:
    if score > 0.25:
        return "positive"
    if score < -0.25:
        return "negative"
    return "neutral"


class CallStateMachine:
    """Single-writer owner of one Call."""

    def __init__(
        self,
        call: Call,
        config: CampaignRuntimeConfig,
        contact: Contact,
        engine: ConversationEngine,
        gateway: TelephonyGateway,
        store: BaseCallStore,
        audio_store: Optional[AudioStore] = None,
        settings: Optional[Settings] = None,
        latency: Optional[CallLatencyTracker] = None,
        clock: Callable[[], datetime] = utcnow,
        on_terminal: Optional[Callable[[Call], None]] = None,
    ):
        self.call = call
        self.config = config
        self.contact = contact
        self.engine = engine
        self.gateway = gateway
        self.store = store
        self.audio_store = audio_store or AudioStore()
        self.settings = settings or get_settings()
        self.latency = latency or CallLatencyTracker(call.id)
        self.clock = clock
        self.on_terminal = on_terminal
        self.urls = CallbackUrls(self.settings.telephony.base_url)

        self._post: Optional[Callable[[CallInput], None]] = None
        self._cancel_requested = False
        self._llm_failures = 0
        self._low_confidence_streak = 0
        self._silent_prompts = 0
        self._opt_out_marked = False
        self._latest_intent: Optional[IntentResult] = None
        self._latest_sentiment: Optional[SentimentResult] = None

        # Sentiment: results are buffered and applied strictly in turn order
        self._human_turns = 0
        self._next_sentiment_index = 0
        self._sentiment_buffer: dict[int, Optional[SentimentResult]] = {}
        self._sentiment_tasks: set[asyncio.Task] = set()

    # ── Wiring ───────────────────────────────────────────────

    def bind(self, post: Callable[[CallInput], None]) -> None:
        """Give the machine a way to post events back into its own queue."""
        self._post = post

    def request_cancel(self) -> None:
        """Flag in-flight turn work as void. The CancelRequested event does the rest."""
        self._cancel_requested = True

    @property
    def session_id(self) -> Optional[str]:
        return self.call.provider_session_id

    @property
    def settled(self) -> bool:
        """Terminal and every scored human turn has been folded in."""
        return self.call.is_terminal and self._next_sentiment_index >= self._human_turns

    @property
    def _aborted(self) -> bool:
        return self._cancel_requested or self.call.is_terminal

    # ── Dispatch ─────────────────────────────────────────────

    async def handle(self, event: CallInput) -> Optional[str]:
        """Apply one event. Returns a control document where the provider awaits one."""
        if isinstance(event, SentimentScored):
            await self._on_sentiment(event.turn_index, event.result)
            return None

        if self.call.is_terminal:
            if isinstance(event, CallPlaced):
                # Ended (canceled) while the dial request was in flight
                await self._hang_up_late(event.session_id)
                return None
            logger.debug("event_after_terminal", call_id=self.call.id,
                         event_type=type(event).__name__, status=self.call.status.value)
            if isinstance(event, (CallAnswered, SpeechReceived, AudioReceived, DtmfReceived)):
                return hangup_document()
            return None

        if isinstance(event, CallPlaced):
            return await self._on_placed(event.session_id)
        if isinstance(event, PlacementFailed):
            return await self._on_placement_failed(event.error)
        if isinstance(event, ProviderStatus):
            return await self._on_provider_status(event.webhook)
        if isinstance(event, CancelRequested):
            return await self._on_cancel(event.reason)
        if isinstance(event, CallAnswered):
            return await self._on_answered()
        if isinstance(event, SpeechReceived):
            return await self._on_turn(event.text, event.confidence, event.digits)
        if isinstance(event, DtmfReceived):
            return await self._on_turn("", None, event.digits)
        if isinstance(event, AudioReceived):
            return await self._on_audio(event)

        logger.warning("unknown_call_event", call_id=self.call.id, event_type=type(event).__name__)
        return None

    # ══════════════════════════════════════════════════════════
    #  PLACEMENT & PROVIDER STATUS
    # ══════════════════════════════════════════════════════════

    async def _on_placed(self, session_id: str) -> None:
        self.call.provider_session_id = session_id
        self.call.last_attempt_at = self.clock()
        if self.call.status == CallStatus.QUEUED:
            self.call.status = CallStatus.DIALING
        await self._save()
        await self._emit(CallEventType.CALL_STARTED, session_id=session_id, attempt=self.call.attempts)
        logger.info("call_placed", call_id=self.call.id, session_id=session_id)

        if self._cancel_requested:
            await self._on_cancel("canceled")
        return None

    async def _on_placement_failed(self, error: CallPilotError) -> None:
        self.call.last_attempt_at = self.clock()
        call_error = CallError(kind=error_kind(error), message=str(error))
        await self._emit(CallEventType.ERROR, kind=call_error.kind, message=call_error.message)
        logger.warning("call_placement_failed", call_id=self.call.id, kind=call_error.kind)

        if isinstance(error, ProviderUnavailable) and not self._cancel_requested:
            await self._retry_or_fail(CallStatus.FAILED, call_error)
        else:
            # InvalidDestination and anything unclassified: never retried
            self.call.status = CallStatus.FAILED
            self.call.error = call_error
            await self._finish()
        return None

    async def _on_provider_status(self, webhook) -> None:
        status = webhook.status
        call = self.call

        if webhook.recording_url and webhook.recording_url != call.recording_url:
            call.recording_url = webhook.recording_url
            await self._emit(CallEventType.RECORDING_AVAILABLE, url=webhook.recording_url)

        if status in _DIALING:
            if call.status in (CallStatus.QUEUED, CallStatus.DIALING, CallStatus.RINGING):
                call.status = CallStatus.DIALING
                await self._save()
            else:
                logger.debug("stale_dialing_status", call_id=call.id, status=status)

        elif status == "in-progress":
            await self._mark_answered()

        elif status == "completed":
            if webhook.duration:
                call.duration = webhook.duration
            if not call.answered and webhook.duration:
                call.answered = True
            call.status = CallStatus.COMPLETED
            await self._finish()

        elif status in _RETRYABLE:
            error = None
            if status == "failed":
                error = CallError(kind="ProviderFailed",
                                  message=webhook.error_message or webhook.error_code or "failed")
                if not self.settings.calls.retry_on_provider_failed:
                    call.status = CallStatus.FAILED
                    call.error = error
                    await self._finish()
                    return None
            await self._retry_or_fail(_RETRYABLE[status], error)

        elif status == "canceled":
            call.status = CallStatus.FAILED
            call.error = CallError(kind="Canceled", message="canceled")
            await self._finish()

        else:
            logger.warning("unknown_provider_status", call_id=call.id, status=status)
        return None

    async def _retry_or_fail(self, status: CallStatus, error: Optional[CallError]) -> None:
        """busy / no-answer / transient failure: schedule the next attempt or give up."""
        call = self.call
        now = self.clock()
        if call.attempts < self.config.max_retries:
            call.status = status
            call.error = error
            call.next_retry_at = now + self.config.retry_interval * call.attempts
            await self._emit(
                CallEventType.RETRY_SCHEDULED,
                attempt=call.attempts,
                reason=status.value,
                next_retry_at=call.next_retry_at.isoformat(),
            )
            logger.info("call_retry_scheduled", call_id=call.id, attempt=call.attempts,
                        next_retry_at=call.next_retry_at.isoformat())
        else:
            call.status = CallStatus.FAILED
            call.next_retry_at = None
            call.error = CallError(
                kind="RetriesExhausted",
                message=f"{status.value} on attempt {call.attempts} of {self.config.max_retries}",
            )
            logger.info("call_retries_exhausted", call_id=call.id, attempts=call.attempts)
        await self._finish()

    async def _hang_up(self, session_id: str) -> None:
        try:
            await self.gateway.hang_up(session_id)
        except SessionNotFound:
            logger.info("hang_up_session_gone", call_id=self.call.id)
        except CallPilotError as e:
            logger.error("hang_up_failed", call_id=self.call.id, kind=e.kind, error=str(e))

    async def _hang_up_late(self, session_id: str) -> None:
        self.call.provider_session_id = session_id
        await self.store.update_call(self.call.id, provider_session_id=session_id)
        logger.info("hang_up_after_cancel", call_id=self.call.id, session_id=session_id)
        await self._hang_up(session_id)

    async def _on_cancel(self, reason: str) -> None:
        self._cancel_requested = True
        call = self.call
        if call.provider_session_id:
            await self._hang_up(call.provider_session_id)

        if call.answered:
            call.status = CallStatus.COMPLETED
        else:
            call.status = CallStatus.FAILED
            call.error = CallError(kind="Canceled", message=reason)
        logger.info("call_canceled", call_id=call.id, reason=reason, status=call.status.value)
        await self._finish()
        return None

    async def _finish(self) -> None:
        """Close out a call that just became terminal."""
        call = self.call
        now = self.clock()
        call.ended_at = now
        call.conversation_state = None
        if call.answered and not call.duration and call.started_at:
            call.duration = max(int((now - call.started_at).total_seconds()), 0)
        await self._save()
        await self._emit(
            CallEventType.CALL_ENDED,
            status=call.status.value,
            error=call.error.model_dump() if call.error else None,
            duration=call.duration,
        )
        logger.info("call_ended", call_id=call.id, status=call.status.value,
                    error=call.error.kind if call.error else None)
        if self.on_terminal:
            self.on_terminal(call)

    # ══════════════════════════════════════════════════════════
    #  CONVERSATION
    # ══════════════════════════════════════════════════════════

    async def _mark_answered(self) -> None:
        if self.call.answered and self.call.status == CallStatus.IN_PROGRESS:
            return
        self.call.status = CallStatus.IN_PROGRESS
        self.call.answered = True
        self.call.started_at = self.call.started_at or self.clock()
        self.call.conversation_state = self.call.conversation_state or ConversationState.AWAITING_HUMAN_SPEECH
        await self._save()
        await self._emit(CallEventType.CALL_ANSWERED)
        logger.info("call_answered", call_id=self.call.id)

    async def _on_answered(self) -> str:
        await self._mark_answered()

        greeted = next((t for t in self.call.transcript if t.speaker == Speaker.AI), None)
        if greeted is not None:
            return self._document(ControlDocumentKind.GREETING, greeted.content, greeted.audio_url)

        self.call.conversation_state = ConversationState.AWAITING_AI_RESPONSE
        greeting = await self.engine.generate_greeting(self._context())
        if self._aborted:
            return hangup_document()
        audio_url = await self._synthesize(greeting)
        await self._append_turn(Speaker.AI, greeting, audio_url=audio_url)
        self.call.conversation_state = ConversationState.AWAITING_HUMAN_SPEECH
        await self._save()
        return self._document(ControlDocumentKind.GREETING, greeting, audio_url)

    async def _on_audio(self, event: AudioReceived) -> str:
        if event.audio is None and not event.url:
            return await self._on_turn("", None, event.digits)
        with self.latency.track(TurnStage.TRANSCRIBE):
            try:
                audio = event.audio if event.audio is not None else await self.gateway.download_media(event.url)
                result = await self._with_retries(
                    lambda: self.engine.transcribe(audio, self.config.language)
                )
            except (ProviderUnavailable, SessionNotFound) + ENGINE_ERRORS as e:
                logger.warning("transcription_failed", call_id=self.call.id, error=str(e))
                if self._aborted:
                    return hangup_document()
                return self._document(ControlDocumentKind.GATHER_SPEECH, REPROMPT_TEXT)
        if self._aborted:
            return hangup_document()
        return await self._on_turn(result.text, result.confidence, event.digits)

    async def _on_turn(self, text: str, confidence: Optional[float], digits: str) -> str:
        if self.call.status != CallStatus.IN_PROGRESS:
            await self._mark_answered()

        policy = self.settings.calls
        text = (text or "").strip()
        if digits:
            self.call.dtmf_inputs = [*self.call.dtmf_inputs, *digits]
            await self._save()

        # Opt-out is honored in every state, escalating included
        if any(d in policy.opt_out_digits for d in digits):
            return await self._opt_out("dtmf")
        lowered = text.lower()
        if lowered and any(k in lowered for k in policy.opt_out_keywords):
            return await self._opt_out("keyword")

        if self.call.conversation_state == ConversationState.ESCALATING:
            return self._escalation_document()

        if self._duration_exceeded():
            logger.info("call_time_limit_reached", call_id=self.call.id)
            return self._document(ControlDocumentKind.GOODBYE, TIME_LIMIT_TEXT)

        if any(d in policy.escalation_digits for d in digits):
            return await self._escalate("dtmf_request", "medium")

        if not text:
            self._silent_prompts += 1
            if self._silent_prompts > MAX_SILENT_PROMPTS:
                return self._document(ControlDocumentKind.GOODBYE, None)
            return self._document(ControlDocumentKind.GATHER_SPEECH, SILENCE_TEXT)
        self._silent_prompts = 0

        self.latency.start(TurnStage.TURN_TOTAL)
        try:
            return await self._run_turn(text, confidence)
        finally:
            self.latency.end(TurnStage.TURN_TOTAL)

    async def _run_turn(self, text: str, confidence: Optional[float]) -> str:
        policy = self.settings.calls
        await self._append_turn(Speaker.HUMAN, text, confidence=confidence)
        self._start_sentiment(text)
        self.call.conversation_state = ConversationState.AWAITING_AI_RESPONSE
        context = self._context()

        # Intent: failure counts as a low-confidence extraction
        with self.latency.track(TurnStage.INTENT):
            try:
                intent = await self.engine.extract_intent(text, context)
            except ENGINE_ERRORS as e:
                logger.warning("intent_extraction_failed", call_id=self.call.id, kind=e.kind)
                intent = IntentResult(intent="unknown", confidence=0.0)
        if self._aborted:
            return hangup_document()
        self._latest_intent = intent
        if intent.confidence < self.settings.escalation.low_confidence_threshold:
            self._low_confidence_streak += 1
        else:
            self._low_confidence_streak = 0

        if intent.intent == "opt_out" and intent.confidence >= policy.opt_out_intent_confidence:
            return await self._opt_out("intent")

        with self.latency.track(TurnStage.ESCALATION):
            try:
                decision = await self.engine.should_escalate(
                    self.call.transcript, context,
                    EscalationSignals(
                        low_confidence_streak=self._low_confidence_streak,
                        latest_intent=intent,
                        latest_sentiment=self._latest_sentiment,
                    ),
                )
            except ENGINE_ERRORS as e:
                logger.warning("escalation_check_failed", call_id=self.call.id, kind=e.kind)
                decision = None
        if self._aborted:
            return hangup_document()
        if decision is not None and decision.decision:
            return await self._escalate(decision.reason, decision.urgency)

        with self.latency.track(TurnStage.LLM):
            try:
                reply = await self._next_utterance(context, text)
            except ENGINE_ERRORS as e:
                if self._aborted:
                    return hangup_document()
                logger.error("next_utterance_failed", call_id=self.call.id, kind=e.kind,
                             consecutive_failures=self._llm_failures)
                await self._emit(CallEventType.ERROR, kind=e.kind, message=str(e))
                if self._llm_failures >= policy.max_consecutive_llm_failures:
                    return await self._escalate("llm_unavailable", "high")
                self.call.conversation_state = ConversationState.AWAITING_HUMAN_SPEECH
                return self._document(ControlDocumentKind.GATHER_SPEECH, REPROMPT_TEXT)
        if self._aborted:
            return hangup_document()

        audio_url = await self._synthesize(reply)
        if self._aborted:
            return hangup_document()
        await self._append_turn(Speaker.AI, reply, audio_url=audio_url)
        self.call.conversation_state = ConversationState.AWAITING_HUMAN_SPEECH
        await self._save()
        return self._document(ControlDocumentKind.GATHER_SPEECH, reply, audio_url)

    async def _next_utterance(self, context: ConversationContext, text: str) -> str:
        """Retry transient engine failures; every failed attempt counts toward the handoff limit."""
        policy = self.settings.calls

        def _retry(retry_state) -> bool:
            exc = retry_state.outcome.exception()
            return (
                isinstance(exc, ENGINE_ERRORS)
                and self._llm_failures < policy.max_consecutive_llm_failures
                and not self._aborted
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.engine_retry_attempts),
            wait=wait_exponential(multiplier=policy.backoff_base_s, max=policy.backoff_max_s),
            retry=_retry,
            reraise=True,
        ):
            with attempt:
                try:
                    reply = await self.engine.next_utterance(context, text)
                except ENGINE_ERRORS:
                    self._llm_failures += 1
                    raise
        self._llm_failures = 0
        return reply

    async def _with_retries(self, operation: Callable[[], Any]) -> Any:
        policy = self.settings.calls
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.engine_retry_attempts),
            wait=wait_exponential(multiplier=policy.backoff_base_s, max=policy.backoff_max_s),
            retry=lambda rs: isinstance(rs.outcome.exception(), ENGINE_ERRORS) and not self._aborted,
            reraise=True,
        ):
            with attempt:
                return await operation()

    async def _synthesize(self, text: str) -> Optional[str]:
        """Synthesized audio URL, or None to fall back to <Say>."""
        with self.latency.track(TurnStage.TTS):
            try:
                audio = await self.engine.synthesize(
                    text, self.config.voice, self.config.speech_speed, self.config.audio_format,
                )
            except ENGINE_ERRORS as e:
                logger.warning("synthesis_failed_using_say", call_id=self.call.id, kind=e.kind)
                return None
        key = self.audio_store.put(audio, self.config.audio_format)
        return self.urls.audio(key)

    async def _opt_out(self, source: str) -> str:
        call = self.call
        if not call.opted_out:
            call.opted_out = True
            call.status = CallStatus.OPTED_OUT
            if not self._opt_out_marked:
                self._opt_out_marked = True
                await self.store.mark_contact_opted_out(call.contact_id)
            await self._emit(CallEventType.OPT_OUT, source=source)
            logger.info("call_opted_out", call_id=call.id, source=source)
            await self._finish()
        return self._document(ControlDocumentKind.GOODBYE, OPT_OUT_TEXT)

    async def _escalate(self, reason: str, urgency: str) -> str:
        self.call.conversation_state = ConversationState.ESCALATING
        self.call.human_escalation = True
        await self._save()
        await self._emit(CallEventType.ESCALATION, reason=reason, urgency=urgency)
        logger.info("call_escalated", call_id=self.call.id, reason=reason, urgency=urgency)
        return self._escalation_document()

    def _escalation_document(self) -> str:
        return self.gateway.render_control_document(ControlDocumentKind.ESCALATE, {
            "text": HANDOFF_TEXT,
            "voice": self.settings.telephony.say_voice,
            "transfer_number": self.settings.telephony.escalation_number,
        })

    def _duration_exceeded(self) -> bool:
        started = self.call.started_at
        if started is None or not self.config.max_call_duration:
            return False
        return (self.clock() - started).total_seconds() >= self.config.max_call_duration

    # ── Sentiment ────────────────────────────────────────────

    def _start_sentiment(self, text: str) -> None:
        index = self._human_turns
        self._human_turns += 1
        task = asyncio.create_task(self._score_sentiment(index, text))
        self._sentiment_tasks.add(task)
        task.add_done_callback(self._sentiment_tasks.discard)

    async def _score_sentiment(self, index: int, text: str) -> None:
        result: Optional[SentimentResult] = None
        try:
            result = await self.engine.score_sentiment(text)
        except ENGINE_ERRORS as e:
            logger.warning("sentiment_scoring_failed", call_id=self.call.id, turn_index=index, kind=e.kind)
        finally:
            if self._post is not None:
                self._post(SentimentScored(turn_index=index, result=result))
            else:
                await self._on_sentiment(index, result)

    async def _on_sentiment(self, index: int, result: Optional[SentimentResult]) -> None:
        self._sentiment_buffer[index] = result
        alpha = self.settings.calls.sentiment_alpha
        while self._next_sentiment_index in self._sentiment_buffer:
            i = self._next_sentiment_index
            scored = self._sentiment_buffer.pop(i) or SentimentResult.neutral()
            previous = self.call.sentiment_score
            ema = scored.score if previous is None else alpha * scored.score + (1 - alpha) * previous
            self.call.sentiment_score = ema
            self.call.sentiment_label = sentiment_label(ema)
            self._latest_sentiment = scored
            self._next_sentiment_index += 1
            await self.store.update_call(
                self.call.id,
                sentiment_score=ema,
                sentiment_label=self.call.sentiment_label,
            )
            await self._emit(CallEventType.SENTIMENT_UPDATED, turn_index=i, score=scored.score, ema=ema)

    # ── Helpers ──────────────────────────────────────────────

    def _context(self) -> ConversationContext:
        return ConversationContext.build(self.config, self.contact, self.call.transcript)

    def _document(self, kind: ControlDocumentKind, text: Optional[str], audio_url: Optional[str] = None) -> str:
        params: dict[str, Any] = {
            "voice": self.settings.telephony.say_voice,
            "language": self.config.language,
        }
        if text:
            params["text"] = text
        if audio_url:
            params["audio_url"] = audio_url
        if kind in (ControlDocumentKind.GREETING, ControlDocumentKind.GATHER_SPEECH):
            if self.settings.telephony.turn_mode == "record":
                kind = ControlDocumentKind.PLAY_AUDIO
                params["action_url"] = self.urls.recording(self.call.id)
            else:
                params["action_url"] = self.urls.gather(self.call.id)
        return self.gateway.render_control_document(kind, params)

    async def _append_turn(self, speaker: Speaker, content: str, audio_url: Optional[str] = None,
                           confidence: Optional[float] = None) -> ConversationTurn:
        turn = ConversationTurn(
            call_id=self.call.id,
            speaker=speaker,
            content=content,
            timestamp=self.clock(),
            audio_url=audio_url,
            confidence=confidence,
        )
        self.call.transcript = [*self.call.transcript, turn]
        await self.store.add_conversation_turn(turn)
        await self._emit(CallEventType.TRANSCRIPT_UPDATED, turn_id=turn.id, speaker=speaker.value)
        return turn

    async def _save(self) -> None:
        await self.store.update_call(
            self.call.id, **{f: getattr(self.call, f) for f in _PERSISTED_FIELDS}
        )

    async def _emit(self, event_type: CallEventType, **data: Any) -> None:
        await self.store.add_call_event(CallEvent(
            call_id=self.call.id,
            type=event_type,
            timestamp=self.clock(),
            data=data,
        ))
