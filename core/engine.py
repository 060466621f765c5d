"""
Conversation Engine - speech and LLM operations for a live call.

Wraps the speech/LLM provider behind a small set of operations:
- transcribe / synthesize (OpenAI Whisper + TTS)
- next_utterance with a token-bounded turn history
- score_sentiment / extract_intent (JSON-mode prompts)
- should_escalate (deterministic rules, then an LLM review)
- generate_greeting (bounded, personalized, with template fallback)

Every provider failure is classified into UpstreamUnavailable,
RateLimited or MalformedResponse. Retrying is the caller's job.
"""
from __future__ import annotations

import asyncio
import json
import math
import structlog
from typing import Any, Optional

from config.settings import Settings, get_settings
from core.errors import CallPilotError, MalformedResponse, RateLimited, UpstreamUnavailable
from models.schemas import (
    ConversationContext, ConversationTurn, EscalationDecision, EscalationSignals,
    IntentResult, SentimentResult, Speaker, TranscriptionResult,
)

logger = structlog.get_logger()

EMOTIONS = ("joy", "anger", "fear", "sadness", "surprise", "trust")


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text or "") / 4)


def trim_history(turns: list[ConversationTurn], budget: int, min_recent: int) -> list[ConversationTurn]:
    """
    Drop the oldest turns until the history fits the token budget.

    The last `min_recent` turns are always kept, even if they alone
    exceed the budget.
    """
    if not turns:
        return []
    split = max(len(turns) - min_recent, 0)
    kept = list(turns[split:])
    used = sum(estimate_tokens(t.content) for t in kept)
    for turn in reversed(turns[:split]):
        cost = estimate_tokens(turn.content)
        if used + cost > budget:
            break
        kept.insert(0, turn)
        used += cost
    return kept


def _clamp(value: Any, lo: float, hi: float, default: float = 0.0) -> float:
    try:
        return max(lo, min(hi, float(value)))
    except (TypeError, ValueError):
        return default


def _parse_json(raw: str) -> dict[str, Any]:
    raw = (raw or "").strip()
    if raw.startswith("```"):
        raw = raw.split("```")[1].strip()
        if raw.startswith("json"):
            raw = raw[4:].strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"invalid JSON from model: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedResponse("expected a JSON object")
    return parsed


class ConversationEngine:
    """
    Generates call audio and dialogue using OpenAI or Anthropic.
    Audio (STT/TTS) always goes through OpenAI; chat can use either.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm_client: Any = None,
        audio_client: Any = None,
    ):
        self._settings = settings or get_settings()
        self._client = llm_client
        self._audio_client = audio_client
        self._provider = getattr(self._settings.llm, "provider", "openai")

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    # ── Clients ───────────────────────────────────────────────

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._settings.llm.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._settings.llm.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self._settings.llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                raise UpstreamUnavailable(f"llm client unavailable: {e}") from e
        return self._client

    async def _get_audio_client(self):
        if self._audio_client is None:
            if self.is_openai and self._client is not None:
                self._audio_client = self._client
            else:
                try:
                    from openai import AsyncOpenAI
                    self._audio_client = AsyncOpenAI(
                        api_key=self._settings.llm.openai_api_key or self._settings.llm.api_key
                    )
                except Exception as e:
                    logger.error("audio_client_init_failed", error=str(e))
                    raise UpstreamUnavailable(f"audio client unavailable: {e}") from e
        return self._audio_client

    @staticmethod
    def _classify(exc: BaseException) -> CallPilotError:
        """Map provider SDK exceptions onto the engine error taxonomy."""
        if isinstance(exc, CallPilotError):
            return exc
        if getattr(exc, "status_code", None) == 429 or "RateLimit" in type(exc).__name__:
            return RateLimited(str(exc))
        if isinstance(exc, (ValueError, KeyError, IndexError, AttributeError, TypeError)):
            return MalformedResponse(f"{type(exc).__name__}: {exc}")
        return UpstreamUnavailable(f"{type(exc).__name__}: {exc}")

    async def _guarded(self, op: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._settings.llm.request_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = self._classify(e)
            logger.warning("engine_operation_failed", op=op, kind=err.kind, error=str(e))
            raise err from e

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()

        max_tokens = max_tokens or self._settings.llm.max_tokens
        temperature = temperature if temperature is not None else self._settings.llm.temperature

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self._settings.llm.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content
        else:
            # Anthropic: system prompt is a separate parameter
            response = await client.messages.create(
                model=self._settings.llm.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text

    # ── Speech ───────────────────────────────────────────────

    async def transcribe(self, audio: bytes, language_hint: Optional[str] = None) -> TranscriptionResult:
        async def _run():
            client = await self._get_audio_client()
            kwargs: dict[str, Any] = {
                "model": self._settings.llm.stt_model,
                "file": ("audio.wav", audio),
                "response_format": "verbose_json",
            }
            if language_hint:
                kwargs["language"] = language_hint.split("-")[0]
            response = await client.audio.transcriptions.create(**kwargs)
            segments = getattr(response, "segments", None) or []
            if segments:
                logprobs = [
                    s.get("avg_logprob", 0.0) if isinstance(s, dict) else getattr(s, "avg_logprob", 0.0)
                    for s in segments
                ]
                confidence = _clamp(math.exp(sum(logprobs) / len(logprobs)), 0.0, 1.0)
            else:
                confidence = 0.9
            return TranscriptionResult(
                text=(response.text or "").strip(),
                confidence=confidence,
                duration=float(getattr(response, "duration", 0.0) or 0.0),
            )

        return await self._guarded("transcribe", _run())

    async def synthesize(self, text: str, voice: str = "alloy", speed: float = 1.0, fmt: str = "mp3") -> bytes:
        async def _run():
            client = await self._get_audio_client()
            response = await client.audio.speech.create(
                model=self._settings.llm.tts_model,
                voice=voice,
                input=text,
                speed=speed,
                response_format=fmt,
            )
            audio = response.content
            if not audio:
                raise MalformedResponse("empty audio from TTS")
            return audio

        return await self._guarded("synthesize", _run())

    # ── Dialogue ─────────────────────────────────────────────

    async def next_utterance(self, context: ConversationContext, latest_human_text: str) -> str:
        system = self._build_system_prompt(context)
        messages = self._build_messages(context, latest_human_text)

        async def _run():
            result = await self._call_llm(system=system, messages=messages)
            if not result or not result.strip():
                raise MalformedResponse("empty completion")
            return result.strip()

        return await self._guarded("next_utterance", _run())

    async def score_sentiment(self, text: str) -> SentimentResult:
        system = """Analyze the sentiment of the caller's utterance from a phone call.
Return a JSON object with:
- score: float -1 (very negative) to 1 (very positive)
- magnitude: float 0-1, strength of the emotion
- label: positive | neutral | negative
- confidence: float 0-1
- emotions: object with joy, anger, fear, sadness, surprise, trust, each 0-1

Return ONLY valid JSON, no other text."""

        async def _run():
            data = _parse_json(await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": text}],
                max_tokens=200,
                temperature=0.0,
            ))
            score = _clamp(data.get("score"), -1.0, 1.0)
            label = data.get("label")
            if label not in ("positive", "neutral", "negative"):
                label = "positive" if score > 0.25 else "negative" if score < -0.25 else "neutral"
            emotions = data.get("emotions") or {}
            return SentimentResult(
                score=score,
                magnitude=_clamp(data.get("magnitude"), 0.0, 1.0),
                label=label,
                confidence=_clamp(data.get("confidence"), 0.0, 1.0),
                emotions={e: _clamp(emotions.get(e, 0.0), 0.0, 1.0) for e in EMOTIONS},
            )

        return await self._guarded("score_sentiment", _run())

    async def extract_intent(self, text: str, context: ConversationContext) -> IntentResult:
        system = f"""You classify what a person on an outbound phone call wants.
Campaign: {context.config.campaign_name}
Goals: {'; '.join(context.config.goals) or 'general conversation'}

Return a JSON object with:
- intent: short snake_case label (e.g. interested, not_interested, callback_request,
  question, opt_out, human_request, complaint, confirmation, unclear)
- entities: object of extracted details (dates, times, amounts, names)
- confidence: float 0-1
- requires_escalation: true if a human agent must take over
- suggested_response: optional short reply

Return ONLY valid JSON, no other text."""

        async def _run():
            data = _parse_json(await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": text}],
                max_tokens=300,
                temperature=0.0,
            ))
            entities = data.get("entities")
            return IntentResult(
                intent=str(data.get("intent") or "unknown"),
                entities=entities if isinstance(entities, dict) else {},
                confidence=_clamp(data.get("confidence"), 0.0, 1.0),
                requires_escalation=bool(data.get("requires_escalation", False)),
                suggested_response=data.get("suggested_response") or None,
            )

        return await self._guarded("extract_intent", _run())

    async def should_escalate(
        self,
        turns: list[ConversationTurn],
        context: ConversationContext,
        signals: Optional[EscalationSignals] = None,
    ) -> EscalationDecision:
        """Rules first; the LLM review only runs when no rule fires."""
        signals = signals or EscalationSignals()
        cfg = self._settings.escalation

        decision = self._rule_escalation(turns, signals)
        if decision.decision:
            logger.info("escalation_rule_fired", reason=decision.reason)
            return decision
        if not cfg.use_llm_review:
            return decision

        system = """You review an ongoing outbound phone call handled by an AI agent.
Decide whether a human agent must take over now.
Return a JSON object with:
- escalate: true | false
- reason: short explanation
- urgency: low | medium | high

Return ONLY valid JSON, no other text."""
        transcript = "\n".join(
            f"{'Agent' if t.speaker == Speaker.AI else 'Caller'}: {t.content}"
            for t in trim_history(turns, self._settings.llm.history_token_budget,
                                  self._settings.llm.min_recent_turns)
        )
        try:
            data = _parse_json(await self._guarded("should_escalate", self._call_llm(
                system=system,
                messages=[{"role": "user", "content": transcript or "(no turns yet)"}],
                max_tokens=150,
                temperature=0.0,
            )))
        except CallPilotError as e:
            logger.warning("escalation_review_failed", kind=e.kind, error=str(e))
            return EscalationDecision(decision=False, reason="review_unavailable")

        urgency = data.get("urgency") if data.get("urgency") in ("low", "medium", "high") else "medium"
        return EscalationDecision(
            decision=bool(data.get("escalate", False)),
            reason=str(data.get("reason") or "llm_review"),
            urgency=urgency,
        )

    def _rule_escalation(self, turns: list[ConversationTurn], signals: EscalationSignals) -> EscalationDecision:
        cfg = self._settings.escalation
        latest = next((t.content for t in reversed(turns) if t.speaker == Speaker.HUMAN), "")
        text = f" {latest.lower()} "

        if any(p in text for p in cfg.human_request_phrases):
            return EscalationDecision(decision=True, reason="human_requested", urgency="medium")
        if any(k in text for k in cfg.compliance_keywords):
            return EscalationDecision(decision=True, reason="compliance_sensitive", urgency="high")

        sentiment = signals.latest_sentiment
        if sentiment is not None:
            distress = max(sentiment.emotions.get("anger", 0.0), sentiment.emotions.get("fear", 0.0),
                           -sentiment.score)
            if distress >= cfg.distress_threshold:
                return EscalationDecision(decision=True, reason="distress", urgency="high")

        if signals.latest_intent is not None and signals.latest_intent.requires_escalation:
            return EscalationDecision(decision=True, reason="intent_requires_escalation", urgency="medium")
        if signals.low_confidence_streak >= cfg.low_confidence_streak:
            return EscalationDecision(decision=True, reason="low_confidence", urgency="medium")
        return EscalationDecision(decision=False)

    async def generate_greeting(self, context: ConversationContext) -> str:
        """Never raises: any failure or invalid output falls back to a template."""
        max_words = self._settings.llm.max_greeting_words
        name = context.contact_name
        system = f"""You open an outbound phone call on behalf of {context.config.campaign_name}.
Personality: {context.config.personality or 'friendly and professional'}
Write the first sentence(s) the agent says when the person answers.
Rules:
- Address the person by name: {name}
- At most {max_words} words
- Natural spoken language, no lists or markup
- Briefly state why you are calling"""
        details = {"goals": list(context.config.goals), **context.personalization}

        try:
            greeting = await self._guarded("generate_greeting", self._call_llm(
                system=system,
                messages=[{"role": "user", "content": f"Call details: {json.dumps(details, default=str)}"}],
                max_tokens=120,
            ))
        except CallPilotError as e:
            logger.warning("greeting_generation_failed", kind=e.kind, error=str(e))
            return self._fallback_greeting(context)

        greeting = (greeting or "").strip().strip('"')
        if not greeting or len(greeting.split()) > max_words or name.lower() not in greeting.lower():
            logger.info("greeting_rejected", words=len(greeting.split()))
            return self._fallback_greeting(context)
        return greeting

    # ── Prompt Construction ───────────────────────────────────

    def _build_system_prompt(self, context: ConversationContext) -> str:
        cfg = context.config
        goals = "\n".join(f"- {g}" for g in cfg.goals) or "- Have a helpful conversation"
        personal = ""
        if context.personalization:
            personal = "\n\nKnown details about the contact:\n" + "\n".join(
                f"- {k}: {v}" for k, v in context.personalization.items()
            )
        return f"""You are an AI agent on an outbound phone call for the campaign "{cfg.campaign_name}".
You are speaking with {context.contact_name}.
Personality: {cfg.personality or 'friendly and professional'}
Language: {cfg.language}

Script:
{cfg.script or '(no script)'}

Goals:
{goals}{personal}

GUIDELINES:
- Responses are spoken via TTS. Keep them short (1-3 sentences), natural spoken language.
- Ask one question at a time.
- If the person asks not to be called again, acknowledge politely.
- If you cannot help, offer to connect them with a member of the team."""

    def _build_messages(self, context: ConversationContext, latest_human_text: str) -> list[dict[str, str]]:
        turns = trim_history(context.turns, self._settings.llm.history_token_budget,
                             self._settings.llm.min_recent_turns)
        messages = [
            {"role": "assistant" if t.speaker == Speaker.AI else "user", "content": t.content}
            for t in turns
        ]
        already_last = (
            bool(turns) and turns[-1].speaker == Speaker.HUMAN and turns[-1].content == latest_human_text
        )
        if latest_human_text and not already_last:
            messages.append({"role": "user", "content": latest_human_text})

        if not messages:
            messages = [{"role": "user", "content": "[Call connected]"}]
        elif messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Call connected]"})
        return messages

    def _fallback_greeting(self, context: ConversationContext) -> str:
        name = context.contact_name
        template = context.config.greeting_template
        if template:
            rendered = template
            for key, value in {"name": name, "first_name": name,
                               "campaign": context.config.campaign_name,
                               **context.personalization}.items():
                rendered = rendered.replace("{" + key + "}", str(value))
            if name.lower() in rendered.lower():
                return rendered
        return (f"Hello {name}, thank you for taking my call. "
                f"I'm calling about {context.config.campaign_name}.")
