"""
Configuration loader for the CallPilot system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "openai"                    # "openai" | "anthropic" (chat only)
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    openai_api_key: str = ""                    # audio always goes through OpenAI
    stt_model: str = "whisper-1"
    tts_model: str = "tts-1"
    history_token_budget: int = 1500            # prompt budget for turn history
    min_recent_turns: int = 4                   # never trimmed from the prompt
    max_greeting_words: int = 30
    request_timeout_s: float = 10.0


@dataclass
class TelephonyConfig:
    provider: str = "twilio"
    account_sid: str = ""
    auth_token: str = ""
    from_number: str = ""
    base_url: str = "http://localhost:8000"     # public URL the provider calls back
    ring_timeout_s: int = 30
    record_calls: bool = False
    escalation_number: str = ""                 # empty → spoken handoff + hang up
    say_voice: str = "alice"
    turn_mode: str = "gather"                   # "gather" (provider speech recognition) | "record"


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./callpilot.db"       # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"               # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10                         # ignored for sqlite
    max_overflow: int = 20
    pool_recycle_s: int = 1800


@dataclass
class DispatcherConfig:
    tick_interval_s: int = 15
    calls_per_second: float = 1.0               # token bucket refill rate
    burst: int = 5
    default_concurrency_limit: int = 5


@dataclass
class CallPolicyConfig:
    sentiment_alpha: float = 0.4
    max_consecutive_llm_failures: int = 2
    engine_retry_attempts: int = 2
    backoff_base_s: float = 0.2
    backoff_max_s: float = 1.0
    opt_out_keywords: list[str] = field(default_factory=lambda: [
        "stop calling", "do not call", "don't call", "remove me",
        "unsubscribe", "opt out", "take me off",
    ])
    opt_out_digits: list[str] = field(default_factory=lambda: ["9"])
    escalation_digits: list[str] = field(default_factory=lambda: ["1"])
    opt_out_intent_confidence: float = 0.8
    retry_on_provider_failed: bool = True


@dataclass
class EscalationConfig:
    distress_threshold: float = 0.7             # anger/fear emotion or -score
    low_confidence_threshold: float = 0.5
    low_confidence_streak: int = 2
    human_request_phrases: list[str] = field(default_factory=lambda: [
        "speak to a human", "talk to a human", "real person", "speak to someone",
        "talk to someone", "speak to an agent", "talk to an agent",
        "representative", "operator", "manager",
    ])
    compliance_keywords: list[str] = field(default_factory=lambda: [
        "lawyer", "attorney", "lawsuit", "sue ", "legal action",
        "social security", "credit card number", "bank account",
        "medical", "diagnosis", "complaint to", "regulator",
    ])
    use_llm_review: bool = True


@dataclass
class LatencyConfig:
    transcribe_ms: int = 400
    intent_ms: int = 300
    escalation_ms: int = 300
    llm_ms: int = 700
    tts_ms: int = 400
    turn_total_ms: int = 1500


@dataclass
class Settings:
    app_name: str = "CallPilot"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    telephony: TelephonyConfig = field(default_factory=TelephonyConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    calls: CallPolicyConfig = field(default_factory=CallPolicyConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    latency: LatencyConfig = field(default_factory=LatencyConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _merge_section(section: Any, raw: dict[str, Any]) -> Any:
    """Overlay known keys from a raw YAML mapping onto a config dataclass."""
    for key, value in (raw or {}).items():
        if hasattr(section, key):
            setattr(section, key, value)
    return section


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CALLPILOT_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        for name in ("llm", "telephony", "database", "dispatcher",
                     "calls", "escalation", "latency"):
            if name in raw:
                _merge_section(getattr(settings, name), raw[name])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
