"""
Inputs to a call's state machine.

Everything that can change a Call arrives as one of these events on the
call's worker queue; nothing mutates a Call outside CallStateMachine.handle.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from core.errors import CallPilotError
from models.schemas import ProviderWebhook, SentimentResult


@dataclass(frozen=True)
class CallPlaced:
    session_id: str


@dataclass(frozen=True)
class PlacementFailed:
    error: CallPilotError


@dataclass(frozen=True)
class ProviderStatus:
    webhook: ProviderWebhook


@dataclass(frozen=True)
class CallAnswered:
    """The provider fetched the answer document."""


@dataclass(frozen=True)
class SpeechReceived:
    text: str
    confidence: Optional[float] = None
    digits: str = ""


@dataclass(frozen=True)
class AudioReceived:
    audio: Optional[bytes] = None
    url: Optional[str] = None
    digits: str = ""


@dataclass(frozen=True)
class DtmfReceived:
    digits: str


@dataclass(frozen=True)
class SentimentScored:
    turn_index: int
    result: Optional[SentimentResult]       # None: scoring failed


@dataclass(frozen=True)
class CancelRequested:
    reason: str = "canceled"


CallInput = Union[
    CallPlaced, PlacementFailed, ProviderStatus, CallAnswered, SpeechReceived,
    AudioReceived, DtmfReceived, SentimentScored, CancelRequested,
]
