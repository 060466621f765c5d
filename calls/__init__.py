from calls.events import (
    AudioReceived, CallAnswered, CallInput, CallPlaced, CancelRequested, DtmfReceived,
    PlacementFailed, ProviderStatus, SentimentScored, SpeechReceived,
)
from calls.state_machine import CallStateMachine
from calls.worker import CallWorker

__all__ = [
    "AudioReceived", "CallAnswered", "CallInput", "CallPlaced", "CancelRequested",
    "DtmfReceived", "PlacementFailed", "ProviderStatus", "SentimentScored", "SpeechReceived",
    "CallStateMachine", "CallWorker",
]
