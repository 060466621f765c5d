"""
Error taxonomy shared by the gateway, the conversation engine and the
call state machine.

  ProviderUnavailable  - telephony API unreachable / 5xx / throttled
  InvalidDestination   - provider rejected the destination number
  SessionNotFound      - live-call update raced with provider hang-up
  UpstreamUnavailable  - speech/LLM provider unreachable
  RateLimited          - speech/LLM provider throttled us
  MalformedResponse    - speech/LLM provider answered with garbage
  RetriesExhausted     - terminal, attempt budget used up
  UnknownSession       - webhook for a session we do not own
  Canceled             - call terminated by an external signal
"""
from __future__ import annotations


class CallPilotError(Exception):
    """Base exception for all orchestration failures."""

    kind = "CallPilotError"

    def __init__(self, message: str = "", retryable: bool = False):
        self.retryable = retryable
        super().__init__(message or self.kind)


class ProviderUnavailable(CallPilotError):
    kind = "ProviderUnavailable"

    def __init__(self, message: str = ""):
        super().__init__(message, retryable=True)


class InvalidDestination(CallPilotError):
    kind = "InvalidDestination"


class SessionNotFound(CallPilotError):
    kind = "SessionNotFound"


class UpstreamUnavailable(CallPilotError):
    kind = "UpstreamUnavailable"

    def __init__(self, message: str = ""):
        super().__init__(message, retryable=True)


class RateLimited(CallPilotError):
    kind = "RateLimited"

    def __init__(self, message: str = ""):
        super().__init__(message, retryable=True)


class MalformedResponse(CallPilotError):
    kind = "MalformedResponse"

    def __init__(self, message: str = ""):
        super().__init__(message, retryable=True)


class RetriesExhausted(CallPilotError):
    kind = "RetriesExhausted"


class UnknownSession(CallPilotError):
    kind = "UnknownSession"


class Canceled(CallPilotError):
    kind = "Canceled"


ENGINE_ERRORS = (UpstreamUnavailable, RateLimited, MalformedResponse)


def error_kind(exc: BaseException) -> str:
    """Stable kind string for persistence; unknown exceptions keep their class name."""
    if isinstance(exc, CallPilotError):
        return exc.kind
    return type(exc).__name__
