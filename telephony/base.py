"""
Telephony gateway interface.

Every provider client normalizes its API into these operations so the
state machine and dispatcher never see provider-specific payloads.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from models.schemas import ProviderWebhook


@dataclass(frozen=True)
class PlaceCallOptions:
    record: bool = False
    max_duration: Optional[int] = None      # seconds; provider hangs up after this
    timeout: int = 30                       # ring timeout, seconds


@dataclass(frozen=True)
class CallbackUrls:
    """Public URLs the provider calls back on, rooted at telephony.base_url."""
    base_url: str

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}{path}"

    def answer(self, call_id: str) -> str:
        return self._url(f"/webhooks/twilio/answer?call_id={call_id}")

    def status(self, call_id: str) -> str:
        return self._url(f"/webhooks/twilio/status?call_id={call_id}")

    def gather(self, call_id: str) -> str:
        return self._url(f"/webhooks/twilio/gather?call_id={call_id}")

    def recording(self, call_id: str) -> str:
        return self._url(f"/webhooks/twilio/recording?call_id={call_id}")

    def document(self, doc_id: str) -> str:
        return self._url(f"/voice/documents/{doc_id}")

    def audio(self, key: str) -> str:
        return self._url(f"/voice/audio/{key}")


@runtime_checkable
class TelephonyGateway(Protocol):
    """Common interface for all telephony providers."""

    async def place_call(
        self,
        destination: str,
        control_document_url: str,
        callback_url: str,
        options: Optional[PlaceCallOptions] = None,
    ) -> str:
        """
        Place an outbound call and return the provider session id.

        Raises ProviderUnavailable or InvalidDestination.
        """
        ...

    async def update_live_call(self, session_id: str, control_document_url: str) -> None:
        """Redirect a live call to a new control document. Raises SessionNotFound."""
        ...

    async def hang_up(self, session_id: str) -> None:
        ...

    async def fetch_recording(self, session_id: str) -> Optional[str]:
        ...

    async def download_media(self, url: str) -> bytes:
        ...

    @staticmethod
    def parse_status_webhook(form: dict[str, Any]) -> ProviderWebhook:
        ...

    @staticmethod
    def render_control_document(kind: str, params: Optional[dict[str, Any]] = None) -> str:
        ...

    async def close(self) -> None:
        ...
