"""
Twilio Telephony Client - default PSTN provider.

Call flow:
1. place_call() → Twilio dials the contact; on answer it fetches the
   control document at control_document_url
2. Status webhooks arrive at callback_url
3. Gather/recording callbacks drive the conversation turns
4. update_live_call() redirects an in-progress call to a pushed document
5. hang_up() terminates the call

API Docs: https://www.twilio.com/docs/voice/api
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.errors import InvalidDestination, ProviderUnavailable, SessionNotFound
from models.schemas import ProviderWebhook
from telephony.base import PlaceCallOptions
from telephony.twiml import render_control_document as _render_control_document

logger = structlog.get_logger()

# Twilio error codes
CALL_NOT_IN_PROGRESS = 21220
INVALID_DESTINATION_CODES = {13223, 13224, 21211, 21214, 21215, 21216, 21217, 21401, 21612}


class TwilioClient:
    """Twilio REST API client for voice call management."""

    BASE_URL = "https://api.twilio.com/2010-04-01/Accounts"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 2,
        backoff_base: float = 1.0,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = f"{self.BASE_URL}/{account_sid}"
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                auth=(self.account_sid, self.auth_token),
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    async def _request(self, method: str, path: str, placing: bool = False, **kwargs) -> dict[str, Any]:
        """Send a request, retrying only transient provider failures."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=5),
            retry=retry_if_exception_type(ProviderUnavailable),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, placing, **kwargs)
        raise ProviderUnavailable("unreachable")  # pragma: no cover

    async def _send(self, method: str, path: str, placing: bool, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = f"{self.base_url}{path}.json"
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            logger.warning("twilio_transport_error", path=path, error=str(e))
            raise ProviderUnavailable(f"transport error: {e}") from e

        if resp.status_code >= 400:
            logger.error(
                "twilio_api_error",
                status=resp.status_code,
                body=resp.text[:500],
                path=path,
            )
            raise self._classify(resp, placing)
        return resp.json() if resp.content else {}

    @staticmethod
    def _classify(resp: httpx.Response, placing: bool) -> Exception:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        message = (body.get("message") if isinstance(body, dict) else None) or resp.text[:200]

        if resp.status_code >= 500 or resp.status_code == 429:
            return ProviderUnavailable(f"twilio {resp.status_code}: {message}")
        if code == CALL_NOT_IN_PROGRESS or (resp.status_code == 404 and not placing):
            return SessionNotFound(message)
        if placing and (resp.status_code == 400 or code in INVALID_DESTINATION_CODES):
            return InvalidDestination(message)
        # Credentials/account problems: the provider is unusable for us.
        return ProviderUnavailable(f"twilio {resp.status_code}: {message}")

    # ── Call Management ─────────────────────────────────────

    async def place_call(
        self,
        destination: str,
        control_document_url: str,
        callback_url: str,
        options: Optional[PlaceCallOptions] = None,
    ) -> str:
        """
        Place an outbound call via Twilio.

        Args:
            destination: Destination phone number (E.164)
            control_document_url: URL Twilio fetches on answer
            callback_url: Webhook URL for call status events
            options: recording, max duration and ring timeout
        """
        options = options or PlaceCallOptions()
        # Twilio uses form-encoded POST, not JSON
        payload = {
            "From": self.from_number,
            "To": destination,
            "Url": control_document_url,
            "Method": "POST",
            "StatusCallback": callback_url,
            "StatusCallbackEvent": "initiated ringing answered completed",
            "StatusCallbackMethod": "POST",
            "Timeout": str(options.timeout),
            "Record": "true" if options.record else "false",
        }
        if options.max_duration:
            payload["TimeLimit"] = str(options.max_duration)

        logger.info("twilio_place_call", to=destination)
        result = await self._request("POST", "/Calls", placing=True, data=payload)
        session_id = result.get("sid", "")
        if not session_id:
            raise ProviderUnavailable("twilio returned no call sid")
        return session_id

    async def update_live_call(self, session_id: str, control_document_url: str) -> None:
        logger.info("twilio_update_live_call", session_id=session_id)
        await self._request(
            "POST",
            f"/Calls/{session_id}",
            data={"Url": control_document_url, "Method": "POST"},
        )

    async def hang_up(self, session_id: str) -> None:
        """Terminate an active call."""
        logger.info("twilio_hang_up", session_id=session_id)
        await self._request("POST", f"/Calls/{session_id}", data={"Status": "completed"})

    async def fetch_recording(self, session_id: str) -> Optional[str]:
        result = await self._request("GET", f"/Calls/{session_id}/Recordings")
        recordings = result.get("recordings") or []
        if not recordings:
            return None
        return f"{self.base_url}/Recordings/{recordings[0]['sid']}.mp3"

    async def download_media(self, url: str) -> bytes:
        client = await self._get_client()
        try:
            resp = await client.get(url)
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"media download failed: {e}") from e
        if resp.status_code == 404:
            raise SessionNotFound(f"media not found: {url}")
        if resp.status_code >= 400:
            raise ProviderUnavailable(f"media download {resp.status_code}")
        return resp.content

    # ── Webhook Parsing ─────────────────────────────────────

    @staticmethod
    def parse_status_webhook(form: dict[str, Any]) -> ProviderWebhook:
        """
        Normalize a Twilio status or gather webhook.

        Twilio sends:
          - CallSid, CallStatus, From, To, CallDuration, RecordingUrl,
            ErrorCode, ErrorMessage, SpeechResult, Confidence, Digits
        """
        status_raw = str(form.get("CallStatus", form.get("Status", ""))).lower()
        confidence = form.get("Confidence")
        duration = form.get("CallDuration", form.get("Duration", 0)) or 0

        return ProviderWebhook(
            session_id=form.get("CallSid", ""),
            status=status_raw,
            from_number=form.get("From", ""),
            to_number=form.get("To", ""),
            duration=int(duration),
            recording_url=form.get("RecordingUrl", ""),
            error_code=str(form.get("ErrorCode", "") or ""),
            error_message=form.get("ErrorMessage", ""),
            speech_result=form.get("SpeechResult", ""),
            speech_confidence=float(confidence) if confidence not in (None, "") else None,
            digits=form.get("Digits", ""),
            raw=dict(form),
        )

    @staticmethod
    def render_control_document(kind: str, params: Optional[dict[str, Any]] = None) -> str:
        return _render_control_document(kind, params)

    # ── Helpers ─────────────────────────────────────────────

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
