"""Tests for TwilioClient against a mocked Twilio REST API."""
from urllib.parse import parse_qs

import httpx
import pytest

from config.settings import TelephonyConfig
from core.errors import InvalidDestination, ProviderUnavailable, SessionNotFound
from telephony.base import PlaceCallOptions
from telephony.factory import TelephonyFactory
from telephony.twilio_client import TwilioClient

ACCOUNT = "AC0123456789"


def client_for(handler, max_attempts=2) -> TwilioClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioClient(ACCOUNT, "token", "+15550001111", http_client=http,
                        max_attempts=max_attempts, backoff_base=0)


def form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


class TestPlaceCall:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"sid": "CA42", "status": "queued"})

        client = client_for(handler)
        sid = await client.place_call(
            "+14155550100",
            "https://cp.example.com/webhooks/twilio/answer?call_id=c1",
            "https://cp.example.com/webhooks/twilio/status?call_id=c1",
            PlaceCallOptions(record=True, max_duration=300, timeout=25),
        )

        assert sid == "CA42"
        [request] = seen
        assert request.method == "POST"
        assert request.url.path == f"/2010-04-01/Accounts/{ACCOUNT}/Calls.json"
        body = form(request)
        assert body["To"] == "+14155550100"
        assert body["From"] == "+15550001111"
        assert body["Url"].endswith("answer?call_id=c1")
        assert body["StatusCallback"].endswith("status?call_id=c1")
        assert body["Record"] == "true"
        assert body["TimeLimit"] == "300"
        assert body["Timeout"] == "25"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        responses = iter([httpx.Response(503, text="busy"), httpx.Response(201, json={"sid": "CA7"})])
        client = client_for(lambda request: next(responses))
        assert await client.place_call("+14155550100", "u", "s") == "CA7"

    @pytest.mark.asyncio
    async def test_persistent_failure_is_provider_unavailable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, json={"message": "oops"})

        client = client_for(handler, max_attempts=3)
        with pytest.raises(ProviderUnavailable):
            await client.place_call("+14155550100", "u", "s")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_invalid_destination_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        client = client_for(handler)
        with pytest.raises(InvalidDestination):
            await client.place_call("12", "u", "s")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = client_for(handler)
        with pytest.raises(ProviderUnavailable):
            await client.place_call("+14155550100", "u", "s")

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        client = client_for(lambda request: httpx.Response(401, json={"code": 20003}), max_attempts=1)
        with pytest.raises(ProviderUnavailable):
            await client.place_call("+14155550100", "u", "s")


class TestLiveCall:
    @pytest.mark.asyncio
    async def test_update_live_call(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"sid": "CA1"})

        client = client_for(handler)
        await client.update_live_call("CA1", "https://cp.example.com/voice/documents/d1")
        assert seen[0].url.path.endswith("/Calls/CA1.json")
        assert form(seen[0])["Url"] == "https://cp.example.com/voice/documents/d1"

    @pytest.mark.asyncio
    async def test_update_after_hang_up_is_session_not_found(self):
        client = client_for(lambda request: httpx.Response(
            400, json={"code": 21220, "message": "Call is not in-progress"},
        ))
        with pytest.raises(SessionNotFound):
            await client.update_live_call("CA1", "u")

    @pytest.mark.asyncio
    async def test_unknown_session_is_session_not_found(self):
        client = client_for(lambda request: httpx.Response(404, json={"code": 20404}))
        with pytest.raises(SessionNotFound):
            await client.hang_up("CA404")

    @pytest.mark.asyncio
    async def test_hang_up_completes_call(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"sid": "CA1", "status": "completed"})

        await client_for(handler).hang_up("CA1")
        assert form(seen[0]) == {"Status": "completed"}

    @pytest.mark.asyncio
    async def test_fetch_recording(self):
        client = client_for(lambda request: httpx.Response(200, json={"recordings": [{"sid": "RE9"}]}))
        url = await client.fetch_recording("CA1")
        assert url == f"https://api.twilio.com/2010-04-01/Accounts/{ACCOUNT}/Recordings/RE9.mp3"

    @pytest.mark.asyncio
    async def test_fetch_recording_none(self):
        client = client_for(lambda request: httpx.Response(200, json={"recordings": []}))
        assert await client.fetch_recording("CA1") is None

    @pytest.mark.asyncio
    async def test_download_media(self):
        client = client_for(lambda request: httpx.Response(200, content=b"RIFF"))
        assert await client.download_media("https://api.twilio.com/rec/RE1.wav") == b"RIFF"

    @pytest.mark.asyncio
    async def test_download_missing_media(self):
        client = client_for(lambda request: httpx.Response(404))
        with pytest.raises(SessionNotFound):
            await client.download_media("https://api.twilio.com/rec/RE1.wav")


class TestWebhookParsing:
    def test_status_webhook(self):
        hook = TwilioClient.parse_status_webhook({
            "CallSid": "CA1", "CallStatus": "No-Answer", "From": "+15550001111",
            "To": "+14155550100", "CallDuration": "0", "ErrorCode": 31005,
        })
        assert hook.session_id == "CA1"
        assert hook.status == "no-answer"
        assert hook.duration == 0
        assert hook.error_code == "31005"
        assert hook.speech_confidence is None

    def test_gather_webhook(self):
        hook = TwilioClient.parse_status_webhook({
            "CallSid": "CA1", "SpeechResult": "next tuesday", "Confidence": "0.87", "Digits": "",
        })
        assert hook.speech_result == "next tuesday"
        assert hook.speech_confidence == pytest.approx(0.87)
        assert hook.raw["SpeechResult"] == "next tuesday"


class TestFactory:
    def test_creates_twilio(self):
        gateway = TelephonyFactory.create(TelephonyConfig(account_sid=ACCOUNT, auth_token="t",
                                                          from_number="+15550001111"))
        assert isinstance(gateway, TwilioClient)

    def test_rejects_unknown_provider(self):
        with pytest.raises(ValueError, match="Unsupported telephony provider"):
            TelephonyFactory.create(TelephonyConfig(provider="carrier-pigeon"))

    def test_detect_provider(self):
        assert TelephonyFactory.detect_provider_from_webhook({"CallSid": "CA1"}) == "twilio"
        assert TelephonyFactory.detect_provider_from_webhook({"uuid": "x"}) is None
