"""Tests for CallOrchestrator and CallWorker - webhook routing, pushes, cancellation, settling."""
import asyncio

import pytest

from calls.events import CallAnswered, CallPlaced, ProviderStatus, SpeechReceived
from calls.worker import CallWorker
from core.errors import SessionNotFound
from core.orchestrator import CallOrchestrator, DocumentStore
from models.schemas import Call, CallEventType, CallStatus, SentimentResult, Speaker
from telephony.twilio_client import TwilioClient

BASE_URL = "https://callpilot.example.com"


@pytest.fixture
def orchestrator(store, engine, gateway, settings, audio_store, clock):
    return CallOrchestrator(
        store=store,
        engine=engine,
        gateway=gateway,
        settings=settings,
        audio_store=audio_store,
        clock=clock,
    )


async def place(orchestrator, store, runtime_config, contact, session_id="CA1"):
    call = Call(campaign_id=runtime_config.campaign_id, contact_id=contact.id,
                phone_number=contact.phone_number)
    await store.create_call(call)
    await store.upsert_contact(contact)
    worker = orchestrator.register(call, runtime_config, contact)
    await orchestrator.call_placed(call.id, session_id)
    return call, worker


async def settle(worker):
    await asyncio.wait_for(worker.start(), timeout=1.0)


class TestDocumentStore:
    def test_put_and_get(self):
        docs = DocumentStore()
        doc_id = docs.put("<Response />")
        assert docs.get(doc_id) == "<Response />"
        assert docs.get("missing") is None

    def test_oldest_documents_evicted(self):
        docs = DocumentStore(max_items=2)
        first = docs.put("a")
        docs.put("b")
        docs.put("c")
        assert docs.get(first) is None


class TestWebhookRouting:
    @pytest.mark.asyncio
    async def test_unknown_session_is_dropped(self, orchestrator, store):
        doc = await orchestrator.handle_status_webhook({"CallSid": "CA-unknown", "CallStatus": "completed"})
        assert doc is None
        assert await store.list_calls() == []
        assert orchestrator.active_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_call_id_gather_is_dropped(self, orchestrator, engine):
        doc = await orchestrator.handle_gather("nope", {"CallSid": "CA-unknown", "SpeechResult": "hi"})
        assert doc is None
        engine.next_utterance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_routed_by_session_id(self, orchestrator, store, runtime_config, contact):
        call, _ = await place(orchestrator, store, runtime_config, contact)
        await orchestrator.handle_status_webhook({"CallSid": "CA1", "CallStatus": "in-progress"})
        assert orchestrator.live_call(call.id).status == CallStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_answer_and_gather(self, orchestrator, store, runtime_config, contact, engine):
        call, _ = await place(orchestrator, store, runtime_config, contact)
        greeting = await orchestrator.handle_answer(call.id, {"CallSid": "CA1"})
        assert "<Gather" in greeting

        reply = await orchestrator.handle_gather(call.id, {
            "CallSid": "CA1", "SpeechResult": "Yes that works", "Confidence": "0.91",
        })
        assert "<Gather" in reply
        transcript = orchestrator.live_call(call.id).transcript
        assert [t.speaker for t in transcript] == [Speaker.AI, Speaker.HUMAN, Speaker.AI]
        assert transcript[1].confidence == pytest.approx(0.91)

    @pytest.mark.asyncio
    async def test_digits_only_gather_opts_out_and_unregisters(
        self, orchestrator, store, runtime_config, contact,
    ):
        ended = []
        orchestrator.on_call_terminal(ended.append)
        call, worker = await place(orchestrator, store, runtime_config, contact)
        await orchestrator.handle_answer(call.id, {"CallSid": "CA1"})

        doc = await orchestrator.handle_gather(call.id, {"CallSid": "CA1", "Digits": "9"})
        await settle(worker)

        assert "<Hangup />" in doc
        assert [c.id for c in ended] == [call.id]
        assert orchestrator.active_calls == 0
        assert (await store.get_call(call.id)).status == CallStatus.OPTED_OUT
        assert (await store.get_contact(contact.id)).opted_out is True


class TestRecordingPush:
    @pytest.mark.asyncio
    async def test_recording_turn_is_pushed(self, orchestrator, store, runtime_config, contact,
                                            settings, gateway, engine):
        settings.telephony.turn_mode = "record"
        call, _ = await place(orchestrator, store, runtime_config, contact)
        await orchestrator.handle_answer(call.id, {"CallSid": "CA1"})

        hold = await orchestrator.handle_recording(call.id, {
            "CallSid": "CA1", "RecordingUrl": "https://api.twilio.com/rec/RE1",
        })
        assert "<Pause" in hold
        await asyncio.gather(*list(orchestrator._background))

        engine.transcribe.assert_awaited_once()
        gateway.update_live_call.assert_awaited_once()
        session_id, url = gateway.update_live_call.await_args.args
        assert session_id == "CA1"
        assert url.startswith(f"{BASE_URL}/voice/documents/")
        pushed = orchestrator.documents.get(url.rsplit("/", 1)[1])
        assert "<Record" in pushed

    @pytest.mark.asyncio
    async def test_push_to_ended_session_is_benign(self, orchestrator, gateway):
        gateway.update_live_call.side_effect = SessionNotFound("call over")
        assert await orchestrator.push_document("CA1", "<Response />") is False

    @pytest.mark.asyncio
    async def test_push_without_session_does_nothing(self, orchestrator, gateway):
        assert await orchestrator.push_document(None, "<Response />") is False
        gateway.update_live_call.assert_not_awaited()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_unknown_call(self, orchestrator):
        assert await orchestrator.cancel_call("missing") is False

    @pytest.mark.asyncio
    async def test_cancel_campaign_ends_live_calls(self, orchestrator, store, runtime_config,
                                                   contact, gateway):
        first, w1 = await place(orchestrator, store, runtime_config, contact, session_id="CA1")
        second, w2 = await place(orchestrator, store, runtime_config, contact, session_id="CA2")

        canceled = await orchestrator.cancel_campaign(runtime_config.campaign_id)
        await settle(w1)
        await settle(w2)

        assert canceled == 2
        assert gateway.hang_up.await_count == 2
        for call in (first, second):
            stored = await store.get_call(call.id)
            assert stored.status == CallStatus.FAILED
            assert stored.error.kind == "Canceled"
        assert orchestrator.active_calls == 0

    @pytest.mark.asyncio
    async def test_placed_after_settle_hangs_up_orphan(self, orchestrator, gateway):
        await orchestrator.call_placed("already-gone", "CA-orphan")
        gateway.hang_up.assert_awaited_once_with("CA-orphan")


class TestWorkerSettling:
    @pytest.mark.asyncio
    async def test_worker_waits_for_pending_sentiment(self, orchestrator, store, runtime_config,
                                                      contact, engine):
        release = asyncio.Event()

        async def slow_score(text):
            await release.wait()
            return SentimentResult(score=0.2)

        engine.score_sentiment.side_effect = slow_score
        call, worker = await place(orchestrator, store, runtime_config, contact)
        await orchestrator.handle_answer(call.id, {"CallSid": "CA1"})
        await orchestrator.handle_gather(call.id, {"CallSid": "CA1", "SpeechResult": "sure"})
        await orchestrator.handle_status_webhook({"CallSid": "CA1", "CallStatus": "completed"})

        assert worker.machine.call.is_terminal
        assert orchestrator.active_calls == 1

        release.set()
        await settle(worker)
        assert orchestrator.active_calls == 0
        stored = await store.get_call(call.id)
        assert stored.sentiment_score == pytest.approx(0.2)
        assert stored.status == CallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_submit_after_settle_hangs_up(self, orchestrator, store, runtime_config, contact):
        call, worker = await place(orchestrator, store, runtime_config, contact)
        await orchestrator.handle_status_webhook({"CallSid": "CA1", "CallStatus": "busy"})
        await settle(worker)
        doc = await worker.submit(SpeechReceived(text="hello"))
        assert "<Hangup />" in doc


def provider_status(value: str) -> ProviderStatus:
    return ProviderStatus(webhook=TwilioClient.parse_status_webhook({"CallSid": "CA1", "CallStatus": value}))


class TestArrivalOrder:
    @pytest.mark.asyncio
    async def test_interleaved_webhooks_and_turns_keep_order(self, make_machine, store):
        machine = await make_machine()
        worker = CallWorker(machine)

        docs = await asyncio.gather(
            worker.submit(CallPlaced(session_id="CA1")),
            worker.submit(provider_status("ringing")),
            worker.submit(provider_status("in-progress")),
            worker.submit(CallAnswered()),
            worker.submit(SpeechReceived(text="yes, renew it", confidence=0.9)),
            worker.submit(provider_status("ringing")),
            worker.submit(provider_status("completed")),
        )
        await asyncio.wait_for(worker.start(), timeout=1.0)

        assert "<Gather" in docs[3]
        assert "<Gather" in docs[4]
        assert machine.call.status == CallStatus.COMPLETED
        assert (await store.get_call(machine.call.id)).status == CallStatus.COMPLETED
        assert [t.speaker for t in machine.call.transcript] == [Speaker.AI, Speaker.HUMAN, Speaker.AI]

        types = [e.type for e in await store.get_call_events(machine.call.id)]
        lifecycle = [t for t in types if t in (
            CallEventType.CALL_STARTED, CallEventType.CALL_ANSWERED, CallEventType.CALL_ENDED,
        )]
        assert lifecycle == [CallEventType.CALL_STARTED, CallEventType.CALL_ANSWERED, CallEventType.CALL_ENDED]
        assert types.index(CallEventType.TRANSCRIPT_UPDATED) > types.index(CallEventType.CALL_ANSWERED)
        last_turn = len(types) - 1 - types[::-1].index(CallEventType.TRANSCRIPT_UPDATED)
        assert last_turn < types.index(CallEventType.CALL_ENDED)
        assert CallEventType.SENTIMENT_UPDATED in types
