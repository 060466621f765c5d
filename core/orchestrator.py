"""
Call Orchestrator - routes provider callbacks to the owning call.

Architecture:
  Dispatcher → register(call) → CallWorker + CallStateMachine
             → place_call → call_placed / placement_failed

  Webhook    → parse → look up worker (call_id, then provider session id)
             → submit event → control document back to the provider

  Recording  → hold document now → background: transcribe + turn
             → DocumentStore → update_live_call(document URL)

Unknown sessions are logged and dropped; nothing is created for them.
"""
from __future__ import annotations

import asyncio
import structlog
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Optional

from calls.events import (
    AudioReceived, CallAnswered, CallPlaced, CancelRequested, DtmfReceived,
    PlacementFailed, ProviderStatus, SpeechReceived,
)
from calls.state_machine import CallStateMachine
from calls.worker import CallWorker
from config.settings import Settings, get_settings
from core.engine import ConversationEngine
from core.errors import CallPilotError, SessionNotFound
from database.audio_store import AudioStore
from database.store_base import BaseCallStore
from models.schemas import Call, CampaignRuntimeConfig, Contact, utcnow
from telephony.base import CallbackUrls, TelephonyGateway
from telephony.twiml import hold_document
from voice.latency import AggregateLatencyTracker, LatencyBudget

logger = structlog.get_logger()


class DocumentStore:
    """Control documents published for update_live_call; the provider fetches them once."""

    def __init__(self, max_items: int = 1000):
        self.max_items = max_items
        self._docs: OrderedDict[str, str] = OrderedDict()

    def put(self, document: str) -> str:
        doc_id = uuid.uuid4().hex
        self._docs[doc_id] = document
        while len(self._docs) > self.max_items:
            self._docs.popitem(last=False)
        return doc_id

    def get(self, doc_id: str) -> Optional[str]:
        return self._docs.get(doc_id)


class CallOrchestrator:
    """
    Owns the live-call registry.

    This class:
    1. Creates a state machine + worker per dispatched call
    2. Routes webhooks and speech results to the owning worker
    3. Pushes documents for recording-based turns
    4. Cancels calls and campaigns
    5. Tells the dispatcher when a call's slot is free
    """

    def __init__(
        self,
        store: BaseCallStore,
        engine: ConversationEngine,
        gateway: TelephonyGateway,
        settings: Optional[Settings] = None,
        audio_store: Optional[AudioStore] = None,
        documents: Optional[DocumentStore] = None,
        latency: Optional[AggregateLatencyTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.engine = engine
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.audio_store = audio_store or AudioStore()
        self.documents = documents or DocumentStore()
        self.latency = latency or AggregateLatencyTracker(LatencyBudget.from_config(self.settings.latency))
        self.clock = clock
        self.urls = CallbackUrls(self.settings.telephony.base_url)

        self._workers: dict[str, CallWorker] = {}          # call_id → worker
        self._sessions: dict[str, str] = {}                # provider session id → call_id
        self._terminal_listeners: list[Callable[[Call], None]] = []
        self._background: set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════
    #  REGISTRY
    # ══════════════════════════════════════════════════════════

    def on_call_terminal(self, listener: Callable[[Call], None]) -> None:
        self._terminal_listeners.append(listener)

    def register(self, call: Call, config: CampaignRuntimeConfig, contact: Contact) -> CallWorker:
        machine = CallStateMachine(
            call=call,
            config=config,
            contact=contact,
            engine=self.engine,
            gateway=self.gateway,
            store=self.store,
            audio_store=self.audio_store,
            settings=self.settings,
            latency=self.latency.create_call_tracker(call.id),
            clock=self.clock,
            on_terminal=self._call_terminal,
        )
        worker = CallWorker(machine, on_settled=self._settled)
        self._workers[call.id] = worker
        if call.provider_session_id:
            self._sessions[call.provider_session_id] = call.id
        worker.start()
        logger.info("call_registered", call_id=call.id, campaign_id=call.campaign_id)
        return worker

    def get_worker(self, call_id: str = None, session_id: str = None) -> Optional[CallWorker]:
        if call_id and call_id in self._workers:
            return self._workers[call_id]
        if session_id and session_id in self._sessions:
            return self._workers.get(self._sessions[session_id])
        return None

    def live_call(self, call_id: str) -> Optional[Call]:
        worker = self._workers.get(call_id)
        return worker.machine.call if worker else None

    @property
    def active_calls(self) -> int:
        return len(self._workers)

    def _call_terminal(self, call: Call) -> None:
        for listener in self._terminal_listeners:
            try:
                listener(call)
            except Exception as e:
                logger.error("terminal_listener_failed", call_id=call.id, error=str(e))

    def _settled(self, machine: CallStateMachine) -> None:
        call = machine.call
        self._workers.pop(call.id, None)
        if call.provider_session_id:
            self._sessions.pop(call.provider_session_id, None)
        self.latency.remove_call(call.id)
        logger.debug("call_unregistered", call_id=call.id)

    # ══════════════════════════════════════════════════════════
    #  PLACEMENT
    # ══════════════════════════════════════════════════════════

    async def call_placed(self, call_id: str, session_id: str) -> None:
        worker = self._workers.get(call_id)
        if worker is None:
            # Settled (canceled) before the provider answered the dial request
            logger.warning("placed_call_not_registered", call_id=call_id, session_id=session_id)
            try:
                await self.gateway.hang_up(session_id)
            except CallPilotError as e:
                logger.warning("orphan_hang_up_failed", session_id=session_id, kind=e.kind)
            return
        self._sessions[session_id] = call_id
        await worker.submit(CallPlaced(session_id=session_id))

    async def placement_failed(self, call_id: str, error: CallPilotError) -> None:
        worker = self._workers.get(call_id)
        if worker is None:
            logger.warning("placed_call_not_registered", call_id=call_id)
            return
        await worker.submit(PlacementFailed(error=error))

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    def _resolve(self, kind: str, call_id: Optional[str], form: dict[str, Any]):
        webhook = self.gateway.parse_status_webhook(form)
        worker = self.get_worker(call_id=call_id, session_id=webhook.session_id)
        if worker is None:
            logger.warning("webhook_unknown_session", kind=kind, call_id=call_id,
                           session_id=webhook.session_id, status=webhook.status)
        return worker, webhook

    async def handle_status_webhook(self, form: dict[str, Any], call_id: str = None) -> Optional[str]:
        worker, webhook = self._resolve("status", call_id, form)
        if worker is None:
            return None
        logger.info("status_webhook", call_id=worker.call_id, status=webhook.status)
        return await worker.submit(ProviderStatus(webhook=webhook))

    async def handle_answer(self, call_id: str, form: dict[str, Any] = None) -> Optional[str]:
        worker, _ = self._resolve("answer", call_id, form or {})
        if worker is None:
            return None
        return await worker.submit(CallAnswered())

    async def handle_gather(self, call_id: str, form: dict[str, Any]) -> Optional[str]:
        worker, webhook = self._resolve("gather", call_id, form)
        if worker is None:
            return None
        if webhook.digits and not webhook.speech_result:
            return await worker.submit(DtmfReceived(digits=webhook.digits))
        return await worker.submit(SpeechReceived(
            text=webhook.speech_result,
            confidence=webhook.speech_confidence,
            digits=webhook.digits,
        ))

    async def handle_recording(self, call_id: str, form: dict[str, Any]) -> Optional[str]:
        """Answer with a hold document; the real reply is pushed once it is ready."""
        worker, webhook = self._resolve("recording", call_id, form)
        if worker is None:
            return None
        task = asyncio.create_task(self._recording_turn(worker, webhook.recording_url, webhook.digits))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return hold_document()

    async def _recording_turn(self, worker: CallWorker, recording_url: str, digits: str) -> None:
        try:
            document = await worker.submit(AudioReceived(url=recording_url or None, digits=digits))
        except Exception as e:
            logger.error("recording_turn_failed", call_id=worker.call_id, error=str(e))
            return
        await self.push_document(worker.machine.session_id, document)

    async def push_document(self, session_id: Optional[str], document: Optional[str]) -> bool:
        if not session_id or not document:
            return False
        doc_id = self.documents.put(document)
        try:
            await self.gateway.update_live_call(session_id, self.urls.document(doc_id))
        except SessionNotFound:
            logger.info("push_session_gone", session_id=session_id)
            return False
        except CallPilotError as e:
            logger.error("push_document_failed", session_id=session_id, kind=e.kind, error=str(e))
            return False
        return True

    # ══════════════════════════════════════════════════════════
    #  CANCELLATION
    # ══════════════════════════════════════════════════════════

    async def cancel_call(self, call_id: str, reason: str = "canceled") -> bool:
        worker = self._workers.get(call_id)
        if worker is None:
            logger.warning("cancel_unknown_call", call_id=call_id)
            return False
        worker.machine.request_cancel()
        await worker.submit(CancelRequested(reason=reason))
        return True

    async def cancel_campaign(self, campaign_id: str, reason: str = "campaign_paused") -> int:
        call_ids = [cid for cid, w in self._workers.items() if w.machine.call.campaign_id == campaign_id]
        results = await asyncio.gather(*(self.cancel_call(cid, reason) for cid in call_ids))
        canceled = sum(1 for r in results if r)
        logger.info("campaign_calls_canceled", campaign_id=campaign_id, count=canceled)
        return canceled

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        for worker in list(self._workers.values()):
            await worker.stop()
