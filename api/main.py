"""
FastAPI Application - telephony webhooks + campaign/call control.

Provides:
- Twilio status / answer / gather / recording webhooks (TwiML responses)
- Pushed control documents and synthesized audio for the provider to fetch
- Campaign dispatch and pause, call cancel and lookup
- Background dispatch loop for active campaigns

Webhooks always answer HTTP 200; if handling fails the caller hears an
apology and the call is hung up.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response

from campaigns.dispatcher import CampaignDispatcher, DispatchLoop
from config.settings import Settings, get_settings
from core.engine import ConversationEngine
from core.orchestrator import CallOrchestrator, DocumentStore
from database.audio_store import AudioStore
from database.session import close_db, init_db
from database.store_base import BaseCallStore
from database.store_factory import create_store
from models.schemas import utcnow
from telephony.base import TelephonyGateway
from telephony.factory import TelephonyFactory
from telephony.twiml import apology_document, empty_document

logger = structlog.get_logger()

_AUDIO_MEDIA_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "opus": "audio/ogg",
    "aac": "audio/aac",
    "flac": "audio/flac",
}


def _xml(document: Optional[str]) -> Response:
    return Response(content=document or empty_document(), media_type="application/xml")


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    store: BaseCallStore
    gateway: TelephonyGateway
    orchestrator: CallOrchestrator
    dispatcher: CampaignDispatcher
    dispatch_loop: DispatchLoop
    audio_store: AudioStore
    documents: DocumentStore


def build_services(
    settings: Settings = None,
    store: BaseCallStore = None,
    gateway: TelephonyGateway = None,
    engine: ConversationEngine = None,
) -> Services:
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    gateway = gateway or TelephonyFactory.create(settings.telephony)
    engine = engine or ConversationEngine(settings)
    audio_store = AudioStore()
    documents = DocumentStore()
    orchestrator = CallOrchestrator(
        store=store,
        engine=engine,
        gateway=gateway,
        settings=settings,
        audio_store=audio_store,
        documents=documents,
    )
    dispatcher = CampaignDispatcher(store, orchestrator, settings=settings)
    return Services(
        settings=settings,
        store=store,
        gateway=gateway,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        dispatch_loop=DispatchLoop(dispatcher),
        audio_store=audio_store,
        documents=documents,
    )


def create_app(services: Services = None, run_dispatch_loop: bool = True) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services.settings.database.store_backend == "sql":
            await init_db()
        if run_dispatch_loop:
            await services.dispatch_loop.start_background()
        logger.info("callpilot_started",
                    store=type(services.store).__name__,
                    provider=services.settings.telephony.provider)
        yield

        await services.dispatch_loop.stop()
        await services.orchestrator.shutdown()
        await services.gateway.close()
        if services.settings.database.store_backend == "sql":
            await close_db()
        logger.info("callpilot_stopped")

    app = FastAPI(
        title="CallPilot API",
        description="Outbound AI call lifecycle orchestrator",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "active_calls": services.orchestrator.active_calls,
            "provider": services.settings.telephony.provider,
        }

    @app.get("/api/v1/latency")
    async def latency_stats(request: Request):
        return _services(request).orchestrator.latency.get_all_stats()

    # ══════════════════════════════════════════════════════════
    #  TWILIO WEBHOOKS - form-encoded, TwiML out, always 200
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/twilio/status")
    async def twilio_status_webhook(request: Request, call_id: Optional[str] = None):
        try:
            form = dict(await request.form())
            document = await _services(request).orchestrator.handle_status_webhook(form, call_id=call_id)
        except Exception as e:
            logger.error("status_webhook_failed", call_id=call_id, error=str(e), exc_info=True)
            return _xml(apology_document())
        return _xml(document)

    @app.post("/webhooks/twilio/answer")
    async def twilio_answer_webhook(request: Request, call_id: Optional[str] = None):
        try:
            form = dict(await request.form())
            document = await _services(request).orchestrator.handle_answer(call_id, form)
        except Exception as e:
            logger.error("answer_webhook_failed", call_id=call_id, error=str(e), exc_info=True)
            return _xml(apology_document())
        return _xml(document)

    @app.post("/webhooks/twilio/gather")
    async def twilio_gather_webhook(request: Request, call_id: Optional[str] = None):
        try:
            form = dict(await request.form())
            document = await _services(request).orchestrator.handle_gather(call_id, form)
        except Exception as e:
            logger.error("gather_webhook_failed", call_id=call_id, error=str(e), exc_info=True)
            return _xml(apology_document())
        return _xml(document)

    @app.post("/webhooks/twilio/recording")
    async def twilio_recording_webhook(request: Request, call_id: Optional[str] = None):
        try:
            form = dict(await request.form())
            document = await _services(request).orchestrator.handle_recording(call_id, form)
        except Exception as e:
            logger.error("recording_webhook_failed", call_id=call_id, error=str(e), exc_info=True)
            return _xml(apology_document())
        return _xml(document)

    # ── Documents & audio the provider fetches ────────────────

    @app.api_route("/voice/documents/{doc_id}", methods=["GET", "POST"])
    async def pushed_document(request: Request, doc_id: str):
        document = _services(request).documents.get(doc_id)
        if document is None:
            logger.warning("document_not_found", doc_id=doc_id)
            return _xml(apology_document())
        return _xml(document)

    @app.get("/voice/audio/{key}")
    async def synthesized_audio(request: Request, key: str):
        entry = _services(request).audio_store.get(key)
        if entry is None:
            raise HTTPException(status_code=404, detail="Audio not found")
        audio, fmt = entry
        return Response(content=audio, media_type=_AUDIO_MEDIA_TYPES.get(fmt, "application/octet-stream"))

    # ══════════════════════════════════════════════════════════
    #  CAMPAIGNS & CALLS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/campaigns/{campaign_id}/dispatch")
    async def dispatch_campaign(request: Request, campaign_id: str):
        try:
            placed = await _services(request).dispatcher.dispatch_campaign(campaign_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Campaign not found")
        return {"campaign_id": campaign_id, "placed": placed}

    @app.post("/api/v1/campaigns/{campaign_id}/pause")
    async def pause_campaign(request: Request, campaign_id: str):
        try:
            canceled = await _services(request).dispatcher.pause_campaign(campaign_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="Campaign not found")
        return {"campaign_id": campaign_id, "status": "paused", "canceled_calls": canceled}

    @app.post("/api/v1/calls/{call_id}/cancel")
    async def cancel_call(request: Request, call_id: str):
        canceled = await _services(request).orchestrator.cancel_call(call_id, reason="canceled_by_operator")
        if not canceled:
            raise HTTPException(status_code=404, detail="No live call with that id")
        return {"call_id": call_id, "canceled": True}

    @app.get("/api/v1/calls/{call_id}")
    async def get_call(request: Request, call_id: str):
        services = _services(request)
        call = services.orchestrator.live_call(call_id) or await services.store.get_call(call_id)
        if call is None:
            raise HTTPException(status_code=404, detail="Call not found")
        return call.model_dump(mode="json")

    @app.get("/api/v1/calls/{call_id}/events")
    async def get_call_events(request: Request, call_id: str):
        events = await _services(request).store.get_call_events(call_id)
        return [e.model_dump(mode="json") for e in events]


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
