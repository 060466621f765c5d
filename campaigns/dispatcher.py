"""
Campaign Dispatcher - turns active campaigns into outbound calls.

Each tick for a campaign:
  1. capacity = concurrency_limit − calls in flight
  2. pick contacts that are not opted out and either were never called
     or have a due retry that has not been retried yet
  3. skip any phone number already in flight
  4. snapshot the campaign, create a queued Call, register it with the
     orchestrator, place the call

Ticks for one campaign never overlap. Placement failures go through
the call's own retry policy via PlacementFailed.
"""
from __future__ import annotations

import asyncio
import re
import structlog
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional

from campaigns.rate_limit import DialRateLimiter
from config.settings import Settings, get_settings
from core.errors import CallPilotError
from core.orchestrator import CallOrchestrator
from database.store_base import BaseCallStore
from models.schemas import (
    Call, CallEvent, CallEventType, Campaign, CampaignRuntimeConfig, CampaignStatus, Contact, utcnow,
)
from telephony.base import PlaceCallOptions

logger = structlog.get_logger()


def normalize_phone(number: str) -> str:
    """Digits only, so "+1 (415) 555-0100" and "14155550100" collide."""
    return re.sub(r"\D", "", number or "")


class CampaignDispatcher:
    """
    Usage:
        dispatcher = CampaignDispatcher(store, orchestrator)
        placed = await dispatcher.tick(campaign)
    """

    def __init__(
        self,
        store: BaseCallStore,
        orchestrator: CallOrchestrator,
        settings: Optional[Settings] = None,
        rate_limiter: Optional[DialRateLimiter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.gateway = orchestrator.gateway
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter or DialRateLimiter.from_config(self.settings.dispatcher)
        self.clock = clock

        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._in_flight: dict[str, set[str]] = defaultdict(set)    # campaign_id → call ids
        self._phones: dict[str, str] = {}                           # normalized phone → call_id
        orchestrator.on_call_terminal(self._release)

    # ── Slots ────────────────────────────────────────────────

    def in_flight(self, campaign_id: str) -> int:
        return len(self._in_flight.get(campaign_id, ()))

    def _release(self, call: Call) -> None:
        self._in_flight[call.campaign_id].discard(call.id)
        phone = normalize_phone(call.phone_number)
        if self._phones.get(phone) == call.id:
            del self._phones[phone]

    # ── Dispatch ─────────────────────────────────────────────

    async def dispatch_campaign(self, campaign_id: str) -> int:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise KeyError(campaign_id)
        return await self.tick(campaign)

    async def tick(self, campaign: Campaign) -> int:
        """Place as many calls as capacity allows. Returns the number placed."""
        async with self._locks[campaign.id]:
            # The caller's copy may predate a pause
            current = await self.store.get_campaign(campaign.id)
            if current is None:
                logger.warning("dispatch_unknown_campaign", campaign_id=campaign.id)
                return 0
            campaign = current
            if campaign.status != CampaignStatus.ACTIVE:
                logger.debug("dispatch_skipped_inactive", campaign_id=campaign.id,
                             status=campaign.status.value)
                return 0

            capacity = campaign.concurrency_limit - self.in_flight(campaign.id)
            if capacity <= 0:
                logger.debug("dispatch_at_capacity", campaign_id=campaign.id)
                return 0

            now = self.clock()
            candidates = await self._candidates(campaign, now)
            config = CampaignRuntimeConfig.from_campaign(campaign)

            placed = 0
            attempted = 0
            for contact, previous in candidates:
                if attempted >= capacity:
                    break
                phone = normalize_phone(contact.phone_number)
                if phone in self._phones:
                    logger.info("dispatch_phone_in_flight", campaign_id=campaign.id, contact_id=contact.id)
                    continue
                if not await self.rate_limiter.acquire():
                    logger.warning("dispatch_rate_limited", campaign_id=campaign.id)
                    break
                attempted += 1
                if await self._place(campaign, config, contact, previous, now):
                    placed += 1

            if attempted:
                logger.info("dispatch_tick", campaign_id=campaign.id, placed=placed,
                            attempted=attempted, in_flight=self.in_flight(campaign.id))
            return placed

    async def _candidates(self, campaign: Campaign, now: datetime) -> list[tuple[Contact, Optional[Call]]]:
        contacts = await self.store.list_contacts(campaign.contact_ids)
        calls = await self.store.list_calls(campaign_id=campaign.id)
        by_contact: dict[str, list[Call]] = defaultdict(list)
        for call in calls:
            by_contact[call.contact_id].append(call)
        retried = {c.retry_of for c in calls if c.retry_of}
        blocked = {normalize_phone(p) for p in await self.store.opted_out_phone_numbers()}

        fresh: list[tuple[Contact, Optional[Call]]] = []
        due: list[tuple[Contact, Optional[Call]]] = []
        for contact in contacts:
            if contact.opted_out or normalize_phone(contact.phone_number) in blocked:
                continue
            history = by_contact.get(contact.id)
            if not history:
                fresh.append((contact, None))
                continue
            latest = max(history, key=lambda c: (c.attempts, c.queued_at))
            if (
                latest.is_terminal
                and latest.next_retry_at is not None
                and latest.next_retry_at <= now
                and latest.id not in retried
                and latest.attempts < campaign.max_retries
            ):
                due.append((contact, latest))
        return due + fresh

    async def _place(
        self,
        campaign: Campaign,
        config: CampaignRuntimeConfig,
        contact: Contact,
        previous: Optional[Call],
        now: datetime,
    ) -> bool:
        call = Call(
            campaign_id=campaign.id,
            contact_id=contact.id,
            phone_number=contact.phone_number,
            queued_at=now,
            attempts=previous.attempts + 1 if previous else 1,
            retry_of=previous.id if previous else None,
        )
        await self.store.create_call(call)
        await self.store.add_call_event(CallEvent(
            call_id=call.id,
            type=CallEventType.CALL_QUEUED,
            timestamp=now,
            data={"attempt": call.attempts, "retry_of": call.retry_of},
        ))
        self._in_flight[campaign.id].add(call.id)
        self._phones[normalize_phone(call.phone_number)] = call.id
        self.orchestrator.register(call, config, contact)

        urls = self.orchestrator.urls
        try:
            session_id = await self.gateway.place_call(
                contact.phone_number,
                urls.answer(call.id),
                urls.status(call.id),
                PlaceCallOptions(
                    record=self.settings.telephony.record_calls,
                    max_duration=config.max_call_duration,
                    timeout=self.settings.telephony.ring_timeout_s,
                ),
            )
        except CallPilotError as e:
            await self.orchestrator.placement_failed(call.id, e)
            return False
        await self.orchestrator.call_placed(call.id, session_id)
        return True

    async def pause_campaign(self, campaign_id: str) -> int:
        """Stop dispatching for a campaign and cancel its live calls."""
        async with self._locks[campaign_id]:
            campaign = await self.store.get_campaign(campaign_id)
            if campaign is None:
                raise KeyError(campaign_id)
            if campaign.status == CampaignStatus.ACTIVE:
                await self.store.upsert_campaign(campaign.model_copy(update={"status": CampaignStatus.PAUSED}))
        canceled = await self.orchestrator.cancel_campaign(campaign_id)
        logger.info("campaign_paused", campaign_id=campaign_id, canceled=canceled)
        return canceled


# ──────────────────────────────────────────────────────────────
#  Dispatch Loop
# ──────────────────────────────────────────────────────────────

class DispatchLoop:
    """
    Background task that ticks every active campaign on an interval.
    """

    def __init__(self, dispatcher: CampaignDispatcher, interval_seconds: float = None):
        self.dispatcher = dispatcher
        self.interval = interval_seconds or dispatcher.settings.dispatcher.tick_interval_s
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def run_once(self) -> int:
        placed = 0
        campaigns = await self.dispatcher.store.list_campaigns(status=CampaignStatus.ACTIVE.value)
        for campaign in campaigns:
            try:
                placed += await self.dispatcher.tick(campaign)
            except Exception as e:
                logger.error("dispatch_tick_error", campaign_id=campaign.id, error=str(e))
        return placed

    async def _run(self):
        logger.info("dispatch_loop_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("dispatch_loop_error", error=str(e))
            await asyncio.sleep(self.interval)
