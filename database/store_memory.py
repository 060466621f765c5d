"""
InMemoryCallStore - Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlCallStore
  - Safe under asyncio (single event loop, no awaits while mutating)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Any, Optional

from database.store_base import BaseCallStore
from models.schemas import Call, CallEvent, Campaign, Contact, ConversationTurn, utcnow

logger = structlog.get_logger()


class InMemoryCallStore(BaseCallStore):
    """
    Full-featured in-memory store with the same interface as SqlCallStore.
    Returns model copies so callers never alias stored state.
    """

    def __init__(self):
        self._calls: dict[str, Call] = {}
        self._events: dict[str, list[CallEvent]] = defaultdict(list)
        self._turns: dict[str, list[ConversationTurn]] = defaultdict(list)
        self._campaigns: dict[str, Campaign] = {}
        self._contacts: dict[str, Contact] = {}
        logger.info("inmemory_store_initialized")

    # ── Calls ─────────────────────────────────────────────

    async def create_call(self, call: Call) -> Call:
        self._calls[call.id] = call.model_copy(update={"transcript": []}, deep=True)
        for turn in call.transcript:
            self._turns[call.id].append(turn)
        return call

    async def get_call(self, call_id: str) -> Optional[Call]:
        call = self._calls.get(call_id)
        if call is None:
            return None
        return call.model_copy(update={"transcript": list(self._turns.get(call_id, []))}, deep=True)

    async def update_call(self, call_id: str, **fields: Any) -> None:
        call = self._calls.get(call_id)
        if call is None:
            logger.warning("update_unknown_call", call_id=call_id)
            return
        fields.pop("transcript", None)
        self._calls[call_id] = call.model_copy(update=fields, deep=True)

    async def list_calls(self, campaign_id: str = None, contact_id: str = None) -> list[Call]:
        calls = [
            c for c in self._calls.values()
            if (campaign_id is None or c.campaign_id == campaign_id)
            and (contact_id is None or c.contact_id == contact_id)
        ]
        calls.sort(key=lambda c: c.queued_at)
        return [await self.get_call(c.id) for c in calls]

    # ── Audit trail ───────────────────────────────────────

    async def add_call_event(self, event: CallEvent) -> None:
        self._events[event.call_id].append(event)

    async def get_call_events(self, call_id: str) -> list[CallEvent]:
        return list(self._events.get(call_id, []))

    async def add_conversation_turn(self, turn: ConversationTurn) -> None:
        self._turns[turn.call_id].append(turn)

    async def get_conversation_turns(self, call_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(call_id, []))

    # ── Campaigns ─────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return campaign.model_copy(deep=True) if campaign else None

    async def list_campaigns(self, status: str = None) -> list[Campaign]:
        return [
            c.model_copy(deep=True) for c in self._campaigns.values()
            if status is None or c.status.value == status
        ]

    async def upsert_campaign(self, campaign: Campaign) -> Campaign:
        self._campaigns[campaign.id] = campaign.model_copy(deep=True)
        return campaign

    # ── Contacts ──────────────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return contact.model_copy(deep=True) if contact else None

    async def list_contacts(self, contact_ids: list[str]) -> list[Contact]:
        return [self._contacts[cid].model_copy(deep=True) for cid in contact_ids if cid in self._contacts]

    async def upsert_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy(deep=True)
        return contact

    async def mark_contact_opted_out(self, contact_id: str) -> None:
        contact = self._contacts.get(contact_id)
        if contact is None:
            logger.warning("opt_out_unknown_contact", contact_id=contact_id)
            return
        if contact.opted_out:
            return
        self._contacts[contact_id] = contact.model_copy(
            update={"opted_out": True, "opt_out_date": utcnow()}
        )
        logger.info("contact_opted_out", contact_id=contact_id)

    async def opted_out_phone_numbers(self) -> set[str]:
        return {c.phone_number for c in self._contacts.values() if c.opted_out}
