"""
Abstract Call Store - Interface for all persistence backends.

Implementations:
  - SqlCallStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCallStore (dict-based, single-process, no persistence)

Turns and events are append-only: there is no update or delete for them.
Campaigns and contacts are owned by external collaborators; the only
write this system makes to a contact is the opt-out mark.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Call, CallEvent, Campaign, Contact, ConversationTurn


class BaseCallStore(ABC):
    """Interface that all call store backends must implement."""

    # ── Calls ─────────────────────────────────────────────────

    @abstractmethod
    async def create_call(self, call: Call) -> Call:
        ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[Call]:
        """Return the call with its transcript, or None."""
        ...

    @abstractmethod
    async def update_call(self, call_id: str, **fields: Any) -> None:
        """Apply a partial update. Unknown call ids are ignored."""
        ...

    @abstractmethod
    async def list_calls(self, campaign_id: str = None, contact_id: str = None) -> list[Call]:
        ...

    # ── Audit trail (append-only) ─────────────────────────────

    @abstractmethod
    async def add_call_event(self, event: CallEvent) -> None:
        ...

    @abstractmethod
    async def get_call_events(self, call_id: str) -> list[CallEvent]:
        ...

    @abstractmethod
    async def add_conversation_turn(self, turn: ConversationTurn) -> None:
        ...

    @abstractmethod
    async def get_conversation_turns(self, call_id: str) -> list[ConversationTurn]:
        ...

    # ── Campaigns ─────────────────────────────────────────────

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        ...

    @abstractmethod
    async def list_campaigns(self, status: str = None) -> list[Campaign]:
        ...

    @abstractmethod
    async def upsert_campaign(self, campaign: Campaign) -> Campaign:
        ...

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def list_contacts(self, contact_ids: list[str]) -> list[Contact]:
        """Return the contacts that exist, in the order of contact_ids."""
        ...

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def mark_contact_opted_out(self, contact_id: str) -> None:
        ...

    @abstractmethod
    async def opted_out_phone_numbers(self) -> set[str]:
        """Phone numbers of every opted-out contact, as stored."""
        ...
