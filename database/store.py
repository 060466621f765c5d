"""
SqlCallStore - Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Calls are stored column-per-field; campaigns and contacts keep the full
pydantic model in a JSON column next to the few fields that are queried.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import select

from database.models import CallEventRow, CallRow, CampaignRow, ContactRow, ConversationTurnRow
from database.session import get_session
from database.store_base import BaseCallStore
from models.schemas import (
    Call, CallError, CallEvent, Campaign, Contact, ConversationTurn, utcnow,
)

logger = structlog.get_logger()

_CALL_COLUMNS = {c.name for c in CallRow.__table__.columns}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class SqlCallStore(BaseCallStore):
    """
    Persistent call store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Calls ──────────────────────────────────────────────

    async def create_call(self, call: Call) -> Call:
        async with get_session() as db:
            db.add(CallRow(**{
                k: _column_value(v) for k, v in call.model_dump().items() if k in _CALL_COLUMNS
            }))
            for turn in call.transcript:
                db.add(self._turn_to_row(turn))
        return call

    async def get_call(self, call_id: str) -> Optional[Call]:
        async with get_session() as db:
            row = await db.get(CallRow, call_id)
            if row is None:
                return None
            turns = await self._load_turns(db, call_id)
            return self._row_to_call(row, turns)

    async def update_call(self, call_id: str, **fields: Any) -> None:
        async with get_session() as db:
            row = await db.get(CallRow, call_id)
            if row is None:
                logger.warning("update_unknown_call", call_id=call_id)
                return
            for key, value in fields.items():
                if key in _CALL_COLUMNS and key != "id":
                    setattr(row, key, _column_value(value))

    async def list_calls(self, campaign_id: str = None, contact_id: str = None) -> list[Call]:
        async with get_session() as db:
            stmt = select(CallRow).order_by(CallRow.queued_at)
            if campaign_id is not None:
                stmt = stmt.where(CallRow.campaign_id == campaign_id)
            if contact_id is not None:
                stmt = stmt.where(CallRow.contact_id == contact_id)
            result = await db.execute(stmt)
            rows = list(result.scalars())
            return [self._row_to_call(r, await self._load_turns(db, r.id)) for r in rows]

    # ── Audit trail ────────────────────────────────────────

    async def add_call_event(self, event: CallEvent) -> None:
        async with get_session() as db:
            db.add(CallEventRow(
                id=event.id,
                call_id=event.call_id,
                type=event.type.value,
                timestamp=event.timestamp,
                data=event.model_dump(mode="json")["data"],
            ))

    async def get_call_events(self, call_id: str) -> list[CallEvent]:
        async with get_session() as db:
            stmt = select(CallEventRow).where(CallEventRow.call_id == call_id).order_by(CallEventRow.seq)
            result = await db.execute(stmt)
            return [
                CallEvent(id=r.id, call_id=r.call_id, type=r.type,
                          timestamp=_aware(r.timestamp), data=r.data or {})
                for r in result.scalars()
            ]

    async def add_conversation_turn(self, turn: ConversationTurn) -> None:
        async with get_session() as db:
            db.add(self._turn_to_row(turn))

    async def get_conversation_turns(self, call_id: str) -> list[ConversationTurn]:
        async with get_session() as db:
            return await self._load_turns(db, call_id)

    # ── Campaigns ──────────────────────────────────────────

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        async with get_session() as db:
            row = await db.get(CampaignRow, campaign_id)
            return Campaign.model_validate(row.data) if row else None

    async def list_campaigns(self, status: str = None) -> list[Campaign]:
        async with get_session() as db:
            stmt = select(CampaignRow)
            if status is not None:
                stmt = stmt.where(CampaignRow.status == status)
            result = await db.execute(stmt)
            return [Campaign.model_validate(r.data) for r in result.scalars()]

    async def upsert_campaign(self, campaign: Campaign) -> Campaign:
        async with get_session() as db:
            data = campaign.model_dump(mode="json")
            row = await db.get(CampaignRow, campaign.id)
            if row:
                row.name = campaign.name
                row.status = campaign.status.value
                row.data = data
            else:
                db.add(CampaignRow(id=campaign.id, name=campaign.name,
                                   status=campaign.status.value, data=data))
            return campaign

    # ── Contacts ───────────────────────────────────────────

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, contact_id)
            return self._row_to_contact(row) if row else None

    async def list_contacts(self, contact_ids: list[str]) -> list[Contact]:
        if not contact_ids:
            return []
        async with get_session() as db:
            result = await db.execute(select(ContactRow).where(ContactRow.id.in_(contact_ids)))
            by_id = {r.id: self._row_to_contact(r) for r in result.scalars()}
        return [by_id[cid] for cid in contact_ids if cid in by_id]

    async def upsert_contact(self, contact: Contact) -> Contact:
        async with get_session() as db:
            data = contact.model_dump(mode="json")
            row = await db.get(ContactRow, contact.id)
            if row is None:
                row = ContactRow(id=contact.id)
                db.add(row)
            row.first_name = contact.first_name
            row.last_name = contact.last_name
            row.phone_number = contact.phone_number
            row.opted_out = contact.opted_out
            row.opt_out_date = contact.opt_out_date
            row.data = data
            return contact

    async def mark_contact_opted_out(self, contact_id: str) -> None:
        async with get_session() as db:
            row = await db.get(ContactRow, contact_id)
            if row is None:
                logger.warning("opt_out_unknown_contact", contact_id=contact_id)
                return
            if row.opted_out:
                return
            now = utcnow()
            row.opted_out = True
            row.opt_out_date = now
            row.data = {**(row.data or {}), "opted_out": True, "opt_out_date": now.isoformat()}
        logger.info("contact_opted_out", contact_id=contact_id)

    async def opted_out_phone_numbers(self) -> set[str]:
        async with get_session() as db:
            result = await db.execute(select(ContactRow.phone_number).where(ContactRow.opted_out.is_(True)))
            return set(result.scalars())

    # ── Conversions ────────────────────────────────────────

    @staticmethod
    async def _load_turns(db, call_id: str) -> list[ConversationTurn]:
        stmt = (
            select(ConversationTurnRow)
            .where(ConversationTurnRow.call_id == call_id)
            .order_by(ConversationTurnRow.seq)
        )
        result = await db.execute(stmt)
        return [
            ConversationTurn(
                id=r.id, call_id=r.call_id, speaker=r.speaker, content=r.content,
                timestamp=_aware(r.timestamp), audio_url=r.audio_url,
                confidence=r.confidence, sentiment_score=r.sentiment_score,
            )
            for r in result.scalars()
        ]

    @staticmethod
    def _turn_to_row(turn: ConversationTurn) -> ConversationTurnRow:
        return ConversationTurnRow(
            id=turn.id,
            call_id=turn.call_id,
            speaker=turn.speaker.value,
            content=turn.content,
            timestamp=turn.timestamp,
            audio_url=turn.audio_url,
            confidence=turn.confidence,
            sentiment_score=turn.sentiment_score,
        )

    @staticmethod
    def _row_to_call(row: CallRow, turns: list[ConversationTurn]) -> Call:
        return Call(
            id=row.id,
            campaign_id=row.campaign_id,
            contact_id=row.contact_id,
            phone_number=row.phone_number,
            provider_session_id=row.provider_session_id,
            status=row.status,
            conversation_state=row.conversation_state,
            queued_at=_aware(row.queued_at),
            started_at=_aware(row.started_at),
            ended_at=_aware(row.ended_at),
            duration=row.duration or 0,
            transcript=turns,
            recording_url=row.recording_url,
            sentiment_score=row.sentiment_score,
            sentiment_label=row.sentiment_label,
            dtmf_inputs=row.dtmf_inputs or [],
            answered=bool(row.answered),
            opted_out=bool(row.opted_out),
            human_escalation=bool(row.human_escalation),
            attempts=row.attempts or 1,
            last_attempt_at=_aware(row.last_attempt_at),
            next_retry_at=_aware(row.next_retry_at),
            retry_of=row.retry_of,
            error=CallError.model_validate(row.error) if row.error else None,
        )

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        contact = Contact.model_validate(row.data or {
            "id": row.id, "first_name": row.first_name, "phone_number": row.phone_number,
        })
        return contact.model_copy(update={
            "opted_out": bool(row.opted_out),
            "opt_out_date": _aware(row.opt_out_date),
        })
