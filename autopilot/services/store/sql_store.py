"""PostgreSQL implementation of ConversationStore.

SQLAlchemy sessions are synchronous; each operation runs in a worker thread
with its own session so the event loop never blocks on the database.
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.sql import func

from autopilot.domain import (
    Author,
    ChannelRecord,
    ConversationKey,
    LockSource,
    LockState,
    MessageRecord,
    OrderRecord,
)
from autopilot.logging_config import get_logger
from autopilot.models import ChannelSession, ChatMessage, Contact, OrderTracking
from autopilot.services.store.base import ConversationStore

logger = get_logger("store.sql")

MANUAL_LOCK_UNTIL_MS = 253402300799000  # 9999-12-31T23:59:59Z


def _ms_to_dt(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _dt_to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _to_record(row: ChatMessage) -> MessageRecord:
    try:
        author = Author(row.reply_by)
    except ValueError:
        author = Author.SYSTEM
    return MessageRecord(
        channel_id=row.session_name,
        sender_id=row.sender_id,
        recipient_id=row.recipient_id,
        message_id=row.message_id,
        text=row.text or "",
        timestamp_ms=row.timestamp,
        author=author,
        status=row.status,
        model_used=row.model_used,
        token_usage=row.token_usage,
        is_group=bool(row.is_group),
    )


def _to_channel(row: ChannelSession) -> ChannelRecord:
    return ChannelRecord(
        channel_id=row.session_name,
        status=row.status,
        active=bool(row.active),
        subscription_status=row.subscription_status,
        message_credit=row.message_credit or 0,
        api_key=row.api_key,
        cheap_engine=row.cheap_engine if row.cheap_engine is not None else True,
        wait_time_seconds=row.wait_time,
        lock_emojis=row.lock_emojis,
        unlock_emojis=row.unlock_emojis,
        block_emoji=row.block_emoji,
        unblock_emoji=row.unblock_emoji,
        emoji_check_count=row.emoji_check_count,
        blocking_labels=row.blocking_labels,
        history_limit=row.history_limit,
        group_reply=row.group_reply if row.group_reply is not None else True,
        system_prompt=row.system_prompt,
        vision_prompt=row.vision_prompt,
    )


class SqlConversationStore(ConversationStore):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn, *args):
        return await asyncio.to_thread(self._with_session, fn, *args)

    def _with_session(self, fn, *args):
        db: Session = self._session_factory()
        try:
            return fn(db, *args)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # --- messages ---------------------------------------------------------

    async def append_message(self, record: MessageRecord) -> None:
        await self._run(self._append_message, record)

    @staticmethod
    def _append_message(db: Session, record: MessageRecord) -> None:
        values = {
            "session_name": record.channel_id,
            "sender_id": record.sender_id,
            "recipient_id": record.recipient_id,
            "message_id": record.message_id,
            "text": record.text,
            "timestamp": record.timestamp_ms,
            "status": record.status,
            "reply_by": record.author.value,
            "model_used": record.model_used,
            "token_usage": record.token_usage,
            "is_group": record.is_group,
        }
        stmt = insert(ChatMessage).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["message_id"],
            set_={
                "text": stmt.excluded.text,
                "status": stmt.excluded.status,
                "model_used": stmt.excluded.model_used,
                "token_usage": stmt.excluded.token_usage,
            },
        )
        db.execute(stmt)
        db.commit()

    async def get_message_text(self, message_id: str) -> Optional[str]:
        return await self._run(self._get_message_text, message_id)

    @staticmethod
    def _get_message_text(db: Session, message_id: str) -> Optional[str]:
        row = db.query(ChatMessage.text).filter(ChatMessage.message_id == message_id).first()
        return row[0] if row else None

    async def get_recent_messages(self, channel_id: str, participant_id: str, limit: int) -> List[MessageRecord]:
        return await self._run(self._get_recent_messages, channel_id, participant_id, limit)

    @staticmethod
    def _get_recent_messages(db: Session, channel_id: str, participant_id: str, limit: int) -> List[MessageRecord]:
        rows = (
            db.query(ChatMessage)
            .filter(
                ChatMessage.session_name == channel_id,
                or_(ChatMessage.sender_id == participant_id, ChatMessage.recipient_id == participant_id),
            )
            .order_by(ChatMessage.timestamp.desc())
            .limit(limit)
            .all()
        )
        return [_to_record(row) for row in rows]

    async def count_automation_replies_since(self, channel_id: str, participant_id: str, since: datetime) -> int:
        return await self._run(self._count_automation_replies_since, channel_id, participant_id, since)

    @staticmethod
    def _count_automation_replies_since(db: Session, channel_id: str, participant_id: str, since: datetime) -> int:
        return (
            db.query(func.count(ChatMessage.id))
            .filter(
                ChatMessage.session_name == channel_id,
                ChatMessage.recipient_id == participant_id,
                ChatMessage.reply_by == Author.AUTOMATION.value,
                ChatMessage.timestamp >= _dt_to_ms(since),
            )
            .scalar()
            or 0
        )

    # --- contacts / lock --------------------------------------------------

    async def get_lock_state(self, key: ConversationKey) -> Optional[LockState]:
        return await self._run(self._get_lock_state, key)

    @staticmethod
    def _get_lock_state(db: Session, key: ConversationKey) -> Optional[LockState]:
        contact = (
            db.query(Contact)
            .filter(Contact.session_name == key.channel_id, Contact.phone_number == key.participant_id)
            .first()
        )
        if contact is None or (contact.lock_updated_at is None and not contact.is_locked):
            return None
        source = None
        if contact.lock_source:
            try:
                source = LockSource(contact.lock_source)
            except ValueError:
                logger.warning(f"Unknown lock source '{contact.lock_source}' for {key}")
        locked_until_ms = _dt_to_ms(contact.locked_until) if contact.is_locked else None
        if contact.is_locked and locked_until_ms is None:
            # Locked by hand in the database without an expiry: holds until explicitly unlocked.
            locked_until_ms = MANUAL_LOCK_UNTIL_MS
        return LockState(
            conversation_key=key,
            locked_until_ms=locked_until_ms,
            source=source,
            updated_at_ms=_dt_to_ms(contact.lock_updated_at) or 0,
        )

    async def set_lock_state(self, state: LockState) -> None:
        await self._run(self._set_lock_state, state)

    @staticmethod
    def _set_lock_state(db: Session, state: LockState) -> None:
        key = state.conversation_key
        values = {
            "is_locked": state.locked_until_ms is not None,
            "locked_until": _ms_to_dt(state.locked_until_ms),
            "lock_source": state.source.value if state.source else None,
            "lock_updated_at": _ms_to_dt(state.updated_at_ms),
        }
        stmt = insert(Contact).values(session_name=key.channel_id, phone_number=key.participant_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_name", "phone_number"],
            set_={**values, "updated_at": func.now()},
        )
        db.execute(stmt)
        db.commit()

    async def touch_contact(self, key: ConversationKey, name: Optional[str] = None) -> None:
        await self._run(self._touch_contact, key, name)

    @staticmethod
    def _touch_contact(db: Session, key: ConversationKey, name: Optional[str]) -> None:
        stmt = insert(Contact).values(session_name=key.channel_id, phone_number=key.participant_id, name=name)
        if name:
            stmt = stmt.on_conflict_do_update(
                index_elements=["session_name", "phone_number"],
                set_={"name": name, "updated_at": func.now()},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=["session_name", "phone_number"])
        db.execute(stmt)
        db.commit()

    # --- channels ---------------------------------------------------------

    async def get_channel(self, channel_id: str) -> Optional[ChannelRecord]:
        return await self._run(self._get_channel, channel_id)

    @staticmethod
    def _get_channel(db: Session, channel_id: str) -> Optional[ChannelRecord]:
        row = db.query(ChannelSession).filter(ChannelSession.session_name == channel_id).first()
        return _to_channel(row) if row else None

    async def register_channel(self, channel_id: str, status: str = "connected") -> ChannelRecord:
        return await self._run(self._register_channel, channel_id, status)

    @staticmethod
    def _register_channel(db: Session, channel_id: str, status: str) -> ChannelRecord:
        stmt = insert(ChannelSession).values(session_name=channel_id, status=status, active=True)
        db.execute(stmt.on_conflict_do_nothing(index_elements=["session_name"]))
        db.commit()
        row = db.query(ChannelSession).filter(ChannelSession.session_name == channel_id).one()
        return _to_channel(row)

    async def update_channel_status(self, channel_id: str, status: str, active: Optional[bool] = None) -> None:
        await self._run(self._update_channel_status, channel_id, status, active)

    @staticmethod
    def _update_channel_status(db: Session, channel_id: str, status: str, active: Optional[bool]) -> None:
        values = {"status": status, "updated_at": func.now()}
        if active is not None:
            values["active"] = active
        db.query(ChannelSession).filter(ChannelSession.session_name == channel_id).update(
            values, synchronize_session=False
        )
        db.commit()

    async def decrement_credit(self, channel_id: str, amount: int = 1) -> None:
        await self._run(self._decrement_credit, channel_id, amount)

    @staticmethod
    def _decrement_credit(db: Session, channel_id: str, amount: int) -> None:
        updated = (
            db.query(ChannelSession)
            .filter(ChannelSession.session_name == channel_id, ChannelSession.message_credit > 0)
            .update(
                {"message_credit": ChannelSession.message_credit - amount, "updated_at": func.now()},
                synchronize_session=False,
            )
        )
        db.commit()
        if not updated:
            logger.warning(f"Credit deduction skipped for {channel_id} (no credit left)")

    # --- orders -----------------------------------------------------------

    async def save_order(self, order: OrderRecord) -> None:
        await self._run(self._save_order, order)

    @staticmethod
    def _save_order(db: Session, order: OrderRecord) -> None:
        db.add(
            OrderTracking(
                session_name=order.channel_id,
                sender_id=order.participant_id,
                number=order.number,
                product_name=order.product_name,
                location=order.location,
                product_quantity=order.product_quantity,
                price=order.price,
            )
        )
        db.commit()
