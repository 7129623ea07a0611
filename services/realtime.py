# Realtime Fan-out for the Influence Chat platform
# Outbox rows are written inside the transaction; the hub emits them after commit

import asyncio
import logging
import threading
from collections import defaultdict
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from sqlalchemy import event
from sqlalchemy.orm import Session

from config.app_config import OUTBOX_REDELIVERY_SECONDS
from database.models import utcnow
from database.chat_models import Conversation, Message, RealtimeOutbox
from services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

OUTBOX_IDS_KEY = "realtime_outbox_ids"
HUB_KEY = "realtime_hub"

# Event names
CONVERSATIONS_UPSERT = "conversations:upsert"
MESSAGE_NEW = "message:new"
MESSAGE_SEEN = "message:seen"
UNREAD_COUNT_UPDATED = "unread_count_updated"
TYPING = "typing"
USER_TYPING = "user_typing"


def room_for(user_id: str) -> str:
    return f"user_{user_id}"


# ============================================================================
# OUTBOX
# ============================================================================

def enqueue(db: Session, user_id: str, event_name: str, payload: dict, conversation_id: Optional[str] = None) -> RealtimeOutbox:
    """Write one event for one user's room. It is emitted only if the transaction commits."""
    row = RealtimeOutbox(
        conversation_id=conversation_id,
        room=room_for(user_id),
        event=event_name,
        payload=payload,
        created_at=utcnow(),
    )
    db.add(row)
    db.flush()
    db.info.setdefault(OUTBOX_IDS_KEY, []).append(row.id)
    return row


def bind_hub(db: Session, hub: Optional["RealtimeHub"]) -> Session:
    """Attach the hub that should receive this session's committed outbox ids."""
    if hub is not None:
        db.info[HUB_KEY] = hub
    return db


@event.listens_for(Session, "after_commit")
def _hand_off_outbox(session: Session):
    ids = session.info.pop(OUTBOX_IDS_KEY, None)
    hub = session.info.get(HUB_KEY)
    if ids and hub is not None:
        hub.notify_committed(ids)


@event.listens_for(Session, "after_rollback")
def _drop_outbox(session: Session):
    session.info.pop(OUTBOX_IDS_KEY, None)


# ============================================================================
# PAYLOADS
# ============================================================================

class FanoutPlanner:
    """Builds per-participant payloads from committed-to-be state."""

    def __init__(self, store: ConversationStore):
        self.store = store
        self.db = store.db

    def last_message_summary(self, conversation: Conversation) -> Optional[dict]:
        message = self.store.last_message(conversation.id)
        if message is None:
            return None
        text = message.body
        if text is None and message.action:
            text = (message.action.get("params") or {}).get("text")
        return {
            "id": message.id,
            "message": text,
            "message_type": message.message_type.value,
            "created_at": message.created_at.isoformat(),
            "sender_id": message.sender_id,
            "seen": bool(message.seen),
        }

    def upsert_payload(self, conversation: Conversation, user_id: str) -> dict:
        return {
            "conversation_id": conversation.id,
            "updated_at": conversation.updated_at.isoformat() if conversation.updated_at else None,
            "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
            "chat_status": conversation.chat_status.value,
            "flow_state": conversation.flow_state.value,
            "awaiting_role": conversation.awaiting_role.value,
            "version": conversation.version,
            "negotiation_round": conversation.negotiation_round,
            "final_agreed_amount": conversation.final_agreed_amount,
            "request_id": conversation.request_id,
            "unread_count": self.store.unread_count(conversation.id, user_id),
            "last_message": self.last_message_summary(conversation),
            "other_user": self.store.other_user_summary(conversation, user_id),
        }

    def plan_transition(self, conversation: Conversation, messages: Iterable[Message]):
        participants = conversation.participant_ids
        for message in messages:
            data = message.to_dict()
            for user_id in participants:
                enqueue(self.db, user_id, MESSAGE_NEW, data, conversation.id)
            if message.receiver_id in participants and not message.seen:
                enqueue(self.db, message.receiver_id, UNREAD_COUNT_UPDATED, {
                    "conversation_id": conversation.id,
                    "unread_count": self.store.unread_count(conversation.id, message.receiver_id),
                    "action": "increment",
                }, conversation.id)
        for user_id in participants:
            enqueue(self.db, user_id, CONVERSATIONS_UPSERT, self.upsert_payload(conversation, user_id), conversation.id)

    def plan_seen(self, conversation: Conversation, reader_id: str, message_ids: List[str]):
        if not message_ids:
            return
        remaining = self.store.unread_count(conversation.id, reader_id)
        enqueue(self.db, conversation.other_participant(reader_id), MESSAGE_SEEN, {
            "conversation_id": conversation.id,
            "message_ids": message_ids,
        }, conversation.id)
        enqueue(self.db, reader_id, UNREAD_COUNT_UPDATED, {
            "conversation_id": conversation.id,
            "unread_count": remaining,
            "action": "reset" if remaining == 0 else "decrement",
        }, conversation.id)


# ============================================================================
# CONNECTIONS
# ============================================================================

class ConnectionManager:
    """WebSocket connections grouped into per-user rooms."""

    def __init__(self):
        self.rooms: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.rooms[room_for(user_id)].add(websocket)
        logger.info(f"WebSocket joined {room_for(user_id)}")

    def disconnect(self, websocket: WebSocket, user_id: str):
        room = room_for(user_id)
        self.rooms[room].discard(websocket)
        if not self.rooms[room]:
            del self.rooms[room]

    async def emit(self, room: str, event_name: str, payload: dict) -> int:
        """Send to every socket in the room. Dead sockets are dropped, not fatal."""
        delivered = 0
        for websocket in list(self.rooms.get(room, ())):
            try:
                await websocket.send_json({"event": event_name, "data": payload})
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
                logger.warning(f"Dropping socket in {room}: {e}")
                self.rooms[room].discard(websocket)
        return delivered


# ============================================================================
# HUB
# ============================================================================

class RealtimeHub:
    """
    Receives committed outbox ids (from any thread) and emits them on the
    event loop in commit order. Rows are marked dispatched after emitting;
    anything left behind is picked up by `redeliver`.
    """

    def __init__(self, manager: ConnectionManager, session_factory: Callable[[], Session]):
        self.manager = manager
        self.session_factory = session_factory
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._backlog: List[List[int]] = []
        self._lock = threading.Lock()

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        with self._lock:
            self._loop = loop or asyncio.get_running_loop()
            self._queue = asyncio.Queue()
            for ids in self._backlog:
                self._queue.put_nowait(ids)
            self._backlog = []

    def stop(self):
        with self._lock:
            self._loop = None

    def notify_committed(self, ids: Iterable[int]):
        ids = list(ids)
        with self._lock:
            if self._loop is None or self._loop.is_closed():
                self._backlog.append(ids)
                return
            self._loop.call_soon_threadsafe(self._queue.put_nowait, ids)

    async def run(self):
        """Consume the queue until cancelled."""
        if self._queue is None:
            self.start()
        while True:
            ids = await self._queue.get()
            try:
                await self.dispatch(ids)
            except Exception:
                # Rows stay undispatched and are retried by redeliver()
                logger.exception(f"Realtime dispatch failed for outbox ids {ids}")

    async def dispatch(self, ids: Iterable[int]) -> int:
        ids = sorted(set(ids))
        if not ids:
            return 0
        db = self.session_factory()
        try:
            rows = db.query(RealtimeOutbox).filter(
                RealtimeOutbox.id.in_(ids),
                RealtimeOutbox.dispatched_at.is_(None),
            ).order_by(RealtimeOutbox.id).all()
            return await self._emit_rows(db, rows)
        finally:
            db.close()

    async def redeliver(self, older_than_seconds: int = OUTBOX_REDELIVERY_SECONDS, limit: int = 500) -> int:
        """Emit rows that were committed but never marked dispatched."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        db = self.session_factory()
        try:
            rows = db.query(RealtimeOutbox).filter(
                RealtimeOutbox.dispatched_at.is_(None),
                RealtimeOutbox.created_at <= cutoff,
            ).order_by(RealtimeOutbox.id).limit(limit).all()
            if rows:
                logger.info(f"Redelivering {len(rows)} realtime events")
            return await self._emit_rows(db, rows)
        finally:
            db.close()

    async def _emit_rows(self, db: Session, rows: List[RealtimeOutbox]) -> int:
        for row in rows:
            await self.manager.emit(row.room, row.event, row.payload)
            row.dispatched_at = utcnow()
        db.commit()
        return len(rows)


def mark_conversation_seen(db: Session, conversation_id: str, reader_id: str, message_ids: Optional[List[str]] = None) -> List[str]:
    """Shared by the HTTP seen endpoint and the WebSocket `message:seen` event."""
    store = ConversationStore(db)
    try:
        conversation = store.load_for_participant(conversation_id, reader_id)
        changed = store.mark_seen(conversation, reader_id, message_ids)
        FanoutPlanner(store).plan_seen(conversation, reader_id, changed)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return changed


async def relay_typing(db: Session, manager: ConnectionManager, conversation_id: str, user_id: str, is_typing: bool) -> int:
    """Typing indicators go straight to the other participant's room; they are never persisted."""
    conversation = ConversationStore(db).load_for_participant(conversation_id, user_id)
    other_id = conversation.other_participant(user_id)
    db.rollback()
    return await manager.emit(room_for(other_id), USER_TYPING, {
        "conversation_id": conversation_id,
        "user_id": user_id,
        "is_typing": bool(is_typing),
    })
