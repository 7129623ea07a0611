# Conversation Store for the Influence Chat platform
# Persistence for conversations and messages: CAS transitions, ordering, unread state

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import Conflict, InvalidPayload, NotFound, RoleMismatch
from database.models import User, utcnow
from database.chat_models import (
    Conversation,
    Message,
    MessageType,
    FlowState,
    ChatStatus,
    AwaitingRole,
    Request,
)

logger = logging.getLogger(__name__)

ONE_MICROSECOND = timedelta(microseconds=1)


def encode_cursor(updated_at: datetime, conversation_id: str) -> str:
    return f"{updated_at.isoformat()}|{conversation_id}"


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        stamp, conversation_id = cursor.split("|", 1)
        return datetime.fromisoformat(stamp), conversation_id
    except ValueError:
        raise InvalidPayload(f"Invalid cursor {cursor!r}", cursor=cursor)


class ConversationStore:
    """Callers own the transaction: the store flushes but never commits."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    def load(self, conversation_id: str) -> Conversation:
        conversation = self.db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conversation

    def load_for_participant(self, conversation_id: str, user_id: str) -> Conversation:
        conversation = self.load(conversation_id)
        if conversation.role_of(user_id) is None:
            raise RoleMismatch("You are not a participant in this conversation")
        return conversation

    def _find_direct(self, brand_owner_id: str, influencer_id: str) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.brand_owner_id == brand_owner_id,
            Conversation.influencer_id == influencer_id,
            Conversation.request_id.is_(None),
            Conversation.campaign_id.is_(None),
            Conversation.bid_id.is_(None),
        ).first()

    def get_or_create_direct(self, brand_owner_id: str, influencer_id: str) -> Tuple[Conversation, bool]:
        """
        Direct chats have no request and start in free-form real_time.
        One per (brand_owner, influencer) pair; call before any other write
        in the unit of work, since losing the insert race rolls the session back.
        """
        conversation = self._find_direct(brand_owner_id, influencer_id)
        if conversation is not None:
            return conversation, False

        now = utcnow()
        conversation = Conversation(
            brand_owner_id=brand_owner_id,
            influencer_id=influencer_id,
            chat_status=ChatStatus.REALTIME,
            flow_state=FlowState.REAL_TIME,
            awaiting_role=AwaitingRole.NONE,
            negotiation_round=0,
            flow_data={},
            version=0,
            created_at=now,
            updated_at=now,
            last_action_at=now,
        )
        self.db.add(conversation)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            existing = self._find_direct(brand_owner_id, influencer_id)
            if existing is None:
                raise
            logger.info(f"Direct chat {brand_owner_id}/{influencer_id} created concurrently, reusing {existing.id}")
            return existing, False
        return conversation, True

    def create_for_request(self, request: Request) -> Conversation:
        """Request-bound chats open at initial_offer, waiting on the brand owner."""
        now = utcnow()
        conversation = Conversation(
            brand_owner_id=request.brand_owner_id,
            influencer_id=request.influencer_id,
            campaign_id=request.campaign_id,
            bid_id=request.bid_id,
            request_id=request.id,
            chat_status=ChatStatus.NEGOTIATION,
            flow_state=FlowState.INITIAL_OFFER,
            awaiting_role=AwaitingRole.BRAND_OWNER,
            negotiation_round=0,
            flow_data={"negotiation_history": [], "final_offer": False},
            version=0,
            created_at=now,
            updated_at=now,
            last_action_at=now,
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def apply_transition(
        self,
        conversation: Conversation,
        expected_state: FlowState,
        expected_version: int,
        patch: dict,
    ) -> Conversation:
        """
        Compare-and-set the conversation row on (id, flow_state, version).
        Raises Conflict when another transaction got there first; the
        transition's messages are appended by the caller afterwards.
        """
        now = utcnow()
        values = dict(patch)
        values["version"] = expected_version + 1
        values["updated_at"] = now
        values["last_action_at"] = now

        updated = self.db.query(Conversation).filter(
            Conversation.id == conversation.id,
            Conversation.flow_state == expected_state,
            Conversation.version == expected_version,
        ).update(values, synchronize_session=False)

        if updated == 0:
            current = self.db.query(Conversation.flow_state, Conversation.version).filter(
                Conversation.id == conversation.id
            ).first()
            logger.info(f"Conversation {conversation.id} changed underneath version {expected_version}")
            raise Conflict(
                "Conversation was updated by another action, reload and retry",
                flow_state=current.flow_state.value if current else None,
                version=current.version if current else None,
            )

        self.db.refresh(conversation)
        return conversation

    # =========================================================================
    # MESSAGES
    # =========================================================================

    def next_timestamp(self, conversation_id: str) -> datetime:
        """Server clock, nudged forward so created_at strictly increases per conversation."""
        last = self.db.query(func.max(Message.created_at)).filter(
            Message.conversation_id == conversation_id
        ).scalar()
        now = utcnow()
        if last is not None and now <= last:
            return last + ONE_MICROSECOND
        return now

    def append_message(
        self,
        conversation: Conversation,
        sender_id: str,
        receiver_id: str,
        body: Optional[str] = None,
        action: Optional[dict] = None,
        message_type: MessageType = MessageType.USER_INPUT,
    ) -> Message:
        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            action=action,
            message_type=message_type,
            seen=False,
            created_at=self.next_timestamp(conversation.id),
        )
        self.db.add(message)
        self.db.flush()
        return message

    def history(self, conversation_id: str, before: Optional[str] = None, limit: int = 50) -> List[Message]:
        """Newest page first in the query, returned oldest-first for display."""
        query = self.db.query(Message).filter(Message.conversation_id == conversation_id)
        if before:
            anchor = self.db.query(Message).filter(
                Message.id == before, Message.conversation_id == conversation_id
            ).first()
            if anchor is None:
                raise NotFound(f"Message {before} not found")
            query = query.filter(or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            ))
        rows = query.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit).all()
        return list(reversed(rows))

    def last_message(self, conversation_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.desc(), Message.id.desc()).first()

    def unread_count(self, conversation_id: str, user_id: str) -> int:
        return self.db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id,
            Message.receiver_id == user_id,
            Message.seen.is_(False),
        ).scalar() or 0

    def mark_seen(self, conversation: Conversation, reader_id: str, message_ids: Optional[List[str]] = None) -> List[str]:
        """Mark the reader's unseen inbound messages as seen. Returns the ids that changed."""
        query = self.db.query(Message).filter(
            Message.conversation_id == conversation.id,
            Message.receiver_id == reader_id,
            Message.seen.is_(False),
        )
        if message_ids:
            query = query.filter(Message.id.in_(message_ids))
        rows = query.all()
        now = utcnow()
        for message in rows:
            message.seen = True
            message.seen_at = now
        self.db.flush()
        return [m.id for m in rows]

    # =========================================================================
    # LISTING
    # =========================================================================

    def other_user_summary(self, conversation: Conversation, user_id: str) -> Optional[dict]:
        other = self.db.get(User, conversation.other_participant(user_id))
        return other.summary() if other else None

    def list_for_user(self, user_id: str, cursor: Optional[str] = None, limit: int = 20) -> Tuple[List[Conversation], Optional[str]]:
        """Most recently updated first, keyset-paged on (updated_at, id)."""
        query = self.db.query(Conversation).filter(
            or_(Conversation.brand_owner_id == user_id, Conversation.influencer_id == user_id)
        )
        if cursor:
            updated_at, conversation_id = decode_cursor(cursor)
            query = query.filter(or_(
                Conversation.updated_at < updated_at,
                and_(Conversation.updated_at == updated_at, Conversation.id < conversation_id),
            ))
        rows = query.order_by(Conversation.updated_at.desc(), Conversation.id.desc()).limit(limit + 1).all()

        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1].updated_at, rows[-1].id)
        return rows, next_cursor

    def idle_conversations(self, states: Iterable[FlowState], idle_before: datetime, limit: int = 100) -> List[Conversation]:
        return self.db.query(Conversation).filter(
            Conversation.flow_state.in_(list(states)),
            Conversation.last_action_at < idle_before,
        ).order_by(Conversation.last_action_at).limit(limit).all()


def get_conversation_store(db: Session) -> ConversationStore:
    return ConversationStore(db)
