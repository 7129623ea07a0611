# Chat Models for the Negotiated-Chat Engine
# Conversations, messages, binding requests and the realtime outbox

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, JSON, Enum, Boolean, Index, CheckConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from database.models import Base, generate_uuid, utcnow


# ============================================================================
# ENUMS
# ============================================================================

class FlowState(str, enum.Enum):
    INITIAL_OFFER = "initial_offer"
    INFLUENCER_PRICE_RESPONSE = "influencer_price_response"
    BRAND_OWNER_NEGOTIATION = "brand_owner_negotiation"
    NEGOTIATION_INPUT = "negotiation_input"
    INFLUENCER_FINAL_RESPONSE = "influencer_final_response"
    BRAND_OWNER_PRICING = "brand_owner_pricing"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    WORK_IN_PROGRESS = "work_in_progress"
    WORK_SUBMITTED = "work_submitted"
    WORK_APPROVED = "work_approved"
    REAL_TIME = "real_time"
    CLOSED = "closed"


class ChatStatus(str, enum.Enum):
    NEGOTIATION = "negotiation"
    REALTIME = "realtime"
    CLOSED = "closed"


class AwaitingRole(str, enum.Enum):
    BRAND_OWNER = "brand_owner"
    INFLUENCER = "influencer"
    NONE = "none"


class MessageType(str, enum.Enum):
    USER_INPUT = "user_input"
    AUTOMATED = "automated"
    SYSTEM = "system"


class RequestStatus(str, enum.Enum):
    APPLIED = "applied"
    CONNECTED = "connected"
    NEGOTIATING = "negotiating"
    PAID = "paid"
    WORK_SUBMITTED = "work_submitted"
    WORK_APPROVED = "work_approved"
    COMPLETED = "completed"
    REJECTED = "rejected"


# ============================================================================
# REQUEST (binding between influencer and a campaign or bid)
# ============================================================================

class Request(Base):
    """An influencer's application to a campaign or bid."""
    __tablename__ = "requests"
    __table_args__ = (
        CheckConstraint(
            "(campaign_id IS NULL) <> (bid_id IS NULL)",
            name="ck_requests_campaign_xor_bid",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    influencer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    brand_owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    # Campaigns and bids live outside the chat core; only their ids are kept
    campaign_id = Column(String(36), nullable=True)
    bid_id = Column(String(36), nullable=True)

    status = Column(Enum(RequestStatus, values_callable=lambda x: [e.value for e in x], name="requeststatus"), default=RequestStatus.APPLIED, nullable=False)
    message = Column(Text)
    proposed_amount = Column(BigInteger)  # Influencer's asking price, minor units
    final_agreed_amount = Column(BigInteger)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    influencer = relationship("User", foreign_keys=[influencer_id])
    brand_owner = relationship("User", foreign_keys=[brand_owner_id])
    conversation = relationship("Conversation", back_populates="request", uselist=False)


# ============================================================================
# CONVERSATION
# ============================================================================

class Conversation(Base):
    """
    The unit the flow engine operates on.

    `version` is bumped by every committed transition and is the
    compare-and-set token for optimistic concurrency.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint("brand_owner_id <> influencer_id", name="ck_conversations_distinct_participants"),
        CheckConstraint("negotiation_round >= 0", name="ck_conversations_round_non_negative"),
        Index("ix_conversations_brand_owner_updated", "brand_owner_id", "updated_at"),
        Index("ix_conversations_influencer_updated", "influencer_id", "updated_at"),
        # One direct chat per (brand owner, influencer) pair
        Index(
            "uq_conversations_direct_pair", "brand_owner_id", "influencer_id", unique=True,
            postgresql_where=text("request_id IS NULL AND campaign_id IS NULL AND bid_id IS NULL"),
            sqlite_where=text("request_id IS NULL AND campaign_id IS NULL AND bid_id IS NULL"),
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    brand_owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    influencer_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    # Binding context (null for direct chats)
    campaign_id = Column(String(36), nullable=True)
    bid_id = Column(String(36), nullable=True)
    request_id = Column(String(36), ForeignKey("requests.id"), nullable=True, unique=True)

    chat_status = Column(Enum(ChatStatus, values_callable=lambda x: [e.value for e in x], name="chatstatus"), nullable=False, default=ChatStatus.NEGOTIATION)
    flow_state = Column(Enum(FlowState, values_callable=lambda x: [e.value for e in x], name="flowstate"), nullable=False, default=FlowState.INITIAL_OFFER)
    awaiting_role = Column(Enum(AwaitingRole, values_callable=lambda x: [e.value for e in x], name="awaitingrole"), nullable=False, default=AwaitingRole.BRAND_OWNER)

    # Money, minor units
    final_agreed_amount = Column(BigInteger)  # Set on entry to payment_pending
    current_offer_amount = Column(BigInteger)  # Brand's latest offer
    last_counter_amount = Column(BigInteger)  # Influencer's latest counter
    negotiation_round = Column(Integer, nullable=False, default=0)

    flow_data = Column(JSON)  # negotiation_history, final_offer, gateway_order_id, revision_note
    version = Column(Integer, nullable=False, default=0)

    last_action_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    # Relationships
    brand_owner = relationship("User", foreign_keys=[brand_owner_id])
    influencer = relationship("User", foreign_keys=[influencer_id])
    request = relationship("Request", back_populates="conversation")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")

    @property
    def participant_ids(self):
        return (self.brand_owner_id, self.influencer_id)

    def role_of(self, user_id: str):
        """AwaitingRole of a participant, or None for outsiders."""
        if user_id == self.brand_owner_id:
            return AwaitingRole.BRAND_OWNER
        if user_id == self.influencer_id:
            return AwaitingRole.INFLUENCER
        return None

    def other_participant(self, user_id: str) -> str:
        return self.influencer_id if user_id == self.brand_owner_id else self.brand_owner_id


# ============================================================================
# MESSAGE
# ============================================================================

class Message(Base):
    """Append-only chat message. Either `body` or `action` is set."""
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at", "id"),
        Index("ix_messages_receiver_unseen", "conversation_id", "receiver_id", "seen"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    receiver_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    body = Column(Text)
    action = Column(JSON)  # {component, params, buttons[], visible_to}
    message_type = Column(Enum(MessageType, values_callable=lambda x: [e.value for e in x], name="messagetype"), nullable=False, default=MessageType.USER_INPUT)

    seen = Column(Boolean, nullable=False, default=False)
    seen_at = Column(DateTime)

    # Server assigned, strictly increasing per conversation
    created_at = Column(DateTime, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "body": self.body,
            "action": self.action,
            "message_type": self.message_type.value,
            "seen": bool(self.seen),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ============================================================================
# REALTIME OUTBOX
# ============================================================================

class RealtimeOutbox(Base):
    """Realtime events written inside the transaction, dispatched after commit."""
    __tablename__ = "realtime_outbox"
    __table_args__ = (
        Index("ix_realtime_outbox_pending", "dispatched_at", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True)
    room = Column(String(64), nullable=False)
    event = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    dispatched_at = Column(DateTime)
