# Ledger Models for the Influence Chat platform
# Wallets, append-only ledger entries, escrow holds and gateway payment orders

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, ForeignKey, Text, Enum, CheckConstraint, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from config.app_config import CURRENCY
from database.models import Base, generate_uuid, utcnow


# ============================================================================
# ENUMS
# ============================================================================

class LedgerDirection(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerKind(str, enum.Enum):
    DEPOSIT = "deposit"
    ESCROW_HOLD = "escrow_hold"
    ESCROW_RELEASE = "escrow_release"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"
    FEE = "fee"


class LedgerStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EscrowStatusDB(str, enum.Enum):
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentOrderStatus(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"


# ============================================================================
# WALLET
# ============================================================================

class Wallet(Base):
    """Per-user wallet. All balances in minor units."""
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_wallets_available_non_negative"),
        CheckConstraint("frozen >= 0", name="ck_wallets_frozen_non_negative"),
        CheckConstraint("withdrawn >= 0", name="ck_wallets_withdrawn_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)

    available = Column(BigInteger, nullable=False, default=0)
    frozen = Column(BigInteger, nullable=False, default=0)  # Amount in escrow
    withdrawn = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), default=CURRENCY)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", backref="wallet")
    entries = relationship("LedgerEntry", back_populates="wallet")

    def balances(self) -> dict:
        return {
            "available": self.available,
            "frozen": self.frozen,
            "withdrawn": self.withdrawn,
            "currency": self.currency,
        }


# ============================================================================
# LEDGER
# ============================================================================

class LedgerEntry(Base):
    """Append-only money movement. Only `status` and `completed_at` may change."""
    __tablename__ = "ledger_entries"
    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_ledger_entries_amount_positive"),
        Index("ix_ledger_entries_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False)

    direction = Column(Enum(LedgerDirection, values_callable=lambda x: [e.value for e in x], name="ledgerdirection"), nullable=False)
    kind = Column(Enum(LedgerKind, values_callable=lambda x: [e.value for e in x], name="ledgerkind"), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    status = Column(Enum(LedgerStatus, values_callable=lambda x: [e.value for e in x], name="ledgerstatus"), nullable=False, default=LedgerStatus.PENDING)

    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True)
    request_id = Column(String(36), ForeignKey("requests.id"), nullable=True)
    gateway_payment_id = Column(String(255), unique=True, nullable=True)  # Paystack reference for deposits
    escrow_hold_id = Column(String(36), nullable=True)
    description = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    # Relationships
    wallet = relationship("Wallet", back_populates="entries")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "kind": self.kind.value,
            "amount_minor": self.amount_minor,
            "status": self.status.value,
            "conversation_id": self.conversation_id,
            "gateway_payment_id": self.gateway_payment_id,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


# ============================================================================
# ESCROW
# ============================================================================

class EscrowHold(Base):
    """Escrowed payment for one conversation, locked until released or refunded."""
    __tablename__ = "escrow_holds"
    __table_args__ = (
        # At most one locked hold per conversation
        Index(
            "uq_escrow_holds_locked_conversation", "conversation_id", unique=True,
            postgresql_where=text("status = 'locked'"),
            sqlite_where=text("status = 'locked'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    payer_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    payee_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    amount_minor = Column(BigInteger, nullable=False)
    status = Column(Enum(EscrowStatusDB, values_callable=lambda x: [e.value for e in x], name="escrowstatusdb"), default=EscrowStatusDB.LOCKED, nullable=False)
    commission_bps = Column(Integer)  # Recorded at release time

    hold_entry_id = Column(String(36), ForeignKey("ledger_entries.id"), nullable=True)
    release_entry_id = Column(String(36), ForeignKey("ledger_entries.id"), nullable=True)
    gateway_payment_id = Column(String(255))

    locked_at = Column(DateTime, default=utcnow)
    released_at = Column(DateTime)  # Release or refund time


# ============================================================================
# PAYMENT ORDERS
# ============================================================================

class PaymentOrder(Base):
    """Gateway order created before the brand pays for a conversation."""
    __tablename__ = "payment_orders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=True, index=True)  # Null for wallet top-ups
    payer_user_id = Column(String(36), ForeignKey("users.id"), nullable=False)

    gateway_order_id = Column(String(255), unique=True, nullable=False)
    authorization_url = Column(String(500))
    amount_minor = Column(BigInteger, nullable=False)
    currency = Column(String(3), default=CURRENCY)
    status = Column(Enum(PaymentOrderStatus, values_callable=lambda x: [e.value for e in x], name="paymentorderstatus"), default=PaymentOrderStatus.CREATED, nullable=False)
    gateway_payment_id = Column(String(255))

    created_at = Column(DateTime, default=utcnow)
    paid_at = Column(DateTime)
