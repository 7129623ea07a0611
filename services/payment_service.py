# Payment Service for the Influence Chat platform
# Gateway orders, webhook settlement and withdrawals

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.app_config import CURRENCY, MIN_WITHDRAWAL_AMOUNT_MINOR, PAYMENT_CONFIRM_ATTEMPTS
from core.errors import ChatEngineError, Conflict, IllegalTransition, InvalidAmount, InvalidPayload, RoleMismatch
from core.paystack_service import PaystackService, PaystackWebhookHandler
from database.models import User, generate_uuid, utcnow
from database.chat_models import FlowState
from database.ledger_models import PaymentOrder, PaymentOrderStatus, LedgerEntry
from services.conversation_store import ConversationStore
from services.flow_engine import Command, CommandKind, FlowEngine
from services.ledger_service import LedgerService
from services.notification_service import NotificationService, NotificationType
from services.action_messages import format_amount

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Gateway calls never happen inside an open transaction: state is read,
    the read transaction is ended, the gateway is called, and only then is
    the result recorded through the engine.
    """

    def __init__(self, db: Session, engine: FlowEngine, gateway: Optional[PaystackService] = None):
        self.db = db
        self.engine = engine
        self.gateway = gateway or PaystackService()
        self.store = ConversationStore(db)
        self.ledger = LedgerService(db, engine.settings)
        self.notifier = NotificationService(db)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    def start_checkout(self, conversation_id: str, actor: User, expected_version: Optional[int] = None) -> Dict[str, Any]:
        """Create a gateway order for the agreed amount and mark the conversation with it."""
        conversation = self.store.load(conversation_id)
        if actor.id != conversation.brand_owner_id:
            raise RoleMismatch("Only the brand owner can pay for this conversation")
        if conversation.flow_state != FlowState.PAYMENT_PENDING:
            raise IllegalTransition(
                f"Payment is not expected in state {conversation.flow_state.value}",
                flow_state=conversation.flow_state.value,
            )
        amount = conversation.final_agreed_amount
        version = conversation.version if expected_version is None else expected_version
        reference = f"conv_{generate_uuid()}"
        self.db.rollback()  # end the read transaction before calling out

        data = self.gateway.initialize_transaction(
            email=actor.email,
            amount=amount,
            reference=reference,
            metadata={"conversation_id": conversation_id, "user_id": actor.id, "purpose": "escrow"},
        )
        gateway_order_id = data.get("reference") or reference

        self.db.add(PaymentOrder(
            conversation_id=conversation_id,
            payer_user_id=actor.id,
            gateway_order_id=gateway_order_id,
            authorization_url=data.get("authorization_url"),
            amount_minor=amount,
            currency=CURRENCY,
            status=PaymentOrderStatus.CREATED,
        ))
        result = self.engine.handle(Command(
            conversation_id=conversation_id,
            actor_id=actor.id,
            kind=CommandKind.INITIATE_PAYMENT.value,
            payload={"gateway_order_id": gateway_order_id},
            expected_version=version,
        ))
        return {
            "gateway_order_id": gateway_order_id,
            "authorization_url": data.get("authorization_url"),
            "amount_minor": amount,
            "currency": CURRENCY,
            "result": result,
        }

    def start_deposit(self, actor: User, amount: int) -> Dict[str, Any]:
        """Top up a wallet through the gateway; credited when the webhook arrives."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount("Deposit amount must be a positive integer in minor units")
        reference = f"dep_{generate_uuid()}"
        data = self.gateway.initialize_transaction(
            email=actor.email,
            amount=amount,
            reference=reference,
            metadata={"user_id": actor.id, "purpose": "deposit"},
        )
        order = PaymentOrder(
            conversation_id=None,
            payer_user_id=actor.id,
            gateway_order_id=data.get("reference") or reference,
            authorization_url=data.get("authorization_url"),
            amount_minor=amount,
            currency=CURRENCY,
            status=PaymentOrderStatus.CREATED,
        )
        self.db.add(order)
        self.db.commit()
        return {
            "gateway_order_id": order.gateway_order_id,
            "authorization_url": order.authorization_url,
            "amount_minor": amount,
            "currency": CURRENCY,
        }

    # =========================================================================
    # WEBHOOK
    # =========================================================================

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Settle a signed gateway event. Replays are no-ops: the order is
        already paid and the deposit is keyed by the gateway payment id.
        """
        if not PaystackWebhookHandler.verify_webhook(raw_body, signature):
            raise RoleMismatch("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise InvalidPayload("Webhook body is not JSON")

        if event.get("event") != "charge.success":
            logger.info(f"Ignoring Paystack event {event.get('event')}")
            return {"status": "ignored"}

        charge = PaystackWebhookHandler.handle_charge_success(event.get("data") or {})
        order = self.db.query(PaymentOrder).filter(
            PaymentOrder.gateway_order_id == charge["reference"]
        ).first()
        if order is None:
            logger.warning(f"Webhook for unknown order {charge['reference']}")
            return {"status": "unknown_order"}
        if order.status == PaymentOrderStatus.PAID:
            logger.info(f"Webhook replay for order {order.gateway_order_id}")
            return {"status": "duplicate"}

        amount = charge["amount"]
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount("Webhook amount must be a positive integer", amount=amount)
        if amount != order.amount_minor:
            logger.warning(f"Order {order.gateway_order_id} expected {order.amount_minor}, gateway paid {amount}")

        payment_id = charge["payment_id"]
        # Money received is credited first and committed on its own
        try:
            self.ledger.deposit(order.payer_user_id, amount, payment_id, description=f"Paystack {order.gateway_order_id}")
            order.status = PaymentOrderStatus.PAID
            order.gateway_payment_id = payment_id
            order.paid_at = utcnow()
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the race
            self.db.rollback()
            logger.info(f"Concurrent webhook for payment {payment_id}")
            return {"status": "duplicate"}
        except Exception:
            self.db.rollback()
            raise

        if order.conversation_id is None:
            self.notifier.send(order.payer_user_id, NotificationType.DEPOSIT_COMPLETED, {"amount": format_amount(amount)})
            return {"status": "deposited"}

        return self._confirm_payment(order.conversation_id, order.payer_user_id, payment_id)

    def _confirm_payment(self, conversation_id: str, payer_id: str, payment_id: str) -> Dict[str, Any]:
        """Escrow the credited funds, re-reading the conversation after a lost version check."""
        command = Command(
            conversation_id=conversation_id,
            actor_id=payer_id,
            kind=CommandKind.PAYMENT_CONFIRMED.value,
            payload={"gateway_ref": payment_id, "source": "gateway"},
        )
        error: Optional[ChatEngineError] = None
        for attempt in range(1, PAYMENT_CONFIRM_ATTEMPTS + 1):
            try:
                self.engine.handle(command)
                return {"status": "escrowed"}
            except Conflict as e:
                error = e
                logger.info(f"Payment {payment_id} lost the version check on {conversation_id} (attempt {attempt})")
            except ChatEngineError as e:
                error = e
                break

        # Funds stay in the payer's available balance
        logger.warning(f"Payment {payment_id} credited but conversation {conversation_id} not advanced: {error.to_dict()}")
        return {"status": "credited", "detail": error.detail}

    # =========================================================================
    # WITHDRAWALS
    # =========================================================================

    def withdraw(self, actor: User, amount: int, recipient_code: Optional[str] = None) -> LedgerEntry:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < MIN_WITHDRAWAL_AMOUNT_MINOR:
            raise InvalidAmount(f"Minimum withdrawal is {format_amount(MIN_WITHDRAWAL_AMOUNT_MINOR)}", amount=amount)
        try:
            entry = self.ledger.withdraw(actor.id, amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if recipient_code:
            # Best-effort payout, the ledger already shows the withdrawal
            try:
                self.gateway.initiate_transfer(amount, recipient_code, reference=entry.id)
            except ChatEngineError as e:
                logger.error(f"Payout for withdrawal {entry.id} failed: {e.detail}")
        self.notifier.send(actor.id, NotificationType.WITHDRAWAL_COMPLETED, {"amount": format_amount(amount)})
        return entry

