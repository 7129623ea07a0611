# Flow Engine for the Influence Chat platform
# The negotiated-chat state machine: guards, transition table and the unit of work

import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from config.app_config import (
    MAX_NEGOTIATION_ROUNDS,
    MIN_OFFER_AMOUNT_MINOR,
    MAX_OFFER_AMOUNT_MINOR,
    NEGOTIATION_IDLE_TIMEOUT_HOURS,
)
from core.errors import (
    Conflict,
    IllegalTransition,
    InvalidAmount,
    InvalidPayload,
    InvariantViolation,
    RoleMismatch,
)
from database.models import SYSTEM_USER_ID, utcnow
from database.chat_models import (
    Conversation,
    Message,
    MessageType,
    FlowState,
    ChatStatus,
    AwaitingRole,
    RequestStatus,
)
from services.action_messages import buttons_for, render_action, format_amount
from services.conversation_store import ConversationStore
from services.ledger_service import LedgerService
from services.notification_service import NotificationService, NotificationType
from services.realtime import FanoutPlanner
from services.request_service import RequestService
from services.settings_service import SettingsHolder

logger = logging.getLogger(__name__)


class CommandKind(str, enum.Enum):
    SEND_PRICE_OFFER = "send_price_offer"
    ACCEPT_PRICE = "accept_price"
    REJECT_PRICE = "reject_price"
    NEGOTIATE_PRICE = "negotiate_price"
    AGREE_NEGOTIATION = "agree_negotiation"
    REJECT_NEGOTIATION = "reject_negotiation"
    SEND_NEGOTIATED_PRICE = "send_negotiated_price"
    ACCEPT_NEGOTIATED_PRICE = "accept_negotiated_price"
    REJECT_NEGOTIATED_PRICE = "reject_negotiated_price"
    CONTINUE_NEGOTIATE = "continue_negotiate"
    INITIATE_PAYMENT = "initiate_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    START_WORK = "start_work"
    SUBMIT_WORK = "submit_work"
    APPROVE_WORK = "approve_work"
    REQUEST_REVISION = "request_revision"
    SEND_TEXT = "send_text"
    # Issued by the platform, never by a participant
    TIMEOUT = "timeout"
    ADVANCE_TO_REALTIME = "advance_to_realtime"


SYSTEM_KINDS = {CommandKind.TIMEOUT, CommandKind.ADVANCE_TO_REALTIME}

AMOUNT_KINDS = {
    CommandKind.SEND_PRICE_OFFER,
    CommandKind.NEGOTIATE_PRICE,
    CommandKind.SEND_NEGOTIATED_PRICE,
    CommandKind.CONTINUE_NEGOTIATE,
}

# flow_state -> (awaiting_role, chat_status)
STATE_TABLE: Dict[FlowState, Tuple[AwaitingRole, ChatStatus]] = {
    FlowState.INITIAL_OFFER: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.INFLUENCER_PRICE_RESPONSE: (AwaitingRole.INFLUENCER, ChatStatus.NEGOTIATION),
    FlowState.BRAND_OWNER_NEGOTIATION: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.NEGOTIATION_INPUT: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.INFLUENCER_FINAL_RESPONSE: (AwaitingRole.INFLUENCER, ChatStatus.NEGOTIATION),
    FlowState.BRAND_OWNER_PRICING: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.PAYMENT_PENDING: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.PAYMENT_COMPLETED: (AwaitingRole.INFLUENCER, ChatStatus.NEGOTIATION),
    FlowState.WORK_IN_PROGRESS: (AwaitingRole.INFLUENCER, ChatStatus.NEGOTIATION),
    FlowState.WORK_SUBMITTED: (AwaitingRole.BRAND_OWNER, ChatStatus.NEGOTIATION),
    FlowState.WORK_APPROVED: (AwaitingRole.NONE, ChatStatus.REALTIME),
    FlowState.REAL_TIME: (AwaitingRole.NONE, ChatStatus.REALTIME),
    FlowState.CLOSED: (AwaitingRole.NONE, ChatStatus.CLOSED),
}

NEGOTIATION_STATES = {
    FlowState.INITIAL_OFFER,
    FlowState.INFLUENCER_PRICE_RESPONSE,
    FlowState.BRAND_OWNER_NEGOTIATION,
    FlowState.NEGOTIATION_INPUT,
    FlowState.INFLUENCER_FINAL_RESPONSE,
    FlowState.BRAND_OWNER_PRICING,
}

# States the idle sweep may close
TIMEOUT_STATES = NEGOTIATION_STATES | {
    FlowState.PAYMENT_PENDING,
    FlowState.PAYMENT_COMPLETED,
    FlowState.WORK_IN_PROGRESS,
}


@dataclass
class Command:
    conversation_id: str
    actor_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None


@dataclass
class Step:
    """What a handler decided. Effects run after the compare-and-set, inside the transaction."""
    to_state: FlowState
    text: str
    patch: Dict[str, Any] = field(default_factory=dict)
    request_status: Optional[RequestStatus] = None
    effect: Optional[Callable[[Conversation], None]] = None
    params: Dict[str, Any] = field(default_factory=dict)
    inform: Optional[str] = None  # receiver of a system message
    notifications: List[Tuple[str, NotificationType, dict]] = field(default_factory=list)


@dataclass
class TransitionResult:
    conversation: Conversation
    command: Command
    from_state: FlowState
    to_state: FlowState
    messages: List[Message]
    notifications: List[Tuple[str, NotificationType, dict]] = field(default_factory=list)


# ============================================================================
# TRANSITION TABLE
# ============================================================================

TRANSITIONS: Dict[Tuple[FlowState, CommandKind], str] = {
    (FlowState.INITIAL_OFFER, CommandKind.SEND_PRICE_OFFER): "_send_price_offer",
    (FlowState.BRAND_OWNER_PRICING, CommandKind.SEND_PRICE_OFFER): "_send_price_offer",
    (FlowState.INFLUENCER_PRICE_RESPONSE, CommandKind.ACCEPT_PRICE): "_accept_offer",
    (FlowState.INFLUENCER_PRICE_RESPONSE, CommandKind.REJECT_PRICE): "_close_by_rejection",
    (FlowState.INFLUENCER_PRICE_RESPONSE, CommandKind.NEGOTIATE_PRICE): "_negotiate_price",
    (FlowState.BRAND_OWNER_NEGOTIATION, CommandKind.AGREE_NEGOTIATION): "_agree_negotiation",
    (FlowState.BRAND_OWNER_NEGOTIATION, CommandKind.REJECT_NEGOTIATION): "_close_by_rejection",
    (FlowState.NEGOTIATION_INPUT, CommandKind.SEND_NEGOTIATED_PRICE): "_send_negotiated_price",
    (FlowState.INFLUENCER_FINAL_RESPONSE, CommandKind.ACCEPT_NEGOTIATED_PRICE): "_accept_offer",
    (FlowState.INFLUENCER_FINAL_RESPONSE, CommandKind.REJECT_NEGOTIATED_PRICE): "_close_by_rejection",
    (FlowState.INFLUENCER_FINAL_RESPONSE, CommandKind.CONTINUE_NEGOTIATE): "_continue_negotiate",
    (FlowState.PAYMENT_PENDING, CommandKind.INITIATE_PAYMENT): "_initiate_payment",
    (FlowState.PAYMENT_PENDING, CommandKind.PAYMENT_CONFIRMED): "_payment_confirmed",
    (FlowState.PAYMENT_COMPLETED, CommandKind.START_WORK): "_start_work",
    (FlowState.PAYMENT_COMPLETED, CommandKind.SUBMIT_WORK): "_submit_work",
    (FlowState.WORK_IN_PROGRESS, CommandKind.SUBMIT_WORK): "_submit_work",
    (FlowState.WORK_SUBMITTED, CommandKind.APPROVE_WORK): "_approve_work",
    (FlowState.WORK_SUBMITTED, CommandKind.REQUEST_REVISION): "_request_revision",
    (FlowState.WORK_APPROVED, CommandKind.ADVANCE_TO_REALTIME): "_advance_to_realtime",
    (FlowState.REAL_TIME, CommandKind.SEND_TEXT): "_send_text",
    **{(state, CommandKind.TIMEOUT): "_timeout" for state in TIMEOUT_STATES},
}


def legal_kinds(flow_state: FlowState, negotiation_round: int) -> Set[CommandKind]:
    """Command kinds the table accepts for a state at a given round."""
    kinds = {kind for (state, kind) in TRANSITIONS if state == flow_state}
    if negotiation_round >= MAX_NEGOTIATION_ROUNDS:
        kinds.discard(CommandKind.NEGOTIATE_PRICE)
    return kinds


def _history(conversation: Conversation, entry: dict) -> dict:
    flow_data = dict(conversation.flow_data or {})
    flow_data["negotiation_history"] = list(flow_data.get("negotiation_history") or []) + [entry]
    return flow_data


class FlowEngine:
    """
    Applies one command per transaction:

        load -> guards -> compare-and-set -> ledger effect -> message ->
        request status -> outbox -> commit

    Anything raised before the commit rolls the whole step back.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[SettingsHolder] = None,
        notifier: Optional[NotificationService] = None,
        clock: Callable = utcnow,
    ):
        self.db = db
        self.settings = settings or SettingsHolder()
        self.store = ConversationStore(db)
        self.ledger = LedgerService(db, self.settings)
        self.requests = RequestService(db)
        self.fanout = FanoutPlanner(self.store)
        self.notifier = notifier if notifier is not None else NotificationService(db)
        self.clock = clock

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    def handle(self, command: Command) -> TransitionResult:
        try:
            result = self._apply(command)
            self.db.commit()
        except InvariantViolation as e:
            self.db.rollback()
            logger.critical(f"Invariant violated on {command.kind} for {command.conversation_id}: {e.to_dict()}")
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Conversation {command.conversation_id}: {result.from_state.value} "
            f"--{command.kind}--> {result.to_state.value} (v{result.conversation.version})"
        )
        for user_id, template, params in result.notifications:
            self.notifier.send(user_id, template, params)

        if result.to_state == FlowState.WORK_APPROVED:
            self.advance_to_realtime(result.conversation.id)
        return result

    def advance_to_realtime(self, conversation_id: str) -> Optional[TransitionResult]:
        """Follow-up commit after approval. A failure here is retried by the sweeper."""
        try:
            return self.handle(Command(conversation_id, SYSTEM_USER_ID, CommandKind.ADVANCE_TO_REALTIME.value))
        except (Conflict, IllegalTransition) as e:
            logger.warning(f"Could not advance {conversation_id} to real_time: {e}")
            return None

    def _apply(self, command: Command) -> TransitionResult:
        conversation = self.store.load(command.conversation_id)
        kind = self._parse_kind(command.kind)

        role = self._check_participant(conversation, command, kind)
        self._check_version(conversation, command)
        self._check_awaiting_role(conversation, kind, role)
        handler = self._check_legal(conversation, kind)
        self._check_payload(kind, command.payload)

        from_state = conversation.flow_state
        from_version = conversation.version
        step: Step = getattr(self, handler)(conversation, command)

        awaiting, chat_status = STATE_TABLE[step.to_state]
        patch = dict(step.patch)
        patch.update(flow_state=step.to_state, awaiting_role=awaiting, chat_status=chat_status)
        self._check_patch(conversation, patch)

        self.store.apply_transition(conversation, from_state, from_version, patch)
        if step.effect is not None:
            step.effect(conversation)

        message = self._append_outcome_message(conversation, command, kind, step)

        if step.request_status is not None:
            self.requests.sync_status(
                conversation.request_id,
                step.request_status,
                final_agreed_amount=conversation.final_agreed_amount,
            )

        self.fanout.plan_transition(conversation, [message])
        return TransitionResult(
            conversation=conversation,
            command=command,
            from_state=from_state,
            to_state=step.to_state,
            messages=[message],
            notifications=step.notifications,
        )

    # =========================================================================
    # GUARDS
    # =========================================================================

    def _parse_kind(self, kind: str) -> CommandKind:
        try:
            return CommandKind(kind)
        except ValueError:
            raise IllegalTransition(f"Unknown command '{kind}'")

    def _check_participant(self, conversation: Conversation, command: Command, kind: CommandKind) -> Optional[AwaitingRole]:
        if kind in SYSTEM_KINDS:
            if command.actor_id != SYSTEM_USER_ID:
                raise RoleMismatch(f"{kind.value} can only be issued by the system")
            return None
        role = conversation.role_of(command.actor_id)
        if role is None:
            raise RoleMismatch("You are not a participant in this conversation")
        return role

    def _check_version(self, conversation: Conversation, command: Command):
        if command.expected_version is not None and command.expected_version != conversation.version:
            raise Conflict(
                "Conversation has changed since you loaded it, reload and retry",
                flow_state=conversation.flow_state.value,
                version=conversation.version,
            )

    def _check_awaiting_role(self, conversation: Conversation, kind: CommandKind, role: Optional[AwaitingRole]):
        if kind in SYSTEM_KINDS or conversation.awaiting_role == AwaitingRole.NONE:
            return
        if role != conversation.awaiting_role:
            raise RoleMismatch(
                f"Waiting for the {conversation.awaiting_role.value} to respond",
                awaiting_role=conversation.awaiting_role.value,
            )

    def _check_legal(self, conversation: Conversation, kind: CommandKind) -> str:
        if kind not in legal_kinds(conversation.flow_state, conversation.negotiation_round):
            raise IllegalTransition(
                f"'{kind.value}' is not allowed in state {conversation.flow_state.value}",
                flow_state=conversation.flow_state.value,
            )
        return TRANSITIONS[(conversation.flow_state, kind)]

    def _check_payload(self, kind: CommandKind, payload: Dict[str, Any]):
        if kind in AMOUNT_KINDS:
            amount = payload.get("amount")
            if isinstance(amount, bool) or not isinstance(amount, int):
                raise InvalidAmount("Amount must be an integer in minor units", amount=amount)
            if amount < MIN_OFFER_AMOUNT_MINOR or amount > MAX_OFFER_AMOUNT_MINOR:
                raise InvalidAmount(
                    f"Amount must be between {MIN_OFFER_AMOUNT_MINOR} and {MAX_OFFER_AMOUNT_MINOR}",
                    amount=amount,
                )
        elif kind == CommandKind.SUBMIT_WORK:
            attachments = payload.get("attachments")
            if not isinstance(attachments, list) or not attachments or not all(isinstance(a, str) and a for a in attachments):
                raise InvalidPayload("submit_work needs a non-empty list of attachment URLs")
            note = payload.get("note")
            if note is not None and not isinstance(note, str):
                raise InvalidPayload("note must be text")
        elif kind == CommandKind.REQUEST_REVISION:
            self._require_text(payload, "note")
        elif kind == CommandKind.SEND_TEXT:
            self._require_text(payload, "body")
        elif kind == CommandKind.PAYMENT_CONFIRMED:
            self._require_text(payload, "gateway_ref")
        elif kind == CommandKind.INITIATE_PAYMENT:
            self._require_text(payload, "gateway_order_id")

    @staticmethod
    def _require_text(payload: Dict[str, Any], name: str):
        value = payload.get(name)
        if not isinstance(value, str) or not value.strip():
            raise InvalidPayload(f"'{name}' is required")

    def _check_patch(self, conversation: Conversation, patch: Dict[str, Any]):
        if "final_agreed_amount" in patch and conversation.final_agreed_amount is not None \
                and patch["final_agreed_amount"] != conversation.final_agreed_amount:
            raise InvariantViolation("final_agreed_amount is already set", conversation_id=conversation.id)
        new_round = patch.get("negotiation_round", conversation.negotiation_round)
        if new_round < conversation.negotiation_round or new_round > MAX_NEGOTIATION_ROUNDS:
            raise InvariantViolation("negotiation_round out of range", negotiation_round=new_round)

    # =========================================================================
    # MESSAGES
    # =========================================================================

    def _append_outcome_message(self, conversation: Conversation, command: Command, kind: CommandKind, step: Step) -> Message:
        if kind == CommandKind.SEND_TEXT:
            return self.store.append_message(
                conversation,
                sender_id=command.actor_id,
                receiver_id=conversation.other_participant(command.actor_id),
                body=command.payload["body"].strip(),
                message_type=MessageType.USER_INPUT,
            )

        if kind not in SYSTEM_KINDS and buttons_for(conversation):
            return self.store.append_message(
                conversation,
                sender_id=command.actor_id,
                receiver_id=conversation.other_participant(command.actor_id),
                action=render_action(conversation, step.text, step.params),
                message_type=MessageType.AUTOMATED,
            )

        if step.inform:
            receiver = step.inform
        elif kind in SYSTEM_KINDS:
            receiver = conversation.brand_owner_id
        else:
            receiver = conversation.other_participant(command.actor_id)
        return self.store.append_message(
            conversation,
            sender_id=SYSTEM_USER_ID,
            receiver_id=receiver,
            body=step.text,
            message_type=MessageType.SYSTEM,
        )

    # =========================================================================
    # NEGOTIATION HANDLERS
    # =========================================================================

    def _send_price_offer(self, conversation: Conversation, command: Command) -> Step:
        amount = command.payload["amount"]
        flow_data = _history(conversation, {
            "round": conversation.negotiation_round,
            "by": AwaitingRole.BRAND_OWNER.value,
            "kind": command.kind,
            "amount": amount,
        })
        flow_data["final_offer"] = False
        return Step(
            to_state=FlowState.INFLUENCER_PRICE_RESPONSE,
            text=f"Brand owner has offered {format_amount(amount)}. Please review and respond to this offer.",
            patch={"current_offer_amount": amount, "flow_data": flow_data},
            request_status=RequestStatus.NEGOTIATING,
            notifications=[(conversation.influencer_id, NotificationType.PRICE_OFFER, {
                "conversation_id": conversation.id, "amount": format_amount(amount),
            })],
        )

    def _accept_offer(self, conversation: Conversation, command: Command) -> Step:
        amount = conversation.current_offer_amount
        if amount is None:
            raise InvariantViolation("No offer on record to accept", conversation_id=conversation.id)
        return Step(
            to_state=FlowState.PAYMENT_PENDING,
            text=f"Influencer has agreed to the offer of {format_amount(amount)}. Please proceed with payment.",
            patch={"final_agreed_amount": amount},
            request_status=RequestStatus.NEGOTIATING,
            notifications=[(conversation.brand_owner_id, NotificationType.OFFER_ACCEPTED, {
                "conversation_id": conversation.id, "amount": format_amount(amount),
            })],
        )

    def _close_by_rejection(self, conversation: Conversation, command: Command) -> Step:
        role = conversation.role_of(command.actor_id)
        who = "Influencer" if role == AwaitingRole.INFLUENCER else "Brand owner"
        what = "the negotiation request" if command.kind == CommandKind.REJECT_NEGOTIATION.value else "the price offer"
        text = f"{who} has rejected {what}. The chat is now closed."
        other = conversation.other_participant(command.actor_id)
        return Step(
            to_state=FlowState.CLOSED,
            text=text,
            request_status=RequestStatus.REJECTED,
            notifications=[(other, NotificationType.CONVERSATION_CLOSED, {
                "conversation_id": conversation.id, "reason": text,
            })],
        )

    def _negotiate_price(self, conversation: Conversation, command: Command) -> Step:
        amount = command.payload["amount"]
        new_round = conversation.negotiation_round + 1
        flow_data = _history(conversation, {
            "round": new_round,
            "by": AwaitingRole.INFLUENCER.value,
            "kind": command.kind,
            "amount": amount,
        })
        return Step(
            to_state=FlowState.BRAND_OWNER_NEGOTIATION,
            text=f"Influencer wants to negotiate and proposes {format_amount(amount)}. Please respond to this request.",
            patch={"last_counter_amount": amount, "negotiation_round": new_round, "flow_data": flow_data},
            notifications=[(conversation.brand_owner_id, NotificationType.NEGOTIATION_REQUESTED, {
                "conversation_id": conversation.id, "amount": format_amount(amount),
            })],
        )

    def _agree_negotiation(self, conversation: Conversation, command: Command) -> Step:
        return Step(
            to_state=FlowState.NEGOTIATION_INPUT,
            text="Brand owner has agreed to negotiate and will send a new price offer.",
        )

    def _send_negotiated_price(self, conversation: Conversation, command: Command) -> Step:
        amount = command.payload["amount"]
        final_offer = conversation.negotiation_round >= MAX_NEGOTIATION_ROUNDS
        flow_data = _history(conversation, {
            "round": conversation.negotiation_round,
            "by": AwaitingRole.BRAND_OWNER.value,
            "kind": command.kind,
            "amount": amount,
        })
        flow_data["final_offer"] = final_offer
        text = (
            f"Brand owner has offered a new price: {format_amount(amount)}. "
            f"This is negotiation round {conversation.negotiation_round}/{MAX_NEGOTIATION_ROUNDS}."
        )
        if final_offer:
            text += " This is the final offer."
        return Step(
            to_state=FlowState.INFLUENCER_FINAL_RESPONSE,
            text=text,
            patch={"current_offer_amount": amount, "flow_data": flow_data},
            notifications=[(conversation.influencer_id, NotificationType.PRICE_OFFER, {
                "conversation_id": conversation.id, "amount": format_amount(amount),
            })],
        )

    def _continue_negotiate(self, conversation: Conversation, command: Command) -> Step:
        amount = command.payload["amount"]
        if conversation.negotiation_round < MAX_NEGOTIATION_ROUNDS:
            new_round = conversation.negotiation_round + 1
            flow_data = _history(conversation, {
                "round": new_round,
                "by": AwaitingRole.INFLUENCER.value,
                "kind": command.kind,
                "amount": amount,
            })
            return Step(
                to_state=FlowState.BRAND_OWNER_PRICING,
                text=f"Influencer wants to continue negotiating and proposes {format_amount(amount)}.",
                patch={"last_counter_amount": amount, "negotiation_round": new_round, "flow_data": flow_data},
                notifications=[(conversation.brand_owner_id, NotificationType.NEGOTIATION_REQUESTED, {
                    "conversation_id": conversation.id, "amount": format_amount(amount),
                })],
            )

        # Round limit reached: stay put, only accept or reject remain
        flow_data = dict(conversation.flow_data or {})
        flow_data["final_offer"] = True
        return Step(
            to_state=FlowState.INFLUENCER_FINAL_RESPONSE,
            text=(
                f"The negotiation limit of {MAX_NEGOTIATION_ROUNDS} rounds has been reached. "
                f"Please accept or reject the final offer of {format_amount(conversation.current_offer_amount)}."
            ),
            patch={"flow_data": flow_data},
        )

    # =========================================================================
    # PAYMENT AND WORK HANDLERS
    # =========================================================================

    def _initiate_payment(self, conversation: Conversation, command: Command) -> Step:
        order_id = command.payload["gateway_order_id"]
        flow_data = dict(conversation.flow_data or {})
        flow_data["gateway_order_id"] = order_id
        return Step(
            to_state=FlowState.PAYMENT_PENDING,
            text=f"Payment of {format_amount(conversation.final_agreed_amount)} has been initiated.",
            patch={"flow_data": flow_data},
            params={"gateway_order_id": order_id, "payment_status": "processing"},
        )

    def _payment_confirmed(self, conversation: Conversation, command: Command) -> Step:
        amount = conversation.final_agreed_amount
        if amount is None:
            raise InvariantViolation("Payment confirmed without an agreed amount", conversation_id=conversation.id)
        gateway_ref = command.payload["gateway_ref"]
        flow_data = dict(conversation.flow_data or {})
        flow_data["payment_ref"] = gateway_ref
        flow_data["payment_source"] = command.payload.get("source", "gateway")

        def freeze(conv: Conversation):
            self.ledger.freeze(
                conv.brand_owner_id,
                amount,
                conversation_id=conv.id,
                payee_user_id=conv.influencer_id,
                request_id=conv.request_id,
                gateway_payment_id=gateway_ref,
            )

        return Step(
            to_state=FlowState.PAYMENT_COMPLETED,
            text=f"Payment of {format_amount(amount)} is held in escrow. You can now start working on the project.",
            patch={"flow_data": flow_data},
            request_status=RequestStatus.PAID,
            effect=freeze,
            notifications=[(conversation.influencer_id, NotificationType.ESCROW_LOCKED, {
                "conversation_id": conversation.id, "amount": format_amount(amount),
            })],
        )

    def _start_work(self, conversation: Conversation, command: Command) -> Step:
        return Step(
            to_state=FlowState.WORK_IN_PROGRESS,
            text="Influencer has started working on the project and will submit the work when ready.",
        )

    def _submit_work(self, conversation: Conversation, command: Command) -> Step:
        submission = {
            "attachments": list(command.payload["attachments"]),
            "note": command.payload.get("note"),
            "submitted_at": self.clock().isoformat(),
        }
        flow_data = dict(conversation.flow_data or {})
        flow_data["submissions"] = list(flow_data.get("submissions") or []) + [submission]
        return Step(
            to_state=FlowState.WORK_SUBMITTED,
            text="Influencer has submitted the work. Please review it and approve or request a revision.",
            patch={"flow_data": flow_data},
            params={"attachments": submission["attachments"], "note": submission["note"]},
            request_status=RequestStatus.WORK_SUBMITTED,
            notifications=[(conversation.brand_owner_id, NotificationType.WORK_SUBMITTED, {
                "conversation_id": conversation.id,
            })],
        )

    def _request_revision(self, conversation: Conversation, command: Command) -> Step:
        note = command.payload["note"].strip()
        flow_data = dict(conversation.flow_data or {})
        flow_data["revision_note"] = note
        flow_data["revisions"] = int(flow_data.get("revisions") or 0) + 1
        return Step(
            to_state=FlowState.WORK_IN_PROGRESS,
            text=f"Brand owner has requested a revision: {note}",
            patch={"flow_data": flow_data},
            params={"note": note},
            request_status=RequestStatus.PAID,
            notifications=[(conversation.influencer_id, NotificationType.REVISION_REQUESTED, {
                "conversation_id": conversation.id, "note": note,
            })],
        )

    def _approve_work(self, conversation: Conversation, command: Command) -> Step:
        def release(conv: Conversation):
            hold = self.ledger.locked_hold_for(conv.id)
            if hold is None:
                raise InvariantViolation("Approved work has no locked escrow hold", conversation_id=conv.id)
            self.ledger.release(hold.id, request_id=conv.request_id)

        return Step(
            to_state=FlowState.WORK_APPROVED,
            text=(
                f"Work approved. The payment of {format_amount(conversation.final_agreed_amount)} "
                f"has been released to the influencer's wallet, less the platform commission."
            ),
            request_status=RequestStatus.WORK_APPROVED,
            effect=release,
            notifications=[(conversation.influencer_id, NotificationType.PAYMENT_RELEASED, {
                "conversation_id": conversation.id,
            })],
        )

    def _advance_to_realtime(self, conversation: Conversation, command: Command) -> Step:
        return Step(
            to_state=FlowState.REAL_TIME,
            text="The collaboration is complete. You can now chat freely.",
            request_status=RequestStatus.COMPLETED,
            inform=conversation.influencer_id,
        )

    def _send_text(self, conversation: Conversation, command: Command) -> Step:
        return Step(to_state=FlowState.REAL_TIME, text=command.payload["body"])

    def _timeout(self, conversation: Conversation, command: Command) -> Step:
        idle_since = conversation.last_action_at or conversation.updated_at
        threshold = self.clock() - timedelta(hours=NEGOTIATION_IDLE_TIMEOUT_HOURS)
        if idle_since is not None and idle_since > threshold:
            raise IllegalTransition(
                "Conversation is not idle",
                flow_state=conversation.flow_state.value,
                last_action_at=idle_since.isoformat(),
            )

        hold = self.ledger.locked_hold_for(conversation.id)
        notifications = []
        text = f"This conversation was closed after {NEGOTIATION_IDLE_TIMEOUT_HOURS} hours without activity."
        if hold is not None:
            text += f" {format_amount(hold.amount_minor)} has been returned to the brand owner's wallet."
            notifications.append((hold.payer_user_id, NotificationType.ESCROW_REFUNDED, {
                "conversation_id": conversation.id, "amount": format_amount(hold.amount_minor),
            }))

        def refund(conv: Conversation):
            if hold is not None:
                self.ledger.refund(hold.id, request_id=conv.request_id)

        return Step(
            to_state=FlowState.CLOSED,
            text=text,
            request_status=RequestStatus.REJECTED,
            effect=refund,
            notifications=notifications,
        )


def get_flow_engine(db: Session, settings: Optional[SettingsHolder] = None) -> FlowEngine:
    return FlowEngine(db, settings)
