# Action Message Model for the Influence Chat platform
# Renders the buttons a client may show for a flow state and resolves clicks server-side

import logging
from typing import Any, Dict, List, Optional, Tuple

from config.app_config import CURRENCY, MAX_NEGOTIATION_ROUNDS
from core.errors import IllegalTransition
from database.chat_models import Conversation, FlowState, AwaitingRole

logger = logging.getLogger(__name__)

PAY_FROM_WALLET = "pay_from_wallet"

# Component shown for each state; terminal and free-form states render none
COMPONENTS: Dict[FlowState, str] = {
    FlowState.INITIAL_OFFER: "price_input",
    FlowState.INFLUENCER_PRICE_RESPONSE: "counter_offer",
    FlowState.BRAND_OWNER_NEGOTIATION: "negotiation_request",
    FlowState.NEGOTIATION_INPUT: "price_input",
    FlowState.INFLUENCER_FINAL_RESPONSE: "final_response",
    FlowState.BRAND_OWNER_PRICING: "price_input",
    FlowState.PAYMENT_PENDING: "payment_cta",
    FlowState.PAYMENT_COMPLETED: "work_submission",
    FlowState.WORK_IN_PROGRESS: "work_submission",
    FlowState.WORK_SUBMITTED: "work_review",
}

AMOUNT_INPUT = {"type": "amount", "field": "amount", "currency": CURRENCY, "required": True}
NOTE_INPUT = {"type": "text", "field": "note", "required": True}
SUBMISSION_INPUT = {"type": "attachments", "field": "attachments", "required": True, "note_field": "note"}

# Fields a click may carry into the command, per input type
INPUT_FIELDS = {
    "amount": ("amount",),
    "text": ("note",),
    "attachments": ("attachments", "note"),
}


def format_amount(amount_minor: Optional[int]) -> str:
    if amount_minor is None:
        return "-"
    symbol = "₹" if CURRENCY == "INR" else f"{CURRENCY} "
    return f"{symbol}{amount_minor / 100:,.2f}"


def _button(button_id: str, label: str, kind: str, role: AwaitingRole, input_spec: Optional[dict] = None) -> dict:
    button = {
        "id": button_id,
        "label": label,
        "kind": kind,
        "enabled_for_role": role.value,
    }
    if input_spec:
        button["input"] = dict(input_spec)
    return button


def is_final_offer(conversation: Conversation) -> bool:
    flow_data = conversation.flow_data or {}
    return bool(flow_data.get("final_offer")) or conversation.negotiation_round >= MAX_NEGOTIATION_ROUNDS


def buttons_for(conversation: Conversation) -> List[dict]:
    """Ordered buttons for the conversation's current state."""
    state = conversation.flow_state
    brand = AwaitingRole.BRAND_OWNER
    influencer = AwaitingRole.INFLUENCER
    can_counter = conversation.negotiation_round < MAX_NEGOTIATION_ROUNDS

    if state in (FlowState.INITIAL_OFFER, FlowState.BRAND_OWNER_PRICING):
        return [_button("send_price_offer", "Send Price Offer", "primary", brand, AMOUNT_INPUT)]

    if state == FlowState.INFLUENCER_PRICE_RESPONSE:
        buttons = [
            _button("accept_price", "Accept Offer", "primary", influencer),
            _button("reject_price", "Reject Offer", "danger", influencer),
        ]
        if can_counter:
            buttons.append(_button("negotiate_price", "Negotiate Price", "secondary", influencer, AMOUNT_INPUT))
        return buttons

    if state == FlowState.BRAND_OWNER_NEGOTIATION:
        return [
            _button("agree_negotiation", "Agree to Negotiate", "primary", brand),
            _button("reject_negotiation", "Reject Negotiation", "danger", brand),
        ]

    if state == FlowState.NEGOTIATION_INPUT:
        return [_button("send_negotiated_price", "Send New Offer", "primary", brand, AMOUNT_INPUT)]

    if state == FlowState.INFLUENCER_FINAL_RESPONSE:
        if is_final_offer(conversation):
            return [
                _button("accept_negotiated_price", "Accept Final Offer", "primary", influencer),
                _button("reject_negotiated_price", "Reject Final Offer", "danger", influencer),
            ]
        return [
            _button("accept_negotiated_price", "Accept Offer", "primary", influencer),
            _button("reject_negotiated_price", "Reject Offer", "danger", influencer),
            _button("continue_negotiate", "Continue Negotiating", "secondary", influencer, AMOUNT_INPUT),
        ]

    if state == FlowState.PAYMENT_PENDING:
        return [
            _button("initiate_payment", "Pay Now", "primary", brand),
            _button(PAY_FROM_WALLET, "Pay from Wallet", "secondary", brand),
        ]

    if state == FlowState.PAYMENT_COMPLETED:
        return [
            _button("submit_work", "Submit Work", "primary", influencer, SUBMISSION_INPUT),
            _button("start_work", "Start Working", "secondary", influencer),
        ]

    if state == FlowState.WORK_IN_PROGRESS:
        return [_button("submit_work", "Submit Work", "primary", influencer, SUBMISSION_INPUT)]

    if state == FlowState.WORK_SUBMITTED:
        return [
            _button("approve_work", "Approve Work", "primary", brand),
            _button("request_revision", "Request Revision", "secondary", brand, NOTE_INPUT),
        ]

    return []


def render_action(conversation: Conversation, text: str, extra_params: Optional[dict] = None) -> dict:
    """The `action` JSON of an automated message for the conversation's current state."""
    params = {
        "text": text,
        "currency": CURRENCY,
        "negotiation_round": conversation.negotiation_round,
        "max_rounds": MAX_NEGOTIATION_ROUNDS,
        "current_offer_amount": conversation.current_offer_amount,
        "last_counter_amount": conversation.last_counter_amount,
        "final_agreed_amount": conversation.final_agreed_amount,
    }
    if conversation.flow_state == FlowState.INFLUENCER_FINAL_RESPONSE:
        params["final_offer"] = is_final_offer(conversation)
    if extra_params:
        params.update(extra_params)

    awaiting = conversation.awaiting_role
    return {
        "component": COMPONENTS.get(conversation.flow_state, "none"),
        "params": params,
        "buttons": buttons_for(conversation),
        "visible_to": [awaiting.value] if awaiting != AwaitingRole.NONE else [],
    }


def resolve_button(
    conversation: Conversation,
    button_id: str,
    payload: Optional[Dict[str, Any]] = None,
    additional_data: Optional[Dict[str, Any]] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Map a click to (command_kind, payload) from server state alone.

    The button must be one the current state renders. `additional_data` is
    never consulted; only the free-form fields the button's input declares
    are copied from `payload`, and the engine validates them.
    """
    buttons = {b["id"]: b for b in buttons_for(conversation)}
    button = buttons.get(button_id)
    if button is None:
        raise IllegalTransition(
            f"Button '{button_id}' is not available in state {conversation.flow_state.value}",
            flow_state=conversation.flow_state.value,
            allowed_buttons=list(buttons),
        )
    if additional_data:
        logger.debug(f"Ignoring additional_data on {button_id} click in {conversation.id}")

    payload = payload or {}
    canonical: Dict[str, Any] = {}
    input_spec = button.get("input")
    if input_spec:
        for field in INPUT_FIELDS[input_spec["type"]]:
            if field in payload:
                canonical[field] = payload[field]

    if button_id == PAY_FROM_WALLET:
        return "payment_confirmed", {"gateway_ref": f"wallet:{conversation.id}", "source": "wallet"}
    return button_id, canonical
