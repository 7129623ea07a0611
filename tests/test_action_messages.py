import pytest

from config.app_config import MAX_NEGOTIATION_ROUNDS
from core.errors import IllegalTransition
from database.chat_models import AwaitingRole, Conversation, FlowState
from services.action_messages import (
    PAY_FROM_WALLET,
    buttons_for,
    format_amount,
    render_action,
    resolve_button,
)
from services.flow_engine import STATE_TABLE, CommandKind, legal_kinds


def make_conversation(state, negotiation_round=0, flow_data=None, **fields):
    return Conversation(
        id="conv-1",
        brand_owner_id="brand-1",
        influencer_id="influencer-1",
        flow_state=state,
        awaiting_role=STATE_TABLE[state][0],
        negotiation_round=negotiation_round,
        flow_data=flow_data or {},
        **fields,
    )


def ids(conversation):
    return [b["id"] for b in buttons_for(conversation)]


@pytest.mark.parametrize("state", list(FlowState))
def test_every_button_maps_to_a_legal_command(state):
    conversation = make_conversation(state)
    awaiting = conversation.awaiting_role.value
    legal = {k.value for k in legal_kinds(state, conversation.negotiation_round)}

    for button in buttons_for(conversation):
        assert button["enabled_for_role"] == awaiting
        kind = "payment_confirmed" if button["id"] == PAY_FROM_WALLET else button["id"]
        assert kind in legal


@pytest.mark.parametrize("state", [FlowState.WORK_APPROVED, FlowState.REAL_TIME, FlowState.CLOSED])
def test_terminal_and_free_form_states_render_no_buttons(state):
    assert buttons_for(make_conversation(state)) == []


def test_counter_offer_hides_negotiate_at_round_limit():
    assert ids(make_conversation(FlowState.INFLUENCER_PRICE_RESPONSE, 1)) == [
        "accept_price", "reject_price", "negotiate_price",
    ]
    assert ids(make_conversation(FlowState.INFLUENCER_PRICE_RESPONSE, MAX_NEGOTIATION_ROUNDS)) == [
        "accept_price", "reject_price",
    ]


def test_final_offer_flag_restricts_final_response():
    open_offer = make_conversation(FlowState.INFLUENCER_FINAL_RESPONSE, 1, {"final_offer": False})
    final = make_conversation(FlowState.INFLUENCER_FINAL_RESPONSE, 1, {"final_offer": True})

    assert "continue_negotiate" in ids(open_offer)
    assert ids(final) == ["accept_negotiated_price", "reject_negotiated_price"]


def test_render_action_describes_the_current_state():
    conversation = make_conversation(FlowState.INFLUENCER_PRICE_RESPONSE, 0, current_offer_amount=300000)

    action = render_action(conversation, "Offer received", {"extra": 1})

    assert action["component"] == "counter_offer"
    assert action["visible_to"] == ["influencer"]
    assert action["params"]["text"] == "Offer received"
    assert action["params"]["current_offer_amount"] == 300000
    assert action["params"]["max_rounds"] == MAX_NEGOTIATION_ROUNDS
    assert action["params"]["extra"] == 1
    negotiate = action["buttons"][-1]
    assert negotiate["input"]["field"] == "amount"


def test_click_ignores_additional_data():
    conversation = make_conversation(FlowState.BRAND_OWNER_NEGOTIATION, 1)

    kind, payload = resolve_button(
        conversation,
        "agree_negotiation",
        {},
        {"action": "reject", "flow_state": "closed", "amount": 1},
    )

    assert kind == CommandKind.AGREE_NEGOTIATION.value
    assert payload == {}


def test_click_keeps_only_declared_input_fields():
    conversation = make_conversation(FlowState.INITIAL_OFFER)

    kind, payload = resolve_button(
        conversation,
        "send_price_offer",
        {"amount": 300000, "flow_state": "payment_pending", "final_agreed_amount": 1},
    )

    assert kind == "send_price_offer"
    assert payload == {"amount": 300000}


def test_submit_work_click_carries_attachments_and_note():
    conversation = make_conversation(FlowState.WORK_IN_PROGRESS)

    kind, payload = resolve_button(
        conversation,
        "submit_work",
        {"attachments": ["https://cdn.test/a.png"], "note": "draft", "approved": True},
    )

    assert kind == "submit_work"
    assert payload == {"attachments": ["https://cdn.test/a.png"], "note": "draft"}


def test_button_from_another_state_is_rejected():
    conversation = make_conversation(FlowState.INFLUENCER_PRICE_RESPONSE)

    with pytest.raises(IllegalTransition) as exc:
        resolve_button(conversation, "approve_work")

    assert exc.value.extra["allowed_buttons"] == ["accept_price", "reject_price", "negotiate_price"]


def test_pay_from_wallet_becomes_payment_confirmation():
    conversation = make_conversation(FlowState.PAYMENT_PENDING, final_agreed_amount=300000)

    kind, payload = resolve_button(conversation, PAY_FROM_WALLET, {"gateway_ref": "forged"})

    assert kind == "payment_confirmed"
    assert payload == {"gateway_ref": "wallet:conv-1", "source": "wallet"}


def test_format_amount():
    assert format_amount(300000) == "₹3,000.00"
    assert format_amount(None) == "-"
