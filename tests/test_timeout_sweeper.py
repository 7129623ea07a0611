from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from config.app_config import NEGOTIATION_IDLE_TIMEOUT_HOURS
from core.errors import IllegalTransition
from database.models import Notification, SYSTEM_USER_ID, utcnow
from database.chat_models import (
    AwaitingRole,
    ChatStatus,
    Conversation,
    FlowState,
    Message,
    MessageType,
    RequestStatus,
)
from database.ledger_models import EscrowHold, EscrowStatusDB, Wallet
from services.action_messages import resolve_button
from services.conversation_store import ConversationStore
from services.flow_engine import FlowEngine
from services.timeout_sweeper import run_sweep, sweep_idle_conversations


def backdate(db, conversation, hours=NEGOTIATION_IDLE_TIMEOUT_HOURS + 1, **values):
    values["last_action_at"] = utcnow() - timedelta(hours=hours)
    db.query(Conversation).filter(Conversation.id == conversation.id).update(values, synchronize_session=False)
    db.commit()
    db.expire_all()


def test_idle_paid_conversation_is_closed_and_refunded(db, settings, open_conversation, act, fund, brand, influencer):
    fund(brand, 300000)
    conversation = open_conversation()
    act(conversation, brand, "send_price_offer", {"amount": 300000})
    act(conversation, influencer, "accept_price")
    kind, payload = resolve_button(conversation, "pay_from_wallet")
    act(conversation, brand, kind, payload)
    backdate(db, conversation)

    stats = sweep_idle_conversations(db, settings)

    assert stats == {"closed": 1, "advanced": 0, "skipped": 0}
    db.expire_all()
    assert conversation.flow_state == FlowState.CLOSED
    assert conversation.chat_status == ChatStatus.CLOSED
    assert conversation.awaiting_role == AwaitingRole.NONE
    assert conversation.request.status == RequestStatus.REJECTED

    wallet = db.query(Wallet).filter(Wallet.user_id == brand.id).one()
    assert (wallet.available, wallet.frozen) == (300000, 0)
    hold = db.query(EscrowHold).filter(EscrowHold.conversation_id == conversation.id).one()
    assert hold.status == EscrowStatusDB.REFUNDED

    last = ConversationStore(db).last_message(conversation.id)
    assert last.message_type == MessageType.SYSTEM
    assert last.sender_id == SYSTEM_USER_ID
    assert last.receiver_id == brand.id
    assert "returned" in last.body
    assert db.query(Notification).filter(
        Notification.user_id == brand.id, Notification.type == "escrow_refunded"
    ).count() == 1


def test_idle_negotiation_is_closed_without_ledger_movement(db, settings, open_conversation, act, brand):
    conversation = open_conversation()
    act(conversation, brand, "send_price_offer", {"amount": 300000})
    backdate(db, conversation)

    stats = sweep_idle_conversations(db, settings)

    assert stats["closed"] == 1
    db.expire_all()
    assert conversation.flow_state == FlowState.CLOSED
    assert db.query(Wallet).filter(Wallet.frozen > 0).count() == 0


def test_database_error_on_one_conversation_does_not_stop_the_sweep(db, settings, open_conversation, act, brand, monkeypatch):
    broken = open_conversation(campaign_id="campaign-1")
    healthy = open_conversation(campaign_id="campaign-2")
    for conversation in (broken, healthy):
        act(conversation, brand, "send_price_offer", {"amount": 300000})
        backdate(db, conversation)

    broken_id = broken.id
    real_handle = FlowEngine.handle

    def flaky_handle(self, command):
        if command.conversation_id == broken_id:
            raise OperationalError("UPDATE conversations", {}, Exception("database is locked"))
        return real_handle(self, command)

    monkeypatch.setattr(FlowEngine, "handle", flaky_handle)

    stats = sweep_idle_conversations(db, settings)

    assert stats == {"closed": 1, "advanced": 0, "skipped": 1}
    db.expire_all()
    assert healthy.flow_state == FlowState.CLOSED
    assert broken.flow_state == FlowState.INFLUENCER_PRICE_RESPONSE


def test_recent_conversations_are_left_alone(db, settings, open_conversation, act, brand):
    conversation = open_conversation()
    act(conversation, brand, "send_price_offer", {"amount": 300000})
    backdate(db, conversation, hours=NEGOTIATION_IDLE_TIMEOUT_HOURS - 1)

    assert sweep_idle_conversations(db, settings)["closed"] == 0
    assert conversation.flow_state == FlowState.INFLUENCER_PRICE_RESPONSE


def test_timeout_command_checks_idleness(open_conversation, act):
    conversation = open_conversation()

    with pytest.raises(IllegalTransition):
        act(conversation, SYSTEM_USER_ID, "timeout")


def test_free_form_chats_never_time_out(db, settings, brand, influencer):
    conversation, _ = ConversationStore(db).get_or_create_direct(brand.id, influencer.id)
    db.commit()
    backdate(db, conversation, hours=1000)

    assert sweep_idle_conversations(db, settings)["closed"] == 0
    assert conversation.flow_state == FlowState.REAL_TIME


def test_stuck_approval_is_advanced(db, settings, open_conversation):
    conversation = open_conversation()
    db.query(Conversation).filter(Conversation.id == conversation.id).update({
        "flow_state": FlowState.WORK_APPROVED,
        "awaiting_role": AwaitingRole.NONE,
        "chat_status": ChatStatus.REALTIME,
    }, synchronize_session=False)
    db.commit()

    stats = sweep_idle_conversations(db, settings)

    assert stats["advanced"] == 1
    db.expire_all()
    assert conversation.flow_state == FlowState.REAL_TIME
    assert conversation.request.status == RequestStatus.COMPLETED
    message = ConversationStore(db).last_message(conversation.id)
    assert message.receiver_id == conversation.influencer_id


def test_run_sweep_uses_its_own_session(db, hub, settings, session_factory, open_conversation, act, brand):
    conversation = open_conversation()
    act(conversation, brand, "send_price_offer", {"amount": 300000})
    backdate(db, conversation)
    batches = len(hub.batches)

    stats = run_sweep(session_factory, settings, hub)

    assert stats["closed"] == 1
    assert len(hub.batches) == batches + 1
    db.expire_all()
    assert db.query(Message).filter(
        Message.conversation_id == conversation.id,
        Message.message_type == MessageType.SYSTEM,
    ).count() == 1
