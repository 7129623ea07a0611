from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from core.errors import InvalidPayload, NotFound, RoleMismatch
from database.models import User, UserType
from database.chat_models import AwaitingRole, ChatStatus, Conversation, FlowState, Message
from services.conversation_store import ConversationStore, decode_cursor, encode_cursor


@pytest.fixture
def store(db):
    return ConversationStore(db)


@pytest.fixture
def direct(db, store, brand, influencer):
    conversation, _ = store.get_or_create_direct(brand.id, influencer.id)
    db.commit()
    return conversation


def send(store, conversation, sender, receiver, body):
    return store.append_message(conversation, sender_id=sender.id, receiver_id=receiver.id, body=body)


def test_direct_chat_is_created_once_in_real_time(db, store, brand, influencer, direct):
    again, created = store.get_or_create_direct(brand.id, influencer.id)

    assert created is False
    assert again.id == direct.id
    assert direct.flow_state == FlowState.REAL_TIME
    assert direct.chat_status == ChatStatus.REALTIME
    assert direct.awaiting_role == AwaitingRole.NONE
    assert direct.request_id is None


def test_direct_chat_is_separate_from_request_chats(db, store, open_conversation, brand, influencer):
    bound = open_conversation()
    direct, created = store.get_or_create_direct(brand.id, influencer.id)

    assert created is True
    assert direct.id != bound.id


def test_second_direct_chat_for_a_pair_is_rejected(db, direct, brand, influencer):
    db.add(Conversation(
        brand_owner_id=brand.id,
        influencer_id=influencer.id,
        chat_status=ChatStatus.REALTIME,
        flow_state=FlowState.REAL_TIME,
        awaiting_role=AwaitingRole.NONE,
    ))

    with pytest.raises(IntegrityError):
        db.flush()
    db.rollback()


def test_concurrent_first_messages_share_one_direct_chat(db, session_factory, store, brand, influencer, monkeypatch):
    other = session_factory()
    winner, created = ConversationStore(other).get_or_create_direct(brand.id, influencer.id)
    other.commit()
    winner_id = winner.id
    other.close()
    assert created is True

    # The losing request looked before the winner committed
    real_find = store._find_direct
    lookups = []

    def stale_find(brand_owner_id, influencer_id):
        lookups.append(brand_owner_id)
        return None if len(lookups) == 1 else real_find(brand_owner_id, influencer_id)

    monkeypatch.setattr(store, "_find_direct", stale_find)

    conversation, created = store.get_or_create_direct(brand.id, influencer.id)

    assert created is False
    assert conversation.id == winner_id
    assert len(lookups) == 2
    assert db.query(Conversation).filter(Conversation.request_id.is_(None)).count() == 1


def test_message_timestamps_strictly_increase(db, store, direct, brand, influencer, monkeypatch):
    frozen = datetime(2030, 1, 1, 12, 0, 0)
    monkeypatch.setattr("services.conversation_store.utcnow", lambda: frozen)

    messages = [send(store, direct, brand, influencer, f"m{i}") for i in range(4)]
    db.commit()

    stamps = [m.created_at for m in messages]
    assert stamps[0] == frozen
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_history_pages_backwards_oldest_first(db, store, direct, brand, influencer):
    sent = [send(store, direct, brand, influencer, f"m{i}") for i in range(5)]
    db.commit()

    latest = store.history(direct.id, limit=2)
    assert [m.body for m in latest] == ["m3", "m4"]

    older = store.history(direct.id, before=latest[0].id, limit=2)
    assert [m.body for m in older] == ["m1", "m2"]

    oldest = store.history(direct.id, before=older[0].id, limit=10)
    assert [m.id for m in oldest] == [sent[0].id]

    with pytest.raises(NotFound):
        store.history(direct.id, before="missing")


def test_mark_seen_only_touches_the_readers_inbound_messages(db, store, direct, brand, influencer):
    inbound = [send(store, direct, brand, influencer, f"hi {i}") for i in range(3)]
    send(store, direct, influencer, brand, "reply")
    db.commit()

    assert store.unread_count(direct.id, influencer.id) == 3
    assert store.unread_count(direct.id, brand.id) == 1

    assert store.mark_seen(direct, influencer.id, [inbound[0].id]) == [inbound[0].id]
    assert store.unread_count(direct.id, influencer.id) == 2

    assert sorted(store.mark_seen(direct, influencer.id)) == sorted(m.id for m in inbound[1:])
    assert store.mark_seen(direct, influencer.id) == []
    assert store.unread_count(direct.id, brand.id) == 1

    seen = db.query(Message).filter(Message.id == inbound[0].id).one()
    assert seen.seen is True
    assert seen.seen_at is not None


def test_load_for_participant_rejects_outsiders(store, direct, outsider):
    with pytest.raises(RoleMismatch):
        store.load_for_participant(direct.id, outsider.id)
    with pytest.raises(NotFound):
        store.load_for_participant("missing", outsider.id)


def test_list_for_user_pages_by_cursor(db, store, brand):
    creators = []
    for i in range(3):
        user = User(email=f"creator{i}@example.com", name=f"Creator {i}", user_type=UserType.INFLUENCER)
        db.add(user)
        creators.append(user)
    db.flush()
    for user in creators:
        store.get_or_create_direct(brand.id, user.id)
    db.commit()

    first, cursor = store.list_for_user(brand.id, limit=2)
    assert len(first) == 2
    assert cursor is not None

    rest, end = store.list_for_user(brand.id, cursor=cursor, limit=2)
    assert len(rest) == 1
    assert end is None

    seen_ids = [c.id for c in first + rest]
    assert len(set(seen_ids)) == 3
    keys = [(c.updated_at, c.id) for c in first + rest]
    assert keys == sorted(keys, reverse=True)


def test_cursor_round_trip_and_garbage():
    stamp = datetime(2030, 5, 1, 8, 30, 0, 123456)
    assert decode_cursor(encode_cursor(stamp, "abc")) == (stamp, "abc")
    with pytest.raises(InvalidPayload):
        decode_cursor("not-a-cursor")
