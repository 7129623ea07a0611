import asyncio

import pytest

from core.errors import RoleMismatch
from database.chat_models import RealtimeOutbox
from services.conversation_store import ConversationStore
from services.realtime import (
    CONVERSATIONS_UPSERT,
    MESSAGE_NEW,
    MESSAGE_SEEN,
    OUTBOX_IDS_KEY,
    UNREAD_COUNT_UPDATED,
    USER_TYPING,
    ConnectionManager,
    RealtimeHub,
    enqueue,
    mark_conversation_seen,
    relay_typing,
    room_for,
)
from tests.conftest import RecordingManager


def outbox_rows(db, ids):
    db.expire_all()
    return db.query(RealtimeOutbox).filter(RealtimeOutbox.id.in_(ids)).order_by(RealtimeOutbox.id).all()


class FakeSocket:
    def __init__(self, broken=False):
        self.broken = broken
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(data)


# ============================================================================
# OUTBOX
# ============================================================================

def test_transition_fans_out_to_both_rooms_in_order(db, hub, open_conversation, act, brand, influencer):
    conversation = open_conversation()

    act(conversation, brand, "send_price_offer", {"amount": 300000})

    rows = outbox_rows(db, hub.batches[-1])
    assert [(row.room, row.event) for row in rows] == [
        (room_for(brand.id), MESSAGE_NEW),
        (room_for(influencer.id), MESSAGE_NEW),
        (room_for(influencer.id), UNREAD_COUNT_UPDATED),
        (room_for(brand.id), CONVERSATIONS_UPSERT),
        (room_for(influencer.id), CONVERSATIONS_UPSERT),
    ]
    assert rows[0].payload == rows[1].payload
    assert rows[2].payload["action"] == "increment"

    store = ConversationStore(db)
    for row, user in ((rows[3], brand), (rows[4], influencer)):
        assert row.payload["flow_state"] == "influencer_price_response"
        assert row.payload["version"] == 1
        assert row.payload["unread_count"] == store.unread_count(conversation.id, user.id)
        assert row.payload["other_user"]["id"] == conversation.other_participant(user.id)


def test_rolled_back_events_never_reach_the_hub(db, hub, open_conversation):
    conversation = open_conversation()
    batches = len(hub.batches)

    enqueue(db, conversation.brand_owner_id, MESSAGE_NEW, {"x": 1}, conversation.id)
    assert db.info[OUTBOX_IDS_KEY]
    db.rollback()

    assert OUTBOX_IDS_KEY not in db.info
    db.commit()
    assert len(hub.batches) == batches
    assert db.query(RealtimeOutbox).filter(RealtimeOutbox.event == MESSAGE_NEW).count() == 2


def test_seen_receipt_notifies_the_sender(db, hub, open_conversation, brand, influencer):
    conversation = open_conversation()

    changed = mark_conversation_seen(db, conversation.id, brand.id)

    assert len(changed) == 1
    rows = outbox_rows(db, hub.batches[-1])
    assert [(row.room, row.event) for row in rows] == [
        (room_for(influencer.id), MESSAGE_SEEN),
        (room_for(brand.id), UNREAD_COUNT_UPDATED),
    ]
    assert rows[0].payload["message_ids"] == changed
    assert rows[1].payload == {"conversation_id": conversation.id, "unread_count": 0, "action": "reset"}


def test_seen_with_nothing_new_emits_nothing(db, hub, open_conversation, influencer):
    conversation = open_conversation()
    batches = len(hub.batches)

    assert mark_conversation_seen(db, conversation.id, influencer.id) == []
    assert len(hub.batches) == batches


def test_seen_by_outsider_is_rejected(db, open_conversation, outsider):
    conversation = open_conversation()

    with pytest.raises(RoleMismatch):
        mark_conversation_seen(db, conversation.id, outsider.id)


async def test_typing_is_relayed_without_touching_the_outbox(db, open_conversation, influencer, brand, outsider):
    conversation = open_conversation()
    manager = RecordingManager()
    rows = db.query(RealtimeOutbox).count()

    await relay_typing(db, manager, conversation.id, influencer.id, True)

    assert manager.emitted == [(
        room_for(brand.id), USER_TYPING,
        {"conversation_id": conversation.id, "user_id": influencer.id, "is_typing": True},
    )]
    assert db.query(RealtimeOutbox).count() == rows

    with pytest.raises(RoleMismatch):
        await relay_typing(db, manager, conversation.id, outsider.id, True)
    assert len(manager.emitted) == 1


# ============================================================================
# HUB
# ============================================================================

async def test_dispatch_emits_committed_rows_once(db, hub, session_factory, open_conversation, act, brand):
    conversation = open_conversation()
    act(conversation, brand, "send_price_offer", {"amount": 300000})
    manager = RecordingManager()
    realtime = RealtimeHub(manager, session_factory)

    emitted = await realtime.dispatch(hub.ids)

    assert emitted == len(hub.ids)
    assert [e[1] for e in manager.emitted[:2]] == [MESSAGE_NEW, MESSAGE_NEW]
    assert all(row.dispatched_at is not None for row in outbox_rows(db, hub.ids))

    assert await realtime.dispatch(hub.ids) == 0
    assert len(manager.emitted) == emitted


async def test_redeliver_picks_up_undispatched_rows(db, hub, session_factory, open_conversation):
    open_conversation()
    manager = RecordingManager()
    realtime = RealtimeHub(manager, session_factory)

    assert await realtime.redeliver(older_than_seconds=0) == len(hub.ids)
    assert await realtime.redeliver(older_than_seconds=0) == 0


async def test_hub_drains_backlog_once_started(hub, session_factory, open_conversation):
    open_conversation()
    manager = RecordingManager()
    realtime = RealtimeHub(manager, session_factory)

    # Commits that land before the loop is up are queued, not lost
    realtime.notify_committed(hub.ids)
    realtime.start()
    task = asyncio.create_task(realtime.run())
    try:
        for _ in range(100):
            if len(manager.emitted) == len(hub.ids):
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        realtime.stop()

    assert len(manager.emitted) == len(hub.ids)


async def test_connection_manager_drops_dead_sockets():
    manager = ConnectionManager()
    alive, dead = FakeSocket(), FakeSocket(broken=True)
    await manager.connect(alive, "u1")
    await manager.connect(dead, "u1")

    delivered = await manager.emit(room_for("u1"), MESSAGE_NEW, {"id": "m1"})

    assert delivered == 1
    assert alive.sent == [{"event": MESSAGE_NEW, "data": {"id": "m1"}}]
    assert manager.rooms[room_for("u1")] == {alive}

    manager.disconnect(alive, "u1")
    assert room_for("u1") not in manager.rooms
    assert await manager.emit(room_for("u1"), MESSAGE_NEW, {}) == 0
