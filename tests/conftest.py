import os

os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_webhook_secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.models import Base, User, UserType, ensure_reserved_users
from database import chat_models, ledger_models  # noqa: F401
from services.flow_engine import Command, FlowEngine
from services.ledger_service import LedgerService
from services.realtime import ConnectionManager, bind_hub
from services.request_service import RequestService
from services.settings_service import SettingsHolder


class RecordingHub:
    """Stands in for the realtime hub; keeps committed outbox ids per commit."""

    def __init__(self):
        self.batches: list[list[int]] = []

    def notify_committed(self, ids):
        self.batches.append(list(ids))

    @property
    def ids(self) -> list[int]:
        return [i for batch in self.batches for i in batch]


class RecordingManager(ConnectionManager):
    def __init__(self):
        super().__init__()
        self.emitted: list[tuple[str, str, dict]] = []

    async def emit(self, room, event_name, payload):
        self.emitted.append((room, event_name, payload))
        return 1


class FakeGateway:
    def __init__(self):
        self.transactions: list[dict] = []
        self.transfers: list[dict] = []

    def initialize_transaction(self, email, amount, reference=None, callback_url=None, metadata=None):
        self.transactions.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        return {
            "reference": reference,
            "authorization_url": f"https://checkout.paystack.test/{reference}",
            "access_code": "test_access",
        }

    def initiate_transfer(self, amount, recipient_code, reference=None, reason=None):
        self.transfers.append({"amount": amount, "recipient_code": recipient_code, "reference": reference})
        return {"status": "pending"}


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def hub():
    return RecordingHub()


@pytest.fixture
def db(session_factory, hub):
    session = bind_hub(session_factory(), hub)
    ensure_reserved_users(session)
    session.commit()
    yield session
    session.close()


def _make_user(db, email, name, user_type):
    user = User(email=email, name=name, user_type=user_type)
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def brand(db):
    return _make_user(db, "brand@example.com", "Acme Brand", UserType.BRAND_OWNER)


@pytest.fixture
def influencer(db):
    return _make_user(db, "creator@example.com", "Creator", UserType.INFLUENCER)


@pytest.fixture
def outsider(db):
    return _make_user(db, "outsider@example.com", "Outsider", UserType.INFLUENCER)


@pytest.fixture
def admin(db):
    return _make_user(db, "admin@example.com", "Admin", UserType.ADMIN)


@pytest.fixture
def settings():
    return SettingsHolder()


@pytest.fixture
def flow(db, settings):
    return FlowEngine(db, settings)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fund(db, settings):
    """Credit a wallet as if a gateway deposit had settled."""
    counter = {"n": 0}

    def _fund(user, amount):
        counter["n"] += 1
        LedgerService(db, settings).deposit(user.id, amount, f"seed_{user.id}_{counter['n']}")
        db.commit()

    return _fund


@pytest.fixture
def open_conversation(db, brand, influencer):
    """Influencer applies, brand connects: a conversation at initial_offer."""

    def _open(campaign_id="campaign-1", proposed_amount=None):
        service = RequestService(db)
        request = service.apply(influencer, brand.id, campaign_id=campaign_id, proposed_amount=proposed_amount)
        conversation = service.connect(request.id, brand)
        db.commit()
        return conversation

    return _open


@pytest.fixture
def act(flow):
    """Run one command through the engine."""

    def _act(conversation, actor, kind, payload=None, expected_version=None):
        actor_id = actor if isinstance(actor, str) else actor.id
        return flow.handle(Command(
            conversation_id=conversation.id,
            actor_id=actor_id,
            kind=kind,
            payload=payload or {},
            expected_version=expected_version,
        ))

    return _act
