import pytest

from core.errors import InsufficientFunds, InvariantViolation
from database.models import PLATFORM_USER_ID
from database.ledger_models import EscrowStatusDB, LedgerEntry, LedgerKind, Wallet
from services.ledger_service import LedgerService, split_commission
from services.settings_service import SettingsService


@pytest.fixture
def ledger(db, settings):
    return LedgerService(db, settings)


def balances(db, user_id):
    wallet = db.query(Wallet).filter(Wallet.user_id == user_id).first()
    return (wallet.available, wallet.frozen, wallet.withdrawn) if wallet else (0, 0, 0)


@pytest.mark.parametrize("amount, bps, expected", [
    (300000, 1000, (30000, 270000)),
    (999, 1000, (99, 900)),
    (100, 0, (0, 100)),
    (100, 10000, (100, 0)),
    (625000, 1250, (78125, 546875)),
])
def test_split_commission(amount, bps, expected):
    fee, payout = split_commission(amount, bps)
    assert (fee, payout) == expected
    assert fee + payout == amount


def test_deposit_is_idempotent_per_gateway_payment(db, ledger, brand):
    first, created = ledger.deposit(brand.id, 50000, "pay_123")
    db.commit()
    again, created_again = ledger.deposit(brand.id, 50000, "pay_123")
    db.commit()

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert balances(db, brand.id) == (50000, 0, 0)
    assert db.query(LedgerEntry).filter(LedgerEntry.kind == LedgerKind.DEPOSIT).count() == 1


def test_freeze_needs_available_balance(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 1000)
    conversation = open_conversation()

    with pytest.raises(InsufficientFunds) as exc:
        ledger.freeze(brand.id, 5000, conversation.id, influencer.id)

    assert exc.value.extra == {"available": 1000, "required": 5000}
    db.rollback()
    assert balances(db, brand.id) == (1000, 0, 0)


def test_freeze_then_refund_restores_the_payer(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 300000)
    conversation = open_conversation()

    hold = ledger.freeze(brand.id, 200000, conversation.id, influencer.id)
    db.commit()
    assert balances(db, brand.id) == (100000, 200000, 0)

    ledger.refund(hold.id)
    db.commit()
    assert balances(db, brand.id) == (300000, 0, 0)
    assert hold.status == EscrowStatusDB.REFUNDED

    # Refunding again changes nothing
    ledger.refund(hold.id)
    db.commit()
    assert balances(db, brand.id) == (300000, 0, 0)
    assert ledger.reconcile(brand.id) == {"available": 300000, "frozen": 0, "withdrawn": 0}


def test_one_locked_hold_per_conversation(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 300000)
    conversation = open_conversation()
    ledger.freeze(brand.id, 100000, conversation.id, influencer.id)
    db.commit()

    with pytest.raises(InvariantViolation):
        ledger.freeze(brand.id, 100000, conversation.id, influencer.id)


def test_release_pays_out_net_of_commission(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 300000)
    conversation = open_conversation()
    hold = ledger.freeze(brand.id, 300000, conversation.id, influencer.id)
    db.commit()

    ledger.release(hold.id)
    db.commit()

    assert balances(db, brand.id) == (0, 0, 0)
    assert balances(db, influencer.id) == (270000, 0, 0)
    assert balances(db, PLATFORM_USER_ID) == (30000, 0, 0)
    assert hold.status == EscrowStatusDB.RELEASED
    assert hold.commission_bps == 1000

    # A second release is a no-op
    ledger.release(hold.id)
    db.commit()
    assert balances(db, influencer.id) == (270000, 0, 0)


def test_commission_is_read_at_release_time(db, ledger, settings, fund, open_conversation, brand, influencer, admin):
    fund(brand, 300000)
    conversation = open_conversation()
    hold = ledger.freeze(brand.id, 300000, conversation.id, influencer.id)
    db.commit()

    SettingsService(db, settings).update("commission_rate_pct", 5, changed_by=admin.id)
    db.commit()
    ledger.release(hold.id)
    db.commit()

    assert balances(db, PLATFORM_USER_ID) == (15000, 0, 0)
    assert balances(db, influencer.id) == (285000, 0, 0)
    assert hold.commission_bps == 500


def test_released_and_refunded_holds_are_final(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 600000)
    first = open_conversation(campaign_id="campaign-1")
    second = open_conversation(campaign_id="campaign-2")
    released = ledger.freeze(brand.id, 300000, first.id, influencer.id)
    refunded = ledger.freeze(brand.id, 300000, second.id, influencer.id)
    ledger.release(released.id)
    ledger.refund(refunded.id)
    db.commit()

    with pytest.raises(InvariantViolation):
        ledger.refund(released.id)
    with pytest.raises(InvariantViolation):
        ledger.release(refunded.id)


def test_withdraw_moves_funds_to_withdrawn(db, ledger, fund, influencer):
    fund(influencer, 50000)

    ledger.withdraw(influencer.id, 20000)
    db.commit()
    assert balances(db, influencer.id) == (30000, 0, 20000)

    with pytest.raises(InsufficientFunds):
        ledger.withdraw(influencer.id, 40000)


def test_reconcile_detects_a_tampered_wallet(db, ledger, fund, brand):
    fund(brand, 50000)
    assert ledger.reconcile(brand.id)["available"] == 50000

    wallet = db.query(Wallet).filter(Wallet.user_id == brand.id).one()
    wallet.available = 60000
    db.commit()

    with pytest.raises(InvariantViolation) as exc:
        ledger.reconcile(brand.id)
    assert exc.value.extra["expected"]["available"] == 50000
    assert exc.value.extra["actual"]["available"] == 60000


def test_money_is_conserved_across_a_full_cycle(db, ledger, fund, open_conversation, brand, influencer):
    fund(brand, 400000)
    conversation = open_conversation()
    hold = ledger.freeze(brand.id, 300000, conversation.id, influencer.id)
    ledger.release(hold.id)
    ledger.withdraw(influencer.id, 100000)
    db.commit()

    assert ledger.check_conservation() == 400000
    for user_id in (brand.id, influencer.id, PLATFORM_USER_ID):
        ledger.reconcile(user_id)
