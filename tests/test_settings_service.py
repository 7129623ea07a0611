from decimal import Decimal

import pytest

from core.errors import InvalidAmount
from database.models import SettingsAudit, SystemSetting
from services.settings_service import COMMISSION_RATE_KEY, SettingsHolder, SettingsService


def test_defaults_apply_without_a_row(db, settings):
    assert settings.commission_rate_pct(db) == Decimal("10")
    assert settings.commission_bps(db) == 1000


def test_update_is_audited_and_invalidates_after_commit(db, settings, admin):
    invalidated = []
    settings.on_invalidate(invalidated.append)
    assert settings.commission_bps(db) == 1000

    SettingsService(db, settings).update(COMMISSION_RATE_KEY, 12.5, changed_by=admin.id)

    # Not committed yet: the cached value stands
    assert invalidated == []
    assert settings.commission_bps(db) == 1000

    db.commit()

    assert invalidated == [COMMISSION_RATE_KEY]
    assert settings.commission_rate_pct(db) == Decimal("12.5")
    assert settings.commission_bps(db) == 1250

    audit = db.query(SettingsAudit).one()
    assert audit.key == COMMISSION_RATE_KEY
    assert audit.old_value is None
    assert audit.new_value == "12.5"
    assert audit.changed_by == admin.id


def test_second_update_records_previous_value(db, settings, admin):
    service = SettingsService(db, settings)
    service.update(COMMISSION_RATE_KEY, "15", changed_by=admin.id)
    db.commit()
    service.update(COMMISSION_RATE_KEY, "20", changed_by=admin.id)
    db.commit()

    audits = db.query(SettingsAudit).order_by(SettingsAudit.id).all()
    assert [(a.old_value, a.new_value) for a in audits] == [(None, "15"), ("15", "20")]
    assert db.get(SystemSetting, COMMISSION_RATE_KEY).value == "20"
    assert settings.commission_bps(db) == 2000


@pytest.mark.parametrize("value", [-1, 101, "abc", True, "NaN"])
def test_commission_rate_must_be_a_percentage(db, settings, admin, value):
    with pytest.raises(InvalidAmount):
        SettingsService(db, settings).update(COMMISSION_RATE_KEY, value, changed_by=admin.id)

    db.rollback()
    assert db.query(SettingsAudit).count() == 0


def test_unvalidated_keys_are_stored_as_given(db, settings, admin):
    service = SettingsService(db, settings)
    service.update("direct_chat_enabled", True, changed_by=admin.id)
    db.commit()

    values = service.all_settings()
    assert values["direct_chat_enabled"] is True
    assert values[COMMISSION_RATE_KEY] == "10"


def test_holder_defaults_can_be_overridden(db):
    holder = SettingsHolder({COMMISSION_RATE_KEY: "7.5"})
    assert holder.commission_bps(db) == 750
