# Settings Service for the Influence Chat platform
# Owns the process-local settings cache and the audited update path

import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from config.app_config import DEFAULT_COMMISSION_RATE_PCT
from core.errors import InvalidAmount
from database.models import SystemSetting, SettingsAudit

logger = logging.getLogger(__name__)

COMMISSION_RATE_KEY = "commission_rate_pct"

DEFAULTS: Dict[str, Any] = {
    COMMISSION_RATE_KEY: DEFAULT_COMMISSION_RATE_PCT,
}


class SettingsHolder:
    """
    Read-through cache over the system_settings table.

    One holder is created by the application and handed to whoever needs
    settings. Updates call `invalidate()`; listeners registered with
    `on_invalidate()` are told which key changed.
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None):
        self._defaults = dict(DEFAULTS if defaults is None else defaults)
        self._cache: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._listeners: List[Callable[[Optional[str]], None]] = []

    def get(self, db: Session, key: str) -> Any:
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        row = db.get(SystemSetting, key)
        value = row.value if row is not None else self._defaults.get(key)

        with self._lock:
            self._cache[key] = value
        return value

    @property
    def defaults(self) -> Dict[str, Any]:
        return dict(self._defaults)

    def invalidate(self, key: Optional[str] = None):
        """Drop one key (or everything) from the cache and tell listeners."""
        with self._lock:
            if key is None:
                self._cache.clear()
            else:
                self._cache.pop(key, None)
        logger.info(f"Settings cache invalidated: {key or 'all'}")
        for listener in list(self._listeners):
            listener(key)

    def on_invalidate(self, listener: Callable[[Optional[str]], None]):
        self._listeners.append(listener)

    def commission_rate_pct(self, db: Session) -> Decimal:
        return parse_commission_rate(self.get(db, COMMISSION_RATE_KEY))

    def commission_bps(self, db: Session) -> int:
        """Commission in basis points, e.g. 10% -> 1000."""
        return int(self.commission_rate_pct(db) * 100)


def parse_commission_rate(value: Any) -> Decimal:
    """Commission percentages are stored as JSON numbers or strings."""
    if isinstance(value, bool):
        raise InvalidAmount("commission_rate_pct must be a number")
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmount(f"commission_rate_pct must be a number, got {value!r}")
    if not pct.is_finite() or pct < 0 or pct > 100:
        raise InvalidAmount("commission_rate_pct must be between 0 and 100", value=str(value))
    return pct


class SettingsService:
    """Audited writes to system settings."""

    VALIDATORS: Dict[str, Callable[[Any], Any]] = {
        COMMISSION_RATE_KEY: lambda v: str(parse_commission_rate(v)),
    }

    def __init__(self, db: Session, holder: SettingsHolder):
        self.db = db
        self.holder = holder

    def all_settings(self) -> Dict[str, Any]:
        values = self.holder.defaults
        for row in self.db.query(SystemSetting).all():
            values[row.key] = row.value
        return values

    def update(self, key: str, value: Any, changed_by: Optional[str] = None) -> SystemSetting:
        """
        Write a setting and its audit row. The cache is invalidated once the
        caller's transaction commits, so other sessions never cache an
        uncommitted value.
        """
        validator = self.VALIDATORS.get(key)
        if validator is not None:
            value = validator(value)

        row = self.db.get(SystemSetting, key)
        old_value = row.value if row is not None else None
        if row is None:
            row = SystemSetting(key=key, value=value, updated_by=changed_by)
            self.db.add(row)
        else:
            row.value = value
            row.updated_by = changed_by

        self.db.add(SettingsAudit(
            key=key,
            old_value=old_value,
            new_value=value,
            changed_by=changed_by,
        ))
        self.db.flush()

        holder = self.holder
        event.listen(self.db, "after_commit", lambda session: holder.invalidate(key), once=True)
        logger.info(f"Setting {key} changed from {old_value!r} to {value!r} by {changed_by}")
        return row


def get_settings_service(db: Session, holder: SettingsHolder) -> SettingsService:
    return SettingsService(db, holder)
