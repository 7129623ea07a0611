# Admin Settings Router for the Influence Chat platform
# Commission rate and feature flags, plus ledger health checks

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.decorators import require_admin
from database.models import User
from routers.deps import get_chat_db, get_settings_holder
from schemas.chat import SettingUpdate
from services.ledger_service import LedgerService
from services.settings_service import SettingsHolder, SettingsService

router = APIRouter(prefix="/admin", tags=["Admin"])


# ============================================================================
# SETTINGS
# ============================================================================

@router.get("/settings")
async def get_settings(
    db: Session = Depends(get_chat_db),
    holder: SettingsHolder = Depends(get_settings_holder),
    admin: User = Depends(require_admin()),
):
    return SettingsService(db, holder).all_settings()


@router.put("/settings/{key}")
async def update_setting(
    key: str,
    data: SettingUpdate,
    db: Session = Depends(get_chat_db),
    holder: SettingsHolder = Depends(get_settings_holder),
    admin: User = Depends(require_admin()),
):
    """Audited write; the cached value is dropped once this commits."""
    try:
        row = SettingsService(db, holder).update(key, data.value, changed_by=admin.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"key": row.key, "value": row.value}


# ============================================================================
# LEDGER HEALTH
# ============================================================================

@router.get("/ledger/reconcile/{user_id}")
async def reconcile_wallet(
    user_id: str,
    db: Session = Depends(get_chat_db),
    holder: SettingsHolder = Depends(get_settings_holder),
    admin: User = Depends(require_admin()),
):
    """Recompute a wallet from its ledger; 500 with both sides if they differ."""
    return LedgerService(db, holder).reconcile(user_id)


@router.get("/ledger/conservation")
async def ledger_conservation(
    db: Session = Depends(get_chat_db),
    holder: SettingsHolder = Depends(get_settings_holder),
    admin: User = Depends(require_admin()),
):
    return {"total_minor": LedgerService(db, holder).check_conservation()}
