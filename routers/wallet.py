# Wallet Router for the Influence Chat platform
# Balances, ledger history, deposits through Paystack and withdrawals

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List

from auth.decorators import require_permission
from auth.roles import Permission
from database.models import User
from routers.deps import get_chat_db, get_payment_service
from schemas.chat import (
    CheckoutResponse,
    DepositRequest,
    LedgerEntryResponse,
    WalletResponse,
    WithdrawRequest,
)
from services.payment_service import PaymentService

router = APIRouter(prefix="/wallet", tags=["Wallet"])


def _wallet_response(wallet) -> dict:
    return {"user_id": wallet.user_id, **wallet.balances()}


# ============================================================================
# WALLET ENDPOINTS
# ============================================================================

@router.get("", response_model=WalletResponse)
async def get_wallet(
    db: Session = Depends(get_chat_db),
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(require_permission(Permission.VIEW_OWN_WALLET)),
):
    """
    Get current user's wallet balances.
    Creates wallet if it doesn't exist.
    """
    wallet = payments.ledger.get_or_create_wallet(current_user.id)
    db.commit()
    return _wallet_response(wallet)


@router.get("/entries", response_model=List[LedgerEntryResponse])
async def get_entries(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(require_permission(Permission.VIEW_OWN_TRANSACTIONS)),
):
    """Ledger entries, newest first."""
    return [e.to_dict() for e in payments.ledger.entries_for(current_user.id, limit, offset)]


@router.post("/deposit", response_model=CheckoutResponse)
async def initiate_deposit(
    data: DepositRequest,
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(require_permission(Permission.DEPOSIT_FUNDS)),
):
    """
    Initiate a deposit to wallet via Paystack.
    Returns Paystack authorization URL; the webhook credits the wallet.
    """
    return payments.start_deposit(current_user, data.amount)


@router.post("/withdraw", response_model=LedgerEntryResponse)
async def withdraw(
    data: WithdrawRequest,
    payments: PaymentService = Depends(get_payment_service),
    current_user: User = Depends(require_permission(Permission.WITHDRAW_FUNDS)),
):
    entry = payments.withdraw(current_user, data.amount, data.recipient_code)
    return entry.to_dict()
