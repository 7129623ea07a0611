# Ledger Service for the Influence Chat platform
# Wallet balances, escrow holds and the append-only ledger they are derived from

import logging
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from core.errors import InsufficientFunds, InvariantViolation, NotFound
from database.models import PLATFORM_USER_ID, utcnow
from database.ledger_models import (
    Wallet,
    LedgerEntry,
    LedgerDirection,
    LedgerKind,
    LedgerStatus,
    EscrowHold,
    EscrowStatusDB,
)
from services.settings_service import SettingsHolder

logger = logging.getLogger(__name__)

# (kind, direction) -> per-unit change of (available, frozen, withdrawn)
BUCKET_DELTAS: Dict[Tuple[LedgerKind, LedgerDirection], Tuple[int, int, int]] = {
    (LedgerKind.DEPOSIT, LedgerDirection.CREDIT): (1, 0, 0),
    (LedgerKind.ESCROW_HOLD, LedgerDirection.DEBIT): (-1, 1, 0),
    (LedgerKind.ESCROW_RELEASE, LedgerDirection.DEBIT): (0, -1, 0),
    (LedgerKind.ESCROW_RELEASE, LedgerDirection.CREDIT): (1, 0, 0),
    (LedgerKind.FEE, LedgerDirection.CREDIT): (1, 0, 0),
    (LedgerKind.REFUND, LedgerDirection.CREDIT): (1, -1, 0),
    (LedgerKind.WITHDRAWAL, LedgerDirection.DEBIT): (-1, 0, 1),
}


def split_commission(amount: int, bps: int) -> Tuple[int, int]:
    """Return (fee, payout). Fee is floored so rounding favours the payee."""
    fee = (amount * bps) // 10000
    return fee, amount - fee


class LedgerService:
    """
    Every balance change goes through `_post`, which writes a completed entry
    and applies its bucket deltas, so wallets always equal their ledger sums.

    Callers own the transaction: nothing here commits.
    """

    def __init__(self, db: Session, settings: Optional[SettingsHolder] = None):
        self.db = db
        self.settings = settings or SettingsHolder()

    # =========================================================================
    # WALLETS
    # =========================================================================

    def get_or_create_wallet(self, user_id: str, lock: bool = False) -> Wallet:
        query = self.db.query(Wallet).filter(Wallet.user_id == user_id)
        if lock:
            query = query.with_for_update()
        wallet = query.first()
        if wallet is None:
            wallet = Wallet(user_id=user_id, available=0, frozen=0, withdrawn=0)
            self.db.add(wallet)
            self.db.flush()
            if lock:
                wallet = self.db.query(Wallet).filter(Wallet.id == wallet.id).with_for_update().one()
        return wallet

    def lock_wallets(self, user_ids: Iterable[str]) -> Dict[str, Wallet]:
        """Row-lock wallets in sorted user id order so concurrent movers never deadlock."""
        return {user_id: self.get_or_create_wallet(user_id, lock=True) for user_id in sorted(set(user_ids))}

    def _post(
        self,
        wallet: Wallet,
        direction: LedgerDirection,
        kind: LedgerKind,
        amount: int,
        **refs,
    ) -> LedgerEntry:
        if amount <= 0:
            raise InvariantViolation(f"Ledger amounts must be positive, got {amount}")

        d_available, d_frozen, d_withdrawn = BUCKET_DELTAS[(kind, direction)]
        available = wallet.available + d_available * amount
        frozen = wallet.frozen + d_frozen * amount
        withdrawn = wallet.withdrawn + d_withdrawn * amount
        if available < 0 or frozen < 0 or withdrawn < 0:
            logger.critical(
                f"Wallet {wallet.id} would go negative on {kind.value} {direction.value} {amount}: "
                f"available={wallet.available} frozen={wallet.frozen}"
            )
            raise InvariantViolation(
                "Wallet balance would go negative",
                wallet_id=wallet.id,
                kind=kind.value,
            )

        now = utcnow()
        entry = LedgerEntry(
            user_id=wallet.user_id,
            wallet_id=wallet.id,
            direction=direction,
            kind=kind,
            amount_minor=amount,
            status=LedgerStatus.COMPLETED,
            created_at=now,
            completed_at=now,
            **refs,
        )
        wallet.available = available
        wallet.frozen = frozen
        wallet.withdrawn = withdrawn
        wallet.updated_at = now
        self.db.add(entry)
        self.db.flush()
        return entry

    # =========================================================================
    # PRIMITIVES
    # =========================================================================

    def deposit(
        self,
        user_id: str,
        amount: int,
        gateway_payment_id: str,
        description: Optional[str] = None,
    ) -> Tuple[LedgerEntry, bool]:
        """
        Credit a confirmed gateway payment. Returns (entry, created); a replay
        of the same gateway_payment_id returns the original entry untouched.
        """
        existing = self.db.query(LedgerEntry).filter(
            LedgerEntry.gateway_payment_id == gateway_payment_id
        ).first()
        if existing is not None:
            logger.info(f"Deposit {gateway_payment_id} already recorded as {existing.id}")
            return existing, False

        wallet = self.get_or_create_wallet(user_id, lock=True)
        entry = self._post(
            wallet,
            LedgerDirection.CREDIT,
            LedgerKind.DEPOSIT,
            amount,
            gateway_payment_id=gateway_payment_id,
            description=description or "Gateway deposit",
        )
        logger.info(f"Deposited {amount} to {user_id} ({gateway_payment_id})")
        return entry, True

    def freeze(
        self,
        user_id: str,
        amount: int,
        conversation_id: str,
        payee_user_id: str,
        request_id: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
    ) -> EscrowHold:
        """Move `amount` from available to frozen and open an escrow hold."""
        existing = self.locked_hold_for(conversation_id)
        if existing is not None:
            raise InvariantViolation(
                "Conversation already has a locked escrow hold",
                escrow_hold_id=existing.id,
            )

        wallet = self.get_or_create_wallet(user_id, lock=True)
        if wallet.available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Available: {wallet.available}, required: {amount}",
                available=wallet.available,
                required=amount,
            )

        hold = EscrowHold(
            conversation_id=conversation_id,
            payer_user_id=user_id,
            payee_user_id=payee_user_id,
            amount_minor=amount,
            status=EscrowStatusDB.LOCKED,
            gateway_payment_id=gateway_payment_id,
            locked_at=utcnow(),
        )
        self.db.add(hold)
        self.db.flush()

        entry = self._post(
            wallet,
            LedgerDirection.DEBIT,
            LedgerKind.ESCROW_HOLD,
            amount,
            conversation_id=conversation_id,
            request_id=request_id,
            escrow_hold_id=hold.id,
            description="Escrow hold for conversation",
        )
        hold.hold_entry_id = entry.id
        self.db.flush()
        logger.info(f"Froze {amount} for {user_id} in hold {hold.id}")
        return hold

    def _load_hold(self, hold_id: str) -> EscrowHold:
        hold = self.db.query(EscrowHold).filter(EscrowHold.id == hold_id).with_for_update().first()
        if hold is None:
            raise NotFound(f"Escrow hold {hold_id} not found")
        return hold

    def release(self, hold_id: str, request_id: Optional[str] = None) -> EscrowHold:
        """
        Pay a locked hold out to the payee, minus the platform commission in
        force right now. Releasing twice is a no-op; releasing a refunded hold
        is an invariant violation.
        """
        hold = self._load_hold(hold_id)
        if hold.status == EscrowStatusDB.RELEASED:
            return hold
        if hold.status != EscrowStatusDB.LOCKED:
            logger.critical(f"Release requested for hold {hold.id} in status {hold.status.value}")
            raise InvariantViolation("Escrow hold is not locked", escrow_hold_id=hold.id, status=hold.status.value)

        bps = self.settings.commission_bps(self.db)
        fee, payout = split_commission(hold.amount_minor, bps)

        wallets = self.lock_wallets([hold.payer_user_id, hold.payee_user_id, PLATFORM_USER_ID])
        refs = dict(conversation_id=hold.conversation_id, request_id=request_id, escrow_hold_id=hold.id)

        debit = self._post(
            wallets[hold.payer_user_id],
            LedgerDirection.DEBIT,
            LedgerKind.ESCROW_RELEASE,
            hold.amount_minor,
            description="Escrow released to influencer",
            **refs,
        )
        if payout > 0:
            self._post(
                wallets[hold.payee_user_id],
                LedgerDirection.CREDIT,
                LedgerKind.ESCROW_RELEASE,
                payout,
                description="Payment for approved work",
                **refs,
            )
        if fee > 0:
            self._post(
                wallets[PLATFORM_USER_ID],
                LedgerDirection.CREDIT,
                LedgerKind.FEE,
                fee,
                description=f"Platform commission ({bps} bps)",
                **refs,
            )

        hold.status = EscrowStatusDB.RELEASED
        hold.commission_bps = bps
        hold.release_entry_id = debit.id
        hold.released_at = utcnow()
        self.db.flush()
        logger.info(f"Released hold {hold.id}: payout={payout} fee={fee}")
        return hold

    def refund(self, hold_id: str, request_id: Optional[str] = None) -> EscrowHold:
        """Return a locked hold to the payer. Idempotent; refunding a released hold is a violation."""
        hold = self._load_hold(hold_id)
        if hold.status == EscrowStatusDB.REFUNDED:
            return hold
        if hold.status != EscrowStatusDB.LOCKED:
            logger.critical(f"Refund requested for hold {hold.id} in status {hold.status.value}")
            raise InvariantViolation("Escrow hold is not locked", escrow_hold_id=hold.id, status=hold.status.value)

        wallet = self.get_or_create_wallet(hold.payer_user_id, lock=True)
        entry = self._post(
            wallet,
            LedgerDirection.CREDIT,
            LedgerKind.REFUND,
            hold.amount_minor,
            conversation_id=hold.conversation_id,
            request_id=request_id,
            escrow_hold_id=hold.id,
            description="Escrow refunded",
        )
        hold.status = EscrowStatusDB.REFUNDED
        hold.release_entry_id = entry.id
        hold.released_at = utcnow()
        self.db.flush()
        logger.info(f"Refunded hold {hold.id} ({hold.amount_minor}) to {hold.payer_user_id}")
        return hold

    def withdraw(self, user_id: str, amount: int) -> LedgerEntry:
        """Move funds from available to withdrawn. The payout itself runs after commit."""
        wallet = self.get_or_create_wallet(user_id, lock=True)
        if wallet.available < amount:
            raise InsufficientFunds(
                f"Insufficient balance. Available: {wallet.available}, required: {amount}",
                available=wallet.available,
                required=amount,
            )
        return self._post(
            wallet,
            LedgerDirection.DEBIT,
            LedgerKind.WITHDRAWAL,
            amount,
            description="Withdrawal",
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    def locked_hold_for(self, conversation_id: str) -> Optional[EscrowHold]:
        return self.db.query(EscrowHold).filter(
            EscrowHold.conversation_id == conversation_id,
            EscrowHold.status == EscrowStatusDB.LOCKED,
        ).first()

    def entries_for(self, user_id: str, limit: int = 50, offset: int = 0):
        return self.db.query(LedgerEntry).filter(
            LedgerEntry.user_id == user_id
        ).order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc()).offset(offset).limit(limit).all()

    def reconcile(self, user_id: str) -> Dict[str, int]:
        """Recompute a wallet from its completed entries; raise if they disagree."""
        totals = {"available": 0, "frozen": 0, "withdrawn": 0}
        entries = self.db.query(LedgerEntry).filter(
            LedgerEntry.user_id == user_id,
            LedgerEntry.status == LedgerStatus.COMPLETED,
        ).all()
        for entry in entries:
            d_available, d_frozen, d_withdrawn = BUCKET_DELTAS[(entry.kind, entry.direction)]
            totals["available"] += d_available * entry.amount_minor
            totals["frozen"] += d_frozen * entry.amount_minor
            totals["withdrawn"] += d_withdrawn * entry.amount_minor

        wallet = self.db.query(Wallet).filter(Wallet.user_id == user_id).first()
        actual = {
            "available": wallet.available if wallet else 0,
            "frozen": wallet.frozen if wallet else 0,
            "withdrawn": wallet.withdrawn if wallet else 0,
        }
        if totals != actual:
            logger.critical(f"Ledger mismatch for {user_id}: entries={totals} wallet={actual}")
            raise InvariantViolation("Wallet does not match its ledger", user_id=user_id, expected=totals, actual=actual)
        return actual

    def check_conservation(self) -> int:
        """Sum of all wallet buckets must equal the sum of completed deposits."""
        wallet_total = sum(w.available + w.frozen + w.withdrawn for w in self.db.query(Wallet).all())
        deposit_total = sum(
            e.amount_minor for e in self.db.query(LedgerEntry).filter(
                LedgerEntry.kind == LedgerKind.DEPOSIT,
                LedgerEntry.status == LedgerStatus.COMPLETED,
            ).all()
        )
        if wallet_total != deposit_total:
            logger.critical(f"Ledger conservation broken: wallets={wallet_total} deposits={deposit_total}")
            raise InvariantViolation("Wallet total does not match deposits", wallets=wallet_total, deposits=deposit_total)
        return wallet_total


def get_ledger_service(db: Session, settings: Optional[SettingsHolder] = None) -> LedgerService:
    return LedgerService(db, settings)
