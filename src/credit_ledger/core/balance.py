"""
Balance Engine

Atomic credit and debit operations over the ledger store.

Every operation is one database transaction containing the balance update
and its ledger entry. Debits never read-then-write: the balance check is the
``WHERE amount >= ?`` clause of the update itself, so two concurrent debits
against the same balance cannot both pass.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import structlog

from ..persistence.database import Database, Transaction, get_database
from ..persistence.models import RelatedEntity, TransactionRecord, TransactionType, utc_now
from ..persistence.repository import BalanceRepository, TransactionRepository
from .errors import InsufficientCredits, InvalidAmount
from .expiration import BalanceSnapshot, ExpirationPolicy

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def validate_amount(amount: Any) -> int:
    """Credits are whole, positive units. Fails fast, never clamps."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(amount, "amount must be an integer number of credits")
    if amount <= 0:
        raise InvalidAmount(amount)
    return amount


@dataclass
class DebitResult:
    """Outcome of a successful debit."""
    transaction_id: str
    amount: int
    balance: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "balance": self.balance,
        }


class BalanceEngine:
    """
    Credit/debit operations with insufficient-funds checks.

    Usage:
        engine = BalanceEngine()
        engine.credit(user_id, 100, "Credit purchase", RelatedEntity(payment_id, "payment"))
        result = engine.debit(user_id, 5, "Video upload", RelatedEntity(video_id, "video"))
        snapshot = engine.get_balance(user_id)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        expiration: Optional[ExpirationPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db or get_database()
        self.balances = BalanceRepository(self.db)
        self.transactions = TransactionRepository(self.db)
        self.expiration = expiration or ExpirationPolicy(self.balances, self.transactions)
        self.clock = clock or utc_now

    def credit(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        transaction_type: TransactionType = TransactionType.PURCHASE,
    ) -> int:
        """Add credits and return the new balance."""
        amount = validate_amount(amount)
        with self.db.transaction() as tx:
            record = self.apply_credit(tx, user_id, amount, description, related_entity, transaction_type)
            balance = self.balances.get(tx, user_id).amount

        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            type=transaction_type.value,
            transaction_id=record.transaction_id,
            balance=balance,
        )
        return balance

    def apply_credit(
        self,
        tx: Transaction,
        user_id: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
        transaction_type: TransactionType = TransactionType.PURCHASE,
    ) -> TransactionRecord:
        """
        Credit inside an already open transaction.

        Used by callers that must make the credit part of a larger atomic
        unit (the monthly grant runs it under its advisory lock).
        """
        amount = validate_amount(amount)
        if not transaction_type.is_credit:
            raise InvalidAmount(amount, f"{transaction_type.value} entries cannot add credits")

        now = self.clock()
        self.balances.ensure(tx, user_id, now)
        # A stale balance expires before the new entry restarts the clock
        self.expiration.apply(tx, user_id, now)
        self.balances.increment(tx, user_id, amount, now)

        return self.transactions.append(tx, TransactionRecord(
            user_id=user_id,
            type=transaction_type,
            amount=amount,
            description=description,
            related_id=related_entity.related_id if related_entity else None,
            related_type=related_entity.related_type if related_entity else None,
            created_at=now,
        ))

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str,
        related_entity: Optional[RelatedEntity] = None,
    ) -> DebitResult:
        """
        Remove credits.

        Raises InsufficientCredits without debiting when the balance (after
        expiration) is lower than ``amount``. An expiration that was due is
        still recorded in that case.
        """
        amount = validate_amount(amount)
        now = self.clock()
        available = None
        record = None
        balance = 0

        with self.db.transaction() as tx:
            self.balances.ensure(tx, user_id, now)
            snapshot = self.expiration.apply(tx, user_id, now)

            new_balance = self.balances.decrement_if_sufficient(tx, user_id, amount, now)
            if new_balance is None:
                available = snapshot.amount
            else:
                balance = new_balance
                record = self.transactions.append(tx, TransactionRecord(
                    user_id=user_id,
                    type=TransactionType.USAGE,
                    amount=-amount,
                    description=description,
                    related_id=related_entity.related_id if related_entity else None,
                    related_type=related_entity.related_type if related_entity else None,
                    created_at=now,
                ))

        if record is None:
            logger.warning("insufficient_credits", user_id=user_id, required=amount, available=available)
            raise InsufficientCredits(user_id, required=amount, available=available)

        logger.info(
            "credits_debited",
            user_id=user_id,
            amount=amount,
            transaction_id=record.transaction_id,
            balance=balance,
        )
        return DebitResult(transaction_id=record.transaction_id, amount=amount, balance=balance)

    def refund(self, user_id: str, transaction_id: str, description: Optional[str] = None) -> int:
        """
        Return the credits of an earlier debit to the user.

        The refund entry references the debit it reverses. Whether a debit
        may be refunded twice is the caller's business decision.
        """
        original = self.transactions.get(transaction_id)
        if original is None or original.user_id != user_id or original.type != TransactionType.USAGE:
            raise InvalidAmount(transaction_id, "only a usage entry of this user can be refunded")

        return self.credit(
            user_id,
            -original.amount,
            description or f"Refund: {original.description or transaction_id}",
            RelatedEntity(transaction_id, "transaction"),
            TransactionType.REFUND,
        )

    def get_balance(self, user_id: str) -> BalanceSnapshot:
        """Canonical balance read; applies the expiration rule."""
        with self.db.transaction() as tx:
            snapshot = self.expiration.apply(tx, user_id, self.clock())

        logger.debug("balance_read", user_id=user_id, amount=snapshot.amount)
        return snapshot

    def get_transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TransactionRecord]:
        """Ledger history, newest first."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        return self.transactions.list_for_user(user_id, limit=limit, offset=offset)
