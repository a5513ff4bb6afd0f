"""Balance reconciliation for accounts.

``Account.balance_cents`` is a cached aggregate of the account's ledger:
``opening_balance_cents`` plus the signed amount of every transaction that
currently exists on the account (income positive, expense negative). Every
code path that inserts, edits or removes transactions goes through
``ReconciliationEngine`` so the row write and the balance increment commit
together. Balance changes are issued as ``balance_cents = balance_cents +
:delta`` statements, never as a value computed in Python, so concurrent
writers to the same account serialize on the row instead of losing updates.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from database import atomic
from errors import (
    AuthorizationError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from models import Account, Transaction, TransactionStatus, TransactionType
from money import signed_amount
from periods import to_naive_utc
from recurrence import advance
from schemas import AccountIn, TransactionIn


logger = logging.getLogger(__name__)

RECURRING_SUFFIX = " (Recurring)"


class ReconciliationEngine:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        if not user_id:
            raise AuthorizationError("Unauthorized")
        self.session = session
        self.user_id = user_id

    def _owned_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        if account.user_id != self.user_id:
            raise AuthorizationError("Account belongs to another user")
        return account

    def _increment(self, account_id: int, delta: int) -> None:
        if delta == 0:
            return
        self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session="fetch")
        )

    @staticmethod
    def _validate(data: TransactionIn) -> None:
        if not isinstance(data.amount_cents, int) or data.amount_cents <= 0:
            raise ValidationError("Amount must be a positive value")
        if data.type not in (TransactionType.income, TransactionType.expense):
            raise ValidationError("Unknown transaction type")
        if data.is_recurring and data.recurring_interval is None:
            raise ValidationError(
                "Recurring interval is required for recurring transactions"
            )

    @staticmethod
    def _schedule_fields(data: TransactionIn, when: datetime) -> dict[str, object]:
        if data.is_recurring:
            return {
                "is_recurring": True,
                "recurring_interval": data.recurring_interval,
                "next_recurring_date": advance(when, data.recurring_interval),
            }
        return {
            "is_recurring": False,
            "recurring_interval": None,
            "next_recurring_date": None,
        }

    def create_account(self, data: AccountIn) -> Account:
        with atomic(self.session):
            existing = int(
                self.session.execute(
                    select(func.count(Account.id)).where(
                        Account.user_id == self.user_id
                    )
                ).scalar_one()
                or 0
            )
            should_be_default = existing == 0 or data.is_default
            if should_be_default:
                self.session.execute(
                    update(Account)
                    .where(Account.user_id == self.user_id, Account.is_default.is_(True))
                    .values(is_default=False)
                )
            account = Account(
                user_id=self.user_id,
                name=data.name,
                type=data.type,
                opening_balance_cents=data.balance_cents,
                balance_cents=data.balance_cents,
                is_default=should_be_default,
            )
            self.session.add(account)
            self.session.flush()
        logger.info(
            f"account_created: id={account.id} user_id={self.user_id} "
            f"default={should_be_default}"
        )
        return account

    def set_default_account(self, account_id: int) -> Account:
        with atomic(self.session):
            account = self._owned_account(account_id)
            self.session.execute(
                update(Account)
                .where(Account.user_id == self.user_id, Account.is_default.is_(True))
                .values(is_default=False)
            )
            self.session.execute(
                update(Account).where(Account.id == account.id).values(is_default=True)
            )
        self.session.refresh(account)
        return account

    def apply_create(self, data: TransactionIn) -> Transaction:
        self._validate(data)
        when = to_naive_utc(data.date)
        with atomic(self.session):
            self._owned_account(data.account_id)
            txn = Transaction(
                user_id=self.user_id,
                account_id=data.account_id,
                type=data.type,
                amount_cents=data.amount_cents,
                description=data.description,
                date=when,
                category=data.category,
                receipt_url=data.receipt_url,
                status=TransactionStatus.completed,
                **self._schedule_fields(data, when),
            )
            self.session.add(txn)
            self.session.flush()
            delta = signed_amount(txn.type, txn.amount_cents)
            self._increment(txn.account_id, delta)
        logger.info(
            f"transaction_created: id={txn.id} account_id={txn.account_id} delta={delta}"
        )
        return txn

    def apply_update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        """Rewrite a transaction and move the balance by ``new - old``.

        The stored row is written only if it still holds the account, type
        and amount that were read, so a concurrent edit that commits in
        between aborts this one with ``TransientStoreError`` instead of
        leaving the balance built on a stale contribution.
        """
        self._validate(data)
        when = to_naive_utc(data.date)
        with atomic(self.session):
            current = self.session.execute(
                select(
                    Transaction.user_id,
                    Transaction.account_id,
                    Transaction.type,
                    Transaction.amount_cents,
                ).where(Transaction.id == transaction_id)
            ).first()
            if current is None:
                raise NotFoundError("Transaction not found")
            if current.user_id != self.user_id:
                raise AuthorizationError("Transaction belongs to another user")
            old_account_id = current.account_id
            old_signed = signed_amount(current.type, current.amount_cents)
            if data.account_id != old_account_id:
                self._owned_account(data.account_id)
            new_signed = signed_amount(data.type, data.amount_cents)

            written = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == transaction_id,
                    Transaction.account_id == old_account_id,
                    Transaction.type == current.type,
                    Transaction.amount_cents == current.amount_cents,
                )
                .values(
                    account_id=data.account_id,
                    type=data.type,
                    amount_cents=data.amount_cents,
                    description=data.description,
                    date=when,
                    category=data.category,
                    receipt_url=data.receipt_url,
                    **self._schedule_fields(data, when),
                )
                .execution_options(synchronize_session=False)
            )
            if written.rowcount != 1:
                raise TransientStoreError(
                    f"Transaction {transaction_id} changed while being updated"
                )

            if data.account_id == old_account_id:
                self._increment(old_account_id, new_signed - old_signed)
            else:
                self._increment(old_account_id, -old_signed)
                self._increment(data.account_id, new_signed)
        txn = self.session.scalar(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        logger.info(
            f"transaction_updated: id={transaction_id} old_delta={old_signed} "
            f"new_delta={new_signed} account_id={data.account_id}"
        )
        return txn

    def apply_delete(
        self, transaction_ids: Iterable[int], *, require_all: bool = False
    ) -> int:
        """Delete transactions and reverse their effect on every touched account.

        Contributions are summed per account from the rows the DELETE
        actually removed, so a row already deleted by a concurrent call is
        never reversed twice. Each account gets a single increment, and the
        deletes plus increments commit together. Ids owned by another user
        abort the whole call. Unknown ids are skipped unless ``require_all``
        is set.
        """
        ids = set(transaction_ids)
        if not ids:
            return 0
        with atomic(self.session):
            owners = self.session.execute(
                select(Transaction.id, Transaction.user_id).where(
                    Transaction.id.in_(ids)
                )
            ).all()
            if any(row.user_id != self.user_id for row in owners):
                raise AuthorizationError("Transaction belongs to another user")
            if require_all and len(owners) != len(ids):
                raise NotFoundError("Transaction not found")

            removed = []
            if owners:
                removed = self.session.execute(
                    delete(Transaction)
                    .where(
                        Transaction.id.in_([row.id for row in owners]),
                        Transaction.user_id == self.user_id,
                    )
                    .returning(
                        Transaction.account_id,
                        Transaction.type,
                        Transaction.amount_cents,
                    )
                ).all()
            if require_all and len(removed) != len(ids):
                raise NotFoundError("Transaction not found")

            per_account: dict[int, int] = defaultdict(int)
            for row in removed:
                per_account[row.account_id] += signed_amount(row.type, row.amount_cents)
            for account_id, total in per_account.items():
                self._increment(account_id, -total)
        logger.info(
            f"transactions_deleted: user_id={self.user_id} count={len(removed)} "
            f"accounts={sorted(per_account)}"
        )
        return len(removed)

    def apply_generated(self, template: Transaction, now: datetime) -> Transaction:
        """Insert the concrete occurrence of a recurring template.

        Runs inside the caller's atomic block; the caller commits.
        """
        if template.user_id != self.user_id:
            raise AuthorizationError("Transaction belongs to another user")
        txn = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount_cents=template.amount_cents,
            description=f"{template.description or ''}{RECURRING_SUFFIX}",
            date=now,
            category=template.category,
            is_recurring=False,
            recurring_interval=None,
            next_recurring_date=None,
            status=TransactionStatus.completed,
        )
        self.session.add(txn)
        self.session.flush()
        self._increment(txn.account_id, signed_amount(txn.type, txn.amount_cents))
        return txn

    def expected_balance(self, account_id: int) -> int:
        """Opening balance plus the signed sum of the account's ledger rows."""
        account = self._owned_account(account_id)
        signed = func.sum(
            case(
                (
                    Transaction.type == TransactionType.expense,
                    -Transaction.amount_cents,
                ),
                else_=Transaction.amount_cents,
            )
        )
        total = self.session.execute(
            select(func.coalesce(signed, 0)).where(Transaction.account_id == account_id)
        ).scalar_one()
        return account.opening_balance_cents + int(total or 0)
