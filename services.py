from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from budget_alerts import percentage_used
from errors import AuthorizationError, NotFoundError
from ledger import ReconciliationEngine
from models import Account, Budget, Transaction, TransactionType, User
from periods import current_month, utcnow
from schemas import AccountIn, BudgetIn, TransactionIn, UserIdentity


logger = logging.getLogger(__name__)


def _require_user(user_id: Optional[int]) -> int:
    if not user_id:
        raise AuthorizationError("Unauthorized")
    return user_id


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_user(self, identity: UserIdentity) -> User:
        """Return the local user for an identity-provider subject, creating it once."""
        user = self.session.scalar(
            select(User).where(User.external_id == identity.external_id)
        )
        if user:
            return user
        user = User(
            external_id=identity.external_id,
            email=identity.email,
            name=identity.name,
            image_url=identity.image_url,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: id={user.id}")
        return user


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)
        self.ledger = ReconciliationEngine(session, self.user_id)

    def create(self, data: AccountIn) -> Account:
        return self.ledger.create_account(data)

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        if account.user_id != self.user_id:
            raise AuthorizationError("Account belongs to another user")
        return account

    def list_with_counts(self) -> list[tuple[Account, int]]:
        count = func.count(Transaction.id).label("transaction_count")
        stmt = (
            select(Account, count)
            .outerjoin(Transaction, Transaction.account_id == Account.id)
            .where(Account.user_id == self.user_id)
            .group_by(Account.id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return [(row[0], int(row[1])) for row in self.session.execute(stmt).all()]

    def get_with_transactions(self, account_id: int) -> tuple[Account, list[Transaction]]:
        account = self.get(account_id)
        transactions = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.account_id == account.id,
                Transaction.user_id == self.user_id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        ).all()
        return account, list(transactions)

    def set_default(self, account_id: int) -> Account:
        return self.ledger.set_default_account(account_id)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)
        self.ledger = ReconciliationEngine(session, self.user_id)

    def create(self, data: TransactionIn) -> Transaction:
        txn = self.ledger.apply_create(data)
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.id == transaction_id)
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        if txn.user_id != self.user_id:
            raise AuthorizationError("Transaction belongs to another user")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.ledger.apply_update(transaction_id, data)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        self.ledger.apply_delete([transaction_id], require_all=True)

    def bulk_delete(self, transaction_ids: Iterable[int]) -> int:
        return self.ledger.apply_delete(transaction_ids)

    def list(
        self,
        *,
        account_id: Optional[int] = None,
        txn_type: Optional[TransactionType] = None,
        is_recurring: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        if txn_type is not None:
            stmt = stmt.where(Transaction.type == txn_type)
        if is_recurring is not None:
            stmt = stmt.where(Transaction.is_recurring.is_(is_recurring))
        return list(self.session.scalars(stmt).all())


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = _require_user(user_id)

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn) -> Budget:
        existing = self.get()
        if existing:
            existing.amount_cents = data.amount_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def current(
        self, account_id: Optional[int] = None, now: Optional[datetime] = None
    ) -> dict[str, object]:
        """Budget plus this calendar month's expenses, optionally for one account."""
        budget = self.get()
        period = current_month(now or utcnow())
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= period.start,
            Transaction.date < period.end,
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        expenses = int(self.session.execute(stmt).scalar_one() or 0)
        usage = percentage_used(expenses, budget.amount_cents) if budget else 0
        return {
            "budget_id": budget.id if budget else None,
            "amount_cents": budget.amount_cents if budget else None,
            "current_expenses_cents": expenses,
            "percentage_used": float(usage),
        }
