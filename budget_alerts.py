import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Account, Budget, Transaction, TransactionType
from notifications import Notifier
from periods import is_new_month, month_start, utcnow


logger = logging.getLogger(__name__)


def percentage_used(expenses_cents: int, budget_cents: int) -> Decimal:
    if budget_cents <= 0:
        return Decimal(0)
    return Decimal(expenses_cents) * 100 / Decimal(budget_cents)


def month_to_date_expenses(
    session: Session, user_id: int, account_id: int, now: datetime
) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.expense,
                Transaction.date >= month_start(now),
                Transaction.date <= now,
            )
        ).scalar_one()
        or 0
    )


class BudgetMonitor:
    """Sends at most one budget alert per user per calendar month.

    ``last_alert_sent`` is written only after the email went out, so a
    failed delivery is retried by the next sweep.
    """

    def __init__(
        self,
        session: Session,
        notifier: Notifier,
        threshold: Optional[int] = None,
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.threshold = Decimal(
            threshold if threshold is not None else get_settings().budget_alert_threshold
        )

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        budget_ids = self.session.scalars(select(Budget.id).order_by(Budget.id)).all()
        sent = 0
        for budget_id in budget_ids:
            try:
                if self.check_budget(budget_id, now):
                    sent += 1
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_check_failed: budget_id={budget_id}")
        logger.info(f"budget_sweep: checked={len(budget_ids)} alerts_sent={sent}")
        return sent

    def check_budget(self, budget_id: int, now: datetime) -> bool:
        budget = self.session.scalar(
            select(Budget).options(joinedload(Budget.user)).where(Budget.id == budget_id)
        )
        if budget is None:
            return False
        account = self.session.scalar(
            select(Account).where(
                Account.user_id == budget.user_id, Account.is_default.is_(True)
            )
        )
        if account is None:
            return False

        expenses = month_to_date_expenses(self.session, budget.user_id, account.id, now)
        usage = percentage_used(expenses, budget.amount_cents)
        if usage < self.threshold:
            return False
        if budget.last_alert_sent is not None and not is_new_month(
            budget.last_alert_sent, now
        ):
            return False

        result = self.notifier.send(
            to=budget.user.email,
            subject=f"Budget Alert for {account.name}",
            template_type="budget-alert",
            template_data={
                "user_name": budget.user.name or budget.user.email,
                "percentage_used": float(usage),
                "budget_amount_cents": budget.amount_cents,
                "total_expenses_cents": expenses,
                "account_name": account.name,
            },
        )
        if not result.success:
            logger.warning(
                f"budget_alert_not_sent: budget_id={budget.id} error={result.error}"
            )
            return False

        budget.last_alert_sent = now
        self.session.commit()
        logger.info(
            f"budget_alert_sent: budget_id={budget.id} usage={usage:.1f}"
        )
        return True
