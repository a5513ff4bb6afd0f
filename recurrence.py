import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from pydantic import ValidationError as PayloadError
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from database import atomic
from errors import ValidationError
from models import RecurringInterval, Transaction, TransactionStatus
from periods import utcnow
from schemas import RecurringTaskPayload
from tasks import TaskQueue, Throttle


logger = logging.getLogger(__name__)

PROCESS_EVENT = "transaction.recurring.process"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = datetime(year + 1, 1, 1)
    else:
        next_month = datetime(year, month + 1, 1)
    return (next_month - datetime(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Jan 31 + 1 month lands on the last day of February, never in March.
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def advance(value: datetime, interval: RecurringInterval) -> datetime:
    if interval == RecurringInterval.daily:
        return value + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return value + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return _add_months(value, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(value, 12)
    raise ValidationError(f"Unknown recurring interval: {interval!r}")


def is_transaction_due(txn: Transaction, now: Optional[datetime] = None) -> bool:
    if txn.last_processed is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return txn.next_recurring_date <= (now or utcnow())


class RecurringScheduler:
    """Daily sweep: find due templates and hand them to the task queue."""

    def __init__(self, session: Session, queue: TaskQueue) -> None:
        self.session = session
        self.queue = queue

    def due_transactions(self, now: Optional[datetime] = None) -> list[Transaction]:
        now = now or utcnow()
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= now,
                ),
            )
            .order_by(Transaction.next_recurring_date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def sweep(self, now: Optional[datetime] = None) -> int:
        due = self.due_transactions(now)
        if due:
            self.queue.enqueue(
                PROCESS_EVENT,
                [{"transaction_id": txn.id, "user_id": txn.user_id} for txn in due],
            )
        logger.info(f"recurring_sweep: triggered={len(due)}")
        return len(due)


class RecurringProcessor:
    """Materializes one occurrence of a recurring template per task.

    Safe to run more than once for the same payload: the template is
    re-read and re-checked for being due, and the schedule advance is a
    conditional update on the ``last_processed`` value that was read, so
    a second delivery racing the first finds nothing to claim.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    def __call__(self, payload: Mapping[str, object]) -> Optional[int]:
        return self.process(payload)

    def process(
        self, payload: Mapping[str, object], now: Optional[datetime] = None
    ) -> Optional[int]:
        from ledger import ReconciliationEngine

        try:
            task = RecurringTaskPayload.model_validate(payload)
        except PayloadError:
            logger.error(f"recurring_process: invalid payload={payload!r}")
            return None

        now = now or self.clock()
        session = self.session_factory()
        try:
            template = session.scalar(
                select(Transaction).where(
                    Transaction.id == task.transaction_id,
                    Transaction.user_id == task.user_id,
                )
            )
            if (
                template is None
                or not template.is_recurring
                or template.status != TransactionStatus.completed
                or not is_transaction_due(template, now)
            ):
                logger.info(
                    f"recurring_process: skipped transaction_id={task.transaction_id}"
                )
                return None

            seen = template.last_processed
            with atomic(session):
                claimed = session.execute(
                    update(Transaction)
                    .where(
                        Transaction.id == template.id,
                        Transaction.last_processed.is_(None)
                        if seen is None
                        else Transaction.last_processed == seen,
                    )
                    .values(
                        last_processed=now,
                        next_recurring_date=advance(now, template.recurring_interval),
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    logger.info(
                        f"recurring_process: already_claimed transaction_id={template.id}"
                    )
                    return None
                engine = ReconciliationEngine(session, template.user_id)
                generated = engine.apply_generated(template, now)
            logger.info(
                f"recurring_process: transaction_id={template.id} "
                f"generated_id={generated.id}"
            )
            return generated.id
        finally:
            session.close()


def register_recurring_processor(
    queue: TaskQueue,
    session_factory: Callable[[], Session],
    *,
    limit: int = 10,
    period_secs: float = 60,
) -> RecurringProcessor:
    processor = RecurringProcessor(session_factory)
    queue.register(
        PROCESS_EVENT,
        processor,
        throttle=Throttle(limit=limit, period=timedelta(seconds=period_secs), key="user_id"),
    )
    return processor
