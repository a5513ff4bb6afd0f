from datetime import timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from ledger import ReconciliationEngine
from models import AccountType, RecurringInterval, Transaction, TransactionType, User
from notifications import SendResult
from periods import utcnow
from scheduler import SchedulerManager
from schemas import AccountIn, TransactionIn


class NullNotifier:
    def send(self, **_kwargs) -> SendResult:
        return SendResult(success=True)


def _factory() -> sessionmaker:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def test_recurring_sweep_posts_due_templates():
    factory = _factory()
    with factory() as session:
        user = User(external_id="user_1", email="ada@example.com")
        session.add(user)
        session.commit()
        ledger = ReconciliationEngine(session, user.id)
        account = ledger.create_account(
            AccountIn(name="Main", type=AccountType.current)
        )
        ledger.apply_create(
            TransactionIn(
                type=TransactionType.income,
                amount_cents=1000,
                description="Allowance",
                date=utcnow() - timedelta(days=1),
                account_id=account.id,
                category="gifts",
                is_recurring=True,
                recurring_interval=RecurringInterval.weekly,
            )
        )

    manager = SchedulerManager(session_factory=factory, notifier=NullNotifier())
    assert manager.run_recurring_sweep("test") == 1
    assert manager.run_recurring_sweep("test") == 0

    with factory() as session:
        descriptions = sorted(session.scalars(select(Transaction.description)).all())
    assert descriptions == ["Allowance", "Allowance (Recurring)"]


def test_start_registers_jobs_and_stop_shuts_down():
    manager = SchedulerManager(session_factory=_factory(), notifier=NullNotifier())
    manager.start()
    try:
        job_ids = {job.id for job in manager.scheduler.get_jobs()}
        assert job_ids == {
            "recurring_daily",
            "monthly_reports",
            "budget_alerts",
            "task_queue_drain",
        }
    finally:
        manager.stop()
    assert manager.scheduler.running is False
