from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from ledger import ReconciliationEngine
from models import (
    Account,
    AccountType,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from recurrence import (
    PROCESS_EVENT,
    RecurringProcessor,
    RecurringScheduler,
    advance,
    is_transaction_due,
    register_recurring_processor,
)
from schemas import AccountIn, TransactionIn
from tasks import TaskQueue


NOW = datetime(2025, 3, 1, 9, 0)


def _factory() -> sessionmaker:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


def _seed_template(
    factory: sessionmaker,
    interval: RecurringInterval = RecurringInterval.daily,
    date: datetime = NOW,
) -> tuple[int, int, int]:
    with factory() as session:
        user = User(external_id="user_1", email="ada@example.com")
        session.add(user)
        session.commit()
        ledger = ReconciliationEngine(session, user.id)
        account = ledger.create_account(
            AccountIn(name="Main", type=AccountType.current, balance_cents=100000)
        )
        template = ledger.apply_create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=2500,
                description="Gym",
                date=date,
                account_id=account.id,
                category="healthcare",
                is_recurring=True,
                recurring_interval=interval,
            )
        )
        return user.id, account.id, template.id


def test_advance_by_interval_keeps_time_of_day():
    base = datetime(2025, 3, 10, 14, 45)
    assert advance(base, RecurringInterval.daily) == datetime(2025, 3, 11, 14, 45)
    assert advance(base, RecurringInterval.weekly) == datetime(2025, 3, 17, 14, 45)
    assert advance(base, RecurringInterval.monthly) == datetime(2025, 4, 10, 14, 45)
    assert advance(base, RecurringInterval.yearly) == datetime(2026, 3, 10, 14, 45)
    assert advance(datetime(2025, 12, 15), RecurringInterval.monthly) == datetime(
        2026, 1, 15
    )


def test_advance_clamps_to_end_of_month():
    assert advance(datetime(2024, 1, 31), RecurringInterval.monthly) == datetime(
        2024, 2, 29
    )
    assert advance(datetime(2023, 1, 31), RecurringInterval.monthly) == datetime(
        2023, 2, 28
    )
    assert advance(datetime(2025, 3, 31), RecurringInterval.monthly) == datetime(
        2025, 4, 30
    )
    assert advance(datetime(2024, 2, 29), RecurringInterval.yearly) == datetime(
        2025, 2, 28
    )


def test_advance_rejects_unknown_interval():
    with pytest.raises(ValidationError):
        advance(NOW, "HOURLY")


def test_is_transaction_due():
    never_run = Transaction(last_processed=None, next_recurring_date=None)
    assert is_transaction_due(never_run, NOW) is True

    no_next = Transaction(last_processed=NOW, next_recurring_date=None)
    assert is_transaction_due(no_next, NOW) is False

    future = Transaction(last_processed=NOW, next_recurring_date=NOW + timedelta(hours=1))
    assert is_transaction_due(future, NOW) is False

    on_time = Transaction(last_processed=NOW, next_recurring_date=NOW)
    assert is_transaction_due(on_time, NOW) is True


def test_sweep_and_process_daily_template():
    factory = _factory()
    user_id, account_id, template_id = _seed_template(factory)
    queue = TaskQueue(sleep=lambda _: None)
    processor = register_recurring_processor(queue, factory)
    processor.clock = lambda: NOW

    with factory() as session:
        assert RecurringScheduler(session, queue).sweep(NOW) == 1
    assert queue.pending() == 1

    summary = queue.run_pending(NOW)
    assert summary.processed == 1
    assert summary.failed == 0

    with factory() as session:
        template = session.get(Transaction, template_id)
        assert template.last_processed == NOW
        assert template.next_recurring_date == NOW + timedelta(days=1)

        copies = session.scalars(
            select(Transaction).where(Transaction.id != template_id)
        ).all()
        assert len(copies) == 1
        copy = copies[0]
        assert copy.description == "Gym (Recurring)"
        assert copy.is_recurring is False
        assert copy.recurring_interval is None
        assert copy.date == NOW
        assert copy.account_id == account_id
        assert copy.user_id == user_id
        assert copy.status == TransactionStatus.completed

        balance = session.execute(
            select(Account.balance_cents).where(Account.id == account_id)
        ).scalar_one()
        assert balance == 100000 - 2500 - 2500

        assert RecurringScheduler(session, queue).sweep(NOW) == 0


def test_redelivered_payload_posts_once():
    factory = _factory()
    user_id, account_id, template_id = _seed_template(factory)
    processor = RecurringProcessor(factory, clock=lambda: NOW)
    payload = {"transaction_id": template_id, "user_id": user_id}

    first = processor.process(payload, NOW)
    second = processor.process(payload, NOW)

    assert first is not None
    assert second is None
    with factory() as session:
        rows = session.scalars(select(Transaction)).all()
        assert len(rows) == 2
        balance = session.execute(
            select(Account.balance_cents).where(Account.id == account_id)
        ).scalar_one()
        assert balance == 95000


def test_template_becomes_due_again_after_interval():
    factory = _factory()
    user_id, _, template_id = _seed_template(factory, RecurringInterval.weekly)
    processor = RecurringProcessor(factory)
    payload = {"transaction_id": template_id, "user_id": user_id}

    assert processor.process(payload, NOW) is not None
    assert processor.process(payload, NOW + timedelta(days=3)) is None
    assert processor.process(payload, NOW + timedelta(days=7)) is not None

    with factory() as session:
        template = session.get(Transaction, template_id)
        assert template.next_recurring_date == NOW + timedelta(days=14)


def test_process_ignores_bad_or_foreign_payloads():
    factory = _factory()
    user_id, _, template_id = _seed_template(factory)
    processor = RecurringProcessor(factory)

    assert processor.process({"transaction_id": template_id}, NOW) is None
    assert processor.process({"transaction_id": "abc", "user_id": user_id}, NOW) is None
    assert (
        processor.process({"transaction_id": template_id, "user_id": user_id + 1}, NOW)
        is None
    )
    assert processor.process({"transaction_id": 9999, "user_id": user_id}, NOW) is None

    with factory() as session:
        assert len(session.scalars(select(Transaction)).all()) == 1


def test_sweep_skips_templates_that_are_not_completed():
    factory = _factory()
    _, _, template_id = _seed_template(factory)
    with factory() as session:
        template = session.get(Transaction, template_id)
        template.status = TransactionStatus.pending
        session.commit()

    queue = TaskQueue()
    with factory() as session:
        assert RecurringScheduler(session, queue).sweep(NOW) == 0
    assert queue.pending() == 0


def test_sweep_enqueues_one_batch_with_user_ids():
    factory = _factory()
    user_id, _, template_id = _seed_template(factory)
    queue = TaskQueue()
    received = []
    queue.register(PROCESS_EVENT, received.append)

    with factory() as session:
        RecurringScheduler(session, queue).sweep(NOW)
    queue.run_pending(NOW)

    assert received == [{"transaction_id": template_id, "user_id": user_id}]
