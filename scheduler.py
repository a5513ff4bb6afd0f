import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from budget_alerts import BudgetMonitor
from config import Settings, get_settings
from database import get_session_factory, session_scope
from notifications import EmailNotifier, Notifier
from recurrence import RecurringScheduler, register_recurring_processor
from reports import GeminiInsightGenerator, MonthlyReportJob
from tasks import TaskQueue


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_task_queue(factory: sessionmaker, settings: Settings) -> TaskQueue:
    queue = TaskQueue(
        max_attempts=settings.task_max_attempts,
        backoff_secs=settings.task_backoff_secs,
    )
    register_recurring_processor(
        queue,
        factory,
        limit=settings.recurring_throttle_limit,
        period_secs=settings.recurring_throttle_period_secs,
    )
    return queue


class SchedulerManager:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        notifier: Optional[Notifier] = None,
        queue: Optional[TaskQueue] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier or EmailNotifier(settings)
        self.queue = queue or build_task_queue(self.session_factory, settings)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_recurring_sweep(self, source: str = "manual") -> int:
        logger.info(f"recurring_sweep_run: source={source}")
        with session_scope(self.session_factory) as session:
            count = RecurringScheduler(session, self.queue).sweep()
        self.queue.run_pending()
        return count

    def run_budget_checks(self, source: str = "manual") -> int:
        logger.info(f"budget_check_run: source={source}")
        with session_scope(self.session_factory) as session:
            return BudgetMonitor(
                session, self.notifier, self.settings.budget_alert_threshold
            ).sweep()

    def run_monthly_reports(self, source: str = "manual") -> int:
        logger.info(f"monthly_report_run: source={source}")
        with session_scope(self.session_factory) as session:
            job = MonthlyReportJob(
                session, self.notifier, GeminiInsightGenerator(self.settings)
            )
            return job.run()

    def drain_tasks(self) -> None:
        if self.queue.pending():
            self.queue.run_pending()

    def start(self) -> None:
        self.run_recurring_sweep("startup")

        self.scheduler.add_job(
            self.run_recurring_sweep,
            CronTrigger(hour=0, minute=0, timezone=self.settings.timezone),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger.from_crontab("0 0 1 * *", timezone=self.settings.timezone),
            args=["monthly_1st"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_budget_checks,
            CronTrigger(hour="*/6", minute=0, timezone=self.settings.timezone),
            args=["every_6h"],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=900,
        )
        self.scheduler.add_job(
            self.drain_tasks,
            IntervalTrigger(minutes=1),
            id="task_queue_drain",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started: recurring daily 00:00, reports monthly, "
            "budget checks every 6h, task drain every minute"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
