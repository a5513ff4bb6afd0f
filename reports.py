import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import Transaction, TransactionType, User
from money import format_cents
from notifications import Notifier
from periods import Period, last_month, utcnow


logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

_CODE_FENCE = re.compile(r"```(?:json)?\n?")


@dataclass
class MonthlyStats:
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0


def monthly_stats(session: Session, user_id: int, period: Period) -> MonthlyStats:
    rows = session.scalars(
        select(Transaction).where(
            Transaction.user_id == user_id,
            Transaction.date >= period.start,
            Transaction.date < period.end,
        )
    ).all()
    stats = MonthlyStats(transaction_count=len(rows))
    for txn in rows:
        if txn.type == TransactionType.expense:
            stats.total_expenses_cents += txn.amount_cents
            stats.by_category[txn.category] = (
                stats.by_category.get(txn.category, 0) + txn.amount_cents
            )
        else:
            stats.total_income_cents += txn.amount_cents
    return stats


class InsightGenerator(Protocol):
    def generate(self, stats: MonthlyStats, month: str) -> list[str]: ...


def _insights_prompt(stats: MonthlyStats, month: str) -> str:
    categories = ", ".join(
        f"{name}: {format_cents(cents)}" for name, cents in stats.by_category.items()
    )
    net = stats.total_income_cents - stats.total_expenses_cents
    return (
        "Analyze this financial data and provide 3 concise, actionable insights.\n"
        "Focus on spending patterns and practical advice.\n"
        "Keep it friendly and conversational.\n\n"
        f"Financial Data for {month}:\n"
        f"- Total Income: {format_cents(stats.total_income_cents)}\n"
        f"- Total Expenses: {format_cents(stats.total_expenses_cents)}\n"
        f"- Net Income: {format_cents(net)}\n"
        f"- Expense Categories: {categories}\n\n"
        "Format the response as a JSON array of strings, like this:\n"
        '["insight 1", "insight 2", "insight 3"]'
    )


def parse_insights(text: str) -> list[str]:
    data = json.loads(_CODE_FENCE.sub("", text).strip())
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise ValueError("Insights must be a JSON array of strings")
    return data


class GeminiInsightGenerator:
    def __init__(self, settings: Optional[Settings] = None, model=None) -> None:
        self.settings = settings or get_settings()
        self._model = model

    def _get_model(self):
        if self._model is None:
            import google.generativeai as genai

            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(self.settings.gemini_model)
        return self._model

    def generate(self, stats: MonthlyStats, month: str) -> list[str]:
        try:
            response = self._get_model().generate_content(_insights_prompt(stats, month))
            return parse_insights(response.text)
        except Exception:
            logger.exception("insights_failed: using fallback insights")
            return list(FALLBACK_INSIGHTS)


class MonthlyReportJob:
    def __init__(
        self, session: Session, notifier: Notifier, insights: InsightGenerator
    ) -> None:
        self.session = session
        self.notifier = notifier
        self.insights = insights

    def run(self, now: Optional[datetime] = None) -> int:
        period = last_month(now or utcnow())
        month_name = period.start.strftime("%B")
        users = self.session.scalars(select(User).order_by(User.id)).all()
        sent = 0
        for user in users:
            try:
                if self.send_report(user, period, month_name):
                    sent += 1
            except Exception:
                logger.exception(f"monthly_report_failed: user_id={user.id}")
        logger.info(f"monthly_reports: users={len(users)} sent={sent}")
        return sent

    def send_report(self, user: User, period: Period, month_name: str) -> bool:
        stats = monthly_stats(self.session, user.id, period)
        insights = self.insights.generate(stats, month_name)
        result = self.notifier.send(
            to=user.email,
            subject=f"Your Monthly Financial Report - {month_name}",
            template_type="monthly-report",
            template_data={
                "user_name": user.name or user.email,
                "month": month_name,
                "stats": stats,
                "insights": insights,
            },
        )
        if not result.success:
            logger.warning(
                f"monthly_report_not_sent: user_id={user.id} error={result.error}"
            )
        return result.success
