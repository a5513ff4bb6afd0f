import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        resend_api_key: str,
        email_from: str,
        email_timeout_secs: float,
        gemini_api_key: str,
        gemini_model: str,
        budget_alert_threshold: int,
        recurring_throttle_limit: int,
        recurring_throttle_period_secs: float,
        task_max_attempts: int,
        task_backoff_secs: float,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.email_timeout_secs = email_timeout_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.budget_alert_threshold = budget_alert_threshold
        self.recurring_throttle_limit = recurring_throttle_limit
        self.recurring_throttle_period_secs = recurring_throttle_period_secs
        self.task_max_attempts = task_max_attempts
        self.task_backoff_secs = task_backoff_secs


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'finance.db'}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("FINANCE_TIMEZONE", "UTC"),
        token_secret=os.getenv(
            "FINANCE_TOKEN_SECRET",
            "3f6c1d0e8a9b4e27b5c2d7f1a0e94c6b8d2f5a7c1e3b9d0f4a6c8e2b7d1f3a5c",
        ),
        resend_api_key=os.getenv("FINANCE_RESEND_API_KEY", ""),
        email_from=os.getenv("FINANCE_EMAIL_FROM", "Finance <onboarding@resend.dev>"),
        email_timeout_secs=float(os.getenv("FINANCE_EMAIL_TIMEOUT_SECS", "10")),
        gemini_api_key=os.getenv("FINANCE_GEMINI_API_KEY", ""),
        gemini_model=os.getenv("FINANCE_GEMINI_MODEL", "gemini-2.5-flash"),
        budget_alert_threshold=int(os.getenv("FINANCE_BUDGET_ALERT_THRESHOLD", "80")),
        recurring_throttle_limit=int(
            os.getenv("FINANCE_RECURRING_THROTTLE_LIMIT", "10")
        ),
        recurring_throttle_period_secs=float(
            os.getenv("FINANCE_RECURRING_THROTTLE_PERIOD_SECS", "60")
        ),
        task_max_attempts=int(os.getenv("FINANCE_TASK_MAX_ATTEMPTS", "2")),
        task_backoff_secs=float(os.getenv("FINANCE_TASK_BACKOFF_SECS", "1")),
    )
