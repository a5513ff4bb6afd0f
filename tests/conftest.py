import os

# Keep get_settings() from creating ./data or picking up real credentials.
os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("FINANCE_RESEND_API_KEY", "")
os.environ.setdefault("FINANCE_GEMINI_API_KEY", "")
