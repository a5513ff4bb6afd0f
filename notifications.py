from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http.client import HTTPException
from pathlib import Path
from typing import Optional, Protocol
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings
from errors import ValidationError
from money import format_cents


logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"
TEMPLATE_TYPES = ("budget-alert", "monthly-report")


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class Notifier(Protocol):
    def send(
        self,
        *,
        to: str,
        subject: str,
        template_type: str,
        template_data: dict[str, object],
    ) -> SendResult: ...


def build_template_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["currency"] = format_cents
    return env


class EmailNotifier:
    """Renders an email template and delivers it through the Resend API."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.env = build_template_env()

    def render(self, template_type: str, template_data: dict[str, object]) -> str:
        if template_type not in TEMPLATE_TYPES:
            raise ValidationError(f"Unknown email template: {template_type}")
        template = self.env.get_template(f"{template_type}.html")
        return template.render(**template_data)

    def send(
        self,
        *,
        to: str,
        subject: str,
        template_type: str,
        template_data: dict[str, object],
    ) -> SendResult:
        html = self.render(template_type, template_data)
        if not self.settings.resend_api_key:
            return SendResult(success=False, error="Resend API key is not configured")

        body = json.dumps(
            {
                "from": self.settings.email_from,
                "to": [to],
                "subject": subject,
                "html": html,
            }
        ).encode("utf-8")
        req = Request(
            RESEND_URL,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.settings.resend_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.settings.email_timeout_secs) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except (OSError, HTTPException, ValueError) as exc:
            logger.error(f"email_send_failed: template={template_type} error={exc}")
            return SendResult(success=False, error=str(exc))

        message_id = payload.get("id") if isinstance(payload, dict) else None
        logger.info(f"email_sent: template={template_type} id={message_id}")
        return SendResult(success=True, message_id=message_id)
