from __future__ import annotations

import os
import smtplib
from dataclasses import dataclass
from datetime import date
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Mapping

import structlog
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from billing import parse_date

TEMPLATES_DIR = Path(__file__).with_name("templates")
DEFAULT_MAIL_FROM = "SubTracker <noreply@subtracker.local>"

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str = ""

    def header(self) -> str:
        if self.name:
            return f'"{self.name}" <{self.email}>'
        return self.email


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


def format_money(value: float) -> str:
    return f"${value:,.2f}"


def format_long_date(value: str | date) -> str:
    day = parse_date(value) if isinstance(value, str) else value
    return f"{day.strftime('%b')} {day.day}, {day.year}"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def build_template_environment(templates_dir: Path = TEMPLATES_DIR) -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(templates_dir)),
        autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["money"] = format_money
    env.filters["long_date"] = format_long_date
    return env


class Mailer:
    """Renders the monthly digest and hands it to an SMTP relay.

    With no ``host`` configured the message is written to the log instead,
    which keeps local runs and the cron endpoint usable without a relay.
    """

    def __init__(
        self,
        *,
        host: str | None = None,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
        sender: str = DEFAULT_MAIL_FROM,
        timeout: float = 20.0,
        templates_dir: Path = TEMPLATES_DIR,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.sender = sender
        self.timeout = timeout
        self.env = build_template_environment(templates_dir)

    @classmethod
    def from_env(cls) -> Mailer:
        return cls(
            host=os.environ.get("SMTP_HOST", "").strip() or None,
            port=int(os.environ.get("SMTP_PORT", "587")),
            username=os.environ.get("SMTP_USERNAME") or None,
            password=os.environ.get("SMTP_PASSWORD") or None,
            starttls=_env_flag("SMTP_STARTTLS", True),
            sender=os.environ.get("MAIL_FROM", DEFAULT_MAIL_FROM),
        )

    def render_monthly_report(self, recipient_name: str, report: Mapping[str, Any]) -> RenderedEmail:
        context = {"name": recipient_name or "there", "report": report}
        subject = f"Your {report['monthName']} {report['year']} subscription spending report"
        html = self.env.get_template("monthly_report.html").render(**context)
        text = self.env.get_template("monthly_report.txt").render(**context)
        return RenderedEmail(subject=subject, html=html, text=text)

    def build_message(self, recipient: Recipient, rendered: RenderedEmail) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = rendered.subject
        message["From"] = self.sender
        message["To"] = recipient.header()
        message.attach(MIMEText(rendered.text, "plain", "utf-8"))
        message.attach(MIMEText(rendered.html, "html", "utf-8"))
        return message

    def send_monthly_report(self, recipient: Recipient, report: Mapping[str, Any]) -> None:
        rendered = self.render_monthly_report(recipient.name, report)
        message = self.build_message(recipient, rendered)

        if not self.host:
            logger.info(
                "smtp_not_configured_logging_email",
                to=recipient.email,
                subject=rendered.subject,
                body=rendered.text,
            )
            return

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.starttls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)
        logger.info("monthly_report_email_sent", to=recipient.email, subject=rendered.subject)
