from __future__ import annotations

import calendar
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Protocol

import structlog

import db
from billing import (
    Subscription,
    aggregate_by_category,
    category_breakdown,
    format_date,
    quantize_money,
    refresh_next_payment,
    top_n,
    upcoming_within_days,
)
from logging_config import configure_logging
from mailer import Mailer, Recipient

UPCOMING_WINDOW_DAYS = 30
TOP_SUBSCRIPTIONS_LIMIT = 5

logger = structlog.get_logger(__name__)


class ReportSender(Protocol):
    def send_monthly_report(self, recipient: Recipient, report: dict[str, object]) -> None: ...


@dataclass
class ReportRunResult:
    emails_sent: int = 0
    errors: int = 0
    skipped: int = 0

    @property
    def message(self) -> str:
        return (
            "Monthly spending reports generated successfully. "
            f"Sent {self.emails_sent} emails. Errors: {self.errors}."
        )


def build_report_data(subscriptions: Iterable[Subscription], now: datetime) -> dict[str, object]:
    current = [refresh_next_payment(item, now) for item in subscriptions]
    total = sum((item.monthly_amount for item in current), Decimal(0))

    top_subscriptions = [
        {
            "name": item.name,
            "amount": float(quantize_money(item.monthly_amount)),
            "category": item.category,
        }
        for item in top_n(current, TOP_SUBSCRIPTIONS_LIMIT)
    ]
    upcoming_renewals = [
        {
            "name": entry.subscription.name,
            "date": format_date(entry.subscription.next_payment),
            "amount": float(quantize_money(entry.subscription.amount)),
            "daysUntil": entry.days_until,
        }
        for entry in upcoming_within_days(current, UPCOMING_WINDOW_DAYS, now)
    ]

    return {
        "monthName": calendar.month_name[now.month],
        "year": now.year,
        "totalSpent": float(quantize_money(total)),
        "categories": category_breakdown(aggregate_by_category(current)),
        "topSubscriptions": top_subscriptions,
        "upcomingRenewals": upcoming_renewals,
    }


def run_monthly_reports(
    conn: sqlite3.Connection,
    mailer: ReportSender,
    now: datetime | None = None,
) -> ReportRunResult:
    """Send the monthly digest to every user who opted in.

    A failure for one user is logged and counted; the remaining users are
    still processed. Failing to load the recipient list aborts the run.
    """
    now = now or datetime.now()
    result = ReportRunResult()

    users = db.fetch_report_recipients(conn)
    logger.info("monthly_reports_started", recipients=len(users), month=now.month, year=now.year)

    for user in users:
        log = logger.bind(user_id=user["id"])
        try:
            rows = db.fetch_user_subscriptions(conn, int(user["id"]))
            if not rows:
                log.info("monthly_report_skipped", reason="no_subscriptions")
                result.skipped += 1
                continue

            subscriptions = [db.subscription_from_row(row) for row in rows]
            report = build_report_data(subscriptions, now)
            mailer.send_monthly_report(Recipient(email=user["email"], name=user["name"]), report)
            result.emails_sent += 1
            log.info("monthly_report_sent", subscriptions=len(subscriptions))
        except Exception as exc:
            result.errors += 1
            log.exception("monthly_report_failed", error=str(exc))

    logger.info(
        "monthly_reports_finished",
        emails_sent=result.emails_sent,
        errors=result.errors,
        skipped=result.skipped,
    )
    return result


def main() -> int:
    configure_logging()
    with db.connect() as conn:
        result = run_monthly_reports(conn, Mailer.from_env())
    logger.info("monthly_reports_summary", message=result.message)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
