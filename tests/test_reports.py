import sqlite3
import tempfile
import unittest
from datetime import date, datetime
from pathlib import Path
from unittest.mock import patch

import db
import reports
from billing import Subscription


class RecordingMailer:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[tuple[str, dict[str, object]]] = []
        self.fail_for = fail_for or set()

    def send_monthly_report(self, recipient, report) -> None:
        if recipient.email in self.fail_for:
            raise RuntimeError(f"relay rejected {recipient.email}")
        self.sent.append((recipient.email, report))


class BuildReportDataTests(unittest.TestCase):
    def setUp(self) -> None:
        self.now = datetime(2024, 3, 10, 9, 0)
        self.subscriptions = [
            Subscription(
                name="Netflix",
                amount="15.99",
                billing_cycle="Monthly",
                category="Entertainment",
                next_payment=date(2024, 3, 15),
            ),
            Subscription(
                name="Adobe",
                amount="600",
                billing_cycle="Yearly",
                category="Software",
                next_payment=date(2024, 11, 1),
            ),
            Subscription(
                name="Gym",
                amount="10",
                billing_cycle="Weekly",
                next_payment=date(2024, 3, 10),
            ),
            Subscription(
                name="Old Paper",
                amount="5",
                billing_cycle="Monthly",
                category="News",
                next_payment=date(2024, 1, 20),
            ),
        ]

    def test_report_shape(self) -> None:
        report = reports.build_report_data(self.subscriptions, self.now)
        self.assertEqual(
            set(report),
            {"monthName", "year", "totalSpent", "categories", "topSubscriptions", "upcomingRenewals"},
        )
        self.assertEqual(report["monthName"], "March")
        self.assertEqual(report["year"], 2024)

    def test_total_and_categories(self) -> None:
        report = reports.build_report_data(self.subscriptions, self.now)
        # 15.99 + 50 + 43.3 + 5
        self.assertEqual(report["totalSpent"], 114.29)
        names = [item["name"] for item in report["categories"]]
        self.assertEqual(names, ["Software", "Uncategorized", "Entertainment", "News"])
        self.assertEqual(sum(item["percentage"] for item in report["categories"]), 100)

    def test_top_subscriptions_use_monthly_amounts(self) -> None:
        report = reports.build_report_data(self.subscriptions, self.now)
        self.assertEqual(
            report["topSubscriptions"][0],
            {"name": "Adobe", "amount": 50.0, "category": "Software"},
        )
        self.assertEqual(len(report["topSubscriptions"]), 4)

    def test_upcoming_renewals_roll_stale_dates_forward(self) -> None:
        report = reports.build_report_data(self.subscriptions, self.now)
        self.assertEqual(
            report["upcomingRenewals"],
            [
                {"name": "Gym", "date": "2024-03-10", "amount": 10.0, "daysUntil": 0},
                {"name": "Netflix", "date": "2024-03-15", "amount": 15.99, "daysUntil": 5},
                {"name": "Old Paper", "date": "2024-03-20", "amount": 5.0, "daysUntil": 10},
            ],
        )

    def test_empty_input_has_zero_total(self) -> None:
        report = reports.build_report_data([], self.now)
        self.assertEqual(report["totalSpent"], 0.0)
        self.assertEqual(report["categories"], [])
        self.assertEqual(report["topSubscriptions"], [])
        self.assertEqual(report["upcomingRenewals"], [])


class RunMonthlyReportsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self._db_patch = patch.object(db, "DB_PATH", Path(self._tmpdir.name) / "reports.db")
        self._db_patch.start()
        self.now = datetime(2024, 3, 10, 9, 0)

    def tearDown(self) -> None:
        self._db_patch.stop()
        self._tmpdir.cleanup()

    def _add_user(self, conn: sqlite3.Connection, email: str, monthly_reports: bool = True) -> int:
        cursor = conn.execute(
            "INSERT INTO users (name, email, password_hash, monthly_reports, created_at) VALUES (?, ?, ?, ?, ?)",
            (email.split("@")[0].title(), email, "x:y", int(monthly_reports), db.utc_now_iso()),
        )
        return int(cursor.lastrowid)

    def _add_subscription(self, conn: sqlite3.Connection, user_id: int, name: str, amount: str = "9.99") -> None:
        conn.execute(
            """
            INSERT INTO subscriptions
                (user_id, name, category, description, amount, billing_cycle, start_date, next_payment, created_at)
            VALUES (?, ?, ?, '', ?, 'Monthly', '2024-01-01', '2024-03-01', ?)
            """,
            (user_id, name, "Music", amount, db.utc_now_iso()),
        )

    def test_sends_only_to_opted_in_users_with_subscriptions(self) -> None:
        with db.connect() as conn:
            ada = self._add_user(conn, "ada@example.com")
            self._add_user(conn, "empty@example.com")
            quiet = self._add_user(conn, "quiet@example.com", monthly_reports=False)
            self._add_subscription(conn, ada, "Spotify")
            self._add_subscription(conn, quiet, "Tidal")

            mailer = RecordingMailer()
            result = reports.run_monthly_reports(conn, mailer, now=self.now)

        self.assertEqual(result.emails_sent, 1)
        self.assertEqual(result.errors, 0)
        self.assertEqual(result.skipped, 1)
        self.assertEqual([email for email, _ in mailer.sent], ["ada@example.com"])
        report = mailer.sent[0][1]
        self.assertEqual(report["upcomingRenewals"][0]["date"], "2024-04-01")

    def test_one_user_failure_does_not_stop_the_batch(self) -> None:
        with db.connect() as conn:
            for email in ("a@example.com", "b@example.com", "c@example.com"):
                user_id = self._add_user(conn, email)
                self._add_subscription(conn, user_id, f"Service for {email}")

            mailer = RecordingMailer(fail_for={"b@example.com"})
            result = reports.run_monthly_reports(conn, mailer, now=self.now)

        self.assertEqual(result.emails_sent, 2)
        self.assertEqual(result.errors, 1)
        self.assertEqual([email for email, _ in mailer.sent], ["a@example.com", "c@example.com"])
        self.assertIn("Sent 2 emails. Errors: 1.", result.message)

    def test_bad_stored_row_is_counted_as_an_error(self) -> None:
        with db.connect() as conn:
            broken = self._add_user(conn, "broken@example.com")
            fine = self._add_user(conn, "fine@example.com")
            self._add_subscription(conn, broken, "Corrupt", amount="not-a-number")
            self._add_subscription(conn, fine, "Spotify")

            mailer = RecordingMailer()
            result = reports.run_monthly_reports(conn, mailer, now=self.now)

        self.assertEqual(result.emails_sent, 1)
        self.assertEqual(result.errors, 1)

    def test_recipient_query_failure_propagates(self) -> None:
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        try:
            with self.assertRaises(sqlite3.OperationalError):
                reports.run_monthly_reports(conn, RecordingMailer(), now=self.now)
        finally:
            conn.close()


if __name__ == "__main__":
    unittest.main()
