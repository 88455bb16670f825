import unittest
from unittest.mock import MagicMock, patch

import mailer
from mailer import Mailer, Recipient

REPORT = {
    "monthName": "March",
    "year": 2024,
    "totalSpent": 1234.5,
    "categories": [
        {"name": "Software", "amount": 50.0, "percentage": 80},
        {"name": "<Music>", "amount": 12.5, "percentage": 20},
    ],
    "topSubscriptions": [{"name": "Adobe", "amount": 50.0, "category": "Software"}],
    "upcomingRenewals": [{"name": "Spotify", "date": "2024-03-15", "amount": 9.99, "daysUntil": 5}],
}


class FormattingTests(unittest.TestCase):
    def test_money_and_dates(self) -> None:
        self.assertEqual(mailer.format_money(1234.5), "$1,234.50")
        self.assertEqual(mailer.format_long_date("2024-01-05"), "Jan 5, 2024")

    def test_recipient_header(self) -> None:
        self.assertEqual(Recipient("ada@example.com", "Ada").header(), '"Ada" <ada@example.com>')
        self.assertEqual(Recipient("ada@example.com").header(), "ada@example.com")


class RenderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.mailer = Mailer()

    def test_subject_and_bodies(self) -> None:
        rendered = self.mailer.render_monthly_report("Ada", REPORT)
        self.assertEqual(rendered.subject, "Your March 2024 subscription spending report")
        self.assertIn("Hi Ada,", rendered.text)
        self.assertIn("$1,234.50", rendered.text)
        self.assertIn("Spotify: $9.99 on Mar 15, 2024", rendered.text)
        self.assertIn("1. Adobe (Software): $50.00/month", rendered.text)
        self.assertIn("in 5 days", rendered.html)

    def test_html_is_autoescaped(self) -> None:
        rendered = self.mailer.render_monthly_report("Ada", REPORT)
        self.assertIn("&lt;Music&gt;", rendered.html)
        self.assertNotIn("<Music>", rendered.html)

    def test_no_upcoming_renewals_message(self) -> None:
        report = dict(REPORT, upcomingRenewals=[])
        rendered = self.mailer.render_monthly_report("", report)
        self.assertIn("Hi there,", rendered.text)
        self.assertIn("Nothing renews in the next 30 days.", rendered.text)
        self.assertIn("Nothing renews in the next 30 days.", rendered.html)


class DeliveryTests(unittest.TestCase):
    def test_without_host_the_email_is_logged_not_sent(self) -> None:
        with patch("mailer.smtplib.SMTP") as smtp_cls:
            Mailer(host=None).send_monthly_report(Recipient("ada@example.com", "Ada"), REPORT)
        smtp_cls.assert_not_called()

    def test_smtp_delivery_uses_starttls_and_login(self) -> None:
        smtp = MagicMock()
        with patch("mailer.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = smtp
            Mailer(
                host="smtp.example.com",
                port=2525,
                username="user",
                password="secret",
                sender="Reports <reports@example.com>",
            ).send_monthly_report(Recipient("ada@example.com", "Ada"), REPORT)

        smtp_cls.assert_called_once_with("smtp.example.com", 2525, timeout=20.0)
        smtp.starttls.assert_called_once_with()
        smtp.login.assert_called_once_with("user", "secret")
        message = smtp.send_message.call_args.args[0]
        self.assertEqual(message["To"], '"Ada" <ada@example.com>')
        self.assertEqual(message["From"], "Reports <reports@example.com>")
        self.assertEqual(message.get_content_subtype(), "alternative")
        self.assertEqual(len(message.get_payload()), 2)

    def test_smtp_errors_propagate(self) -> None:
        with patch("mailer.smtplib.SMTP", side_effect=OSError("connection refused")):
            with self.assertRaises(OSError):
                Mailer(host="smtp.example.com").send_monthly_report(Recipient("ada@example.com"), REPORT)

    def test_from_env(self) -> None:
        env = {
            "SMTP_HOST": "mail.example.com",
            "SMTP_PORT": "465",
            "SMTP_USERNAME": "robot",
            "SMTP_PASSWORD": "pw",
            "SMTP_STARTTLS": "false",
            "MAIL_FROM": "Digest <digest@example.com>",
        }
        with patch.dict("os.environ", env, clear=True):
            configured = Mailer.from_env()
        self.assertEqual(configured.host, "mail.example.com")
        self.assertEqual(configured.port, 465)
        self.assertFalse(configured.starttls)
        self.assertEqual(configured.sender, "Digest <digest@example.com>")

        with patch.dict("os.environ", {}, clear=True):
            default = Mailer.from_env()
        self.assertIsNone(default.host)
        self.assertTrue(default.starttls)
        self.assertEqual(default.sender, mailer.DEFAULT_MAIL_FROM)


if __name__ == "__main__":
    unittest.main()
