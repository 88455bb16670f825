from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import sqlite3
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from http.cookies import SimpleCookie
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable
from urllib.parse import urlparse

import structlog
from pydantic import ValidationError

import db
from billing import (
    BillingCycle,
    Subscription,
    aggregate_by_category,
    category_breakdown,
    compute_initial_next_payment,
    days_until,
    format_date,
    monthly_cost,
    parse_date,
    quantize_money,
    refresh_next_payment,
    upcoming_within_days,
)
from logging_config import configure_logging
from mailer import Mailer
from reports import UPCOMING_WINDOW_DAYS, build_report_data, run_monthly_reports

SESSION_COOKIE_NAME = "subtracker_session"
CSRF_COOKIE_NAME = "subtracker_csrf"
PASSWORD_HASH_ITERATIONS = 200_000
MIN_PASSWORD_LENGTH = 8
MAX_NAME_LENGTH = 100
DUE_SOON_DAYS = 7
MAX_START_YEAR = 9998

logger = structlog.get_logger(__name__)


def session_duration_days() -> int:
    raw = os.environ.get("SESSION_DURATION_DAYS", "").strip()
    if raw.isdigit() and int(raw) > 0:
        return int(raw)
    if os.environ.get("ENV", "").strip().lower() == "production":
        return 7
    return 30


def default_security_headers() -> list[tuple[str, str]]:
    return [
        ("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"),
        ("X-Frame-Options", "DENY"),
        ("X-Content-Type-Options", "nosniff"),
        ("Referrer-Policy", "no-referrer"),
        ("Cache-Control", "no-store"),
    ]


def should_use_secure_cookie() -> bool:
    cookie_secure_env = os.environ.get("COOKIE_SECURE", "").strip().lower()
    if cookie_secure_env in {"1", "true", "yes", "on"}:
        return True
    return os.environ.get("ENV", "").strip().lower() == "production"


def cookie_samesite() -> str:
    raw = os.environ.get("COOKIE_SAMESITE", "Lax").strip().capitalize()
    if raw in {"Lax", "Strict", "None"}:
        return raw
    return "Lax"


def build_cookie_header(name: str, value: str, *, max_age: int, http_only: bool) -> str:
    parts = [f"{name}={value}", "Path=/", f"SameSite={cookie_samesite()}", f"Max-Age={max_age}"]
    if http_only:
        parts.append("HttpOnly")
    if should_use_secure_cookie():
        parts.append("Secure")
    return "; ".join(parts)


def is_valid_csrf_pair(cookie_token: str | None, header_token: str | None) -> bool:
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token, header_token)


def is_authorized_cron_request(authorization: str | None, expected_token: str | None) -> bool:
    # An unset secret disables the endpoint rather than accepting a default.
    if not expected_token or not authorization:
        return False
    return hmac.compare_digest(authorization, f"Bearer {expected_token}")


def hash_password(password: str, salt: bytes | None = None) -> str:
    if salt is None:
        salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_HASH_ITERATIONS)
    return f"{salt.hex()}:{digest.hex()}"


def verify_password(password: str, encoded_hash: str) -> bool:
    try:
        salt_hex, digest_hex = encoded_hash.split(":", maxsplit=1)
        salt = bytes.fromhex(salt_hex)
        expected = bytes.fromhex(digest_hex)
    except ValueError:
        return False

    candidate = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PASSWORD_HASH_ITERATIONS)
    return hmac.compare_digest(candidate, expected)


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_session(conn: sqlite3.Connection, user_id: int) -> str:
    now = datetime.now(timezone.utc)
    conn.execute(
        "DELETE FROM sessions WHERE user_id = ? OR expires_at <= ?",
        (user_id, now.isoformat(timespec="seconds")),
    )
    token = secrets.token_urlsafe(32)
    expires_at = now + timedelta(days=session_duration_days())
    conn.execute(
        """
        INSERT INTO sessions (user_id, token_hash, expires_at, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (user_id, hash_session_token(token), expires_at.isoformat(timespec="seconds"), db.utc_now_iso()),
    )
    return token


def serialize_user(row: sqlite3.Row) -> dict[str, object]:
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row["email"],
        "monthlyReports": bool(row["monthly_reports"]),
    }


def serialize_subscription(subscription: Subscription, today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    current = refresh_next_payment(subscription, today)

    return {
        "id": current.id,
        "name": current.name,
        "category": current.category,
        "description": current.description,
        "amount": float(quantize_money(current.amount)),
        "billingCycle": current.billing_cycle.value,
        "startDate": format_date(current.start_date) if current.start_date else None,
        "nextPayment": format_date(current.next_payment) if current.next_payment else None,
        "daysUntilPayment": days_until(current.next_payment, today) if current.next_payment else None,
        "monthlyCost": float(monthly_cost(current.amount, current.billing_cycle)),
    }


def parse_subscription_payload(
    body: dict[str, object],
    today: date | None = None,
) -> tuple[Subscription | None, str | None]:
    name = str(body.get("name", "") or "").strip()
    cycle_name = str(body.get("billingCycle", "") or "").strip()
    start_raw = str(body.get("startDate", "") or "").strip()

    if not name:
        return None, "Subscription name is required"
    if len(name) > MAX_NAME_LENGTH:
        return None, f"Subscription name must be {MAX_NAME_LENGTH} characters or fewer"

    amount = body.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float, str)):
        return None, "Amount must be a number"

    cycle = BillingCycle.parse(cycle_name)
    if cycle is BillingCycle.CUSTOM and cycle_name.lower() != BillingCycle.CUSTOM.value.lower():
        allowed = ", ".join(item.value for item in BillingCycle)
        return None, f"Billing cycle must be one of: {allowed}"

    try:
        start_date = parse_date(start_raw)
    except ValueError:
        return None, "startDate must be YYYY-MM-DD"
    if start_date.year > MAX_START_YEAR:
        return None, f"startDate year must be {MAX_START_YEAR} or earlier"

    try:
        subscription = Subscription(
            name=name,
            amount=str(amount).strip(),
            billing_cycle=cycle,
            category=body.get("category"),
            description=str(body.get("description", "") or "").strip(),
            start_date=start_date,
        )
    except ValidationError as exc:
        field = exc.errors()[0]["loc"][0] if exc.errors() and exc.errors()[0]["loc"] else ""
        if field == "amount":
            return None, "Amount must be a non-negative number"
        return None, "Invalid subscription payload"

    next_payment = compute_initial_next_payment(start_date, cycle, today or date.today())
    return subscription.model_copy(update={"next_payment": next_payment}), None


def parse_auth_payload(body: dict[str, object], require_name: bool) -> tuple[dict[str, str] | None, str | None]:
    name = str(body.get("name", "") or "").strip()
    email = str(body.get("email", "") or "").strip().lower()
    password = str(body.get("password", "") or "")

    if require_name and len(name) < 2:
        return None, "Name must be at least 2 characters"
    if require_name and len(name) > 50:
        return None, "Name must be 50 characters or fewer"
    if "@" not in email or "." not in email.split("@")[-1]:
        return None, "A valid email is required"
    if len(password) < MIN_PASSWORD_LENGTH:
        return None, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"

    return {"name": name, "email": email, "password": password}, None


def build_reminders(subscriptions: list[Subscription], today: date) -> list[dict[str, object]]:
    current = [refresh_next_payment(item, today) for item in subscriptions]
    return [
        {
            "id": entry.subscription.id,
            "name": entry.subscription.name,
            "nextPayment": format_date(entry.subscription.next_payment),
            "daysUntilPayment": entry.days_until,
            "amount": float(quantize_money(entry.subscription.amount)),
            "billingCycle": entry.subscription.billing_cycle.value,
            "isDueSoon": entry.days_until <= DUE_SOON_DAYS,
        }
        for entry in upcoming_within_days(current, UPCOMING_WINDOW_DAYS, today)
    ]


class SubscriptionHandler(BaseHTTPRequestHandler):
    server_version = "SubTracker/1.0"

    def log_message(self, format: str, *args) -> None:
        logger.debug("http_request", client=self.client_address[0], line=format % args)

    def end_headers(self) -> None:
        for key, value in default_security_headers():
            self.send_header(key, value)
        super().end_headers()

    def _send_json(
        self,
        payload: dict[str, object],
        status: int = 200,
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        for key, value in extra_headers or []:
            self.send_header(key, value)
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict[str, object]:
        # JSONDecodeError, UnicodeDecodeError and a malformed Content-Length are all ValueErrors.
        content_length = int(self.headers.get("Content-Length") or 0)
        if content_length < 0:
            raise ValueError("Content-Length must not be negative")
        if content_length == 0:
            return {}

        raw = self.rfile.read(content_length)
        if not raw:
            return {}

        body = json.loads(raw.decode("utf-8"))
        if not isinstance(body, dict):
            raise json.JSONDecodeError("Expected a JSON object", raw.decode("utf-8"), 0)
        return body

    def _cookie(self, name: str) -> str | None:
        cookie_header = self.headers.get("Cookie")
        if not cookie_header:
            return None

        cookie = SimpleCookie()
        cookie.load(cookie_header)
        morsel = cookie.get(name)
        return morsel.value if morsel else None

    def _require_csrf(self) -> bool:
        if is_valid_csrf_pair(self._cookie(CSRF_COOKIE_NAME), self.headers.get("X-CSRF-Token")):
            return True
        self._send_json({"error": "Invalid CSRF token"}, status=403)
        return False

    def _current_user(self) -> sqlite3.Row | None:
        token = self._cookie(SESSION_COOKIE_NAME)
        if not token:
            return None

        with db.connect() as conn:
            return conn.execute(
                """
                SELECT users.*
                FROM sessions
                JOIN users ON users.id = sessions.user_id
                WHERE sessions.token_hash = ? AND sessions.expires_at > ?
                """,
                (hash_session_token(token), db.utc_now_iso()),
            ).fetchone()

    def _require_auth_user(self, csrf: bool = False) -> sqlite3.Row | None:
        user = self._current_user()
        if user is None:
            self._send_json({"error": "Authentication required"}, status=401)
            return None
        if csrf and not self._require_csrf():
            return None
        return user

    def _session_cookies(self, token: str) -> list[tuple[str, str]]:
        max_age = session_duration_days() * 24 * 60 * 60
        return [
            ("Set-Cookie", build_cookie_header(SESSION_COOKIE_NAME, token, max_age=max_age, http_only=True)),
            (
                "Set-Cookie",
                build_cookie_header(CSRF_COOKIE_NAME, secrets.token_urlsafe(24), max_age=max_age, http_only=False),
            ),
        ]

    def _cleared_session_cookies(self) -> list[tuple[str, str]]:
        return [
            ("Set-Cookie", build_cookie_header(SESSION_COOKIE_NAME, "", max_age=0, http_only=True)),
            ("Set-Cookie", build_cookie_header(CSRF_COOKIE_NAME, "", max_age=0, http_only=False)),
        ]

    def _guarded(self, route: Callable[[str], None]) -> None:
        path = urlparse(self.path).path
        try:
            route(path)
        except Exception:
            logger.exception("request_failed", method=self.command, path=path)
            self._send_json({"error": "Internal server error"}, status=500)

    def _subscription_route(self, path: str, action: Callable[[int], None]) -> bool:
        path_parts = path.strip("/").split("/")
        if len(path_parts) != 3 or path_parts[0] != "api" or path_parts[1] != "subscriptions":
            return False
        try:
            sub_id = int(path_parts[2])
        except ValueError:
            self._send_json({"error": "Invalid subscription id"}, status=400)
            return True
        action(sub_id)
        return True

    def do_GET(self) -> None:
        self._guarded(self._route_get)

    def do_POST(self) -> None:
        self._guarded(self._route_post)

    def do_PUT(self) -> None:
        self._guarded(self._route_put)

    def do_DELETE(self) -> None:
        self._guarded(self._route_delete)

    def _route_get(self, path: str) -> None:
        if path == "/api/health":
            return self._send_json({"ok": True})
        if path == "/api/auth/me":
            return self._get_auth_me()
        if path == "/api/preferences":
            return self._get_preferences()
        if path == "/api/subscriptions":
            return self._get_subscriptions()
        if path == "/api/reminders":
            return self._get_reminders()
        if path == "/api/reports/monthly":
            return self._get_monthly_report()
        if path == "/api/cron/monthly-reports":
            return self._run_monthly_reports()

        if self._subscription_route(path, self._get_subscription):
            return
        return self._send_json({"error": "Not found"}, status=404)

    def _route_post(self, path: str) -> None:
        if path == "/api/subscriptions":
            return self._create_subscription()
        if path == "/api/auth/signup":
            return self._auth_signup()
        if path == "/api/auth/login":
            return self._auth_login()
        if path == "/api/auth/logout":
            return self._auth_logout()
        return self._send_json({"error": "Not found"}, status=404)

    def _route_put(self, path: str) -> None:
        if path == "/api/preferences":
            return self._update_preferences()
        if self._subscription_route(path, self._update_subscription):
            return
        return self._send_json({"error": "Not found"}, status=404)

    def _route_delete(self, path: str) -> None:
        if self._subscription_route(path, self._delete_subscription):
            return
        return self._send_json({"error": "Not found"}, status=404)

    def _get_auth_me(self) -> None:
        user = self._current_user()
        self._send_json({"user": serialize_user(user) if user is not None else None})

    def _auth_signup(self) -> None:
        try:
            body = self._read_json()
        except ValueError:
            return self._send_json({"error": "Invalid JSON body"}, status=400)

        payload, error = parse_auth_payload(body, require_name=True)
        if error or payload is None:
            return self._send_json({"error": error or "Invalid payload"}, status=400)

        try:
            with db.connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (name, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (payload["name"], payload["email"], hash_password(payload["password"]), db.utc_now_iso()),
                )
                user_id = int(cursor.lastrowid)
                token = issue_session(conn, user_id)
                user = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        except sqlite3.IntegrityError:
            return self._send_json({"error": "An account with that email already exists"}, status=409)

        logger.info("user_registered", user_id=user_id)
        self._send_json({"user": serialize_user(user)}, status=201, extra_headers=self._session_cookies(token))

    def _auth_login(self) -> None:
        try:
            body = self._read_json()
        except ValueError:
            return self._send_json({"error": "Invalid JSON body"}, status=400)

        payload, error = parse_auth_payload(body, require_name=False)
        if error or payload is None:
            return self._send_json({"error": error or "Invalid payload"}, status=400)

        with db.connect() as conn:
            user = conn.execute("SELECT * FROM users WHERE email = ?", (payload["email"],)).fetchone()
            if user is None or not verify_password(payload["password"], str(user["password_hash"])):
                logger.info("login_failed")
                return self._send_json({"error": "Invalid email or password"}, status=401)
            token = issue_session(conn, int(user["id"]))

        logger.info("login_succeeded", user_id=user["id"])
        self._send_json({"user": serialize_user(user)}, extra_headers=self._session_cookies(token))

    def _auth_logout(self) -> None:
        token = self._cookie(SESSION_COOKIE_NAME)
        if token and not self._require_csrf():
            return

        if token:
            with db.connect() as conn:
                conn.execute("DELETE FROM sessions WHERE token_hash = ?", (hash_session_token(token),))

        self._send_json({"loggedOut": True}, extra_headers=self._cleared_session_cookies())

    def _get_preferences(self) -> None:
        user = self._require_auth_user()
        if user is None:
            return
        self._send_json({"monthlyReports": bool(user["monthly_reports"])})

    def _update_preferences(self) -> None:
        user = self._require_auth_user(csrf=True)
        if user is None:
            return

        try:
            body = self._read_json()
        except ValueError:
            return self._send_json({"error": "Invalid JSON body"}, status=400)

        enabled = body.get("monthlyReports")
        if not isinstance(enabled, bool):
            return self._send_json({"error": "monthlyReports must be true or false"}, status=400)

        with db.connect() as conn:
            conn.execute("UPDATE users SET monthly_reports = ? WHERE id = ?", (int(enabled), int(user["id"])))
        self._send_json({"monthlyReports": enabled})

    def _user_subscriptions(self, user_id: int) -> list[Subscription]:
        with db.connect() as conn:
            rows = db.fetch_user_subscriptions(conn, user_id)
        return [db.subscription_from_row(row) for row in rows]

    def _get_subscriptions(self) -> None:
        user = self._require_auth_user()
        if user is None:
            return

        today = date.today()
        subscriptions = self._user_subscriptions(int(user["id"]))
        total_monthly = sum((item.monthly_amount for item in subscriptions), Decimal(0))

        self._send_json(
            {
                "subscriptions": [serialize_subscription(item, today=today) for item in subscriptions],
                "totalMonthlySpend": float(quantize_money(total_monthly)),
                "spendingByCategory": category_breakdown(aggregate_by_category(subscriptions)),
            }
        )

    def _find_subscription(self, conn: sqlite3.Connection, sub_id: int, user_id: int) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM subscriptions WHERE id = ? AND user_id = ?",
            (sub_id, user_id),
        ).fetchone()

    def _get_subscription(self, sub_id: int) -> None:
        user = self._require_auth_user()
        if user is None:
            return

        with db.connect() as conn:
            row = self._find_subscription(conn, sub_id, int(user["id"]))
        if row is None:
            return self._send_json({"error": "Subscription not found"}, status=404)
        self._send_json({"subscription": serialize_subscription(db.subscription_from_row(row))})

    def _get_reminders(self) -> None:
        user = self._require_auth_user()
        if user is None:
            return

        reminders = build_reminders(self._user_subscriptions(int(user["id"])), date.today())
        self._send_json({"reminders": reminders, "nextReminder": reminders[0] if reminders else None})

    def _get_monthly_report(self) -> None:
        user = self._require_auth_user()
        if user is None:
            return

        subscriptions = self._user_subscriptions(int(user["id"]))
        self._send_json({"report": build_report_data(subscriptions, datetime.now())})

    def _read_subscription_payload(self) -> Subscription | None:
        try:
            body = self._read_json()
        except ValueError:
            self._send_json({"error": "Invalid JSON body"}, status=400)
            return None

        subscription, error = parse_subscription_payload(body)
        if error or subscription is None:
            self._send_json({"error": error or "Invalid payload"}, status=400)
            return None
        return subscription

    def _create_subscription(self) -> None:
        user = self._require_auth_user(csrf=True)
        if user is None:
            return
        subscription = self._read_subscription_payload()
        if subscription is None:
            return

        with db.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO subscriptions
                    (user_id, name, category, description, amount, billing_cycle, start_date, next_payment, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(user["id"]),
                    subscription.name,
                    subscription.category,
                    subscription.description,
                    str(subscription.amount),
                    subscription.billing_cycle.value,
                    format_date(subscription.start_date),
                    format_date(subscription.next_payment),
                    db.utc_now_iso(),
                ),
            )
            row = self._find_subscription(conn, int(cursor.lastrowid), int(user["id"]))

        logger.info(
            "subscription_created",
            user_id=user["id"],
            subscription_id=row["id"],
            billing_cycle=subscription.billing_cycle.value,
            next_payment=row["next_payment"],
        )
        self._send_json({"subscription": serialize_subscription(db.subscription_from_row(row))}, status=201)

    def _update_subscription(self, sub_id: int) -> None:
        user = self._require_auth_user(csrf=True)
        if user is None:
            return
        subscription = self._read_subscription_payload()
        if subscription is None:
            return

        with db.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE subscriptions
                SET name = ?, category = ?, description = ?, amount = ?, billing_cycle = ?,
                    start_date = ?, next_payment = ?
                WHERE id = ? AND user_id = ?
                """,
                (
                    subscription.name,
                    subscription.category,
                    subscription.description,
                    str(subscription.amount),
                    subscription.billing_cycle.value,
                    format_date(subscription.start_date),
                    format_date(subscription.next_payment),
                    sub_id,
                    int(user["id"]),
                ),
            )
            if cursor.rowcount == 0:
                return self._send_json({"error": "Subscription not found"}, status=404)
            row = self._find_subscription(conn, sub_id, int(user["id"]))

        self._send_json({"subscription": serialize_subscription(db.subscription_from_row(row))})

    def _delete_subscription(self, sub_id: int) -> None:
        user = self._require_auth_user(csrf=True)
        if user is None:
            return

        with db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM subscriptions WHERE id = ? AND user_id = ?",
                (sub_id, int(user["id"])),
            )

        if cursor.rowcount == 0:
            return self._send_json({"error": "Subscription not found"}, status=404)
        self._send_json({"deleted": True})

    def _run_monthly_reports(self) -> None:
        if not is_authorized_cron_request(self.headers.get("Authorization"), os.environ.get("CRON_SECRET_TOKEN")):
            logger.warning("cron_unauthorized", path="/api/cron/monthly-reports")
            return self._send_json({"success": False, "error": "Unauthorized"}, status=401)

        try:
            with db.connect() as conn:
                result = run_monthly_reports(conn, Mailer.from_env())
        except Exception as exc:
            logger.exception("monthly_reports_failed")
            return self._send_json({"success": False, "error": str(exc) or "Report generation failed"}, status=500)

        self._send_json(
            {
                "success": True,
                "message": result.message,
                "emailsSent": result.emails_sent,
                "errors": result.errors,
            }
        )


def create_server(host: str, port: int) -> ThreadingHTTPServer:
    db.ensure_schema(db.DB_PATH)
    return ThreadingHTTPServer((host, port), SubscriptionHandler)


if __name__ == "__main__":
    configure_logging()
    port = int(os.environ.get("PORT", "8000"))
    host = os.environ.get("HOST", "127.0.0.1")

    server = create_server(host, port)
    logger.info("server_started", url=f"http://{host}:{port}", database=str(db.DB_PATH))

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
