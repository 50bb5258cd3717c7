"""
Read-only campaign / recipient / event aggregate queries.

The pattern matcher calls these by name when a rule resolves to a service
call.  Date windows are computed in Python and bound as parameters so the
same SQL runs on Postgres and SQLite.
"""
from __future__ import annotations

import calendar
import datetime
from typing import Any

from sqlalchemy.engine import Engine

from src.db.executor import execute_readonly
from src.core.logging import get_logger

logger = get_logger(__name__)

_STATUS_JOIN = """
    LEFT JOIN webhook_logs w ON w.email_outbox_id = o.email_outbox_id
    LEFT JOIN email_status s ON s.status_id = w.status_id
"""

_COUNT_BY_STATUS = """
    COUNT(DISTINCT o.email_outbox_id)                                                   AS total_emails,
    COUNT(DISTINCT CASE WHEN s.name = 'Delivered' THEN o.email_outbox_id END)            AS delivered,
    COUNT(DISTINCT CASE WHEN s.name = 'Opened' THEN o.email_outbox_id END)               AS opened,
    COUNT(DISTINCT CASE WHEN s.name = 'Clicked' THEN o.email_outbox_id END)              AS clicked,
    COUNT(DISTINCT CASE WHEN s.name IN ('Bounced', 'Failed') THEN o.email_outbox_id END) AS bounced
"""


def month_window(month: int, year: int | None = None) -> tuple[datetime.datetime, datetime.datetime]:
    """[start, end) of *month* in *year* (default: current year)."""
    year = year or datetime.date.today().year
    start = datetime.datetime(year, month, 1)
    last_day = calendar.monthrange(year, month)[1]
    end = start + datetime.timedelta(days=last_day)
    return start, end


def _rate(part: Any, whole: Any) -> float:
    whole = whole or 0
    return round(100.0 * (part or 0) / whole, 2) if whole else 0.0


class CampaignQueryService:
    """SQL-backed collaborator; every method is read-only."""

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    def _rows(self, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return execute_readonly(sql, params, engine=self._engine)

    @staticmethod
    def _since(days: int) -> datetime.datetime:
        return datetime.datetime.now() - datetime.timedelta(days=days)

    # ── Campaigns ────────────────────────────────────

    def get_recent_campaigns(self, days: int = 30, limit: int = 20) -> list[dict[str, Any]]:
        return self._rows(
            f"""
            SELECT o.strategy_name, {_COUNT_BY_STATUS}, MAX(o.date_created) AS last_sent
            FROM email_outbox o {_STATUS_JOIN}
            WHERE o.date_created >= :since
            GROUP BY o.strategy_name
            ORDER BY last_sent DESC
            LIMIT :limit
            """,
            {"since": self._since(days), "limit": limit},
        )

    def get_campaigns_by_month(self, month: int, year: int | None = None, limit: int = 50) -> list[dict[str, Any]]:
        start, end = month_window(month, year)
        return self._rows(
            f"""
            SELECT o.strategy_name, {_COUNT_BY_STATUS}, MIN(o.date_created) AS first_sent
            FROM email_outbox o {_STATUS_JOIN}
            WHERE o.date_created >= :start AND o.date_created < :end
            GROUP BY o.strategy_name
            ORDER BY total_emails DESC
            LIMIT :limit
            """,
            {"start": start, "end": end, "limit": limit},
        )

    def get_campaigns_by_name(self, name: str, limit: int = 50) -> list[dict[str, Any]]:
        return self._rows(
            f"""
            SELECT o.strategy_name, {_COUNT_BY_STATUS}, MAX(o.date_created) AS last_sent
            FROM email_outbox o {_STATUS_JOIN}
            WHERE LOWER(o.strategy_name) LIKE :pattern
            GROUP BY o.strategy_name
            ORDER BY last_sent DESC
            LIMIT :limit
            """,
            {"pattern": f"%{name.lower()}%", "limit": limit},
        )

    def get_campaign_performance_metrics(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = self._rows(
            f"""
            SELECT o.strategy_name, {_COUNT_BY_STATUS}
            FROM email_outbox o {_STATUS_JOIN}
            GROUP BY o.strategy_name
            ORDER BY opened DESC, total_emails DESC
            LIMIT :limit
            """,
            {"limit": limit},
        )
        for r in rows:
            r["open_rate"] = _rate(r["opened"], r["delivered"])
            r["click_rate"] = _rate(r["clicked"], r["delivered"])
            r["bounce_rate"] = _rate(r["bounced"], r["total_emails"])
        return rows

    # ── Events ───────────────────────────────────────

    def get_bounced_emails(self, month: int | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        window = ""
        if month:
            params["start"], params["end"] = month_window(month)
            window = "AND w.event_date >= :start AND w.event_date < :end"
        return self._rows(
            f"""
            SELECT o.strategy_name, o.to_address, s.name AS status, w.event_date
            FROM webhook_logs w
            JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id
            JOIN email_status s ON s.status_id = w.status_id
            WHERE s.name IN ('Bounced', 'Failed') {window}
            ORDER BY w.event_date DESC
            LIMIT :limit
            """,
            params,
        )

    def get_email_engagement(self, month: int | None = None, limit: int = 100) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        window = ""
        if month:
            params["start"], params["end"] = month_window(month)
            window = "WHERE o.date_created >= :start AND o.date_created < :end"
        rows = self._rows(
            f"""
            SELECT o.strategy_name, {_COUNT_BY_STATUS}
            FROM email_outbox o {_STATUS_JOIN}
            {window}
            GROUP BY o.strategy_name
            ORDER BY clicked DESC, opened DESC
            LIMIT :limit
            """,
            params,
        )
        for r in rows:
            r["open_rate"] = _rate(r["opened"], r["delivered"])
            r["click_rate"] = _rate(r["clicked"], r["delivered"])
        return rows

    def get_email_events_by_type(self, event_type: str, limit: int = 100) -> list[dict[str, Any]]:
        return self._rows(
            """
            SELECT o.strategy_name, o.to_address, s.name AS status, w.event_date
            FROM webhook_logs w
            JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id
            JOIN email_status s ON s.status_id = w.status_id
            WHERE s.name = :event_type
            ORDER BY w.event_date DESC
            LIMIT :limit
            """,
            {"event_type": event_type, "limit": limit},
        )

    # ── Recipients ───────────────────────────────────

    def get_top_recipients(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._rows(
            f"""
            SELECT o.to_address, {_COUNT_BY_STATUS}, MAX(o.date_created) AS last_sent
            FROM email_outbox o {_STATUS_JOIN}
            GROUP BY o.to_address
            ORDER BY total_emails DESC, o.to_address ASC
            LIMIT :limit
            """,
            {"limit": limit},
        )

    def get_recipients_by_month(self, month: int, limit: int = 50) -> list[dict[str, Any]]:
        start, end = month_window(month)
        return self._rows(
            f"""
            SELECT o.to_address, {_COUNT_BY_STATUS}
            FROM email_outbox o {_STATUS_JOIN}
            WHERE o.date_created >= :start AND o.date_created < :end
            GROUP BY o.to_address
            ORDER BY total_emails DESC
            LIMIT :limit
            """,
            {"start": start, "end": end, "limit": limit},
        )

    def get_engaged_recipients(self, limit: int = 50) -> list[dict[str, Any]]:
        return self._rows(
            f"""
            SELECT o.to_address, {_COUNT_BY_STATUS}
            FROM email_outbox o {_STATUS_JOIN}
            GROUP BY o.to_address
            HAVING COUNT(DISTINCT CASE WHEN s.name IN ('Opened', 'Clicked') THEN o.email_outbox_id END) > 0
            ORDER BY clicked DESC, opened DESC
            LIMIT :limit
            """,
            {"limit": limit},
        )

    # ── Lists ────────────────────────────────────────

    def get_email_lists_summary(self, limit: int = 20) -> list[dict[str, Any]]:
        return self._rows(
            """
            SELECT l.email_list_id, l.name, l.date_created,
                   COUNT(DISTINCT o.email_outbox_id) AS emails_sent,
                   COUNT(DISTINCT o.to_address)      AS recipients
            FROM email_list l
            LEFT JOIN email_outbox o ON o.email_list_id = l.email_list_id
            GROUP BY l.email_list_id, l.name, l.date_created
            ORDER BY emails_sent DESC
            LIMIT :limit
            """,
            {"limit": limit},
        )

    def get_list_performance_metrics(self, limit: int = 10) -> list[dict[str, Any]]:
        rows = self._rows(
            f"""
            SELECT l.name, {_COUNT_BY_STATUS}
            FROM email_list l
            LEFT JOIN email_outbox o ON o.email_list_id = l.email_list_id
            {_STATUS_JOIN}
            GROUP BY l.email_list_id, l.name
            ORDER BY opened DESC
            LIMIT :limit
            """,
            {"limit": limit},
        )
        for r in rows:
            r["open_rate"] = _rate(r["opened"], r["delivered"])
            r["click_rate"] = _rate(r["clicked"], r["delivered"])
        return rows

    # ── Dashboard ────────────────────────────────────

    def get_dashboard_metrics(self, days: int = 30) -> dict[str, Any]:
        rows = self._rows(
            f"""
            SELECT COUNT(DISTINCT o.strategy_name) AS campaigns,
                   COUNT(DISTINCT o.to_address)    AS recipients,
                   {_COUNT_BY_STATUS}
            FROM email_outbox o {_STATUS_JOIN}
            WHERE o.date_created >= :since
            """,
            {"since": self._since(days)},
        )
        summary = dict(rows[0]) if rows else {}
        summary["days"] = days
        summary["delivery_rate"] = _rate(summary.get("delivered"), summary.get("total_emails"))
        summary["open_rate"] = _rate(summary.get("opened"), summary.get("delivered"))
        summary["click_rate"] = _rate(summary.get("clicked"), summary.get("delivered"))
        summary["bounce_rate"] = _rate(summary.get("bounced"), summary.get("total_emails"))
        return summary

    def get_email_metrics_summary(self, days: int = 30) -> dict[str, Any]:
        by_status = self._rows(
            """
            SELECT s.name AS status, COUNT(*) AS events
            FROM webhook_logs w
            JOIN email_status s ON s.status_id = w.status_id
            WHERE w.event_date >= :since
            GROUP BY s.name
            ORDER BY events DESC
            """,
            {"since": self._since(days)},
        )
        return {
            "days": days,
            "events_by_status": {r["status"]: r["events"] for r in by_status},
            "total_events": sum(r["events"] for r in by_status),
        }
