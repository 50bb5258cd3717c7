"""
Filtered campaign trigger reports.

One row per active email trigger with delivery / engagement counts and the
derived rates.  Every narrowing field of a `TriggerReportFilter` becomes a
bound parameter; the sort column comes from the catalog whitelist, never
from user text.
"""
from __future__ import annotations

import datetime
from typing import Any

from sqlalchemy.engine import Engine

from src.db.executor import execute_readonly, execute_scalar
from src.governance.catalog_loader import FilterCatalog, load_filter_catalog
from src.nlq.models import TriggerReportFilter
from src.core.logging import get_logger

logger = get_logger(__name__)

_AGGREGATE_CTE = """
WITH report AS (
    SELECT
        et.email_trigger_id                                                  AS trigger_id,
        et.description                                                       AS strategy_name,
        COUNT(DISTINCT eo.email_outbox_id)                                   AS total_emails,
        COUNT(DISTINCT CASE WHEN st.name = 'Delivered' THEN eo.email_outbox_id END)    AS delivered_count,
        COUNT(DISTINCT CASE WHEN st.name IN ('Bounced', 'Failed') THEN eo.email_outbox_id END) AS bounced_count,
        COUNT(DISTINCT CASE WHEN st.name = 'Opened' THEN eo.email_outbox_id END)       AS opened_count,
        COUNT(DISTINCT CASE WHEN st.name = 'Clicked' THEN eo.email_outbox_id END)      AS clicked_count,
        COUNT(DISTINCT CASE WHEN st.name = 'Complained' THEN eo.email_outbox_id END)   AS complained_count,
        COUNT(DISTINCT CASE WHEN st.name = 'Unsubscribed' THEN eo.email_outbox_id END) AS unsubscribed_count,
        MIN(eo.date_created)                                                 AS first_email_sent,
        MAX(eo.date_created)                                                 AS last_email_sent
    FROM email_trigger et
    LEFT JOIN email_outbox eo ON eo.communication_id = et.communication_id
    LEFT JOIN webhook_logs wl ON wl.email_outbox_id = eo.email_outbox_id
    LEFT JOIN email_status st ON st.status_id = wl.status_id
    WHERE {where}
    GROUP BY et.email_trigger_id, et.description
),
rated AS (
    SELECT
        r.*,
        CASE WHEN r.total_emails > 0 THEN 100.0 * r.delivered_count / r.total_emails ELSE 0 END      AS delivery_rate,
        CASE WHEN r.delivered_count > 0 THEN 100.0 * r.opened_count / r.delivered_count ELSE 0 END   AS open_rate,
        CASE WHEN r.delivered_count > 0 THEN 100.0 * r.clicked_count / r.delivered_count ELSE 0 END  AS click_rate,
        CASE WHEN r.total_emails > 0 THEN 100.0 * r.bounced_count / r.total_emails ELSE 0 END        AS bounce_rate,
        CASE WHEN r.delivered_count > 0 THEN 100.0 * r.complained_count / r.delivered_count ELSE 0 END   AS complaint_rate,
        CASE WHEN r.delivered_count > 0 THEN 100.0 * r.unsubscribed_count / r.delivered_count ELSE 0 END AS unsubscribe_rate
    FROM report r
)
"""

_REPORT_COLUMNS = (
    "strategy_name, total_emails, delivered_count, bounced_count, opened_count, "
    "clicked_count, complained_count, unsubscribed_count, first_email_sent, "
    "last_email_sent, delivery_rate, open_rate, click_rate, bounce_rate, "
    "complaint_rate, unsubscribe_rate"
)

# (filter attribute, column in `rated`, comparison)
_BOUNDS: list[tuple[str, str, str]] = [
    ("min_total_emails", "total_emails", ">="),
    ("max_total_emails", "total_emails", "<="),
    ("min_delivered_count", "delivered_count", ">="),
    ("min_opened_count", "opened_count", ">="),
    ("min_clicked_count", "clicked_count", ">="),
    ("min_click_rate_percentage", "click_rate", ">="),
    ("max_click_rate_percentage", "click_rate", "<="),
    ("min_open_rate_percentage", "open_rate", ">="),
    ("max_open_rate_percentage", "open_rate", "<="),
    ("min_delivery_rate_percentage", "delivery_rate", ">="),
    ("max_delivery_rate_percentage", "delivery_rate", "<="),
    ("min_bounce_rate_percentage", "bounce_rate", ">="),
    ("max_bounce_rate_percentage", "bounce_rate", "<="),
]


def build_report_query(
    filters: TriggerReportFilter,
    catalog: FilterCatalog | None = None,
) -> tuple[str, str, dict[str, Any]]:
    """Return (page_sql, count_sql, params) for *filters*."""
    if catalog is None:
        catalog = load_filter_catalog()

    params: dict[str, Any] = {}
    where = ["et.is_active = 1"]
    if filters.strategy_name:
        where.append("LOWER(et.description) LIKE :strategy_name")
        params["strategy_name"] = f"%{filters.strategy_name.lower()}%"

    outer: list[str] = []
    if filters.first_email_sent_from:
        outer.append("first_email_sent >= :first_sent_from")
        params["first_sent_from"] = filters.first_email_sent_from.isoformat()
    if filters.first_email_sent_to:
        # inclusive of the whole end day
        outer.append("first_email_sent < :first_sent_to")
        params["first_sent_to"] = (
            filters.first_email_sent_to + datetime.timedelta(days=1)
        ).isoformat()

    for attr, column, op in _BOUNDS:
        value = getattr(filters, attr)
        if value is not None:
            outer.append(f"{column} {op} :{attr}")
            params[attr] = value

    cte = _AGGREGATE_CTE.format(where=" AND ".join(where))
    outer_where = f"WHERE {' AND '.join(outer)}" if outer else ""

    sort_column = catalog.resolve_sort(filters.sort_by)
    direction = "DESC" if filters.sort_direction == "desc" else "ASC"

    page_sql = (
        f"{cte}SELECT {_REPORT_COLUMNS} FROM rated {outer_where} "
        f"ORDER BY {sort_column} {direction}, trigger_id ASC "
        f"LIMIT :limit OFFSET :offset"
    )
    count_sql = f"{cte}SELECT COUNT(*) FROM rated {outer_where}"

    return page_sql, count_sql, params


def get_reports_filtered(
    filters: TriggerReportFilter,
    engine: Engine | None = None,
    catalog: FilterCatalog | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Run the filtered trigger report; returns (page rows, total matching rows)."""
    page_sql, count_sql, params = build_report_query(filters, catalog)

    total = int(execute_scalar(count_sql, params, engine=engine) or 0)
    rows = execute_readonly(
        page_sql,
        {**params, "limit": filters.page_size, "offset": filters.offset},
        engine=engine,
    )
    for row in rows:
        for key in ("delivery_rate", "open_rate", "click_rate", "bounce_rate",
                    "complaint_rate", "unsubscribe_rate"):
            if row.get(key) is not None:
                row[key] = round(float(row[key]), 2)

    logger.info("Trigger reports: %d of %d (page %d, size %d)",
                len(rows), total, filters.page_number, filters.page_size)
    return rows, total
