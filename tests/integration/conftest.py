"""
Shared fixture -- in-memory SQLite database with a small, fixed email dataset.

Counts per active trigger:
  Black Friday 2025  4 emails: 3 delivered, 1 bounced, 2 opened, 1 clicked
  Spring Sale 2025   2 emails: 2 delivered, 1 unsubscribed
  Welcome Series     2 emails (sent yesterday): 2 delivered, 2 opened, 1 clicked
Old Promo (inactive) has one delivered email.
"""
from __future__ import annotations

import datetime

import pytest

from pipelines.seed.seed_data import create_schema, gen_statuses, insert_rows
from src.db.connection import make_engine

_STATUS = {name: i for i, name in enumerate(
    ["Sent", "Delivered", "Opened", "Clicked", "Bounced", "Failed", "Complained", "Unsubscribed"], 1,
)}


def _dt(*args) -> datetime.datetime:
    return datetime.datetime(*args)


@pytest.fixture(scope="module")
def engine():
    eng = make_engine("sqlite://")
    create_schema(eng)

    yesterday = datetime.datetime.now().replace(microsecond=0) - datetime.timedelta(days=1)

    lists = [
        {"email_list_id": 1, "name": "VIP Subscribers", "date_created": _dt(2024, 12, 1)},
        {"email_list_id": 2, "name": "Newsletter", "date_created": _dt(2024, 12, 2)},
    ]
    triggers = [
        {"email_trigger_id": 1, "communication_id": 101, "description": "Black Friday 2025", "is_active": 1},
        {"email_trigger_id": 2, "communication_id": 102, "description": "Spring Sale 2025", "is_active": 1},
        {"email_trigger_id": 3, "communication_id": 103, "description": "Welcome Series", "is_active": 1},
        {"email_trigger_id": 4, "communication_id": 104, "description": "Old Promo", "is_active": 0},
    ]

    def email(eid, comm, name, list_id, to, sent):
        return {
            "email_outbox_id": eid, "communication_id": comm, "strategy_name": name,
            "email_list_id": list_id, "to_address": to, "subject": f"Subject {eid}",
            "date_created": sent,
        }

    outbox = [
        email(1, 101, "Black Friday 2025", 1, "a@example.com", _dt(2025, 9, 5, 10)),
        email(2, 101, "Black Friday 2025", 1, "b@example.com", _dt(2025, 9, 5, 10)),
        email(3, 101, "Black Friday 2025", 1, "c@example.com", _dt(2025, 9, 6, 10)),
        email(4, 101, "Black Friday 2025", 1, "d@example.com", _dt(2025, 9, 7, 10)),
        email(5, 102, "Spring Sale 2025", 2, "e@example.com", _dt(2025, 3, 10, 9)),
        email(6, 102, "Spring Sale 2025", 2, "f@example.com", _dt(2025, 3, 11, 9)),
        email(7, 103, "Welcome Series", 2, "a@example.com", yesterday),
        email(8, 103, "Welcome Series", 2, "g@example.com", yesterday),
        email(9, 104, "Old Promo", 2, "h@example.com", _dt(2025, 1, 3, 8)),
    ]
    sent_at = {row["email_outbox_id"]: row["date_created"] for row in outbox}

    statuses_by_email = {
        1: ["Delivered", "Opened", "Clicked"],
        2: ["Delivered", "Opened"],
        3: ["Delivered"],
        4: ["Bounced"],
        5: ["Delivered"],
        6: ["Delivered", "Unsubscribed"],
        7: ["Delivered", "Opened"],
        8: ["Delivered", "Opened", "Clicked"],
        9: ["Delivered"],
    }
    events = []
    for eid, names in statuses_by_email.items():
        for minutes, name in enumerate(names, 1):
            events.append({
                "webhook_log_id": len(events) + 1,
                "email_outbox_id": eid,
                "status_id": _STATUS[name],
                "event_date": sent_at[eid] + datetime.timedelta(minutes=minutes),
            })

    insert_rows(eng, "email_status", gen_statuses())
    insert_rows(eng, "email_list", lists)
    insert_rows(eng, "email_trigger", triggers)
    insert_rows(eng, "email_outbox", outbox)
    insert_rows(eng, "webhook_logs", events)
    yield eng
    eng.dispose()
