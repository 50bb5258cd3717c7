"""
Seed data generator -- creates realistic email-campaign data.

Generates:
  - ~12 email lists
  - ~40 campaign triggers (one strategy per trigger)
  - ~20 000 outbound emails spread over ~3 000 recipients
  - webhook status events (Delivered / Opened / Clicked / Bounced / ...)

Tables are created if missing (SQLAlchemy Core metadata), then filled.
Run:  python -m pipelines.seed.seed_data
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy import (
    Column, DateTime, Integer, MetaData, String, Table, create_engine, text,
)
from sqlalchemy.engine import Engine

from src.core.config import get_settings

fake = Faker()
Faker.seed(42)
random.seed(42)

# ── Tunables ─────────────────────────────────────────────
NUM_LISTS = 12
NUM_TRIGGERS = 40
NUM_RECIPIENTS = 3_000
NUM_EMAILS = 20_000

STATUSES = ["Sent", "Delivered", "Opened", "Clicked", "Bounced", "Failed", "Complained", "Unsubscribed"]
CAMPAIGN_THEMES = [
    "Black Friday", "Cyber Monday", "Spring Sale", "Summer Clearance", "Welcome Series",
    "Win-back", "Product Launch", "Newsletter", "Holiday Gift Guide", "Loyalty Rewards",
]

DATE_START = datetime(2025, 1, 1)
DATE_END = datetime(2026, 10, 1)
DATE_RANGE_DAYS = (DATE_END - DATE_START).days

# ── Schema ───────────────────────────────────────────────
metadata = MetaData()

email_status = Table(
    "email_status", metadata,
    Column("status_id", Integer, primary_key=True),
    Column("name", String(50), nullable=False),
)

email_list = Table(
    "email_list", metadata,
    Column("email_list_id", Integer, primary_key=True),
    Column("name", String(200), nullable=False),
    Column("date_created", DateTime, nullable=False),
)

email_trigger = Table(
    "email_trigger", metadata,
    Column("email_trigger_id", Integer, primary_key=True),
    Column("communication_id", Integer, nullable=False),
    Column("description", String(200), nullable=False),
    Column("is_active", Integer, nullable=False, default=1),
)

email_outbox = Table(
    "email_outbox", metadata,
    Column("email_outbox_id", Integer, primary_key=True),
    Column("communication_id", Integer, nullable=False),
    Column("strategy_name", String(200), nullable=False),
    Column("email_list_id", Integer),
    Column("to_address", String(320), nullable=False),
    Column("subject", String(300)),
    Column("date_created", DateTime, nullable=False),
)

webhook_logs = Table(
    "webhook_logs", metadata,
    Column("webhook_log_id", Integer, primary_key=True),
    Column("email_outbox_id", Integer, nullable=False),
    Column("status_id", Integer, nullable=False),
    Column("event_date", DateTime, nullable=False),
)


def create_schema(engine: Engine) -> None:
    """Create all email tables if they do not exist."""
    metadata.create_all(engine)


def _rand_ts() -> datetime:
    return DATE_START + timedelta(
        days=random.randint(0, DATE_RANGE_DAYS),
        hours=random.randint(0, 23),
        minutes=random.randint(0, 59),
    )


# ── Generators ───────────────────────────────────────────

def gen_statuses() -> list[dict]:
    return [{"status_id": i, "name": name} for i, name in enumerate(STATUSES, 1)]


def gen_lists() -> list[dict]:
    return [
        {"email_list_id": lid, "name": f"{fake.word().title()} Subscribers", "date_created": _rand_ts()}
        for lid in range(1, NUM_LISTS + 1)
    ]


def gen_triggers() -> list[dict]:
    rows = []
    for tid in range(1, NUM_TRIGGERS + 1):
        theme = CAMPAIGN_THEMES[(tid - 1) % len(CAMPAIGN_THEMES)]
        rows.append({
            "email_trigger_id": tid,
            "communication_id": 1000 + tid,
            "description": f"{theme} {2025 + tid % 2}",
            "is_active": 0 if tid % 13 == 0 else 1,
        })
    return rows


def gen_emails(triggers: list[dict]) -> tuple[list[dict], list[dict]]:
    """Returns (outbox rows, webhook events)."""
    recipients = [fake.unique.email() for _ in range(NUM_RECIPIENTS)]
    status_id = {name: i for i, name in enumerate(STATUSES, 1)}
    outbox: list[dict] = []
    events: list[dict] = []

    for eid in range(1, NUM_EMAILS + 1):
        trig = random.choice(triggers)
        sent = _rand_ts()
        outbox.append({
            "email_outbox_id": eid,
            "communication_id": trig["communication_id"],
            "strategy_name": trig["description"],
            "email_list_id": random.randint(1, NUM_LISTS),
            "to_address": random.choice(recipients),
            "subject": fake.sentence(nb_words=6),
            "date_created": sent,
        })

        def _event(name: str, minutes: int) -> None:
            events.append({
                "webhook_log_id": len(events) + 1,
                "email_outbox_id": eid,
                "status_id": status_id[name],
                "event_date": sent + timedelta(minutes=minutes),
            })

        roll = random.random()
        if roll < 0.06:
            _event(random.choice(["Bounced", "Failed"]), 1)
            continue
        _event("Delivered", 1)
        if random.random() < 0.35:
            _event("Opened", random.randint(5, 600))
            if random.random() < 0.25:
                _event("Clicked", random.randint(600, 900))
        if random.random() < 0.01:
            _event("Unsubscribed", random.randint(900, 2000))
        if random.random() < 0.003:
            _event("Complained", random.randint(900, 2000))

    return outbox, events


# ── Bulk insert helper ───────────────────────────────────

def insert_rows(engine: Engine, table: str, rows: list[dict], batch_size: int = 2000) -> None:
    """Insert rows into *table* in batches using executemany-style VALUES."""
    if not rows:
        return
    cols = list(rows[0].keys())
    col_list = ", ".join(cols)
    param_list = ", ".join(f":{c}" for c in cols)
    sql = text(f"INSERT INTO {table} ({col_list}) VALUES ({param_list}) ON CONFLICT DO NOTHING")
    with engine.begin() as conn:
        for i in range(0, len(rows), batch_size):
            conn.execute(sql, rows[i : i + batch_size])


# ── Main ─────────────────────────────────────────────────

def main():
    print("═══ Seed Data Generator ═══")
    engine = create_engine(get_settings().database_url, echo=False)
    create_schema(engine)

    print("Clearing email tables …")
    with engine.begin() as conn:
        for t in ["webhook_logs", "email_outbox", "email_trigger", "email_list", "email_status"]:
            conn.execute(text(f"DELETE FROM {t}"))

    print("Generating data …")
    statuses = gen_statuses()
    lists = gen_lists()
    triggers = gen_triggers()
    outbox, events = gen_emails(triggers)

    print("Inserting …")
    for table, rows in [
        ("email_status", statuses),
        ("email_list", lists),
        ("email_trigger", triggers),
        ("email_outbox", outbox),
        ("webhook_logs", events),
    ]:
        insert_rows(engine, table, rows)
        print(f"  ✓ {table}: {len(rows):,} rows")

    print(f"\nDone: {len(triggers)} triggers, {len(outbox):,} emails, {len(events):,} events.")


if __name__ == "__main__":
    main()
