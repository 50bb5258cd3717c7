"""
Unit tests -- SQL safety checks for model-proposed SQL.
"""
from src.governance.sql_safety import check_sql_safety, enforce_limit
from src.nlq import pattern_matcher


def test_safe_select_passes():
    sql = "SELECT strategy_name, COUNT(*) FROM email_outbox GROUP BY strategy_name LIMIT 50"
    assert check_sql_safety(sql) == []


def test_join_on_allowed_tables_passes():
    sql = (
        "SELECT o.to_address FROM webhook_logs w "
        "JOIN email_outbox o ON o.email_outbox_id = w.email_outbox_id "
        "JOIN email_status s ON s.status_id = w.status_id WHERE s.name = 'Bounced' LIMIT 10"
    )
    assert check_sql_safety(sql) == []


def test_trailing_semicolon_allowed():
    assert check_sql_safety("SELECT 1 FROM email_list;") == []


def test_non_select_rejected():
    errors = check_sql_safety("DELETE FROM email_outbox")
    assert any("SELECT" in e for e in errors)
    assert any("DELETE" in e for e in errors)


def test_multi_statement_rejected():
    errors = check_sql_safety("SELECT 1 FROM email_list; DROP TABLE email_list")
    assert any("Multi-statement" in e for e in errors)


def test_sqlite_pragmas_rejected():
    errors = check_sql_safety("SELECT 1 FROM email_list; PRAGMA query_only = OFF")
    assert any("PRAGMA" in e for e in errors)


def test_comments_rejected():
    assert any("--" in e for e in check_sql_safety("SELECT 1 FROM email_list -- hi"))
    assert any("/*" in e for e in check_sql_safety("SELECT /* x */ 1 FROM email_list"))


def test_blocked_schema_rejected():
    errors = check_sql_safety("SELECT * FROM information_schema.tables")
    assert any("information_schema" in e for e in errors)


def test_unknown_table_rejected():
    errors = check_sql_safety("SELECT * FROM users LIMIT 5")
    assert any("'users'" in e for e in errors)


def test_cte_names_allowed():
    sql = "WITH t AS (SELECT strategy_name FROM email_outbox) SELECT * FROM t LIMIT 5"
    assert check_sql_safety(sql) == []


def test_limit_above_max_rejected():
    errors = check_sql_safety("SELECT * FROM email_outbox LIMIT 5000")
    assert any("LIMIT 5000" in e for e in errors)


def test_empty_sql():
    assert check_sql_safety("   ") == ["SQL is empty."]


def test_rule_templates_pass_safety():
    """Canned rule SQL (including EXTRACT(... FROM col)) is accepted."""
    for query in ["campaigns in march", "Show me campaigns with high open rates",
                  "campaigns with clicks more than 1000", "Dashboard overview", "email lists"]:
        m = pattern_matcher.match(query)
        assert check_sql_safety(m.sql) == [], query


# ── Row cap ──────────────────────────────────────────────

def test_enforce_limit_appends_when_missing():
    sql = enforce_limit("SELECT to_address FROM email_outbox;", 1000)
    assert sql == "SELECT to_address FROM email_outbox\nLIMIT 1000"
    assert check_sql_safety(sql) == []


def test_enforce_limit_keeps_existing_limit():
    sql = "SELECT to_address FROM email_outbox LIMIT 10"
    assert enforce_limit(sql, 1000) == sql
