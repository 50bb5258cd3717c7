"""
Evaluation harness -- runs eval_questions.jsonl through the rule-based
query service and generates analytics/reports/eval_report.md.

Checks:
  - Intent correctness   (envelope intent matches expected)
  - Rule correctness     (the pattern rule that answered matches expected)
  - SQL safety           (every proposed SQL passes the read-only checks)
  - Filter correctness   (report questions: expected fields and values extracted)
  - Latency              (end-to-end ms)

No database or model is needed: collaborator calls are disabled and the
report repository is replaced by an empty result.
"""
from __future__ import annotations

import datetime
import json
import sys
import time
from pathlib import Path
from typing import Any

EVAL_PATH = Path(__file__).resolve().parent / "eval_questions.jsonl"
REPORT_PATH = Path(__file__).resolve().parents[1] / "reports" / "eval_report.md"


def _load_questions() -> list[dict[str, Any]]:
    lines = EVAL_PATH.read_text().splitlines()
    return [json.loads(line) for line in lines if line.strip()]


def _make_service():
    from src.nlq.service import NaturalLanguageService

    return NaturalLanguageService(report_query=lambda filters: ([], 0))


def _run_query(service, q: dict[str, Any]) -> dict[str, Any]:
    from src.governance.sql_safety import check_sql_safety

    envelope = service.process_query(q["question"], include_debug_info=True, use_collaborator=False)
    rule = (envelope.debug_info or {}).get("rule", "")
    safety_errors = check_sql_safety(envelope.generated_sql) if envelope.generated_sql else []
    intent_ok = envelope.intent.value == q.get("expected_intent")
    rule_ok = rule == q.get("expected_rule")
    return {
        "intent_ok": intent_ok,
        "rule_ok": rule_ok,
        "sql_safe": not safety_errors,
        "filters_ok": None,
        "success": intent_ok and rule_ok and not safety_errors,
        "detail": f"rule={rule} intent={envelope.intent.value}",
        "safety_errors": safety_errors,
        "generated_sql": envelope.generated_sql or "",
    }


def _run_report(service, q: dict[str, Any]) -> dict[str, Any]:
    result = service.extract_filters(q["question"])
    actual = result.filters.model_dump(by_alias=True, mode="json")
    expected = q.get("expected_filters", {})
    mismatches = {k: actual.get(k) for k, v in expected.items() if actual.get(k) != v}
    return {
        "intent_ok": None,
        "rule_ok": None,
        "sql_safe": True,
        "filters_ok": not mismatches,
        "success": result.success and not mismatches,
        "detail": f"mismatches={mismatches}" if mismatches else f"fields={result.extracted_parameters}",
        "safety_errors": [],
        "generated_sql": "",
    }


def _run_one(service, q: dict[str, Any]) -> dict[str, Any]:
    """Run a single question through the matching service path."""
    t0 = time.perf_counter()
    try:
        if q.get("path") == "report":
            r = _run_report(service, q)
        else:
            r = _run_query(service, q)
        r["error"] = None
    except Exception as exc:
        r = {
            "intent_ok": False,
            "rule_ok": False,
            "sql_safe": False,
            "filters_ok": False,
            "success": False,
            "detail": "",
            "safety_errors": [],
            "generated_sql": "",
            "error": str(exc),
        }
    r["question"] = q["question"]
    r["path"] = q.get("path", "query")
    r["latency_ms"] = int((time.perf_counter() - t0) * 1000)
    return r


def _rate(rows: list[dict[str, Any]], key: str) -> tuple[int, int, float]:
    scored = [r for r in rows if r[key] is not None]
    good = sum(1 for r in scored if r[key])
    return good, len(scored), (good / len(scored) * 100) if scored else 0.0


def _mark(value: bool | None) -> str:
    if value is None:
        return "--"
    return "OK" if value else "ERROR"


def _generate_report(results: list[dict[str, Any]]) -> str:
    """Generate the Markdown eval report."""
    total = len(results)
    now = datetime.datetime.now().strftime("%Y-%m-%d %H:%M")
    successes = sum(1 for r in results if r["success"])
    success_rate = (successes / total * 100) if total else 0

    latencies = sorted(r["latency_ms"] for r in results)
    avg_lat = sum(latencies) / len(latencies) if latencies else 0
    p95_lat = latencies[min(int(len(latencies) * 0.95), len(latencies) - 1)] if latencies else 0

    lines: list[str] = []
    lines.append("# Evaluation Report")
    lines.append("")
    lines.append(f"> Generated: {now}  |  Questions: **{total}**  |  Strategy: `rule_based`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append("| Metric | Value |")
    lines.append("|--------|-------|")
    lines.append(f"| Overall success rate | **{success_rate:.0f}%** ({successes}/{total}) |")
    for label, key in [
        ("Intent correctness", "intent_ok"),
        ("Rule correctness", "rule_ok"),
        ("Proposed SQL passes safety checks", "sql_safe"),
        ("Filter correctness", "filters_ok"),
    ]:
        good, scored, rate = _rate(results, key)
        lines.append(f"| {label} | **{rate:.0f}%** ({good}/{scored}) |")
    lines.append(f"| Mean latency | {avg_lat:.0f} ms |")
    lines.append(f"| p95 latency | {p95_lat} ms |")
    lines.append("")

    lines.append("## Per-Question Results")
    lines.append("")
    lines.append("| # | Path | Question | Intent | Rule | SQL safe | Filters | Latency | Pass |")
    lines.append("|---|------|----------|--------|------|----------|---------|---------|------|")
    for i, r in enumerate(results, 1):
        qtext = r["question"][:55] + ("..." if len(r["question"]) > 55 else "")
        lines.append(
            f"| {i} | {r['path']} | {qtext} | {_mark(r['intent_ok'])} | {_mark(r['rule_ok'])} | "
            f"{_mark(r['sql_safe'])} | {_mark(r['filters_ok'])} | {r['latency_ms']} | {_mark(r['success'])} |"
        )
    lines.append("")

    lines.append("## Failures")
    lines.append("")
    failures = [(i, r) for i, r in enumerate(results, 1) if not r["success"]]
    if not failures:
        lines.append("None -- all questions handled correctly.")
    for i, r in failures:
        lines.append(f"### #{i}: {r['question']}")
        lines.append("")
        if r.get("error"):
            lines.append(f"**Error:** `{r['error']}`")
        if r.get("detail"):
            lines.append(f"**Detail:** {r['detail']}")
        if r.get("safety_errors"):
            lines.append(f"**Safety:** {r['safety_errors']}")
        lines.append("")

    return "\n".join(lines)


def run():
    if sys.platform == "win32":
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[attr-defined]

    questions = _load_questions()
    print(f"Loaded {len(questions)} eval questions.")
    service = _make_service()

    results = []
    for i, q in enumerate(questions, 1):
        r = _run_one(service, q)
        status = "PASS" if r["success"] else "FAIL"
        print(f"  [{i:2d}/{len(questions)}] {status}  {r['question'][:60]:<60}  {r['latency_ms']:>4d}ms")
        results.append(r)

    report = _generate_report(results)
    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(report, encoding="utf-8")
    print(f"\nReport written to {REPORT_PATH}")

    total = len(results)
    successes = sum(1 for r in results if r["success"])
    print(f"\n{'='*50}")
    print(f"  Success: {successes}/{total} ({successes/total*100:.0f}%)")
    print(f"{'='*50}")


if __name__ == "__main__":
    run()
