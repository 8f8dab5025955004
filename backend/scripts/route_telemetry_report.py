#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

TELEMETRY_PATTERN = re.compile(r"route_telemetry=(\{.*\})")
FAILURE_OUTCOMES = {"interpreter_unavailable", "storage_unavailable", "session_conflict"}


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def _parse_payload(line: str) -> Optional[Dict[str, Any]]:
    match = TELEMETRY_PATTERN.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def build_report(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    route_counts: Counter[str] = Counter()
    reason_counts: Counter[str] = Counter()
    outcome_counts: Counter[str] = Counter()
    awaited_fields: Counter[str] = Counter()

    failures = 0
    open_after_turn = 0
    users = set()

    for row in rows:
        route_counts[str(row.get("route", "unknown"))] += 1
        reason_counts[str(row.get("reason", "unknown"))] += 1
        outcome = str(row.get("outcome", "unknown"))
        outcome_counts[outcome] += 1
        if outcome in FAILURE_OUTCOMES:
            failures += 1

        expect = str(row.get("expect", "none"))
        if expect != "none":
            open_after_turn += 1
            if expect != "awaiting_followup":
                awaited_fields[expect] += 1
        if row.get("user_id"):
            users.add(str(row["user_id"]))

    total = len(rows)
    return {
        "total_messages": total,
        "distinct_users": len(users),
        "route_counts": dict(route_counts),
        "reason_counts": dict(reason_counts),
        "outcome_counts": dict(outcome_counts),
        "awaited_fields_top10": dict(awaited_fields.most_common(10)),
        "failure_rate": round(failures / total, 4) if total else 0.0,
        "open_session_rate": round(open_after_turn / total, 4) if total else 0.0,
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total messages: {report['total_messages']} (users: {report['distinct_users']})")
    print(f"Failure rate: {report['failure_rate']:.2%}")
    print(f"Turns ending with an open question: {report['open_session_rate']:.2%}")
    print("Route counts:")
    for route, count in sorted(report["route_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {route}: {count}")
    print("Outcome counts:")
    for outcome, count in sorted(report["outcome_counts"].items(), key=lambda x: x[1], reverse=True):
        print(f"  - {outcome}: {count}")
    print("Most awaited fields:")
    for field, count in report["awaited_fields_top10"].items():
        print(f"  - {field}: {count}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize PetVax route_telemetry logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to parse. If omitted, read stdin.")
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    rows: List[Dict[str, Any]] = []
    for line in _iter_lines(args.log_files):
        payload = _parse_payload(line)
        if payload:
            rows.append(payload)

    report = build_report(rows)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
