#!/usr/bin/env python3
"""Run a feed audit from the command line.

Usage:
    python scripts/run_audit.py feed.tsv --mapping mapping.json --rules <id>,<id> --name "Spring catalog"
    python scripts/run_audit.py feed.tsv --mapping mapping.json --all-rules --export results.tsv
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from feedaudit.aggregator import compliance_score, export_audit, rule_breakdown  # noqa: E402
from feedaudit.audits import AUDITS  # noqa: E402
from feedaudit.config import configure_logging  # noqa: E402
from feedaudit.sanitizer import FeedIngestionError  # noqa: E402
from feedaudit.schemas import AuditProgress, ComplianceCounts  # noqa: E402
from feedaudit.store import STORE  # noqa: E402


def _print_progress(update: AuditProgress) -> None:
    print(f"  {update.progress:3d}%  {update.rules_processed}/{update.total_products * update.total_rules} evaluations")


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit a tab-delimited product feed")
    parser.add_argument("feed", help="Path to the TSV feed export")
    parser.add_argument("--mapping", required=True, help="JSON file mapping feed columns to canonical fields")
    rules_group = parser.add_mutually_exclusive_group(required=True)
    rules_group.add_argument("--rules", help="Comma-separated rule ids to apply")
    rules_group.add_argument("--all-rules", action="store_true", help="Apply every rule in the catalogue")
    parser.add_argument("--name", default=None, help="Audit name")
    parser.add_argument("--export", default=None, help="Write the per-product result table to this path")
    parser.add_argument("--log-level", default=None, help="Logging level (default from FEEDAUDIT_LOG_LEVEL)")
    args = parser.parse_args()

    configure_logging(args.log_level)

    column_mapping = json.loads(Path(args.mapping).read_text(encoding="utf-8"))
    if args.all_rules:
        rule_ids = [rule["id"] for rule in STORE.list_rules()]
    else:
        rule_ids = [r.strip() for r in args.rules.split(",") if r.strip()]

    print(f"Auditing {args.feed} against {len(rule_ids)} rules")
    try:
        result = AUDITS.start_audit(
            content=Path(args.feed).read_bytes(),
            column_mapping=column_mapping,
            rule_ids=rule_ids,
            name=args.name,
            on_progress=_print_progress,
        )
    except FeedIngestionError as exc:
        print(f"ERROR: {exc.message}", file=sys.stderr)
        sys.exit(2)

    if result["status"] != "completed":
        print(f"ERROR: audit {result['audit_id']} failed: {result['failure_reason']}", file=sys.stderr)
        sys.exit(1)

    counts = ComplianceCounts(
        compliant=result["compliant_products"],
        warning=result["warning_products"],
        critical=result["critical_products"],
    )
    print(f"Audit {result['audit_id']} completed")
    print(f"  Products:         {result['total_products']}")
    print(f"  Skipped rows:     {result['parse_failures']}")
    print(f"  Compliant:        {counts.compliant}")
    print(f"  Warnings:         {counts.warning}")
    print(f"  Critical:         {counts.critical}")
    print(f"  Compliance score: {compliance_score(counts)}%")
    for item in rule_breakdown(STORE, result["audit_id"]):
        print(
            f"  {item.rule_name}: ok {item.ok_percent}% / warning {item.warning_percent}% "
            f"/ critical {item.critical_percent}%"
        )

    if args.export:
        Path(args.export).write_text(export_audit(STORE, result["audit_id"]), encoding="utf-8")
        print(f"Results exported to {args.export}")


if __name__ == "__main__":
    main()
