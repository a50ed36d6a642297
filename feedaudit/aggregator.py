from __future__ import annotations

from typing import Iterable, Mapping

from feedaudit.schemas import AuditResultRow, ComplianceCounts, RuleBreakdown
from feedaudit.store import SqlStore


NOT_EVALUATED = "N/A"
EXPORT_ID_COLUMN = "ID"


def tally(results: Iterable[AuditResultRow]) -> ComplianceCounts:
    counts = ComplianceCounts()
    for row in results:
        if row.status == "ok":
            counts.compliant += 1
        elif row.status == "warning":
            counts.warning += 1
        elif row.status == "critical":
            counts.critical += 1
    return counts


def aggregate(store: SqlStore, audit_id: str) -> ComplianceCounts:
    return store.count_results_by_status(audit_id)


def _percent(part: int, whole: int) -> float:
    if whole == 0:
        return 0.0
    return round(part / whole * 100, 2)


def build_breakdown(
    totals: Mapping[str, int], per_status: Mapping[tuple[str, str], int]
) -> list[RuleBreakdown]:
    breakdown: list[RuleBreakdown] = []
    for rule_name in sorted(totals):
        evaluated = totals[rule_name]
        breakdown.append(
            RuleBreakdown(
                rule_name=rule_name,
                evaluated_products=evaluated,
                ok_percent=_percent(per_status.get((rule_name, "ok"), 0), evaluated),
                warning_percent=_percent(per_status.get((rule_name, "warning"), 0), evaluated),
                critical_percent=_percent(per_status.get((rule_name, "critical"), 0), evaluated),
            )
        )
    return breakdown


def rule_breakdown(store: SqlStore, audit_id: str) -> list[RuleBreakdown]:
    totals, per_status = store.rule_status_product_counts(audit_id)
    return build_breakdown(totals, per_status)


def compliance_score(counts: ComplianceCounts) -> int:
    """Score in 0..100: ok +1, warning -0.5, critical -1 per result row."""
    if counts.total == 0:
        return 0
    points = counts.compliant - 0.5 * counts.warning - counts.critical
    score = max(0.0, min(100.0, points / counts.total * 100))
    return int(round(score))


def _cell(status: str, details: str | None) -> str:
    text = f"{status}: {details}" if details else status
    return " ".join(text.replace("\t", " ").splitlines())


def build_export_table(cells: Iterable[tuple[str, str, str, str | None]]) -> str:
    """Render ``(product_id, rule_name, status, details)`` tuples as a TSV table.

    One row per distinct product id (first-seen order), one column per
    distinct rule name (sorted). The first result seen for a pair wins;
    pairs never evaluated read ``N/A``.
    """
    products: dict[str, dict[str, str]] = {}
    rule_names: set[str] = set()
    for product_id, rule_name, status, details in cells:
        rule_names.add(rule_name)
        row = products.setdefault(product_id, {})
        row.setdefault(rule_name, _cell(status, details))

    columns = sorted(rule_names)
    lines = ["\t".join([EXPORT_ID_COLUMN, *columns])]
    for product_id, row in products.items():
        lines.append("\t".join([product_id, *(row.get(name, NOT_EVALUATED) for name in columns)]))
    return "\n".join(lines) + "\n"


def export_audit(store: SqlStore, audit_id: str) -> str:
    if store.get_audit(audit_id) is None:
        raise KeyError("AUDIT_NOT_FOUND")
    return build_export_table(store.iter_result_cells(audit_id))
