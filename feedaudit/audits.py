from __future__ import annotations

import logging
import random
from typing import Any, Callable, Mapping, Sequence

from feedaudit.aggregator import tally
from feedaudit.mapping import FeedRecord, build_records
from feedaudit.parser import ParsedFeed, load_feed, parse_feed
from feedaudit.processor import AuditBatchProcessor, ChunkPlan
from feedaudit.sanitizer import FeedIngestionError, sanitize
from feedaudit.schemas import AuditProgress, PreviewResult, RuleSnapshot
from feedaudit.store import STORE, SqlStore

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_NAME = "Unnamed Audit"
PREVIEW_SAMPLE_SIZE = 5
SAMPLE_MODES = ("first", "last", "random")

ProgressCallback = Callable[[AuditProgress], None]


class AuditService:
    def __init__(self, store: SqlStore, plan: ChunkPlan | None = None) -> None:
        self.store = store
        self.plan = plan

    def _snapshots(self, rule_ids: Sequence[str]) -> list[RuleSnapshot]:
        rules = self.store.load_rules(rule_ids)
        missing = len(dict.fromkeys(rule_ids)) - len(rules)
        if missing:
            logger.info("Ignoring %d rule ids that did not resolve", missing)
        return [RuleSnapshot.from_rule(rule) for rule in rules]

    def _processor(self, plan: ChunkPlan | None) -> AuditBatchProcessor:
        return AuditBatchProcessor(self.store, plan=plan or self.plan)

    def _run(
        self,
        *,
        name: str,
        feed: ParsedFeed,
        file_hash: str,
        column_mapping: Mapping[str, str],
        rule_ids: Sequence[str],
        plan: ChunkPlan | None,
        on_progress: ProgressCallback | None,
        reprocessed_from_id: str | None = None,
    ) -> dict[str, Any]:
        rules = self._snapshots(rule_ids)
        records = build_records(feed.rows, column_mapping)
        audit = self.store.create_audit(
            name=name,
            file_hash=file_hash,
            source_content=feed.content,
            column_mapping=dict(column_mapping),
            rule_ids=[rule.id for rule in rules],
            total_products=len(records),
            total_rules=len(rules),
            parse_failures=feed.failure_count,
            reprocessed_from_id=reprocessed_from_id,
        )
        audit_id = audit["id"]
        logger.info("Audit %s (%s) started", audit_id, name)

        last: AuditProgress | None = None
        try:
            for update in self._processor(plan).run(audit_id=audit_id, records=records, rules=rules):
                last = update
                if on_progress is not None:
                    on_progress(update)
        except Exception as exc:
            logger.exception("Audit %s failed during evaluation", audit_id)
            failed = self.store.mark_audit_failed(audit_id, str(exc))
            return {
                "audit_id": audit_id,
                "status": failed["status"],
                "failure_reason": failed["failure_reason"],
                "progress": failed["progress"],
                "rules_processed": failed["rules_processed"],
                "parse_failures": feed.failure_count,
            }

        return {
            "audit_id": audit_id,
            "status": last.status,
            "failure_reason": None,
            "progress": last.progress,
            "rules_processed": last.rules_processed,
            "total_products": last.total_products,
            "total_rules": last.total_rules,
            "compliant_products": last.compliant_products,
            "warning_products": last.warning_products,
            "critical_products": last.critical_products,
            "parse_failures": feed.failure_count,
        }

    def start_audit(
        self,
        *,
        content: bytes | str,
        column_mapping: Mapping[str, str],
        rule_ids: Sequence[str],
        name: str | None = None,
        plan: ChunkPlan | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        # FeedIngestionError propagates before any audit row is created.
        try:
            feed = load_feed(content)
        except FeedIngestionError as exc:
            logger.error("Feed rejected: %s", exc)
            raise
        return self._run(
            name=name or DEFAULT_AUDIT_NAME,
            feed=feed,
            file_hash=feed.fingerprint or "",
            column_mapping=column_mapping,
            rule_ids=rule_ids,
            plan=plan,
            on_progress=on_progress,
        )

    def reprocess_audit(
        self,
        audit_id: str,
        *,
        rule_ids: Sequence[str] | None = None,
        name: str | None = None,
        plan: ChunkPlan | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Run a new audit over an existing audit's feed and column mapping."""
        original = self.store.get_audit(audit_id)
        if original is None:
            raise KeyError("AUDIT_NOT_FOUND")
        feed = load_feed(self.store.get_audit_source(audit_id))
        return self._run(
            name=name or f"{original['name']} (Rerun)",
            feed=feed,
            file_hash=original["file_hash"],
            column_mapping=original["column_mapping"],
            rule_ids=list(rule_ids) if rule_ids is not None else original["rule_ids"],
            plan=plan,
            on_progress=on_progress,
            reprocessed_from_id=audit_id,
        )

    def preview_validation(
        self,
        *,
        content: bytes | str,
        column_mapping: Mapping[str, str],
        rule_ids: Sequence[str],
        sample_mode: str = "first",
        sample_size: int = PREVIEW_SAMPLE_SIZE,
        rng: random.Random | None = None,
    ) -> PreviewResult:
        """Evaluate a small sample of the feed without persisting anything."""
        if sample_mode not in SAMPLE_MODES:
            raise ValueError("INVALID_SAMPLE_MODE")
        feed = parse_feed(sanitize(content))
        records = build_records(feed.rows, column_mapping)
        sample = _sample(records, sample_mode, sample_size, rng or random.Random())

        processor = self._processor(None)
        rules = self._snapshots(rule_ids)
        results = [row for record in sample for row in processor.evaluate_record(record, rules)]
        return PreviewResult(total_products=len(sample), results=results, counts=tally(results))


def _sample(records: list[FeedRecord], mode: str, size: int, rng: random.Random) -> list[FeedRecord]:
    if size < 1:
        return []
    if mode == "first":
        return records[:size]
    if mode == "last":
        return records[-size:]
    indices = sorted(rng.sample(range(len(records)), min(size, len(records))))
    return [records[index] for index in indices]


AUDITS = AuditService(STORE)
