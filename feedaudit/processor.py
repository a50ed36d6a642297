from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, Protocol, Sequence

from feedaudit.config import load_settings
from feedaudit.evaluator import ConditionEvaluator, EvaluationCache
from feedaudit.mapping import FeedRecord
from feedaudit.models import AuditStatus
from feedaudit.schemas import AuditProgress, AuditResultRow, ComplianceCounts, RuleSnapshot

logger = logging.getLogger(__name__)


class AuditRepository(Protocol):
    def insert_results(self, audit_id: str, results: Sequence[AuditResultRow]) -> int: ...

    def update_audit_progress(self, audit_id: str, *, rules_processed: int, progress: int) -> None: ...

    def count_results_by_status(self, audit_id: str) -> ComplianceCounts: ...

    def finalize_audit(self, audit_id: str, *, rules_processed: int, counts: ComplianceCounts) -> dict: ...


@dataclass(frozen=True)
class ChunkPlan:
    chunk_size: int
    max_workers: int
    regex_cache_size: int


def default_plan() -> ChunkPlan:
    settings = load_settings()
    return ChunkPlan(
        chunk_size=settings.chunk_size,
        max_workers=settings.max_workers,
        regex_cache_size=settings.regex_cache_size,
    )


def compute_progress(rules_processed: int, total_work: int) -> int:
    if total_work <= 0:
        return 100
    return min(100, (rules_processed * 100) // total_work)


def chunked(records: Sequence[FeedRecord], size: int) -> Iterator[Sequence[FeedRecord]]:
    for start in range(0, len(records), size):
        yield records[start : start + size]


def _is_complete(result: AuditResultRow) -> bool:
    return bool(result.rule_id and result.product_id and result.status)


class AuditBatchProcessor:
    def __init__(
        self,
        repository: AuditRepository,
        *,
        plan: ChunkPlan | None = None,
        evaluator: ConditionEvaluator | None = None,
    ) -> None:
        self.repository = repository
        self.plan = plan or default_plan()
        if self.plan.chunk_size < 1:
            raise ValueError("INVALID_CHUNK_SIZE")
        self.evaluator = evaluator or ConditionEvaluator(
            EvaluationCache(max_patterns=self.plan.regex_cache_size)
        )

    def evaluate_record(
        self,
        record: FeedRecord,
        rules: Sequence[RuleSnapshot],
        audit_id: str | None = None,
    ) -> list[AuditResultRow]:
        rows: list[AuditResultRow] = []
        for rule in rules:
            verdict = self.evaluator.evaluate(record.values, rule)
            rows.append(
                AuditResultRow(
                    audit_id=audit_id,
                    rule_id=rule.id,
                    rule_name=rule.name,
                    field_name=rule.field_name,
                    product_id=record.product_id,
                    status=verdict.status.value,
                    details=verdict.details or None,
                )
            )
        return rows

    def _evaluate_chunk(
        self,
        audit_id: str,
        chunk: Sequence[FeedRecord],
        rules: Sequence[RuleSnapshot],
        executor: Executor | None,
    ) -> list[AuditResultRow]:
        if executor is None:
            per_record = [self.evaluate_record(record, rules, audit_id) for record in chunk]
        else:
            per_record = list(executor.map(lambda record: self.evaluate_record(record, rules, audit_id), chunk))
        return [row for rows in per_record for row in rows]

    def run(
        self,
        *,
        audit_id: str,
        records: Sequence[FeedRecord],
        rules: Sequence[RuleSnapshot],
    ) -> Iterator[AuditProgress]:
        total_work = len(records) * len(rules)
        rules_processed = 0
        logger.info(
            "Audit %s: evaluating %d records x %d rules in chunks of %d",
            audit_id,
            len(records),
            len(rules),
            self.plan.chunk_size,
        )

        executor: ThreadPoolExecutor | None = None
        if self.plan.max_workers > 1 and rules:
            executor = ThreadPoolExecutor(max_workers=self.plan.max_workers, thread_name_prefix="feedaudit-eval")
        try:
            if rules:
                for chunk_index, chunk in enumerate(chunked(records, self.plan.chunk_size)):
                    results = self._evaluate_chunk(audit_id, chunk, rules, executor)
                    valid = [row for row in results if _is_complete(row)]
                    if len(valid) != len(results):
                        logger.warning(
                            "Audit %s chunk %d: dropped %d incomplete results",
                            audit_id,
                            chunk_index,
                            len(results) - len(valid),
                        )
                    if valid:
                        self.repository.insert_results(audit_id, valid)

                    rules_processed += len(chunk) * len(rules)
                    progress = compute_progress(rules_processed, total_work)
                    self.repository.update_audit_progress(
                        audit_id, rules_processed=rules_processed, progress=progress
                    )
                    logger.debug("Audit %s chunk %d persisted, progress %d%%", audit_id, chunk_index, progress)
                    yield AuditProgress(
                        audit_id=audit_id,
                        status=AuditStatus.RUNNING.value,
                        total_products=len(records),
                        total_rules=len(rules),
                        rules_processed=rules_processed,
                        progress=progress,
                        chunk_index=chunk_index,
                    )
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        counts = self.repository.count_results_by_status(audit_id)
        self.repository.finalize_audit(audit_id, rules_processed=rules_processed, counts=counts)
        logger.info(
            "Audit %s completed: %d ok, %d warning, %d critical",
            audit_id,
            counts.compliant,
            counts.warning,
            counts.critical,
        )
        yield AuditProgress(
            audit_id=audit_id,
            status=AuditStatus.COMPLETED.value,
            total_products=len(records),
            total_rules=len(rules),
            rules_processed=rules_processed,
            progress=100,
            compliant_products=counts.compliant,
            warning_products=counts.warning,
            critical_products=counts.critical,
        )
