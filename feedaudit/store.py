from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

from sqlalchemy import delete, func, select, update

from feedaudit.db import SessionLocal, init_db, reset_db
from feedaudit.models import (
    AuditModel,
    AuditResultModel,
    AuditStatus,
    Criticality,
    ResultStatus,
    RuleModel,
)
from feedaudit.schemas import AuditResultRow, ComplianceCounts, CreateRuleRequest, dump_condition


INSERTION_CHUNK_SIZE = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _rule_to_dict(model: RuleModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "description": model.description,
        "category": model.category,
        "condition": dict(model.condition or {}),
        "criticality": model.criticality.value,
        "created_at": _iso(model.created_at),
    }


def _audit_to_dict(model: AuditModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "name": model.name,
        "file_hash": model.file_hash,
        "status": model.status.value,
        "total_products": model.total_products,
        "total_rules": model.total_rules,
        "rules_processed": model.rules_processed,
        "progress": model.progress,
        "compliant_products": model.compliant_products,
        "warning_products": model.warning_products,
        "critical_products": model.critical_products,
        "parse_failures": model.parse_failures,
        "failure_reason": model.failure_reason,
        "column_mapping": dict(model.column_mapping or {}),
        "rule_ids": list(model.rule_ids or []),
        "reprocessed_from_id": model.reprocessed_from_id,
        "created_at": _iso(model.created_at),
        "updated_at": _iso(model.updated_at),
        "completed_at": _iso(model.completed_at),
    }


def _result_to_dict(model: AuditResultModel) -> dict[str, Any]:
    return {
        "id": model.id,
        "audit_id": model.audit_id,
        "rule_id": model.rule_id,
        "rule_name": model.rule_name,
        "field_name": model.field_name,
        "product_id": model.product_id,
        "status": model.status.value,
        "details": model.details,
    }


class SqlStore:
    def __init__(self) -> None:
        init_db()

    def reset(self) -> None:
        reset_db()

    # Rules

    def create_rule(self, payload: CreateRuleRequest | dict[str, Any]) -> dict[str, Any]:
        request = payload if isinstance(payload, CreateRuleRequest) else CreateRuleRequest.model_validate(payload)
        with SessionLocal.begin() as session:
            rule = RuleModel(
                name=request.name,
                description=request.description,
                category=request.category,
                condition=dump_condition(request.condition),
                criticality=Criticality(request.criticality),
            )
            session.add(rule)
            session.flush()
            return _rule_to_dict(rule)

    def get_rule(self, rule_id: str) -> dict[str, Any] | None:
        with SessionLocal() as session:
            rule = session.get(RuleModel, rule_id)
            if rule is None:
                return None
            return _rule_to_dict(rule)

    def list_rules(self) -> list[dict[str, Any]]:
        with SessionLocal() as session:
            rules = session.execute(select(RuleModel).order_by(RuleModel.created_at, RuleModel.name)).scalars().all()
            return [_rule_to_dict(rule) for rule in rules]

    def load_rules(self, rule_ids: Sequence[str]) -> list[dict[str, Any]]:
        """Return the rules for ``rule_ids`` in the requested order, skipping unknown ids."""
        if not rule_ids:
            return []
        with SessionLocal() as session:
            rules = session.execute(select(RuleModel).where(RuleModel.id.in_(list(rule_ids)))).scalars().all()
            by_id = {rule.id: _rule_to_dict(rule) for rule in rules}
        ordered: list[dict[str, Any]] = []
        for rule_id in dict.fromkeys(rule_ids):
            rule = by_id.get(rule_id)
            if rule is not None:
                ordered.append(rule)
        return ordered

    def delete_rule(self, rule_id: str) -> dict[str, Any]:
        with SessionLocal.begin() as session:
            rule = session.get(RuleModel, rule_id)
            if rule is None:
                raise KeyError("RULE_NOT_FOUND")
            deleted = _rule_to_dict(rule)
            session.execute(delete(AuditResultModel).where(AuditResultModel.rule_id == rule_id))
            session.delete(rule)
            return deleted

    def replace_rules(self, payloads: Sequence[CreateRuleRequest | dict[str, Any]]) -> list[dict[str, Any]]:
        requests = [
            payload if isinstance(payload, CreateRuleRequest) else CreateRuleRequest.model_validate(payload)
            for payload in payloads
        ]
        with SessionLocal.begin() as session:
            session.execute(delete(AuditResultModel))
            session.execute(delete(RuleModel))
            created: list[RuleModel] = []
            for request in requests:
                rule = RuleModel(
                    name=request.name,
                    description=request.description,
                    category=request.category,
                    condition=dump_condition(request.condition),
                    criticality=Criticality(request.criticality),
                )
                session.add(rule)
                created.append(rule)
            session.flush()
            return [_rule_to_dict(rule) for rule in created]

    # Audits

    def create_audit(
        self,
        *,
        name: str,
        file_hash: str,
        source_content: str,
        column_mapping: dict[str, str],
        rule_ids: Sequence[str],
        total_products: int,
        total_rules: int,
        parse_failures: int = 0,
        reprocessed_from_id: str | None = None,
    ) -> dict[str, Any]:
        with SessionLocal.begin() as session:
            audit = AuditModel(
                name=name,
                file_hash=file_hash,
                status=AuditStatus.RUNNING,
                total_products=total_products,
                total_rules=total_rules,
                rules_processed=0,
                progress=0,
                compliant_products=0,
                warning_products=0,
                critical_products=0,
                parse_failures=parse_failures,
                source_content=source_content,
                column_mapping=dict(column_mapping),
                rule_ids=list(rule_ids),
                reprocessed_from_id=reprocessed_from_id,
            )
            session.add(audit)
            session.flush()
            return _audit_to_dict(audit)

    def get_audit(self, audit_id: str) -> dict[str, Any] | None:
        with SessionLocal() as session:
            audit = session.get(AuditModel, audit_id)
            if audit is None:
                return None
            return _audit_to_dict(audit)

    def get_audit_source(self, audit_id: str) -> str:
        with SessionLocal() as session:
            content = session.execute(
                select(AuditModel.source_content).where(AuditModel.id == audit_id)
            ).scalar_one_or_none()
            if content is None:
                raise KeyError("AUDIT_NOT_FOUND")
            return content

    def list_audits(self) -> list[dict[str, Any]]:
        with SessionLocal() as session:
            audits = session.execute(
                select(AuditModel).order_by(AuditModel.created_at.desc(), AuditModel.id)
            ).scalars().all()
            return [_audit_to_dict(audit) for audit in audits]

    def delete_audit(self, audit_id: str) -> None:
        with SessionLocal.begin() as session:
            audit = session.get(AuditModel, audit_id)
            if audit is None:
                raise KeyError("AUDIT_NOT_FOUND")
            session.execute(delete(AuditResultModel).where(AuditResultModel.audit_id == audit_id))
            session.execute(
                update(AuditModel)
                .where(AuditModel.reprocessed_from_id == audit_id)
                .values(reprocessed_from_id=None)
            )
            session.delete(audit)

    def update_audit_progress(self, audit_id: str, *, rules_processed: int, progress: int) -> None:
        with SessionLocal.begin() as session:
            audit = session.get(AuditModel, audit_id)
            if audit is None:
                raise KeyError("AUDIT_NOT_FOUND")
            audit.rules_processed = rules_processed
            audit.progress = max(audit.progress, progress)
            audit.updated_at = _now()

    def finalize_audit(self, audit_id: str, *, rules_processed: int, counts: ComplianceCounts) -> dict[str, Any]:
        with SessionLocal.begin() as session:
            audit = session.get(AuditModel, audit_id)
            if audit is None:
                raise KeyError("AUDIT_NOT_FOUND")
            audit.rules_processed = rules_processed
            audit.progress = 100
            audit.compliant_products = counts.compliant
            audit.warning_products = counts.warning
            audit.critical_products = counts.critical
            audit.status = AuditStatus.COMPLETED
            audit.completed_at = _now()
            audit.updated_at = audit.completed_at
            session.flush()
            return _audit_to_dict(audit)

    def mark_audit_failed(self, audit_id: str, reason: str) -> dict[str, Any]:
        with SessionLocal.begin() as session:
            audit = session.get(AuditModel, audit_id)
            if audit is None:
                raise KeyError("AUDIT_NOT_FOUND")
            audit.status = AuditStatus.FAILED
            audit.failure_reason = reason
            audit.updated_at = _now()
            session.flush()
            return _audit_to_dict(audit)

    # Results

    def insert_results(self, audit_id: str, results: Sequence[AuditResultRow]) -> int:
        valid = [row for row in results if row.rule_id and row.product_id and row.status]
        if not valid:
            return 0
        with SessionLocal.begin() as session:
            for start in range(0, len(valid), INSERTION_CHUNK_SIZE):
                session.add_all(
                    AuditResultModel(
                        audit_id=audit_id,
                        rule_id=row.rule_id,
                        rule_name=row.rule_name,
                        field_name=row.field_name,
                        product_id=row.product_id,
                        status=ResultStatus(row.status),
                        details=row.details or None,
                    )
                    for row in valid[start : start + INSERTION_CHUNK_SIZE]
                )
                session.flush()
        return len(valid)

    def count_results_by_status(self, audit_id: str) -> ComplianceCounts:
        with SessionLocal() as session:
            rows = session.execute(
                select(AuditResultModel.status, func.count(AuditResultModel.id))
                .where(AuditResultModel.audit_id == audit_id)
                .group_by(AuditResultModel.status)
            ).all()
        by_status = {status: int(count) for status, count in rows}
        return ComplianceCounts(
            compliant=by_status.get(ResultStatus.OK, 0),
            warning=by_status.get(ResultStatus.WARNING, 0),
            critical=by_status.get(ResultStatus.CRITICAL, 0),
        )

    def rule_status_product_counts(self, audit_id: str) -> tuple[dict[str, int], dict[tuple[str, str], int]]:
        """Distinct product counts per rule name, and per (rule name, status)."""
        with SessionLocal() as session:
            totals = session.execute(
                select(AuditResultModel.rule_name, func.count(func.distinct(AuditResultModel.product_id)))
                .where(AuditResultModel.audit_id == audit_id)
                .group_by(AuditResultModel.rule_name)
            ).all()
            per_status = session.execute(
                select(
                    AuditResultModel.rule_name,
                    AuditResultModel.status,
                    func.count(func.distinct(AuditResultModel.product_id)),
                )
                .where(AuditResultModel.audit_id == audit_id)
                .group_by(AuditResultModel.rule_name, AuditResultModel.status)
            ).all()
        return (
            {rule_name: int(count) for rule_name, count in totals},
            {(rule_name, status.value): int(count) for rule_name, status, count in per_status},
        )

    def list_results(self, audit_id: str, *, page: int = 1, limit: int = 100) -> dict[str, Any]:
        if page < 1 or limit < 1:
            raise ValueError("INVALID_PAGINATION")
        with SessionLocal() as session:
            total = session.execute(
                select(func.count(AuditResultModel.id)).where(AuditResultModel.audit_id == audit_id)
            ).scalar_one()
            rows = session.execute(
                select(AuditResultModel)
                .where(AuditResultModel.audit_id == audit_id)
                .order_by(AuditResultModel.product_id, AuditResultModel.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            items = [_result_to_dict(row) for row in rows]
        return {
            "items": items,
            "pagination": {
                "total": int(total),
                "page": page,
                "limit": limit,
                "total_pages": -(-int(total) // limit),
            },
        }

    def iter_result_cells(self, audit_id: str, batch_size: int = 1000) -> Iterator[tuple[str, str, str, str | None]]:
        """Yield ``(product_id, rule_name, status, details)`` in insertion order."""
        last_id = 0
        while True:
            with SessionLocal() as session:
                rows = session.execute(
                    select(
                        AuditResultModel.id,
                        AuditResultModel.product_id,
                        AuditResultModel.rule_name,
                        AuditResultModel.status,
                        AuditResultModel.details,
                    )
                    .where(AuditResultModel.audit_id == audit_id, AuditResultModel.id > last_id)
                    .order_by(AuditResultModel.id)
                    .limit(batch_size)
                ).all()
            if not rows:
                return
            for row_id, product_id, rule_name, status, details in rows:
                yield product_id, rule_name, status.value, details
            last_id = rows[-1][0]


STORE = SqlStore()
