from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Index, Integer, JSON, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Criticality(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ResultStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


UUID_TEXT = Uuid(as_uuid=False)
JSON_DOC = JSON().with_variant(JSONB, "postgresql")


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class RuleModel(Base):
    __tablename__ = "rule"

    id: Mapped[str] = mapped_column(UUID_TEXT, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    condition: Mapped[dict] = mapped_column(JSON_DOC, nullable=False, default=dict)
    criticality: Mapped[Criticality] = mapped_column(
        SAEnum(Criticality, values_callable=_enum_values), nullable=False, default=Criticality.WARNING
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class AuditModel(Base):
    __tablename__ = "audit"

    id: Mapped[str] = mapped_column(UUID_TEXT, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    file_hash: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[AuditStatus] = mapped_column(
        SAEnum(AuditStatus, values_callable=_enum_values), nullable=False, default=AuditStatus.RUNNING
    )
    total_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rules: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rules_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    compliant_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    critical_products: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    parse_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    column_mapping: Mapped[dict] = mapped_column(JSON_DOC, nullable=False, default=dict)
    rule_ids: Mapped[list[str]] = mapped_column(JSON_DOC, nullable=False, default=list)
    reprocessed_from_id: Mapped[str | None] = mapped_column(
        UUID_TEXT, ForeignKey("audit.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class AuditResultModel(Base):
    __tablename__ = "audit_result"
    __table_args__ = (Index("ix_audit_result_audit_product", "audit_id", "product_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    audit_id: Mapped[str] = mapped_column(
        UUID_TEXT, ForeignKey("audit.id", ondelete="CASCADE"), nullable=False
    )
    rule_id: Mapped[str] = mapped_column(
        UUID_TEXT, ForeignKey("rule.id", ondelete="CASCADE"), nullable=False
    )
    rule_name: Mapped[str] = mapped_column(Text, nullable=False)
    field_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ResultStatus] = mapped_column(
        SAEnum(ResultStatus, values_callable=_enum_values), nullable=False
    )
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
