from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from feedaudit.parser import ParsedRow
from feedaudit.vocabulary import ID_FIELD, normalize_field_name


MISSING_ID_PLACEHOLDER = "NO_ID_MAPPED"


@dataclass(frozen=True)
class FeedRecord:
    line_number: int
    product_id: str
    values: dict[str, str]


def normalize_column_mapping(column_mapping: Mapping[str, str]) -> dict[str, str]:
    # Label targets resolve to canonical ids; empty targets drop the column.
    normalized: dict[str, str] = {}
    for source, target in column_mapping.items():
        if not target:
            continue
        normalized[source] = normalize_field_name(target) or target
    return normalized


def project_record(row: Mapping[str, str | None], column_mapping: Mapping[str, str]) -> dict[str, str]:
    record: dict[str, str] = {}
    for source, target in column_mapping.items():
        value = row.get(source)
        record[target] = "" if value is None else str(value)
    return record


def resolve_product_id(record: Mapping[str, str], line_number: int) -> str:
    product_id = (record.get(ID_FIELD) or "").strip()
    if product_id:
        return product_id
    return f"{MISSING_ID_PLACEHOLDER}#{line_number}"


def build_records(rows: Iterable[ParsedRow], column_mapping: Mapping[str, str]) -> list[FeedRecord]:
    mapping = normalize_column_mapping(column_mapping)
    records: list[FeedRecord] = []
    for row in rows:
        values = project_record(row.values, mapping)
        records.append(
            FeedRecord(
                line_number=row.line_number,
                product_id=resolve_product_id(values, row.line_number),
                values=values,
            )
        )
    return records
