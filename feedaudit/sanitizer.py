from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

BOM = "\ufeff"

_EDGE_SPACE = re.compile(r"^[\s\ufeff]+|[\s\ufeff]+$")
_CONTROL_AFTER_QUOTE = re.compile(r'"[\x00-\x1f\x7f-\x9f]+')
_DOUBLED_QUOTE = re.compile(r'(?<!\\)""')
_BARE_QUOTE = re.compile(r'(?<!\\)"')


class FeedIngestionError(ValueError):
    def __init__(
        self,
        code: str,
        message: str,
        *,
        line_number: int | None = None,
        expected_columns: int | None = None,
        actual_columns: int | None = None,
    ) -> None:
        super().__init__(code)
        self.code = code
        self.message = message
        self.line_number = line_number
        self.expected_columns = expected_columns
        self.actual_columns = actual_columns

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class StructureCheck:
    is_valid: bool
    error: str | None = None
    line_number: int | None = None
    expected_columns: int | None = None
    actual_columns: int | None = None


def _trim(field: str) -> str:
    return _EDGE_SPACE.sub("", field)


def clean_field(field: str) -> str:
    if not field:
        return field

    field = _trim(field)
    if '"' not in field:
        return field

    field = _CONTROL_AFTER_QUOTE.sub('"', field)
    if field == '""':
        return ""
    field = _DOUBLED_QUOTE.sub(r'\\"', field)

    if len(_BARE_QUOTE.findall(field)) % 2:
        field = _BARE_QUOTE.sub(r'\\"', field)

    return _trim(field)


def clean_row(row: str) -> str:
    if not row:
        return ""

    cleaned: list[str] = []
    for field in row.split("\t"):
        try:
            cleaned.append(clean_field(field))
        except Exception:
            logger.warning("Field cleaning failed, keeping original field: %r", field, exc_info=True)
            cleaned.append(field)
    return "\t".join(cleaned)


def clean_feed_content(content: str) -> str:
    content = content.lstrip(BOM)

    lines = content.split("\n")
    cleaned: list[str] = []
    for index, line in enumerate(lines):
        try:
            cleaned.append(clean_row(line))
        except Exception:
            logger.warning("Line cleaning failed at line %d, keeping original line", index + 1, exc_info=True)
            cleaned.append(line)
    return "\n".join(cleaned)


def sanitize(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return clean_feed_content(raw)


def validate_feed_structure(content: str) -> StructureCheck:
    lines = content.split("\n")
    if len(lines) < 2 or not lines[0].strip() or not any(line.strip() for line in lines[1:]):
        return StructureCheck(is_valid=False, error="File is empty or has no data rows")

    header_count = len(lines[0].split("\t"))
    for index in range(1, len(lines)):
        line = lines[index]
        if not line.strip():
            continue
        column_count = len(line.split("\t"))
        if column_count != header_count:
            return StructureCheck(
                is_valid=False,
                error=(
                    f"Inconsistent column count at line {index + 1}: "
                    f"expected {header_count}, got {column_count}"
                ),
                line_number=index + 1,
                expected_columns=header_count,
                actual_columns=column_count,
            )
    return StructureCheck(is_valid=True)


def ensure_valid_structure(content: str) -> None:
    check = validate_feed_structure(content)
    if check.is_valid:
        return
    if check.line_number is None:
        raise FeedIngestionError("EMPTY_FEED", check.error or "File is empty or has no data rows")
    raise FeedIngestionError(
        "COLUMN_COUNT_MISMATCH",
        check.error or "Inconsistent column count",
        line_number=check.line_number,
        expected_columns=check.expected_columns,
        actual_columns=check.actual_columns,
    )
