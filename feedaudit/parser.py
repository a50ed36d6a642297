from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field

from feedaudit.sanitizer import FeedIngestionError, clean_field, ensure_valid_structure, sanitize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParseFailure:
    line_number: int
    reason: str


@dataclass(frozen=True)
class ParsedRow:
    line_number: int
    values: dict[str, str]


@dataclass
class ParsedFeed:
    header: list[str]
    rows: list[ParsedRow] = field(default_factory=list)
    failures: list[ParseFailure] = field(default_factory=list)
    content: str = ""
    fingerprint: str | None = None

    @property
    def failure_count(self) -> int:
        return len(self.failures)


def unquote_field(raw: str) -> str:
    # Wrapper quotes are bare; literal quotes arrive backslash-escaped.
    value = clean_field(raw)
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"' and value[-2] != "\\":
        value = value[1:-1]
    return value.replace('\\"', '"')


def split_fields(line: str) -> list[str]:
    if line.endswith("\r"):
        line = line[:-1]
    return [unquote_field(part) for part in line.split("\t")]


def parse_feed(content: str) -> ParsedFeed:
    lines = content.split("\n")
    header = split_fields(lines[0]) if lines else []
    if not any(header):
        raise FeedIngestionError("EMPTY_FEED", "File is empty or has no header row")

    seen: set[str] = set()
    for name in header:
        if name in seen:
            logger.warning("Duplicate column %r in feed header; the rightmost column wins", name)
        seen.add(name)

    feed = ParsedFeed(header=header, content=content)
    width = len(header)
    for index in range(1, len(lines)):
        line_number = index + 1
        line = lines[index]
        if not line.strip():
            continue
        try:
            fields = split_fields(line)
        except Exception as exc:
            feed.failures.append(ParseFailure(line_number, f"tokenizer error: {exc}"))
            logger.warning("Skipping unparseable row at line %d: %s", line_number, exc)
            continue
        if len(fields) > width:
            reason = f"row has {len(fields)} fields but header has {width}"
            feed.failures.append(ParseFailure(line_number, reason))
            logger.warning("Skipping row at line %d: %s", line_number, reason)
            continue
        if len(fields) < width:
            fields.extend([""] * (width - len(fields)))
        feed.rows.append(ParsedRow(line_number=line_number, values=dict(zip(header, fields))))
    return feed


def fingerprint(raw: bytes | str) -> str:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def load_feed(raw: bytes | str) -> ParsedFeed:
    """Sanitize, structurally validate and parse a raw feed.

    Raises ``FeedIngestionError`` for an empty feed or a column-count mismatch;
    both abort ingestion before any record is evaluated.
    """
    if not raw or not raw.strip():
        raise FeedIngestionError("EMPTY_FEED", "File is empty or has no data rows")

    content = sanitize(raw)
    ensure_valid_structure(content)
    feed = parse_feed(content)
    feed.fingerprint = fingerprint(raw)
    if feed.failures:
        logger.warning("Parsed feed with %d skipped rows", feed.failure_count)
    return feed
