import random

import pytest

from feedaudit.aggregator import export_audit
from feedaudit.audits import AUDITS, DEFAULT_AUDIT_NAME
from feedaudit.processor import ChunkPlan
from feedaudit.sanitizer import FeedIngestionError
from feedaudit.store import STORE


MAPPING = {"id": "id", "title": "title", "price": "price"}


def _rule(name, condition, criticality="critical"):
    return STORE.create_rule(
        {
            "name": name,
            "description": f"Verifies {condition['field']}",
            "category": "Quality",
            "condition": condition,
            "criticality": criticality,
        }
    )


def _feed(count):
    lines = ["id\ttitle\tprice"]
    for index in range(count):
        title = "" if index % 3 == 0 else f"Product {index}"
        lines.append(f"SKU-{index}\t{title}\t{index * 10}")
    return "\n".join(lines) + "\n"


def test_audit_flags_quoted_empty_id_as_critical():
    id_rule = _rule("ID Check", {"type": "notEmpty", "field": "id"})
    price_rule = _rule("Price Range", {"type": "range", "field": "price", "value": {"min": 0, "max": 1000}}, "warning")

    result = AUDITS.start_audit(
        content=b'id\ttitle\tprice\n""\tPremium Headphones\t299.99\n',
        column_mapping=MAPPING,
        rule_ids=[id_rule["id"], price_rule["id"]],
        name="Headphones",
    )

    assert result["status"] == "completed"
    assert result["total_products"] == 1
    assert (result["compliant_products"], result["warning_products"], result["critical_products"]) == (1, 0, 1)
    items = STORE.list_results(result["audit_id"])["items"]
    by_rule = {item["rule_name"]: item for item in items}
    assert by_rule["ID Check"]["status"] == "critical"
    assert by_rule["ID Check"]["product_id"] == "NO_ID_MAPPED#2"
    assert "id" in by_rule["ID Check"]["details"]
    assert "empty" in by_rule["ID Check"]["details"]
    assert by_rule["Price Range"]["status"] == "ok"


def test_audit_reports_progress_per_chunk_and_persists_final_state():
    rule = _rule("Title Check", {"type": "notEmpty", "field": "title"})
    updates = []

    result = AUDITS.start_audit(
        content=_feed(10),
        column_mapping=MAPPING,
        rule_ids=[rule["id"]],
        plan=ChunkPlan(chunk_size=4, max_workers=1, regex_cache_size=8),
        on_progress=updates.append,
    )

    assert [update.progress for update in updates] == [40, 80, 100, 100]
    assert [update.status for update in updates] == ["running", "running", "running", "completed"]
    audit = STORE.get_audit(result["audit_id"])
    assert audit["status"] == "completed"
    assert audit["progress"] == 100
    assert audit["rules_processed"] == 10
    assert audit["critical_products"] == 4
    assert audit["compliant_products"] == 6
    assert audit["name"] == DEFAULT_AUDIT_NAME
    assert audit["column_mapping"] == MAPPING
    assert len(audit["file_hash"]) == 64


def test_audit_resolves_french_column_labels():
    rule = _rule("Price Range", {"type": "range", "field": "price", "value": {"min": 0, "max": 50}})

    result = AUDITS.start_audit(
        content="Ref\tCost\nA\t20\nB\t80\n",
        column_mapping={"Ref": "Identifiant", "Cost": "Prix"},
        rule_ids=[rule["id"]],
    )

    lines = export_audit(STORE, result["audit_id"]).splitlines()
    assert lines[0] == "ID\tPrice Range"
    assert lines[1] == "A\tok"
    assert lines[2].startswith("B\tcritical: Field 'price' value 80 is not within range 0-50")


def test_column_count_mismatch_aborts_before_any_audit_exists():
    rule = _rule("ID Check", {"type": "notEmpty", "field": "id"})

    with pytest.raises(FeedIngestionError) as excinfo:
        AUDITS.start_audit(
            content="id\ttitle\tprice\n1\tLamp\t10\n2\tChair\n",
            column_mapping=MAPPING,
            rule_ids=[rule["id"]],
        )

    assert excinfo.value.code == "COLUMN_COUNT_MISMATCH"
    assert excinfo.value.line_number == 3
    assert STORE.list_audits() == []


def test_empty_feed_is_rejected():
    with pytest.raises(FeedIngestionError, match="EMPTY_FEED"):
        AUDITS.start_audit(content=b"", column_mapping=MAPPING, rule_ids=[])


def test_unknown_rule_ids_are_ignored():
    rule = _rule("ID Check", {"type": "notEmpty", "field": "id"})

    result = AUDITS.start_audit(
        content=_feed(2),
        column_mapping=MAPPING,
        rule_ids=[rule["id"], "00000000-0000-0000-0000-000000000000"],
    )

    assert result["total_rules"] == 1
    assert STORE.get_audit(result["audit_id"])["rule_ids"] == [rule["id"]]


def test_audit_without_rules_completes_with_no_results():
    result = AUDITS.start_audit(content=_feed(3), column_mapping=MAPPING, rule_ids=[])

    assert result["status"] == "completed"
    assert result["progress"] == 100
    assert STORE.list_results(result["audit_id"])["pagination"]["total"] == 0


def test_persistence_failure_marks_audit_failed(monkeypatch):
    rule = _rule("ID Check", {"type": "notEmpty", "field": "id"})

    def fail(audit_id, results):
        raise RuntimeError("disk full")

    monkeypatch.setattr(STORE, "insert_results", fail)
    result = AUDITS.start_audit(content=_feed(3), column_mapping=MAPPING, rule_ids=[rule["id"]])

    assert result["status"] == "failed"
    assert result["failure_reason"] == "disk full"
    assert STORE.get_audit(result["audit_id"])["status"] == "failed"


def test_reprocess_creates_a_new_audit_from_stored_content():
    title = _rule("Title Check", {"type": "notEmpty", "field": "title"})
    price = _rule("Price Range", {"type": "range", "field": "price", "value": {"min": 0, "max": 15}}, "warning")
    original = AUDITS.start_audit(content=_feed(3), column_mapping=MAPPING, rule_ids=[title["id"]], name="Spring")

    rerun = AUDITS.reprocess_audit(original["audit_id"], rule_ids=[price["id"]])

    assert rerun["audit_id"] != original["audit_id"]
    assert rerun["status"] == "completed"
    assert (rerun["compliant_products"], rerun["warning_products"]) == (2, 1)
    stored = STORE.get_audit(rerun["audit_id"])
    first = STORE.get_audit(original["audit_id"])
    assert stored["name"] == "Spring (Rerun)"
    assert stored["reprocessed_from_id"] == original["audit_id"]
    assert stored["file_hash"] == first["file_hash"]
    assert stored["column_mapping"] == first["column_mapping"]
    assert first["rule_ids"] == [title["id"]]
    assert STORE.count_results_by_status(original["audit_id"]).total == 3


def test_reprocess_defaults_to_the_original_rule_selection():
    title = _rule("Title Check", {"type": "notEmpty", "field": "title"})
    original = AUDITS.start_audit(content=_feed(3), column_mapping=MAPPING, rule_ids=[title["id"]])

    rerun = AUDITS.reprocess_audit(original["audit_id"], name="Second pass")

    assert STORE.get_audit(rerun["audit_id"])["name"] == "Second pass"
    assert rerun["critical_products"] == original["critical_products"]


def test_reprocess_unknown_audit():
    with pytest.raises(KeyError, match="AUDIT_NOT_FOUND"):
        AUDITS.reprocess_audit("00000000-0000-0000-0000-000000000000")


def test_preview_first_and_last_samples_persist_nothing():
    rule = _rule("Title Check", {"type": "notEmpty", "field": "title"})

    first = AUDITS.preview_validation(content=_feed(8), column_mapping=MAPPING, rule_ids=[rule["id"]])
    last = AUDITS.preview_validation(
        content=_feed(8), column_mapping=MAPPING, rule_ids=[rule["id"]], sample_mode="last"
    )

    assert first.total_products == 5
    assert [row.product_id for row in first.results] == [f"SKU-{index}" for index in range(5)]
    assert [row.product_id for row in last.results] == [f"SKU-{index}" for index in range(3, 8)]
    assert first.results[0].status == "critical"
    assert (first.counts.compliant, first.counts.warning, first.counts.critical) == (3, 0, 2)
    assert last.counts.total == 5
    assert STORE.list_audits() == []


def test_preview_random_sample_is_ordered_and_distinct():
    rule = _rule("Title Check", {"type": "notEmpty", "field": "title"})

    preview = AUDITS.preview_validation(
        content=_feed(20),
        column_mapping=MAPPING,
        rule_ids=[rule["id"]],
        sample_mode="random",
        rng=random.Random(7),
    )

    ids = [int(row.product_id.split("-")[1]) for row in preview.results]
    assert len(ids) == 5
    assert ids == sorted(set(ids))


def test_preview_tolerates_ragged_rows():
    rule = _rule("Price Check", {"type": "notEmpty", "field": "price"})

    preview = AUDITS.preview_validation(
        content="id\ttitle\tprice\n1\tLamp\n2\tChair\t10\n", column_mapping=MAPPING, rule_ids=[rule["id"]]
    )

    assert [row.status for row in preview.results] == ["critical", "ok"]


def test_preview_rejects_unknown_sample_mode():
    with pytest.raises(ValueError, match="INVALID_SAMPLE_MODE"):
        AUDITS.preview_validation(content=_feed(2), column_mapping=MAPPING, rule_ids=[], sample_mode="middle")
