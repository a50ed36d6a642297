import pytest

from feedaudit.aggregator import tally
from feedaudit.mapping import FeedRecord
from feedaudit.processor import AuditBatchProcessor, ChunkPlan, chunked, compute_progress, default_plan
from feedaudit.schemas import RuleSnapshot


class FakeRepository:
    def __init__(self):
        self.inserted = []
        self.inserts_per_chunk = []
        self.progress = []
        self.finalized = None

    def insert_results(self, audit_id, results):
        self.inserted.extend(results)
        self.inserts_per_chunk.append(len(results))
        return len(results)

    def update_audit_progress(self, audit_id, *, rules_processed, progress):
        self.progress.append((rules_processed, progress))

    def count_results_by_status(self, audit_id):
        return tally(self.inserted)

    def finalize_audit(self, audit_id, *, rules_processed, counts):
        self.finalized = {"rules_processed": rules_processed, "counts": counts}
        return {}


def _records(count):
    return [
        FeedRecord(
            line_number=index + 2,
            product_id=f"SKU-{index}",
            values={"id": f"SKU-{index}", "title": "" if index % 4 == 0 else "Lamp", "price": str(index)},
        )
        for index in range(count)
    ]


def _rules():
    return [
        RuleSnapshot.from_rule(
            {"id": "r-title", "name": "Title Check", "criticality": "critical", "condition": {"type": "notEmpty", "field": "title"}}
        ),
        RuleSnapshot.from_rule(
            {
                "id": "r-price",
                "name": "Price Range",
                "criticality": "warning",
                "condition": {"type": "range", "field": "price", "value": {"min": 0, "max": 99}},
            }
        ),
    ]


def _plan(chunk_size=100, max_workers=1):
    return ChunkPlan(chunk_size=chunk_size, max_workers=max_workers, regex_cache_size=16)


def test_compute_progress_floors_and_caps():
    assert compute_progress(0, 500) == 0
    assert compute_progress(499, 500) == 99
    assert compute_progress(500, 500) == 100
    assert compute_progress(0, 0) == 100


def test_chunked_yields_contiguous_slices():
    records = _records(5)

    assert [[r.product_id for r in chunk] for chunk in chunked(records, 2)] == [
        ["SKU-0", "SKU-1"],
        ["SKU-2", "SKU-3"],
        ["SKU-4"],
    ]


def test_default_plan_reads_settings(monkeypatch):
    monkeypatch.setenv("FEEDAUDIT_CHUNK_SIZE", "25")
    monkeypatch.setenv("FEEDAUDIT_MAX_WORKERS", "4")

    plan = default_plan()

    assert plan.chunk_size == 25
    assert plan.max_workers == 4


def test_processor_rejects_non_positive_chunk_size():
    with pytest.raises(ValueError, match="INVALID_CHUNK_SIZE"):
        AuditBatchProcessor(FakeRepository(), plan=_plan(chunk_size=0))


def test_run_persists_every_chunk_and_reports_monotonic_progress():
    repository = FakeRepository()
    processor = AuditBatchProcessor(repository, plan=_plan(chunk_size=100))

    updates = list(processor.run(audit_id="a1", records=_records(250), rules=_rules()))

    assert repository.inserts_per_chunk == [200, 200, 100]
    assert repository.progress == [(200, 40), (400, 80), (500, 100)]
    assert [update.chunk_index for update in updates[:-1]] == [0, 1, 2]
    progresses = [update.progress for update in updates]
    assert progresses == sorted(progresses)
    assert all(update.progress < 100 for update in updates[:-2])
    assert updates[-1].status == "completed"
    assert updates[-1].progress == 100
    assert updates[-1].rules_processed == 500


def test_run_finalizes_with_counts_from_persisted_results():
    repository = FakeRepository()
    processor = AuditBatchProcessor(repository, plan=_plan(chunk_size=7))

    updates = list(processor.run(audit_id="a1", records=_records(20), rules=_rules()))

    final = updates[-1]
    # 5 blank titles; prices 0..19 are all in range
    assert (final.compliant_products, final.warning_products, final.critical_products) == (35, 0, 5)
    assert repository.finalized["rules_processed"] == 40
    assert repository.finalized["counts"].total == 40


def test_run_without_rules_completes_immediately():
    repository = FakeRepository()
    processor = AuditBatchProcessor(repository, plan=_plan())

    updates = list(processor.run(audit_id="a1", records=_records(3), rules=[]))

    assert len(updates) == 1
    assert updates[0].status == "completed"
    assert updates[0].progress == 100
    assert repository.inserted == []
    assert repository.progress == []


def test_run_with_worker_pool_keeps_record_order():
    sequential = FakeRepository()
    parallel = FakeRepository()

    list(AuditBatchProcessor(sequential, plan=_plan(chunk_size=10)).run(audit_id="a1", records=_records(35), rules=_rules()))
    list(
        AuditBatchProcessor(parallel, plan=_plan(chunk_size=10, max_workers=4)).run(
            audit_id="a1", records=_records(35), rules=_rules()
        )
    )

    assert [(row.product_id, row.rule_id, row.status) for row in parallel.inserted] == [
        (row.product_id, row.rule_id, row.status) for row in sequential.inserted
    ]


def test_stopping_iteration_leaves_persisted_chunks_and_no_final_write():
    repository = FakeRepository()
    run = AuditBatchProcessor(repository, plan=_plan(chunk_size=10)).run(audit_id="a1", records=_records(30), rules=_rules())

    first = next(run)
    run.close()

    assert first.progress == 33
    assert repository.inserts_per_chunk == [20]
    assert repository.finalized is None


def test_evaluate_record_emits_one_row_per_rule():
    processor = AuditBatchProcessor(FakeRepository(), plan=_plan())
    record = FeedRecord(line_number=2, product_id="SKU-1", values={"title": "", "price": "150"})

    rows = processor.evaluate_record(record, _rules(), audit_id="a1")

    assert [(row.rule_name, row.status) for row in rows] == [("Title Check", "critical"), ("Price Range", "warning")]
    assert rows[0].field_name == "title"
    assert rows[0].details == "Field 'title' is empty or contains only whitespace"
    assert rows[1].audit_id == "a1"
