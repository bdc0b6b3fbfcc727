"""
Tests for background import execution: batching, counters, cancellation
between batches, failure handling and welcome notifications.
"""

import pytest

from donor_import.core.config import settings
from donor_import.domain.imports.errors import InvalidTransition, RecordStoreError
from donor_import.domain.imports.jobs import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    JobStore,
)
from donor_import.domain.imports.orchestrator import ImportJobRunner, clamp_batch_size, iter_batches
from donor_import.domain.imports.outcomes import ImportOptions
from donor_import.domain.imports.preprocessor import RowCleaner
from donor_import.domain.imports.processors.spreadsheet_reader import read_spreadsheet
from donor_import.domain.imports.schema_mapper import SchemaMapper
from tests.utils.fakes import InMemoryRecordStore, donor_rows, make_csv

HEADERS = ["firstname", "lastname", "email"]


class RecordingNotifier:
    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def __call__(self, record_id, record):
        self.calls.append((record_id, record["email"]))
        if self.fail:
            raise RuntimeError("mail server down")


@pytest.fixture
def job_store():
    return JobStore(error_summary_limit=100)


def _prepare(job_store, rows, headers=HEADERS, options=None):
    spreadsheet = read_spreadsheet(make_csv(headers, rows))
    mapping = SchemaMapper(provider=None).infer(spreadsheet.headers, spreadsheet.sample)
    import_options = options or ImportOptions()
    job = job_store.create_job(
        name="Test import",
        file_name="donors.csv",
        file_size=100,
        created_by="tester",
        options=import_options.to_dict(),
        field_mappings=[m.to_dict() for m in mapping.field_mappings],
        total_rows=spreadsheet.total_rows,
    )
    return job, spreadsheet, mapping, import_options


def _runner(job_store, record_store, batch_size=2, **kwargs):
    config = settings.model_copy(update={"import_batch_size": batch_size, "import_max_workers": 2})
    return ImportJobRunner(job_store, record_store, RowCleaner(config), config=config, **kwargs)


def test_completed_import_counts_rows(job_store):
    rows = donor_rows(5)
    rows[2][2] = "not-an-email"
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, rows)

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_COMPLETED
    assert final["processed_rows"] == 5
    assert final["successful_rows"] == 4
    assert final["error_rows"] == 1
    assert final["skipped_rows"] == 0
    assert final["error_summary"] == [{"row_index": 3, "errors": ["Invalid email format: not-an-email"]}]
    assert final["summary"]["created"] == 4
    assert final["summary"]["batches_processed"] == 3
    assert final["summary"]["validation"]["sample_rows"] == 5
    assert final["summary"]["validation"]["sample_error_rows"] == 1
    assert final["started_at"] is not None and final["completed_at"] is not None
    assert len(record_store.records) == 4
    assert "donor3@example.org" not in {r.get("email") for r in record_store.records.values()}


def test_created_records_receive_defaults(job_store):
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(1))
    _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    (record,) = record_store.records.values()
    assert record["donor_type"] == "community"
    assert record["engagement_level"] == "new"
    assert record["email_opt_in"] is True
    assert record["country"] == "USA"


def test_cancellation_after_first_batch(job_store):
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(8))
    committed = []

    def cancel_after_first(job_id, batch_number, snapshot):
        committed.append(batch_number)
        if batch_number == 1:
            job_store.request_cancellation(job_id, reason="uploaded the wrong file")

    runner = _runner(job_store, record_store, batch_size=2, on_batch_committed=cancel_after_first)
    final = runner.run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_CANCELLED
    assert final["processed_rows"] == 2
    assert final["successful_rows"] == 2
    assert final["cancellation_reason"] == "uploaded the wrong file"
    assert committed == [1]
    assert len(record_store.records) == 2
    assert record_store.batches_started == 1


def test_cancellation_before_start(job_store):
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(3))
    job_store.request_cancellation(job["id"])

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_CANCELLED
    assert final["processed_rows"] == 0
    assert record_store.records == {}


def test_store_failure_preserves_committed_progress(job_store):
    record_store = InMemoryRecordStore(fail_on_batch=2)
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(6))

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_FAILED
    assert final["processed_rows"] == 2
    assert "Record store error" in final["error_message"]
    assert len(record_store.records) == 2
    assert final["completed_at"] is not None


class FlakyCheckpointJobStore(JobStore):
    """Job store whose ``record_batch`` fails ``failures`` times starting at call ``fail_on_call``."""

    def __init__(self, fail_on_call, failures=1):
        super().__init__(error_summary_limit=100)
        self.fail_on_call = fail_on_call
        self.failures = failures
        self.calls = 0

    def record_batch(self, job_id, **kwargs):
        self.calls += 1
        if self.calls >= self.fail_on_call and self.failures > 0:
            self.failures -= 1
            raise RecordStoreError("job table locked")
        return super().record_batch(job_id, **kwargs)


def test_committed_batch_is_counted_when_checkpoint_fails():
    job_store = FlakyCheckpointJobStore(fail_on_call=2)
    record_store = InMemoryRecordStore()
    rows = donor_rows(6)
    rows[3][2] = "not-an-email"
    job, spreadsheet, mapping, options = _prepare(job_store, rows)

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_FAILED
    assert final["error_message"] == "Record store error: job table locked"
    assert len(record_store.records) == 3
    assert (final["processed_rows"], final["successful_rows"], final["error_rows"]) == (4, 3, 1)
    assert final["error_summary"] == [{"row_index": 4, "errors": ["Invalid email format: not-an-email"]}]
    assert final["summary"]["committed_rows"] == 4
    assert final["summary"]["checkpoint_recorded"] is True


def test_unrecorded_batch_is_reported_in_failure_summary():
    job_store = FlakyCheckpointJobStore(fail_on_call=2, failures=2)
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(6))

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_FAILED
    assert len(record_store.records) == 4
    assert final["processed_rows"] == 2
    assert final["summary"]["committed_rows"] == 4
    assert final["summary"]["checkpoint_recorded"] is False
    assert final["summary"]["created"] == 4


def test_job_without_mapped_columns_fails(job_store):
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, [["blue", "42"]], headers=["Favourite Colour", "Shoe Size"])

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_FAILED
    assert final["error_message"] == "No columns are mapped to donor fields"
    assert record_store.batches_started == 0


def test_counters_are_monotonic_and_consistent(job_store):
    rows = donor_rows(7)
    rows[1][0] = rows[1][1] = ""  # missing both names
    rows[4] = list(rows[0])  # in-file duplicate of row 1
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, rows, options=ImportOptions(skip_duplicates=True))
    snapshots = []

    runner = _runner(
        job_store,
        record_store,
        batch_size=3,
        on_batch_committed=lambda job_id, batch_number, snapshot: snapshots.append(snapshot),
    )
    final = runner.run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_COMPLETED
    assert len(snapshots) == 3
    previous = 0
    for snapshot in snapshots + [final]:
        assert snapshot["processed_rows"] >= previous
        assert snapshot["processed_rows"] == (
            snapshot["successful_rows"] + snapshot["error_rows"] + snapshot["skipped_rows"]
        )
        previous = snapshot["processed_rows"]
    assert (final["successful_rows"], final["error_rows"], final["skipped_rows"]) == (5, 1, 1)
    assert final["summary"]["skipped_duplicates"] == 1


def test_update_existing_applies_changes(job_store):
    record_store = InMemoryRecordStore(
        {"d1": {"first_name": "First1", "last_name": "Last1", "email": "donor1@example.org", "city": "Oldtown"}}
    )
    rows = [["First1", "Last1", "donor1@example.org", "Newtown"]]
    headers = HEADERS + ["city"]
    job, spreadsheet, mapping, options = _prepare(
        job_store, rows, headers=headers, options=ImportOptions(update_existing=True)
    )

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["successful_rows"] == 1
    assert final["summary"]["updated"] == 1
    assert record_store.records["d1"]["city"] == "Newtown"
    assert len(record_store.records) == 1


def test_needs_review_rows_are_skipped_and_reported(job_store):
    record_store = InMemoryRecordStore({"d1": {"first_name": "First1", "last_name": "Last1"}})
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(1))

    final = _runner(job_store, record_store).run(job["id"], spreadsheet, mapping, options)

    assert final["skipped_rows"] == 1
    assert final["summary"]["needs_review"] == 1
    (detail,) = job_store.list_row_errors(job["id"])
    assert detail["action"] == "needs_review"
    assert detail["row_index"] == 1


def test_welcome_notifications_follow_committed_creates(job_store):
    notifier = RecordingNotifier(fail=True)
    record_store = InMemoryRecordStore()
    rows = donor_rows(3)
    rows[1][2] = ""
    job, spreadsheet, mapping, options = _prepare(
        job_store, rows, options=ImportOptions(send_welcome_notification=True)
    )

    final = _runner(job_store, record_store, notifier=notifier).run(job["id"], spreadsheet, mapping, options)

    assert final["status"] == STATUS_COMPLETED
    assert [email for _, email in notifier.calls] == ["donor1@example.org", "donor3@example.org"]
    assert all(record_id in record_store.records for record_id, _ in notifier.calls)


def test_finished_job_is_not_rerun(job_store):
    record_store = InMemoryRecordStore()
    job, spreadsheet, mapping, options = _prepare(job_store, donor_rows(2))
    runner = _runner(job_store, record_store)
    runner.run(job["id"], spreadsheet, mapping, options)

    with pytest.raises(InvalidTransition):
        job_store.transition(job["id"], STATUS_FAILED)

    _, second_sheet, _, _ = _prepare(job_store, donor_rows(2))
    again = runner.run(job["id"], second_sheet, mapping, options)
    assert again["status"] == STATUS_COMPLETED
    assert len(record_store.records) == 2


def test_iter_batches_and_clamp():
    batches = list(iter_batches(iter([{"n": "1"}, {"n": "2"}, {"n": "3"}]), 2))
    assert batches == [[(1, {"n": "1"}), (2, {"n": "2"})], [(3, {"n": "3"})]]
    assert clamp_batch_size(0) == 1
    assert clamp_batch_size(5000) == 1000
    assert clamp_batch_size(100) == 100
