"""
Background execution of donor import jobs.

A job moves pending -> validating -> processing -> completed, or ends in
failed/cancelled. Rows are processed in fixed-size batches; each batch is
committed to the record store atomically before the job's counters are
checkpointed, and cancellation is only observed between batches. If the
checkpoint fails after a commit, it is retried once as the job is marked
failed and the failure summary records the committed row count.
"""
import logging
import uuid
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Callable, Dict, Iterator, List, Optional

from donor_import.core.config import Settings, settings as default_settings
from donor_import.domain.imports.duplicates import (
    ACTION_CREATE,
    ACTION_NEEDS_REVIEW,
    ACTION_UPDATE,
)
from donor_import.domain.imports.errors import CheckpointError, InvalidTransition, RecordStoreError
from donor_import.domain.imports.jobs import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PROCESSING,
    STATUS_VALIDATING,
    JobStore,
)
from donor_import.domain.imports.outcomes import ImportOptions, IndexedRow, RowEvaluator, RowOutcome
from donor_import.domain.imports.processors.spreadsheet_reader import SpreadsheetData
from donor_import.domain.imports.record_store import RecordStore
from donor_import.domain.imports.schema_mapper import MappingResult
from donor_import.integrations.notifications import LoggingWelcomeNotifier, WelcomeNotifier

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000

BatchCallback = Callable[[str, int, Dict[str, Any]], None]


def clamp_batch_size(value: int) -> int:
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, int(value)))


def iter_batches(rows: Iterator[Dict[str, str]], batch_size: int) -> Iterator[List[IndexedRow]]:
    """Yield lists of (1-based row index, row) pairs of at most ``batch_size`` rows."""
    indexed = enumerate(rows, start=1)
    while True:
        batch = list(islice(indexed, batch_size))
        if not batch:
            return
        yield batch


class _Counters:
    def __init__(self):
        self.successful = 0
        self.errors = 0
        self.skipped = 0
        self.created = 0
        self.updated = 0
        self.needs_review = 0
        self.duplicates_skipped = 0
        self.batches = 0

    @property
    def processed(self) -> int:
        return self.successful + self.errors + self.skipped

    def add(self, outcomes: List[RowOutcome]) -> None:
        for outcome in outcomes:
            if outcome.has_errors:
                self.errors += 1
            elif outcome.action == ACTION_CREATE:
                self.successful += 1
                self.created += 1
            elif outcome.action == ACTION_UPDATE:
                self.successful += 1
                self.updated += 1
            elif outcome.action == ACTION_NEEDS_REVIEW:
                self.skipped += 1
                self.needs_review += 1
            else:
                self.skipped += 1
                self.duplicates_skipped += 1

    def summary(self) -> Dict[str, Any]:
        return {
            "batches_processed": self.batches,
            "created": self.created,
            "updated": self.updated,
            "skipped_duplicates": self.duplicates_skipped,
            "needs_review": self.needs_review,
            "errors": self.errors,
        }


def _row_detail(outcome: RowOutcome) -> Optional[Dict[str, Any]]:
    if not (outcome.errors or outcome.warnings or outcome.action == ACTION_NEEDS_REVIEW):
        return None
    return {
        "row_index": outcome.row_index,
        "action": outcome.action,
        "errors": outcome.errors,
        "warnings": outcome.warnings,
        "raw_data": outcome.raw_data,
    }


class ImportJobRunner:
    """
    Executes one import job at a time on the calling thread.

    Each runner call is the single writer for its job. ``on_batch_committed``
    is invoked with (job_id, batch_number, job snapshot) after each batch's
    counters are durable.
    """

    def __init__(
        self,
        job_store: JobStore,
        record_store: RecordStore,
        cleaner: Any,
        config: Optional[Settings] = None,
        notifier: Optional[WelcomeNotifier] = None,
        on_batch_committed: Optional[BatchCallback] = None,
    ):
        self.job_store = job_store
        self.record_store = record_store
        self.cleaner = cleaner
        self.config = config or default_settings
        self.notifier = notifier or LoggingWelcomeNotifier()
        self.on_batch_committed = on_batch_committed
        self.batch_size = clamp_batch_size(self.config.import_batch_size)

    def run(
        self,
        job_id: str,
        spreadsheet: SpreadsheetData,
        mapping: MappingResult,
        options: ImportOptions,
    ) -> Dict[str, Any]:
        """Run a pending job to a terminal status and return the final job snapshot."""
        try:
            return self._run(job_id, spreadsheet, mapping, options)
        except InvalidTransition as exc:
            logger.warning("Import job %s not run: %s", job_id, exc)
            return self.job_store.get_job(job_id)
        except CheckpointError as exc:
            logger.error("Import job %s failed: batch committed but progress not recorded: %s", job_id, exc)
            return self._fail(job_id, f"Record store error: {exc}", checkpoint=exc.checkpoint, summary=exc.summary)
        except RecordStoreError as exc:
            logger.error("Import job %s failed: record store unavailable: %s", job_id, exc)
            return self._fail(job_id, f"Record store error: {exc}")
        except Exception as exc:
            logger.exception("Import job %s failed unexpectedly", job_id)
            return self._fail(job_id, f"Unexpected error: {exc}")

    # -- phases -------------------------------------------------------------

    def _run(
        self,
        job_id: str,
        spreadsheet: SpreadsheetData,
        mapping: MappingResult,
        options: ImportOptions,
    ) -> Dict[str, Any]:
        if self.job_store.is_cancellation_requested(job_id):
            return self._cancel(job_id, _Counters())

        self.job_store.transition(
            job_id,
            STATUS_VALIDATING,
            total_rows=spreadsheet.total_rows,
            field_mappings=[m.to_dict() for m in mapping.field_mappings],
        )
        logger.info("Import job %s validating %d rows", job_id, spreadsheet.total_rows)

        if not mapping.field_mappings:
            return self._fail(job_id, "No columns are mapped to donor fields")

        validation_summary = self._validate_sample(spreadsheet, mapping, options)
        if self.job_store.is_cancellation_requested(job_id):
            return self._cancel(job_id, _Counters())

        self.job_store.transition(
            job_id,
            STATUS_PROCESSING,
            started_at=datetime.now(timezone.utc),
            summary={"validation": validation_summary},
        )
        logger.info("Import job %s started processing (batch size %d)", job_id, self.batch_size)

        counters = _Counters()
        evaluator = RowEvaluator(
            mapping,
            self.cleaner,
            self.record_store,
            options,
            record_id_factory=lambda _index: str(uuid.uuid4()),
            max_workers=self.config.import_max_workers,
        )

        for batch in iter_batches(spreadsheet.rows(), self.batch_size):
            if self.job_store.is_cancellation_requested(job_id):
                return self._cancel(job_id, counters, validation_summary)
            self._process_batch(job_id, batch, evaluator, counters, options)

        summary = counters.summary()
        summary["validation"] = validation_summary
        summary["completed_at"] = datetime.now(timezone.utc).isoformat()
        job = self.job_store.transition(job_id, STATUS_COMPLETED, summary=summary)
        logger.info(
            "Import job %s completed: %d processed, %d successful, %d errors, %d skipped",
            job_id,
            job["processed_rows"],
            job["successful_rows"],
            job["error_rows"],
            job["skipped_rows"],
        )
        return job

    def _validate_sample(
        self,
        spreadsheet: SpreadsheetData,
        mapping: MappingResult,
        options: ImportOptions,
    ) -> Dict[str, Any]:
        """Dry-run the eager sample rows; nothing is persisted."""
        evaluator = RowEvaluator(
            mapping,
            self.cleaner,
            self.record_store,
            options,
            record_id_factory=lambda index: f"row-{index}",
        )
        outcomes = evaluator.evaluate(list(enumerate(spreadsheet.sample, start=1)))
        return {
            "sample_rows": len(outcomes),
            "sample_error_rows": sum(1 for o in outcomes if o.has_errors),
            "sample_duplicate_rows": sum(1 for o in outcomes if o.duplicates),
            "required_fields_covered": mapping.required_fields_covered,
            "overall_confidence": round(mapping.overall_confidence, 4),
        }

    def _process_batch(
        self,
        job_id: str,
        batch: List[IndexedRow],
        evaluator: RowEvaluator,
        counters: _Counters,
        options: ImportOptions,
    ) -> None:
        outcomes = evaluator.evaluate(batch)

        created: List[RowOutcome] = []
        with self.record_store.batch() as record_batch:
            for outcome in outcomes:
                if outcome.has_errors:
                    continue
                if outcome.action == ACTION_CREATE:
                    record_batch.create_record(outcome.cleaned_fields, outcome.record_id)
                    created.append(outcome)
                elif outcome.action == ACTION_UPDATE:
                    record_batch.update_record(outcome.record_id, outcome.cleaned_fields)

        counters.add(outcomes)
        counters.batches += 1

        if options.send_welcome_notification:
            for outcome in created:
                if not outcome.cleaned_fields.get("email"):
                    continue
                try:
                    self.notifier(outcome.record_id, outcome.cleaned_fields)
                except Exception:
                    # Batch is already committed.
                    logger.exception("Welcome notification failed for donor %s", outcome.record_id)

        checkpoint = {
            "processed_rows": counters.processed,
            "successful_rows": counters.successful,
            "error_rows": counters.errors,
            "skipped_rows": counters.skipped,
            "row_errors": [detail for detail in (_row_detail(o) for o in outcomes) if detail],
        }
        try:
            job = self.job_store.record_batch(job_id, **checkpoint)
        except RecordStoreError as exc:
            raise CheckpointError(str(exc), checkpoint, counters.summary()) from exc
        logger.info(
            "Import job %s committed batch %d: %d/%d rows processed",
            job_id,
            counters.batches,
            job["processed_rows"],
            job["total_rows"],
        )

        if self.on_batch_committed is not None:
            self.on_batch_committed(job_id, counters.batches, job)

    # -- terminal states ----------------------------------------------------

    def _cancel(
        self,
        job_id: str,
        counters: _Counters,
        validation_summary: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        summary = counters.summary()
        if validation_summary is not None:
            summary["validation"] = validation_summary
        job = self.job_store.transition(job_id, STATUS_CANCELLED, summary=summary)
        logger.info(
            "Import job %s cancelled after %d rows (reason: %s)",
            job_id,
            job["processed_rows"],
            job.get("cancellation_reason") or "none given",
        )
        return job

    def _fail(
        self,
        job_id: str,
        message: str,
        checkpoint: Optional[Dict[str, Any]] = None,
        summary: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Mark a job failed.

        ``checkpoint`` is the progress of a donor batch that committed without
        its counters being recorded; it is written once more before the job
        fails, and the summary says whether that worked.
        """
        fields: Dict[str, Any] = {"error_message": message}
        if checkpoint is not None:
            fields["summary"] = dict(summary or {})
            fields["summary"]["committed_rows"] = checkpoint["processed_rows"]
            try:
                self.job_store.record_batch(job_id, **checkpoint)
                fields["summary"]["checkpoint_recorded"] = True
            except (RecordStoreError, InvalidTransition) as exc:
                logger.error(
                    "Import job %s: progress of %d committed rows could not be recorded: %s",
                    job_id,
                    checkpoint["processed_rows"],
                    exc,
                )
                fields["summary"]["checkpoint_recorded"] = False
        try:
            job = self.job_store.transition(job_id, STATUS_FAILED, **fields)
        except InvalidTransition:
            logger.warning("Import job %s already finished; not marking failed", job_id)
            return self.job_store.get_job(job_id)
        except RecordStoreError:
            logger.exception("Could not record failure of import job %s", job_id)
            return {"id": job_id, "status": STATUS_FAILED, "error_message": message}
        logger.info("Import job %s failed after %d rows: %s", job_id, job["processed_rows"], message)
        return job
