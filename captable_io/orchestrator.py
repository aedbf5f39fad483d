"""
orchestrator.py — batched, resumable import of mapped rows into a RowStore.

Job lifecycle:

    idle -> processing -> completed | completed_with_errors | failed | cancelled

Batches run strictly in order. A batch whose insert fails is recorded as
"Batch N: <message>" and the job moves on; rows already written by earlier
batches stay written. Every batch insert carries an idempotency key derived
from (job id, batch index), so re-running a job with the same id against a
store that honours keys does not duplicate rows.

Shareholder imports also warn, without skipping the row, when a name is
already stored for the company.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from captable_io.config import EngineConfig
from captable_io.models import FieldMapping, ParseError
from captable_io.schemas import TargetSchema, get_schema
from captable_io.store import RowStore, WriteResult, existing_shareholder_names
from captable_io.transforms import round_half_up
from captable_io.validation import apply_row, existing_name_warnings

logger = logging.getLogger(__name__)

IMPORT_JOBS_TABLE = "import_jobs"


class JobStatus:
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, COMPLETED_WITH_ERRORS, FAILED, CANCELLED)


@dataclass
class ImportJob:
    id: str
    company_id: str
    target_table: str
    total_records: int
    job_type: str = "import"
    processed_records: int = 0
    status: str = JobStatus.IDLE
    error_details: list[str] = field(default_factory=list)
    error_count: int = 0
    progress_percentage: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    def progress_fields(self) -> dict[str, Any]:
        return {
            "processed_records": self.processed_records,
            "progress_percentage": self.progress_percentage,
            "status": self.status,
            "error_count": self.error_count,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "job_type": self.job_type,
            "target_table": self.target_table,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "status": self.status,
            "error_details": list(self.error_details),
            "error_count": self.error_count,
            "progress_percentage": self.progress_percentage,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class CancellationToken:
    """Set from any thread; the orchestrator checks it before each batch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ImportOutcome:
    job: ImportJob
    row_errors: list[ParseError] = field(default_factory=list)
    warnings: list[ParseError] = field(default_factory=list)
    batch_errors: list[str] = field(default_factory=list)
    inserted_records: int = 0
    skipped_rows: int = 0
    duplicate_batches: int = 0

    @property
    def status(self) -> str:
        return self.job.status

    @property
    def ok(self) -> bool:
        return self.job.status == JobStatus.COMPLETED

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job.id,
            "status": self.job.status,
            "target_table": self.job.target_table,
            "total_records": self.job.total_records,
            "processed_records": self.job.processed_records,
            "progress_percentage": self.job.progress_percentage,
            "inserted_records": self.inserted_records,
            "skipped_rows": self.skipped_rows,
            "duplicate_batches": self.duplicate_batches,
            "batch_errors": len(self.batch_errors),
            "row_errors": len(self.row_errors),
            "warnings": len(self.warnings),
        }


def batch_key(job_id: str, batch_index: int) -> str:
    return hashlib.sha256(f"{job_id}:{batch_index}".encode("utf-8")).hexdigest()


def progress_percentage(processed: int, total: int) -> int:
    if total <= 0:
        return 100
    return int(round_half_up(processed / total * 100))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ImportOrchestrator:
    def __init__(
        self,
        store: RowStore,
        config: Optional[EngineConfig] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or _utc_now
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def _timestamp(self) -> str:
        return self.clock().replace(microsecond=0).isoformat()

    def _update_job(self, job: ImportJob, changes: dict[str, Any]) -> None:
        try:
            result = self.store.update(IMPORT_JOBS_TABLE, job.id, changes)
        except Exception:
            logger.exception("Could not update import job %s", job.id)
            return
        if not result.ok:
            logger.warning("Could not update import job %s: %s", job.id, result.error)

    def _insert_batch(self, table: str, records: list[dict[str, Any]], key: str) -> WriteResult:
        try:
            return self.store.insert(table, records, idempotency_key=key)
        except Exception as exc:
            logger.exception("Insert into %s raised", table)
            return WriteResult.failure(str(exc) or type(exc).__name__)

    def run(
        self,
        company_id: str,
        target_schema: "str | TargetSchema",
        rows: Sequence[dict[str, Any]],
        mappings: Sequence[FieldMapping],
        *,
        job_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[ImportJob], None]] = None,
    ) -> ImportOutcome:
        """
        Import ``rows`` (source rows keyed by source header) for one company.

        Never raises for data or backend failures; the returned outcome's job
        carries the terminal status and the error list.
        """
        schema = get_schema(target_schema)
        if schema is None:
            raise ValueError("An import needs a target schema")

        job = ImportJob(
            id=job_id or self.id_factory(),
            company_id=company_id,
            target_table=schema.table,
            total_records=len(rows),
            status=JobStatus.PROCESSING,
            started_at=self._timestamp(),
        )
        outcome = ImportOutcome(job=job)

        created = self._insert_batch(IMPORT_JOBS_TABLE, [job.to_dict()], batch_key(job.id, 0))
        if not created.ok:
            job.status = JobStatus.FAILED
            job.error_details = [f"Could not create import job: {created.error}"]
            job.error_count = 1
            job.completed_at = self._timestamp()
            logger.error("Import job %s failed to start: %s", job.id, created.error)
            return outcome

        logger.info("Import job %s started: %d %s rows", job.id, job.total_records, schema.table)
        existing: set[str] = set()
        if schema.name == "shareholders":
            existing = existing_shareholder_names(self.store, company_id, exclude_job_id=job.id)
        try:
            self._run_batches(job, outcome, schema, rows, mappings, cancel_token, on_progress, existing)
        except Exception as exc:
            logger.exception("Import job %s failed", job.id)
            job.status = JobStatus.FAILED
            job.error_details = outcome.batch_errors + [f"Import failed: {exc}"]

        job.error_count = len(outcome.batch_errors) + len(outcome.row_errors)
        if job.status == JobStatus.FAILED:
            job.error_count += 1
        else:
            job.error_details = outcome.batch_errors + [e.describe() for e in outcome.row_errors]
        job.completed_at = self._timestamp()
        self._update_job(job, {
            **job.progress_fields(),
            "error_details": list(job.error_details),
            "completed_at": job.completed_at,
        })
        logger.info(
            "Import job %s finished %s: %d/%d processed, %d inserted",
            job.id,
            job.status,
            job.processed_records,
            job.total_records,
            outcome.inserted_records,
        )
        return outcome

    def _run_batches(
        self,
        job: ImportJob,
        outcome: ImportOutcome,
        schema: TargetSchema,
        rows: Sequence[dict[str, Any]],
        mappings: Sequence[FieldMapping],
        cancel_token: Optional[CancellationToken],
        on_progress: Optional[Callable[[ImportJob], None]],
        existing_names: set[str],
    ) -> None:
        size = self.config.batch_size
        allowed = set(schema.fields)

        for batch_index, start in enumerate(range(0, len(rows), size), start=1):
            if cancel_token is not None and cancel_token.cancelled:
                job.status = JobStatus.CANCELLED
                logger.info("Import job %s cancelled before batch %d", job.id, batch_index)
                return

            batch = rows[start:start + size]
            now = self._timestamp()
            records: list[dict[str, Any]] = []
            for row_number, row in enumerate(batch, start=start + 1):
                transformed, errors = apply_row(row, mappings, schema, row_number)
                if errors:
                    outcome.row_errors.extend(errors)
                    outcome.skipped_rows += 1
                    continue
                if existing_names:
                    outcome.warnings.extend(
                        existing_name_warnings([transformed], existing_names, first_row_number=row_number)
                    )
                record = {k: v for k, v in transformed.items() if k in allowed}
                record.update({
                    "company_id": job.company_id,
                    "import_job_id": job.id,
                    "created_at": now,
                    "updated_at": now,
                })
                records.append(record)

            result = WriteResult(ok=True)
            if records:
                result = self._insert_batch(schema.table, records, batch_key(job.id, batch_index))

            if result.ok:
                job.processed_records += len(batch)
                outcome.inserted_records += 0 if result.duplicate else len(records)
                if result.duplicate:
                    outcome.duplicate_batches += 1
                logger.debug("Batch %d: %d rows written to %s", batch_index, len(records), schema.table)
            else:
                message = f"Batch {batch_index}: {result.error}"
                outcome.batch_errors.append(message)
                logger.warning("Import job %s: %s", job.id, message)

            job.progress_percentage = progress_percentage(job.processed_records, job.total_records)
            job.error_count = len(outcome.batch_errors) + len(outcome.row_errors)
            self._update_job(job, job.progress_fields())
            if on_progress is not None:
                on_progress(job)

        if outcome.batch_errors or outcome.row_errors:
            job.status = JobStatus.COMPLETED_WITH_ERRORS
        else:
            job.status = JobStatus.COMPLETED
        if not rows:
            job.progress_percentage = 100
