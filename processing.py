"""Per-record processing lifecycle: Pending -> Processing -> Success | Error | Failed.

All status writes go through ProcessingStateMachine; the orchestrator and
the extractors only report outcomes to it.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone

import db
from errors import InvalidTransition
from models import (
    MAX_ATTEMPTS,
    CandidateRecord,
    ProcessingState,
    ProcessingStatus,
    ProcessingStatusSnapshot,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
SELECTABLE = (ProcessingState.PENDING, ProcessingState.ERROR)
TERMINAL = (ProcessingState.SUCCESS, ProcessingState.FAILED)


def row_to_candidate(row: dict) -> CandidateRecord:
    return CandidateRecord(**{k: row[k] for k in CandidateRecord.model_fields if k in row})


class ProcessingStateMachine:
    """Selects work, records outcomes and keeps the progress of the current batch."""

    def __init__(self):
        self._lock = threading.Lock()
        self._is_processing = False
        self._total = 0
        self._processed = 0
        self._errors = 0
        self._current_url: str | None = None

    # -- selection -----------------------------------------------------------

    def select_batch(self, limit: int) -> list[CandidateRecord]:
        """Oldest-first candidates that are Pending, or Error with attempts left."""
        if limit <= 0:
            return []
        return [row_to_candidate(r) for r in db.select_pending(limit)]

    def begin(self, record_id: int, url: str | None = None) -> bool:
        """Claim a selected record. Returns False if it is no longer selectable."""
        for state in SELECTABLE:
            if db.update_processing_status(
                record_id, {"state": ProcessingState.PROCESSING}, expected_state=state.value,
            ):
                with self._lock:
                    self._current_url = url
                return True
        logger.warning("[Processing] Record %d is not selectable, skipping", record_id)
        return False

    # -- outcomes ------------------------------------------------------------

    def _current(self, record_id: int) -> ProcessingStatus:
        row = db.get_processing_status(record_id)
        if row is None:
            raise InvalidTransition(f"Record {record_id} has no processing status")
        return ProcessingStatus(
            record_id=record_id,
            state=row["state"],
            attempt_count=row["attempt_count"],
            last_error=row["last_error"],
            processed_at=row["processed_at"],
        )

    def report_outcome(self, record_id: int, success: bool, error: str | None = None) -> ProcessingStatus:
        """Record the result of one extraction attempt.

        Success keeps the attempt count and clears the error. Failure spends
        an attempt; the third one leaves the record Failed.
        """
        current = self._current(record_id)
        if current.state in TERMINAL:
            raise InvalidTransition(
                f"Record {record_id} is {current.state.value}, cannot report an outcome"
            )

        if success:
            new = ProcessingStatus(
                record_id=record_id,
                state=ProcessingState.SUCCESS,
                attempt_count=current.attempt_count,
                last_error=None,
                processed_at=datetime.now(timezone.utc),
            )
        else:
            attempts = current.attempt_count + 1
            new = ProcessingStatus(
                record_id=record_id,
                state=ProcessingState.FAILED if attempts >= MAX_ATTEMPTS else ProcessingState.ERROR,
                attempt_count=attempts,
                last_error=(error or "unknown error")[:MAX_ERROR_LENGTH],
                processed_at=current.processed_at,
            )

        patch = {"state": new.state, "attempt_count": new.attempt_count, "last_error": new.last_error}
        if success:
            patch["processed_at"] = new.processed_at
        if not db.update_processing_status(record_id, patch, expected_state=current.state.value):
            raise InvalidTransition(f"Record {record_id} changed state while being reported")

        with self._lock:
            if self._is_processing:
                if success:
                    self._processed += 1
                else:
                    self._errors += 1

        if new.state == ProcessingState.FAILED:
            logger.warning("[Processing] Record %d failed %d times, giving up: %s",
                           record_id, MAX_ATTEMPTS, new.last_error)
        elif not success:
            logger.info("[Processing] Record %d attempt %d/%d failed",
                        record_id, new.attempt_count, MAX_ATTEMPTS)
        return new

    def release(self, record_id: int) -> bool:
        """Undo a claim without spending an attempt (the outcome could not be stored)."""
        current = self._current(record_id)
        if current.state != ProcessingState.PROCESSING:
            return False
        back = ProcessingState.ERROR if current.attempt_count else ProcessingState.PENDING
        return db.update_processing_status(
            record_id, {"state": back}, expected_state=ProcessingState.PROCESSING.value,
        )

    def recover_stale(self) -> int:
        """Release records left in Processing by an interrupted run."""
        released = db.release_stale_processing()
        if released:
            logger.warning("[Processing] Released %d record(s) stuck in Processing", released)
        return released

    # -- administration ------------------------------------------------------

    def reset_failed(self, record_id: int) -> bool:
        """Give a Failed record a fresh set of attempts."""
        ok = db.update_processing_status(
            record_id,
            {"state": ProcessingState.PENDING, "attempt_count": 0, "last_error": None},
            expected_state=ProcessingState.FAILED.value,
        )
        if ok:
            logger.info("[Processing] Record %d reset to Pending", record_id)
        return ok

    def reset_all_failed(self) -> int:
        return sum(1 for row in db.list_failed() if self.reset_failed(row["id"]))

    # -- progress ------------------------------------------------------------

    def start_batch(self, total: int):
        with self._lock:
            self._is_processing = True
            self._total = total
            self._processed = 0
            self._errors = 0
            self._current_url = None

    def finish_batch(self):
        with self._lock:
            self._is_processing = False
            self._current_url = None

    def snapshot(self) -> ProcessingStatusSnapshot:
        counts = db.count_processing_states()
        with self._lock:
            return ProcessingStatusSnapshot(
                is_processing=self._is_processing,
                total_to_process=self._total,
                processed_count=self._processed,
                error_count=self._errors,
                current_url=self._current_url,
                state_counts=counts,
            )
