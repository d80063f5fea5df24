"""Pipeline orchestration and the daily timer.

A run is discovery -> candidate upsert -> select/extract/report over the
pending batch, bracketed by an execution_audit row. The daily run time is
persisted in scheduler_config and armed as a one-shot APScheduler job that
re-arms itself after each run, so a restart picks up where it left off.

Every job (daily run, manual run, browser reaper) executes on one worker
thread because the headless browser may only be driven from the thread
that started it.
"""

from __future__ import annotations

import logging
import threading
import time as _time
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

import config
import db
from errors import PersistenceFailure
from models import (
    CompleteRecord,
    ExecutionAuditEntry,
    ProcessingStatusSnapshot,
    RunResult,
    RunStatus,
    SchedulerConfig,
    SchedulerConfigPatch,
    normalize_hhmm,
)
from processing import ProcessingStateMachine, row_to_candidate
from scrapers import DiscoveryFetcher, PncpClient, candidate_from_url, compute_window, make_extractor

logger = logging.getLogger(__name__)

IDLE = "Idle"
RUNNING = "Running"
# Returned to callers that try to start a run while one is going
IN_PROGRESS = "em_andamento"

DAILY_JOB_ID = "pncp_daily_run"
MANUAL_JOB_ID = "pncp_manual_run"
REAPER_JOB_ID = "pncp_browser_reaper"


def compute_next_run_at(now: datetime, run_at_local_time: str) -> datetime:
    """Today at *run_at_local_time* if that is still ahead of *now*, else tomorrow."""
    hh, mm = (int(p) for p in normalize_hhmm(run_at_local_time).split(":"))
    at = time(hh, mm)
    target = datetime.combine(now.date(), at, tzinfo=now.tzinfo)
    if target <= now:
        target = datetime.combine(now.date() + timedelta(days=1), at, tzinfo=now.tzinfo)
    return target


@dataclass
class BatchSummary:
    selected: int = 0
    succeeded: int = 0
    errors: int = 0


def build_job_scheduler(tz: ZoneInfo) -> BackgroundScheduler:
    return BackgroundScheduler(
        executors={"default": ThreadPoolExecutor(1)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600},
        timezone=tz,
    )


class PipelineScheduler:
    """Runs the pipeline on demand or daily, one run at a time."""

    def __init__(
        self,
        state_machine: ProcessingStateMachine | None = None,
        extractor=None,
        fetcher_factory: Callable[[], DiscoveryFetcher] | None = None,
        job_scheduler=None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.tz = ZoneInfo(config.SOURCE_TIMEZONE)
        self.state_machine = state_machine or ProcessingStateMachine()
        self._extractor = extractor
        self._fetcher_factory = fetcher_factory or (lambda: DiscoveryFetcher(PncpClient()))
        self.jobs = job_scheduler
        self.clock = clock or (lambda: datetime.now(self.tz))
        self._state = IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    @property
    def extractor(self):
        if self._extractor is None:
            self._extractor = make_extractor()
        return self._extractor

    def _now(self) -> datetime:
        now = self.clock()
        return now if now.tzinfo else now.replace(tzinfo=self.tz)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def execute_run(self, lookback_days: int | None = None, limit: int | None = None) -> RunResult:
        """Discover, ingest and process once. Returns a conflict result if a run is active."""
        with self._state_lock:
            if self._state == RUNNING:
                logger.info("[Scheduler] Run requested while another is in progress")
                return RunResult(status="conflict", message=IN_PROGRESS)
            self._state = RUNNING

        started = _time.monotonic()
        started_at = self._now()
        audit_id = None
        found = 0
        summary = BatchSummary()
        try:
            cfg = db.read_scheduler_config()
            lookback = lookback_days or cfg.lookback_days
            per_run_limit = limit or cfg.per_run_limit
            audit_id = db.insert_audit_entry(
                ExecutionAuditEntry(started_at=started_at, lookback_days=lookback)
            )
            logger.info("[Scheduler] Run %d started (lookback %d day(s), limit %d)",
                        audit_id, lookback, per_run_limit)

            window_start, window_end = compute_window(lookback, today=started_at.date())
            with self._fetcher_factory() as fetcher:
                candidates = fetcher.discover(
                    window_start, window_end, config.PNCP_DISCOVERY_LIMIT,
                )
            found = len(candidates)
            inserted = db.upsert_candidates(candidates)
            logger.info("[Scheduler] %d new candidate(s), %d stored", found, inserted)

            summary = self.process_pending(per_run_limit)

            duration = round(_time.monotonic() - started, 2)
            finished_at = self._now()
            db.update_audit_entry(audit_id, {
                "finished_at": finished_at,
                "status": RunStatus.COMPLETED,
                "candidates_found": found,
                "records_ingested": summary.succeeded,
                "error_count": summary.errors,
                "duration_seconds": duration,
            })
            db.write_scheduler_config({"last_run_at": finished_at})
            logger.info(
                "[Scheduler] Run %d completed: %d found, %d ingested, %d errors in %.1fs",
                audit_id, found, summary.succeeded, summary.errors, duration,
            )
            return RunResult(
                status="completed", audit_id=audit_id, candidates_found=found,
                records_ingested=summary.succeeded, error_count=summary.errors,
                duration_seconds=duration,
            )
        except Exception as e:
            duration = round(_time.monotonic() - started, 2)
            message = f"{type(e).__name__}: {e}"
            logger.error("[Scheduler] Run failed after %.1fs: %s", duration, message, exc_info=True)
            if audit_id is not None:
                try:
                    db.update_audit_entry(audit_id, {
                        "finished_at": self._now(),
                        "status": RunStatus.FAILED,
                        "candidates_found": found,
                        "records_ingested": summary.succeeded,
                        "error_count": summary.errors,
                        "duration_seconds": duration,
                        "message": message[:500],
                    })
                except PersistenceFailure as pe:
                    logger.error("[Scheduler] Could not finalize audit entry %d: %s", audit_id, pe)
            return RunResult(
                status="failed", audit_id=audit_id, candidates_found=found,
                records_ingested=summary.succeeded, error_count=summary.errors,
                duration_seconds=duration, message=message,
            )
        finally:
            with self._state_lock:
                self._state = IDLE
            self._reschedule_after_run()

    def process_pending(self, limit: int) -> BatchSummary:
        """Select up to *limit* records and extract them one by one."""
        sm = self.state_machine
        sm.recover_stale()
        batch = sm.select_batch(limit)
        summary = BatchSummary(selected=len(batch))
        logger.info("[Processing] %d record(s) selected", len(batch))

        sm.start_batch(len(batch))
        try:
            for candidate in batch:
                if not sm.begin(candidate.id, candidate.source_url):
                    continue
                if self._process_one(candidate):
                    summary.succeeded += 1
                else:
                    summary.errors += 1
        finally:
            sm.finish_batch()
        return summary

    def _process_one(self, candidate) -> bool:
        try:
            record = self.extractor.extract(candidate)
        except Exception as e:
            logger.warning("[Processing] Extraction failed for %s: %s", candidate.source_url, e)
            self.state_machine.report_outcome(candidate.id, False, f"{type(e).__name__}: {e}")
            return False

        try:
            db.upsert_complete_record(record)
        except PersistenceFailure as e:
            logger.error("[Processing] Could not store %s: %s", record.external_key, e)
            self.state_machine.release(candidate.id)
            return False

        self.state_machine.report_outcome(candidate.id, True)
        return True

    def extract_url(self, url: str) -> CompleteRecord:
        """Extract and store a single notice by URL.

        If the notice is a known candidate its outcome goes through the
        state machine like any batch record.
        """
        candidate = candidate_from_url(url)
        row = db.get_candidate_by_key(candidate.external_key)
        claimed = False
        if row is not None:
            candidate = row_to_candidate(row)
            claimed = self.state_machine.begin(candidate.id, candidate.source_url)

        try:
            record = self.extractor.extract(candidate)
        except Exception as e:
            if claimed:
                self.state_machine.report_outcome(candidate.id, False, f"{type(e).__name__}: {e}")
            raise

        try:
            db.upsert_complete_record(record)
        except PersistenceFailure:
            if claimed:
                self.state_machine.release(candidate.id)
            raise
        if claimed:
            self.state_machine.report_outcome(candidate.id, True)
        return record

    def trigger_discovery(self, window_days: int, limit: int) -> RunResult:
        """Discovery and candidate upsert only, without detail extraction."""
        started = _time.monotonic()
        window_start, window_end = compute_window(window_days, today=self._now().date())
        with self._fetcher_factory() as fetcher:
            candidates = fetcher.discover(window_start, window_end, limit)
        inserted = db.upsert_candidates(candidates)
        return RunResult(
            status="completed",
            candidates_found=len(candidates),
            duration_seconds=round(_time.monotonic() - started, 2),
            message=f"{inserted} candidate(s) stored for {window_start}..{window_end}",
        )

    def trigger_run(self) -> RunResult:
        """Start a run now: queued on the worker thread when the timer is up, else inline."""
        if self._state == RUNNING:
            return RunResult(status="conflict", message=IN_PROGRESS)
        if self.jobs is not None and self.jobs.running:
            self.jobs.add_job(self.execute_run, id=MANUAL_JOB_ID, replace_existing=True)
            return RunResult(status="started")
        return self.execute_run()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def start(self):
        """Start the job scheduler and arm the daily run from persisted state."""
        if self.jobs is None:
            self.jobs = build_job_scheduler(self.tz)
        if not self.jobs.running:
            self.jobs.start()
        self.jobs.add_job(
            self._reap_browser,
            IntervalTrigger(seconds=config.BROWSER_REAPER_INTERVAL),
            id=REAPER_JOB_ID,
            replace_existing=True,
        )

        cfg = db.read_scheduler_config()
        if not cfg.enabled:
            logger.info("[Scheduler] Daily run disabled")
            return
        next_run = self._aware(cfg.next_run_at)
        if next_run is not None and next_run > self._now():
            self._arm(next_run)
        else:
            self._schedule_next(cfg)

    def stop(self):
        if self.jobs is not None and self.jobs.running:
            self.jobs.shutdown(wait=True)
        if self._extractor is not None:
            self._extractor.close()

    def configure(self, patch: SchedulerConfigPatch | dict) -> SchedulerConfig:
        """Persist a partial config change and re-arm the timer from it."""
        if not isinstance(patch, SchedulerConfigPatch):
            patch = SchedulerConfigPatch(**patch)
        cfg = db.write_scheduler_config(patch.model_dump(exclude_none=True))
        self._cancel()
        if cfg.enabled:
            self._schedule_next(cfg)
        else:
            db.write_scheduler_config({"next_run_at": None})
            logger.info("[Scheduler] Daily run disabled")
        return db.read_scheduler_config()

    def _aware(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=self.tz)

    def _schedule_next(self, cfg: SchedulerConfig | None = None) -> datetime:
        cfg = cfg or db.read_scheduler_config()
        next_run = compute_next_run_at(self._now(), cfg.run_at_local_time)
        db.write_scheduler_config({"next_run_at": next_run})
        self._arm(next_run)
        return next_run

    def _arm(self, run_at: datetime):
        if self.jobs is None:
            return
        self.jobs.add_job(
            self._scheduled_run,
            DateTrigger(run_date=run_at),
            id=DAILY_JOB_ID,
            replace_existing=True,
        )
        logger.info("[Scheduler] Next run at %s", run_at.isoformat())

    def _cancel(self):
        if self.jobs is not None and self.jobs.get_job(DAILY_JOB_ID) is not None:
            self.jobs.remove_job(DAILY_JOB_ID)

    def _scheduled_run(self):
        result = self.execute_run()
        if result.status == "conflict":
            self._reschedule_after_run()

    def _reschedule_after_run(self):
        try:
            cfg = db.read_scheduler_config()
            if cfg.enabled:
                self._schedule_next(cfg)
        except PersistenceFailure as e:
            logger.error("[Scheduler] Could not re-arm the daily run: %s", e)

    def _reap_browser(self):
        if self._state == RUNNING or self._extractor is None:
            return
        self._extractor.close_if_idle()

    # ------------------------------------------------------------------
    # Read side for the REST layer
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        cfg = db.read_scheduler_config()
        armed = self.jobs is not None and self.jobs.get_job(DAILY_JOB_ID) is not None
        return {
            "state": self._state,
            "running": self._state == RUNNING,
            "armed": armed,
            **cfg.model_dump(mode="json"),
        }

    def get_processing_status(self) -> ProcessingStatusSnapshot:
        return self.state_machine.snapshot()

    def get_execution_history(self, limit: int = 10) -> list[ExecutionAuditEntry]:
        return db.get_audit_entries(limit)
