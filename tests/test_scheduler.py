"""Tests for scheduler.py — run orchestration and timer, all collaborators faked."""

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

import db
from errors import ExtractionError, PersistenceFailure, SourceUnavailable
from models import CandidateRecord, CompleteRecord, RunStatus
from scheduler import (
    DAILY_JOB_ID,
    IDLE,
    IN_PROGRESS,
    MANUAL_JOB_ID,
    REAPER_JOB_ID,
    RUNNING,
    PipelineScheduler,
    compute_next_run_at,
)

TZ = ZoneInfo("America/Sao_Paulo")
NOW = datetime(2025, 1, 10, 9, 0, tzinfo=TZ)


def _candidate(seq: int) -> CandidateRecord:
    return CandidateRecord(
        org_tax_id="46068425000133", year=2025, sequence=seq,
        source_url=f"https://pncp.gov.br/app/editais/46068425000133/2025/{seq}",
        org_name="MUNICIPIO DE CAMPINAS",
    )


class FakeFetcher:
    def __init__(self, candidates=None, error=None):
        self.candidates = candidates or []
        self.error = error
        self.windows = []
        self.closed = False

    def discover(self, window_start, window_end, limit):
        self.windows.append((window_start, window_end))
        if self.error:
            raise self.error
        return list(self.candidates)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.closed = True


class FakeExtractor:
    def __init__(self, fail_on=(), hook=None):
        self.fail_on = set(fail_on)
        self.hook = hook
        self.extracted = []
        self.idle_checks = 0
        self.closed = False

    def extract(self, candidate):
        self.extracted.append(candidate.sequence)
        if self.hook:
            self.hook()
        if candidate.sequence in self.fail_on:
            raise ExtractionError(f"page {candidate.sequence} broken")
        return CompleteRecord(
            org_tax_id=candidate.org_tax_id, year=candidate.year, sequence=candidate.sequence,
            source_url=candidate.source_url, title=f"Edital {candidate.sequence}",
            extraction_method="fake",
        )

    def close_if_idle(self):
        self.idle_checks += 1
        return False

    def close(self):
        self.closed = True


class FakeJob:
    def __init__(self, func, trigger):
        self.func = func
        self.trigger = trigger


class FakeJobScheduler:
    def __init__(self):
        self.running = False
        self.jobs = {}

    def start(self):
        self.running = True

    def shutdown(self, wait=True):
        self.running = False

    def add_job(self, func, trigger=None, id=None, replace_existing=False, **kwargs):
        self.jobs[id] = FakeJob(func, trigger)

    def get_job(self, job_id):
        return self.jobs.get(job_id)

    def remove_job(self, job_id):
        del self.jobs[job_id]


def _scheduler(fetcher=None, extractor=None, jobs=None, now=NOW) -> PipelineScheduler:
    fetcher = fetcher or FakeFetcher()
    return PipelineScheduler(
        extractor=extractor or FakeExtractor(),
        fetcher_factory=lambda: fetcher,
        job_scheduler=jobs,
        clock=lambda: now,
    )


class TestComputeNextRunAt:
    def test_later_today(self):
        now = datetime(2025, 1, 10, 7, 0, tzinfo=TZ)
        assert compute_next_run_at(now, "08:00") == datetime(2025, 1, 10, 8, 0, tzinfo=TZ)

    def test_already_passed_means_tomorrow(self):
        assert compute_next_run_at(NOW, "08:00") == datetime(2025, 1, 11, 8, 0, tzinfo=TZ)

    def test_exact_time_means_tomorrow(self):
        assert compute_next_run_at(NOW, "09:00") == datetime(2025, 1, 11, 9, 0, tzinfo=TZ)


class TestExecuteRun:
    def test_happy_path(self, tmp_db):
        fetcher = FakeFetcher([_candidate(1), _candidate(2)])
        sched = _scheduler(fetcher=fetcher)
        result = sched.execute_run()

        assert result.status == "completed"
        assert result.candidates_found == 2
        assert result.records_ingested == 2
        assert fetcher.windows == [(date(2025, 1, 9), date(2025, 1, 9))]
        assert fetcher.closed
        assert db.count_complete_records() == 2
        assert db.count_processing_states()["Success"] == 2

        entry = db.get_audit_entry(result.audit_id)
        assert entry.status == RunStatus.COMPLETED
        assert entry.candidates_found == 2
        assert entry.records_ingested == 2
        assert entry.error_count == 0
        assert entry.finished_at is not None

        cfg = db.read_scheduler_config()
        assert cfg.last_run_at is not None
        assert cfg.next_run_at == datetime(2025, 1, 11, 8, 0, tzinfo=TZ)
        assert sched.state == IDLE

    def test_lookback_window(self, tmp_db):
        fetcher = FakeFetcher()
        _scheduler(fetcher=fetcher).execute_run(lookback_days=7)
        assert fetcher.windows == [(date(2025, 1, 3), date(2025, 1, 9))]

    def test_extraction_failure_counts_error(self, tmp_db):
        sched = _scheduler(
            fetcher=FakeFetcher([_candidate(1), _candidate(2)]),
            extractor=FakeExtractor(fail_on={2}),
        )
        result = sched.execute_run()
        assert result.status == "completed"
        assert result.records_ingested == 1
        assert result.error_count == 1
        row = db.get_candidate_by_key("46068425000133-2025-2")
        status = db.get_processing_status(row["id"])
        assert status["state"] == "Error"
        assert status["attempt_count"] == 1
        assert "page 2 broken" in status["last_error"]

    def test_storage_failure_releases_record(self, tmp_db, monkeypatch):
        def broken_upsert(record):
            raise PersistenceFailure("disk full")

        monkeypatch.setattr(db, "upsert_complete_record", broken_upsert)
        result = _scheduler(fetcher=FakeFetcher([_candidate(1)])).execute_run()
        assert result.error_count == 1
        row = db.get_candidate_by_key("46068425000133-2025-1")
        status = db.get_processing_status(row["id"])
        assert status["state"] == "Pending"
        assert status["attempt_count"] == 0

    def test_discovery_failure_finalizes_audit(self, tmp_db):
        fetcher = FakeFetcher(error=SourceUnavailable("PNCP down", status_code=503))
        sched = _scheduler(fetcher=fetcher)
        result = sched.execute_run()
        assert result.status == "failed"
        assert "PNCP down" in result.message
        entry = db.get_audit_entry(result.audit_id)
        assert entry.status == RunStatus.FAILED
        assert entry.finished_at is not None
        assert "SourceUnavailable" in entry.message
        assert sched.state == IDLE
        assert db.read_scheduler_config().last_run_at is None
        assert fetcher.closed

    def test_conflict_while_running(self, tmp_db):
        sched = _scheduler()
        sched._state = RUNNING
        result = sched.execute_run()
        assert result.status == "conflict"
        assert result.message == IN_PROGRESS
        assert db.get_audit_entries() == []

    def test_reentrant_trigger_rejected(self, tmp_db):
        inner = []
        extractor = FakeExtractor()
        sched = _scheduler(fetcher=FakeFetcher([_candidate(1)]), extractor=extractor)
        extractor.hook = lambda: inner.append(sched.execute_run())

        result = sched.execute_run()
        assert result.status == "completed"
        assert inner[0].status == "conflict"
        assert len(db.get_audit_entries()) == 1

    def test_pending_backlog_processed_oldest_first(self, tmp_db):
        db.upsert_candidates([_candidate(7)])
        extractor = FakeExtractor()
        _scheduler(fetcher=FakeFetcher([_candidate(3)]), extractor=extractor).execute_run()
        assert extractor.extracted == [7, 3]

    def test_per_run_limit(self, tmp_db):
        extractor = FakeExtractor()
        sched = _scheduler(fetcher=FakeFetcher([_candidate(i) for i in range(1, 6)]), extractor=extractor)
        result = sched.execute_run(limit=2)
        assert result.candidates_found == 5
        assert extractor.extracted == [1, 2]
        assert db.count_processing_states()["Pending"] == 3


class TestTriggers:
    def test_trigger_run_queues_when_timer_running(self, tmp_db):
        jobs = FakeJobScheduler()
        jobs.start()
        sched = _scheduler(jobs=jobs)
        result = sched.trigger_run()
        assert result.status == "started"
        assert MANUAL_JOB_ID in jobs.jobs

    def test_trigger_run_inline_without_timer(self, tmp_db):
        result = _scheduler(fetcher=FakeFetcher([_candidate(1)])).trigger_run()
        assert result.status == "completed"
        assert result.records_ingested == 1

    def test_trigger_run_conflict(self, tmp_db):
        sched = _scheduler()
        sched._state = RUNNING
        assert sched.trigger_run().status == "conflict"

    def test_trigger_discovery_stores_without_extracting(self, tmp_db):
        extractor = FakeExtractor()
        fetcher = FakeFetcher([_candidate(1), _candidate(2)])
        sched = _scheduler(fetcher=fetcher, extractor=extractor)
        result = sched.trigger_discovery(window_days=3, limit=100)
        assert fetcher.closed
        assert result.candidates_found == 2
        assert extractor.extracted == []
        assert db.count_processing_states()["Pending"] == 2

    def test_extract_url_known_candidate(self, tmp_db):
        db.upsert_candidates([_candidate(4)])
        sched = _scheduler()
        record = sched.extract_url("https://pncp.gov.br/app/editais/46068425000133/2025/4")
        assert record.title == "Edital 4"
        row = db.get_candidate_by_key("46068425000133-2025-4")
        assert db.get_processing_status(row["id"])["state"] == "Success"

    def test_extract_url_unknown_candidate(self, tmp_db):
        sched = _scheduler()
        sched.extract_url("https://pncp.gov.br/app/editais/46068425000133/2025/9")
        assert db.get_complete_record("46068425000133-2025-9") is not None
        assert db.get_candidate_by_key("46068425000133-2025-9") is None

    def test_extract_url_failure_reported(self, tmp_db):
        db.upsert_candidates([_candidate(4)])
        sched = _scheduler(extractor=FakeExtractor(fail_on={4}))
        with pytest.raises(ExtractionError):
            sched.extract_url("https://pncp.gov.br/app/editais/46068425000133/2025/4")
        row = db.get_candidate_by_key("46068425000133-2025-4")
        assert db.get_processing_status(row["id"])["state"] == "Error"


class TestTimer:
    def test_start_arms_daily_and_reaper(self, tmp_db):
        jobs = FakeJobScheduler()
        sched = _scheduler(jobs=jobs)
        sched.start()
        assert jobs.running
        assert REAPER_JOB_ID in jobs.jobs
        assert DAILY_JOB_ID in jobs.jobs
        assert db.read_scheduler_config().next_run_at == datetime(2025, 1, 11, 8, 0, tzinfo=TZ)

    def test_start_keeps_persisted_future_run(self, tmp_db):
        persisted = NOW + timedelta(hours=3)
        db.write_scheduler_config({"next_run_at": persisted})
        jobs = FakeJobScheduler()
        _scheduler(jobs=jobs).start()
        assert jobs.jobs[DAILY_JOB_ID].trigger.run_date == persisted
        assert db.read_scheduler_config().next_run_at == persisted

    def test_start_recomputes_missed_run(self, tmp_db):
        db.write_scheduler_config({"next_run_at": NOW - timedelta(days=2)})
        _scheduler(jobs=FakeJobScheduler()).start()
        assert db.read_scheduler_config().next_run_at == datetime(2025, 1, 11, 8, 0, tzinfo=TZ)

    def test_start_disabled(self, tmp_db):
        db.write_scheduler_config({"enabled": False})
        jobs = FakeJobScheduler()
        _scheduler(jobs=jobs).start()
        assert DAILY_JOB_ID not in jobs.jobs

    def test_configure_rearms(self, tmp_db):
        jobs = FakeJobScheduler()
        sched = _scheduler(jobs=jobs)
        sched.start()
        cfg = sched.configure({"run_at_local_time": "10:30"})
        assert cfg.run_at_local_time == "10:30"
        assert cfg.next_run_at == datetime(2025, 1, 10, 10, 30, tzinfo=TZ)
        assert DAILY_JOB_ID in jobs.jobs

    def test_configure_disable_clears_next_run(self, tmp_db):
        jobs = FakeJobScheduler()
        sched = _scheduler(jobs=jobs)
        sched.start()
        cfg = sched.configure({"enabled": False})
        assert cfg.enabled is False
        assert cfg.next_run_at is None
        assert DAILY_JOB_ID not in jobs.jobs

    def test_configure_rejects_bad_time(self, tmp_db):
        with pytest.raises(ValueError):
            _scheduler().configure({"run_at_local_time": "25:00"})

    def test_reaper_skips_during_run(self, tmp_db):
        extractor = FakeExtractor()
        sched = _scheduler(extractor=extractor)
        sched._reap_browser()
        assert extractor.idle_checks == 1
        sched._state = RUNNING
        sched._reap_browser()
        assert extractor.idle_checks == 1

    def test_stop_closes_extractor(self, tmp_db):
        jobs = FakeJobScheduler()
        extractor = FakeExtractor()
        sched = _scheduler(jobs=jobs, extractor=extractor)
        sched.start()
        sched.stop()
        assert not jobs.running
        assert extractor.closed

    def test_status(self, tmp_db):
        status = _scheduler().get_status()
        assert status["state"] == IDLE
        assert status["running"] is False
        assert status["armed"] is False
        assert status["run_at_local_time"] == "08:00"
