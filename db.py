"""SQLite schema and gateway operations for the ingestion pipeline."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import config
from errors import PersistenceFailure
from models import (
    CandidateRecord,
    CompleteRecord,
    ExecutionAuditEntry,
    MAX_ATTEMPTS,
    ProcessingState,
    SchedulerConfig,
)

logger = logging.getLogger(__name__)

DB_PATH = config.DB_PATH

# SQLite caps the number of bound parameters per statement
_IN_CHUNK = 500

_STATUS_COLUMNS = {"state", "attempt_count", "last_error", "processed_at"}
_AUDIT_COLUMNS = {
    "finished_at", "status", "candidates_found", "records_ingested",
    "error_count", "duration_seconds", "message",
}
_SCHEDULER_COLUMNS = {
    "run_at_local_time", "enabled", "lookback_days", "per_run_limit",
    "next_run_at", "last_run_at",
}


def get_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(str(DB_PATH))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _session():
    """Yield a connection, commit on success, and map sqlite errors to PersistenceFailure."""
    conn = None
    try:
        conn = get_connection()
        yield conn
        conn.commit()
    except sqlite3.Error as exc:
        if conn is not None:
            conn.rollback()
        raise PersistenceFailure(str(exc)) from exc
    finally:
        if conn is not None:
            conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def init_db():
    """Create tables if they don't exist."""
    with _session() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS candidates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_key TEXT NOT NULL UNIQUE,
                org_tax_id TEXT NOT NULL,
                year INTEGER NOT NULL,
                sequence INTEGER NOT NULL,
                source_url TEXT NOT NULL,
                category TEXT,
                published_at TEXT,
                reference_date TEXT,
                org_name TEXT,
                control_number TEXT,
                object_summary TEXT,
                listed_value REAL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS processing_status (
                record_id INTEGER PRIMARY KEY,
                state TEXT NOT NULL DEFAULT 'Pending'
                    CHECK(state IN ('Pending', 'Processing', 'Success', 'Error', 'Failed')),
                attempt_count INTEGER NOT NULL DEFAULT 0
                    CHECK(attempt_count BETWEEN 0 AND {MAX_ATTEMPTS}),
                last_error TEXT,
                processed_at TEXT,
                updated_at TEXT,
                FOREIGN KEY (record_id) REFERENCES candidates(id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS complete_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_key TEXT NOT NULL UNIQUE,
                org_tax_id TEXT NOT NULL,
                year INTEGER NOT NULL,
                sequence INTEGER NOT NULL,
                source_url TEXT NOT NULL,
                category TEXT,
                published_at TEXT,
                reference_date TEXT,
                title TEXT,
                issuing_body TEXT,
                buying_unit TEXT,
                location TEXT,
                legal_basis TEXT,
                procurement_type TEXT,
                status TEXT,
                proposals_open_at TEXT,
                proposals_close_at TEXT,
                estimated_value REAL,
                awarded_value REAL,
                budget_source TEXT,
                object_description TEXT,
                items TEXT NOT NULL DEFAULT '[]',
                attachments TEXT NOT NULL DEFAULT '[]',
                history_events TEXT NOT NULL DEFAULT '[]',
                missing_fields TEXT NOT NULL DEFAULT '[]',
                extraction_method TEXT NOT NULL,
                extraction_duration_seconds REAL,
                extracted_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS execution_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                status TEXT NOT NULL CHECK(status IN ('Running', 'Completed', 'Failed')),
                candidates_found INTEGER NOT NULL DEFAULT 0,
                records_ingested INTEGER NOT NULL DEFAULT 0,
                error_count INTEGER NOT NULL DEFAULT 0,
                duration_seconds REAL NOT NULL DEFAULT 0,
                lookback_days INTEGER,
                message TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS scheduler_config (
                id INTEGER PRIMARY KEY CHECK(id = 1),
                run_at_local_time TEXT NOT NULL,
                enabled INTEGER NOT NULL,
                lookback_days INTEGER NOT NULL,
                per_run_limit INTEGER NOT NULL,
                next_run_at TEXT,
                last_run_at TEXT,
                updated_at TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_status_state ON processing_status(state, attempt_count)"
        )


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

def upsert_candidates(candidates: list) -> int:
    """Insert candidates, ignoring keys that already exist. Returns the number of new rows.

    Each new candidate gets a Pending processing_status row in the same transaction.
    """
    if not candidates:
        return 0
    now = _now()
    inserted = 0
    with _session() as conn:
        for cand in candidates:
            data = cand.to_db_dict() if isinstance(cand, CandidateRecord) else dict(cand)
            data.setdefault("created_at", now)
            cur = conn.execute("""
                INSERT INTO candidates
                    (external_key, org_tax_id, year, sequence, source_url, category,
                     published_at, reference_date, org_name, control_number,
                     object_summary, listed_value, created_at)
                VALUES
                    (:external_key, :org_tax_id, :year, :sequence, :source_url, :category,
                     :published_at, :reference_date, :org_name, :control_number,
                     :object_summary, :listed_value, :created_at)
                ON CONFLICT(external_key) DO NOTHING
            """, {
                "external_key": data["external_key"],
                "org_tax_id": data["org_tax_id"],
                "year": data["year"],
                "sequence": data["sequence"],
                "source_url": data["source_url"],
                "category": data.get("category"),
                "published_at": data.get("published_at"),
                "reference_date": data.get("reference_date"),
                "org_name": data.get("org_name"),
                "control_number": data.get("control_number"),
                "object_summary": data.get("object_summary"),
                "listed_value": data.get("listed_value"),
                "created_at": data["created_at"],
            })
            if cur.rowcount:
                conn.execute(
                    "INSERT INTO processing_status (record_id, state, attempt_count, updated_at) "
                    "VALUES (?, ?, 0, ?)",
                    (cur.lastrowid, ProcessingState.PENDING.value, now),
                )
                inserted += 1
    return inserted


def find_existing_keys(keys: list[str]) -> set[str]:
    """Return the subset of *keys* already stored as candidates."""
    found: set[str] = set()
    unique = list(dict.fromkeys(keys))
    with _session() as conn:
        for i in range(0, len(unique), _IN_CHUNK):
            chunk = unique[i:i + _IN_CHUNK]
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT external_key FROM candidates WHERE external_key IN ({placeholders})",
                chunk,
            ).fetchall()
            found.update(r["external_key"] for r in rows)
    return found


def get_candidate(record_id: int) -> dict | None:
    with _session() as conn:
        row = conn.execute("SELECT * FROM candidates WHERE id = ?", (record_id,)).fetchone()
    return dict(row) if row else None


def get_candidate_by_key(external_key: str) -> dict | None:
    with _session() as conn:
        row = conn.execute(
            "SELECT * FROM candidates WHERE external_key = ?", (external_key,)
        ).fetchone()
    return dict(row) if row else None


def get_all_candidates() -> list[dict]:
    with _session() as conn:
        rows = conn.execute("SELECT * FROM candidates ORDER BY created_at, id").fetchall()
    return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Processing status
# ---------------------------------------------------------------------------

def select_pending(limit: int) -> list[dict]:
    """Oldest-first candidates that are Pending or Error with attempts left."""
    with _session() as conn:
        rows = conn.execute("""
            SELECT c.*, s.state, s.attempt_count, s.last_error
            FROM candidates c
            JOIN processing_status s ON s.record_id = c.id
            WHERE s.state IN (?, ?) AND s.attempt_count < ?
            ORDER BY c.created_at ASC, c.id ASC
            LIMIT ?
        """, (
            ProcessingState.PENDING.value, ProcessingState.ERROR.value, MAX_ATTEMPTS, limit,
        )).fetchall()
    return [dict(r) for r in rows]


def get_processing_status(record_id: int) -> dict | None:
    with _session() as conn:
        row = conn.execute(
            "SELECT * FROM processing_status WHERE record_id = ?", (record_id,)
        ).fetchone()
    return dict(row) if row else None


def update_processing_status(record_id: int, patch: dict, expected_state: str | None = None) -> bool:
    """Apply *patch* to a status row. Returns False if no row matched.

    With *expected_state* the update only applies while the row is still in
    that state, which makes each transition a compare-and-set.
    """
    unknown = set(patch) - _STATUS_COLUMNS
    if unknown:
        raise ValueError(f"Unknown processing_status columns: {sorted(unknown)}")
    values = {k: _iso(v.value if isinstance(v, ProcessingState) else v) for k, v in patch.items()}
    assignments = ", ".join(f"{k} = :{k}" for k in values)
    sql = f"UPDATE processing_status SET {assignments}, updated_at = :updated_at WHERE record_id = :record_id"
    params = {**values, "updated_at": _now(), "record_id": record_id}
    if expected_state is not None:
        sql += " AND state = :expected_state"
        params["expected_state"] = expected_state
    with _session() as conn:
        cur = conn.execute(sql, params)
        return cur.rowcount > 0


def count_processing_states() -> dict[str, int]:
    counts = {s.value: 0 for s in ProcessingState}
    with _session() as conn:
        for row in conn.execute(
            "SELECT state, COUNT(*) AS c FROM processing_status GROUP BY state"
        ):
            counts[row["state"]] = row["c"]
    return counts


def list_failed() -> list[dict]:
    with _session() as conn:
        rows = conn.execute("""
            SELECT c.id, c.external_key, c.source_url, s.attempt_count, s.last_error, s.updated_at
            FROM processing_status s
            JOIN candidates c ON c.id = s.record_id
            WHERE s.state = ?
            ORDER BY s.updated_at DESC
        """, (ProcessingState.FAILED.value,)).fetchall()
    return [dict(r) for r in rows]


def release_stale_processing() -> int:
    """Return rows stuck in Processing to their eligible state without spending an attempt."""
    with _session() as conn:
        cur = conn.execute("""
            UPDATE processing_status
            SET state = CASE WHEN attempt_count > 0 THEN ? ELSE ? END,
                updated_at = ?
            WHERE state = ?
        """, (
            ProcessingState.ERROR.value, ProcessingState.PENDING.value,
            _now(), ProcessingState.PROCESSING.value,
        ))
        return cur.rowcount


# ---------------------------------------------------------------------------
# Complete records
# ---------------------------------------------------------------------------

def upsert_complete_record(record: CompleteRecord) -> int:
    """Insert or replace the complete record keyed by external_key. Returns the row id."""
    now = _now()
    data = record.model_dump(mode="json")
    params = {
        "external_key": record.external_key,
        "org_tax_id": record.org_tax_id,
        "year": record.year,
        "sequence": record.sequence,
        "source_url": record.source_url,
        "category": record.category,
        "published_at": record.published_at,
        "reference_date": record.reference_date,
        "title": record.title,
        "issuing_body": record.issuing_body,
        "buying_unit": record.buying_unit,
        "location": record.location,
        "legal_basis": record.legal_basis,
        "procurement_type": record.procurement_type,
        "status": record.status,
        "proposals_open_at": record.proposals_open_at,
        "proposals_close_at": record.proposals_close_at,
        "estimated_value": record.estimated_value,
        "awarded_value": record.awarded_value,
        "budget_source": record.budget_source,
        "object_description": record.object_description,
        "items": json.dumps(data["items"], ensure_ascii=False),
        "attachments": json.dumps(data["attachments"], ensure_ascii=False),
        "history_events": json.dumps(data["history_events"], ensure_ascii=False),
        "missing_fields": json.dumps(record.missing_fields),
        "extraction_method": record.extraction_method,
        "extraction_duration_seconds": record.extraction_duration_seconds,
        "extracted_at": record.extracted_at.isoformat(),
        "created_at": now,
        "updated_at": now,
    }
    columns = [k for k in params if k not in ("created_at",)]
    updates = ",\n                ".join(
        f"{k} = excluded.{k}" for k in columns if k != "external_key"
    )
    with _session() as conn:
        conn.execute(f"""
            INSERT INTO complete_records ({", ".join(params)})
            VALUES ({", ".join(":" + k for k in params)})
            ON CONFLICT(external_key) DO UPDATE SET
                {updates}
        """, params)
        row = conn.execute(
            "SELECT id FROM complete_records WHERE external_key = ?", (record.external_key,)
        ).fetchone()
    return row["id"]


def get_complete_record(external_key: str) -> dict | None:
    with _session() as conn:
        row = conn.execute(
            "SELECT * FROM complete_records WHERE external_key = ?", (external_key,)
        ).fetchone()
    if not row:
        return None
    rec = dict(row)
    for col in ("items", "attachments", "history_events", "missing_fields"):
        rec[col] = json.loads(rec[col] or "[]")
    return rec


def count_complete_records() -> int:
    with _session() as conn:
        return conn.execute("SELECT COUNT(*) AS c FROM complete_records").fetchone()["c"]


# ---------------------------------------------------------------------------
# Execution audit
# ---------------------------------------------------------------------------

def insert_audit_entry(entry: ExecutionAuditEntry) -> int:
    with _session() as conn:
        cur = conn.execute("""
            INSERT INTO execution_audit
                (started_at, finished_at, status, candidates_found, records_ingested,
                 error_count, duration_seconds, lookback_days, message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.started_at.isoformat(),
            _iso(entry.finished_at),
            entry.status.value,
            entry.candidates_found,
            entry.records_ingested,
            entry.error_count,
            entry.duration_seconds,
            entry.lookback_days,
            entry.message,
        ))
        return cur.lastrowid


def update_audit_entry(audit_id: int, patch: dict):
    unknown = set(patch) - _AUDIT_COLUMNS
    if unknown:
        raise ValueError(f"Unknown execution_audit columns: {sorted(unknown)}")
    values = {k: _iso(getattr(v, "value", v)) for k, v in patch.items()}
    assignments = ", ".join(f"{k} = :{k}" for k in values)
    with _session() as conn:
        conn.execute(
            f"UPDATE execution_audit SET {assignments} WHERE id = :id",
            {**values, "id": audit_id},
        )


def get_audit_entry(audit_id: int) -> ExecutionAuditEntry | None:
    with _session() as conn:
        row = conn.execute("SELECT * FROM execution_audit WHERE id = ?", (audit_id,)).fetchone()
    return ExecutionAuditEntry(**dict(row)) if row else None


def get_audit_entries(limit: int = 10) -> list[ExecutionAuditEntry]:
    """Most recent runs first."""
    with _session() as conn:
        rows = conn.execute(
            "SELECT * FROM execution_audit ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [ExecutionAuditEntry(**dict(r)) for r in rows]


# ---------------------------------------------------------------------------
# Scheduler config (singleton row)
# ---------------------------------------------------------------------------

def read_scheduler_config() -> SchedulerConfig:
    """Return the persisted config, seeding it from the environment on first use."""
    with _session() as conn:
        row = conn.execute("SELECT * FROM scheduler_config WHERE id = 1").fetchone()
        if row is None:
            seed = SchedulerConfig(
                run_at_local_time=config.SCHEDULER_RUN_AT,
                enabled=config.SCHEDULER_ENABLED,
                lookback_days=config.SCHEDULER_LOOKBACK_DAYS,
                per_run_limit=config.SCHEDULER_PER_RUN_LIMIT,
            )
            conn.execute("""
                INSERT INTO scheduler_config
                    (id, run_at_local_time, enabled, lookback_days, per_run_limit, updated_at)
                VALUES (1, ?, ?, ?, ?, ?)
            """, (
                seed.run_at_local_time, int(seed.enabled), seed.lookback_days,
                seed.per_run_limit, _now(),
            ))
            logger.info("[Scheduler] Created default scheduler config")
            return seed
    data = dict(row)
    data.pop("id", None)
    data.pop("updated_at", None)
    data["enabled"] = bool(data["enabled"])
    return SchedulerConfig(**data)


def write_scheduler_config(patch: dict) -> SchedulerConfig:
    unknown = set(patch) - _SCHEDULER_COLUMNS
    if unknown:
        raise ValueError(f"Unknown scheduler_config columns: {sorted(unknown)}")
    read_scheduler_config()
    if patch:
        values = {k: (int(v) if isinstance(v, bool) else _iso(v)) for k, v in patch.items()}
        assignments = ", ".join(f"{k} = :{k}" for k in values)
        with _session() as conn:
            conn.execute(
                f"UPDATE scheduler_config SET {assignments}, updated_at = :updated_at WHERE id = 1",
                {**values, "updated_at": _now()},
            )
    return read_scheduler_config()
