"""Pydantic models for procurement notices and pipeline state."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

MAX_ATTEMPTS = 3

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::[0-5]\d)?$")


def parse_money(value) -> float | None:
    """Coerce a Brazilian-formatted amount ("R$ 1.234,56") to a float.

    Everything except digits and the decimal comma is dropped, then the
    comma becomes a point. Numbers pass through unchanged.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^\d,]", "", value)
        if not cleaned or not any(ch.isdigit() for ch in cleaned):
            return None
        # Only the last comma can be the decimal separator
        if cleaned.count(",") > 1:
            head, _, tail = cleaned.rpartition(",")
            cleaned = head.replace(",", "") + "," + tail
        try:
            return float(cleaned.replace(",", "."))
        except ValueError:
            return None
    return None


def normalize_hhmm(value) -> str:
    """Validate "HH:MM" (seconds tolerated) and return it as "HH:MM"."""
    value = str(value).strip()
    m = _HHMM_RE.match(value)
    if not m:
        raise ValueError(f"run_at_local_time must be HH:MM, got {value!r}")
    return f"{m.group(1)}:{m.group(2)}"


def build_external_key(org_tax_id: str, year: int | str, sequence: int | str) -> str:
    return f"{org_tax_id}-{int(year)}-{int(sequence)}"


class ProcessingState(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SUCCESS = "Success"
    ERROR = "Error"
    FAILED = "Failed"


class RunStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class CandidateRecord(BaseModel):
    """A notice discovered through the bulk listing, awaiting detail extraction."""

    id: int | None = None
    org_tax_id: str
    year: int
    sequence: int
    source_url: str
    category: str | None = None
    published_at: str | None = None
    reference_date: str | None = None
    org_name: str | None = None
    control_number: str | None = None
    object_summary: str | None = None
    listed_value: float | None = None

    @field_validator("org_tax_id", mode="before")
    @classmethod
    def digits_only(cls, v):
        if isinstance(v, str):
            v = re.sub(r"\D", "", v)
        return v

    @field_validator("org_name", "category", "control_number", "object_summary", mode="before")
    @classmethod
    def strip_whitespace(cls, v: str | None) -> str | None:
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v

    @field_validator("published_at", "reference_date", mode="before")
    @classmethod
    def coerce_date(cls, v) -> str | None:
        if v is None:
            return None
        if isinstance(v, datetime):
            return v.isoformat()
        if isinstance(v, date):
            return v.isoformat()
        v = str(v).strip()
        return v if v else None

    @field_validator("listed_value", mode="before")
    @classmethod
    def coerce_value(cls, v) -> float | None:
        return parse_money(v)

    @model_validator(mode="after")
    def ensure_identity(self):
        if not self.org_tax_id:
            raise ValueError("org_tax_id cannot be empty")
        return self

    @computed_field
    @property
    def external_key(self) -> str:
        return build_external_key(self.org_tax_id, self.year, self.sequence)

    def to_db_dict(self) -> dict:
        return {
            "external_key": self.external_key,
            "org_tax_id": self.org_tax_id,
            "year": self.year,
            "sequence": self.sequence,
            "source_url": self.source_url,
            "category": self.category,
            "published_at": self.published_at,
            "reference_date": self.reference_date,
            "org_name": self.org_name,
            "control_number": self.control_number,
            "object_summary": self.object_summary,
            "listed_value": self.listed_value,
        }


class RecordItem(BaseModel):
    sequence_number: int
    description: str
    quantity: float | None = None
    unit_value: float | None = None
    total_value: float | None = None

    @field_validator("quantity", mode="before")
    @classmethod
    def coerce_quantity(cls, v) -> float | None:
        return parse_money(v)

    @field_validator("unit_value", "total_value", mode="before")
    @classmethod
    def coerce_value(cls, v) -> float | None:
        return parse_money(v)


class Attachment(BaseModel):
    sequence_number: int
    name: str
    url: str
    file_extension: str | None = None


class HistoryEvent(BaseModel):
    sequence_number: int
    event_text: str
    occurred_at: datetime | None = None


class CompleteRecord(BaseModel):
    """A candidate enriched with every recoverable field and sub-collection.

    Descriptions are kept in full; truncation is left to whoever displays them.
    """

    org_tax_id: str
    year: int
    sequence: int
    source_url: str
    category: str | None = None
    published_at: str | None = None
    reference_date: str | None = None
    title: str | None = None
    issuing_body: str | None = None
    buying_unit: str | None = None
    location: str | None = None
    legal_basis: str | None = None
    procurement_type: str | None = None
    status: str | None = None
    proposals_open_at: str | None = None
    proposals_close_at: str | None = None
    estimated_value: float | None = None
    awarded_value: float | None = None
    budget_source: str | None = None
    object_description: str | None = None
    items: list[RecordItem] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    history_events: list[HistoryEvent] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    extraction_method: str
    extraction_duration_seconds: float = 0.0
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator(
        "title", "issuing_body", "buying_unit", "location", "legal_basis",
        "procurement_type", "status", "budget_source", "object_description",
        mode="before",
    )
    @classmethod
    def strip_whitespace(cls, v: str | None) -> str | None:
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v

    @field_validator("estimated_value", "awarded_value", mode="before")
    @classmethod
    def coerce_value(cls, v) -> float | None:
        return parse_money(v)

    @computed_field
    @property
    def external_key(self) -> str:
        return build_external_key(self.org_tax_id, self.year, self.sequence)


class ProcessingStatus(BaseModel):
    record_id: int
    state: ProcessingState = ProcessingState.PENDING
    attempt_count: int = Field(default=0, ge=0, le=MAX_ATTEMPTS)
    last_error: str | None = None
    processed_at: datetime | None = None

    @model_validator(mode="after")
    def failed_iff_exhausted(self):
        if self.state == ProcessingState.FAILED and self.attempt_count != MAX_ATTEMPTS:
            raise ValueError("Failed state requires attempt_count == %d" % MAX_ATTEMPTS)
        return self


class ProcessingStatusSnapshot(BaseModel):
    """Point-in-time view of batch progress plus per-state totals."""

    is_processing: bool = False
    total_to_process: int = 0
    processed_count: int = 0
    error_count: int = 0
    current_url: str | None = None
    state_counts: dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def progress_percent(self) -> float:
        if not self.total_to_process:
            return 0.0
        return round((self.processed_count + self.error_count) / self.total_to_process * 100, 2)

    @computed_field
    @property
    def success_rate_percent(self) -> float:
        if not self.total_to_process:
            return 0.0
        return round(self.processed_count / self.total_to_process * 100, 2)


class ExecutionAuditEntry(BaseModel):
    id: int | None = None
    started_at: datetime
    finished_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    candidates_found: int = 0
    records_ingested: int = 0
    error_count: int = 0
    duration_seconds: float = 0.0
    lookback_days: int | None = None
    message: str | None = None


class SchedulerConfig(BaseModel):
    run_at_local_time: str = "08:00"
    enabled: bool = True
    lookback_days: int = Field(default=1, ge=1)
    per_run_limit: int = Field(default=100, ge=1)
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None

    @field_validator("run_at_local_time", mode="before")
    @classmethod
    def validate_hhmm(cls, v) -> str:
        return normalize_hhmm(v)


class SchedulerConfigPatch(BaseModel):
    """Partial update accepted by configure(); unset fields are left alone."""

    run_at_local_time: str | None = None
    enabled: bool | None = None
    lookback_days: int | None = Field(default=None, ge=1)
    per_run_limit: int | None = Field(default=None, ge=1)

    @field_validator("run_at_local_time", mode="before")
    @classmethod
    def validate_hhmm(cls, v) -> str | None:
        if v is None:
            return None
        return normalize_hhmm(v)


class RunResult(BaseModel):
    status: Literal["completed", "failed", "conflict", "started"]
    audit_id: int | None = None
    candidates_found: int = 0
    records_ingested: int = 0
    error_count: int = 0
    duration_seconds: float = 0.0
    message: str | None = None
