"""Tests for models.py — money coercion, identity keys, status invariants."""

from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from models import (
    CandidateRecord,
    CompleteRecord,
    ProcessingState,
    ProcessingStatus,
    ProcessingStatusSnapshot,
    RecordItem,
    SchedulerConfig,
    SchedulerConfigPatch,
    parse_money,
)


def _make_candidate(**overrides) -> CandidateRecord:
    defaults = {
        "org_tax_id": "46068425000133",
        "year": 2025,
        "sequence": 15,
        "source_url": "https://pncp.gov.br/app/editais/46068425000133/2025/15",
    }
    defaults.update(overrides)
    return CandidateRecord(**defaults)


class TestParseMoney:
    def test_brazilian_format(self):
        assert parse_money("R$ 1.234,56") == 1234.56

    def test_millions(self):
        assert parse_money("R$ 1.234.567,89") == 1234567.89

    def test_no_decimals(self):
        assert parse_money("R$ 5.000") == 5000.0

    def test_numbers_pass_through(self):
        assert parse_money(42) == 42.0
        assert parse_money(18.5) == 18.5

    def test_garbage_is_none(self):
        assert parse_money("sem valor") is None
        assert parse_money("") is None
        assert parse_money(None) is None

    def test_bool_is_none(self):
        assert parse_money(True) is None


class TestCandidateRecord:
    def test_external_key(self):
        c = _make_candidate()
        assert c.external_key == "46068425000133-2025-15"

    def test_tax_id_punctuation_stripped(self):
        c = _make_candidate(org_tax_id="46.068.425/0001-33")
        assert c.org_tax_id == "46068425000133"

    def test_empty_tax_id_rejected(self):
        with pytest.raises(ValidationError):
            _make_candidate(org_tax_id="--")

    def test_reference_date_from_date(self):
        c = _make_candidate(reference_date=date(2025, 1, 10))
        assert c.reference_date == "2025-01-10"

    def test_listed_value_coerced(self):
        c = _make_candidate(listed_value="R$ 10.000,00")
        assert c.listed_value == 10000.0

    def test_db_dict_has_key(self):
        d = _make_candidate(org_name="  MUNICIPIO DE CAMPINAS ").to_db_dict()
        assert d["external_key"] == "46068425000133-2025-15"
        assert d["org_name"] == "MUNICIPIO DE CAMPINAS"


class TestCompleteRecord:
    def test_values_coerced(self):
        r = CompleteRecord(
            org_tax_id="1", year=2025, sequence=1, source_url="u",
            estimated_value="R$ 1.234,56", extraction_method="render",
        )
        assert r.estimated_value == 1234.56
        assert r.items == []

    def test_long_description_kept_whole(self):
        text = "FORNECIMENTO " * 200
        r = CompleteRecord(
            org_tax_id="1", year=2025, sequence=1, source_url="u",
            object_description=text, extraction_method="render",
        )
        assert r.object_description == text.strip()

    def test_extracted_at_is_utc(self):
        r = CompleteRecord(org_tax_id="1", year=2025, sequence=1, source_url="u",
                           extraction_method="render")
        assert r.extracted_at.utcoffset() == timedelta(0)

    def test_item_values(self):
        item = RecordItem(sequence_number=1, description="Marmitex", quantity="1.000",
                          unit_value="R$ 18,50", total_value=None)
        assert item.quantity == 1000.0
        assert item.unit_value == 18.5
        assert item.total_value is None


class TestProcessingStatus:
    def test_failed_requires_three_attempts(self):
        with pytest.raises(ValidationError):
            ProcessingStatus(record_id=1, state=ProcessingState.FAILED, attempt_count=2)

    def test_failed_with_three_attempts(self):
        s = ProcessingStatus(record_id=1, state=ProcessingState.FAILED, attempt_count=3)
        assert s.state == ProcessingState.FAILED

    def test_attempts_capped(self):
        with pytest.raises(ValidationError):
            ProcessingStatus(record_id=1, state=ProcessingState.ERROR, attempt_count=4)


class TestSnapshot:
    def test_percentages(self):
        snap = ProcessingStatusSnapshot(total_to_process=4, processed_count=2, error_count=1)
        assert snap.progress_percent == 75.0
        assert snap.success_rate_percent == 50.0

    def test_empty_batch(self):
        assert ProcessingStatusSnapshot().progress_percent == 0.0


class TestSchedulerConfig:
    def test_defaults(self):
        cfg = SchedulerConfig()
        assert cfg.run_at_local_time == "08:00"
        assert cfg.lookback_days == 1

    def test_seconds_dropped(self):
        assert SchedulerConfig(run_at_local_time="07:30:00").run_at_local_time == "07:30"

    @pytest.mark.parametrize("bad", ["8h", "24:00", "12:60", ""])
    def test_invalid_time_rejected(self, bad):
        with pytest.raises(ValidationError):
            SchedulerConfig(run_at_local_time=bad)

    def test_patch_allows_partial(self):
        patch = SchedulerConfigPatch(enabled=False)
        assert patch.model_dump(exclude_none=True) == {"enabled": False}

    def test_patch_rejects_zero_lookback(self):
        with pytest.raises(ValidationError):
            SchedulerConfigPatch(lookback_days=0)
