"""Base detail-extractor interface."""

from __future__ import annotations
from abc import ABC, abstractmethod

from models import CandidateRecord, CompleteRecord

# Fields a complete record is expected to carry; absent ones are reported, not fatal
EXPECTED_FIELDS = [
    "title", "issuing_body", "location", "category", "legal_basis", "status",
    "estimated_value", "object_description",
]


class BaseExtractor(ABC):
    """Common interface for the ways of turning a candidate into a complete record."""

    name: str = "base"

    @abstractmethod
    def extract(self, candidate: CandidateRecord) -> CompleteRecord:
        """Recover every field and sub-collection for *candidate*.

        Raises an ExtractionError subclass when the record cannot be built.
        Missing optional fields are listed in ``missing_fields``.
        """
        ...

    def close(self):
        """Release any resource held between extractions."""

    def close_if_idle(self) -> bool:
        return False

    @staticmethod
    def missing_fields(fields: dict) -> list[str]:
        return [name for name in EXPECTED_FIELDS if fields.get(name) in (None, "")]

    def __repr__(self):
        return f"<{self.__class__.__name__}>"
