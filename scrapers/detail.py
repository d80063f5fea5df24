"""Detail extraction from the rendered notice page."""

from __future__ import annotations

import logging
import time

from pydantic import ValidationError

from errors import ExtractionError, IdentityNotRecoverable
from models import CandidateRecord, CompleteRecord
from .base import BaseExtractor
from .discovery import detail_url
from .recognizers import (
    AttachmentsRecognizer,
    Document,
    FieldRecognizer,
    HistoryRecognizer,
    ItemsRecognizer,
    MAIN_RECOGNIZERS,
    identity_from_url,
    recognize_all,
)
from .render import PlaywrightRenderer, RenderedDetail

logger = logging.getLogger(__name__)

# Header fields copied from the recognizers' output as-is
PAGE_FIELDS = [
    "title", "issuing_body", "buying_unit", "location", "legal_basis",
    "procurement_type", "status", "proposals_open_at", "proposals_close_at",
    "estimated_value", "awarded_value", "budget_source", "object_description",
]


def candidate_from_url(url: str) -> CandidateRecord:
    """Build a bare candidate for a notice URL given directly by a user."""
    ident = identity_from_url(url)
    if ident is None:
        raise IdentityNotRecoverable(f"No tax id/year/sequence in URL: {url}")
    tax_id, year, sequence = ident
    return CandidateRecord(
        org_tax_id=tax_id, year=year, sequence=sequence,
        source_url=detail_url(tax_id, year, sequence),
    )


class DetailExtractor(BaseExtractor):
    """Renders a candidate's notice page and runs the recognizer pipeline on it."""

    name = "render"

    def __init__(self, renderer=None, recognizers: list[FieldRecognizer] | None = None):
        self.renderer = renderer or PlaywrightRenderer()
        self.recognizers = recognizers or MAIN_RECOGNIZERS

    def extract(self, candidate: CandidateRecord) -> CompleteRecord:
        started = time.monotonic()
        url = candidate.source_url
        ident = identity_from_url(url)
        if ident is None:
            raise IdentityNotRecoverable(f"No tax id/year/sequence in URL: {url}")
        tax_id, year, sequence = ident

        logger.info("[Detail] Extracting %s", url)
        rendered = self.renderer.render(url)

        doc = Document(rendered.main_html, url)
        fields, missed = recognize_all(doc, self.recognizers)
        if missed:
            logger.debug("[Detail] Recognizers without result on %s: %s", url, ", ".join(missed))

        collections = self._sub_collections(rendered, fields.get("object_description"))

        data = {name: fields.get(name) for name in PAGE_FIELDS}
        # Listing metadata fills what the page did not show
        data["issuing_body"] = data["issuing_body"] or candidate.org_name
        data["object_description"] = data["object_description"] or candidate.object_summary
        if data["estimated_value"] is None:
            data["estimated_value"] = candidate.listed_value
        category = fields.get("category") or candidate.category
        published_at = candidate.published_at or fields.get("published_at")

        missing = self.missing_fields({**data, "category": category})
        if missing:
            logger.info("[Detail] %s-%s-%s missing: %s", tax_id, year, sequence, ", ".join(missing))

        try:
            record = CompleteRecord(
                org_tax_id=tax_id,
                year=year,
                sequence=sequence,
                source_url=url,
                category=category,
                published_at=published_at,
                reference_date=candidate.reference_date,
                **data,
                **collections,
                missing_fields=missing,
                extraction_method=self.name,
                extraction_duration_seconds=round(time.monotonic() - started, 3),
            )
        except ValidationError as e:
            raise ExtractionError(f"Invalid record built from {url}: {e}") from e

        logger.info(
            "[Detail] %s: %d items, %d attachments, %d history events in %.1fs",
            record.external_key, len(record.items), len(record.attachments),
            len(record.history_events), record.extraction_duration_seconds,
        )
        return record

    @staticmethod
    def _sub_collections(rendered: RenderedDetail, object_description: str | None) -> dict:
        recognizers = {
            "items": ItemsRecognizer(exclude_text=object_description),
            "attachments": AttachmentsRecognizer(),
            "history_events": HistoryRecognizer(),
        }
        tab_for = {"items": "items", "attachments": "attachments", "history_events": "history"}

        out: dict = {}
        for key, recognizer in recognizers.items():
            html = rendered.tab_html.get(tab_for[key])
            if html is None:
                # Tab absent or could not be opened
                out[key] = []
                continue
            try:
                result = recognizer.recognize(Document(html, rendered.url))
            except Exception as e:
                logger.warning("[Detail] %s extraction failed on %s: %s", key, rendered.url, e)
                out[key] = []
                continue
            out[key] = result.fields.get(key, [])
            logger.debug("[Detail] %s: %d via %s", key, len(out[key]), result.strategy)
        return out

    def close_if_idle(self) -> bool:
        return self.renderer.close_if_idle()

    def close(self):
        self.renderer.close()
