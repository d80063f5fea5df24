"""Detail extraction through the PNCP JSON APIs instead of the rendered page.

Covers fewer header fields than the page (no budget source, no free-text
labels) but returns items, files and history as structured data.
"""

from __future__ import annotations

import logging
import time

from pydantic import ValidationError

from errors import ExtractionError, SourceUnavailable
from models import Attachment, CandidateRecord, CompleteRecord, HistoryEvent, RecordItem
from .base import BaseExtractor
from .pncp_client import PncpClient
from .text import file_extension, parse_datetime

logger = logging.getLogger(__name__)


def _nested(data: dict, *path):
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _location(unit: dict | None) -> str | None:
    if not unit:
        return None
    city, uf = unit.get("municipioNome"), unit.get("ufSigla")
    if city and uf:
        return f"{city}/{uf}"
    return city or uf


def parse_items(rows: list[dict]) -> list[RecordItem]:
    items = []
    for idx, row in enumerate(rows, start=1):
        description = (row.get("descricao") or "").strip()
        if not description:
            continue
        items.append(RecordItem(
            sequence_number=row.get("numeroItem") or idx,
            description=description,
            quantity=row.get("quantidade"),
            unit_value=row.get("valorUnitarioEstimado"),
            total_value=row.get("valorTotal"),
        ))
    return items


def parse_files(rows: list[dict]) -> list[Attachment]:
    files = []
    for idx, row in enumerate(rows, start=1):
        url = row.get("url") or row.get("uri")
        if not url:
            continue
        name = row.get("titulo") or row.get("tipoDocumentoNome") or f"Arquivo {idx}"
        files.append(Attachment(
            sequence_number=row.get("sequencialDocumento") or idx,
            name=name,
            url=url,
            file_extension=file_extension(name) or file_extension(url),
        ))
    return files


def parse_history(rows: list[dict]) -> list[HistoryEvent]:
    events = []
    for idx, row in enumerate(rows, start=1):
        parts = [
            row.get("tipoLogManutencaoNome"),
            row.get("categoriaLogManutencaoNome"),
            row.get("justificativa"),
        ]
        text = " - ".join(p.strip() for p in parts if p and p.strip())
        if not text:
            continue
        events.append(HistoryEvent(
            sequence_number=idx,
            event_text=text,
            occurred_at=parse_datetime(row.get("logManutencaoDataInclusao")),
        ))
    return events


class ApiDetailExtractor(BaseExtractor):
    name = "api"

    def __init__(self, client: PncpClient | None = None):
        self.client = client or PncpClient()

    def extract(self, candidate: CandidateRecord) -> CompleteRecord:
        started = time.monotonic()
        key = (candidate.org_tax_id, candidate.year, candidate.sequence)

        try:
            purchase = self.client.get_purchase(*key) or {}
        except SourceUnavailable as e:
            raise ExtractionError(f"Purchase {candidate.external_key} unavailable: {e}") from e

        items = parse_items(self._sub_fetch(self.client.get_purchase_items, key, "itens"))
        files = parse_files(self._sub_fetch(self.client.get_purchase_files, key, "arquivos"))
        history = parse_history(self._sub_fetch(self.client.get_purchase_history, key, "historico"))

        data = {
            "title": purchase.get("numeroControlePNCP") or candidate.control_number,
            "issuing_body": _nested(purchase, "orgaoEntidade", "razaoSocial") or candidate.org_name,
            "buying_unit": _nested(purchase, "unidadeOrgao", "nomeUnidade"),
            "location": _location(purchase.get("unidadeOrgao")),
            "legal_basis": _nested(purchase, "amparoLegal", "nome"),
            "procurement_type": purchase.get("tipoInstrumentoConvocatorioNome"),
            "status": purchase.get("situacaoCompraNome"),
            "proposals_open_at": purchase.get("dataAberturaProposta"),
            "proposals_close_at": purchase.get("dataEncerramentoProposta"),
            "estimated_value": (
                purchase["valorTotalEstimado"]
                if purchase.get("valorTotalEstimado") is not None else candidate.listed_value
            ),
            "awarded_value": purchase.get("valorTotalHomologado"),
            "object_description": purchase.get("objetoCompra") or candidate.object_summary,
        }
        category = purchase.get("modalidadeNome") or candidate.category
        missing = self.missing_fields({**data, "category": category})

        try:
            return CompleteRecord(
                org_tax_id=candidate.org_tax_id,
                year=candidate.year,
                sequence=candidate.sequence,
                source_url=candidate.source_url,
                category=category,
                published_at=candidate.published_at or purchase.get("dataPublicacaoPncp"),
                reference_date=candidate.reference_date,
                **data,
                items=items,
                attachments=files,
                history_events=history,
                missing_fields=missing,
                extraction_method=self.name,
                extraction_duration_seconds=round(time.monotonic() - started, 3),
            )
        except ValidationError as e:
            raise ExtractionError(f"Invalid record from API for {candidate.external_key}: {e}") from e

    @staticmethod
    def _sub_fetch(fetch, key: tuple, label: str) -> list[dict]:
        try:
            return fetch(*key)
        except SourceUnavailable as e:
            logger.warning("[Detail] %s for %s-%s-%s unavailable, storing none: %s", label, *key, e)
            return []

    def close(self):
        self.client.close()
