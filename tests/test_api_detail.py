"""Tests for scrapers/api_detail.py — fake PNCP client."""

from datetime import datetime

import pytest

from errors import ExtractionError, SourceUnavailable
from models import CandidateRecord
from scrapers.api_detail import ApiDetailExtractor, parse_files, parse_history


PURCHASE = {
    "numeroControlePNCP": "46068425000133-1-000015/2025",
    "orgaoEntidade": {"cnpj": "46068425000133", "razaoSocial": "MUNICIPIO DE CAMPINAS"},
    "unidadeOrgao": {"nomeUnidade": "SECRETARIA MUNICIPAL DE SAUDE", "municipioNome": "Campinas", "ufSigla": "SP"},
    "amparoLegal": {"nome": "Lei 14.133/2021, Art. 28, I"},
    "modalidadeNome": "Pregão - Eletrônico",
    "situacaoCompraNome": "Divulgada no PNCP",
    "objetoCompra": "Contratação de empresa para fornecimento de refeições",
    "valorTotalEstimado": None,
}


class FakeClient:
    def __init__(self, purchase=None, fail=()):
        self.purchase = purchase if purchase is not None else PURCHASE
        self.fail = set(fail)

    def _maybe_fail(self, name):
        if name in self.fail:
            raise SourceUnavailable(f"{name} down", status_code=503)

    def get_purchase(self, *key):
        self._maybe_fail("purchase")
        return self.purchase

    def get_purchase_items(self, *key):
        self._maybe_fail("itens")
        return [{"numeroItem": 1, "descricao": "Marmitex 500g", "quantidade": 1000,
                 "valorUnitarioEstimado": 18.5, "valorTotal": 18500.0}]

    def get_purchase_files(self, *key):
        self._maybe_fail("arquivos")
        return [{"url": "https://pncp.gov.br/pncp-api/v1/arquivos/1", "titulo": "Edital.pdf",
                 "sequencialDocumento": 1}]

    def get_purchase_history(self, *key):
        self._maybe_fail("historico")
        return [{"tipoLogManutencaoNome": "Inclusão", "categoriaLogManutencaoNome": "Contratação",
                 "logManutencaoDataInclusao": "2025-01-10T14:32:00"}]

    def close(self):
        pass


def _candidate() -> CandidateRecord:
    return CandidateRecord(
        org_tax_id="46068425000133", year=2025, sequence=15,
        source_url="https://pncp.gov.br/app/editais/46068425000133/2025/15",
        listed_value=2500.0,
    )


class TestApiDetailExtractor:
    def test_builds_record(self):
        record = ApiDetailExtractor(client=FakeClient()).extract(_candidate())
        assert record.extraction_method == "api"
        assert record.location == "Campinas/SP"
        assert record.issuing_body == "MUNICIPIO DE CAMPINAS"
        assert record.category == "Pregão - Eletrônico"
        assert record.estimated_value == 2500.0
        assert record.items[0].total_value == 18500.0
        assert record.attachments[0].file_extension == "pdf"
        assert record.history_events[0].event_text == "Inclusão - Contratação"

    def test_sub_collection_failure_stores_empty(self):
        record = ApiDetailExtractor(client=FakeClient(fail={"itens"})).extract(_candidate())
        assert record.items == []
        assert len(record.attachments) == 1

    def test_purchase_failure_is_extraction_error(self):
        with pytest.raises(ExtractionError):
            ApiDetailExtractor(client=FakeClient(fail={"purchase"})).extract(_candidate())


class TestParsers:
    def test_files_without_url_skipped(self):
        assert parse_files([{"titulo": "sem link"}]) == []

    def test_history_timestamp(self):
        events = parse_history([{"tipoLogManutencaoNome": "Retificação",
                                 "logManutencaoDataInclusao": "2025-01-15T09:05:10"}])
        assert events[0].occurred_at == datetime(2025, 1, 15, 9, 5, 10)

    def test_history_without_text_skipped(self):
        assert parse_history([{"logManutencaoDataInclusao": "2025-01-15T09:05:10"}]) == []
