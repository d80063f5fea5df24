"""Tests for scrapers/discovery.py — fake listing client, no network."""

from datetime import date

import pytest

from errors import SourceUnavailable
from scrapers.discovery import DiscoveryFetcher, compute_window
from scrapers.pncp_client import ListingPage

WINDOW = (date(2025, 1, 9), date(2025, 1, 9))


def _row(seq: int, tax_id: str = "46068425000133", **extra) -> dict:
    row = {
        "orgaoEntidade": {"cnpj": tax_id, "razaoSocial": "MUNICIPIO DE CAMPINAS"},
        "anoCompra": 2025,
        "sequencialCompra": seq,
        "modalidadeNome": "Pregão - Eletrônico",
        "dataPublicacaoPncp": "2025-01-09T10:15:00",
        "numeroControlePNCP": f"{tax_id}-1-{seq:06d}/2025",
        "objetoCompra": "Aquisição de gêneros alimentícios",
        "valorTotalEstimado": 1500.0,
    }
    row.update(extra)
    return row


class FakeClient:
    """Serves listing pages from a {category: [page1_rows, page2_rows, ...]} map."""

    def __init__(self, pages: dict, fail_on: set | None = None):
        self.pages = pages
        self.fail_on = fail_on or set()
        self.calls = []
        self.closed = False

    def list_publications(self, window_start, window_end, category, page, page_size=50):
        self.calls.append((category, page))
        if category in self.fail_on:
            raise SourceUnavailable("listing failed", status_code=503)
        pages = self.pages.get(category, [])
        items = pages[page - 1] if page <= len(pages) else []
        return ListingPage(items=items, total_count=sum(len(p) for p in pages))

    def close(self):
        self.closed = True


def _fetcher(client, known=frozenset(), categories=None, sleeps=None) -> DiscoveryFetcher:
    return DiscoveryFetcher(
        client,
        known_keys=lambda keys: {k for k in keys if k in known},
        categories=categories or {6: "Pregão - Eletrônico", 8: "Dispensa de Licitação"},
        page_size=50,
        page_delay=0.3,
        category_delay=0.5,
        sleep=(sleeps.append if sleeps is not None else lambda s: None),
    )


class TestComputeWindow:
    def test_one_day_is_yesterday(self):
        assert compute_window(1, today=date(2025, 1, 10)) == (date(2025, 1, 9), date(2025, 1, 9))

    def test_seven_days(self):
        assert compute_window(7, today=date(2025, 1, 10)) == (date(2025, 1, 3), date(2025, 1, 9))


class TestFetchRaw:
    def test_pages_until_short_page(self):
        client = FakeClient({6: [[_row(i) for i in range(50)], [_row(i) for i in range(50, 60)]]})
        raw = _fetcher(client, categories={6: "Pregão - Eletrônico"}).fetch_raw(*WINDOW, limit=1000)
        assert len(raw) == 60
        assert client.calls == [(6, 1), (6, 2)]

    def test_empty_category_moves_on(self):
        client = FakeClient({8: [[_row(1), _row(2)]]})
        raw = _fetcher(client).fetch_raw(*WINDOW, limit=1000)
        assert len(raw) == 2
        assert client.calls == [(6, 1), (8, 1)]

    def test_limit_stops_early(self):
        client = FakeClient({
            6: [[_row(i) for i in range(50)], [_row(i) for i in range(50, 100)]],
            8: [[_row(i, tax_id="11111111000111") for i in range(10)]],
        })
        raw = _fetcher(client).fetch_raw(*WINDOW, limit=30)
        assert len(raw) == 30
        assert client.calls == [(6, 1)]

    def test_delays_between_pages_and_categories(self):
        sleeps = []
        client = FakeClient({6: [[_row(i) for i in range(50)], [_row(50)]], 8: [[_row(99)]]})
        _fetcher(client, sleeps=sleeps).fetch_raw(*WINDOW, limit=1000)
        assert sleeps == [0.3, 0.5]

    def test_rows_without_identity_skipped(self):
        client = FakeClient({6: [[_row(1), _row(2, orgaoEntidade={})]]})
        raw = _fetcher(client, categories={6: "Pregão - Eletrônico"}).fetch_raw(*WINDOW, limit=1000)
        assert [c.sequence for c in raw] == [1]

    def test_candidate_fields(self):
        client = FakeClient({6: [[_row(15)]]})
        cand = _fetcher(client, categories={6: "Pregão - Eletrônico"}).fetch_raw(*WINDOW, limit=10)[0]
        assert cand.external_key == "46068425000133-2025-15"
        assert cand.source_url == "https://pncp.gov.br/app/editais/46068425000133/2025/15"
        assert cand.reference_date == "2025-01-09"
        assert cand.org_name == "MUNICIPIO DE CAMPINAS"
        assert cand.listed_value == 1500.0


class TestSourceFailures:
    def test_failure_with_nothing_found_raises(self):
        client = FakeClient({}, fail_on={6})
        with pytest.raises(SourceUnavailable):
            _fetcher(client).fetch_raw(*WINDOW, limit=100)

    def test_failure_after_partial_results_keeps_them(self):
        client = FakeClient({6: [[_row(1), _row(2)]]}, fail_on={8})
        raw = _fetcher(client).fetch_raw(*WINDOW, limit=100)
        assert len(raw) == 2


class TestDiscover:
    def test_known_keys_excluded(self):
        client = FakeClient({6: [[_row(1), _row(2), _row(3)]]})
        fresh = _fetcher(client, known={"46068425000133-2025-2"}).discover(*WINDOW, limit=100)
        assert [c.sequence for c in fresh] == [1, 3]

    def test_duplicates_across_categories_collapse(self):
        client = FakeClient({6: [[_row(1)]], 8: [[_row(1), _row(4)]]})
        fresh = _fetcher(client).discover(*WINDOW, limit=100)
        assert [c.external_key for c in fresh] == ["46068425000133-2025-1", "46068425000133-2025-4"]

    def test_nothing_listed(self):
        assert _fetcher(FakeClient({})).discover(*WINDOW, limit=100) == []

    def test_context_manager_closes_client(self):
        client = FakeClient({6: [[_row(1)]]})
        with _fetcher(client) as fetcher:
            assert [c.sequence for c in fetcher.discover(*WINDOW, limit=100)] == [1]
        assert client.closed
