"""Bulk discovery of candidate notices from the PNCP listing API.

Pages through every modality in CATEGORIES for a publication-date window,
then drops notices whose external key is already stored.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

import config
from errors import SourceUnavailable
from models import CandidateRecord
from .pncp_client import PncpClient

logger = logging.getLogger(__name__)

# codigoModalidadeContratacao -> modality name
CATEGORIES: dict[int, str] = {
    1: "Leilão - Eletrônico",
    4: "Concorrência - Eletrônica",
    5: "Concorrência - Presencial",
    6: "Pregão - Eletrônico",
    7: "Pregão - Presencial",
    8: "Dispensa de Licitação",
    9: "Inexigibilidade",
}


def source_today() -> date:
    """Today's date on the source's calendar."""
    return datetime.now(ZoneInfo(config.SOURCE_TIMEZONE)).date()


def compute_window(lookback_days: int, today: date | None = None) -> tuple[date, date]:
    """Return (start, end) for a lookback.

    One day means exactly yesterday; N days means [today - N, yesterday].
    """
    today = today or source_today()
    yesterday = today - timedelta(days=1)
    if lookback_days <= 1:
        return yesterday, yesterday
    return today - timedelta(days=lookback_days), yesterday


def detail_url(org_tax_id: str, year: int, sequence: int) -> str:
    return config.PNCP_DETAIL_URL_TEMPLATE.format(
        org_tax_id=org_tax_id, year=year, sequence=sequence,
    )


class DiscoveryFetcher:
    """Enumerates candidates across all categories for a date window."""

    def __init__(
        self,
        client: PncpClient,
        known_keys: Callable[[list[str]], set[str]] | None = None,
        categories: dict[int, str] | None = None,
        page_size: int = config.PNCP_PAGE_SIZE,
        page_delay: float = config.PNCP_PAGE_DELAY,
        category_delay: float = config.PNCP_CATEGORY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if known_keys is None:
            from db import find_existing_keys
            known_keys = find_existing_keys
        self.client = client
        self.known_keys = known_keys
        self.categories = categories if categories is not None else CATEGORIES
        self.page_size = page_size
        self.page_delay = page_delay
        self.category_delay = category_delay
        self.sleep = sleep

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.client.close()

    def discover(self, window_start: date, window_end: date, limit: int) -> list[CandidateRecord]:
        """Return candidates in the window that are not stored yet (at most *limit*)."""
        raw = self.fetch_raw(window_start, window_end, limit)
        if not raw:
            return []

        unique: dict[str, CandidateRecord] = {}
        for cand in raw:
            unique.setdefault(cand.external_key, cand)

        existing = self.known_keys(list(unique))
        fresh = [c for key, c in unique.items() if key not in existing]
        logger.info(
            "[Discovery] %d raw, %d unique, %d already known, %d new",
            len(raw), len(unique), len(existing), len(fresh),
        )
        return fresh

    def fetch_raw(self, window_start: date, window_end: date, limit: int) -> list[CandidateRecord]:
        """Accumulate listing results across categories, before any dedup."""
        logger.info(
            "[Discovery] Window %s..%s, limit %d, %d categories",
            window_start, window_end, limit, len(self.categories),
        )
        results: list[CandidateRecord] = []
        category_codes = list(self.categories)

        for idx, code in enumerate(category_codes):
            name = self.categories[code]
            try:
                self._fetch_category(code, name, window_start, window_end, limit, results)
            except SourceUnavailable:
                if not results:
                    raise
                logger.warning(
                    "[Discovery] Source failed during %s, keeping %d candidates found so far",
                    name, len(results),
                )
                break

            if len(results) >= limit:
                logger.info("[Discovery] Limit of %d reached", limit)
                break
            if idx < len(category_codes) - 1:
                self.sleep(self.category_delay)

        return results[:limit]

    def _fetch_category(
        self,
        code: int,
        name: str,
        window_start: date,
        window_end: date,
        limit: int,
        results: list[CandidateRecord],
    ):
        page = 1
        found = 0
        while True:
            listing = self.client.list_publications(
                window_start, window_end, code, page, page_size=self.page_size,
            )
            if not listing.items:
                if page == 1:
                    logger.info("[Discovery] %s: no results", name)
                break

            for item in listing.items:
                cand = self._to_candidate(item, name, window_end)
                if cand is not None:
                    results.append(cand)
                    found += 1
                if len(results) >= limit:
                    break

            if len(listing.items) < self.page_size or len(results) >= limit:
                break
            page += 1
            self.sleep(self.page_delay)

        logger.info("[Discovery] %s: %d candidates over %d page(s)", name, found, page)

    @staticmethod
    def _to_candidate(item: dict, category_name: str, reference_date: date) -> CandidateRecord | None:
        org = item.get("orgaoEntidade") or {}
        tax_id = org.get("cnpj")
        year = item.get("anoCompra")
        sequence = item.get("sequencialCompra")
        if not tax_id or year is None or sequence is None:
            logger.warning(
                "[Discovery] Listing row without identity, skipping: %s",
                item.get("numeroControlePNCP"),
            )
            return None
        try:
            return CandidateRecord(
                org_tax_id=tax_id,
                year=int(year),
                sequence=int(sequence),
                source_url=detail_url(
                    "".join(ch for ch in str(tax_id) if ch.isdigit()), int(year), int(sequence),
                ),
                category=item.get("modalidadeNome") or category_name,
                published_at=item.get("dataPublicacaoPncp"),
                reference_date=reference_date,
                org_name=org.get("razaoSocial"),
                control_number=item.get("numeroControlePNCP"),
                object_summary=item.get("objetoCompra"),
                listed_value=item.get("valorTotalEstimado"),
            )
        except (ValueError, TypeError) as e:
            logger.warning("[Discovery] Failed to build candidate for %s: %s", tax_id, e)
            return None
