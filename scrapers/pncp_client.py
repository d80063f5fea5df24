"""HTTP client for the PNCP (Portal Nacional de Contratações Públicas) APIs.

Two APIs are involved: the public *consulta* API for the paginated listing
of published purchases, and the *integração* API that exposes a purchase's
items, files and history as JSON.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable

import httpx

import config
from .backoff import RetryPolicy, with_backoff

logger = logging.getLogger(__name__)


@dataclass
class ListingPage:
    items: list[dict] = field(default_factory=list)
    total_count: int = 0


def _yyyymmdd(d: date) -> str:
    return d.strftime("%Y%m%d")


class PncpClient:
    """Thin wrapper over httpx with timeouts and the shared retry policy."""

    def __init__(
        self,
        http: httpx.Client | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        consulta_url: str = config.PNCP_CONSULTA_URL,
        integracao_url: str = config.PNCP_INTEGRACAO_URL,
    ):
        self._owns_http = http is None
        self.http = http or httpx.Client(
            timeout=config.PNCP_HTTP_TIMEOUT,
            follow_redirects=True,
            headers={"Accept": "application/json"},
        )
        self.policy = policy or RetryPolicy.from_config()
        self.sleep = sleep
        self.consulta_url = consulta_url.rstrip("/")
        self.integracao_url = integracao_url.rstrip("/")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        if self._owns_http:
            self.http.close()

    def _get(self, url: str, params: dict | None = None, label: str = "request") -> httpx.Response:
        def _do_request():
            logger.debug("[PNCP] GET %s %s", url, params or "")
            r = self.http.get(url, params=params)
            r.raise_for_status()
            return r
        return with_backoff(_do_request, self.policy, label=label, sleep=self.sleep)

    @staticmethod
    def _json(resp: httpx.Response):
        # PNCP answers 204 No Content when a query has no rows
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def list_publications(
        self,
        window_start: date,
        window_end: date,
        category: int,
        page: int,
        page_size: int = config.PNCP_PAGE_SIZE,
    ) -> ListingPage:
        """Fetch one page of purchases published in [window_start, window_end]."""
        params = {
            "dataInicial": _yyyymmdd(window_start),
            "dataFinal": _yyyymmdd(window_end),
            "codigoModalidadeContratacao": category,
            "pagina": page,
            "tamanhoPagina": page_size,
        }
        resp = self._get(
            f"{self.consulta_url}/contratacoes/publicacao",
            params=params,
            label=f"listing category={category} page={page}",
        )
        payload = self._json(resp) or {}
        items = payload.get("data") or []
        total = payload.get("totalRegistros") or len(items)
        return ListingPage(items=items, total_count=int(total))

    def get_purchase(self, org_tax_id: str, year: int, sequence: int) -> dict | None:
        resp = self._get(
            f"{self.consulta_url}/orgaos/{org_tax_id}/compras/{year}/{sequence}",
            label="purchase",
        )
        return self._json(resp)

    def _get_list(self, org_tax_id: str, year: int, sequence: int, resource: str) -> list[dict]:
        resp = self._get(
            f"{self.integracao_url}/orgaos/{org_tax_id}/compras/{year}/{sequence}/{resource}",
            label=resource,
        )
        data = self._json(resp)
        return data if isinstance(data, list) else []

    def get_purchase_items(self, org_tax_id: str, year: int, sequence: int) -> list[dict]:
        return self._get_list(org_tax_id, year, sequence, "itens")

    def get_purchase_files(self, org_tax_id: str, year: int, sequence: int) -> list[dict]:
        return self._get_list(org_tax_id, year, sequence, "arquivos")

    def get_purchase_history(self, org_tax_id: str, year: int, sequence: int) -> list[dict]:
        return self._get_list(org_tax_id, year, sequence, "historico")
