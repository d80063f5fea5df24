"""Heuristic field recognizers for rendered PNCP notice pages.

The notice page is a client-rendered SPA whose markup is not stable, so
nothing here relies on CSS classes or element positions. Each recognizer
looks for textual shapes instead ("label: value" pairs, anchor phrases,
keyword-qualified blocks, tables whose headers name known columns) and
reports what it found. Recognizers are run as an ordered pipeline over a
parsed Document; earlier recognizers win when two produce the same field.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

import config
from models import Attachment, HistoryEvent, RecordItem, parse_money
from .text import (
    QUANTITY_RE,
    clean,
    file_extension,
    find_money,
    normalize,
    parse_datetime,
    strip_accents,
)

logger = logging.getLogger(__name__)

BLOCK_SELECTOR = "div, p, span, li, td, th, dt, dd, label, strong, b, h1, h2, h3, h4, h5, h6"
TABLE_SELECTOR = "table, [role=table], [role=grid]"
HEADER_SELECTOR = "th, [role=columnheader]"
ROW_SELECTOR = "tr, [role=row]"
CELL_SELECTOR = "td, [role=cell], [role=gridcell]"

IDENTITY_RE = re.compile(r"/editais/(\d+)/(\d{4})/(\d+)")

# Ordered: the first needle contained in a label decides the field
LABEL_FIELDS: list[tuple[str, str]] = [
    ("local", "location"),
    ("orgao", "issuing_body"),
    ("unidade compradora", "buying_unit"),
    ("modalidade", "category"),
    ("amparo legal", "legal_basis"),
    ("tipo", "procurement_type"),
    ("data de divulgacao", "published_at"),
    ("situacao", "status"),
    ("data de inicio", "proposals_open_at"),
    ("data fim", "proposals_close_at"),
]
MAX_LABEL_LENGTH = 60

OBJECT_KEYWORDS = ("CONTRATACAO", "AQUISICAO", "SERVICOS", "FORNECIMENTO", "CREDENCIAMENTO")
OBJECT_MIN_LENGTH = 100

ESTIMATED_ANCHOR = "VALOR TOTAL ESTIMADO DA COMPRA"
AWARDED_ANCHOR = "VALOR TOTAL HOMOLOGADO"
BUDGET_KEYWORDS = ("ORCAMENTO", "RECURSOS", "FONTE")
MAX_BUDGET_LENGTH = 300

ITEM_KEYWORDS = OBJECT_KEYWORDS + ("REFEICAO", "ALMOCO", "JANTAR", "MATERIAL", "EQUIPAMENTO")
ITEM_MIN_LENGTH = 50
# Portal chrome that shows up in every tab
NAVIGATION_NOISE = ("portal nacional", "buscar no", "planos de", "tabelas de", "catalogo")

ATTACHMENT_HREF_HINTS = ("download", "arquivo", ".pdf", ".doc")

HISTORY_KEYWORDS = (
    "inclusao", "retificacao", "alteracao", "exclusao", "publicacao",
    "atualizacao", "cancelamento", "anulacao", "revogacao", "suspensao",
)
HISTORY_MIN_LENGTH = 20


# ---------------------------------------------------------------------------
# Parsed page
# ---------------------------------------------------------------------------

@dataclass
class Block:
    element: Tag
    text: str


class Document:
    """A rendered page, parsed once and queried by every recognizer."""

    def __init__(self, html: str, url: str = ""):
        self.url = url
        self.soup = BeautifulSoup(html or "", "html.parser")
        for tag in self.soup(["script", "style", "noscript"]):
            tag.decompose()
        self._blocks: list[Block] | None = None

    @property
    def blocks(self) -> list[Block]:
        """Every block-level element with its visible text, in document order."""
        if self._blocks is None:
            self._blocks = []
            for el in self.soup.select(BLOCK_SELECTOR):
                text = clean(el.get_text(" ", strip=True))
                if text:
                    self._blocks.append(Block(el, text))
        return self._blocks

    def innermost(self, predicate: Callable[[str], bool]) -> list[Block]:
        """Blocks matching *predicate* that have no matching block inside them."""
        matches = [b for b in self.blocks if predicate(b.text)]
        ids = {id(b.element) for b in matches}
        covered: set[int] = set()
        for b in matches:
            for parent in b.element.parents:
                if id(parent) in ids:
                    covered.add(id(parent))
        return [b for b in matches if id(b.element) not in covered]

    def text(self) -> str:
        return clean(self.soup.get_text(" ", strip=True))


def _upper(text: str) -> str:
    return strip_accents(text).upper()


def _has_any(text: str, keywords) -> bool:
    up = _upper(text)
    return any(k in up for k in keywords)


@dataclass
class Recognition:
    fields: dict = field(default_factory=dict)
    found: bool = False
    strategy: str | None = None


class FieldRecognizer(ABC):
    """Recovers one group of fields from a Document."""

    name = "base"

    @abstractmethod
    def recognize(self, doc: Document) -> Recognition:
        ...

    def __repr__(self):
        return f"<{self.__class__.__name__}>"


# ---------------------------------------------------------------------------
# Main page
# ---------------------------------------------------------------------------

def identity_from_url(url: str) -> tuple[str, int, int] | None:
    """Return (org_tax_id, year, sequence) from a notice URL, or None."""
    m = IDENTITY_RE.search(url or "")
    if not m:
        return None
    return m.group(1), int(m.group(2)), int(m.group(3))


class IdentityRecognizer(FieldRecognizer):
    name = "identity"

    def recognize(self, doc: Document) -> Recognition:
        ident = identity_from_url(doc.url)
        if ident is None:
            return Recognition()
        tax_id, year, sequence = ident
        return Recognition(
            fields={"org_tax_id": tax_id, "year": year, "sequence": sequence},
            found=True,
            strategy="url",
        )


class TitleRecognizer(FieldRecognizer):
    name = "title"

    def recognize(self, doc: Document) -> Recognition:
        for el in doc.soup.select("h1, h2, [class*=titulo]"):
            text = clean(el.get_text(" ", strip=True))
            if text:
                return Recognition(fields={"title": text}, found=True, strategy="heading")
        return Recognition()


class LabelValueRecognizer(FieldRecognizer):
    """Maps "label: value" text to fields by label substring.

    When several blocks yield the same field the shortest one wins, which
    picks the block holding just that pair over the containers around it.
    A label block ending in ':' with no value takes its next sibling's text.
    """

    name = "label_value"

    def recognize(self, doc: Document) -> Recognition:
        best: dict[str, tuple[int, str]] = {}
        for block in doc.blocks:
            if ":" not in block.text:
                continue
            label, _, value = block.text.partition(":")
            label = normalize(label)
            if not label or len(label) > MAX_LABEL_LENGTH:
                continue
            value = value.strip()
            if not value:
                sibling = block.element.find_next_sibling()
                if sibling is None:
                    continue
                value = clean(sibling.get_text(" ", strip=True))
                if not value:
                    continue
            field_name = self._field_for(label)
            if field_name is None:
                continue
            size = len(label) + len(value)
            if field_name not in best or size < best[field_name][0]:
                best[field_name] = (size, value)

        fields = {name: value for name, (_, value) in best.items()}
        return Recognition(fields=fields, found=bool(fields), strategy="label")

    @staticmethod
    def _field_for(label: str) -> str | None:
        for needle, field_name in LABEL_FIELDS:
            if needle in label:
                return field_name
        return None


class ObjectDescriptionRecognizer(FieldRecognizer):
    name = "object_description"

    def recognize(self, doc: Document) -> Recognition:
        blocks = doc.innermost(
            lambda t: len(t) > OBJECT_MIN_LENGTH and _has_any(t, OBJECT_KEYWORDS)
        )
        if not blocks:
            return Recognition()
        longest = max(blocks, key=lambda b: len(b.text))
        text = longest.text
        # Drop a leading "Objeto:" style label
        label, sep, rest = text.partition(":")
        if sep and len(label) <= MAX_LABEL_LENGTH and "objeto" in normalize(label):
            text = rest.strip()
        return Recognition(fields={"object_description": text}, found=True, strategy="keywords")


def _money_near(block: Block) -> str | None:
    """Currency value in the anchor block itself or the element right after it."""
    found = find_money(block.text)
    if found:
        return found[0]
    nxt = block.element.find_next_sibling()
    if nxt is None and block.element.parent is not None:
        nxt = block.element.parent.find_next_sibling()
    if nxt is not None:
        found = find_money(nxt.get_text(" ", strip=True))
        if found:
            return found[0]
    return None


class FinancialRecognizer(FieldRecognizer):
    """Estimated value, awarded value and budget source.

    The estimate is read next to its anchor phrase. Without the anchor the
    largest currency amount on the page above the noise threshold is used.
    """

    name = "financial"

    def __init__(self, noise_threshold: float = config.MONEY_NOISE_THRESHOLD):
        self.noise_threshold = noise_threshold

    def recognize(self, doc: Document) -> Recognition:
        fields: dict = {}
        strategy = None

        estimated = self._anchored(doc, ESTIMATED_ANCHOR)
        if estimated is not None:
            fields["estimated_value"] = estimated
            strategy = "anchor"
        else:
            amounts = [parse_money(m) for m in find_money(doc.text())]
            amounts = [a for a in amounts if a is not None and a > self.noise_threshold]
            if amounts:
                fields["estimated_value"] = max(amounts)
                strategy = "max_amount"

        awarded = self._anchored(doc, AWARDED_ANCHOR)
        if awarded is not None:
            fields["awarded_value"] = awarded

        budget = self._budget_source(doc)
        if budget:
            fields["budget_source"] = budget

        return Recognition(fields=fields, found=bool(fields), strategy=strategy)

    @staticmethod
    def _budget_source(doc: Document) -> str | None:
        """Shortest budget-keyword block; the part after its label when it has one."""
        matches = [
            b for b in doc.blocks
            if len(b.text) <= MAX_BUDGET_LENGTH and _has_any(b.text, BUDGET_KEYWORDS)
        ]
        for block in sorted(matches, key=lambda b: len(b.text)):
            _, sep, rest = block.text.partition(":")
            if sep and rest.strip():
                return rest.strip()
        return min(matches, key=lambda b: len(b.text)).text if matches else None

    @staticmethod
    def _anchored(doc: Document, anchor: str) -> float | None:
        for block in doc.innermost(lambda t: anchor in _upper(t)):
            raw = _money_near(block)
            if raw:
                value = parse_money(raw)
                if value is not None:
                    return value
        return None


MAIN_RECOGNIZERS: list[FieldRecognizer] = [
    IdentityRecognizer(),
    TitleRecognizer(),
    LabelValueRecognizer(),
    ObjectDescriptionRecognizer(),
    FinancialRecognizer(),
]


def recognize_all(doc: Document, recognizers: list[FieldRecognizer] | None = None) -> tuple[dict, list[str]]:
    """Run *recognizers* in order and merge their fields.

    Returns (fields, names of recognizers that found nothing).
    """
    merged: dict = {}
    missed: list[str] = []
    for recognizer in recognizers or MAIN_RECOGNIZERS:
        try:
            result = recognizer.recognize(doc)
        except Exception as e:
            logger.warning("[Detail] %s recognizer failed on %s: %s", recognizer.name, doc.url, e)
            missed.append(recognizer.name)
            continue
        if not result.found:
            missed.append(recognizer.name)
            continue
        for key, value in result.fields.items():
            merged.setdefault(key, value)
    return merged, missed


# ---------------------------------------------------------------------------
# Tab sub-collections
# ---------------------------------------------------------------------------

@dataclass
class Table:
    headers: list[str]
    rows: list[list[Tag]]

    def column(self, *needles: str) -> int | None:
        for idx, header in enumerate(self.headers):
            if any(n in header for n in needles):
                return idx
        return None


def find_tables(doc: Document) -> list[Table]:
    tables = []
    for container in doc.soup.select(TABLE_SELECTOR):
        headers = [normalize(c.get_text(" ", strip=True)) for c in container.select(HEADER_SELECTOR)]
        if not headers:
            continue
        rows = []
        for row in container.select(ROW_SELECTOR):
            cells = row.select(CELL_SELECTOR)
            if cells:
                rows.append(cells)
        tables.append(Table(headers=headers, rows=rows))
    return tables


def _cell(cells: list[Tag], idx: int | None) -> str | None:
    if idx is None or idx >= len(cells):
        return None
    text = clean(cells[idx].get_text(" ", strip=True))
    return text or None


def _int(text: str | None) -> int | None:
    if not text:
        return None
    m = re.search(r"\d+", text)
    return int(m.group(0)) if m else None


NUMBER_HEADERS = {"item", "numero", "no", "n", "n°", "#"}


def _number_column(table: Table) -> int | None:
    for idx, header in enumerate(table.headers):
        if header in NUMBER_HEADERS:
            return idx
    return None


class ItemsRecognizer(FieldRecognizer):
    """Line items from the Itens tab.

    Primary: a table whose headers include a description column. Fallback:
    keyword-qualified text blocks, with quantity and currency tokens that
    follow a description attached to the most recent one.
    """

    name = "items"

    def __init__(self, exclude_text: str | None = None):
        self.exclude_text = exclude_text

    def recognize(self, doc: Document) -> Recognition:
        items = self._from_tables(doc)
        if items is not None:
            return Recognition(fields={"items": items}, found=bool(items), strategy="table")
        items = self._from_text(doc)
        return Recognition(fields={"items": items}, found=bool(items), strategy="text")

    def _from_tables(self, doc: Document) -> list[RecordItem] | None:
        for table in find_tables(doc):
            desc_col = table.column("descricao")
            if desc_col is None:
                continue
            num_col = _number_column(table)
            qty_col = table.column("quantidade", "qtd", "qtde")
            unit_col = table.column("unitario")
            total_col = table.column("total")
            items = []
            for cells in table.rows:
                description = _cell(cells, desc_col)
                if not description:
                    continue
                items.append(RecordItem(
                    sequence_number=_int(_cell(cells, num_col)) or len(items) + 1,
                    description=description,
                    quantity=_cell(cells, qty_col),
                    unit_value=_cell(cells, unit_col),
                    total_value=_cell(cells, total_col),
                ))
            return items
        return None

    def _is_description(self, text: str) -> bool:
        if len(text) <= ITEM_MIN_LENGTH or not _has_any(text, ITEM_KEYWORDS):
            return False
        if self.exclude_text and clean(self.exclude_text) in text:
            return False
        low = normalize(text)
        return not any(noise in low for noise in NAVIGATION_NOISE)

    def _from_text(self, doc: Document) -> list[RecordItem]:
        def interesting(text: str) -> bool:
            return self._is_description(text) or bool(QUANTITY_RE.search(text)) or bool(find_money(text))

        drafts: list[dict] = []
        for block in doc.innermost(interesting):
            if self._is_description(block.text):
                drafts.append({"description": block.text, "quantity": None, "money": []})
            elif not drafts:
                continue
            # Tokens attach to the most recently seen description
            current = drafts[-1]
            qty = QUANTITY_RE.search(block.text)
            if qty and current["quantity"] is None:
                current["quantity"] = qty.group(1)
            current["money"].extend(find_money(block.text))

        items = []
        for idx, draft in enumerate(drafts, start=1):
            money = draft["money"]
            items.append(RecordItem(
                sequence_number=idx,
                description=draft["description"],
                quantity=draft["quantity"],
                unit_value=money[0] if money else None,
                total_value=money[1] if len(money) > 1 else None,
            ))
        return items


class AttachmentsRecognizer(FieldRecognizer):
    name = "attachments"

    def recognize(self, doc: Document) -> Recognition:
        attachments = self._from_tables(doc)
        strategy = "table"
        if attachments is None:
            attachments = self._from_links(doc.soup.select("a[href]"), doc.url)
            strategy = "links"
        return Recognition(fields={"attachments": attachments}, found=bool(attachments), strategy=strategy)

    def _from_tables(self, doc: Document) -> list[Attachment] | None:
        for table in find_tables(doc):
            name_col = table.column("nome", "arquivo", "documento", "titulo")
            if name_col is None:
                continue
            attachments = []
            seen: set[str] = set()
            for cells in table.rows:
                link = next((c.select_one("a[href]") for c in cells if c.select_one("a[href]")), None)
                if link is None:
                    continue
                url = urljoin(doc.url, link["href"])
                if url in seen:
                    continue
                seen.add(url)
                name = _cell(cells, name_col) or clean(link.get_text(" ", strip=True)) \
                    or f"Arquivo {len(attachments) + 1}"
                attachments.append(Attachment(
                    sequence_number=len(attachments) + 1,
                    name=name,
                    url=url,
                    file_extension=file_extension(name) or file_extension(url),
                ))
            return attachments
        return None

    @staticmethod
    def _from_links(links: list[Tag], base_url: str) -> list[Attachment]:
        attachments = []
        seen: set[str] = set()
        for link in links:
            href = link.get("href", "")
            if not any(hint in href.lower() for hint in ATTACHMENT_HREF_HINTS):
                continue
            url = urljoin(base_url, href)
            if len(url) <= 10 or url in seen:
                continue
            seen.add(url)
            name = clean(link.get_text(" ", strip=True)) or link.get("title") \
                or f"Arquivo {len(attachments) + 1}"
            attachments.append(Attachment(
                sequence_number=len(attachments) + 1,
                name=name,
                url=url,
                file_extension=file_extension(url),
            ))
        return attachments


class HistoryRecognizer(FieldRecognizer):
    name = "history"

    def recognize(self, doc: Document) -> Recognition:
        events = self._from_tables(doc)
        strategy = "table"
        if events is None:
            events = self._from_text(doc)
            strategy = "text"
        return Recognition(fields={"history_events": events}, found=bool(events), strategy=strategy)

    @staticmethod
    def _from_tables(doc: Document) -> list[HistoryEvent] | None:
        for table in find_tables(doc):
            event_col = table.column("evento", "ocorrencia", "acao", "historico")
            if event_col is None:
                continue
            date_col = table.column("data")
            events = []
            for cells in table.rows:
                text = _cell(cells, event_col)
                if not text:
                    continue
                events.append(HistoryEvent(
                    sequence_number=len(events) + 1,
                    event_text=text,
                    occurred_at=parse_datetime(_cell(cells, date_col)),
                ))
            return events
        return None

    @staticmethod
    def _from_text(doc: Document) -> list[HistoryEvent]:
        def is_event(text: str) -> bool:
            if len(text) <= HISTORY_MIN_LENGTH or parse_datetime(text) is None:
                return False
            low = normalize(text)
            return any(k in low for k in HISTORY_KEYWORDS)

        return [
            HistoryEvent(sequence_number=idx, event_text=b.text, occurred_at=parse_datetime(b.text))
            for idx, b in enumerate(doc.innermost(is_event), start=1)
        ]
