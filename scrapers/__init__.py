import config

from .discovery import CATEGORIES, DiscoveryFetcher, compute_window
from .detail import DetailExtractor, candidate_from_url
from .api_detail import ApiDetailExtractor
from .pncp_client import PncpClient

# EXTRACTION_METHOD -> extractor class; the rendered page is the default
ALL_EXTRACTORS = {
    DetailExtractor.name: DetailExtractor,
    ApiDetailExtractor.name: ApiDetailExtractor,
}


def make_extractor(method: str | None = None):
    method = (method or config.EXTRACTION_METHOD).lower()
    try:
        extractor_cls = ALL_EXTRACTORS[method]
    except KeyError:
        raise ValueError(
            f"Unknown extraction method {method!r}, expected one of {sorted(ALL_EXTRACTORS)}"
        ) from None
    return extractor_cls()
