"""Runtime settings read from the environment (and an optional .env file)."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# Remote source
PNCP_CONSULTA_URL = os.getenv("PNCP_CONSULTA_URL", "https://pncp.gov.br/api/consulta/v1")
PNCP_INTEGRACAO_URL = os.getenv("PNCP_INTEGRACAO_URL", "https://pncp.gov.br/api/pncp/v1")
PNCP_DETAIL_URL_TEMPLATE = os.getenv(
    "PNCP_DETAIL_URL_TEMPLATE",
    "https://pncp.gov.br/app/editais/{org_tax_id}/{year}/{sequence}",
)
PNCP_HTTP_TIMEOUT = float(os.getenv("PNCP_HTTP_TIMEOUT", "60"))
PNCP_PAGE_SIZE = int(os.getenv("PNCP_PAGE_SIZE", "50"))
PNCP_PAGE_DELAY = float(os.getenv("PNCP_PAGE_DELAY", "0.3"))
PNCP_CATEGORY_DELAY = float(os.getenv("PNCP_CATEGORY_DELAY", "0.5"))
PNCP_DISCOVERY_LIMIT = int(os.getenv("PNCP_DISCOVERY_LIMIT", "5600"))

# Retry policy shared by the listing client and the API sub-fetches
PNCP_RETRY_MAX_ATTEMPTS = int(os.getenv("PNCP_RETRY_MAX_ATTEMPTS", "3"))
PNCP_RETRY_BASE_DELAY = float(os.getenv("PNCP_RETRY_BASE_DELAY", "0.5"))
PNCP_RETRY_RATE_LIMIT_DELAY = float(os.getenv("PNCP_RETRY_RATE_LIMIT_DELAY", "2.0"))

# Headless rendering
RENDER_TIMEOUT = float(os.getenv("RENDER_TIMEOUT", "120"))
RENDER_SETTLE_SECONDS = float(os.getenv("RENDER_SETTLE_SECONDS", "3"))
RENDER_TAB_SETTLE_SECONDS = float(os.getenv("RENDER_TAB_SETTLE_SECONDS", "2"))
BROWSER_IDLE_TIMEOUT = float(os.getenv("BROWSER_IDLE_TIMEOUT", "300"))
BROWSER_HEADLESS = _bool("BROWSER_HEADLESS", True)
BROWSER_USER_AGENT = os.getenv(
    "BROWSER_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
)

# Extraction
EXTRACTION_METHOD = os.getenv("EXTRACTION_METHOD", "render")
MONEY_NOISE_THRESHOLD = float(os.getenv("MONEY_NOISE_THRESHOLD", "1000"))

# Scheduling (seeds for the persisted scheduler_config row)
SOURCE_TIMEZONE = os.getenv("SOURCE_TIMEZONE", "America/Sao_Paulo")
SCHEDULER_RUN_AT = os.getenv("SCHEDULER_RUN_AT", "08:00")
SCHEDULER_ENABLED = _bool("SCHEDULER_ENABLED", True)
SCHEDULER_LOOKBACK_DAYS = int(os.getenv("SCHEDULER_LOOKBACK_DAYS", "1"))
SCHEDULER_PER_RUN_LIMIT = int(os.getenv("SCHEDULER_PER_RUN_LIMIT", "100"))
BROWSER_REAPER_INTERVAL = float(os.getenv("BROWSER_REAPER_INTERVAL", "60"))

# Storage and logging
DB_PATH = Path(os.getenv("DB_PATH", str(Path(__file__).parent / "pncp.db")))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
