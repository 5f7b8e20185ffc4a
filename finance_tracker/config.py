"""Application configuration utilities for the finance_tracker backend.

This module centralises environment-driven configuration so the rest of the
code base does not need to read environment variables directly.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load any variables defined in a local .env file. The call is idempotent and
# inexpensive, so importing it at module import time keeps the API ergonomic.
load_dotenv()


@dataclass(frozen=True)
class AppConfig:
    """Strongly-typed container for runtime configuration.

    Attributes:
        project_root: Root directory of the project. Used to derive default
            paths so the app works out of the box after cloning the repo.
        database_file: Absolute path to the SQLite database file that should be
            created and owned by the current process.
        log_level: Name of the root logging level applied by ``main.py``.
        fixed_recurrence_months: Number of monthly rows a FIXED recurrence
            expands into.
        max_installments: Upper bound accepted for an INSTALLMENT count.
        grace_days: Last day past expiration that still reports OVERDUE
            instead of SUSPENDED.
        alpha_vantage_key: Optional API key for the Alpha Vantage service,
            used to mark stocks and REITs to market.
        coinranking_key: Optional API key for the Coinranking service, used to
            mark crypto assets to market.
        alpha_vantage_endpoint: Endpoint URL used when talking to Alpha
            Vantage. Defaults to the public REST API endpoint.
        coinranking_host: Host header required by the Coinranking RapidAPI
            gateway.
    """

    project_root: Path
    database_file: Path
    log_level: str = "INFO"
    fixed_recurrence_months: int = 12
    max_installments: int = 999
    grace_days: int = 3
    alpha_vantage_key: Optional[str] = None
    coinranking_key: Optional[str] = None
    alpha_vantage_endpoint: str = "https://www.alphavantage.co/query"
    coinranking_host: str = "coinranking1.p.rapidapi.com"


def load_config() -> AppConfig:
    """Create a new :class:`AppConfig` instance based on environment settings.

    Environment variables override the default values, allowing users to
    customise the runtime without touching the source code.  Malformed integer
    settings raise :class:`ValueError` here rather than at first use.
    """

    project_root = Path(__file__).resolve().parent.parent
    database_file = Path(
        getenv_with_default(
            "FINANCE_TRACKER_DB_FILE",
            project_root / "finance_tracker.db",
        )
    )

    # Ensure the directories exist so later code can safely create files.
    database_file.parent.mkdir(parents=True, exist_ok=True)

    return AppConfig(
        project_root=project_root,
        database_file=database_file,
        log_level=getenv_with_default("FINANCE_TRACKER_LOG_LEVEL", "INFO").upper(),
        fixed_recurrence_months=int(getenv_with_default("FINANCE_TRACKER_FIXED_RECURRENCE_MONTHS", "12")),
        max_installments=int(getenv_with_default("FINANCE_TRACKER_MAX_INSTALLMENTS", "999")),
        grace_days=int(getenv_with_default("FINANCE_TRACKER_GRACE_DAYS", "3")),
        alpha_vantage_key=getenv_with_default("ALPHAVANTAGE_API_KEY"),
        coinranking_key=getenv_with_default("COINRANKING_API_KEY"),
        alpha_vantage_endpoint=getenv_with_default(
            "ALPHAVANTAGE_ENDPOINT",
            "https://www.alphavantage.co/query",
        ),
        coinranking_host=getenv_with_default(
            "COINRANKING_HOST",
            "coinranking1.p.rapidapi.com",
        ),
    )


def getenv_with_default(name: str, default: Optional[Path | str] = None) -> Optional[str]:
    """Return the value of an environment variable or a sensible default.

    ``None`` values are propagated so callers can make explicit decisions about
    optional configuration values. Paths are converted to strings, keeping the
    return type uniform and easy to serialise.
    """

    from os import getenv

    value = getenv(name)
    if value is not None:
        return value
    if default is None:
        return None
    return str(default)
