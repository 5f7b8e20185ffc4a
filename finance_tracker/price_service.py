"""Market data helpers used to mark investment assets to market."""
from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

import requests

from .config import AppConfig
from .models import Quote

logger = logging.getLogger(__name__)


class PriceService:
    """Fetch live quotes from external providers."""

    def __init__(self, config: AppConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Equity quotes (Alpha Vantage)
    # ------------------------------------------------------------------
    def fetch_equity_quote(self, symbol: str) -> Optional[Quote]:
        """Return the latest stock or REIT price using Alpha Vantage.

        The function gracefully degrades to ``None`` when the API key is not
        configured or when the external service does not return the expected
        payload structure.
        """

        if not self._config.alpha_vantage_key:
            return None

        params = {
            "function": "GLOBAL_QUOTE",
            "symbol": symbol,
            "apikey": self._config.alpha_vantage_key,
        }
        response = self._session.get(self._config.alpha_vantage_endpoint, params=params, timeout=30)
        response.raise_for_status()
        payload = response.json()
        quote_section = payload.get("Global Quote")
        if not quote_section:
            logger.warning("Alpha Vantage returned no quote for %s", symbol)
            return None

        price = _parse_price(quote_section.get("05. price"))
        if price is None:
            return None
        currency = quote_section.get("08. currency", "USD")
        return Quote(
            symbol=symbol.upper(),
            valuation_date=date.today(),
            price=price,
            currency=currency.upper(),
            source="alpha_vantage",
        )

    # ------------------------------------------------------------------
    # Crypto quotes (Coinranking)
    # ------------------------------------------------------------------
    def fetch_crypto_quote(self, symbol: str) -> Optional[Quote]:
        """Fetch the current price for a crypto asset using Coinranking.

        Coinranking requires a RapidAPI key and a UUID per asset, so
        ``symbol`` is expected to be the coin UUID stored as the asset ticker.
        """

        if not self._config.coinranking_key:
            return None

        url = f"https://{self._config.coinranking_host}/coin/{symbol}"
        response = self._session.get(
            url,
            headers={
                "X-RapidAPI-Key": self._config.coinranking_key,
                "X-RapidAPI-Host": self._config.coinranking_host,
            },
            params={"timePeriod": "24h"},
            timeout=30,
        )
        response.raise_for_status()
        payload = response.json()
        coin = payload.get("data", {}).get("coin")
        if not coin:
            logger.warning("Coinranking returned no coin for %s", symbol)
            return None
        price = _parse_price(coin.get("price"))
        if price is None:
            return None
        return Quote(
            symbol=coin.get("symbol", symbol).upper(),
            valuation_date=date.today(),
            price=price,
            currency="USD",
            source="coinranking",
        )


def _parse_price(raw: object) -> Optional[Decimal]:
    if raw is None:
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return None
