"""
USD -> display currency conversion using the ECB daily reference rates.

The ECB publishes EUR-based rates, so USD->X is rate(X) / rate(USD). Rates
are cached per currency for 24 hours (JSON file by default, or the SQLite
database through the same get_rate/put_rate interface).
"""

import json
import os
import re
import tempfile
import urllib.request
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from ccost import USER_AGENT
from ccost.config import ccost_config_dir
from ccost.storage import StorageError

ECB_DAILY_URL = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"
RATE_TTL = timedelta(hours=24)

SYMBOLS = {"USD": "$", "EUR": "€", "GBP": "£", "JPY": "¥", "CNY": "¥"}


class CurrencyError(Exception):
    """An exchange rate could not be obtained."""


class RateCache(Protocol):
    def get_rate(self, base: str, target: str, max_age: Optional[timedelta] = None) -> Optional[float]: ...

    def put_rate(self, base: str, target: str, rate: float) -> None: ...


def currency_cache_path() -> str:
    return os.path.join(ccost_config_dir(), "currency_cache.json")


class JsonRateCache:
    """{"rates": {"EUR": {"rate_from_usd": 0.92, "timestamp": "..."}}} on disk."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or currency_cache_path()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {"rates": {}}
        if not isinstance(data, dict) or not isinstance(data.get("rates"), dict):
            return {"rates": {}}
        return data

    def get_rate(self, base: str, target: str, max_age: Optional[timedelta] = None) -> Optional[float]:
        if base != "USD":
            return None
        entry = self._load()["rates"].get(target)
        if not isinstance(entry, dict):
            return None
        try:
            rate = float(entry["rate_from_usd"])
            fetched = datetime.fromisoformat(str(entry["timestamp"]).replace("Z", "+00:00"))
        except (KeyError, TypeError, ValueError):
            return None
        if fetched.tzinfo is None:
            fetched = fetched.replace(tzinfo=timezone.utc)
        if max_age is not None and datetime.now(timezone.utc) - fetched >= max_age:
            return None
        return rate

    def put_rate(self, base: str, target: str, rate: float) -> None:
        if base != "USD":
            return
        data = self._load()
        data["rates"][target] = {"rate_from_usd": rate, "timestamp": datetime.now(timezone.utc).isoformat()}
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".currency_cache.", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)


def fetch_ecb_xml(url: str = ECB_DAILY_URL, timeout: float = 30.0) -> str:
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        return resp.read().decode("utf-8")


def parse_ecb_rate(xml_text: str, currency: str) -> float:
    """EUR -> currency rate from the ECB daily XML."""
    if currency == "EUR":
        return 1.0
    m = re.search(rf"currency='{re.escape(currency)}' rate='([0-9.]+)'", xml_text)
    if not m:
        raise CurrencyError(f"Currency {currency} not found in ECB data")
    return float(m.group(1))


class CurrencyConverter:
    def __init__(self, cache: Optional[RateCache] = None, fetcher: Callable[[], str] = fetch_ecb_xml):
        self.cache = cache if cache is not None else JsonRateCache()
        self.fetcher = fetcher
        self._xml: Optional[str] = None

    def _ecb(self) -> str:
        if self._xml is None:
            try:
                self._xml = self.fetcher()
            except (OSError, ValueError) as e:
                raise CurrencyError(f"Failed to fetch ECB exchange rates: {e}") from e
        return self._xml

    def rate(self, target: str) -> float:
        """Multiplicative USD -> target factor."""
        target = target.upper()
        if target == "USD":
            return 1.0
        cached = self.cache.get_rate("USD", target, RATE_TTL)
        if cached is not None:
            return cached
        xml_text = self._ecb()
        value = parse_ecb_rate(xml_text, target) / parse_ecb_rate(xml_text, "USD")
        try:
            self.cache.put_rate("USD", target, value)
        except (OSError, StorageError):
            # uncached rate is still valid
            pass
        return value

    def convert_from_usd(self, amount: float, target: str) -> float:
        return amount * self.rate(target)


def format_currency(amount: float, currency: str, decimal_places: int = 2) -> str:
    formatted = f"{amount:.{decimal_places}f}"
    if currency in ("USD", "GBP"):
        return f"{SYMBOLS[currency]}{formatted}"
    if currency in ("EUR", "JPY", "CNY"):
        return f"{formatted} {SYMBOLS[currency]}"
    return f"{formatted} {currency}"
