import json

import pytest

from ccost.currency import CurrencyConverter, CurrencyError, JsonRateCache, format_currency, parse_ecb_rate
from ccost.storage import Database

ECB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<gesmes:Envelope>
  <Cube>
    <Cube time='2025-08-25'>
      <Cube currency='USD' rate='1.1000'/>
      <Cube currency='JPY' rate='165.00'/>
      <Cube currency='GBP' rate='0.8800'/>
    </Cube>
  </Cube>
</gesmes:Envelope>
"""


class CountingFetcher:
    def __init__(self, text=ECB_XML, error=None):
        self.text = text
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.text


def test_parse_ecb_rate():
    assert parse_ecb_rate(ECB_XML, "USD") == 1.1
    assert parse_ecb_rate(ECB_XML, "EUR") == 1.0
    with pytest.raises(CurrencyError):
        parse_ecb_rate(ECB_XML, "CHF")


def test_usd_needs_no_fetch(tmp_path):
    fetch = CountingFetcher()
    conv = CurrencyConverter(JsonRateCache(str(tmp_path / "c.json")), fetch)
    assert conv.rate("usd") == 1.0
    assert fetch.calls == 0


def test_cross_rates_are_cached(tmp_path):
    path = tmp_path / "c.json"
    fetch = CountingFetcher()
    conv = CurrencyConverter(JsonRateCache(str(path)), fetch)
    assert abs(conv.rate("EUR") - 1 / 1.1) < 1e-9
    assert abs(conv.convert_from_usd(11.0, "GBP") - 8.8) < 1e-9
    assert fetch.calls == 1
    again = CurrencyConverter(JsonRateCache(str(path)), CountingFetcher(error=OSError("offline")))
    assert abs(again.rate("EUR") - 1 / 1.1) < 1e-9
    assert "EUR" in json.loads(path.read_text())["rates"]


def test_expired_cache_entry_refetches(tmp_path):
    path = tmp_path / "c.json"
    path.write_text(json.dumps({"rates": {"EUR": {"rate_from_usd": 0.5, "timestamp": "2000-01-01T00:00:00Z"}}}))
    conv = CurrencyConverter(JsonRateCache(str(path)), CountingFetcher())
    assert abs(conv.rate("EUR") - 1 / 1.1) < 1e-9


def test_fetch_failure_is_currency_error(tmp_path):
    conv = CurrencyConverter(JsonRateCache(str(tmp_path / "c.json")), CountingFetcher(error=OSError("offline")))
    with pytest.raises(CurrencyError):
        conv.rate("EUR")


def test_database_as_rate_cache():
    with Database(":memory:") as db:
        conv = CurrencyConverter(db, CountingFetcher())
        conv.rate("JPY")
        assert abs(db.get_rate("USD", "JPY") - 150.0) < 1e-9


def test_corrupt_cache_file_is_ignored(tmp_path):
    path = tmp_path / "c.json"
    path.write_text("{not json")
    assert JsonRateCache(str(path)).get_rate("USD", "EUR") is None


def test_format_currency():
    assert format_currency(1.234, "USD") == "$1.23"
    assert format_currency(1.5, "GBP") == "£1.50"
    assert format_currency(1.5, "EUR") == "1.50 €"
    assert format_currency(100, "JPY", 0) == "100 ¥"
    assert format_currency(2, "CAD", 3) == "2.000 CAD"
