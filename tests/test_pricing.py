import json
from datetime import datetime, timedelta, timezone

import pytest

from ccost.pricing import (
    AUTHORITATIVE,
    FALLBACK_DERIVED,
    FALLBACK_PRICE,
    STATIC_BUILTIN,
    STATIC_PRICES,
    TIER_HIGH,
    TIER_LOW,
    TIER_MID,
    TIER_UNKNOWN,
    PriceVector,
    PricingCatalog,
    PricingUnavailableError,
    load_disk_cache,
    model_tier,
    normalize_document,
    save_disk_cache,
)

SONNET = "claude-sonnet-4-20250514"
OPUS = "claude-opus-4-20250514"

DOCUMENT = {
    "sample_spec": {"input_cost_per_token": 99},
    "_comment": "ignored",
    "bad-entry": "not a dict",
    "weird-entry": {"input_cost_per_token": "lots"},
    SONNET: {
        "input_cost_per_token": 3e-06,
        "output_cost_per_token": 1.5e-05,
        "cache_creation_input_token_cost": 3.75e-06,
        "cache_read_input_token_cost": 3e-07,
    },
    "claude-new-model": {"input_cost_per_token": 2e-06, "output_cost_per_token": 1e-05},
    "embedding-only": {"max_tokens": 8192},
}


class Fetcher:
    def __init__(self, doc=DOCUMENT, error=None):
        self.doc = doc
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.doc


def close(a, b):
    return abs(a - b) < 1e-9


def test_price_vector_cost():
    vec = PriceVector(3.0, 15.0, 3.75, 0.3)
    assert close(vec.cost(1_000_000, 1_000_000, 1_000_000, 1_000_000), 22.05)
    assert vec.cost(0, 0) == 0.0


def test_static_table_and_fallback():
    catalog = PricingCatalog(source="static")
    assert catalog.price_vector(SONNET) == STATIC_PRICES[SONNET]
    assert catalog.price_vector("gpt-something") == FALLBACK_PRICE
    assert catalog.price_vector(None) == FALLBACK_PRICE
    # unknown models price every token class exactly like Sonnet
    assert FALLBACK_PRICE == STATIC_PRICES[SONNET]
    unknown, _ = catalog.cost("gpt-something", 1000, 500, 2000, 4000)
    sonnet, _ = catalog.cost(SONNET, 1000, 500, 2000, 4000)
    assert close(unknown, sonnet)
    cost, provenance = catalog.cost(SONNET, 1000, 500)
    assert close(cost, 0.0105)
    assert provenance == STATIC_BUILTIN


def test_opus_costs_more_than_sonnet_for_same_tokens():
    catalog = PricingCatalog(source="static")
    assert catalog.cost(OPUS, 1000, 1000)[0] > catalog.cost(SONNET, 1000, 1000)[0]


def test_model_tier():
    assert model_tier(OPUS) == TIER_HIGH
    assert model_tier("Claude-3-OPUS") == TIER_HIGH
    assert model_tier(SONNET) == TIER_MID
    assert model_tier("claude-3-5-haiku") == TIER_LOW
    assert model_tier("mystery") == TIER_UNKNOWN
    assert model_tier(None) == TIER_UNKNOWN


def test_normalize_document_skips_junk():
    models = normalize_document(DOCUMENT)
    assert set(models) == {SONNET, "claude-new-model", "embedding-only"}
    assert normalize_document(["not", "a", "dict"]) == {}


def test_live_entries_and_derived_cache_rates():
    fetch = Fetcher()
    catalog = PricingCatalog(source="auto", fetcher=fetch)
    vec = catalog.price_vector(SONNET)
    assert vec.provenance == AUTHORITATIVE
    assert close(vec.cache_creation, 3.75)
    derived = catalog.price_vector("claude-new-model")
    assert derived.provenance == FALLBACK_DERIVED
    assert close(derived.cache_creation, 0.5)
    assert close(derived.cache_read, 0.2)
    # no rates at all falls through to the static layers
    assert catalog.price_vector("embedding-only") == FALLBACK_PRICE
    assert catalog.price_vector(OPUS) == STATIC_PRICES[OPUS]
    assert fetch.calls == 1
    assert catalog.document_origin == "network"


def test_fetch_attempted_once_per_run():
    fetch = Fetcher(error=OSError("offline"))
    catalog = PricingCatalog(source="auto", fetcher=fetch)
    assert catalog.price_vector(SONNET) == STATIC_PRICES[SONNET]
    catalog.price_vector(OPUS)
    catalog.price_vector("x")
    assert fetch.calls == 1


def test_overrides_win_over_every_layer():
    catalog = PricingCatalog(source="auto", fetcher=Fetcher(), overrides={SONNET: (1.0, 2.0)})
    vec = catalog.price_vector(SONNET)
    assert (vec.input, vec.output) == (1.0, 2.0)
    assert close(vec.cache_creation, 0.25)
    assert close(vec.cache_read, 0.1)
    assert vec.provenance == STATIC_BUILTIN


def test_disk_cache_used_before_network(tmp_path):
    path = str(tmp_path / "litellm_cache.json")
    save_disk_cache(path, DOCUMENT)
    fetch = Fetcher()
    catalog = PricingCatalog(source="auto", cache_path=path, fetcher=fetch)
    assert catalog.price_vector(SONNET).provenance == AUTHORITATIVE
    assert fetch.calls == 0
    assert catalog.document_origin == "disk-cache"


def test_network_result_written_to_disk(tmp_path):
    path = tmp_path / "litellm_cache.json"
    PricingCatalog(source="auto", cache_path=str(path), fetcher=Fetcher()).models()
    entry = json.loads(path.read_text())
    assert SONNET in entry["data"]
    assert "sample_spec" not in entry["data"]
    assert entry["timestamp"].endswith("Z")


def test_disk_cache_expiry(tmp_path):
    path = str(tmp_path / "c.json")
    then = datetime(2025, 8, 1, tzinfo=timezone.utc)
    save_disk_cache(path, {"m": {}}, now=then)
    assert load_disk_cache(path, now=then + timedelta(hours=23)) == {"m": {}}
    assert load_disk_cache(path, now=then + timedelta(hours=24)) is None
    assert load_disk_cache(path, max_age_hours=None, now=then + timedelta(days=30)) == {"m": {}}
    assert load_disk_cache(str(tmp_path / "missing.json")) is None


def test_stale_cache_when_network_fails(tmp_path):
    path = str(tmp_path / "c.json")
    save_disk_cache(path, DOCUMENT, now=datetime(2020, 1, 1, tzinfo=timezone.utc))
    warnings = []
    catalog = PricingCatalog(source="live", cache_path=path, fetcher=Fetcher(error=OSError("down")), warn=warnings.append)
    assert catalog.price_vector(SONNET).provenance == AUTHORITATIVE
    assert catalog.document_origin == "stale-disk-cache"
    assert any("stale" in w for w in warnings)


def test_live_without_fallback_raises():
    catalog = PricingCatalog(source="live", offline_fallback=False, fetcher=Fetcher(error=OSError("down")), warn=lambda m: None)
    with pytest.raises(PricingUnavailableError):
        catalog.price_vector(SONNET)


def test_live_with_fallback_warns_and_uses_static():
    warnings = []
    catalog = PricingCatalog(source="live", fetcher=Fetcher(error=ValueError("bad json")), warn=warnings.append)
    assert catalog.price_vector(SONNET) == STATIC_PRICES[SONNET]
    assert warnings


def test_static_source_never_fetches():
    fetch = Fetcher()
    PricingCatalog(source="static", fetcher=fetch).price_vector(SONNET)
    assert fetch.calls == 0


def test_memory_ttl_and_refresh():
    now = [1000.0]
    fetch = Fetcher()
    catalog = PricingCatalog(source="auto", fetcher=fetch, memory_ttl_seconds=60, clock=lambda: now[0])
    assert catalog.memory_ttl_seconds == 3600
    catalog.models()
    now[0] += 7200
    catalog.models()
    assert fetch.calls == 1
    catalog.refresh()
    assert fetch.calls == 2


def test_unknown_source_rejected():
    with pytest.raises(ValueError):
        PricingCatalog(source="guess")


def test_list_models():
    catalog = PricingCatalog(source="static", overrides={"zz-custom": (1.0, 2.0)})
    rows = catalog.list_models()
    assert rows[0][0] == "zz-custom"
    assert rows[0][2] == "override"
    assert [r[0] for r in rows[1:]] == sorted(STATIC_PRICES)
    assert rows[1][1].to_dict()["provenance"] == STATIC_BUILTIN
