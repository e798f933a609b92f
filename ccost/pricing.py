"""
Pricing catalog.

Resolves a model name to four per-million-token rates (input, output,
cache creation, cache read) plus a provenance tag. Layers, first match wins:

  0. user overrides (``ccost pricing set``)            -> static-builtin
  1. LiteLLM model_prices_and_context_window.json       -> authoritative
  2. same document with cache rates missing (25%/10%)   -> fallback-derived
  3. built-in static table                              -> static-builtin
  4. universal fallback (the built-in Sonnet row)       -> static-builtin

The LiteLLM document is fetched at most once per run, kept in memory for the
configured TTL and persisted to ~/.config/ccost/litellm_cache.json for 24h.
"""

import json
import os
import sys
import tempfile
import time
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError

from ccost import USER_AGENT
from ccost.config import ccost_config_dir

LITELLM_PRICING_URL = "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
FETCH_TIMEOUT_SECONDS = 30.0
MEMORY_TTL_SECONDS = 3600
DISK_TTL_HOURS = 24

AUTHORITATIVE = "authoritative"
FALLBACK_DERIVED = "fallback-derived"
STATIC_BUILTIN = "static-builtin"

CACHE_CREATION_RATIO = 0.25
CACHE_READ_RATIO = 0.10

PRICING_SOURCES = ("static", "live", "auto")

TIER_HIGH = "high"
TIER_MID = "mid"
TIER_LOW = "low"
TIER_UNKNOWN = "unknown"


class PricingUnavailableError(Exception):
    """Live pricing was required but no pricing document could be obtained."""


@dataclass(frozen=True)
class PriceVector:
    input: float
    output: float
    cache_creation: float
    cache_read: float
    provenance: str = STATIC_BUILTIN

    def cost(self, input_tokens: int, output_tokens: int, cache_creation_tokens: int = 0, cache_read_tokens: int = 0) -> float:
        return (
            (input_tokens / 1e6) * self.input
            + (output_tokens / 1e6) * self.output
            + (cache_creation_tokens / 1e6) * self.cache_creation
            + (cache_read_tokens / 1e6) * self.cache_read
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_cost_per_mtok": self.input,
            "output_cost_per_mtok": self.output,
            "cache_creation_cost_per_mtok": self.cache_creation,
            "cache_read_cost_per_mtok": self.cache_read,
            "provenance": self.provenance,
        }


def derived_vector(input_rate: float, output_rate: float, provenance: str = STATIC_BUILTIN) -> PriceVector:
    return PriceVector(input_rate, output_rate, input_rate * CACHE_CREATION_RATIO, input_rate * CACHE_READ_RATIO, provenance)


# Single cache rate applies to both cache classes.
STATIC_PRICES: Dict[str, PriceVector] = {
    "claude-sonnet-4-20250514": PriceVector(3.0, 15.0, 0.3, 0.3),
    "claude-opus-4-20250514": PriceVector(15.0, 75.0, 1.5, 1.5),
    "claude-haiku-3-5-20241022": PriceVector(1.0, 5.0, 0.1, 0.1),
}

FALLBACK_PRICE = STATIC_PRICES["claude-sonnet-4-20250514"]


class LiteLLMModelEntry(BaseModel):
    """Shape of one model record in the LiteLLM document (per-token USD)."""

    model_config = ConfigDict(extra="ignore")

    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None
    max_tokens: Optional[int] = None
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None


def model_tier(model: Optional[str]) -> str:
    name = (model or "").lower()
    if "opus" in name:
        return TIER_HIGH
    if "sonnet" in name:
        return TIER_MID
    if "haiku" in name:
        return TIER_LOW
    return TIER_UNKNOWN


def normalize_document(raw: Any) -> Dict[str, LiteLLMModelEntry]:
    """Keep only recognisable model records; everything else is skipped silently."""
    models: Dict[str, LiteLLMModelEntry] = {}
    if not isinstance(raw, dict):
        return models
    for name, value in raw.items():
        if name == "sample_spec" or name.startswith("_"):
            continue
        if not isinstance(value, dict):
            continue
        try:
            models[name] = LiteLLMModelEntry.model_validate(value)
        except ValidationError:
            continue
    return models


def vector_from_entry(entry: LiteLLMModelEntry) -> Optional[PriceVector]:
    if entry.input_cost_per_token is None and entry.output_cost_per_token is None:
        return None
    inp = (entry.input_cost_per_token or 0.0) * 1e6
    out = (entry.output_cost_per_token or 0.0) * 1e6
    provenance = AUTHORITATIVE
    if entry.cache_creation_input_token_cost is None:
        creation = inp * CACHE_CREATION_RATIO
        provenance = FALLBACK_DERIVED
    else:
        creation = entry.cache_creation_input_token_cost * 1e6
    if entry.cache_read_input_token_cost is None:
        read = inp * CACHE_READ_RATIO
        provenance = FALLBACK_DERIVED
    else:
        read = entry.cache_read_input_token_cost * 1e6
    return PriceVector(inp, out, creation, read, provenance)


def fetch_pricing_document(url: str = LITELLM_PRICING_URL, timeout: float = FETCH_TIMEOUT_SECONDS) -> Any:
    """Download the raw LiteLLM JSON. Raises OSError or ValueError on failure."""
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        data = resp.read().decode("utf-8")
    return json.loads(data)


def pricing_cache_path() -> str:
    return os.path.join(ccost_config_dir(), "litellm_cache.json")


def load_disk_cache(path: str, max_age_hours: Optional[float] = DISK_TTL_HOURS, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Return the cached document when present and younger than max_age_hours (None = any age)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            entry = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(entry, dict) or not isinstance(entry.get("data"), dict):
        return None
    if max_age_hours is not None:
        ts = entry.get("timestamp")
        try:
            fetched = datetime.fromisoformat(str(ts).replace("Z", "+00:00"))
        except ValueError:
            return None
        if fetched.tzinfo is None:
            fetched = fetched.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        if now - fetched >= timedelta(hours=max_age_hours):
            return None
    return entry["data"]


def save_disk_cache(path: str, document: Dict[str, Any], now: Optional[datetime] = None) -> None:
    """Write {"data", "timestamp"} atomically (temp file in the same dir, then rename)."""
    now = now or datetime.now(timezone.utc)
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".litellm_cache.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"data": document, "timestamp": now.isoformat().replace("+00:00", "Z")}, f)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class PricingCatalog:
    """price_vector(model) is total: every string gets a vector."""

    def __init__(
        self,
        source: str = "auto",
        offline_fallback: bool = True,
        cache_path: Optional[str] = None,
        fetcher: Optional[Callable[[], Any]] = None,
        overrides: Optional[Dict[str, Tuple[float, float]]] = None,
        memory_ttl_seconds: float = MEMORY_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        warn: Optional[Callable[[str], None]] = None,
    ):
        if source not in PRICING_SOURCES:
            raise ValueError(f"Unknown pricing source: {source}")
        self.source = source
        self.offline_fallback = offline_fallback
        self.cache_path = cache_path
        self.fetcher = fetcher or fetch_pricing_document
        self.overrides: Dict[str, PriceVector] = {}
        for name, (inp, out) in (overrides or {}).items():
            self.set_override(name, inp, out)
        self.memory_ttl_seconds = max(memory_ttl_seconds, MEMORY_TTL_SECONDS)
        self.clock = clock
        self.warn = warn or (lambda msg: print(f"Warning: {msg}", file=sys.stderr))
        self._models: Optional[Dict[str, LiteLLMModelEntry]] = None
        self._loaded_at: Optional[float] = None
        self._fetch_attempted = False
        self.document_origin: Optional[str] = None

    def set_override(self, model: str, input_rate: float, output_rate: float) -> None:
        self.overrides[model] = derived_vector(input_rate, output_rate, STATIC_BUILTIN)

    def _memory_fresh(self) -> bool:
        return self._loaded_at is not None and (self.clock() - self._loaded_at) <= self.memory_ttl_seconds

    def _load(self, models: Dict[str, LiteLLMModelEntry], origin: str) -> Dict[str, LiteLLMModelEntry]:
        self._models = models
        self._loaded_at = self.clock()
        self.document_origin = origin
        return models

    def _fetch(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.fetcher()
        except (OSError, ValueError) as e:
            if self.source == "live":
                self.warn(f"failed to fetch LiteLLM pricing: {e}")
            return None
        if not isinstance(raw, dict):
            if self.source == "live":
                self.warn("LiteLLM pricing document is not a JSON object")
            return None
        return raw

    def models(self, force_refresh: bool = False) -> Optional[Dict[str, LiteLLMModelEntry]]:
        """The authoritative model table, or None when unavailable or disabled."""
        if self.source == "static":
            return None
        if not force_refresh:
            if self._models is not None and self._memory_fresh():
                return self._models
            if self._fetch_attempted:
                return self._models
        self._fetch_attempted = True

        if self.cache_path and not force_refresh:
            cached = load_disk_cache(self.cache_path)
            if cached is not None:
                return self._load(normalize_document(cached), "disk-cache")

        raw = self._fetch()
        if raw is not None:
            models = normalize_document(raw)
            if self.cache_path:
                document = {name: entry.model_dump(exclude_none=True) for name, entry in models.items()}
                try:
                    save_disk_cache(self.cache_path, document)
                except OSError as e:
                    self.warn(f"could not write pricing cache {self.cache_path}: {e}")
            return self._load(models, "network")

        if self.cache_path:
            stale = load_disk_cache(self.cache_path, max_age_hours=None)
            if stale is not None:
                if self.source == "live":
                    self.warn("using stale pricing cache")
                return self._load(normalize_document(stale), "stale-disk-cache")

        if self.source == "live":
            if not self.offline_fallback:
                raise PricingUnavailableError("Live pricing unavailable and offline fallback is disabled")
            self.warn("live pricing unavailable, falling back to static rates")
        return None

    def refresh(self) -> Optional[Dict[str, LiteLLMModelEntry]]:
        """Force a refetch and rewrite the disk cache."""
        return self.models(force_refresh=True)

    def price_vector(self, model: Optional[str]) -> PriceVector:
        name = model or ""
        if name in self.overrides:
            return self.overrides[name]
        models = self.models()
        if models:
            entry = models.get(name)
            if entry is not None:
                vec = vector_from_entry(entry)
                if vec is not None:
                    return vec
        if name in STATIC_PRICES:
            return STATIC_PRICES[name]
        return FALLBACK_PRICE

    def cost(self, model: Optional[str], input_tokens: int, output_tokens: int, cache_creation_tokens: int = 0, cache_read_tokens: int = 0) -> Tuple[float, str]:
        vec = self.price_vector(model)
        return vec.cost(input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens), vec.provenance

    def list_models(self) -> List[Tuple[str, PriceVector, str]]:
        """(name, vector, layer) for overrides and the static table, sorted by name within layer."""
        rows: List[Tuple[str, PriceVector, str]] = []
        for name in sorted(self.overrides):
            rows.append((name, self.overrides[name], "override"))
        for name in sorted(STATIC_PRICES):
            rows.append((name, STATIC_PRICES[name], "static"))
        return rows
