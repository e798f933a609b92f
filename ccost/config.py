"""
User configuration (~/.config/ccost/config.toml).

Read with tomllib, written from a commented template so the file keeps its
explanations after ``ccost config set``.
"""

import json
import os
import tomllib
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

COST_MODES = ("auto", "calculate", "display")
OUTPUT_FORMATS = ("table", "json")
DATE_FORMAT_CHOICES = ("yyyy-mm-dd", "dd-mm-yyyy", "mm-dd-yyyy")
PRICING_SOURCE_CHOICES = ("static", "live", "auto")
ALERT_IDS = (
    "daily_spending",
    "weekly_spending",
    "monthly_spending",
    "daily_tokens",
    "opus_efficiency",
    "cache_rate",
    "spending_spike",
)
DEFAULT_ENABLED_ALERTS = ["daily_spending", "opus_efficiency", "cache_rate", "spending_spike"]


class ConfigError(Exception):
    """Configuration could not be loaded, saved or updated."""


def xdg_config_home() -> str:
    return os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))


def ccost_config_dir() -> str:
    return os.path.join(xdg_config_home(), "ccost")


def config_path() -> str:
    return os.path.join(ccost_config_dir(), "config.toml")


@dataclass
class GeneralConfig:
    claude_projects_path: str = "~/.claude/projects"
    cost_mode: str = "auto"


@dataclass
class CurrencyConfig:
    default_currency: str = "USD"


@dataclass
class OutputConfig:
    format: str = "table"
    colored: bool = False
    decimal_places: int = 2
    date_format: str = "yyyy-mm-dd"


@dataclass
class TimezoneConfig:
    timezone: str = "UTC"
    daily_cutoff_hour: int = 0


@dataclass
class PricingConfig:
    source: str = "auto"
    cache_ttl_minutes: int = 60
    offline_fallback: bool = True


@dataclass
class AlertsConfig:
    daily_spending_limit: float = 10.0
    weekly_spending_limit: float = 50.0
    monthly_spending_limit: float = 200.0
    daily_token_limit: int = 1_000_000
    cache_hit_rate_threshold: float = 0.3
    opus_usage_threshold: int = 20
    spending_spike_factor: float = 3.0
    enabled_alerts: List[str] = field(default_factory=lambda: list(DEFAULT_ENABLED_ALERTS))
    notifications: bool = False


@dataclass
class Config:
    general: GeneralConfig = field(default_factory=GeneralConfig)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    timezone: TimezoneConfig = field(default_factory=TimezoneConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def projects_path(self) -> str:
        return os.path.expanduser(self.general.claude_projects_path)


SECTIONS = ("general", "currency", "output", "timezone", "pricing", "alerts")


def _section_from(cls, raw: Any, name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table")
    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in raw.items():
        if key in known:
            kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"[{name}]: {e}") from e


def from_dict(data: Dict[str, Any]) -> Config:
    """Build a Config from parsed TOML, missing keys taking their defaults."""
    cfg = Config()
    for name in SECTIONS:
        section = getattr(cfg, name)
        setattr(cfg, name, _section_from(type(section), data.get(name), name))
    validate(cfg)
    return cfg


def validate(cfg: Config) -> None:
    for dotted in KEY_TYPES:
        section, key = dotted.split(".", 1)
        value = getattr(getattr(cfg, section), key)
        _check(dotted, value)


def load(path: Optional[str] = None) -> Config:
    """Load the config file, creating it with defaults when missing."""
    path = path or config_path()
    if not os.path.exists(path):
        cfg = Config()
        save(cfg, path)
        return cfg
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load configuration: {path}: {e}") from e
    return from_dict(data)


def save(cfg: Config, path: Optional[str] = None) -> str:
    path = path or config_path()
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(to_toml(cfg))
    except OSError as e:
        raise ConfigError(f"Failed to write configuration: {path}: {e}") from e
    return path


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(v) for v in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


_RULE = "# " + "=" * 77


def to_toml(cfg: Config) -> str:
    """Render the config as a commented TOML document."""
    g, c, o, t, p, a = cfg.general, cfg.currency, cfg.output, cfg.timezone, cfg.pricing, cfg.alerts
    v = _toml_value
    lines = [
        "# ccost configuration",
        "# Every setting has a default and most can be overridden with CLI flags.",
        "",
        _RULE,
        "# GENERAL",
        _RULE,
        "",
        "[general]",
        "# Directory holding Claude Code JSONL transcripts (searched recursively)",
        f"claude_projects_path = {v(g.claude_projects_path)}",
        "",
        "# How costs are determined:",
        '#   "auto"      - embedded costUSD when present, otherwise calculated',
        '#   "calculate" - always tokens x pricing, embedded costs ignored',
        '#   "display"   - embedded costUSD only, 0.00 when missing',
        f"cost_mode = {v(g.cost_mode)}",
        "",
        _RULE,
        "# CURRENCY",
        _RULE,
        "",
        "[currency]",
        "# Display currency; USD costs are converted with ECB daily rates",
        f"default_currency = {v(c.default_currency)}",
        "",
        _RULE,
        "# OUTPUT",
        _RULE,
        "",
        "[output]",
        '# "table" or "json" (--json always wins)',
        f"format = {v(o.format)}",
        "# ANSI colours in tables",
        f"colored = {v(o.colored)}",
        "# Decimal places for costs (0-10)",
        f"decimal_places = {v(o.decimal_places)}",
        '# Table date format: "yyyy-mm-dd", "dd-mm-yyyy" or "mm-dd-yyyy" (JSON is always ISO)',
        f"date_format = {v(o.date_format)}",
        "",
        _RULE,
        "# TIMEZONE",
        _RULE,
        "",
        "[timezone]",
        '# IANA zone used for day boundaries, e.g. "Europe/Berlin"',
        f"timezone = {v(t.timezone)}",
        "# Hour (0-23) at which a new day starts",
        f"daily_cutoff_hour = {v(t.daily_cutoff_hour)}",
        "",
        _RULE,
        "# PRICING",
        _RULE,
        "",
        "[pricing]",
        '#   "auto"   - LiteLLM pricing when reachable, static rates otherwise',
        '#   "live"   - LiteLLM pricing, warn when unreachable',
        '#   "static" - built-in rates only, no network',
        f"source = {v(p.source)}",
        "# In-memory pricing cache lifetime in minutes (1-1440, never below 60 in practice)",
        f"cache_ttl_minutes = {v(p.cache_ttl_minutes)}",
        "# Fall back to static rates when live pricing is unavailable",
        f"offline_fallback = {v(p.offline_fallback)}",
        "",
        _RULE,
        "# ALERTS",
        _RULE,
        "",
        "[alerts]",
        "# Spending limits in the display currency",
        f"daily_spending_limit = {v(a.daily_spending_limit)}",
        f"weekly_spending_limit = {v(a.weekly_spending_limit)}",
        f"monthly_spending_limit = {v(a.monthly_spending_limit)}",
        "# Tokens per day",
        f"daily_token_limit = {v(a.daily_token_limit)}",
        "# Expected cache read / input ratio",
        f"cache_hit_rate_threshold = {v(a.cache_hit_rate_threshold)}",
        "# Opus messages per day before suggesting a cheaper model",
        f"opus_usage_threshold = {v(a.opus_usage_threshold)}",
        "# Today's spend vs recent daily average",
        f"spending_spike_factor = {v(a.spending_spike_factor)}",
        "# One or more of: " + ", ".join(ALERT_IDS),
        f"enabled_alerts = {v(a.enabled_alerts)}",
        "# Desktop notifications for fired alerts",
        f"notifications = {v(a.notifications)}",
        "",
    ]
    return "\n".join(lines)


# dotted key -> kind used by set_value and validate
KEY_TYPES: Dict[str, str] = {
    "general.claude_projects_path": "str",
    "general.cost_mode": "cost_mode",
    "currency.default_currency": "currency",
    "output.format": "format",
    "output.colored": "bool",
    "output.decimal_places": "decimal_places",
    "output.date_format": "date_format",
    "timezone.timezone": "zone",
    "timezone.daily_cutoff_hour": "hour",
    "pricing.source": "pricing_source",
    "pricing.cache_ttl_minutes": "ttl",
    "pricing.offline_fallback": "bool",
    "alerts.daily_spending_limit": "non_negative",
    "alerts.weekly_spending_limit": "non_negative",
    "alerts.monthly_spending_limit": "non_negative",
    "alerts.daily_token_limit": "non_negative_int",
    "alerts.cache_hit_rate_threshold": "non_negative",
    "alerts.opus_usage_threshold": "non_negative_int",
    "alerts.spending_spike_factor": "non_negative",
    "alerts.enabled_alerts": "alert_list",
    "alerts.notifications": "bool",
}


def _choice(key: str, value: Any, choices) -> None:
    if value not in choices:
        raise ConfigError(f"Invalid value for {key}: {value!r} (expected one of: {', '.join(choices)})")


def _int_range(key: str, value: Any, lo: int, hi: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not lo <= value <= hi:
        raise ConfigError(f"Invalid value for {key}: {value!r} (expected an integer {lo}-{hi})")


def _check(key: str, value: Any) -> None:
    kind = KEY_TYPES[key]
    if kind == "str":
        if not isinstance(value, str) or not value:
            raise ConfigError(f"Invalid value for {key}: expected a non-empty string")
    elif kind == "cost_mode":
        _choice(key, value, COST_MODES)
    elif kind == "currency":
        if not isinstance(value, str) or len(value) != 3 or not value.isalpha():
            raise ConfigError(f"Invalid value for {key}: {value!r} (expected a 3-letter currency code)")
    elif kind == "format":
        _choice(key, value, OUTPUT_FORMATS)
    elif kind == "date_format":
        _choice(key, value, DATE_FORMAT_CHOICES)
    elif kind == "pricing_source":
        _choice(key, value, PRICING_SOURCE_CHOICES)
    elif kind == "bool":
        if not isinstance(value, bool):
            raise ConfigError(f"Invalid value for {key}: {value!r} (expected true or false)")
    elif kind == "decimal_places":
        _int_range(key, value, 0, 10)
    elif kind == "hour":
        _int_range(key, value, 0, 23)
    elif kind == "ttl":
        _int_range(key, value, 1, 1440)
    elif kind == "zone":
        try:
            ZoneInfo(str(value))
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: unknown timezone {value!r}") from e
    elif kind == "non_negative":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(f"Invalid value for {key}: {value!r} (expected a non-negative number)")
    elif kind == "non_negative_int":
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ConfigError(f"Invalid value for {key}: {value!r} (expected a non-negative integer)")
    elif kind == "alert_list":
        if not isinstance(value, list):
            raise ConfigError(f"Invalid value for {key}: expected a list of alert ids")
        for item in value:
            _choice(key, item, ALERT_IDS)


def _parse(key: str, raw: str) -> Any:
    kind = KEY_TYPES[key]
    s = raw.strip()
    if kind == "bool":
        if s.lower() == "true":
            return True
        if s.lower() == "false":
            return False
        raise ConfigError(f"Invalid value for {key}: {raw!r} (expected true or false)")
    if kind in ("decimal_places", "hour", "ttl", "non_negative_int"):
        try:
            return int(s)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {raw!r} (expected an integer)") from e
    if kind == "non_negative":
        try:
            return float(s)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {raw!r} (expected a number)") from e
    if kind == "alert_list":
        return [part.strip() for part in s.split(",") if part.strip()]
    if kind == "currency":
        return s.upper()
    return s


def set_value(cfg: Config, key: str, raw: str) -> Any:
    """Parse and validate raw for a dotted key, update cfg in place and return the value."""
    if key not in KEY_TYPES:
        raise ConfigError(f"Unknown configuration key: {key}")
    value = _parse(key, raw)
    _check(key, value)
    section, name = key.split(".", 1)
    setattr(getattr(cfg, section), name, value)
    return value
