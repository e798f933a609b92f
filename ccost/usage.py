"""
Usage aggregation.

Folds a deduplicated Event stream into per-project (with per-model
breakdown) and per-period aggregates. Costs come from the event's embedded
costUSD or from the pricing catalog depending on the cost mode:

  display   - embedded cost, else 0
  calculate - always the catalog
  auto      - embedded cost, else the catalog

Every priced contribution records its provenance on the aggregate
("embedded" for embedded costs).
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ccost.pricing import PricingCatalog
from ccost.timezones import TimezoneCalculator
from ccost.transcripts import Event

COST_MODES = ("auto", "calculate", "display")
EMBEDDED = "embedded"
PERIODS = ("day", "week", "month")


@dataclass
class UsageFilter:
    project: Optional[str] = None
    model: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    def matches_time(self, ev: Event) -> bool:
        if self.since is not None or self.until is not None:
            if ev.timestamp is None:
                return False
            if self.since is not None and ev.timestamp < self.since:
                return False
            if self.until is not None and ev.timestamp > self.until:
                return False
        return True

    def matches(self, ev: Event, check_model: bool = True) -> bool:
        if self.project is not None and ev.project != self.project:
            return False
        if check_model and self.model is not None and ev.model != self.model:
            return False
        return self.matches_time(ev)


def resolve_cost(ev: Event, catalog: Optional[PricingCatalog], mode: str = "auto") -> Tuple[float, Optional[str]]:
    """(cost_usd, provenance) for one event; provenance None when nothing was priced."""
    if mode not in COST_MODES:
        raise ValueError(f"Unknown cost mode: {mode}")
    embedded = ev.embedded_cost
    if mode in ("display", "auto") and embedded is not None:
        return embedded, EMBEDDED
    if mode == "display":
        return 0.0, None
    if not ev.has_usage or catalog is None:
        return 0.0, None
    inp, out, creation, read = ev.tokens()
    return catalog.cost(ev.model, inp, out, creation, read)


@dataclass
class UsageTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    message_count: int = 0
    provenance: Set[str] = field(default_factory=set)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_creation_tokens + self.cache_read_tokens

    def add(self, tokens: Tuple[int, int, int, int], cost: float, provenance: Optional[str]) -> None:
        self.input_tokens += tokens[0]
        self.output_tokens += tokens[1]
        self.cache_creation_tokens += tokens[2]
        self.cache_read_tokens += tokens[3]
        self.cost_usd += cost
        self.message_count += 1
        if provenance:
            self.provenance.add(provenance)

    def merge(self, other: "UsageTotals") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost_usd += other.cost_usd
        self.message_count += other.message_count
        self.provenance |= other.provenance

    def totals_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cost": self.cost_usd,
            "message_count": self.message_count,
            "provenance": sorted(self.provenance),
        }


@dataclass
class ModelUsage(UsageTotals):
    model_name: str = ""

    def scaled(self, factor: float) -> "ModelUsage":
        m = ModelUsage(model_name=self.model_name)
        m.merge(self)
        m.cost_usd = self.cost_usd * factor
        return m

    def to_dict(self) -> Dict[str, Any]:
        d = {"model": self.model_name}
        d.update(self.totals_dict())
        return d


@dataclass
class ProjectUsage(UsageTotals):
    project_name: str = ""
    models: Dict[str, ModelUsage] = field(default_factory=dict)

    def model(self, name: str) -> ModelUsage:
        m = self.models.get(name)
        if m is None:
            m = ModelUsage(model_name=name)
            self.models[name] = m
        return m

    def sorted_models(self) -> List[ModelUsage]:
        return [self.models[name] for name in sorted(self.models)]

    def recompute_totals(self) -> None:
        """Project totals as the sum of the model breakdown."""
        fresh = UsageTotals()
        for m in self.models.values():
            fresh.merge(m)
        self.input_tokens = fresh.input_tokens
        self.output_tokens = fresh.output_tokens
        self.cache_creation_tokens = fresh.cache_creation_tokens
        self.cache_read_tokens = fresh.cache_read_tokens
        self.cost_usd = fresh.cost_usd
        self.message_count = fresh.message_count
        self.provenance = fresh.provenance

    def scaled(self, factor: float) -> "ProjectUsage":
        p = ProjectUsage(project_name=self.project_name)
        p.models = {name: m.scaled(factor) for name, m in self.models.items()}
        p.recompute_totals()
        return p

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"project": self.project_name}
        d.update(self.totals_dict())
        d["models"] = [m.to_dict() for m in self.sorted_models()]
        return d


@dataclass
class PeriodUsage(UsageTotals):
    """Aggregate for one date bucket (day, ISO week starting Monday, or month)."""

    start: Optional[date] = None
    period: str = "day"
    projects: Set[str] = field(default_factory=set)

    @property
    def projects_count(self) -> int:
        return len(self.projects)

    def scaled(self, factor: float) -> "PeriodUsage":
        p = PeriodUsage(start=self.start, period=self.period, projects=set(self.projects))
        p.merge(self)
        p.cost_usd = self.cost_usd * factor
        return p

    def label(self) -> str:
        if self.start is None:
            return ""
        if self.period == "week":
            iso = self.start.isocalendar()
            return f"{iso[0]}-W{iso[1]:02}"
        if self.period == "month":
            return self.start.strftime("%Y-%m")
        return self.start.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"date": self.start.isoformat() if self.start else None, "period": self.label()}
        d.update(self.totals_dict())
        d["projects_count"] = self.projects_count
        return d


def aggregate_projects(
    events: Iterable[Event],
    catalog: Optional[PricingCatalog],
    mode: str = "auto",
    flt: Optional[UsageFilter] = None,
) -> List[ProjectUsage]:
    """Per-project aggregates sorted by name, with per-model breakdowns.

    Events without a usage block contribute nothing. The model predicate of
    the filter is applied to the folded breakdown (see apply_model_filter).
    """
    flt = flt or UsageFilter()
    projects: Dict[str, ProjectUsage] = {}
    for ev in events:
        if not ev.has_usage or not flt.matches(ev, check_model=False):
            continue
        cost, provenance = resolve_cost(ev, catalog, mode)
        tokens = ev.tokens()
        proj = projects.get(ev.project)
        if proj is None:
            proj = ProjectUsage(project_name=ev.project)
            projects[ev.project] = proj
        proj.add(tokens, cost, provenance)
        proj.model(ev.model).add(tokens, cost, provenance)
    result = [projects[name] for name in sorted(projects)]
    if flt.model is not None:
        result = apply_model_filter(result, flt.model)
    return result


def apply_model_filter(projects: List[ProjectUsage], model: str) -> List[ProjectUsage]:
    """Keep only the matching model inside each project; drop projects left with no messages."""
    kept: List[ProjectUsage] = []
    for proj in projects:
        proj.models = {name: m for name, m in proj.models.items() if name == model}
        proj.recompute_totals()
        if proj.message_count > 0:
            kept.append(proj)
    return kept


def bucket_start(d: date, period: str) -> date:
    if period == "day":
        return d
    if period == "week":
        return d - timedelta(days=d.weekday())
    if period == "month":
        return d.replace(day=1)
    raise ValueError(f"Unknown period: {period}")


def aggregate_periods(
    events: Iterable[Event],
    catalog: Optional[PricingCatalog],
    tz: TimezoneCalculator,
    mode: str = "auto",
    flt: Optional[UsageFilter] = None,
    period: str = "day",
) -> List[PeriodUsage]:
    """Per-bucket aggregates in ascending date order, bucketed by local date."""
    flt = flt or UsageFilter()
    buckets: Dict[date, PeriodUsage] = {}
    for ev in events:
        if not ev.has_usage or ev.timestamp is None or not flt.matches(ev):
            continue
        start = bucket_start(tz.local_date(ev.timestamp), period)
        bucket = buckets.get(start)
        if bucket is None:
            bucket = PeriodUsage(start=start, period=period)
            buckets[start] = bucket
        cost, provenance = resolve_cost(ev, catalog, mode)
        bucket.add(ev.tokens(), cost, provenance)
        bucket.projects.add(ev.project)
    return [buckets[d] for d in sorted(buckets)]


def aggregate_daily(
    events: Iterable[Event],
    catalog: Optional[PricingCatalog],
    tz: TimezoneCalculator,
    mode: str = "auto",
    flt: Optional[UsageFilter] = None,
) -> List[PeriodUsage]:
    return aggregate_periods(events, catalog, tz, mode, flt, period="day")


def fill_missing_days(rows: List[PeriodUsage], first: date, last: date) -> List[PeriodUsage]:
    """Daily rows for every date in [first, last], zero rows where nothing happened."""
    by_day = {r.start: r for r in rows}
    out: List[PeriodUsage] = []
    d = first
    while d <= last:
        out.append(by_day.get(d) or PeriodUsage(start=d, period="day"))
        d += timedelta(days=1)
    return out


def period_totals(
    events: Iterable[Event],
    catalog: Optional[PricingCatalog],
    since: datetime,
    until: datetime,
    mode: str = "auto",
) -> PeriodUsage:
    """Totals for events with since <= timestamp < until."""
    totals = PeriodUsage(start=None, period="range")
    for ev in events:
        if not ev.has_usage or ev.timestamp is None:
            continue
        if ev.timestamp < since or ev.timestamp >= until:
            continue
        cost, provenance = resolve_cost(ev, catalog, mode)
        totals.add(ev.tokens(), cost, provenance)
        totals.projects.add(ev.project)
    return totals


def daily_cost_history(
    events: Iterable[Event],
    catalog: Optional[PricingCatalog],
    tz: TimezoneCalculator,
    days: int = 7,
    mode: str = "auto",
) -> List[float]:
    """Spend per local day over the `days` days before today, oldest first.

    The list starts at the first day with activity in that window; quiet
    days after it count as zero. No activity at all gives an empty list.
    """
    today = tz.today()
    first = today - timedelta(days=days)
    spend: Dict[date, float] = {first + timedelta(days=i): 0.0 for i in range(days)}
    active = set()
    for ev in events:
        if not ev.has_usage or ev.timestamp is None:
            continue
        d = tz.local_date(ev.timestamp)
        if d in spend:
            cost, _ = resolve_cost(ev, catalog, mode)
            spend[d] += cost
            active.add(d)
    if not active:
        return []
    start = min(active)
    return [spend[d] for d in sorted(spend) if d >= start]


def model_message_counts(projects: Iterable[ProjectUsage]) -> Counter:
    counts: Counter = Counter()
    for proj in projects:
        for name, m in proj.models.items():
            counts[name] += m.message_count
    return counts


def most_used_model(projects: Iterable[ProjectUsage]) -> Optional[str]:
    """Model with the most messages; ties go to the lexicographically smallest name."""
    counts = model_message_counts(projects)
    if not counts:
        return None
    return min(counts.items(), key=lambda kv: (-kv[1], kv[0]))[0]


def combined_totals(projects: Iterable[ProjectUsage]) -> UsageTotals:
    totals = UsageTotals()
    for proj in projects:
        totals.merge(proj)
    return totals
