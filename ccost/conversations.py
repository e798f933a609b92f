"""
Per-conversation insights: totals, efficiency score, outlier flags and
optimization tips.

Events are grouped by session id (falling back to the event uuid for
records that carry no session). Events without a usage block still count as
messages of their conversation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ccost.pricing import TIER_HIGH, PricingCatalog, model_tier
from ccost.transcripts import Event
from ccost.usage import resolve_cost

HIGH_COST_THRESHOLD = 10.0
HIGH_TOKEN_THRESHOLD = 100_000
LOW_EFFICIENCY_THRESHOLD = 40.0
POOR_CACHE_HIT_THRESHOLD = 0.1
LONG_CONVERSATION_MINUTES = 240.0
EXPENSIVE_MODEL_SHARE = 0.8

COST_WEIGHT = 0.4
TOKEN_WEIGHT = 0.3
CACHE_WEIGHT = 0.2
MESSAGE_WEIGHT = 0.1

SORT_KEYS = ("cost", "tokens", "efficiency", "messages", "duration", "start-time")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Conversation:
    conversation_id: str
    project: str
    events: List[Event]
    start_time: Optional[datetime]
    end_time: Optional[datetime]

    @property
    def duration_minutes(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds() / 60.0


@dataclass
class ConversationModelUsage:
    model_name: str
    message_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost_usd: float = 0.0
    cost_percentage: float = 0.0


@dataclass
class OutlierFlag:
    flag_type: str
    description: str
    severity: str
    metric_value: float
    threshold: float


@dataclass
class OptimizationTip:
    tip_type: str
    description: str
    potential_savings: Optional[float]
    confidence: float


@dataclass
class ConversationInsight:
    conversation_id: str
    project: str
    total_cost: float
    message_count: int
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    efficiency_score: float
    cost_per_message: float
    cost_per_token: float
    cache_hit_rate: float
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration_minutes: float
    models: Dict[str, ConversationModelUsage] = field(default_factory=dict)
    outliers: List[OutlierFlag] = field(default_factory=list)
    tips: List[OptimizationTip] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "project": self.project,
            "total_cost": self.total_cost,
            "message_count": self.message_count,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "efficiency_score": self.efficiency_score,
            "cost_per_message": self.cost_per_message,
            "cost_per_token": self.cost_per_token,
            "cache_hit_rate": self.cache_hit_rate,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_minutes": self.duration_minutes,
            "models": {name: vars(m) for name, m in sorted(self.models.items())},
            "outliers": [vars(f) for f in self.outliers],
            "optimization_tips": [vars(t) for t in self.tips],
        }


@dataclass
class ConversationFilter:
    project: Optional[str] = None
    model: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    min_cost: Optional[float] = None
    max_cost: Optional[float] = None
    min_efficiency: Optional[float] = None
    max_efficiency: Optional[float] = None
    outliers_only: bool = False

    def matches(self, c: ConversationInsight) -> bool:
        if self.project is not None and c.project != self.project:
            return False
        if self.model is not None and self.model not in c.models:
            return False
        if self.since is not None and (c.start_time is None or c.start_time < self.since):
            return False
        if self.until is not None and (c.end_time is None or c.end_time > self.until):
            return False
        if self.min_cost is not None and c.total_cost < self.min_cost:
            return False
        if self.max_cost is not None and c.total_cost > self.max_cost:
            return False
        if self.min_efficiency is not None and c.efficiency_score < self.min_efficiency:
            return False
        if self.max_efficiency is not None and c.efficiency_score > self.max_efficiency:
            return False
        if self.outliers_only and not c.outliers:
            return False
        return True


def conversation_key(ev: Event) -> Optional[str]:
    return ev.session_id or ev.uuid or None


def group_conversations(events: Iterable[Event]) -> List[Conversation]:
    """Group events into conversations, ordered by first appearance."""
    groups: Dict[str, List[Event]] = {}
    for ev in events:
        key = conversation_key(ev)
        if key is None:
            continue
        groups.setdefault(key, []).append(ev)
    conversations = []
    for key, evs in groups.items():
        stamped = sorted((e for e in evs if e.timestamp is not None), key=lambda e: e.timestamp)
        start = stamped[0].timestamp if stamped else None
        end = stamped[-1].timestamp if stamped else None
        conversations.append(Conversation(key, evs[0].project, evs, start, end))
    return conversations


def efficiency_score(total_cost: float, total_tokens: int, message_count: int, cache_hit_rate: float) -> float:
    """0-100; penalises cost per token, missing tokens, poor cache reuse and tiny messages."""
    score = 100.0
    cost_per_token = total_cost / total_tokens if total_tokens > 0 else 0.0
    score -= min(cost_per_token * 1_000_000, 50.0) * COST_WEIGHT
    token_efficiency = 1.0 if total_tokens > 0 else 0.0
    score -= (1.0 - token_efficiency) * 20.0 * TOKEN_WEIGHT
    score -= (1.0 - cache_hit_rate) * 30.0 * CACHE_WEIGHT
    avg_tokens = total_tokens / message_count if message_count > 0 else 0.0
    score -= (1.0 - min(avg_tokens / 1000.0, 1.0)) * 15.0 * MESSAGE_WEIGHT
    return max(0.0, min(100.0, score))


def detect_outliers(
    total_cost: float,
    total_tokens: int,
    efficiency: float,
    cache_hit_rate: float,
    duration_minutes: float,
    models: Dict[str, ConversationModelUsage],
) -> List[OutlierFlag]:
    flags: List[OutlierFlag] = []
    if total_cost > HIGH_COST_THRESHOLD:
        if total_cost > HIGH_COST_THRESHOLD * 5:
            severity = "Critical"
        elif total_cost > HIGH_COST_THRESHOLD * 2:
            severity = "High"
        else:
            severity = "Medium"
        flags.append(OutlierFlag(
            "HighCost",
            f"High cost conversation: ${total_cost:.2f} (threshold: ${HIGH_COST_THRESHOLD:.2f})",
            severity, total_cost, HIGH_COST_THRESHOLD,
        ))
    if total_tokens > HIGH_TOKEN_THRESHOLD:
        flags.append(OutlierFlag(
            "HighTokenUsage",
            f"High token usage: {total_tokens} tokens (threshold: {HIGH_TOKEN_THRESHOLD} tokens)",
            "Medium", float(total_tokens), float(HIGH_TOKEN_THRESHOLD),
        ))
    if efficiency < LOW_EFFICIENCY_THRESHOLD:
        flags.append(OutlierFlag(
            "LowEfficiency",
            f"Low efficiency: {efficiency:.1f}% (threshold: {LOW_EFFICIENCY_THRESHOLD:.1f}%)",
            "High", efficiency, LOW_EFFICIENCY_THRESHOLD,
        ))
    if 0.0 < cache_hit_rate < POOR_CACHE_HIT_THRESHOLD:
        flags.append(OutlierFlag(
            "PoorCacheHit",
            f"Poor cache hit rate: {cache_hit_rate * 100:.1f}% (threshold: {POOR_CACHE_HIT_THRESHOLD * 100:.1f}%)",
            "Medium", cache_hit_rate, POOR_CACHE_HIT_THRESHOLD,
        ))
    if duration_minutes > LONG_CONVERSATION_MINUTES:
        flags.append(OutlierFlag(
            "LongConversation",
            f"Long conversation: {duration_minutes:.1f} minutes (over 4 hours)",
            "Low", duration_minutes, LONG_CONVERSATION_MINUTES,
        ))
    expensive = sum(m.cost_usd for name, m in models.items() if model_tier(name) == TIER_HIGH)
    if expensive > 0 and total_cost > 0 and expensive / total_cost > EXPENSIVE_MODEL_SHARE:
        share = expensive / total_cost
        flags.append(OutlierFlag(
            "ExpensiveModel",
            f"High expensive model usage: {share * 100:.1f}% of total cost",
            "Medium", share, EXPENSIVE_MODEL_SHARE,
        ))
    return flags


def recommend(
    total_cost: float,
    message_count: int,
    models: Dict[str, ConversationModelUsage],
    cache_hit_rate: float,
    efficiency: float,
) -> List[OptimizationTip]:
    tips: List[OptimizationTip] = []
    high_cost = sum(m.cost_usd for name, m in models.items() if model_tier(name) == TIER_HIGH)
    if total_cost > 0 and high_cost / total_cost * 100 > 70:
        tips.append(OptimizationTip(
            "ModelDowngrade",
            "Consider using Claude Sonnet for simpler tasks. Opus usage makes up over 70% of conversation cost.",
            high_cost * 0.8, 0.8,
        ))
    if cache_hit_rate < 0.2 and total_cost > 5.0:
        tips.append(OptimizationTip(
            "CacheOptimization",
            "Low cache hit rate detected. Consider structuring conversations to reuse context more effectively.",
            total_cost * 0.3, 0.6,
        ))
    if efficiency < 50.0:
        tips.append(OptimizationTip(
            "TokenEfficiency",
            "Low token efficiency. Consider shorter, more focused prompts and responses.",
            total_cost * 0.2, 0.5,
        ))
    if message_count > 0:
        tokens = sum(m.input_tokens + m.output_tokens for m in models.values())
        if tokens / message_count < 100 and message_count > 10:
            tips.append(OptimizationTip(
                "MessageLength",
                "Many short messages detected. Consider consolidating related queries for better efficiency.",
                total_cost * 0.15, 0.4,
            ))
    return tips


def analyze_conversation(conv: Conversation, catalog: Optional[PricingCatalog], mode: str = "auto") -> ConversationInsight:
    total_cost = 0.0
    inp = out = creation = read = 0
    models: Dict[str, ConversationModelUsage] = {}
    for ev in conv.events:
        cost, _ = resolve_cost(ev, catalog, mode)
        i, o, c, r = ev.tokens()
        total_cost += cost
        inp += i
        out += o
        creation += c
        read += r
        m = models.get(ev.model)
        if m is None:
            m = ConversationModelUsage(ev.model)
            models[ev.model] = m
        m.message_count += 1
        m.input_tokens += i
        m.output_tokens += o
        m.cache_creation_tokens += c
        m.cache_read_tokens += r
        m.cost_usd += cost
    if total_cost > 0:
        for m in models.values():
            m.cost_percentage = m.cost_usd / total_cost * 100

    message_count = len(conv.events)
    total_tokens = inp + out
    cache_total = creation + read
    cache_hit_rate = read / cache_total if cache_total > 0 else 0.0
    score = efficiency_score(total_cost, total_tokens, message_count, cache_hit_rate)
    duration = conv.duration_minutes
    return ConversationInsight(
        conversation_id=conv.conversation_id,
        project=conv.project,
        total_cost=total_cost,
        message_count=message_count,
        input_tokens=inp,
        output_tokens=out,
        cache_creation_tokens=creation,
        cache_read_tokens=read,
        efficiency_score=score,
        cost_per_message=total_cost / message_count if message_count else 0.0,
        cost_per_token=total_cost / total_tokens if total_tokens else 0.0,
        cache_hit_rate=cache_hit_rate,
        start_time=conv.start_time,
        end_time=conv.end_time,
        duration_minutes=duration,
        models=models,
        outliers=detect_outliers(total_cost, total_tokens, score, cache_hit_rate, duration, models),
        tips=recommend(total_cost, message_count, models, cache_hit_rate, score),
    )


def analyze_conversations(events: Iterable[Event], catalog: Optional[PricingCatalog], mode: str = "auto") -> List[ConversationInsight]:
    return [analyze_conversation(c, catalog, mode) for c in group_conversations(events)]


def sort_conversations(insights: List[ConversationInsight], sort_by: str = "cost") -> List[ConversationInsight]:
    if sort_by == "cost":
        return sorted(insights, key=lambda c: c.total_cost, reverse=True)
    if sort_by == "tokens":
        return sorted(insights, key=lambda c: c.total_tokens, reverse=True)
    if sort_by == "efficiency":
        return sorted(insights, key=lambda c: c.efficiency_score)
    if sort_by == "messages":
        return sorted(insights, key=lambda c: c.message_count, reverse=True)
    if sort_by == "duration":
        return sorted(insights, key=lambda c: c.duration_minutes, reverse=True)
    if sort_by == "start-time":
        return sorted(insights, key=lambda c: c.start_time or _EPOCH, reverse=True)
    raise ValueError(f"Unknown sort key: {sort_by}")


def filter_conversations(insights: Iterable[ConversationInsight], flt: ConversationFilter) -> List[ConversationInsight]:
    return [c for c in insights if flt.matches(c)]
