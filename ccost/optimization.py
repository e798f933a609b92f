"""
Model-selection optimization.

Each conversation is classified from its message content (code generation,
complex reasoning, simple Q&A), a cheaper or more suitable model is
suggested with a confidence score, and the savings of the switch are priced
from the catalog on input and output tokens. Recommendations are grouped by
"current→suggested" transition.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ccost.conversations import Conversation, group_conversations
from ccost.pricing import TIER_HIGH, PricingCatalog, model_tier
from ccost.transcripts import UNKNOWN_MODEL, Event
from ccost.usage import resolve_cost

OPUS_MODEL = "claude-opus-4-20250514"
SONNET_MODEL = "claude-sonnet-4-20250514"
HAIKU_MODEL = "claude-haiku-3-5-20241022"

CODE_KEYWORDS = (
    "function", "class", "def ", "return", "import", "const ", "let ", "var ",
    "```", "console.log", "print(", "if __name__", "export", "module.exports",
)
SIMPLE_QA_PATTERNS = ("what is", "how do i", "can you", "please", "explain", "help me", "?")
COMPLEX_KEYWORDS = (
    "analyze", "compare", "evaluate", "strategy", "algorithm", "optimization",
    "architecture", "design pattern", "performance", "scalability", "complexity", "tradeoff",
)

MIN_CONFIDENCE = 0.3
MIN_SAVINGS = 0.01
MIN_SAVINGS_PERCENTAGE = 10.0

CONFIDENCE_LOW = "Low"
CONFIDENCE_MEDIUM = "Medium"
CONFIDENCE_HIGH = "High"


def confidence_level(score: float) -> str:
    if score < 0.4:
        return CONFIDENCE_LOW
    if score < 0.7:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_HIGH


def grouped_confidence(conversation_count: int) -> float:
    if conversation_count <= 1:
        return 0.5
    if conversation_count <= 5:
        return 0.7
    return 0.9


@dataclass
class ConversationPattern:
    conversation_id: str
    message_count: int
    total_input_tokens: int
    total_output_tokens: int
    average_input_length: float
    average_output_length: float
    duration_minutes: Optional[float]
    has_code_generation: bool
    has_complex_reasoning: bool
    is_simple_qa: bool
    current_model: str
    total_cost: float


def _contains_any(text: str, needles: Iterable[str]) -> bool:
    return any(n in text for n in needles)


def analyze_pattern(conv: Conversation, catalog: Optional[PricingCatalog] = None, mode: str = "auto") -> ConversationPattern:
    if not conv.events:
        raise ValueError("Cannot analyze empty conversation")
    inp = out = 0
    total_cost = 0.0
    current_model = UNKNOWN_MODEL
    has_code = has_complex = False
    qa_hits = 0
    content_messages = 0
    for ev in conv.events:
        i, o, _, _ = ev.tokens()
        inp += i
        out += o
        total_cost += resolve_cost(ev, catalog, mode)[0]
        if ev.model != UNKNOWN_MODEL:
            current_model = ev.model
        text = ev.content
        if text is None:
            continue
        content_messages += 1
        lowered = text.lower()
        has_code = has_code or _contains_any(lowered, CODE_KEYWORDS)
        has_complex = has_complex or _contains_any(lowered, COMPLEX_KEYWORDS)
        if _contains_any(lowered, SIMPLE_QA_PATTERNS):
            qa_hits += 1

    count = len(conv.events)
    stamped = sum(1 for ev in conv.events if ev.timestamp is not None)
    duration = conv.duration_minutes if stamped >= 2 else None
    simple_qa = (
        not has_code
        and not has_complex
        and qa_hits >= content_messages // 2
        and count <= 5
        and inp < 10_000
        and out < 15_000
    )
    return ConversationPattern(
        conversation_id=conv.conversation_id,
        message_count=count,
        total_input_tokens=inp,
        total_output_tokens=out,
        average_input_length=inp / count,
        average_output_length=out / count,
        duration_minutes=duration,
        has_code_generation=has_code,
        has_complex_reasoning=has_complex,
        is_simple_qa=simple_qa,
        current_model=current_model,
        total_cost=total_cost,
    )


def suggest_model(p: ConversationPattern) -> Tuple[str, float, str]:
    """(suggested model, confidence, reasoning); first matching rule wins."""
    if p.has_complex_reasoning and p.total_input_tokens > 50_000:
        return OPUS_MODEL, 0.9, "Complex reasoning with large context requires Opus capabilities"
    if p.has_code_generation and p.message_count > 10:
        return SONNET_MODEL, 0.8, "Code generation in extended conversations is well-suited for Sonnet"
    if p.is_simple_qa:
        return HAIKU_MODEL, 0.9, "Simple question-and-answer patterns are perfect for Haiku"
    if p.message_count <= 3 and not p.has_complex_reasoning and p.total_input_tokens < 5_000:
        return HAIKU_MODEL, 0.8, "Short, simple conversations are cost-effective with Haiku"
    if p.has_code_generation and not p.has_complex_reasoning:
        return SONNET_MODEL, 0.7, "Code generation tasks are well-handled by Sonnet"
    if p.message_count <= 8 and p.total_input_tokens < 20_000 and not p.has_complex_reasoning:
        return SONNET_MODEL, 0.6, "Standard conversations work well with Sonnet"
    if model_tier(p.current_model) == TIER_HIGH and not p.has_complex_reasoning and p.total_input_tokens < 30_000:
        return (
            SONNET_MODEL,
            0.7,
            "Opus may be overkill for this conversation pattern; Sonnet could provide similar results",
        )
    return p.current_model, 0.1, "Current model selection appears appropriate for this use case"


def calculate_savings(p: ConversationPattern, suggested_model: str, catalog: PricingCatalog) -> Tuple[float, float]:
    """(savings, savings percentage) of running the same input/output on another model."""
    current = catalog.price_vector(p.current_model).cost(p.total_input_tokens, p.total_output_tokens)
    suggested = catalog.price_vector(suggested_model).cost(p.total_input_tokens, p.total_output_tokens)
    savings = current - suggested
    pct = savings / current * 100 if current > 0 else 0.0
    return savings, pct


@dataclass
class Recommendation:
    conversation_pattern: str
    current_model: str
    suggested_model: str
    confidence_score: float
    potential_savings: float
    potential_savings_percentage: float
    reasoning: str
    conversation_count: int = 1
    total_current_cost: float = 0.0
    total_potential_cost: float = 0.0

    @property
    def confidence_level(self) -> str:
        return confidence_level(self.confidence_score)

    @property
    def transition(self) -> str:
        return f"{self.current_model}→{self.suggested_model}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_pattern": self.conversation_pattern,
            "current_model": self.current_model,
            "suggested_model": self.suggested_model,
            "confidence_score": self.confidence_score,
            "confidence_level": self.confidence_level,
            "potential_savings": self.potential_savings,
            "potential_savings_percentage": self.potential_savings_percentage,
            "reasoning": self.reasoning,
            "conversation_count": self.conversation_count,
            "total_current_cost": self.total_current_cost,
            "total_potential_cost": self.total_potential_cost,
        }


def recommend_for(p: ConversationPattern, catalog: PricingCatalog) -> Optional[Recommendation]:
    suggested, confidence, reasoning = suggest_model(p)
    if suggested == p.current_model or confidence < MIN_CONFIDENCE:
        return None
    savings, pct = calculate_savings(p, suggested, catalog)
    if savings < MIN_SAVINGS and pct < MIN_SAVINGS_PERCENTAGE:
        return None
    return Recommendation(
        conversation_pattern=f"{p.message_count} messages, {p.total_input_tokens} input tokens",
        current_model=p.current_model,
        suggested_model=suggested,
        confidence_score=confidence,
        potential_savings=savings,
        potential_savings_percentage=pct,
        reasoning=reasoning,
        total_current_cost=p.total_cost,
        total_potential_cost=p.total_cost - savings,
    )


@dataclass
class OptimizationSummary:
    total_conversations_analyzed: int = 0
    total_current_cost: float = 0.0
    total_potential_cost: float = 0.0
    recommendations: List[Recommendation] = field(default_factory=list)
    model_distribution: Dict[str, int] = field(default_factory=dict)
    optimization_opportunities: Dict[str, float] = field(default_factory=dict)

    @property
    def total_potential_savings(self) -> float:
        return self.total_current_cost - self.total_potential_cost

    @property
    def savings_percentage(self) -> float:
        if self.total_current_cost <= 0:
            return 0.0
        return self.total_potential_savings / self.total_current_cost * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_conversations_analyzed": self.total_conversations_analyzed,
            "total_current_cost": self.total_current_cost,
            "total_potential_cost": self.total_potential_cost,
            "total_potential_savings": self.total_potential_savings,
            "savings_percentage": self.savings_percentage,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "model_distribution": dict(sorted(self.model_distribution.items())),
            "optimization_opportunities": dict(sorted(self.optimization_opportunities.items())),
        }


def group_recommendations(recs: Iterable[Recommendation]) -> List[Recommendation]:
    """Merge per-conversation recommendations by transition, largest savings first."""
    grouped: Dict[str, Recommendation] = {}
    for rec in recs:
        g = grouped.get(rec.transition)
        if g is None:
            g = Recommendation(
                conversation_pattern="Multiple conversations",
                current_model=rec.current_model,
                suggested_model=rec.suggested_model,
                confidence_score=0.0,
                potential_savings=0.0,
                potential_savings_percentage=0.0,
                reasoning=rec.reasoning,
                conversation_count=0,
            )
            grouped[rec.transition] = g
        g.conversation_count += rec.conversation_count
        g.potential_savings += rec.potential_savings
        g.total_current_cost += rec.total_current_cost
        g.total_potential_cost += rec.total_potential_cost
    out = []
    for g in grouped.values():
        g.potential_savings_percentage = g.potential_savings / g.total_current_cost * 100 if g.total_current_cost > 0 else 0.0
        g.confidence_score = grouped_confidence(g.conversation_count)
        out.append(g)
    out.sort(key=lambda r: (-r.potential_savings, r.transition))
    return out


def analyze_optimization_opportunities(
    events: Iterable[Event],
    catalog: PricingCatalog,
    mode: str = "auto",
) -> OptimizationSummary:
    summary = OptimizationSummary()
    recs: List[Recommendation] = []
    for conv in group_conversations(events):
        p = analyze_pattern(conv, catalog, mode)
        summary.total_conversations_analyzed += 1
        summary.model_distribution[p.current_model] = summary.model_distribution.get(p.current_model, 0) + 1
        summary.total_current_cost += p.total_cost
        rec = recommend_for(p, catalog)
        if rec is None:
            summary.total_potential_cost += p.total_cost
            continue
        summary.total_potential_cost += rec.total_potential_cost
        summary.optimization_opportunities[p.current_model] = (
            summary.optimization_opportunities.get(p.current_model, 0.0) + rec.potential_savings
        )
        recs.append(rec)
    summary.recommendations = group_recommendations(recs)
    return summary


def filter_by_confidence(summary: OptimizationSummary, min_confidence: float) -> OptimizationSummary:
    """Drop recommendations under the threshold; run totals are left as analyzed."""
    summary.recommendations = [r for r in summary.recommendations if r.confidence_score >= min_confidence]
    return summary


def filter_by_model_transition(
    summary: OptimizationSummary,
    from_model: Optional[str] = None,
    to_model: Optional[str] = None,
) -> OptimizationSummary:
    summary.recommendations = [
        r for r in summary.recommendations
        if (from_model is None or from_model in r.current_model)
        and (to_model is None or to_model in r.suggested_model)
    ]
    return summary
