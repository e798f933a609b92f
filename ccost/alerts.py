"""
Alerts engine.

Evaluates spending and token limits, spend spikes against the recent daily
average, and usage patterns (expensive-tier overuse, low cache reuse). Each
rule has a cooldown; a rule that fired is suppressed until the cooldown has
passed. Cooldown state lives only in the running process.

Fired alerts can be pushed as desktop notifications through notify-send
(Linux) or osascript (macOS).
"""

import os
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from ccost.config import ALERT_IDS, DEFAULT_ENABLED_ALERTS, AlertsConfig
from ccost.output import format_number, format_tokens
from ccost.pricing import TIER_HIGH, TIER_MID, model_tier
from ccost.usage import ProjectUsage, combined_totals, most_used_model

LOW = "Low"
MEDIUM = "Medium"
HIGH = "High"
CRITICAL = "Critical"

DAILY_SPENDING = "daily_spending"
WEEKLY_SPENDING = "weekly_spending"
MONTHLY_SPENDING = "monthly_spending"
DAILY_TOKENS = "daily_tokens"
OPUS_EFFICIENCY = "opus_efficiency"
CACHE_RATE = "cache_rate"
SPENDING_SPIKE = "spending_spike"

COOLDOWN_HOURS: Dict[str, int] = {
    DAILY_SPENDING: 1,
    WEEKLY_SPENDING: 6,
    MONTHLY_SPENDING: 24,
    DAILY_TOKENS: 1,
    OPUS_EFFICIENCY: 4,
    CACHE_RATE: 2,
    SPENDING_SPIKE: 1,
}

PRIORITIES: Dict[str, str] = {
    DAILY_SPENDING: HIGH,
    WEEKLY_SPENDING: HIGH,
    MONTHLY_SPENDING: CRITICAL,
    DAILY_TOKENS: MEDIUM,
    OPUS_EFFICIENCY: LOW,
    CACHE_RATE: MEDIUM,
    SPENDING_SPIKE: MEDIUM,
}

URGENCY = {CRITICAL: "critical", HIGH: "critical", MEDIUM: "normal", LOW: "low"}

CACHE_SIGNIFICANCE_FLOOR = 100_000
SPIKE_MIN_HISTORY_DAYS = 3
SPIKE_MIN_AMOUNT = 1.0

TEST_TITLE = "ccost Alert System Test"
TEST_BODY = "Desktop notifications are working correctly! You'll receive alerts when thresholds are exceeded."
SUMMARY_TITLE = "Weekly Claude Usage Summary"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AlertThresholds:
    daily_spending_limit: Optional[float] = 10.0
    weekly_spending_limit: Optional[float] = 50.0
    monthly_spending_limit: Optional[float] = 200.0
    daily_token_limit: Optional[int] = 1_000_000
    cache_hit_rate_threshold: float = 0.3
    opus_usage_threshold: int = 20
    spending_spike_factor: float = 3.0
    enabled_alerts: List[str] = field(default_factory=lambda: list(DEFAULT_ENABLED_ALERTS))

    @classmethod
    def from_config(cls, cfg: AlertsConfig) -> "AlertThresholds":
        return cls(
            daily_spending_limit=cfg.daily_spending_limit,
            weekly_spending_limit=cfg.weekly_spending_limit,
            monthly_spending_limit=cfg.monthly_spending_limit,
            daily_token_limit=cfg.daily_token_limit,
            cache_hit_rate_threshold=cfg.cache_hit_rate_threshold,
            opus_usage_threshold=cfg.opus_usage_threshold,
            spending_spike_factor=cfg.spending_spike_factor,
            enabled_alerts=list(cfg.enabled_alerts),
        )


@dataclass
class Alert:
    """A fired alert: rule id plus the values its title and message are built from."""

    alert_id: str
    data: Dict[str, Any]

    @property
    def priority(self) -> str:
        return PRIORITIES[self.alert_id]

    @property
    def urgency(self) -> str:
        return URGENCY[self.priority]

    @property
    def title(self) -> str:
        d = self.data
        if self.alert_id in (DAILY_SPENDING, WEEKLY_SPENDING, MONTHLY_SPENDING):
            label = {DAILY_SPENDING: "Daily", WEEKLY_SPENDING: "Weekly", MONTHLY_SPENDING: "Monthly"}[self.alert_id]
            cur = d["currency"]
            return f"{label} Spending Limit Exceeded: {d['current']:.2f} {cur} / {d['limit']:.2f} {cur}"
        if self.alert_id == DAILY_TOKENS:
            return f"Daily Token Limit Exceeded: {format_tokens(d['current'])} / {format_tokens(d['limit'])}"
        if self.alert_id == OPUS_EFFICIENCY:
            return f"High Opus Usage: {d['opus_uses']} messages (potential savings: {d['potential_savings']:.2f} {d['currency']})"
        if self.alert_id == CACHE_RATE:
            return f"Low Cache Hit Rate: {d['current_rate'] * 100:.1f}% (expected: {d['expected_rate'] * 100:.1f}%)"
        if self.alert_id == SPENDING_SPIKE:
            cur = d["currency"]
            return f"Unusual Spending Spike: {d['current']:.2f} {cur} ({d['factor']:.1f}x higher than {d['average']:.2f} {cur} average)"
        raise ValueError(f"Unknown alert: {self.alert_id}")

    @property
    def message(self) -> str:
        d = self.data
        if self.alert_id == DAILY_SPENDING:
            cur = d["currency"]
            return (
                f"Your daily Claude usage has reached {d['current']:.2f} {cur}, exceeding your limit of "
                f"{d['limit']:.2f} {cur}. Consider reviewing your usage patterns."
            )
        if self.alert_id in (WEEKLY_SPENDING, MONTHLY_SPENDING):
            label = "weekly" if self.alert_id == WEEKLY_SPENDING else "monthly"
            cur = d["currency"]
            return f"Your {label} Claude usage has reached {d['current']:.2f} {cur}, exceeding your limit of {d['limit']:.2f} {cur}."
        if self.alert_id == DAILY_TOKENS:
            return f"Your daily token usage has reached {format_number(d['current'])}, exceeding your limit of {format_number(d['limit'])}."
        if self.alert_id == OPUS_EFFICIENCY:
            return (
                f"You've used Claude Opus {d['opus_uses']} times today. Consider using Sonnet for simpler tasks "
                f"to save approximately {d['potential_savings']:.2f} {d['currency']}."
            )
        if self.alert_id == CACHE_RATE:
            return (
                f"Your cache hit rate is {d['current_rate'] * 100:.1f}%, below the expected {d['expected_rate'] * 100:.1f}%. "
                "Try reusing conversation contexts to improve efficiency."
            )
        if self.alert_id == SPENDING_SPIKE:
            cur = d["currency"]
            return (
                f"Today's spending of {d['current']:.2f} {cur} is {d['factor']:.1f}x higher than your recent average "
                f"of {d['average']:.2f} {cur}. Check for any unusual usage patterns."
            )
        raise ValueError(f"Unknown alert: {self.alert_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert_id,
            "priority": self.priority,
            "title": self.title,
            "message": self.message,
            "data": dict(self.data),
        }


@dataclass
class AlertRule:
    alert_id: str
    enabled: bool = True
    cooldown: timedelta = timedelta(hours=1)
    last_triggered: Optional[datetime] = None

    def can_trigger(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        if self.last_triggered is None:
            return True
        return now - self.last_triggered > self.cooldown

    def status_text(self, now: datetime) -> str:
        if not self.enabled:
            return "Disabled"
        if self.last_triggered is not None and not self.can_trigger(now):
            age = now - self.last_triggered
            hours = int(age.total_seconds() // 3600)
            if hours < 24:
                return f"Cooldown ({hours}h ago)"
            return f"Cooldown ({age.days}d ago)"
        return "Ready"


def check_spending_spike(current: float, history: List[float], currency: str, factor_threshold: float = 3.0) -> Optional[Alert]:
    if len(history) < SPIKE_MIN_HISTORY_DAYS:
        return None
    average = sum(history) / len(history)
    if average <= 0:
        return None
    factor = current / average
    if factor >= factor_threshold and current > SPIKE_MIN_AMOUNT:
        return Alert(SPENDING_SPIKE, {"current": current, "average": average, "factor": factor, "currency": currency})
    return None


def analyze_model_efficiency(projects: Iterable[ProjectUsage], currency: str, usage_threshold: int = 20) -> Optional[Alert]:
    """High-tier messages costing more than twice the mid tier per message."""
    high_count = 0
    high_cost = 0.0
    mid_count = 0
    mid_cost = 0.0
    for proj in projects:
        for name, m in proj.models.items():
            tier = model_tier(name)
            if tier == TIER_HIGH:
                high_count += m.message_count
                high_cost += m.cost_usd
            elif tier == TIER_MID:
                mid_count += m.message_count
                mid_cost += m.cost_usd
    if high_count > usage_threshold and mid_count > 0:
        avg_mid = mid_cost / mid_count
        avg_high = high_cost / high_count
        if avg_high > avg_mid * 2.0:
            savings = (avg_high - avg_mid) * high_count
            return Alert(OPUS_EFFICIENCY, {"opus_uses": high_count, "potential_savings": savings, "currency": currency})
    return None


def analyze_cache_efficiency(projects: Iterable[ProjectUsage], expected_rate: float = 0.3) -> Optional[Alert]:
    """cache_read / input below the expected rate, once input is significant."""
    totals = combined_totals(projects)
    if totals.input_tokens <= CACHE_SIGNIFICANCE_FLOOR:
        return None
    rate = totals.cache_read_tokens / totals.input_tokens
    if rate < expected_rate:
        return Alert(CACHE_RATE, {"current_rate": rate, "expected_rate": expected_rate})
    return None


class AlertEngine:
    def __init__(self, thresholds: Optional[AlertThresholds] = None, now: Callable[[], datetime] = _utcnow):
        self.thresholds = thresholds or AlertThresholds()
        self._now = now
        enabled = set(self.thresholds.enabled_alerts)
        self.rules: Dict[str, AlertRule] = {
            alert_id: AlertRule(alert_id, alert_id in enabled, timedelta(hours=COOLDOWN_HOURS[alert_id]))
            for alert_id in ALERT_IDS
        }

    def can_trigger(self, alert_id: str) -> bool:
        rule = self.rules.get(alert_id)
        return rule is not None and rule.can_trigger(self._now())

    def _fire(self, alert: Alert, fired: List[Alert]) -> None:
        fired.append(alert)
        self.rules[alert.alert_id].last_triggered = self._now()

    def check(
        self,
        projects: List[ProjectUsage],
        daily_spending: float,
        weekly_spending: float,
        monthly_spending: float,
        daily_tokens: int,
        currency: str,
        daily_history: List[float],
    ) -> List[Alert]:
        """Evaluate every enabled rule once; returns the alerts that fired."""
        t = self.thresholds
        fired: List[Alert] = []
        limits = (
            (DAILY_SPENDING, t.daily_spending_limit, daily_spending),
            (WEEKLY_SPENDING, t.weekly_spending_limit, weekly_spending),
            (MONTHLY_SPENDING, t.monthly_spending_limit, monthly_spending),
        )
        for alert_id, limit, current in limits:
            if limit is not None and current > limit and self.can_trigger(alert_id):
                self._fire(Alert(alert_id, {"limit": limit, "current": current, "currency": currency}), fired)

        if t.daily_token_limit is not None and daily_tokens > t.daily_token_limit and self.can_trigger(DAILY_TOKENS):
            self._fire(Alert(DAILY_TOKENS, {"limit": t.daily_token_limit, "current": daily_tokens}), fired)

        if self.can_trigger(SPENDING_SPIKE):
            spike = check_spending_spike(daily_spending, daily_history, currency, t.spending_spike_factor)
            if spike is not None:
                self._fire(spike, fired)

        for alert in (
            analyze_model_efficiency(projects, currency, t.opus_usage_threshold),
            analyze_cache_efficiency(projects, t.cache_hit_rate_threshold),
        ):
            if alert is not None and self.can_trigger(alert.alert_id):
                self._fire(alert, fired)
        return fired

    def set_enabled(self, alert_id: str, enabled: bool) -> None:
        if alert_id not in self.rules:
            raise ValueError(f"Unknown alert: {alert_id}")
        self.rules[alert_id].enabled = enabled
        current = self.thresholds.enabled_alerts
        if enabled and alert_id not in current:
            current.append(alert_id)
        elif not enabled and alert_id in current:
            current.remove(alert_id)

    def set_threshold(self, name: str, value: float) -> None:
        t = self.thresholds
        if name == "daily_spending":
            t.daily_spending_limit = value
        elif name == "weekly_spending":
            t.weekly_spending_limit = value
        elif name == "monthly_spending":
            t.monthly_spending_limit = value
        elif name == "daily_tokens":
            t.daily_token_limit = int(value)
        elif name == "cache_hit_rate":
            t.cache_hit_rate_threshold = value
        elif name == "opus_usage":
            t.opus_usage_threshold = int(value)
        elif name == "spending_spike_factor":
            t.spending_spike_factor = value
        else:
            raise ValueError(f"Unknown threshold type: {name}")

    def status(self) -> List[Dict[str, Any]]:
        now = self._now()
        rows = []
        for alert_id in sorted(self.rules):
            rule = self.rules[alert_id]
            rows.append({
                "alert": alert_id,
                "enabled": rule.enabled,
                "can_trigger": rule.can_trigger(now),
                "last_triggered": rule.last_triggered.isoformat() if rule.last_triggered else None,
                "status": rule.status_text(now),
            })
        return rows


@dataclass
class WeeklySummary:
    total_cost: float
    currency: str
    total_messages: int
    total_input_tokens: int
    total_output_tokens: int
    most_used_model: str
    projects_count: int

    @classmethod
    def from_projects(cls, projects: List[ProjectUsage], currency: str) -> "WeeklySummary":
        totals = combined_totals(projects)
        return cls(
            total_cost=totals.cost_usd,
            currency=currency,
            total_messages=totals.message_count,
            total_input_tokens=totals.input_tokens,
            total_output_tokens=totals.output_tokens,
            most_used_model=most_used_model(projects) or "None",
            projects_count=len(projects),
        )

    def to_notification_message(self) -> str:
        return (
            "Weekly Claude Usage Summary:\n"
            f"• Total Cost: {self.total_cost:.2f} {self.currency}\n"
            f"• Messages: {format_number(self.total_messages)}\n"
            f"• Input Tokens: {format_tokens(self.total_input_tokens)}\n"
            f"• Output Tokens: {format_tokens(self.total_output_tokens)}\n"
            f"• Most Used Model: {self.most_used_model}\n"
            f"• Active Projects: {self.projects_count}"
        )


class NotificationError(Exception):
    """A desktop notification could not be shown."""


def _osascript_quote(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


class DesktopNotifier:
    """Best-effort desktop notifications via notify-send or osascript."""

    def __init__(self, enabled: bool = True, runner: Callable[..., Any] = subprocess.run, platform: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.enabled = enabled
        self.runner = runner
        self.platform = platform or sys.platform
        self.env = env if env is not None else dict(os.environ)

    def is_available(self) -> bool:
        if self.platform.startswith("linux"):
            return bool(self.env.get("DISPLAY") or self.env.get("WAYLAND_DISPLAY"))
        return self.platform == "darwin"

    def command(self, title: str, body: str, urgency: str) -> List[str]:
        if self.platform == "darwin":
            script = f"display notification {_osascript_quote(body)} with title {_osascript_quote(title)}"
            return ["osascript", "-e", script]
        return ["notify-send", "--app-name=ccost", "--urgency", urgency, title, body]

    def notify(self, title: str, body: str, urgency: str = "normal") -> None:
        if not self.enabled:
            return
        if not self.is_available():
            raise NotificationError("Desktop notifications are not available on this system")
        try:
            self.runner(self.command(title, body, urgency), check=True, capture_output=True, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            raise NotificationError(f"Failed to show desktop notification: {e}") from e

    def send_test(self) -> None:
        if not self.enabled:
            raise NotificationError("Desktop notifications are disabled")
        self.notify(TEST_TITLE, TEST_BODY, "normal")

    def send_summary(self, summary: WeeklySummary) -> None:
        self.notify(SUMMARY_TITLE, summary.to_notification_message(), "low")


def send_alerts(alerts: Iterable[Alert], notifier: DesktopNotifier) -> List[str]:
    """Notify every alert; failures come back as warning strings and do not stop the rest."""
    warnings: List[str] = []
    for alert in alerts:
        try:
            notifier.notify(alert.title, alert.message, alert.urgency)
        except NotificationError as e:
            warnings.append(f"Failed to send notification for alert {alert.alert_id}: {e}")
    return warnings
