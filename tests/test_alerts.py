import subprocess
from datetime import datetime, timedelta, timezone

import pytest

from ccost.alerts import (
    CACHE_RATE,
    DAILY_SPENDING,
    DAILY_TOKENS,
    HIGH,
    MONTHLY_SPENDING,
    OPUS_EFFICIENCY,
    SPENDING_SPIKE,
    WEEKLY_SPENDING,
    Alert,
    AlertEngine,
    AlertRule,
    AlertThresholds,
    DesktopNotifier,
    NotificationError,
    WeeklySummary,
    analyze_cache_efficiency,
    analyze_model_efficiency,
    check_spending_spike,
    send_alerts,
)
from ccost.config import ALERT_IDS, AlertsConfig
from ccost.usage import ModelUsage, ProjectUsage

OPUS = "claude-opus-4-20250514"
SONNET = "claude-sonnet-4-20250514"


def project(name="p", **models):
    p = ProjectUsage(project_name=name)
    for model_name, (count, cost, inp, read) in models.items():
        m = ModelUsage(model_name=model_name)
        m.message_count = count
        m.cost_usd = cost
        m.input_tokens = inp
        m.cache_read_tokens = read
        p.models[model_name] = m
    p.recompute_totals()
    return p


class Clock:
    def __init__(self):
        self.now = datetime(2025, 8, 25, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def all_enabled():
    return AlertThresholds(enabled_alerts=list(ALERT_IDS))


def quiet_check(engine, **overrides):
    args = dict(
        projects=[],
        daily_spending=0.0,
        weekly_spending=0.0,
        monthly_spending=0.0,
        daily_tokens=0,
        currency="USD",
        daily_history=[],
    )
    args.update(overrides)
    return engine.check(**args)


def test_low_cache_rate():
    p = project(**{SONNET: (10, 1.0, 200_000, 10_000)})
    alert = analyze_cache_efficiency([p], 0.3)
    assert alert.alert_id == CACHE_RATE
    assert abs(alert.data["current_rate"] - 0.05) < 1e-9
    assert alert.data["expected_rate"] == 0.3
    assert alert.title == "Low Cache Hit Rate: 5.0% (expected: 30.0%)"


def test_cache_rate_needs_significant_input():
    p = project(**{SONNET: (10, 1.0, 100_000, 0)})
    assert analyze_cache_efficiency([p], 0.3) is None
    p = project(**{SONNET: (10, 1.0, 200_000, 100_000)})
    assert analyze_cache_efficiency([p], 0.3) is None


def test_spending_spike():
    history = [1.0, 1.5, 2.0, 1.2, 1.8]
    alert = check_spending_spike(6.0, history, "USD")
    assert alert.alert_id == SPENDING_SPIKE
    assert abs(alert.data["factor"] - 4.0) < 1e-9
    assert abs(alert.data["average"] - 1.5) < 1e-9
    assert check_spending_spike(2.0, history, "USD") is None


def test_spike_needs_history_and_amount():
    assert check_spending_spike(6.0, [1.0, 1.0], "USD") is None
    assert check_spending_spike(6.0, [0.0, 0.0, 0.0], "USD") is None
    # 4x the average but not above the minimum amount
    assert check_spending_spike(0.8, [0.2, 0.2, 0.2], "USD") is None


def test_model_efficiency():
    p = project(**{OPUS: (21, 21.0, 0, 0), SONNET: (5, 0.5, 0, 0)})
    alert = analyze_model_efficiency([p], "EUR", 20)
    assert alert.alert_id == OPUS_EFFICIENCY
    assert alert.data["opus_uses"] == 21
    assert abs(alert.data["potential_savings"] - 18.9) < 1e-9
    assert "EUR" in alert.message
    # exactly at the threshold does not fire
    p = project(**{OPUS: (20, 20.0, 0, 0), SONNET: (5, 0.5, 0, 0)})
    assert analyze_model_efficiency([p], "USD", 20) is None
    # no mid-tier baseline
    p = project(**{OPUS: (50, 50.0, 0, 0)})
    assert analyze_model_efficiency([p], "USD", 20) is None


def test_limits_fire_only_when_exceeded():
    engine = AlertEngine(all_enabled(), Clock())
    fired = quiet_check(engine, daily_spending=10.0, weekly_spending=50.01, monthly_spending=250.0, daily_tokens=1_000_001)
    ids = [a.alert_id for a in fired]
    assert DAILY_SPENDING not in ids
    assert WEEKLY_SPENDING in ids
    assert MONTHLY_SPENDING in ids
    assert DAILY_TOKENS in ids


def test_disabled_rules_never_fire():
    engine = AlertEngine(AlertThresholds(), Clock())
    fired = quiet_check(engine, daily_spending=100.0, weekly_spending=1000.0, daily_tokens=10**9)
    assert [a.alert_id for a in fired] == [DAILY_SPENDING]


def test_cooldown_suppresses_repeat_alerts():
    clock = Clock()
    engine = AlertEngine(AlertThresholds(), clock)
    assert len(quiet_check(engine, daily_spending=20.0)) == 1
    clock.now += timedelta(minutes=30)
    assert quiet_check(engine, daily_spending=20.0) == []
    clock.now += timedelta(minutes=30)
    assert quiet_check(engine, daily_spending=20.0) == []
    clock.now += timedelta(seconds=1)
    assert len(quiet_check(engine, daily_spending=20.0)) == 1


def test_engine_runs_pattern_rules():
    engine = AlertEngine(AlertThresholds(), Clock())
    p = project(**{SONNET: (10, 1.0, 200_000, 10_000)})
    fired = quiet_check(engine, projects=[p], daily_spending=6.0, daily_history=[1.0, 1.5, 2.0, 1.2, 1.8])
    assert sorted(a.alert_id for a in fired) == [CACHE_RATE, SPENDING_SPIKE]


def test_thresholds_from_config():
    cfg = AlertsConfig(daily_spending_limit=5.0, enabled_alerts=["daily_tokens"])
    t = AlertThresholds.from_config(cfg)
    assert t.daily_spending_limit == 5.0
    assert t.enabled_alerts == ["daily_tokens"]
    t.enabled_alerts.append("cache_rate")
    assert cfg.enabled_alerts == ["daily_tokens"]


def test_set_enabled_and_threshold():
    engine = AlertEngine(AlertThresholds(), Clock())
    engine.set_enabled(DAILY_TOKENS, True)
    engine.set_threshold("daily_tokens", 10)
    assert [a.alert_id for a in quiet_check(engine, daily_tokens=11)] == [DAILY_TOKENS]
    engine.set_enabled(DAILY_TOKENS, False)
    assert DAILY_TOKENS not in engine.thresholds.enabled_alerts
    with pytest.raises(ValueError):
        engine.set_enabled("nope", True)
    with pytest.raises(ValueError):
        engine.set_threshold("nope", 1)


def test_status_rows():
    clock = Clock()
    engine = AlertEngine(AlertThresholds(), clock)
    quiet_check(engine, daily_spending=20.0)
    clock.now += timedelta(minutes=90)
    rows = {r["alert"]: r for r in engine.status()}
    assert list(rows) == sorted(ALERT_IDS)
    assert rows[DAILY_SPENDING]["status"] == "Ready"
    assert rows[WEEKLY_SPENDING]["status"] == "Disabled"
    assert rows[CACHE_RATE]["status"] == "Ready"
    rule = AlertRule(MONTHLY_SPENDING, cooldown=timedelta(hours=24), last_triggered=clock.now - timedelta(hours=3))
    assert rule.status_text(clock.now) == "Cooldown (3h ago)"


def test_titles_and_priorities():
    alert = Alert(DAILY_SPENDING, {"limit": 10.0, "current": 12.5, "currency": "USD"})
    assert alert.title == "Daily Spending Limit Exceeded: 12.50 USD / 10.00 USD"
    assert alert.priority == HIGH
    assert alert.urgency == "critical"
    assert alert.to_dict()["alert"] == DAILY_SPENDING
    spike = Alert(SPENDING_SPIKE, {"current": 6.0, "average": 1.5, "factor": 4.0, "currency": "USD"})
    assert spike.title == "Unusual Spending Spike: 6.00 USD (4.0x higher than 1.50 USD average)"


def test_weekly_summary():
    p1 = project("a", **{SONNET: (3, 1.0, 100, 0)})
    p2 = project("b", **{OPUS: (1, 2.0, 50, 0)})
    s = WeeklySummary.from_projects([p1, p2], "USD")
    assert s.total_messages == 4
    assert s.most_used_model == SONNET
    assert s.projects_count == 2
    msg = s.to_notification_message()
    assert "• Total Cost: 3.00 USD" in msg
    assert WeeklySummary.from_projects([], "USD").most_used_model == "None"


class FakeRunner:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if self.error is not None:
            raise self.error


def test_notifier_linux_command():
    runner = FakeRunner()
    n = DesktopNotifier(runner=runner, platform="linux", env={"DISPLAY": ":0"})
    n.notify("Title", "Body", "critical")
    assert runner.calls == [["notify-send", "--app-name=ccost", "--urgency", "critical", "Title", "Body"]]


def test_notifier_macos_command_quotes():
    n = DesktopNotifier(runner=FakeRunner(), platform="darwin", env={})
    cmd = n.command('Say "hi"', "Body", "normal")
    assert cmd[0] == "osascript"
    assert 'with title "Say \\"hi\\""' in cmd[2]


def test_notifier_unavailable_or_failing():
    headless = DesktopNotifier(runner=FakeRunner(), platform="linux", env={})
    with pytest.raises(NotificationError):
        headless.notify("t", "b")
    failing = DesktopNotifier(runner=FakeRunner(subprocess.CalledProcessError(1, "notify-send")), platform="linux", env={"WAYLAND_DISPLAY": "w"})
    with pytest.raises(NotificationError):
        failing.send_test()
    with pytest.raises(NotificationError):
        DesktopNotifier(enabled=False).send_test()


def test_send_alerts_collects_failures():
    runner = FakeRunner(OSError("no binary"))
    n = DesktopNotifier(runner=runner, platform="linux", env={"DISPLAY": ":0"})
    alerts = [
        Alert(DAILY_SPENDING, {"limit": 1.0, "current": 2.0, "currency": "USD"}),
        Alert(CACHE_RATE, {"current_rate": 0.1, "expected_rate": 0.3}),
    ]
    warnings = send_alerts(alerts, n)
    assert len(warnings) == 2
    assert len(runner.calls) == 2
