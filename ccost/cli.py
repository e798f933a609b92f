"""
Command-line front end.

Every subcommand loads the config, runs the transcript pipeline and renders a
table (or JSON with --json). Domain errors are turned into "Error: ..." on
stderr, or a single JSON status object, and exit status 1 here and nowhere
else.
"""

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, TextIO, Tuple

from ccost import __version__
from ccost import config as config_mod
from ccost.alerts import (
    AlertEngine,
    AlertThresholds,
    DesktopNotifier,
    NotificationError,
    WeeklySummary,
    send_alerts,
)
from ccost.config import Config, ConfigError
from ccost.conversations import SORT_KEYS, ConversationFilter, analyze_conversations, filter_conversations, sort_conversations
from ccost.currency import CurrencyConverter, CurrencyError, format_currency
from ccost.optimization import analyze_optimization_opportunities, filter_by_confidence, filter_by_model_transition
from ccost.output import (
    GREEN,
    RED,
    STATUS_ERROR,
    STATUS_SUCCESS,
    YELLOW,
    colorize,
    format_date,
    format_datetime,
    format_number,
    render_table,
    status_object,
    write_csv,
    write_json,
    write_status,
)
from ccost.pipeline import load_events
from ccost.pricing import PricingCatalog, PricingUnavailableError, pricing_cache_path
from ccost.privacy import ProjectNameMasker
from ccost.projects import PROJECT_SORT_KEYS, project_statistics, summarize_projects
from ccost.storage import Database, StorageError
from ccost.timezones import TimezoneCalculator, inclusive_until
from ccost.transcripts import UNKNOWN_MODEL, Event, MalformedTranscriptError, TranscriptRootError
from ccost.usage import (
    PeriodUsage,
    ProjectUsage,
    UsageFilter,
    aggregate_periods,
    aggregate_projects,
    combined_totals,
    daily_cost_history,
    fill_missing_days,
    period_totals,
)
from ccost.watch import DEFAULT_REFRESH_SECONDS, WatchSession, run_watch

NO_DATA = "No usage data found"
PERIOD_COMMANDS = ("today", "yesterday", "this-week", "this-month")
PRIORITY_COLORS = {"Critical": RED, "High": RED, "Medium": YELLOW, "Low": GREEN}


class CommandError(Exception):
    """Bad command-line input detected after parsing."""


@dataclass
class Context:
    args: argparse.Namespace
    cfg: Config
    out: TextIO
    err: TextIO
    json_mode: bool
    tz: TimezoneCalculator
    masker: ProjectNameMasker
    currency: str = "USD"
    rate: float = 1.0
    catalog: Optional[PricingCatalog] = None

    @property
    def verbose(self) -> bool:
        return bool(self.args.verbose)

    @property
    def colored(self) -> bool:
        return bool(self.args.colored or self.cfg.output.colored)

    @property
    def date_format(self) -> str:
        return self.cfg.output.date_format

    def warn(self, msg: str) -> None:
        print(f"Warning: {msg}", file=self.err)

    def fmt_cost(self, usd: float) -> str:
        return format_currency(usd * self.rate, self.currency, self.cfg.output.decimal_places)

    def table(self, headers: List[str], rows: List[List[Any]], rule_before_rows=None) -> None:
        render_table(headers, rows, border=self.args.border, out=self.out, rule_before_rows=rule_before_rows, colored=self.colored)


def _global_flags(p: argparse.ArgumentParser, suppress: bool) -> None:
    def d(value):
        return argparse.SUPPRESS if suppress else value

    p.add_argument("--config", default=d(None), help="Path to config.toml (default: ~/.config/ccost/config.toml)")
    p.add_argument("--project", default=d(None), help="Only include this project (matched before --hidden masking)")
    p.add_argument("--model", default=d(None), help="Only include this model")
    p.add_argument("--since", default=d(None), help="Start date (YYYY-MM-DD or RFC 3339)")
    p.add_argument("--until", default=d(None), help="End date, inclusive (YYYY-MM-DD or RFC 3339)")
    p.add_argument("--currency", default=d(None), help="Display currency, e.g. EUR (default: from config)")
    p.add_argument("--timezone", default=d(None), help="IANA timezone for day boundaries (default: from config)")
    p.add_argument("--json", action="store_true", default=d(False), help="Emit JSON instead of tables")
    p.add_argument("-v", "--verbose", action="store_true", default=d(False), help="Report per-file warnings and dedup counters on stderr")
    p.add_argument("--colored", action="store_true", default=d(False), help="Colour table output")
    p.add_argument("--hidden", action="store_true", default=d(False), help="Replace project names with pseudonyms")
    p.add_argument("--strict", action="store_true", default=d(False), help="Treat malformed lines and unreadable files as fatal")
    p.add_argument("--border", choices=["unicode", "ascii"], default=d("unicode"), help="Table border style (default: unicode)")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="ccost", description="Token usage and cost reports for Claude Code transcripts")
    ap.add_argument("--version", action="version", version=f"ccost {__version__}")
    _global_flags(ap, suppress=False)
    common = argparse.ArgumentParser(add_help=False)
    _global_flags(common, suppress=True)

    sub = ap.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("usage", parents=[common], help="All-time usage by project and model")
    for name in PERIOD_COMMANDS:
        sub.add_parser(name, parents=[common], help=f"Usage for {name.replace('-', ' ')}")

    p = sub.add_parser("daily", parents=[common], help="Usage per day")
    p.add_argument("--days", type=int, default=7, help="Number of days including today (default: 7)")
    p = sub.add_parser("weekly", parents=[common], help="Usage per ISO week")
    p.add_argument("--weeks", type=int, default=4, help="Number of weeks including this one (default: 4)")
    p = sub.add_parser("monthly", parents=[common], help="Usage per calendar month")
    p.add_argument("--months", type=int, default=6, help="Number of months including this one (default: 6)")

    p = sub.add_parser("projects", parents=[common], help="List projects")
    p.add_argument("sort_by", nargs="?", choices=PROJECT_SORT_KEYS, default="name", help="Sort order (default: name)")

    p = sub.add_parser("conversations", parents=[common], help="Per-conversation insights")
    p.add_argument("sort_by", nargs="?", choices=SORT_KEYS, default="cost", help="Sort order (default: cost)")
    p.add_argument("--export", default=None, help="Write the conversations to FILE (.json or .csv)")
    p.add_argument("--min-cost", type=float, default=None, help="Minimum conversation cost")
    p.add_argument("--max-cost", type=float, default=None, help="Maximum conversation cost")
    p.add_argument("--min-efficiency", type=float, default=None, help="Minimum efficiency score (0-100)")
    p.add_argument("--max-efficiency", type=float, default=None, help="Maximum efficiency score (0-100)")
    p.add_argument("--outliers-only", action="store_true", help="Only conversations with outlier flags")
    p.add_argument("--limit", type=int, default=None, help="Show at most N conversations")

    p = sub.add_parser("optimize", parents=[common], help="Model selection recommendations")
    p.add_argument("--confidence-threshold", type=float, default=None, help="Minimum confidence (0.0-1.0)")
    p.add_argument("--model-from", default=None, help="Only recommendations away from this model (substring)")
    p.add_argument("--model-to", default=None, help="Only recommendations towards this model (substring)")
    p.add_argument("--potential-savings", action="store_true", help="Only print the savings summary")
    p.add_argument("--export", default=None, help="Write the recommendations to FILE (.json or .csv)")

    p = sub.add_parser("config", parents=[common], help="Show or change configuration")
    csub = p.add_subparsers(dest="action", metavar="ACTION", required=True)
    csub.add_parser("show", parents=[common], help="Print the configuration")
    csub.add_parser("init", parents=[common], help="Rewrite the configuration with defaults")
    cset = csub.add_parser("set", parents=[common], help="Set KEY (dotted, e.g. currency.default_currency) to VALUE")
    cset.add_argument("key")
    cset.add_argument("value")

    p = sub.add_parser("pricing", parents=[common], help="Model pricing")
    psub = p.add_subparsers(dest="action", metavar="ACTION", required=True)
    psub.add_parser("list", parents=[common], help="List built-in rates and overrides")
    pset = psub.add_parser("set", parents=[common], help="Override MODEL with INPUT/OUTPUT USD per million tokens")
    pset.add_argument("model_name")
    pset.add_argument("input_price", type=float)
    pset.add_argument("output_price", type=float)
    psub.add_parser("update", parents=[common], help="Refetch the LiteLLM pricing document")

    p = sub.add_parser("alerts", parents=[common], help="Spending and efficiency alerts")
    asub = p.add_subparsers(dest="action", metavar="ACTION", required=True)
    acheck = asub.add_parser("check", parents=[common], help="Evaluate alert rules now")
    acheck.add_argument("--notify", action="store_true", help="Send desktop notifications for fired alerts")
    asub.add_parser("status", parents=[common], help="Show alert rules")
    asum = asub.add_parser("summary", parents=[common], help="Usage summary for the last 7 days")
    asum.add_argument("--notify", action="store_true", help="Also send the summary as a desktop notification")
    asub.add_parser("test", parents=[common], help="Send a test notification")

    p = sub.add_parser("watch", parents=[common], help="Live running totals while transcripts grow")
    p.add_argument("--refresh-seconds", type=float, default=DEFAULT_REFRESH_SECONDS,
                   help=f"Seconds between refreshes (default: {DEFAULT_REFRESH_SECONDS:g})")
    return ap


# ----------------------------------------------------------------------------
# setup


def _fail(json_mode: bool, message: str, out: TextIO, err: TextIO) -> int:
    if json_mode:
        write_status(STATUS_ERROR, message, out)
    else:
        print(f"Error: {message}", file=err)
    return 1


def _resolve_currency(ctx: Context) -> None:
    target = (ctx.args.currency or ctx.cfg.currency.default_currency).upper()
    if target == "USD":
        return
    try:
        ctx.rate = CurrencyConverter().rate(target)
        ctx.currency = target
    except CurrencyError as e:
        if ctx.verbose:
            ctx.warn(f"{e}; showing USD")


def _make_catalog(ctx: Context) -> PricingCatalog:
    overrides: Dict[str, Tuple[float, float]] = {}
    try:
        with Database() as db:
            overrides = db.list_model_pricing()
    except StorageError as e:
        if ctx.args.strict:
            raise
        ctx.warn(f"pricing overrides unavailable: {e}")
    return PricingCatalog(
        source=ctx.cfg.pricing.source,
        offline_fallback=ctx.cfg.pricing.offline_fallback,
        cache_path=pricing_cache_path(),
        overrides=overrides,
        memory_ttl_seconds=ctx.cfg.pricing.cache_ttl_minutes * 60,
        warn=ctx.warn,
    )


def _load(ctx: Context) -> List[Event]:
    events, _ = load_events(
        ctx.cfg.projects_path,
        project=ctx.args.project,
        masker=ctx.masker,
        verbose=ctx.verbose,
        strict=ctx.args.strict,
        err=ctx.err,
    )
    return events


def _filter(ctx: Context, bounds=None) -> UsageFilter:
    since = until = None
    if bounds is not None:
        since, until = bounds[0], inclusive_until(bounds[1])
    try:
        if ctx.args.since:
            since = ctx.tz.parse_bound(ctx.args.since)
        if ctx.args.until:
            until = ctx.tz.parse_bound(ctx.args.until, end_of_day=True)
    except ValueError as e:
        raise CommandError(str(e)) from e
    return UsageFilter(model=ctx.args.model, since=since, until=until)


def _no_data(ctx: Context) -> int:
    if ctx.json_mode:
        write_status(STATUS_SUCCESS, NO_DATA, ctx.out)
    else:
        print(NO_DATA, file=ctx.out)
    return 0


def _open_export(path: str):
    ext = os.path.splitext(path)[1].lower()
    if ext not in (".json", ".csv"):
        raise CommandError(f"Unsupported export format for {path}: use .json or .csv")
    try:
        return ext, open(path, "w", encoding="utf-8", newline="")
    except OSError as e:
        raise CommandError(f"Failed to write {path}: {e}") from e


# ----------------------------------------------------------------------------
# usage reports


def _render_projects(ctx: Context, projects: List[ProjectUsage], title: str) -> int:
    if not projects:
        return _no_data(ctx)
    scaled = [p.scaled(ctx.rate) for p in projects]
    totals = combined_totals(scaled)
    if ctx.json_mode:
        payload = status_object(STATUS_SUCCESS, title, [p.to_dict() for p in scaled])
        payload["currency"] = ctx.currency
        payload["totals"] = totals.totals_dict()
        write_json(payload, ctx.out)
        return 0
    headers = ["Project", "Model", "Input", "Output", "Cache Write", "Cache Read", "Messages", "Cost"]
    rows: List[List[Any]] = []
    rules = set()
    for p in scaled:
        if rows:
            rules.add(len(rows))
        for i, m in enumerate(p.sorted_models()):
            rows.append([
                p.project_name if i == 0 else "",
                m.model_name,
                format_number(m.input_tokens),
                format_number(m.output_tokens),
                format_number(m.cache_creation_tokens),
                format_number(m.cache_read_tokens),
                m.message_count,
                format_currency(m.cost_usd, ctx.currency, ctx.cfg.output.decimal_places),
            ])
    rules.add(len(rows))
    rows.append([
        "Total",
        "",
        format_number(totals.input_tokens),
        format_number(totals.output_tokens),
        format_number(totals.cache_creation_tokens),
        format_number(totals.cache_read_tokens),
        totals.message_count,
        format_currency(totals.cost_usd, ctx.currency, ctx.cfg.output.decimal_places),
    ])
    print(colorize(title, GREEN, ctx.colored), file=ctx.out)
    ctx.table(headers, rows, rule_before_rows=rules)
    return 0


def cmd_usage(ctx: Context) -> int:
    events = _load(ctx)
    projects = aggregate_projects(events, ctx.catalog, ctx.cfg.general.cost_mode, _filter(ctx))
    return _render_projects(ctx, projects, "Usage (all time)")


def cmd_period(ctx: Context) -> int:
    period = ctx.args.command
    start, end = ctx.tz.bounds(period)
    events = _load(ctx)
    projects = aggregate_projects(events, ctx.catalog, ctx.cfg.general.cost_mode, _filter(ctx, (start, end)))
    first = ctx.tz.local_date(start)
    last = ctx.tz.local_date(inclusive_until(end))
    span = format_date(first, ctx.date_format)
    if last != first:
        span += " to " + format_date(last, ctx.date_format)
    return _render_projects(ctx, projects, f"Usage for {period.replace('-', ' ')} ({span})")


def _render_periods(ctx: Context, rows_in: List[PeriodUsage], title: str) -> int:
    if not any(r.message_count for r in rows_in):
        return _no_data(ctx)
    scaled = [r.scaled(ctx.rate) for r in rows_in]
    if ctx.json_mode:
        payload = status_object(STATUS_SUCCESS, title, [r.to_dict() for r in scaled])
        payload["currency"] = ctx.currency
        write_json(payload, ctx.out)
        return 0
    headers = ["Period", "Input", "Output", "Cache Write", "Cache Read", "Messages", "Projects", "Cost"]
    rows: List[List[Any]] = []
    total = PeriodUsage(period="range")
    for r in scaled:
        label = format_date(r.start, ctx.date_format) if r.period == "day" and r.start else r.label()
        rows.append([
            label,
            format_number(r.input_tokens),
            format_number(r.output_tokens),
            format_number(r.cache_creation_tokens),
            format_number(r.cache_read_tokens),
            r.message_count,
            r.projects_count,
            format_currency(r.cost_usd, ctx.currency, ctx.cfg.output.decimal_places),
        ])
        total.merge(r)
        total.projects |= r.projects
    rows.append([
        "Total",
        format_number(total.input_tokens),
        format_number(total.output_tokens),
        format_number(total.cache_creation_tokens),
        format_number(total.cache_read_tokens),
        total.message_count,
        total.projects_count,
        format_currency(total.cost_usd, ctx.currency, ctx.cfg.output.decimal_places),
    ])
    print(colorize(title, GREEN, ctx.colored), file=ctx.out)
    ctx.table(headers, rows, rule_before_rows={len(rows) - 1})
    return 0


def cmd_daily(ctx: Context) -> int:
    days = ctx.args.days
    if days < 1:
        raise CommandError("--days must be at least 1")
    today = ctx.tz.today()
    first = today - timedelta(days=days - 1)
    events = _load(ctx)
    flt = _filter(ctx, ctx.tz.days_bounds(first, today))
    rows = aggregate_periods(events, ctx.catalog, ctx.tz, ctx.cfg.general.cost_mode, flt, period="day")
    if not ctx.args.since and not ctx.args.until:
        rows = fill_missing_days(rows, first, today)
    return _render_periods(ctx, rows, f"Daily usage (last {days} days)")


def cmd_weekly(ctx: Context) -> int:
    weeks = ctx.args.weeks
    if weeks < 1:
        raise CommandError("--weeks must be at least 1")
    today = ctx.tz.today()
    first = today - timedelta(days=today.weekday()) - timedelta(weeks=weeks - 1)
    events = _load(ctx)
    flt = _filter(ctx, ctx.tz.days_bounds(first, today))
    rows = aggregate_periods(events, ctx.catalog, ctx.tz, ctx.cfg.general.cost_mode, flt, period="week")
    return _render_periods(ctx, rows, f"Weekly usage (last {weeks} weeks)")


def cmd_monthly(ctx: Context) -> int:
    months = ctx.args.months
    if months < 1:
        raise CommandError("--months must be at least 1")
    today = ctx.tz.today()
    first = today.replace(day=1)
    for _ in range(months - 1):
        first = (first - timedelta(days=1)).replace(day=1)
    events = _load(ctx)
    flt = _filter(ctx, ctx.tz.days_bounds(first, today))
    rows = aggregate_periods(events, ctx.catalog, ctx.tz, ctx.cfg.general.cost_mode, flt, period="month")
    return _render_periods(ctx, rows, f"Monthly usage (last {months} months)")


def cmd_projects(ctx: Context) -> int:
    events = _load(ctx)
    projects = aggregate_projects(events, ctx.catalog, ctx.cfg.general.cost_mode, _filter(ctx))
    if not projects:
        return _no_data(ctx)
    summaries = summarize_projects([p.scaled(ctx.rate) for p in projects], ctx.args.sort_by)
    stats = project_statistics(summaries)
    if ctx.json_mode:
        payload = status_object(STATUS_SUCCESS, f"{len(summaries)} projects", [s.to_dict() for s in summaries])
        payload["currency"] = ctx.currency
        payload["statistics"] = stats.to_dict()
        write_json(payload, ctx.out)
        return 0
    dp = ctx.cfg.output.decimal_places
    headers = ["Project", "Input", "Output", "Messages", "Models", "Cost"]
    rows: List[List[Any]] = []
    for s in summaries:
        rows.append([s.project_name, format_number(s.input_tokens), format_number(s.output_tokens),
                     s.message_count, s.model_count, format_currency(s.cost_usd, ctx.currency, dp)])
    rows.append(["Total", format_number(stats.total_input_tokens), format_number(stats.total_output_tokens),
                 stats.total_messages, stats.total_models, format_currency(stats.total_cost, ctx.currency, dp)])
    ctx.table(headers, rows, rule_before_rows={len(rows) - 1})
    print(f"Projects: {stats.total_projects}", file=ctx.out)
    print(f"Highest cost: {stats.highest_cost_project}", file=ctx.out)
    print(f"Most active: {stats.most_active_project}", file=ctx.out)
    return 0


# ----------------------------------------------------------------------------
# analyses


CONVERSATION_CSV_HEADERS = [
    "conversation_id", "project", "start_time", "end_time", "duration_minutes", "message_count",
    "input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens",
    "total_cost_usd", "efficiency_score", "cache_hit_rate", "outliers",
]


def cmd_conversations(ctx: Context) -> int:
    a = ctx.args
    flt = _filter(ctx)
    cflt = ConversationFilter(
        model=a.model,
        since=flt.since,
        until=flt.until,
        min_cost=a.min_cost / ctx.rate if a.min_cost is not None else None,
        max_cost=a.max_cost / ctx.rate if a.max_cost is not None else None,
        min_efficiency=a.min_efficiency,
        max_efficiency=a.max_efficiency,
        outliers_only=a.outliers_only,
    )
    insights = analyze_conversations(_load(ctx), ctx.catalog, ctx.cfg.general.cost_mode)
    insights = sort_conversations(filter_conversations(insights, cflt), a.sort_by)
    if a.limit is not None:
        insights = insights[: max(a.limit, 0)]

    if a.export:
        ext, f = _open_export(a.export)
        with f:
            if ext == ".json":
                write_json([c.to_dict() for c in insights], f)
            else:
                write_csv(CONVERSATION_CSV_HEADERS, [[
                    c.conversation_id, c.project,
                    c.start_time.isoformat() if c.start_time else "",
                    c.end_time.isoformat() if c.end_time else "",
                    f"{c.duration_minutes:.1f}", c.message_count,
                    c.input_tokens, c.output_tokens, c.cache_creation_tokens, c.cache_read_tokens,
                    f"{c.total_cost:.6f}", f"{c.efficiency_score:.1f}", f"{c.cache_hit_rate:.4f}",
                    ";".join(o.flag_type for o in c.outliers),
                ] for c in insights], f)
        print(f"Exported {len(insights)} conversations to {a.export}", file=ctx.err)

    if not insights:
        return _no_data(ctx)
    if ctx.json_mode:
        write_json(status_object(STATUS_SUCCESS, f"{len(insights)} conversations", [c.to_dict() for c in insights]), ctx.out)
        return 0
    headers = ["Conversation", "Project", "Started", "Minutes", "Messages", "Tokens", "Cost", "Efficiency", "Flags"]
    rows = []
    for c in insights:
        flags = ",".join(o.flag_type for o in c.outliers)
        rows.append([
            c.conversation_id[:8],
            c.project,
            format_datetime(ctx.tz.to_local(c.start_time) if c.start_time else None, ctx.date_format),
            f"{c.duration_minutes:.1f}",
            c.message_count,
            format_number(c.total_tokens),
            ctx.fmt_cost(c.total_cost),
            f"{c.efficiency_score:.1f}",
            colorize(flags, YELLOW, ctx.colored) if flags else "",
        ])
    ctx.table(headers, rows)
    if ctx.verbose:
        for c in insights:
            for tip in c.tips:
                print(f"{c.conversation_id[:8]}: {tip.description}", file=ctx.out)
    return 0


def _optimization_events(ctx: Context, events: List[Event]) -> List[Event]:
    flt = _filter(ctx)
    kept = []
    for ev in events:
        if not flt.matches_time(ev):
            continue
        # user turns carry no model; keep them so conversations keep their content
        if flt.model is not None and ev.model != UNKNOWN_MODEL and ev.model != flt.model:
            continue
        kept.append(ev)
    return kept


OPTIMIZATION_CSV_HEADERS = [
    "current_model", "suggested_model", "conversation_count", "total_current_cost_usd", "total_potential_cost_usd",
    "potential_savings_usd", "potential_savings_percentage", "confidence_score", "confidence_level", "reasoning",
]


def cmd_optimize(ctx: Context) -> int:
    a = ctx.args
    events = _optimization_events(ctx, _load(ctx))
    summary = analyze_optimization_opportunities(events, ctx.catalog, ctx.cfg.general.cost_mode)
    if a.confidence_threshold is not None:
        if not 0.0 <= a.confidence_threshold <= 1.0:
            raise CommandError("--confidence-threshold must be between 0.0 and 1.0")
        summary = filter_by_confidence(summary, a.confidence_threshold)
    if a.model_from or a.model_to:
        summary = filter_by_model_transition(summary, a.model_from, a.model_to)

    if a.export:
        ext, f = _open_export(a.export)
        with f:
            if ext == ".json":
                write_json(summary.to_dict(), f)
            else:
                write_csv(OPTIMIZATION_CSV_HEADERS, [[
                    r.current_model, r.suggested_model, r.conversation_count,
                    f"{r.total_current_cost:.6f}", f"{r.total_potential_cost:.6f}",
                    f"{r.potential_savings:.6f}", f"{r.potential_savings_percentage:.1f}",
                    f"{r.confidence_score:.1f}", r.confidence_level, r.reasoning,
                ] for r in summary.recommendations], f)
        print(f"Exported {len(summary.recommendations)} recommendations to {a.export}", file=ctx.err)

    if summary.total_conversations_analyzed == 0:
        return _no_data(ctx)
    if ctx.json_mode:
        payload = summary.to_dict()
        if a.potential_savings:
            payload.pop("recommendations")
        write_json(status_object(STATUS_SUCCESS, "Optimization analysis", [payload]), ctx.out)
        return 0
    print(f"Conversations analyzed: {summary.total_conversations_analyzed}", file=ctx.out)
    print(f"Current cost:           {ctx.fmt_cost(summary.total_current_cost)}", file=ctx.out)
    print(f"Optimized cost:         {ctx.fmt_cost(summary.total_potential_cost)}", file=ctx.out)
    savings = f"{ctx.fmt_cost(summary.total_potential_savings)} ({summary.savings_percentage:.1f}%)"
    print(f"Potential savings:      {colorize(savings, GREEN, ctx.colored)}", file=ctx.out)
    if a.potential_savings:
        return 0
    if not summary.recommendations:
        print("No optimization recommendations", file=ctx.out)
        return 0
    headers = ["From", "To", "Conversations", "Savings", "Savings %", "Confidence", "Reasoning"]
    rows = [[
        r.current_model, r.suggested_model, r.conversation_count, ctx.fmt_cost(r.potential_savings),
        f"{r.potential_savings_percentage:.1f}%", f"{r.confidence_level} ({r.confidence_score:.1f})", r.reasoning,
    ] for r in summary.recommendations]
    ctx.table(headers, rows)
    return 0


# ----------------------------------------------------------------------------
# config / pricing


def cmd_config(ctx: Context) -> int:
    path = ctx.args.config or config_mod.config_path()
    action = ctx.args.action
    if action == "show":
        if ctx.json_mode:
            write_json(ctx.cfg.to_dict(), ctx.out)
        else:
            print(f"Configuration file: {path}", file=ctx.out)
            print("", file=ctx.out)
            ctx.out.write(config_mod.to_toml(ctx.cfg))
        return 0
    if action == "init":
        config_mod.save(Config(), path)
        if ctx.json_mode:
            write_status(STATUS_SUCCESS, f"Configuration initialized at {path}", ctx.out)
        else:
            print(f"Configuration initialized at {path}", file=ctx.out)
        return 0
    value = config_mod.set_value(ctx.cfg, ctx.args.key, ctx.args.value)
    config_mod.save(ctx.cfg, path)
    if ctx.json_mode:
        write_status(STATUS_SUCCESS, f"Set {ctx.args.key}", ctx.out, [{"key": ctx.args.key, "value": value}])
    else:
        print(f"Set {ctx.args.key} = {value}", file=ctx.out)
    return 0


def cmd_pricing(ctx: Context) -> int:
    action = ctx.args.action
    if action == "set":
        a = ctx.args
        if a.input_price < 0 or a.output_price < 0:
            raise CommandError("Prices must be non-negative")
        with Database() as db:
            db.set_model_pricing(a.model_name, a.input_price, a.output_price)
        msg = f"Pricing for {a.model_name} set: input ${a.input_price:.2f}/MTok, output ${a.output_price:.2f}/MTok"
        if ctx.json_mode:
            write_status(STATUS_SUCCESS, msg, ctx.out)
        else:
            print(msg, file=ctx.out)
        return 0
    if action == "update":
        catalog = PricingCatalog(source="auto", cache_path=pricing_cache_path(), warn=ctx.warn)
        models = catalog.refresh()
        if not models or catalog.document_origin != "network":
            raise PricingUnavailableError("Failed to fetch the LiteLLM pricing document")
        msg = f"Updated pricing cache with {len(models)} models"
        if ctx.json_mode:
            write_status(STATUS_SUCCESS, msg, ctx.out)
        else:
            print(msg, file=ctx.out)
        return 0

    catalog = ctx.catalog
    rows_data = catalog.list_models()
    models = catalog.models()
    if ctx.json_mode:
        data = [dict(model=name, layer=layer, **vec.to_dict()) for name, vec, layer in rows_data]
        payload = status_object(STATUS_SUCCESS, f"{len(data)} models", data)
        payload["catalog_models"] = len(models) if models else 0
        payload["catalog_origin"] = catalog.document_origin
        write_json(payload, ctx.out)
        return 0
    headers = ["Model", "Input", "Output", "Cache Write", "Cache Read", "Source"]
    rows = [[name, f"{vec.input:.2f}", f"{vec.output:.2f}", f"{vec.cache_creation:.2f}", f"{vec.cache_read:.2f}", layer]
            for name, vec, layer in rows_data]
    print("USD per million tokens", file=ctx.out)
    ctx.table(headers, rows)
    if models:
        print(f"LiteLLM catalog: {len(models)} models ({catalog.document_origin})", file=ctx.out)
    else:
        print("LiteLLM catalog: unavailable, using built-in rates", file=ctx.out)
    return 0


# ----------------------------------------------------------------------------
# alerts / watch


def _today_projects(ctx: Context, events: List[Event]) -> List[ProjectUsage]:
    start, end = ctx.tz.bounds("today")
    flt = UsageFilter(model=ctx.args.model, since=start, until=inclusive_until(end))
    return aggregate_projects(events, ctx.catalog, ctx.cfg.general.cost_mode, flt)


def cmd_alerts(ctx: Context) -> int:
    action = ctx.args.action
    notifier_enabled = bool(getattr(ctx.args, "notify", False) or ctx.cfg.alerts.notifications)

    if action == "test":
        DesktopNotifier(enabled=True).send_test()
        msg = "Test notification sent"
        if ctx.json_mode:
            write_status(STATUS_SUCCESS, msg, ctx.out)
        else:
            print(msg, file=ctx.out)
        return 0

    engine = AlertEngine(AlertThresholds.from_config(ctx.cfg.alerts), now=ctx.tz.now)
    if action == "status":
        status = engine.status()
        if ctx.json_mode:
            write_json(status_object(STATUS_SUCCESS, "Alert rules", status), ctx.out)
            return 0
        rows = [[s["alert"], "yes" if s["enabled"] else "no", s["status"]] for s in status]
        ctx.table(["Alert", "Enabled", "Status"], rows)
        return 0

    events = _load(ctx)
    mode = ctx.cfg.general.cost_mode
    if action == "summary":
        start, end = ctx.tz.bounds("last-7-days")
        flt = UsageFilter(model=ctx.args.model, since=start, until=inclusive_until(end))
        projects = [p.scaled(ctx.rate) for p in aggregate_projects(events, ctx.catalog, mode, flt)]
        summary = WeeklySummary.from_projects(projects, ctx.currency)
        if ctx.json_mode:
            write_json(status_object(STATUS_SUCCESS, "Weekly summary", [vars(summary)]), ctx.out)
        else:
            print(summary.to_notification_message(), file=ctx.out)
        if notifier_enabled:
            try:
                DesktopNotifier(enabled=True).send_summary(summary)
            except NotificationError as e:
                ctx.warn(str(e))
        return 0

    spend = {}
    for period in ("today", "this-week", "this-month"):
        start, end = ctx.tz.bounds(period)
        spend[period] = period_totals(events, ctx.catalog, start, end, mode)
    history = [c * ctx.rate for c in daily_cost_history(events, ctx.catalog, ctx.tz, 7, mode)]
    today = spend["today"]
    alerts = engine.check(
        projects=[p.scaled(ctx.rate) for p in _today_projects(ctx, events)],
        daily_spending=today.cost_usd * ctx.rate,
        weekly_spending=spend["this-week"].cost_usd * ctx.rate,
        monthly_spending=spend["this-month"].cost_usd * ctx.rate,
        daily_tokens=today.input_tokens + today.output_tokens,
        currency=ctx.currency,
        daily_history=history,
    )
    if notifier_enabled and alerts:
        for w in send_alerts(alerts, DesktopNotifier(enabled=True)):
            ctx.warn(w)
    if ctx.json_mode:
        write_json(status_object(STATUS_SUCCESS, f"{len(alerts)} alerts triggered", [a.to_dict() for a in alerts]), ctx.out)
        return 0
    if not alerts:
        print("No alerts triggered", file=ctx.out)
        return 0
    for alert in alerts:
        tag = colorize(f"[{alert.priority}]", PRIORITY_COLORS.get(alert.priority, YELLOW), ctx.colored)
        print(f"{tag} {alert.title}", file=ctx.out)
        print(f"  {alert.message}", file=ctx.out)
    return 0


def cmd_watch(ctx: Context) -> int:
    if ctx.args.refresh_seconds <= 0:
        raise CommandError("--refresh-seconds must be positive")
    session = WatchSession(
        ctx.cfg.projects_path,
        ctx.catalog,
        mode=ctx.cfg.general.cost_mode,
        masker=ctx.masker,
        project=ctx.args.project,
        strict=ctx.args.strict,
    )
    return run_watch(
        session,
        ctx.fmt_cost,
        refresh_seconds=ctx.args.refresh_seconds,
        border=ctx.args.border,
        out=ctx.out,
        err=ctx.err,
        colored=ctx.colored,
        verbose=ctx.verbose,
    )


COMMANDS = {
    "usage": cmd_usage,
    "daily": cmd_daily,
    "weekly": cmd_weekly,
    "monthly": cmd_monthly,
    "projects": cmd_projects,
    "conversations": cmd_conversations,
    "optimize": cmd_optimize,
    "config": cmd_config,
    "pricing": cmd_pricing,
    "alerts": cmd_alerts,
    "watch": cmd_watch,
}
for _name in PERIOD_COMMANDS:
    COMMANDS[_name] = cmd_period


def main(argv: Optional[List[str]] = None, out: Optional[TextIO] = None, err: Optional[TextIO] = None) -> int:
    out = out or sys.stdout
    err = err or sys.stderr
    args = build_parser().parse_args(argv)
    if args.command is None:
        args.command = "today"
    json_mode = bool(args.json)

    try:
        if args.command == "config" and args.action == "init":
            cfg = Config()
        else:
            cfg = config_mod.load(args.config)
        json_mode = json_mode or cfg.output.format == "json"
        tz = TimezoneCalculator(args.timezone or cfg.timezone.timezone, cfg.timezone.daily_cutoff_hour)
        ctx = Context(args=args, cfg=cfg, out=out, err=err, json_mode=json_mode, tz=tz,
                      masker=ProjectNameMasker(enabled=args.hidden))
        if args.command not in ("config",):
            _resolve_currency(ctx)
            ctx.catalog = _make_catalog(ctx)
        return COMMANDS[args.command](ctx)
    except (
        TranscriptRootError,
        MalformedTranscriptError,
        ConfigError,
        PricingUnavailableError,
        StorageError,
        NotificationError,
        CommandError,
    ) as e:
        return _fail(json_mode, str(e), out, err)


if __name__ == "__main__":
    raise SystemExit(main())
