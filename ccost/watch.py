"""
Watch mode: tail the transcript tree and keep per-project running totals.

Each poll reads only the bytes appended since the previous poll and only
complete lines; a trailing partial line is picked up once its newline has
been written. The Deduplicator persists across polls, so a record copied
into a new branch file is not counted twice. reset() clears the seen-set and
the running totals together.
"""

import os
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, TextIO, Tuple

from ccost.dedup import Deduplicator
from ccost.output import format_tokens, render_table
from ccost.pricing import PricingCatalog
from ccost.privacy import ProjectNameMasker
from ccost.transcripts import (
    Event,
    MalformedTranscriptError,
    TranscriptRecord,
    event_from_record,
    find_transcript_files,
    parse_line,
    project_from_path,
    project_from_records,
)
from ccost.usage import UsageTotals, resolve_cost

DEFAULT_REFRESH_SECONDS = 2.0


@dataclass
class SessionState:
    project: str
    totals: UsageTotals = field(default_factory=UsageTotals)
    models: Set[str] = field(default_factory=set)
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    def add(self, ev: Event, cost: float, provenance: Optional[str]) -> None:
        self.totals.add(ev.tokens(), cost, provenance)
        self.models.add(ev.model)
        if ev.timestamp is not None:
            self._touch(ev.timestamp, ev.timestamp)

    def merge(self, other: "SessionState") -> None:
        self.totals.merge(other.totals)
        self.models |= other.models
        if other.first_activity is not None:
            self._touch(other.first_activity, other.last_activity)

    def _touch(self, first: datetime, last: datetime) -> None:
        if self.first_activity is None or first < self.first_activity:
            self.first_activity = first
        if self.last_activity is None or last > self.last_activity:
            self.last_activity = last


@dataclass
class _TailState:
    offset: int = 0
    line_no: int = 0
    project: Optional[str] = None
    # True once the name came from a cwd hint rather than the directory
    named_by_cwd: bool = False
    counted: Optional[SessionState] = None


class WatchSession:
    def __init__(
        self,
        root: str,
        catalog: Optional[PricingCatalog],
        mode: str = "auto",
        masker: Optional[ProjectNameMasker] = None,
        project: Optional[str] = None,
        include_existing: bool = False,
        strict: bool = False,
        dedup: Optional[Deduplicator] = None,
    ):
        self.root = os.path.expanduser(root)
        self.catalog = catalog
        self.mode = mode
        self.masker = masker
        self.project = project
        self.include_existing = include_existing
        self.strict = strict
        self.dedup = dedup if dedup is not None else Deduplicator()
        self.sessions: Dict[str, SessionState] = {}
        self.warnings: List[str] = []
        self._files: Dict[str, _TailState] = {}
        self._primed = False

    def _read_new_lines(self, path: str, st: _TailState) -> List[Tuple[int, str]]:
        try:
            size = os.path.getsize(path)
            if size < st.offset:
                # truncated or replaced
                st.offset = 0
                st.line_no = 0
            if size == st.offset:
                return []
            with open(path, "rb") as f:
                f.seek(st.offset)
                data = f.read()
        except OSError as e:
            msg = f"Failed to read {path}: {e}"
            if self.strict:
                raise MalformedTranscriptError(msg) from e
            self.warnings.append(msg)
            return []
        end = data.rfind(b"\n")
        if end < 0:
            return []
        st.offset += end + 1
        lines = []
        for raw in data[: end + 1].decode("utf-8", errors="ignore").splitlines():
            st.line_no += 1
            lines.append((st.line_no, raw))
        return lines

    def _parse(self, path: str, lines: List[Tuple[int, str]]) -> List[Tuple[int, TranscriptRecord]]:
        records = []
        for line_no, raw in lines:
            line = raw.strip()
            if not line:
                continue
            try:
                records.append((line_no, parse_line(line)))
            except ValueError as e:
                msg = f"Skipping malformed JSON at {path}:{line_no}: {e}"
                if self.strict:
                    raise MalformedTranscriptError(msg) from e
                self.warnings.append(msg)
        return records

    def _name_file(self, path: str, st: _TailState, records: List[TranscriptRecord]) -> None:
        """Settle the file's project name; a late cwd hint replaces the directory name."""
        if st.named_by_cwd:
            return
        hinted = project_from_records(records)
        if hinted is not None:
            st.named_by_cwd = True
            renamed = st.project is not None and hinted != st.project
            st.project = hinted
            if renamed and st.counted is not None:
                self._move(st)
        elif st.project is None:
            st.project = project_from_path(path, self.root)

    def _shown(self, name: str) -> str:
        return self.masker.mask(name) if self.masker else name

    def _move(self, st: _TailState) -> None:
        old = st.counted.project
        if self.project is not None and st.project != self.project:
            st.counted = None
            self._rebuild(old)
            return
        st.counted.project = self._shown(st.project)
        self._rebuild(old)
        self._rebuild(st.counted.project)

    def _rebuild(self, shown: str) -> None:
        state = SessionState(project=shown)
        parts = [f.counted for f in self._files.values() if f.counted is not None and f.counted.project == shown]
        for part in parts:
            state.merge(part)
        if parts:
            self.sessions[shown] = state
        else:
            self.sessions.pop(shown, None)

    def poll(self) -> List[Event]:
        """Consume appended lines; returns the events folded into the running totals."""
        folded: List[Event] = []
        counting = self._primed or self.include_existing
        for path in find_transcript_files(self.root):
            st = self._files.setdefault(path, _TailState())
            records = self._parse(path, self._read_new_lines(path, st))
            if not records:
                continue
            self._name_file(path, st, [r for _, r in records])
            if self.project is not None and st.project != self.project:
                continue
            shown = self._shown(st.project)
            for line_no, rec in records:
                ev = event_from_record(rec, shown, source=path, line_no=line_no)
                if ev is None or not self.dedup.accept(ev):
                    continue
                if not counting or not ev.has_usage:
                    continue
                cost, provenance = resolve_cost(ev, self.catalog, self.mode)
                if st.counted is None:
                    st.counted = SessionState(project=shown)
                st.counted.add(ev, cost, provenance)
                state = self.sessions.get(shown)
                if state is None:
                    state = SessionState(project=shown)
                    self.sessions[shown] = state
                state.add(ev, cost, provenance)
                folded.append(ev)
        self._primed = True
        return folded

    def reset(self) -> None:
        self.dedup.reset()
        self.sessions.clear()
        for st in self._files.values():
            st.counted = None

    def snapshot(self) -> List[SessionState]:
        return [self.sessions[name] for name in sorted(self.sessions)]

    def totals(self) -> UsageTotals:
        total = UsageTotals()
        for state in self.sessions.values():
            total.merge(state.totals)
        return total


def render_watch(
    session: WatchSession,
    format_cost: Callable[[float], str],
    border: str = "unicode",
    out: TextIO = sys.stdout,
    colored: bool = False,
    now: Optional[datetime] = None,
) -> None:
    now = now or datetime.now(timezone.utc)
    out.write("\x1b[2J\x1b[H")
    out.write(f"ccost watch: {now.astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')} (Ctrl-C to stop)\n")
    states = session.snapshot()
    if not states:
        out.write("Waiting for new usage...\n")
        return
    headers = ["Project", "Messages", "Input", "Output", "Cache Write", "Cache Read", "Cost", "Last Activity"]
    rows = []
    for s in states:
        t = s.totals
        last = s.last_activity.astimezone().strftime("%H:%M:%S") if s.last_activity else ""
        rows.append([
            s.project,
            t.message_count,
            format_tokens(t.input_tokens),
            format_tokens(t.output_tokens),
            format_tokens(t.cache_creation_tokens),
            format_tokens(t.cache_read_tokens),
            format_cost(t.cost_usd),
            last,
        ])
    t = session.totals()
    rows.append([
        "Total",
        t.message_count,
        format_tokens(t.input_tokens),
        format_tokens(t.output_tokens),
        format_tokens(t.cache_creation_tokens),
        format_tokens(t.cache_read_tokens),
        format_cost(t.cost_usd),
        "",
    ])
    render_table(headers, rows, border=border, out=out, rule_before_rows={len(rows) - 1}, colored=colored)


def run_watch(
    session: WatchSession,
    format_cost: Callable[[float], str],
    refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
    border: str = "unicode",
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
    colored: bool = False,
    verbose: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    max_iterations: Optional[int] = None,
) -> int:
    """Poll and redraw until SIGINT/SIGTERM (or max_iterations polls)."""
    running = True

    def _stop(signum, frame):
        nonlocal running
        running = False

    previous = {signum: signal.signal(signum, _stop) for signum in (signal.SIGINT, signal.SIGTERM)}

    iterations = 0
    try:
        while running:
            session.poll()
            if verbose:
                for w in session.warnings:
                    print(f"Warning: {w}", file=err)
            session.warnings.clear()
            render_watch(session, format_cost, border=border, out=out, colored=colored)
            out.flush()
            iterations += 1
            if max_iterations is not None and iterations >= max_iterations:
                break
            sleep(refresh_seconds)
    finally:
        for signum, handler in previous.items():
            if handler is not None:
                signal.signal(signum, handler)
    return 0
