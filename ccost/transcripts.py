"""
Claude Code transcript reader.

Walks ~/.claude/projects (by default) and parses every *.jsonl conversation
transcript into Events. Each line of a transcript is an independent JSON
object; lines without a timestamp are structural (summaries, snapshots) and
are dropped silently, malformed lines are skipped with a warning.

Every Event of a file shares one project name, derived from the first
working-directory hint (cwd / originalCwd) in the file, or from the
transcript's directory under the root when no hint exists.

Example:
  for events, stats in iter_transcript_files("~/.claude/projects"):
      print(stats.path, stats.parsed, len(events))
"""

import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


TRANSCRIPT_EXT = ".jsonl"
UNKNOWN_MODEL = "unknown"


class TranscriptRootError(Exception):
    """The transcript root directory does not exist."""


class MalformedTranscriptError(Exception):
    """Raised in strict mode for a line or file that would otherwise only warn."""


class TokenUsage(BaseModel):
    # Top-level usage blocks use camelCase keys, message.usage uses snake_case.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    input_tokens: Optional[int] = Field(default=None, ge=0, alias="inputTokens")
    output_tokens: Optional[int] = Field(default=None, ge=0, alias="outputTokens")
    cache_creation_input_tokens: Optional[int] = Field(default=None, ge=0, alias="cacheCreationInputTokens")
    cache_read_input_tokens: Optional[int] = Field(default=None, ge=0, alias="cacheReadInputTokens")


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    model: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    usage: Optional[TokenUsage] = None

    @field_validator("content", mode="before")
    @classmethod
    def _flatten_content(cls, value: Any) -> Optional[str]:
        """Accept plain strings or a list of content blocks (text blocks are joined)."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, list):
            parts = [
                block["text"]
                for block in value
                if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
            ]
            return " ".join(parts) if parts else None
        return json.dumps(value, ensure_ascii=False)


class TranscriptRecord(BaseModel):
    """One raw transcript line. Every field is optional; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    timestamp: Optional[str] = None
    uuid: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    message: Optional[Message] = None
    usage: Optional[TokenUsage] = None
    cost_usd: Optional[float] = Field(default=None, ge=0, alias="costUSD")
    cwd: Optional[str] = None
    original_cwd: Optional[str] = Field(default=None, alias="originalCwd")

    @model_validator(mode="after")
    def _lift_message_usage(self) -> "TranscriptRecord":
        if self.usage is None and self.message is not None and self.message.usage is not None:
            self.usage = self.message.usage
        return self


@dataclass
class Event:
    """A record that carries a timestamp, tagged with its project and origin."""

    record: TranscriptRecord
    project: str
    timestamp: Optional[datetime]
    source: str = ""
    line_no: int = 0

    @property
    def message_id(self) -> Optional[str]:
        return self.record.message.id if self.record.message else None

    @property
    def request_id(self) -> Optional[str]:
        return self.record.request_id

    @property
    def session_id(self) -> Optional[str]:
        return self.record.session_id

    @property
    def uuid(self) -> Optional[str]:
        return self.record.uuid

    @property
    def flagged(self) -> bool:
        """True when neither the outer event id nor the request id is present."""
        return not self.record.uuid and not self.record.request_id

    @property
    def model(self) -> str:
        msg = self.record.message
        if msg is not None and msg.model:
            return msg.model
        return UNKNOWN_MODEL

    @property
    def content(self) -> Optional[str]:
        return self.record.message.content if self.record.message else None

    @property
    def has_usage(self) -> bool:
        return self.record.usage is not None

    @property
    def embedded_cost(self) -> Optional[float]:
        return self.record.cost_usd

    def tokens(self) -> Tuple[int, int, int, int]:
        """(input, output, cache_creation, cache_read); zeros when usage is absent."""
        u = self.record.usage
        if u is None:
            return (0, 0, 0, 0)
        return (
            u.input_tokens or 0,
            u.output_tokens or 0,
            u.cache_creation_input_tokens or 0,
            u.cache_read_input_tokens or 0,
        )


@dataclass
class FileStats:
    path: str
    project: str = ""
    total_lines: int = 0
    parsed: int = 0
    skipped: int = 0
    missing_timestamp: int = 0
    flagged: int = 0
    unreadable: bool = False
    warnings: List[str] = field(default_factory=list)


def parse_ts(ts: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp to an aware UTC datetime when possible."""
    if not ts:
        return None
    s = ts.strip().replace("Z", "+00:00").replace("z", "+00:00")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_line(line: str) -> TranscriptRecord:
    """Parse one JSONL line. Raises ValueError for anything that is not a valid record."""
    raw = json.loads(line)
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
    try:
        return TranscriptRecord.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"invalid record: {e.error_count()} field error(s)") from e


def project_from_cwd(path: str) -> Optional[str]:
    """Final path component of a working directory (``.config/nvim`` -> ``nvim``)."""
    norm = path.replace("\\", "/").rstrip("/")
    name = norm.rsplit("/", 1)[-1] if norm else ""
    return name or None


def project_from_path(file_path: str, root: str) -> str:
    """Directory fallback: first path component below the root, leading '-' stripped."""
    rel = os.path.relpath(os.path.abspath(file_path), os.path.abspath(root))
    parts = rel.split(os.sep)
    if len(parts) < 2 or parts[0] in ("", ".", ".."):
        name = os.path.basename(os.path.abspath(root).rstrip(os.sep))
    else:
        name = parts[0]
    return name.lstrip("-") or name


def project_from_records(records: Iterable[TranscriptRecord]) -> Optional[str]:
    """Name from the first cwd/originalCwd hint, if any record carries one."""
    for rec in records:
        for hint in (rec.cwd, rec.original_cwd):
            if hint:
                name = project_from_cwd(hint)
                if name:
                    return name
    return None


def resolve_project_name(records: List[TranscriptRecord], file_path: str, root: str) -> str:
    return project_from_records(records) or project_from_path(file_path, root)


def event_from_record(record: TranscriptRecord, project: str, source: str = "", line_no: int = 0) -> Optional[Event]:
    """Wrap a record as an Event; None for records without a timestamp."""
    if not record.timestamp:
        return None
    return Event(record=record, project=project, timestamp=parse_ts(record.timestamp), source=source, line_no=line_no)


def find_transcript_files(root: str) -> List[str]:
    """Recursively list transcript files under root in a deterministic order."""
    root = os.path.expanduser(root)
    if not os.path.isdir(root):
        raise TranscriptRootError(f"Directory does not exist: {root}")
    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            if os.path.splitext(name)[1].lower() == TRANSCRIPT_EXT:
                found.append(os.path.join(dirpath, name))
    return found


def read_transcript(path: str, root: str, strict: bool = False) -> Tuple[List[Event], FileStats]:
    """Parse one transcript file into Events.

    Malformed lines and unreadable files are recorded in FileStats.warnings;
    with strict=True they raise MalformedTranscriptError instead.
    """
    stats = FileStats(path=path)
    records: List[Tuple[int, TranscriptRecord]] = []
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            for line_no, raw in enumerate(f, start=1):
                stats.total_lines += 1
                line = raw.strip()
                if not line:
                    continue
                try:
                    rec = parse_line(line)
                except ValueError as e:
                    msg = f"Skipping malformed JSON at {path}:{line_no}: {e}"
                    if strict:
                        raise MalformedTranscriptError(msg) from e
                    stats.skipped += 1
                    stats.warnings.append(msg)
                    continue
                records.append((line_no, rec))
    except OSError as e:
        msg = f"Failed to read {path}: {e}"
        if strict:
            raise MalformedTranscriptError(msg) from e
        stats.unreadable = True
        stats.warnings.append(msg)
        return [], stats

    project = resolve_project_name([r for _, r in records], path, root)
    stats.project = project
    events: List[Event] = []
    for line_no, rec in records:
        ev = event_from_record(rec, project, source=path, line_no=line_no)
        if ev is None:
            stats.missing_timestamp += 1
            continue
        if ev.flagged:
            stats.flagged += 1
        events.append(ev)
    stats.parsed = len(events)
    return events, stats


def iter_transcript_files(root: str, strict: bool = False, verbose: bool = False, err=None) -> Iterator[Tuple[List[Event], FileStats]]:
    """Yield (events, stats) per transcript file in discovery order."""
    err = err or sys.stderr
    for path in find_transcript_files(root):
        events, stats = read_transcript(path, os.path.expanduser(root), strict=strict)
        if verbose:
            for w in stats.warnings:
                print(f"Warning: {w}", file=err)
        yield events, stats


def iter_events(root: str, strict: bool = False) -> Iterator[Event]:
    """Stream every Event under root in (file, line) order."""
    for events, _ in iter_transcript_files(root, strict=strict):
        yield from events
