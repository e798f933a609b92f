"""
One run of the usage pipeline: read transcripts, apply the project filter
and privacy mask, deduplicate.

The project filter compares the real project name, so it runs before
masking; everything downstream only ever sees the masked name.
"""

import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, TextIO, Tuple

from ccost.dedup import Deduplicator
from ccost.privacy import ProjectNameMasker
from ccost.transcripts import Event, FileStats, iter_transcript_files


@dataclass
class RunStats:
    files: int = 0
    total_messages: int = 0
    unique_messages: int = 0
    duplicates: int = 0
    missing_ids: int = 0
    malformed_lines: int = 0
    unreadable_files: int = 0
    missing_timestamp: int = 0
    flagged: int = 0
    store_errors: int = 0

    def add_file(self, stats: FileStats) -> None:
        self.files += 1
        self.malformed_lines += stats.skipped
        self.missing_timestamp += stats.missing_timestamp
        self.flagged += stats.flagged
        if stats.unreadable:
            self.unreadable_files += 1

    def summary_line(self) -> str:
        return f"Processed {self.files} files, {self.total_messages} total messages, {self.unique_messages} unique messages"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_events(
    root: str,
    project: Optional[str] = None,
    masker: Optional[ProjectNameMasker] = None,
    dedup: Optional[Deduplicator] = None,
    verbose: bool = False,
    strict: bool = False,
    err: Optional[TextIO] = None,
) -> Tuple[List[Event], RunStats]:
    """Deduplicated events under root in (file, line) order, plus run counters."""
    err = err or sys.stderr
    dedup = dedup if dedup is not None else Deduplicator()
    run = RunStats()
    events: List[Event] = []
    reported_store_warnings = len(dedup.store_warnings)
    for file_events, stats in iter_transcript_files(root, strict=strict, verbose=verbose, err=err):
        run.add_file(stats)
        if project is not None and stats.project != project:
            continue
        if masker is not None:
            for ev in file_events:
                ev.project = masker.mask(ev.project)
        run.total_messages += len(file_events)
        before = dedup.emitted
        dup_before = dedup.duplicates
        missing_before = dedup.missing_ids
        events.extend(dedup.filter(file_events))
        run.unique_messages += dedup.emitted - before
        run.duplicates += dedup.duplicates - dup_before
        run.missing_ids += dedup.missing_ids - missing_before
        run.store_errors = dedup.store_errors
        if verbose:
            for w in dedup.store_warnings[reported_store_warnings:]:
                print(f"Warning: {w} ({stats.path})", file=err)
            reported_store_warnings = len(dedup.store_warnings)
            print(run.summary_line(), file=err)
            print(f"  {run.duplicates} duplicates skipped, {run.missing_ids} messages without a billing key", file=err)
    return events, run
