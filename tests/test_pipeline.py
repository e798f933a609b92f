import io

from ccost.dedup import Deduplicator
from ccost.pipeline import RunStats, load_events
from ccost.privacy import ProjectNameMasker
from ccost.transcripts import FileStats


def _tree(tmp_path, write_jsonl, raw_record):
    write_jsonl(tmp_path / "-work-app" / "main.jsonl", [
        raw_record(message_id="m1", request_id="r1", uuid="u1", inp=10),
        raw_record(message_id="m2", request_id="r2", uuid="u2", inp=20),
        "{oops",
    ])
    write_jsonl(tmp_path / "-work-app" / "branch.jsonl", [
        raw_record(message_id="m1", request_id="r1", uuid="u1", inp=10),
        raw_record(uuid="u3", inp=5),
    ])
    write_jsonl(tmp_path / "-work-site" / "s.jsonl", [
        raw_record(message_id="m9", request_id="r9", uuid="u9", inp=1),
    ])


def test_load_events_counts(tmp_path, write_jsonl, raw_record):
    _tree(tmp_path, write_jsonl, raw_record)
    events, run = load_events(str(tmp_path))
    assert run.files == 3
    assert run.total_messages == 5
    assert run.unique_messages == 4
    assert run.duplicates == 1
    assert run.missing_ids == 1
    assert run.malformed_lines == 1
    assert [ev.uuid for ev in events] == ["u1", "u3", "u2", "u9"]
    assert run.summary_line() == "Processed 3 files, 5 total messages, 4 unique messages"


def test_project_filter_uses_real_name_before_masking(tmp_path, write_jsonl, raw_record):
    _tree(tmp_path, write_jsonl, raw_record)
    masker = ProjectNameMasker()
    events, run = load_events(str(tmp_path), project="work-site", masker=masker)
    assert [ev.project for ev in events] == ["project-alpha"]
    assert run.files == 3
    assert masker.known() == ["work-site"]


def test_verbose_reports_to_err(tmp_path, write_jsonl, raw_record):
    _tree(tmp_path, write_jsonl, raw_record)
    err = io.StringIO()
    load_events(str(tmp_path), verbose=True, err=err)
    text = err.getvalue()
    assert "Warning: Skipping malformed JSON" in text
    assert text.strip().splitlines()[-1] == "  1 duplicates skipped, 1 messages without a billing key"


def test_shared_deduplicator_spans_runs(tmp_path, write_jsonl, raw_record):
    _tree(tmp_path, write_jsonl, raw_record)
    dedup = Deduplicator()
    load_events(str(tmp_path), dedup=dedup)
    events, run = load_events(str(tmp_path), dedup=dedup)
    assert [ev.uuid for ev in events] == ["u3"]
    assert run.duplicates == 4


def test_run_stats_add_file():
    run = RunStats()
    run.add_file(FileStats(path="x", skipped=2, missing_timestamp=1, flagged=3, unreadable=True))
    assert run.to_dict()["malformed_lines"] == 2
    assert run.unreadable_files == 1
    assert run.flagged == 3
