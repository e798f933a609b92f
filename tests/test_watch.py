import io
import json
import signal

import pytest

from ccost.pricing import PricingCatalog
from ccost.privacy import ProjectNameMasker
from ccost.watch import WatchSession, render_watch, run_watch


def append(path, text):
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)


def line(record):
    return json.dumps(record) + "\n"


@pytest.fixture
def catalog():
    return PricingCatalog(source="static")


def fmt(cost):
    return f"${cost:.2f}"


def test_existing_content_primes_but_is_not_counted(tmp_path, raw_record, catalog):
    path = tmp_path / "-w-app" / "s.jsonl"
    path.parent.mkdir()
    append(path, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    session = WatchSession(str(tmp_path), catalog)
    assert session.poll() == []
    assert session.snapshot() == []

    append(path, line(raw_record(message_id="m2", request_id="r2", cost=0.5, inp=10)))
    folded = session.poll()
    assert [ev.message_id for ev in folded] == ["m2"]
    state = session.snapshot()[0]
    assert state.project == "w-app"
    assert abs(state.totals.cost_usd - 0.5) < 1e-9


def test_include_existing(tmp_path, raw_record, catalog):
    path = tmp_path / "p" / "s.jsonl"
    path.parent.mkdir()
    append(path, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    session = WatchSession(str(tmp_path), catalog, include_existing=True)
    assert len(session.poll()) == 1
    assert session.totals().message_count == 1


def test_partial_lines_wait_for_newline(tmp_path, raw_record, catalog):
    path = tmp_path / "p" / "s.jsonl"
    path.parent.mkdir()
    path.write_text("")
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    text = line(raw_record(message_id="m1", request_id="r1", cost=0.25))
    append(path, text[:20])
    assert session.poll() == []
    append(path, text[20:])
    assert len(session.poll()) == 1
    assert session.warnings == []


def test_copies_in_new_branch_files_are_not_recounted(tmp_path, raw_record, catalog):
    first = tmp_path / "p" / "a.jsonl"
    first.parent.mkdir()
    append(first, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    branch = tmp_path / "p" / "b.jsonl"
    append(branch, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    append(branch, line(raw_record(message_id="m3", request_id="r3", cost=2.0)))
    folded = session.poll()
    assert [ev.message_id for ev in folded] == ["m3"]
    assert session.dedup.duplicates == 1


def test_reset_clears_totals_and_seen_keys(tmp_path, raw_record, catalog):
    path = tmp_path / "p" / "s.jsonl"
    path.parent.mkdir()
    path.write_text("")
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    append(path, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    session.poll()
    session.reset()
    assert session.snapshot() == []
    assert len(session.dedup) == 0


def test_malformed_lines_warn(tmp_path, catalog):
    path = tmp_path / "p" / "s.jsonl"
    path.parent.mkdir()
    path.write_text("")
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    append(path, "{nope\n")
    session.poll()
    assert "Skipping malformed JSON" in session.warnings[0]


def test_project_filter_and_masking(tmp_path, raw_record, catalog):
    for name in ("alpha-real", "beta-real"):
        p = tmp_path / name / "s.jsonl"
        p.parent.mkdir()
        append(p, line(raw_record(message_id=name, request_id="r", cost=1.0)))
    session = WatchSession(str(tmp_path), catalog, masker=ProjectNameMasker(), project="beta-real", include_existing=True)
    session.poll()
    assert [s.project for s in session.snapshot()] == ["project-alpha"]


def test_render_watch(tmp_path, raw_record, catalog):
    path = tmp_path / "p" / "s.jsonl"
    path.parent.mkdir()
    append(path, line(raw_record(message_id="m1", request_id="r1", cost=1.5, inp=2000)))
    session = WatchSession(str(tmp_path), catalog, include_existing=True)
    out = io.StringIO()
    render_watch(session, fmt, out=out)
    assert "Waiting for new usage..." in out.getvalue()
    session.poll()
    out = io.StringIO()
    render_watch(session, fmt, border="ascii", out=out)
    text = out.getvalue()
    assert text.startswith("\x1b[2J\x1b[H")
    assert "2.0K" in text
    assert "$1.50" in text
    assert "| Total" in text


def test_run_watch_loop(tmp_path, raw_record, catalog, monkeypatch):
    installed = []
    monkeypatch.setattr(signal, "signal", lambda signum, handler: installed.append(signum))
    (tmp_path / "p").mkdir()
    session = WatchSession(str(tmp_path), catalog)
    sleeps = []
    out = io.StringIO()
    code = run_watch(session, fmt, refresh_seconds=0.5, out=out, err=io.StringIO(), sleep=sleeps.append, max_iterations=3)
    assert code == 0
    assert sleeps == [0.5, 0.5]
    assert set(installed) == {signal.SIGINT, signal.SIGTERM}
    assert out.getvalue().count("ccost watch:") == 3


def test_late_cwd_hint_renames_the_file_project(tmp_path, raw_record, catalog):
    path = tmp_path / "-home-me-app" / "s.jsonl"
    path.parent.mkdir()
    path.write_text("")
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    append(path, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    session.poll()
    assert [s.project for s in session.snapshot()] == ["home-me-app"]

    append(path, line(raw_record(message_id="m2", request_id="r2", cost=2.0, cwd="/home/me/realname")))
    session.poll()
    states = session.snapshot()
    assert [s.project for s in states] == ["realname"]
    assert abs(states[0].totals.cost_usd - 3.0) < 1e-9
    assert states[0].totals.message_count == 2

    # the name is settled once a cwd hint has been seen
    append(path, line(raw_record(message_id="m3", request_id="r3", cost=1.0, cwd="/elsewhere/other")))
    session.poll()
    assert [s.project for s in session.snapshot()] == ["realname"]


def test_rename_keeps_other_files_under_the_directory_name(tmp_path, raw_record, catalog):
    (tmp_path / "-w-app").mkdir()
    a = tmp_path / "-w-app" / "a.jsonl"
    b = tmp_path / "-w-app" / "b.jsonl"
    a.write_text("")
    b.write_text("")
    session = WatchSession(str(tmp_path), catalog)
    session.poll()
    append(a, line(raw_record(message_id="m1", request_id="r1", cost=1.0)))
    append(b, line(raw_record(message_id="m2", request_id="r2", cost=4.0)))
    session.poll()
    append(a, line(raw_record(message_id="m3", request_id="r3", cost=0.5, cwd="/src/app")))
    session.poll()
    costs = {s.project: s.totals.cost_usd for s in session.snapshot()}
    assert set(costs) == {"app", "w-app"}
    assert abs(costs["app"] - 1.5) < 1e-9
    assert abs(costs["w-app"] - 4.0) < 1e-9


def test_run_watch_restores_signal_handlers(tmp_path, catalog, monkeypatch):
    handlers = {signal.SIGINT: "old-int", signal.SIGTERM: "old-term"}

    def fake_signal(signum, handler):
        previous = handlers[signum]
        handlers[signum] = handler
        return previous

    monkeypatch.setattr(signal, "signal", fake_signal)
    (tmp_path / "p").mkdir()
    session = WatchSession(str(tmp_path), catalog)
    run_watch(session, fmt, out=io.StringIO(), err=io.StringIO(), sleep=lambda s: None, max_iterations=1)
    assert handlers == {signal.SIGINT: "old-int", signal.SIGTERM: "old-term"}
