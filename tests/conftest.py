import json

import pytest

from ccost.transcripts import TranscriptRecord, event_from_record

SONNET = "claude-sonnet-4-20250514"
OPUS = "claude-opus-4-20250514"
HAIKU = "claude-haiku-3-5-20241022"


def build_record(
    ts="2025-08-25T10:00:00Z",
    message_id=None,
    request_id=None,
    session_id=None,
    uuid=None,
    model=SONNET,
    inp=0,
    out=0,
    creation=0,
    read=0,
    cost=None,
    usage=True,
    content=None,
    role="assistant",
    cwd=None,
):
    rec = {}
    if ts is not None:
        rec["timestamp"] = ts
    if uuid is not None:
        rec["uuid"] = uuid
    if request_id is not None:
        rec["requestId"] = request_id
    if session_id is not None:
        rec["sessionId"] = session_id
    msg = {"role": role}
    if message_id is not None:
        msg["id"] = message_id
    if model is not None:
        msg["model"] = model
    if content is not None:
        msg["content"] = content
    rec["message"] = msg
    if usage:
        rec["usage"] = {
            "inputTokens": inp,
            "outputTokens": out,
            "cacheCreationInputTokens": creation,
            "cacheReadInputTokens": read,
        }
    if cost is not None:
        rec["costUSD"] = cost
    if cwd is not None:
        rec["cwd"] = cwd
    return rec


@pytest.fixture(autouse=True)
def isolated_config_home(tmp_path, monkeypatch):
    """Keep config, caches and the SQLite database out of the real home directory."""
    home = tmp_path / "xdg-config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home))
    return home


@pytest.fixture
def raw_record():
    return build_record


@pytest.fixture
def make_event():
    def _make(project="proj", **kwargs):
        record = TranscriptRecord.model_validate(build_record(**kwargs))
        return event_from_record(record, project)

    return _make


@pytest.fixture
def write_jsonl():
    def _write(path, lines):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line if isinstance(line, str) else json.dumps(line))
                f.write("\n")
        return path

    return _write
