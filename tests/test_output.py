import io
import json
from datetime import date, datetime

from ccost.output import (
    GREEN,
    colorize,
    format_date,
    format_datetime,
    format_number,
    format_tokens,
    is_number_like,
    render_table,
    status_object,
    strip_ansi,
    write_csv,
    write_json,
    write_status,
)


def test_format_tokens():
    assert format_tokens(0) == "0"
    assert format_tokens(999) == "999"
    assert format_tokens(1_500) == "1.5K"
    assert format_tokens(2_500_000) == "2.5M"
    assert format_number(1234567) == "1,234,567"


def test_format_dates():
    d = date(2025, 8, 5)
    assert format_date(d) == "2025-08-05"
    assert format_date(d, "dd-mm-yyyy") == "05-08-2025"
    assert format_date(d, "mm-dd-yyyy") == "08-05-2025"
    assert format_datetime(datetime(2025, 8, 5, 9, 7), "dd-mm-yyyy") == "05-08-2025 09:07"
    assert format_datetime(None) == ""


def test_number_like():
    assert is_number_like("$1.23")
    assert is_number_like("1.23 €")
    assert is_number_like("1.5K")
    assert is_number_like("1,234")
    assert is_number_like(colorize("12", GREEN, True))
    assert not is_number_like("project-alpha")
    assert not is_number_like(True)


def test_colorize_and_strip():
    s = colorize("x", GREEN, True)
    assert s != "x"
    assert strip_ansi(s) == "x"
    assert colorize("x", GREEN, False) == "x"


def test_render_table_alignment_and_rules():
    out = io.StringIO()
    render_table(["Name", "Cost"], [["a", "$1.00"], ["longer", "$10.00"], ["Total", "$11.00"]], out=out, rule_before_rows={2})
    lines = out.getvalue().splitlines()
    assert lines[0].startswith("┌")
    assert lines[1] == "│ Name   │   Cost │"
    assert lines[3] == "│ a      │  $1.00 │"
    assert lines[5].startswith("├")
    assert lines[-1].startswith("└")
    assert len(lines) == 8


def test_render_table_ascii_and_colour_width():
    out = io.StringIO()
    render_table(["A"], [[colorize("abc", GREEN, True)]], border="ascii", out=out, colored=True)
    lines = out.getvalue().splitlines()
    assert lines[0] == "+-----+"
    assert strip_ansi(lines[1]) == "| A   |"
    assert strip_ansi(lines[3]) == "| abc |"


def test_json_helpers():
    assert status_object("warning", "No usage data found") == {"status": "warning", "message": "No usage data found", "data": []}
    out = io.StringIO()
    write_status("error", "boom", out)
    assert json.loads(out.getvalue())["status"] == "error"
    out = io.StringIO()
    write_json({"when": date(2025, 1, 2), "tags": {"b", "a"}}, out)
    assert json.loads(out.getvalue()) == {"when": "2025-01-02", "tags": ["a", "b"]}


def test_write_csv():
    out = io.StringIO()
    write_csv(["a", "b"], [[1, "x,y"]], out)
    assert out.getvalue().splitlines() == ["a,b", '1,"x,y"']
