"""Terminal tables, number formatting and JSON status objects shared by the CLI."""

import csv
import json
import re
import sys
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, TextIO

ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")

BOLD = "\x1b[1m"
GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
RED = "\x1b[31m"
CYAN = "\x1b[36m"
RESET = "\x1b[0m"

DATE_FORMATS = {
    "yyyy-mm-dd": "%Y-%m-%d",
    "dd-mm-yyyy": "%d-%m-%Y",
    "mm-dd-yyyy": "%m-%d-%Y",
}

STATUS_SUCCESS = "success"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"


def strip_ansi(s: str) -> str:
    return ANSI_RE.sub("", s)


def colorize(text: str, color: str, enabled: bool) -> str:
    if not enabled:
        return text
    return f"{color}{text}{RESET}"


def is_number_like(val: Any) -> bool:
    if isinstance(val, bool):
        return False
    if isinstance(val, (int, float)):
        return True
    if isinstance(val, str):
        s = strip_ansi(val).strip().lstrip("$").replace(",", "")
        for suffix in (" €", " ¥", "€", "¥", "K", "M", "%"):
            if s.endswith(suffix):
                s = s[: -len(suffix)]
                break
        try:
            float(s)
            return True
        except ValueError:
            return False
    return False


def format_tokens(n: int) -> str:
    """Compact token count: 0, 999, 1.5K, 2.5M."""
    if n == 0:
        return "0"
    if n < 1_000:
        return str(n)
    if n < 1_000_000:
        return f"{n / 1_000:.1f}K"
    return f"{n / 1_000_000:.1f}M"


def format_number(n: int) -> str:
    return f"{n:,}"


def format_date(d: date, date_format: str = "yyyy-mm-dd") -> str:
    return d.strftime(DATE_FORMATS.get(date_format, "%Y-%m-%d"))


def format_datetime(dt: Optional[datetime], date_format: str = "yyyy-mm-dd") -> str:
    if dt is None:
        return ""
    return f"{format_date(dt.date(), date_format)} {dt.strftime('%H:%M')}"


def status_object(status: str, message: str, data: Optional[List[Any]] = None) -> Dict[str, Any]:
    return {"status": status, "message": message, "data": data if data is not None else []}


def write_status(status: str, message: str, out: TextIO = sys.stdout, data: Optional[List[Any]] = None) -> None:
    out.write(json.dumps(status_object(status, message, data), ensure_ascii=False) + "\n")


def write_json(payload: Any, out: TextIO = sys.stdout) -> None:
    out.write(json.dumps(payload, ensure_ascii=False, indent=2, default=_json_default) + "\n")


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, set):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_csv(headers: List[str], rows: List[List[Any]], out: TextIO) -> None:
    w = csv.writer(out)
    w.writerow(headers)
    for r in rows:
        w.writerow(r)


def render_table(
    headers: List[str],
    rows: List[List[Any]],
    border: str = "unicode",
    out: TextIO = sys.stdout,
    right_align_columns: Optional[Set[int]] = None,
    rule_before_rows: Optional[Set[int]] = None,
    colored: bool = False,
) -> None:
    """Draw a bordered table. Numeric-looking columns are right aligned.

    Cells may carry ANSI colour codes; widths are measured without them.
    """
    str_rows: List[List[str]] = []
    right_align: List[bool] = [False] * len(headers)
    for r in rows:
        sr: List[str] = []
        for i, v in enumerate(r):
            if v is None:
                v = ""
            if isinstance(v, float):
                s = f"{v:.2f}"
            else:
                s = str(v)
            sr.append(s)
            if i < len(right_align) and is_number_like(v):
                right_align[i] = True
        str_rows.append(sr)

    if right_align_columns:
        for idx in right_align_columns:
            if 0 <= idx < len(right_align):
                right_align[idx] = True

    widths = [len(h) for h in headers]
    for sr in str_rows:
        for i, s in enumerate(sr):
            if i < len(widths):
                widths[i] = max(widths[i], len(strip_ansi(s)))

    if border == "ascii":
        tl, tc, tr = "+", "+", "+"
        ml, mc, mr = "+", "+", "+"
        bl, bc, br = "+", "+", "+"
        v, h = "|", "-"
    else:
        tl, tc, tr = "┌", "┬", "┐"
        ml, mc, mr = "├", "┼", "┤"
        bl, bc, br = "└", "┴", "┘"
        v, h = "│", "─"

    def line(left: str, mid: str, right: str) -> str:
        parts = [left]
        for i, w in enumerate(widths):
            parts.append(h * (w + 2))
            parts.append(mid if i < len(widths) - 1 else right)
        return "".join(parts)

    def fmt_row(cells: List[str]) -> str:
        parts = [v]
        for i, w in enumerate(widths):
            cell = cells[i] if i < len(cells) else ""
            pad = " " * (w - len(strip_ansi(cell)))
            cell = pad + cell if right_align[i] else cell + pad
            parts.append(" " + cell + " ")
            parts.append(v)
        return "".join(parts)

    out.write(line(tl, tc, tr) + "\n")
    out.write(fmt_row([colorize(hd, BOLD, colored) for hd in headers]) + "\n")
    out.write(line(ml, mc, mr) + "\n")
    for idx, sr in enumerate(str_rows):
        if rule_before_rows and idx in rule_before_rows:
            out.write(line(ml, mc, mr) + "\n")
        out.write(fmt_row(sr) + "\n")
    out.write(line(bl, bc, br) + "\n")
