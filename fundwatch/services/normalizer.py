from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type

from fundwatch.domain.models import (
    DetailRecord,
    HistoryPage,
    HistoryPoint,
    ManagerInfo,
    RankEntry,
    SearchResult,
    ValuationRecord,
)
from fundwatch.services.errors import ParseError

log = logging.getLogger(__name__)

# Eastmoney series timestamps are midnight Beijing time, in epoch ms.
CN_TZ = timezone(timedelta(hours=8))

VALUATION_CALLBACK = "jsonpgz"

RANK_FIELDS: Tuple[str, ...] = (
    "code",
    "name",
    "pinyin",
    "nav_date",
    "nav",
    "accumulated_nav",
    "day_change_pct",
    "week_pct",
    "month_pct",
    "month3_pct",
    "month6_pct",
    "year1_pct",
    "year2_pct",
    "year3_pct",
    "ytd_pct",
    "since_inception_pct",
)

LEGACY_SEARCH_FIELDS: Tuple[str, ...] = ("code", "name", "type", "pinyin")

_MISSING = object()
_CALLBACK_RE = re.compile(r"^\s*[\w$.]+\s*\(")
_BOUNDARY_RE = re.compile(r"\s*(?:$|var\s|/\*|//|</script)")
_DATAS_RE = re.compile(r"\bdatas\s*:\s*\[")


# ---------- primitives ----------


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def pick(obj: Any, *aliases: str, default: Any = "") -> Any:
    """
    Return the first alias present (and not null) in obj. Dotted aliases walk
    nested dicts, e.g. "FundBaseInfo.FTYPE".
    """
    if not isinstance(obj, dict):
        return default
    for alias in aliases:
        value: Any = obj
        for part in alias.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                value = _MISSING
                break
        if value is not _MISSING and value is not None:
            return value
    return default


def split_record(text: Any, fields: Sequence[str], delimiter: str = ",") -> Dict[str, str]:
    """
    Map a delimited flat string onto positional field names. Missing trailing
    fields come back as "" and extra columns are ignored.
    """
    parts = str(text).split(delimiter) if text else []
    return {name: (parts[i].strip() if i < len(parts) else "") for i, name in enumerate(fields)}


def unwrap_callback(text: Any, prefix: Optional[str] = None) -> Any:
    """
    Parse callback-wrapped JSON such as `jsonpgz({...});`.

    With no prefix, any leading identifier call is stripped (callback names
    like jQuery1830_... change per request).
    """
    body = _text(text)
    if prefix:
        if not body.startswith(prefix):
            raise ParseError(f"expected {prefix}(...) wrapper")
        body = body[len(prefix):].lstrip()
        if not body.startswith("("):
            raise ParseError(f"expected {prefix}(...) wrapper")
        body = body[1:]
    else:
        m = _CALLBACK_RE.match(body)
        if not m:
            raise ParseError("no callback wrapper")
        body = body[m.end():]

    body = body.rstrip().rstrip(";").rstrip()
    if body.endswith(")"):
        body = body[:-1]
    body = body.strip()
    if not body:
        raise ParseError("empty callback payload")
    try:
        return json.loads(body)
    except ValueError as exc:
        raise ParseError(f"callback payload is not JSON: {exc}") from exc


def _walk(text: str, start: int) -> Iterator[Tuple[int, str, int]]:
    """Yield (index, char, depth-after-char) for characters outside string literals."""
    depth = 0
    quote: Optional[str] = None
    i = start
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "[{(":
            depth += 1
        elif ch in "]})":
            depth -= 1
        yield i, ch, depth
        i += 1


def _literal_end(blob: str, start: int) -> int:
    # A top-level ';' ends the literal only when the next meaningful token is
    # another declaration, a comment or end of input. Without such a boundary the
    # first top-level ';' is used.
    first: Optional[int] = None
    for i, ch, depth in _walk(blob, start):
        if depth < 0:
            return first if first is not None else i
        if ch == ";" and depth == 0:
            if _BOUNDARY_RE.match(blob, i + 1):
                return i
            if first is None:
                first = i
    return first if first is not None else len(blob)


def _matching_close(text: str, start: int) -> Optional[int]:
    for i, ch, depth in _walk(text, start):
        if depth == 0 and ch in "]})":
            return i
    return None


def find_declaration(blob: Any, name: str) -> Optional[str]:
    """Return the raw literal text of `var <name> = <literal>;`, or None."""
    if not isinstance(blob, str) or not blob:
        return None
    pattern = re.compile(r"\bvar\s+" + re.escape(name) + r"\s*=\s*")
    m = pattern.search(blob)
    if not m:
        return None
    end = _literal_end(blob, m.end())
    return blob[m.end():end].strip()


def _parse_literal(raw: str, expected: Type) -> Any:
    if expected is str:
        if raw.startswith('"'):
            try:
                value = json.loads(raw)
                if isinstance(value, str):
                    return value
            except ValueError:
                pass
            return raw.strip('"')
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            return raw[1:-1]
        if raw in ("null", "undefined"):
            return ""
        return raw

    try:
        value = json.loads(raw)
    except ValueError as exc:
        raise ParseError(f"literal is not JSON: {exc}") from exc
    if not isinstance(value, expected):
        raise ParseError(f"expected {expected.__name__}, got {type(value).__name__}")
    return value


def extract_var(blob: Any, name: str, expected: Type = str) -> Any:
    """
    Extract one declared variable from a script blob.

    `expected` is str, list or dict. A missing, malformed or wrongly-shaped value
    yields the empty default for that shape ("", [] or {}).
    """
    raw = find_declaration(blob, name)
    if raw is None:
        log.debug("var %s not declared", name)
        return expected()
    try:
        return _parse_literal(raw, expected)
    except ParseError as exc:
        log.debug("var %s unusable: %s", name, exc)
        return expected()


def _date_from_ms(value: Any) -> str:
    try:
        ms = float(value)
    except (TypeError, ValueError):
        return ""
    try:
        return datetime.fromtimestamp(ms / 1000.0, tz=CN_TZ).strftime("%Y-%m-%d")
    except (OverflowError, OSError, ValueError):
        return ""


# ---------- record normalizers ----------


def normalize_valuation(text: Any) -> ValuationRecord:
    payload = unwrap_callback(text, VALUATION_CALLBACK)
    if not isinstance(payload, dict):
        raise ParseError("valuation payload is not an object")
    code = _text(pick(payload, "fundcode"))
    if not code:
        raise ParseError("valuation payload has no fundcode")
    return ValuationRecord(
        code=code,
        name=_text(pick(payload, "name")),
        nav_date=_text(pick(payload, "jzrq")),
        nav=_text(pick(payload, "dwjz")),
        estimate_value=_text(pick(payload, "gsz")),
        estimate_change_pct=_text(pick(payload, "gszzl")),
        estimate_time=_text(pick(payload, "gztime")),
    )


def normalize_net_worth_trend(blob: Any) -> List[HistoryPoint]:
    """Daily NAV series from the detail blob, oldest first."""
    trend = extract_var(blob, "Data_netWorthTrend", list)
    acc_rows = extract_var(blob, "Data_ACWorthTrend", list)

    acc_by_x: Dict[Any, Any] = {}
    for row in acc_rows:
        if isinstance(row, list) and len(row) >= 2:
            acc_by_x[row[0]] = row[1]

    points: List[HistoryPoint] = []
    for item in trend:
        if not isinstance(item, dict):
            continue
        day = _date_from_ms(item.get("x"))
        nav = _text(item.get("y"))
        if not day or not nav:
            continue
        points.append(
            HistoryPoint(
                date=day,
                nav=nav,
                accumulated_nav=_text(acc_by_x.get(item.get("x"))),
                daily_change_pct=_text(item.get("equityReturn")),
            )
        )
    return points


def _manager(raw: Dict[str, Any]) -> ManagerInfo:
    return ManagerInfo(
        id=_text(pick(raw, "id")),
        name=_text(pick(raw, "name")),
        star=_text(pick(raw, "star")),
        work_time=_text(pick(raw, "workTime")),
        fund_size=_text(pick(raw, "fundSize")),
    )


def _performance(raw: Dict[str, Any]) -> Dict[str, float]:
    categories = raw.get("categories") or []
    scores = raw.get("data") or []
    out: Dict[str, float] = {}
    if not isinstance(categories, list) or not isinstance(scores, list):
        return out
    for cat, score in zip(categories, scores):
        try:
            out[str(cat)] = float(score)
        except (TypeError, ValueError):
            continue
    return out


def normalize_detail(blob: Any) -> DetailRecord:
    """
    Static fund profile from the pingzhongdata script blob. Every field is an
    independent extraction; only a blob with no declarations at all is an error.
    """
    if not isinstance(blob, str) or not re.search(r"\bvar\s+\w+\s*=", blob):
        raise ParseError("detail payload has no script declarations")

    managers = [_manager(m) for m in extract_var(blob, "Data_currentFundManager", list) if isinstance(m, dict)]
    stock_codes = [_text(c) for c in extract_var(blob, "stockCodes", list) if _text(c)]

    return DetailRecord(
        code=extract_var(blob, "fS_code"),
        name=extract_var(blob, "fS_name"),
        source_rate=extract_var(blob, "fund_sourceRate"),
        rate=extract_var(blob, "fund_Rate"),
        min_subscription=extract_var(blob, "fund_minsg"),
        return_1y=extract_var(blob, "syl_1n"),
        return_6m=extract_var(blob, "syl_6y"),
        return_3m=extract_var(blob, "syl_3y"),
        return_1m=extract_var(blob, "syl_1y"),
        stock_codes=stock_codes,
        bond_codes=extract_var(blob, "zqCodes"),
        managers=managers,
        performance=_performance(extract_var(blob, "Data_performanceEvaluation", dict)),
        net_worth_trend=normalize_net_worth_trend(blob),
    )


def normalize_history_page(payload: Any, code: str, page: int, page_size: int) -> HistoryPage:
    """Paged NAV history from the lsjz JSON endpoint (newest first)."""
    if not isinstance(payload, dict):
        raise ParseError("history payload is not an object")
    data = pick(payload, "Data", "data", default={})
    rows = pick(data, "LSJZList", "list", default=_MISSING)
    if not isinstance(rows, list):
        raise ParseError("history payload has no LSJZList")

    points: List[HistoryPoint] = []
    for row in rows:
        day = _text(pick(row, "FSRQ", "date"))
        if not day:
            continue
        points.append(
            HistoryPoint(
                date=day,
                nav=_text(pick(row, "DWJZ", "nav")),
                accumulated_nav=_text(pick(row, "LJJZ", "accumulatedNav")),
                daily_change_pct=_text(pick(row, "JZZZL", "dailyChangePct")),
            )
        )

    try:
        total = int(pick(payload, "TotalCount", "total", default=len(points)))
    except (TypeError, ValueError):
        total = len(points)

    return HistoryPage(code=code, page=page, page_size=page_size, total=total, source="lsjz", points=points)


def page_from_trend(code: str, trend: List[HistoryPoint], page: int, page_size: int) -> HistoryPage:
    """Serve one history page out of the oldest-first series, newest first like lsjz."""
    newest_first = list(reversed(trend))
    start = max(page - 1, 0) * page_size
    window = newest_first[start:start + page_size]
    return HistoryPage(
        code=code,
        page=page,
        page_size=page_size,
        total=len(newest_first),
        source="net_worth_trend" if window else "none",
        points=window,
    )


def normalize_rank_page(blob: Any) -> List[RankEntry]:
    """
    `var rankData = ...` holds either a bare array of csv rows or an object
    literal (unquoted keys) whose `datas:[...]` member holds them.
    """
    raw = find_declaration(blob, "rankData")
    if raw is None:
        raise ParseError("rankData not declared")

    if raw.startswith("["):
        rows = _parse_literal(raw, list)
    elif raw.startswith("{"):
        m = _DATAS_RE.search(raw)
        if not m:
            raise ParseError("rankData has no datas member")
        start = m.end() - 1
        end = _matching_close(raw, start)
        if end is None:
            raise ParseError("rankData datas array is unterminated")
        rows = _parse_literal(raw[start:end + 1], list)
    else:
        raise ParseError("rankData is neither array nor object")

    entries: List[RankEntry] = []
    for row in rows:
        if not isinstance(row, str):
            continue
        fields = split_record(row, RANK_FIELDS)
        if not fields["code"]:
            continue
        fields.pop("pinyin")
        entries.append(RankEntry(**fields))
    return entries


def normalize_search_legacy(text: Any) -> List[SearchResult]:
    payload = unwrap_callback(text)
    rows = pick(payload, "Datas", default=[])
    results: List[SearchResult] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, str):
            continue
        fields = split_record(row, LEGACY_SEARCH_FIELDS)
        if fields["code"]:
            results.append(SearchResult(**fields))
    return results


def normalize_search_typed(payload: Any) -> List[SearchResult]:
    rows = payload if isinstance(payload, list) else pick(payload, "Datas", "datas", "data", default=[])
    results: List[SearchResult] = []
    for row in rows if isinstance(rows, list) else []:
        code = _text(pick(row, "CODE", "code", "fundcode", "FCODE"))
        if not code:
            continue
        results.append(
            SearchResult(
                code=code,
                name=_text(pick(row, "NAME", "name", "SHORTNAME")),
                type=_text(pick(row, "FundBaseInfo.FTYPE", "FTYPE", "CATEGORYDESC", "type")),
                pinyin=_text(pick(row, "JP", "pinyin", "PINYIN")),
            )
        )
    return results
