#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Shared core for VanityCal.

Expands a handful of reference dates into anniversaries, countdowns and
recurring annual events, and labels each occurrence with a compact
elapsed/remaining-time string ("7d", "1y 3m", "D-100", ...).

"""
from __future__ import annotations
import os, re, sys
import json, time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Iterator


# ==============================================================================
# TABLE OF CONTENTS (major sections)
# 1) Errors & diagnostics
# 2) Config & defaults
# 3) Calendar math
# 4) Labels
# 5) Expanders
# 6) Pipeline
# ==============================================================================


try:
    import tomllib  # Python 3.11+
except Exception:
    try:
        import tomli as tomllib  # Python 3.10 and earlier (pip install tomli)
    except Exception:
        tomllib = None


# ==============================================================================
# SECTION: Errors & diagnostics
# ==============================================================================
class ConfigError(Exception):
    pass


class InvalidDateInput(ConfigError):
    """A date or month-day token did not match its expected format."""
    pass


_DIAG_LOG_REDACT_KEYS = frozenset({"description", "descriptions", "note", "notes"})


def _vanitycal_cache_dir() -> str:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.expanduser("~/.cache")
    return os.path.join(base, "vanitycal")


def _redact_dict(data: dict, redact_keys: frozenset) -> dict:
    out = {}
    for k, v in data.items():
        if str(k).lower() in redact_keys:
            out[k] = "[redacted]"
        elif isinstance(v, dict):
            out[k] = _redact_dict(v, redact_keys)
        else:
            out[k] = v
    return out


def diag_log_redact(msg, redact_keys: frozenset | None = None):
    keys = redact_keys or _DIAG_LOG_REDACT_KEYS
    if isinstance(msg, dict):
        return _redact_dict(msg, keys)
    return str(msg)


def _diag_log_path() -> str:
    p = os.environ.get("VANITYCAL_DIAG_LOG_PATH")
    if p:
        return os.path.abspath(os.path.expanduser(p))
    return os.path.join(_vanitycal_cache_dir(), "diag.jsonl")


def diag_log(msg, source: str = "vanitycal") -> None:
    """Append a JSONL diagnostic log entry (when VANITYCAL_DIAG_LOG=1)."""
    if os.environ.get("VANITYCAL_DIAG_LOG") != "1":
        return
    path = _diag_log_path()
    try:
        max_bytes = int(os.environ.get("VANITYCAL_DIAG_LOG_MAX_BYTES") or 262144)
    except ValueError:
        max_bytes = 262144
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        if max_bytes > 0 and os.path.exists(path) and os.stat(path).st_size > max_bytes:
            overflow = path.replace(".jsonl", f".overflow.{int(time.time())}.jsonl")
            os.replace(path, overflow)
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "source": source,
            "pid": os.getpid(),
        }
        red = diag_log_redact(msg)
        if isinstance(red, dict):
            payload["msg"] = str(red.get("msg") or red.get("message") or "")
            payload["data"] = red
        else:
            payload["msg"] = red
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False, default=str, separators=(",", ":")) + "\n")
    except OSError:
        # diagnostics must never break a run
        pass


def diag(msg, source: str = "vanitycal") -> None:
    """Write diagnostics to stderr when VANITYCAL_DIAG=1 and append to diag log when VANITYCAL_DIAG_LOG=1."""
    if os.environ.get("VANITYCAL_DIAG") == "1":
        text = msg.get("msg", msg) if isinstance(msg, dict) else msg
        sys.stderr.write(f"[vanitycal] {text}\n")
    diag_log(msg, source)


# ==============================================================================
# SECTION: Config & defaults
# ==============================================================================
_DEFAULTS = {
    "timezone": "Europe/Paris",
    "calendar_name": "VanityCal 💚",
    "summary_suffix": "",
}

DEFAULT_YEARS = (1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 15, 20, 25, 30, 35, 40, 45, 50)
DEFAULT_MONTHS = (1, 2, 3, 6, 9)
DEFAULT_DAYS = (0, 7, 100, 1000, 10000)  # 0 means D-Day

DATE_FMT = "%Y-%m-%d"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_DAY_RE = re.compile(r"^(\d{2})-(\d{2})$")
_LEAP_YEAR_FOR_CHECKS = 2000


@dataclass(frozen=True)
class AnniversaryPattern:
    days: tuple[int, ...] = DEFAULT_DAYS
    months: tuple[int, ...] = DEFAULT_MONTHS
    years: tuple[int, ...] = DEFAULT_YEARS


@dataclass(frozen=True)
class AnchorEvent:
    """One configured event: either a full date or a yearly month/day."""

    title: str
    description: str = ""
    date: date | None = None
    month_day: tuple[int, int] | None = None
    suppress_past: bool = False
    suppress_future: bool = False

    def __post_init__(self):
        if not (self.title or "").strip():
            raise ConfigError("title is required")
        if self.date is not None and self.month_day is not None:
            raise ConfigError("cannot specify both date and month_day")
        if self.date is None and self.month_day is None:
            raise ConfigError("either date or month_day is required")

    @property
    def is_recurring(self) -> bool:
        return self.month_day is not None

    @property
    def anchor_token(self) -> str:
        if self.date is not None:
            return self.date.strftime(DATE_FMT)
        m, d = self.month_day
        return f"{m:02d}-{d:02d}"


@dataclass(frozen=True)
class Config:
    events: tuple[AnchorEvent, ...]
    pattern: AnniversaryPattern = field(default_factory=AnniversaryPattern)
    timezone: str = _DEFAULTS["timezone"]
    calendar_name: str = _DEFAULTS["calendar_name"]
    summary_suffix: str = _DEFAULTS["summary_suffix"]


def parse_date(value) -> date:
    """Parse a YYYY-MM-DD token (or pass a native TOML date through)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not _DATE_RE.fullmatch(s):
        raise InvalidDateInput(f"invalid date format '{value}' (expected YYYY-MM-DD)")
    try:
        return datetime.strptime(s, DATE_FMT).date()
    except ValueError:
        raise InvalidDateInput(f"invalid date format '{value}' (expected YYYY-MM-DD)")


def parse_month_day(value) -> tuple[int, int]:
    s = str(value).strip()
    m = _MONTH_DAY_RE.fullmatch(s)
    if not m:
        raise InvalidDateInput(f"invalid month_day format '{value}' (expected MM-DD)")
    mm, dd = int(m.group(1)), int(m.group(2))
    try:
        # leap year so that 02-29 validates
        date(_LEAP_YEAR_FOR_CHECKS, mm, dd)
    except ValueError:
        raise InvalidDateInput(f"invalid month_day format '{value}' (expected MM-DD)")
    return mm, dd


def _normalize_keys(d: dict) -> dict:
    # allow users to write keys in any case
    out = {}
    for k, v in (d or {}).items():
        out[str(k).strip().lower()] = v
    return out


def _trueish(v, default=False):
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    return s in ("1", "true", "yes", "on")


def _conf_str(cfg: dict, key: str) -> str:
    v = cfg.get(key)
    if v is None:
        return _DEFAULTS[key]
    s = str(v).strip()
    return s if s else _DEFAULTS[key]


def _coerce_offsets(key: str, raw, default: tuple[int, ...]) -> tuple[int, ...]:
    if raw is None:
        return default
    if not isinstance(raw, (list, tuple)):
        raise ConfigError(f"anniversaries.{key}: expected a list of non-negative integers")
    out = []
    for v in raw:
        if isinstance(v, bool) or not isinstance(v, int) or v < 0:
            raise ConfigError(
                f"anniversaries.{key}: expected a list of non-negative integers, got {v!r}"
            )
        out.append(v)
    # an empty list falls back to the defaults, like a missing one
    return tuple(out) if out else default


def parse_pattern(raw: dict | None) -> AnniversaryPattern:
    raw = _normalize_keys(raw or {})
    return AnniversaryPattern(
        days=_coerce_offsets("days", raw.get("days"), DEFAULT_DAYS),
        months=_coerce_offsets("months", raw.get("months"), DEFAULT_MONTHS),
        years=_coerce_offsets("years", raw.get("years"), DEFAULT_YEARS),
    )


def parse_event(raw: dict, index: int) -> AnchorEvent:
    """Build one event from its TOML table; `index` is 1-based for messages."""
    ev = _normalize_keys(raw)
    title = str(ev.get("title") or "").strip()
    raw_date = ev.get("date")
    raw_md = ev.get("month_day")
    has_date = raw_date not in (None, "")
    has_md = raw_md not in (None, "")
    try:
        if not title:
            raise ConfigError("title is required")
        if has_date and has_md:
            raise ConfigError("cannot specify both date and month_day")
        if not has_date and not has_md:
            raise ConfigError("either date or month_day is required")
        return AnchorEvent(
            title=title,
            description=str(ev.get("description") or ""),
            date=parse_date(raw_date) if has_date else None,
            month_day=parse_month_day(raw_md) if has_md else None,
            suppress_past=_trueish(ev.get("no_past")),
            suppress_future=_trueish(ev.get("no_future")),
        )
    except InvalidDateInput as e:
        raise InvalidDateInput(f"event {index}: {e}") from None
    except ConfigError as e:
        raise ConfigError(f"event {index}: {e}") from None


def config_from_dict(data: dict) -> Config:
    """Validate a decoded TOML document and apply defaults."""
    cfg = _normalize_keys(data)
    raw_events = cfg.get("events") or []
    if not isinstance(raw_events, list) or not raw_events:
        raise ConfigError("no events found in configuration")
    events = []
    for i, raw in enumerate(raw_events, 1):
        if not isinstance(raw, dict):
            raise ConfigError(f"event {i}: expected a table")
        events.append(parse_event(raw, i))
    raw_pattern = cfg.get("anniversaries")
    if raw_pattern is not None and not isinstance(raw_pattern, dict):
        raise ConfigError("anniversaries: expected a table")
    return Config(
        events=tuple(events),
        pattern=parse_pattern(raw_pattern),
        timezone=_conf_str(cfg, "timezone"),
        calendar_name=_conf_str(cfg, "calendar_name"),
        summary_suffix=str(cfg.get("summary_suffix") or "").strip(),
    )


def _read_toml(path: str) -> dict:
    if tomllib is None:
        raise ConfigError(
            "TOML parser unavailable. Install tomli or upgrade to Python 3.11+."
        )
    try:
        if path == "-":
            return tomllib.load(sys.stdin.buffer) or {}
        with open(path, "rb") as f:
            return tomllib.load(f) or {}
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"failed to parse TOML {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e.strerror or e}") from e


def resolve_config_path(path: str | None) -> str:
    if path:
        return path if path == "-" else os.path.abspath(os.path.expanduser(path))
    env_path = os.environ.get("VANITYCAL_CONFIG")
    if env_path:
        return os.path.abspath(os.path.expanduser(env_path))
    return "-"


def load_config(path: str | None = None) -> Config:
    chosen = resolve_config_path(path)
    diag(f"Using config: {'<stdin>' if chosen == '-' else chosen}")
    cfg = config_from_dict(_read_toml(chosen))
    diag({
        "msg": "config loaded",
        "events": len(cfg.events),
        "days": list(cfg.pattern.days),
        "months": list(cfg.pattern.months),
        "years": list(cfg.pattern.years),
    })
    return cfg


# ==============================================================================
# SECTION: Calendar math
# ==============================================================================
# Month and year addition never clamp: the overflowing day count rolls into the
# following month (Jan 31 + 1 month = Mar 3). Exact-match labels depend on it.

def month_len(y: int, m: int) -> int:
    """Get number of days in month."""
    import calendar

    return calendar.monthrange(y, m)[1]


def _normalize(y: int, m: int, d: int) -> date:
    y += (m - 1) // 12
    m = (m - 1) % 12 + 1
    try:
        return date(y, m, 1) + timedelta(days=d - 1)
    except (OverflowError, ValueError):
        raise InvalidDateInput(f"date out of range: {y:04d}-{m:02d} day {d}") from None


def add_days(d: date, n: int) -> date:
    try:
        return d + timedelta(days=n)
    except OverflowError:
        raise InvalidDateInput(f"date out of range: {d} {n:+d} days") from None


def add_months(d: date, n: int) -> date:
    return _normalize(d.year, d.month + n, d.day)


def add_years(d: date, n: int) -> date:
    return _normalize(d.year + n, d.month, d.day)


def days_between(start: date, end: date) -> int:
    return (end - start).days


def _as_date(v) -> date:
    return v.date() if isinstance(v, datetime) else v


def _decompose(start: date, end: date) -> tuple[int, int, int]:
    """Field-wise (years, months, days) from start to end, borrowing as needed."""
    years = end.year - start.year
    months = end.month - start.month
    days = end.day - start.day
    if months < 0:
        years -= 1
        months += 12
    # borrow from the month of end - 1 month (which itself rolls over), then
    # from earlier calendar months until the day count is non-negative
    if days < 0:
        prev = add_months(end, -1)
        by, bm = prev.year, prev.month
        while True:
            months -= 1
            if months < 0:
                years -= 1
                months += 12
            days += month_len(by, bm)
            if days >= 0:
                break
            by, bm = (by, bm - 1) if bm > 1 else (by - 1, 12)
    return years, months, days


def _exact_unit_match(start: date, end: date) -> tuple[str, int] | None:
    """("y", Y) or ("m", M) when end is a whole number of years/months after start."""
    years = end.year - start.year
    if years > 0:
        probe = add_years(start, years)
        if probe == end:
            return "y", years
        # Feb 29 + N years rolls to Mar 1 in common years; Feb 28 still counts
        if (start.month, start.day) == (2, 29) and (end.month, end.day) == (2, 28):
            if (probe.month, probe.day) == (3, 1):
                return "y", years
    for months in range(1, years * 12 + 13):
        if add_months(start, months) == end:
            return "m", months
    return None


# ==============================================================================
# SECTION: Labels
# ==============================================================================
DDAY = "D-DAY"
ANNIVERSARY_MILESTONES = frozenset({7, 100, 1000, 10000})
COUNTDOWN_MILESTONES = frozenset({1, 2, 3, 5, 7, 10, 30, 60, 90, 100, 365, 1000})


def get_duration(start: date, end: date) -> str:
    """
    Label the time elapsed from `start` to `end` (end on/after start).

    Precedence: D-Day, exact years, exact months, day milestones, then a
    field-wise years/months/days breakdown.
    """
    start, end = _as_date(start), _as_date(end)
    if end == start:
        return DDAY

    hit = _exact_unit_match(start, end)
    if hit is not None:
        unit, n = hit
        if unit == "y":
            return f"{n}y"
        if n >= 12:
            y, m = divmod(n, 12)
            return f"{y}y" if m == 0 else f"{y}y {m}m"
        return f"{n}m"

    total_days = days_between(start, end)
    if total_days in ANNIVERSARY_MILESTONES:
        return f"{total_days}d"

    years, months, days = _decompose(start, end)
    if years > 0 and months == 0 and days == 0:
        return f"{years}y"
    if years > 0 and months > 0 and days == 0:
        return f"{years}y {months}m"
    if years > 0 and days > 0 and months == 0:
        return f"{years}y {days}d"
    if years == 0 and months > 0 and days == 0:
        return f"{months}m"
    if years == 0 and months > 0 and days > 0:
        return f"{months}m {days}d"
    if years == 0 and months == 0 and days > 0:
        return f"{days}d"
    return f"{years}y {months}m {days}d"


def get_countdown_duration(frm: date, to: date) -> str:
    """Label the time remaining from `frm` until the anchor `to`."""
    frm, to = _as_date(frm), _as_date(to)
    if frm >= to:
        return DDAY

    total_days = days_between(frm, to)
    if total_days in COUNTDOWN_MILESTONES:
        return f"D-{total_days}"

    hit = _exact_unit_match(frm, to)
    if hit is not None:
        unit, n = hit
        if unit == "y":
            return f"D-{n}y"
        return f"D-{n}m" if n < 12 else f"D-{n // 12}y"

    years, months, _ = _decompose(frm, to)
    total_months = years * 12 + months
    if total_days < 30:
        return f"D-{total_days}"
    if 1 <= total_months <= 11:
        return f"D-{total_months}m"
    if total_months >= 12:
        return f"D-{total_months // 12}y"
    return f"D-{total_days}"


# ==============================================================================
# SECTION: Expanders
# ==============================================================================
def get_anniversaries(anchor: date, pattern: AnniversaryPattern) -> list[date]:
    out: list[date] = []
    for n in pattern.days:
        out.append(anchor if n == 0 else add_days(anchor, n))
    for n in pattern.months:
        out.append(add_months(anchor, n))
    for n in pattern.years:
        out.append(add_years(anchor, n))
    return out


def get_countdowns(anchor: date, pattern: AnniversaryPattern, today) -> list[tuple[date, str]]:
    """
    Countdown steps before a future anchor, as (date, label) pairs.

    Each offset is subtracted from the anchor; steps that would land on or
    before `today` are dropped. Day offset 0 has no countdown step.
    """
    today = _as_date(today)
    if anchor <= today:
        return []
    candidates = [add_days(anchor, -n) for n in pattern.days if n != 0]
    candidates += [add_months(anchor, -n) for n in pattern.months]
    candidates += [add_years(anchor, -n) for n in pattern.years]
    return [(c, get_countdown_duration(c, anchor)) for c in candidates if c > today]


def get_recurring(month_day: tuple[int, int], today) -> list[date]:
    # Feb 29 lands on Mar 1 in common years
    year = _as_date(today).year
    m, d = month_day
    return [_normalize(y, m, d) for y in (year - 1, year, year + 1)]


# ==============================================================================
# SECTION: Pipeline
# ==============================================================================
@dataclass(frozen=True)
class Occurrence:
    date: date
    label: str | None
    event: AnchorEvent

    @property
    def title(self) -> str:
        return self.event.title

    @property
    def description(self) -> str:
        return self.event.description

    def as_tuple(self) -> tuple[date, str | None, str, str]:
        return self.date, self.label, self.title, self.description


def _expand_dated(ev: AnchorEvent, pattern: AnniversaryPattern, today: date) -> Iterator[Occurrence]:
    anchor = ev.date
    future = anchor > today
    countdown_on = future and not ev.suppress_future
    anniversary_on = not ev.suppress_past
    own_dday = future and not ev.suppress_future and not (anniversary_on and 0 in pattern.days)

    diag({
        "msg": f"{ev.title}: anchor={anchor} future={future} countdown={countdown_on} "
               f"anniversaries={anniversary_on}",
        "title": ev.title,
        "description": ev.description,
    })

    if countdown_on:
        for d, label in get_countdowns(anchor, pattern, today):
            yield Occurrence(d, label, ev)
    if own_dday:
        yield Occurrence(anchor, DDAY, ev)
    if anniversary_on:
        for d in get_anniversaries(anchor, pattern):
            if ev.suppress_future and d > today:
                continue
            yield Occurrence(d, get_duration(anchor, d), ev)


def iter_occurrences(
    events: Iterable[AnchorEvent],
    pattern: AnniversaryPattern,
    today,
) -> Iterator[Occurrence]:
    """Yield every occurrence of every event, in event order."""
    today = _as_date(today)
    for i, ev in enumerate(events, 1):
        try:
            if ev.is_recurring:
                for d in get_recurring(ev.month_day, today):
                    yield Occurrence(d, None, ev)
                continue
            yield from _expand_dated(ev, pattern, today)
        except InvalidDateInput as e:
            raise InvalidDateInput(f"event {i} ({ev.title}): {e}") from None


def expand_events(events: Iterable[AnchorEvent], pattern: AnniversaryPattern, today) -> list[Occurrence]:
    return list(iter_occurrences(events, pattern, today))
