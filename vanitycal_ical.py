#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
iCalendar output for VanityCal.

One all-day VEVENT per occurrence; UIDs are derived from the date and the
parent event so regenerated calendars update entries in place.
"""
from __future__ import annotations
import hashlib
from datetime import date, datetime, timezone
from typing import Iterable

from icalendar import Calendar, Event

import vanitycal_core as core

PRODID = "-//vanitycal//vanitycal//EN"
UID_PREFIX = "vanitycal"


def event_key(ev: core.AnchorEvent) -> str:
    raw = f"{ev.title}|{ev.anchor_token}".encode("utf-8")
    return hashlib.sha1(raw).hexdigest()[:10]


def occurrence_summary(occ: core.Occurrence, suffix: str = "") -> str:
    s = occ.title if occ.label is None else f"{occ.title} - {occ.label}"
    return f"{s} {suffix}" if suffix else s


def assign_uids(occurrences: Iterable[core.Occurrence]) -> list[tuple[str, core.Occurrence]]:
    """Pair each occurrence with a stable UID; repeats of (date, event) get -2, -3, ..."""
    seen: dict[str, int] = {}
    out = []
    for occ in occurrences:
        base = f"{UID_PREFIX}-{occ.date.strftime('%Y%m%d')}-{event_key(occ.event)}"
        n = seen.get(base, 0) + 1
        seen[base] = n
        out.append((base if n == 1 else f"{base}-{n}", occ))
    return out


def _stamp(now) -> datetime:
    """The run clock as a UTC datetime (DTSTAMP must be UTC); naive values are taken as UTC."""
    if isinstance(now, datetime):
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)
    if isinstance(now, date):
        return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
    raise TypeError(f"expected a date or datetime clock, got {type(now).__name__}")


def build_calendar(cfg: core.Config, occurrences: Iterable[core.Occurrence], now) -> Calendar:
    stamp = _stamp(now)
    cal = Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    cal.add("method", "PUBLISH")
    cal.add("calscale", "GREGORIAN")
    cal.add("name", cfg.calendar_name)
    cal.add("x-wr-calname", cfg.calendar_name)
    # timezone is only tagged, dates stay floating all-day values
    cal.add("timezone-id", cfg.timezone)
    cal.add("x-wr-timezone", cfg.timezone)
    cal.add("last-modified", stamp)

    count = 0
    for uid, occ in assign_uids(occurrences):
        ev = Event()
        ev.add("uid", uid)
        ev.add("dtstamp", stamp)
        ev.add("summary", occurrence_summary(occ, cfg.summary_suffix))
        if occ.description:
            ev.add("description", occ.description)
        ev.add("dtstart", occ.date)
        cal.add_component(ev)
        count += 1
    core.diag(f"calendar built: {count} events")
    return cal


def render_ical(cfg: core.Config, occurrences: Iterable[core.Occurrence], now) -> bytes:
    return build_calendar(cfg, occurrences, now).to_ical()
