#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
vanitycal (production)

Features:
- Reads a TOML config (file, $VANITYCAL_CONFIG, or stdin).
- Emits an iCalendar file of anniversaries, countdowns and yearly events.
- Single clock per run (override with --today for reproducible output).
- Optional rich preview of the generated occurrences on stderr.
"""

from __future__ import annotations

import sys, os
import argparse
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

import vanitycal_core as core
import vanitycal_ical as ical

# ========= User-togglable constants =========================================
PREVIEW_MAX_ROWS = 60  # How many occurrences the preview panel shows.
# ============================================================================

THEMES = {
    "preview": {"border": "light_sea_green", "title": "light_sea_green", "label": "cyan"},
    "error": {"border": "red", "title": "red", "label": "red"},
}


def _console() -> Console:
    return Console(file=sys.stderr)


def _panel(title, rows, kind: str = "preview"):
    """
    Render 2-column panels in a consistent style on stderr.

    `rows` is a list of (label, value) pairs; a `None` label makes a spacer row.
    """
    theme = THEMES.get(kind, THEMES["preview"])
    t = Table.grid(padding=(0, 1), expand=False)
    t.add_column(style=f"bold {theme['label']}", no_wrap=True, justify="right")
    t.add_column(style="white")
    for k, v in rows:
        if k is None:
            t.add_row("", v or "")
            continue
        t.add_row(Text(str(k)), Text(str(v)))
    _console().print(
        Panel(
            t,
            title=Text(title, style=f"bold {theme['title']}"),
            border_style=theme["border"],
            expand=False,
            padding=(0, 1),
        )
    )


def _preview(cfg: core.Config, occurrences: list[core.Occurrence]) -> None:
    rows = [
        (occ.date.isoformat(), f"{occ.label or '-':<8} {occ.title}")
        for occ in occurrences[:PREVIEW_MAX_ROWS]
    ]
    hidden = len(occurrences) - PREVIEW_MAX_ROWS
    if hidden > 0:
        rows.append((None, f"... {hidden} more"))
    _panel(f"{cfg.calendar_name} ({cfg.timezone})", rows, kind="preview")


def _parse_today(value: str | None) -> datetime:
    if not value:
        return datetime.now().astimezone()
    d = core.parse_date(value)
    return datetime(d.year, d.month, d.day).astimezone()


def _write_output(path: str, payload: bytes) -> None:
    if path == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.flush()
        return
    with open(os.path.expanduser(path), "wb") as f:
        f.write(payload)


def run(config_path: str | None, output_path: str, today: str | None = None, preview: bool = False) -> int:
    # the clock is sampled once; every comparison below uses this value
    now = _parse_today(today)
    cfg = core.load_config(config_path)
    occurrences = core.expand_events(cfg.events, cfg.pattern, now)
    core.diag(f"{len(occurrences)} occurrences for {len(cfg.events)} events")
    payload = ical.render_ical(cfg, occurrences, now)
    _write_output(output_path, payload)
    if preview:
        _preview(cfg, occurrences)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="vanitycal",
        description="Generate an iCalendar of anniversaries, countdowns and yearly events",
    )
    parser.add_argument("--config", default=None,
                        help="Path to the config file (use '-' for stdin; default: $VANITYCAL_CONFIG or stdin)")
    parser.add_argument("--output", default="-", help="Path to the output file (use '-' for stdout)")
    parser.add_argument("--today", metavar="YYYY-MM-DD", help="Pretend today is this date")
    parser.add_argument("--preview", action="store_true", help="Show the generated occurrences on stderr")
    args = parser.parse_args(argv)

    try:
        return run(args.config, args.output, today=args.today, preview=args.preview)
    except core.ConfigError as e:
        _panel("vanitycal", [("Error", str(e))], kind="error")
        return 1
    except OSError as e:
        _panel("vanitycal", [("Error", f"writing output: {e}")], kind="error")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
