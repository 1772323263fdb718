"""
Output rendering and formatting.
"""

from __future__ import annotations

import json
import re
import sys
from typing import IO, Sequence

from wcwidth import wcswidth

from .manifest import Manifest
from .reconcile import INSTALLED, NOT_INSTALLED, OUTDATED, UNKNOWN, UP_TO_DATE, Report, StatusRecord
from .versions import display

# ANSI color codes
GREEN = "\033[32m"
BOLD_GREEN = "\033[1;32m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"

# CSI sequences and OSC 8 hyperlink open/close
CONTROL_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\]8;[^\\]*\\")

STATE_COLORS = {
    UP_TO_DATE: GREEN,
    INSTALLED: GREEN,
    OUTDATED: YELLOW,
    NOT_INSTALLED: RED,
    UNKNOWN: YELLOW,
}


def status_icon(state: str, use_emoji: bool = True) -> str:
    """Get status icon for a reconciled state.

    Args:
        state: UP-TO-DATE, INSTALLED, OUTDATED, NOT INSTALLED or UNKNOWN
        use_emoji: Use emoji instead of plain symbols

    Returns:
        Status icon string
    """
    if not use_emoji:
        return {UP_TO_DATE: "✓", INSTALLED: "✓", OUTDATED: "↑", NOT_INSTALLED: "x"}.get(state, "?")
    return {UP_TO_DATE: "✅", INSTALLED: "✅", OUTDATED: "⬆", NOT_INSTALLED: "❌"}.get(state, "❓")


def colorize(text: str, color: str, use_color: bool = True) -> str:
    """Apply color to text.

    Args:
        text: Text to colorize
        color: ANSI color code
        use_color: Whether colors are enabled

    Returns:
        Colored text or plain text if colors disabled
    """
    if not use_color or not text:
        return text
    return f"{color}{text}{RESET}"


def display_width(text: str) -> int:
    """Terminal column width of text, ignoring ANSI and OSC 8 sequences."""
    plain = CONTROL_RE.sub("", text)
    width = wcswidth(plain)
    # wcswidth reports -1 for strings with non-printable characters
    return width if width >= 0 else len(plain)


def pad(text: str, width: int) -> str:
    return text + " " * max(0, width - display_width(text))


def format_table(rows: Sequence[Sequence[str]], separator: str = "  ") -> list[str]:
    """Align rows into columns by display width.

    Args:
        rows: Table rows, header first
        separator: Column separator

    Returns:
        Formatted lines (trailing whitespace stripped)
    """
    if not rows:
        return []
    columns = max(len(row) for row in rows)
    widths = [0] * columns
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], display_width(cell))

    lines = []
    for row in rows:
        cells = [pad(cell, widths[i]) for i, cell in enumerate(row)]
        lines.append(separator.join(cells).rstrip())
    return lines


def record_row(record: StatusRecord, include_latest: bool, use_color: bool, use_emoji: bool) -> list[str]:
    state = record.state
    status = f"{status_icon(state, use_emoji)} {state}"
    row = [
        record.name,
        colorize(status, STATE_COLORS.get(state, ""), use_color),
        display(record.local_version),
    ]
    if include_latest:
        latest = display(record.latest_version)
        if state == OUTDATED:
            latest = colorize(latest, BOLD_GREEN, use_color)
        row.append(latest)
    return row


def render_table(
    report: Report,
    use_color: bool = True,
    use_emoji: bool = True,
    file: IO[str] | None = None,
) -> None:
    """Print the status table.

    The Latest column is shown only when remote lookups ran.

    Args:
        report: Reconciliation report
        use_color: Emit ANSI colors
        use_emoji: Use emoji status icons
        file: Output stream (defaults to stdout)
    """
    out = file or sys.stdout
    header = ["Binary", "Status", "Version"]
    if report.include_remote:
        header.append("Latest")

    rows = [header]
    rows.extend(record_row(r, report.include_remote, use_color, use_emoji) for r in report)

    for line in format_table(rows):
        print(line, file=out)


def summary_line(report: Report) -> str:
    counts = report.summary_counts()
    parts = [f"{counts['total']} binaries", f"{counts[NOT_INSTALLED]} missing"]
    if report.include_remote:
        parts.append(f"{counts[OUTDATED]} outdated")
    parts.append(f"{counts[UNKNOWN]} unknown")
    return ", ".join(parts)


def print_summary(report: Report, file: IO[str] | None = None) -> None:
    """Print the one-line summary under the table."""
    print("", file=file or sys.stdout)
    print(summary_line(report), file=file or sys.stdout)


def render_json(report: Report, file: IO[str] | None = None) -> None:
    """Print the report as indented JSON."""
    print(json.dumps(report.to_dict(), indent=2), file=file or sys.stdout)


def render_manifest(manifest: Manifest, file: IO[str] | None = None) -> None:
    """Print the declared entries as a table."""
    rows = [["Binary", "Repository", "Executable", "Version arg"]]
    rows.extend([e.name, e.repository, e.executable, e.version_arg] for e in manifest)
    for line in format_table(rows):
        print(line, file=file or sys.stdout)
