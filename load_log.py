"""
load_log.py
===========
Tiny stderr logging helpers shared by the Sakai load generator.

Two kinds of output go to stderr:

* run-level messages tagged ``[INFO]`` / ``[WARN]`` / ``[ERROR]`` / ``[FATAL]``,
* per-session lines ``<epoch ms> <ident padded to 40> <message>`` so that the
  interleaved output of hundreds of simulated users stays greppable.
"""
from __future__ import annotations

import sys
import time
from typing import Any, List, Optional, TextIO, Tuple

IDENT_WIDTH: int = 40


def _out(stream: Optional[TextIO]) -> TextIO:
    # Resolved at call time so pytest's capsys sees the writes.
    return stream if stream is not None else sys.stderr


def info(msg: str, stream: Optional[TextIO] = None) -> None:
    print(f"[INFO] {msg}", file=_out(stream))


def warn(msg: str, stream: Optional[TextIO] = None) -> None:
    print(f"[WARN] {msg}", file=_out(stream))


def error(msg: str, stream: Optional[TextIO] = None) -> None:
    print(f"[ERROR] {msg}", file=_out(stream))


def fatal(msg: str, stream: Optional[TextIO] = None) -> None:
    print(f"[FATAL] {msg}", file=_out(stream))


def log_line(ident: str, msg: str, stream: Optional[TextIO] = None) -> None:
    """
    Write one timestamped session line.

    Parameters
    ----------
    ident : str
        Session display name (or ``HTTP`` for engine-level lines).
    msg : str
        Free-form message.
    """
    ts = int(time.time() * 1000)
    _out(stream).write(f"{ts} {ident:<{IDENT_WIDTH}} {msg}\n")


def format_table(headers: List[str], rows: List[Tuple[Any, ...]]) -> str:
    """
    Render a simple monospace table from headers + rows.

    Padding is calculated to align columns for human readability.
    """
    cols = len(headers)
    widths = [len(h) for h in headers]
    for row in rows:
        for i in range(cols):
            widths[i] = max(widths[i], len(str(row[i]) if i < len(row) else ""))

    sep = "+".join("-" * (w + 2) for w in widths)
    lines = []
    header_line = " | ".join(str(h).ljust(widths[i]) for i, h in enumerate(headers))
    lines.append(header_line)
    lines.append(sep)
    for row in rows:
        line = " | ".join(str(row[i]).ljust(widths[i]) for i in range(cols))
        lines.append(line)
    return "\n".join(lines)
