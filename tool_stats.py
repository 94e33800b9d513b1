"""
tool_stats.py
=============
Latency histogram aggregation for the Sakai load generator.

Every simulated user reports one sample per tool visit. Samples are kept as-is
(append-only) and only summarized when the run is over, so the report can bucket
each tool by its *own* worst time rather than a global maximum.

Bucket layout
-------------
``0, 50, 100, 150, 200, 300, 400, 500, 1000`` ms, then one bucket per second up
to the first whole second above the worst observed time. Lower bounds are
inclusive, upper bounds exclusive; empty buckets are not printed.
"""
from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, TextIO

FIXED_BUCKETS: Sequence[int] = (0, 50, 100, 150, 200, 300, 400, 500, 1000)
RULE: str = "=" * 71


@dataclass(frozen=True)
class Stat:
    """One latency sample for a tool visit (duration in milliseconds)."""
    tool_name: str
    duration: int
    was_error: bool


def buckets(max_duration: float) -> List[int]:
    """
    Bucket lower bounds for a group whose worst time is `max_duration`.

    The last bound is always strictly greater than `max_duration`, so every
    sample of the group falls in some ``[lower, upper)`` pair.
    """
    top = (int(max_duration) // 1000 + 1) * 1000
    return list(FIXED_BUCKETS) + list(range(2000, top + 1, 1000))


class StatsCollector:
    """
    Thread-safe, append-only sample store with a histogram report.

    `record` may be called from any number of sessions at once; `report` is
    meant to be called once every engine has drained.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: List[Stat] = []

    def record(self, tool_name: str, duration: int, was_error: bool) -> None:
        stat = Stat(tool_name, duration, bool(was_error))
        with self._lock:
            self._stats.append(stat)

    def samples(self) -> List[Stat]:
        with self._lock:
            return list(self._stats)

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)

    def error_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._stats if s.was_error)

    def by_tool(self) -> Dict[str, List[Stat]]:
        """Group samples by tool name; keys come back sorted."""
        grouped: Dict[str, List[Stat]] = {}
        for stat in self.samples():
            grouped.setdefault(stat.tool_name, []).append(stat)
        return {name: grouped[name] for name in sorted(grouped)}

    def report(self) -> str:
        """
        Build the full text report.

        Returns
        -------
        str
            Per-tool sections (sorted by tool name) followed by the whole-run
            section, framed by ``=`` rules. Calling this twice on the same
            samples yields identical text.
        """
        lines: List[str] = [RULE, "", "Stats by tool:", ""]
        for tool_name, stats in self.by_tool().items():
            lines.append(tool_name)
            lines.append("-" * len(tool_name))
            lines.extend(summarize_stats(stats))
            lines.append("")

        lines.extend(["", "Stats for entire run:", ""])
        lines.extend(summarize_stats(self.samples()))
        lines.append("")
        lines.append(RULE)
        return "\n".join(lines)

    def dump(self, stream: Optional[TextIO] = None) -> None:
        out = stream if stream is not None else sys.stderr
        out.write(self.report() + "\n")
        out.flush()


def summarize_stats(stats: Sequence[Stat]) -> List[str]:
    """
    Summary lines for one group of samples: count, best/worst time, error
    count and the percentage of samples in each non-empty bucket.
    """
    if not stats:
        return []

    count = len(stats)
    min_time = min(s.duration for s in stats)
    max_time = max(s.duration for s in stats)
    error_count = sum(1 for s in stats if s.was_error)

    lines = [
        f"  Request count: {count}",
        f"  Best time: {min_time}",
        f"  Worst time: {max_time}",
        f"  Error count: {error_count}",
    ]

    bounds = buckets(max_time)
    for lower, upper in zip(bounds, bounds[1:]):
        reading_count = sum(1 for s in stats if lower <= s.duration < upper)
        if not reading_count:
            continue
        percent = (reading_count / float(count)) * 100
        lines.append("    %4dms - %-4dms: %.2f%%" % (lower, upper - 1, percent))

    return lines
