#!/usr/bin/env python3
"""
sakai_load.py
=============
Async load generator for the Sakai portal. Each simulated user:

- logs in,
- selects a random site,
- selects a random tool (repeated ``--tools-per-user`` times),
- returns to their workspace,
- logs out.

Every tool visit is timed and the run ends with a latency histogram per tool
and for the whole run, written to stderr.

Notes
-----
* Each user gets its own HTTP engine (connection pool + cookie jar). All users
  start at once; the run waits for every engine to drain before reporting.
* A user whose page does not contain the link it needs next (no sites, no
  tools, no workspace) is logged as ``FAILED`` and simply stops; the other
  users carry on and the exit code is still 0.
* Network failures are recorded as status 599 and show up in the error counts.

Example
-------
python sakai_load.py https://sakai.example.edu 200 --users-file users.txt \\
  --tools-per-user 20 --stats-dir stats
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import csv
import json
import random
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from load_log import format_table, fatal, info
from sakai_http import AsyncHttpClient
from sakai_user import (
    DEFAULT_EXCLUDE_TOOLS,
    TOOLS_TO_HIT,
    NavState,
    Patterns,
    SimulatedUser,
    UserCred,
)
from tool_stats import StatsCollector

DEFAULT_USERS_FILE: Path = Path(__file__).resolve().parent / "users.txt"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """
    Everything a run needs, collected from the command line.

    Attributes
    ----------
    base_url : str
        Root URL of the Sakai portal.
    user_count : int
        Number of simulated users started concurrently.
    users_file : Path
        ``username password`` pairs, one per line.
    tools_per_user : int
        Tool visits per user before returning to the workspace.
    exclude_tools : Optional[str]
        Regex of tool titles never picked; None/empty disables it.
    patterns_file : Optional[Path]
        JSON file overriding the stock link-extraction regexes.
    insecure_tls : bool
        Skip TLS verification.
    request_timeout : Optional[float]
        Seconds per request before it is recorded as a transport failure.
    drain_timeout : Optional[float]
        Seconds to wait for each engine to drain before cancelling.
    connector_limit, connector_limit_per_host : int
        Connection pool bounds per user.
    progress_every : int
        Seconds between progress tables; 0 disables them.
    stats_dir : Optional[Path]
        Where to write CSV exports; None skips them.
    seed : Optional[int]
        Seed for reproducible site/tool choices.
    """
    base_url: str
    user_count: int
    users_file: Path = DEFAULT_USERS_FILE
    tools_per_user: int = TOOLS_TO_HIT
    exclude_tools: Optional[str] = DEFAULT_EXCLUDE_TOOLS
    patterns_file: Optional[Path] = None
    insecure_tls: bool = False
    request_timeout: Optional[float] = None
    drain_timeout: Optional[float] = None
    connector_limit: int = 8
    connector_limit_per_host: int = 4
    progress_every: int = 30
    stats_dir: Optional[Path] = None
    seed: Optional[int] = None

    @staticmethod
    def from_args(args: argparse.Namespace) -> "Config":
        return Config(
            base_url=args.base_url,
            user_count=args.user_count,
            users_file=Path(args.users_file),
            tools_per_user=args.tools_per_user,
            exclude_tools=args.exclude_tools or None,
            patterns_file=Path(args.patterns) if args.patterns else None,
            insecure_tls=args.insecure,
            request_timeout=args.request_timeout,
            drain_timeout=args.drain_timeout,
            connector_limit=args.connector_limit,
            connector_limit_per_host=args.connector_limit_per_host,
            progress_every=args.progress,
            stats_dir=Path(args.stats_dir) if args.stats_dir else None,
            seed=args.seed,
        )


def read_users(path: Path) -> List[UserCred]:
    """
    Load test credentials.

    Lines starting with ``#`` and blank lines are skipped. The first space
    separates username from password, so passwords may contain spaces.

    Raises
    ------
    FileNotFoundError
        If `path` does not exist.
    ValueError
        On a line without a password, or when no credentials are found.
    """
    result: List[UserCred] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.rstrip("\r\n")
            if not line.strip() or line.startswith("#"):
                continue
            parts = line.strip().split(" ", 1)
            if len(parts) < 2 or not parts[1]:
                raise ValueError(f"{path}:{lineno}: expected 'username password'")
            result.append(UserCred(parts[0], parts[1]))

    if not result:
        raise ValueError(f"No credentials found in {path}")
    return result


def cred_for(users: Sequence[UserCred], index: int) -> UserCred:
    """Round-robin: user N gets credential N modulo the pool size."""
    return users[index % len(users)]


def load_patterns(config: Config) -> Patterns:
    if config.patterns_file is None:
        return Patterns.default(config.exclude_tools)
    with open(config.patterns_file, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{config.patterns_file}: expected a JSON object")
    return Patterns.from_dict(data, config.exclude_tools)


# ---------------------------------------------------------------------------
# Progress & CSV
# ---------------------------------------------------------------------------
def progress_rows(
    clients: Sequence[AsyncHttpClient],
    users: Sequence[SimulatedUser],
    stats: StatsCollector,
    elapsed: float,
) -> List[Tuple[str, Any]]:
    done = sum(1 for u in users if u.state is NavState.DONE)
    failed = sum(1 for u in users if u.state is NavState.FAILED)
    return [
        ("Elapsed (s)", round(elapsed, 1)),
        ("Users active", len(users) - done - failed),
        ("Users done", done),
        ("Users failed", failed),
        ("Requests in flight", sum(c.in_flight for c in clients)),
        ("Requests completed", sum(c.status_snapshot()["completed"] for c in clients)),
        ("Tool visits", len(stats)),
        ("Tool errors", stats.error_count()),
    ]


def write_stats_csv(stats: StatsCollector, stats_dir: Path) -> Tuple[Path, Path]:
    """
    Write every sample and a per-tool summary as CSV.

    Returns
    -------
    Tuple[Path, Path]
        Paths of the samples file and the summary file.
    """
    stats_dir.mkdir(parents=True, exist_ok=True)
    ts = time.strftime("%Y%m%d-%H%M%S")
    samples_csv = stats_dir / f"tool_samples_{ts}.csv"
    summary_csv = stats_dir / f"tool_summary_{ts}.csv"

    with samples_csv.open("w", encoding="utf-8", newline="") as sf:
        sw = csv.writer(sf)
        sw.writerow(["tool_title", "duration_ms", "error"])
        for stat in stats.samples():
            sw.writerow([stat.tool_name, stat.duration, int(stat.was_error)])

    with summary_csv.open("w", encoding="utf-8", newline="") as mf:
        mw = csv.writer(mf)
        mw.writerow(["tool_title", "count", "best_ms", "worst_ms", "errors"])
        for tool_name, group in stats.by_tool().items():
            durations = [s.duration for s in group]
            mw.writerow([
                tool_name,
                len(group),
                min(durations),
                max(durations),
                sum(1 for s in group if s.was_error),
            ])

    return samples_csv, summary_csv


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
async def run_load(
    config: Config,
    creds: Sequence[UserCred],
    patterns: Optional[Patterns] = None,
) -> StatsCollector:
    """
    Start every simulated user, wait for all engines to drain, and return the
    collected tool statistics.
    """
    patterns = patterns or Patterns.default(config.exclude_tools)
    stats = StatsCollector()
    master_rng = random.Random(config.seed)

    clients: List[AsyncHttpClient] = []
    users: List[SimulatedUser] = []
    started = time.monotonic()

    async def progress_task() -> None:
        while True:
            await asyncio.sleep(config.progress_every)
            rows = progress_rows(clients, users, stats, time.monotonic() - started)
            print("\n[PROGRESS]\n" + format_table(["Metric", "Value"], rows), file=sys.stderr)

    info(f"Starting {config.user_count} simulated users against {config.base_url}")
    prog: Optional[asyncio.Task] = None
    try:
        for idx in range(config.user_count):
            http = AsyncHttpClient(
                insecure_tls=config.insecure_tls,
                request_timeout=config.request_timeout,
                connector_limit=config.connector_limit,
                connector_limit_per_host=config.connector_limit_per_host,
            )
            await http.start()
            clients.append(http)

            user = SimulatedUser(
                http,
                config.base_url,
                stats,
                tools_to_hit=config.tools_per_user,
                patterns=patterns,
                rng=random.Random(master_rng.random()),
            )
            users.append(user)
            user.login(cred_for(creds, idx))

        if config.progress_every > 0:
            prog = asyncio.create_task(progress_task())

        # Single barrier: every user's chain has ended once its engine drains.
        await asyncio.gather(*(c.wait(config.drain_timeout) for c in clients))
    finally:
        if prog is not None:
            prog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await prog
        for c in clients:
            await c.stop()

    done = sum(1 for u in users if u.state is NavState.DONE)
    failed = sum(1 for u in users if u.state is NavState.FAILED)
    info(
        f"{done}/{len(users)} users completed, {failed} failed "
        f"in {time.monotonic() - started:.1f}s"
    )
    return stats


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value!r}")
    return n


def _base_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise argparse.ArgumentTypeError(f"expected an http(s) URL: {value!r}")
    return value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse CLI arguments. Usage errors exit with status 2 before any request
    is made.
    """
    p = argparse.ArgumentParser(
        prog="sakai_load.py",
        description="Sakai load generator: simulated users log in, browse random sites and tools, and log out",
    )
    p.add_argument("base_url", type=_base_url, help="Sakai base URL, e.g. https://sakai.example.edu")
    p.add_argument("user_count", type=_positive_int, help="Number of concurrent simulated users")
    p.add_argument("--users-file", default=str(DEFAULT_USERS_FILE),
                   help="File of 'username password' lines, '#' for comments (default: users.txt next to this script)")
    p.add_argument("--tools-per-user", type=_positive_int, default=TOOLS_TO_HIT,
                   help=f"Tool visits per user (default: {TOOLS_TO_HIT})")
    p.add_argument("--exclude-tools", default=DEFAULT_EXCLUDE_TOOLS,
                   help=f"Regex of tool titles to skip; empty string disables (default: '{DEFAULT_EXCLUDE_TOOLS}')")
    p.add_argument("--patterns", default=None, help="JSON file overriding the link-extraction regexes")
    p.add_argument("--insecure", action="store_true", help="Ignore TLS verification (local/self-signed)")
    p.add_argument("--request-timeout", type=float, default=None,
                   help="Seconds per request before it counts as a failure (default: none)")
    p.add_argument("--drain-timeout", type=float, default=None,
                   help="Seconds to wait for each user's requests to finish (default: wait forever)")
    p.add_argument("--connector-limit", type=int, default=8, help="Max simultaneous connections per user (default: 8)")
    p.add_argument("--connector-limit-per-host", type=int, default=4,
                   help="Max per-host connections per user (default: 4)")
    p.add_argument("--progress", type=int, default=30, help="Progress print interval in seconds, 0 disables (default: 30)")
    p.add_argument("--stats-dir", default=None, help="Directory to write CSV stats (default: no CSV)")
    p.add_argument("--seed", type=int, default=None, help="Random seed for reproducible navigation")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config = Config.from_args(args)

    try:
        creds = read_users(config.users_file)
        patterns = load_patterns(config)
    except FileNotFoundError as e:
        fatal(f"File not found: {e.filename}")
        return 2
    except (ValueError, OSError) as e:
        fatal(str(e))
        return 2

    info(f"Loaded {len(creds)} credential(s) from {config.users_file}")
    stats = asyncio.run(run_load(config, creds, patterns))
    stats.dump()

    if config.stats_dir is not None:
        samples_csv, summary_csv = write_stats_csv(stats, config.stats_dir)
        info(f"Samples CSV: {samples_csv}")
        info(f"Summary CSV: {summary_csv}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
