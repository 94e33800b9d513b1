"""
sakai_user.py
=============
One simulated Sakai user: log in, pick a random site, visit a number of random
tools, go back to the workspace, log out.

Every step's URL is scraped out of the previous response body, so a user's
requests form a strict chain with exactly one request outstanding at a time.
Load comes from running many users side by side, not from fan-out within one.

`Navigator` is the state machine: given the response to the pending request it
returns the next `Request` (or None when the chain is over). It does no I/O and
can be driven with hand-built `Response` objects. `SimulatedUser` wires a
Navigator to its own `AsyncHttpClient`.
"""
from __future__ import annotations

import asyncio
import random
import re
from dataclasses import dataclass
from enum import Enum
from html import unescape
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin

import load_log
from sakai_http import AsyncHttpClient, Request, Response
from sakai_names import display_name
from tool_stats import StatsCollector

# ---------------------------------------------------------------------------
# Constants & Regex
# ---------------------------------------------------------------------------

LOGIN_PATH: str = "/portal/relogin"
LOGOUT_PATH: str = "/portal/logout"
SITE_PATH: str = "/portal/site/{site_id}"

# Each user selects this many tools.
TOOLS_TO_HIT: int = 50

# Skipped by default; these tools are outliers that swamp the histogram.
DEFAULT_EXCLUDE_TOOLS: str = r"Gradebook|NYU Libraries"

UUID_RE = r"(?:[a-f0-9]+-[a-f0-9]+-[a-f0-9]+-[a-f0-9]+-[a-f0-9]+|[a-f0-9]{32})"
SITES_RE = rf'/portal/site/({UUID_RE})" title="(.*?)"'
# Sakai 10 links to /page/ (tool wrapped in an iframe); Sakai 11 links to /tool/.
TOOL_RE = rf'(/portal/site/{UUID_RE}/(?:tool|page)/{UUID_RE})" title="(.*?)"'
LEGACY_PAGE_RE = r"/page/"
IFRAME_TOOL_RE = rf'src=.*(/portal/tool/{UUID_RE}.*?)"'
WORKSPACE_RE = r'(/portal/site/%7E.*?)" title="(Home|My Workspace)"'


# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------
class Matcher:
    """
    A named regex that turns page text into field tuples.

    Each match yields one tuple of its capture groups (or the whole match when
    the pattern has none), with HTML entities decoded.
    """

    def __init__(self, name: str, pattern: Union[str, re.Pattern[str]]) -> None:
        self.name = name
        self.regex: re.Pattern[str] = re.compile(pattern) if isinstance(pattern, str) else pattern

    def __repr__(self) -> str:
        return f"Matcher({self.name!r}, {self.regex.pattern!r})"

    def scan(self, text: str) -> List[Tuple[str, ...]]:
        found: List[Tuple[str, ...]] = []
        for m in self.regex.finditer(text):
            groups = m.groups() or (m.group(0),)
            found.append(tuple(unescape(g) if g else "" for g in groups))
        return found

    def unique(self, text: str) -> List[Tuple[str, ...]]:
        """Like `scan`, with duplicates dropped (first occurrence wins)."""
        seen = set()
        out: List[Tuple[str, ...]] = []
        for fields in self.scan(text):
            if fields not in seen:
                seen.add(fields)
                out.append(fields)
        return out

    def first(self, text: str) -> Optional[Tuple[str, ...]]:
        m = self.regex.search(text)
        if not m:
            return None
        groups = m.groups() or (m.group(0),)
        return tuple(unescape(g) if g else "" for g in groups)

    def search(self, text: str) -> bool:
        return self.regex.search(text) is not None


@dataclass
class Patterns:
    """
    The portal-specific matchers a user navigates by.

    Attributes
    ----------
    sites : Matcher
        Yields (site id, site title) from the post-login portal page.
    tools : Matcher
        Yields (tool url, tool title) from a site or tool page.
    legacy_page : Matcher
        Tested against a tool url; a hit means the url is an outer page whose
        real tool sits in an iframe.
    iframe_tool : Matcher
        Yields (tool url,) from an outer page.
    workspace : Matcher
        Yields (workspace url, title) from any portal page.
    exclude_tools : Optional[re.Pattern[str]]
        Tool titles matching this are never picked.
    """
    sites: Matcher
    tools: Matcher
    legacy_page: Matcher
    iframe_tool: Matcher
    workspace: Matcher
    exclude_tools: Optional[re.Pattern[str]] = None

    @staticmethod
    def default(exclude_tools: Optional[str] = DEFAULT_EXCLUDE_TOOLS) -> "Patterns":
        return Patterns(
            sites=Matcher("sites", SITES_RE),
            tools=Matcher("tools", TOOL_RE),
            legacy_page=Matcher("legacy_page", LEGACY_PAGE_RE),
            iframe_tool=Matcher("iframe_tool", IFRAME_TOOL_RE),
            workspace=Matcher("workspace", WORKSPACE_RE),
            exclude_tools=re.compile(exclude_tools) if exclude_tools else None,
        )

    @staticmethod
    def from_dict(d: Dict[str, Any], exclude_tools: Optional[str] = DEFAULT_EXCLUDE_TOOLS) -> "Patterns":
        """
        Build Patterns from a parsed JSON object, falling back to the stock
        Sakai regexes for any key that is missing.

        Recognised keys: ``sites``, ``tools``, ``legacy_page``, ``iframe_tool``,
        ``workspace`` and ``exclude_tools`` (an empty string disables the
        exclusion). Unknown keys raise ValueError.
        """
        known = {"sites", "tools", "legacy_page", "iframe_tool", "workspace", "exclude_tools"}
        unknown = set(d) - known
        if unknown:
            raise ValueError(f"Unknown pattern key(s): {', '.join(sorted(unknown))}")

        base = Patterns.default(d.get("exclude_tools", exclude_tools))
        for key in ("sites", "tools", "legacy_page", "iframe_tool", "workspace"):
            if key in d:
                try:
                    setattr(base, key, Matcher(key, d[key]))
                except re.error as e:
                    raise ValueError(f"Invalid regex for '{key}': {e}") from e
        return base

    def excluded(self, tool_title: str) -> bool:
        return bool(self.exclude_tools and self.exclude_tools.search(tool_title))


def _id_and_title(fields: Tuple[str, ...]) -> Tuple[str, str]:
    # Single-group custom patterns use the id as the title too.
    return fields[0], fields[1] if len(fields) > 1 else fields[0]


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------
@dataclass
class UserCred:
    """
    Credentials for a single test user.
    """
    username: str
    password: str


class NavState(Enum):
    """What the outstanding request of a user's chain is for."""
    LOGGING_IN = "logging_in"
    OPENING_SITE = "opening_site"
    RESOLVING_PAGE = "resolving_page"
    VISITING_TOOL = "visiting_tool"
    RETURNING_TO_WORKSPACE = "returning_to_workspace"
    LOGGING_OUT = "logging_out"
    DONE = "done"
    FAILED = "failed"


class Navigator:
    """
    Per-user navigation chain.

    Parameters
    ----------
    base_url : str
        Portal root, e.g. ``https://sakai.example.edu``.
    stats : StatsCollector
        Receives one sample per tool visit.
    user_id : str
        Display name used on log lines.
    tools_to_hit : int
        Tool visits before heading back to the workspace.
    patterns : Optional[Patterns]
        Matchers to scrape with; stock Sakai patterns when omitted.
    rng : Optional[random.Random]
        Source of the random site/tool choices.
    """

    def __init__(
        self,
        base_url: str,
        stats: StatsCollector,
        user_id: str,
        tools_to_hit: int = TOOLS_TO_HIT,
        patterns: Optional[Patterns] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if tools_to_hit < 1:
            raise ValueError(f"tools_to_hit must be at least 1, got {tools_to_hit}")
        self.base_url = base_url
        self.stats = stats
        self.user_id = user_id
        self.tools_to_hit = tools_to_hit
        self.patterns = patterns or Patterns.default()
        self.rng = rng or random.Random()

        self.state = NavState.LOGGING_IN
        self.site_id: Optional[str] = None
        self.site_title: Optional[str] = None
        self.tool_title: Optional[str] = None
        self.tools_remaining = tools_to_hit
        self.outer_response: Optional[Response] = None
        self.failure: Optional[str] = None
        self.visits = 0

        self._dispatch: Dict[NavState, Callable[[Response], Optional[Request]]] = {
            NavState.LOGGING_IN: self._select_random_site,
            NavState.OPENING_SITE: self._select_random_tool,
            NavState.RESOLVING_PAGE: self._resolve_page,
            NavState.VISITING_TOOL: self._visit_tool,
            NavState.RETURNING_TO_WORKSPACE: self._logout,
            NavState.LOGGING_OUT: self._finish,
        }

    def uri(self, path: str) -> str:
        return urljoin(self.base_url, path)

    def log(self, msg: str) -> None:
        load_log.log_line(self.user_id, msg)

    def start(self, cred: UserCred) -> Request:
        """First request of the chain: the login form POST."""
        self.state = NavState.LOGGING_IN
        return Request(
            "POST",
            self.uri(LOGIN_PATH),
            {"eid": cred.username, "pw": cred.password, "submit": "Login"},
        )

    def on_response(self, response: Response) -> Optional[Request]:
        """
        Advance the chain with the response to the pending request.

        Returns
        -------
        Optional[Request]
            The next request to issue, or None once the user is done or has
            failed.
        """
        step = self._dispatch.get(self.state)
        if step is None:
            return None
        return step(response)

    # -- transitions -------------------------------------------------------
    def _fail(self, msg: str) -> Optional[Request]:
        self.state = NavState.FAILED
        self.failure = msg
        self.log(f"FAILED: {msg}")
        return None

    def _select_random_site(self, last_response: Response) -> Optional[Request]:
        sites = self.patterns.sites.unique(last_response.content)
        if not sites:
            return self._fail("No site id found")

        self.site_id, self.site_title = _id_and_title(self.rng.choice(sites))
        self.state = NavState.OPENING_SITE
        return Request("GET", self.uri(SITE_PATH.format(site_id=self.site_id)))

    def _select_random_tool(self, last_response: Response) -> Optional[Request]:
        tools = [
            t for t in self.patterns.tools.unique(last_response.content)
            if not self.patterns.excluded(_id_and_title(t)[1])
        ]
        if not tools:
            return self._fail(f"No tools for {self.site_id}")

        tool_url, self.tool_title = _id_and_title(self.rng.choice(tools))
        if self.patterns.legacy_page.search(tool_url):
            # Outer page only; the tool itself is in an iframe on that page.
            self.state = NavState.RESOLVING_PAGE
        else:
            self.state = NavState.VISITING_TOOL
        return Request("GET", self.uri(tool_url))

    def _resolve_page(self, response: Response) -> Optional[Request]:
        self.outer_response = response
        found = None if response.error else self.patterns.iframe_tool.first(response.content)
        if not found:
            # The visit ends on the outer page; it still counts as one sample.
            self._record_visit(response.duration or 0, response.error)
            if response.error:
                return self._fail(f"Status {response.status} loading {self.tool_title} in {self.site_id}")
            return self._fail(f"No tool iframe for {self.tool_title} in {self.site_id}")
        self.state = NavState.VISITING_TOOL
        return Request("GET", self.uri(found[0]))

    def _visit_tool(self, response: Response) -> Optional[Request]:
        outer, self.outer_response = self.outer_response, None
        aggr_duration = (response.duration or 0) + ((outer.duration or 0) if outer else 0)

        self.log(
            ":response_ms=%-6s :status=%s :site_id=%s :site_title=%-30.30s :tool_title=%-30.30s"
            % (aggr_duration, response.status, self.site_id, self.site_title, self.tool_title)
        )
        self._record_visit(aggr_duration, response.error)

        if self.tools_remaining <= 0:
            return self._return_to_workspace(response)
        return self._select_random_tool(response)

    def _record_visit(self, duration: int, was_error: bool) -> None:
        self.stats.record(self.tool_title or "", duration, was_error)
        self.visits += 1
        self.tools_remaining -= 1

    def _return_to_workspace(self, last_response: Response) -> Optional[Request]:
        found = self.patterns.workspace.first(last_response.content)
        if not found:
            return self._fail("Couldn't get a workspace")
        self.state = NavState.RETURNING_TO_WORKSPACE
        return Request("GET", self.uri(found[0]))

    def _logout(self, _response: Response) -> Optional[Request]:
        self.state = NavState.LOGGING_OUT
        return Request("POST", self.uri(LOGOUT_PATH))

    def _finish(self, _response: Response) -> Optional[Request]:
        self.state = NavState.DONE
        return None


# ---------------------------------------------------------------------------
# Simulated user
# ---------------------------------------------------------------------------
class SimulatedUser:
    """
    Drives one Navigator over its own AsyncHttpClient.

    Every request is issued from inside the previous request's completion
    handler, so the engine's in-flight count stays above zero until the chain
    ends and `AsyncHttpClient.drain()` covers the whole session.
    """

    def __init__(
        self,
        http: AsyncHttpClient,
        base_url: str,
        stats: StatsCollector,
        tools_to_hit: int = TOOLS_TO_HIT,
        patterns: Optional[Patterns] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.http = http
        self.base_url = base_url
        self.rng = rng or random.Random()
        self.my_id = display_name(self.rng)
        self.navigator = Navigator(base_url, stats, self.my_id, tools_to_hit, patterns, self.rng)

    @property
    def state(self) -> NavState:
        return self.navigator.state

    def log(self, msg: str) -> None:
        load_log.log_line(self.my_id, msg)

    def login(self, test_user: UserCred) -> asyncio.Task:
        self.log(f"Logging in as user {test_user.username}")
        return self._issue(self.navigator.start(test_user))

    def _issue(self, request: Request) -> asyncio.Task:
        return self.http.send(request, self._on_response)

    def _on_response(self, response: Response) -> None:
        try:
            next_request = self.navigator.on_response(response)
        except Exception as e:
            self.navigator._fail(f"{type(e).__name__} handling {response.status} response: {e}")
            return
        if next_request is not None:
            self._issue(next_request)
        elif self.navigator.state is NavState.DONE:
            self.http.dump_status()
