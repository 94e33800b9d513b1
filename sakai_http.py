"""
sakai_http.py
=============
Non-blocking request engine used by each simulated Sakai user.

`AsyncHttpClient.get` / `post` return immediately; the request runs as an
asyncio task on the engine's own `aiohttp.ClientSession`, and the caller's
completion handler is invoked with the finished `Response`. The engine counts
requests in flight and `drain()` resolves once that count is back to zero.

Notes
-----
* The in-flight count is decremented only *after* the handler returns (or
  raises). A handler that issues the next request of a chain therefore keeps
  the count above zero, so `drain()` waits for chains of any depth.
* Transport failures (refused connection, timeout, ...) still produce a
  `Response`, with status `TRANSPORT_FAILURE_STATUS`, so a handler is always
  called once per request.
* Each engine owns its connection pool and cookie jar: one engine per
  simulated user keeps every login session separate.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set

import aiohttp
from aiohttp import ClientSession, TCPConnector

import load_log

# Network-level failure; counted as a 5xx in the report.
TRANSPORT_FAILURE_STATUS: int = 599


@dataclass(frozen=True)
class Request:
    """
    A single request to issue.

    Attributes
    ----------
    method : str
        ``GET`` or ``POST``.
    url : str
        Absolute URL.
    params : Mapping[str, str]
        Form fields for POST bodies, in insertion order.
    """
    method: str
    url: str
    params: Mapping[str, str] = field(default_factory=dict)


class Response:
    """
    Response body and timing for one request.

    Body chunks are appended as they arrive and only decoded when `content` is
    read. `duration` is None until `status` has been set.
    """

    def __init__(self) -> None:
        self._content: List[bytes] = []
        self._status: Optional[int] = None
        self.failure: Optional[str] = None
        self.start_time: float = time.monotonic()
        self.end_time: Optional[float] = None

    def add_content(self, chunk: bytes) -> None:
        self._content.append(bytes(chunk))

    @property
    def content(self) -> str:
        return b"".join(self._content).decode("utf-8", errors="replace")

    @property
    def status(self) -> Optional[int]:
        return self._status

    @status.setter
    def status(self, code: int) -> None:
        self._status = code
        self.end_time = time.monotonic()

    @property
    def duration(self) -> Optional[int]:
        """Elapsed milliseconds from creation to completion."""
        if self.end_time is None:
            return None
        return max(0, int(round((self.end_time - self.start_time) * 1000)))

    @property
    def error(self) -> bool:
        return self._status is not None and 400 <= self._status <= 599

    def fail(self, exc: BaseException) -> None:
        """Mark the response as a transport failure."""
        self.failure = f"{type(exc).__name__}: {exc}"
        self.status = TRANSPORT_FAILURE_STATUS


Handler = Callable[[Response], None]


class AsyncHttpClient:
    """
    Per-user asynchronous HTTP engine with drain support.

    Parameters
    ----------
    insecure_tls : bool
        Skip TLS certificate verification (local/self-signed targets).
    request_timeout : Optional[float]
        Total seconds allowed per request; None disables the timeout.
    connector_limit : int
        Max simultaneous connections for this engine.
    connector_limit_per_host : int
        Max per-host connections for this engine.
    """

    def __init__(
        self,
        insecure_tls: bool = False,
        request_timeout: Optional[float] = None,
        connector_limit: int = 8,
        connector_limit_per_host: int = 4,
    ) -> None:
        self.insecure_tls = insecure_tls
        self.request_timeout = request_timeout
        self.connector_limit = connector_limit
        self.connector_limit_per_host = connector_limit_per_host

        self._session: Optional[ClientSession] = None
        self._pending = 0
        self._issued = 0
        self._completed = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> "AsyncHttpClient":
        if self._session is None:
            connector = TCPConnector(
                limit=self.connector_limit,
                limit_per_host=self.connector_limit_per_host,
                ssl=False if self.insecure_tls else True,
            )
            self._session = ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                connector=connector,
                cookie_jar=aiohttp.CookieJar(unsafe=True),
            )
        return self

    async def stop(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()

    async def __aenter__(self) -> "AsyncHttpClient":
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    @property
    def started(self) -> bool:
        return self._session is not None

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def get(self, url: str, handler: Optional[Handler] = None) -> asyncio.Task:
        return self.send(Request("GET", url), handler)

    def post(
        self,
        url: str,
        params: Optional[Mapping[str, str]] = None,
        handler: Optional[Handler] = None,
    ) -> asyncio.Task:
        return self.send(Request("POST", url, dict(params or {})), handler)

    def send(self, request: Request, handler: Optional[Handler] = None) -> asyncio.Task:
        """
        Schedule `request` and return without waiting for it.

        Must be called from a coroutine or callback running on the event loop
        (completion handlers qualify).
        """
        if self._session is None:
            raise RuntimeError("AsyncHttpClient.start() must be awaited before sending requests")
        loop = asyncio.get_running_loop()

        self._pending += 1
        self._issued += 1
        self._idle.clear()

        # Response() stamps start_time
        response = Response()
        task = loop.create_task(self._run(request, response, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, request: Request, response: Response, handler: Optional[Handler]) -> None:
        try:
            await self._transfer(request, response)
            if handler is not None:
                try:
                    handler(response)
                except Exception as e:
                    load_log.error(f"Completion handler for {request.method} {request.url} raised: {e!r}")
        finally:
            self._arrive()

    async def _transfer(self, request: Request, response: Response) -> None:
        assert self._session is not None
        data: Optional[Dict[str, str]] = dict(request.params) if request.params else None
        try:
            async with self._session.request(
                request.method, request.url, data=data, allow_redirects=True
            ) as resp:
                async for chunk in resp.content.iter_any():
                    response.add_content(chunk)
                response.status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            response.fail(e)

    def _arrive(self) -> None:
        self._pending -= 1
        self._completed += 1
        if self._pending == 0:
            self._idle.set()

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------
    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait until every request issued on this engine, including requests
        issued from inside completion handlers, has completed.

        Raises
        ------
        asyncio.TimeoutError
            If `timeout` seconds pass first.
        """
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def cancel_pending(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Drain, then release the connection pool on every path."""
        try:
            await self.drain(timeout)
        except asyncio.TimeoutError:
            load_log.warn(f"Gave up on {self._pending} pending request(s) after {timeout}s; cancelling")
            await self.cancel_pending()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    @property
    def in_flight(self) -> int:
        return self._pending

    def status_snapshot(self) -> Dict[str, int]:
        return {
            "in_flight": self._pending,
            "issued": self._issued,
            "completed": self._completed,
        }

    def dump_status(self) -> None:
        load_log.log_line("HTTP", f"Requests currently pending: {self._pending}")
