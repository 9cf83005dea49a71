"""
Mixed fast/slow client load generator for the ``/experiment`` endpoint.

* Every synthetic client runs in its own thread with its own ``httpx.Client``.
* *Fast* clients read each response as quickly as the transport allows.
* *Slow* clients read through :class:`SlowReader`, which throttles to a
  bytes-per-second ceiling with random jitter and occasional stalls.
* In hog mode slow clients get a warm-up head start so their connections are
  already occupied when the fast clients arrive.
* When the run duration expires a shared :class:`threading.Event` is set; every
  client stops at its next iteration and the harness joins them all before
  computing statistics.

Failed requests (transport error or non-200) are counted and never retried.
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from enum import Enum
from typing import Callable, List, Optional

import httpx
from pydantic import BaseModel

from localization_ab.config import LoadTestConfig
from localization_ab.stats import AtomicCounter, LatencyRecorder, LatencySummary, summarize

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., httpx.Client]


class ClientKind(str, Enum):
    FAST = "fast"
    SLOW = "slow"


def _check_deadline(response: httpx.Response, deadline: Optional[float], now: float) -> None:
    if deadline is not None and now > deadline:
        raise httpx.ReadTimeout("request exceeded its total deadline", request=response.request)


def read_within(
    response: httpx.Response,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> bytes:
    """Read the rest of a streamed *response*, raising ``httpx.ReadTimeout`` once
    *clock* passes *deadline*.

    httpx timeouts bound each socket operation; this bounds the whole body so a
    server that trickles bytes cannot hold a request open indefinitely.
    """
    chunks = []
    for chunk in response.iter_bytes():
        chunks.append(chunk)
        _check_deadline(response, deadline, clock())
    return b"".join(chunks)


class SlowReader:
    """Read an ``httpx.Response`` body at roughly *bytes_per_sec*.

    The body is pulled in chunks of a tenth of a second's worth of bytes. After
    each chunk the reader sleeps whatever is left of that chunk's time budget plus
    up to 50% jitter, and with 10% probability stalls for another 0-99 ms.
    Passing *deadline* (on the *clock* timeline) aborts the read with
    ``httpx.ReadTimeout`` once it is exceeded.
    """

    JITTER = 0.5
    STALL_PROBABILITY = 0.1
    MAX_STALL_MS = 100

    def __init__(
        self,
        response: httpx.Response,
        bytes_per_sec: int,
        *,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        deadline: Optional[float] = None,
    ) -> None:
        if bytes_per_sec <= 0:
            raise ValueError("bytes_per_sec must be positive")
        self._response = response
        self.bytes_per_sec = bytes_per_sec
        self.deadline = deadline
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock
        self._last_read = clock()

    @property
    def chunk_size(self) -> int:
        return max(1, self.bytes_per_sec // 10)

    def _throttle(self, n: int) -> None:
        expected = n / self.bytes_per_sec
        elapsed = self._clock() - self._last_read
        if expected > elapsed:
            base = expected - elapsed
            self._sleep(base + base * self._rng.random() * self.JITTER)

        # network hiccup
        if self._rng.random() < self.STALL_PROBABILITY:
            self._sleep(self._rng.randrange(self.MAX_STALL_MS) / 1000)

        self._last_read = self._clock()

    def __iter__(self):
        for chunk in self._response.iter_bytes(self.chunk_size):
            if chunk:
                self._throttle(len(chunk))
            _check_deadline(self._response, self.deadline, self._clock())
            yield chunk

    def drain(self) -> int:
        """Consume the whole body; return the number of bytes read."""
        return sum(len(chunk) for chunk in self)


class LoadStats:
    """Counters and latency samples shared by every client thread."""

    def __init__(self) -> None:
        self.total = AtomicCounter()
        self.success = AtomicCounter()
        self.failed = AtomicCounter()
        self.fast = AtomicCounter()
        self.slow = AtomicCounter()
        self.fast_latencies = LatencyRecorder()
        self.slow_latencies = LatencyRecorder()

    def progress_line(self) -> str:
        return (
            f"Progress: Total: {self.total.value} | Success: {self.success.value} | "
            f"Failed: {self.failed.value} | Fast: {self.fast.value} | Slow: {self.slow.value}"
        )


class LoadTestResult(BaseModel):
    total_requests: int
    successful: int
    failed: int
    fast_requests: int
    slow_requests: int
    elapsed: float

    overall: LatencySummary
    fast: LatencySummary
    slow: LatencySummary

    throughput: float
    fast_throughput: float
    slow_throughput: float
    fast_efficiency: Optional[float] = None

    @property
    def success_rate(self) -> float:
        return self.successful / self.total_requests * 100 if self.total_requests else 0.0


# Single request

def make_request(
    client: httpx.Client,
    url: str,
    stats: LoadStats,
    kind: ClientKind,
    slow_speed: int = 0,
    timeout: Optional[float] = None,
) -> bool:
    """Issue one ``/experiment`` call and record its outcome in *stats*.

    *timeout* bounds the whole exchange, body download included.
    """
    stats.total.add()
    user_id = f"{kind.value}-user-{uuid.uuid4()}"

    start = time.perf_counter()
    deadline = time.monotonic() + timeout if timeout is not None else None
    try:
        with client.stream("POST", url, json={"userId": user_id}) as resp:
            if resp.status_code != 200:
                stats.failed.add()
                return False
            if kind is ClientKind.SLOW:
                SlowReader(resp, slow_speed, deadline=deadline).drain()
            else:
                read_within(resp, deadline)
    except httpx.HTTPError as exc:
        logger.debug("%s request failed: %s", kind.value, exc)
        stats.failed.add()
        return False
    latency_ms = (time.perf_counter() - start) * 1000

    stats.success.add()
    if kind is ClientKind.FAST:
        stats.fast_latencies.append(latency_ms)
    else:
        stats.slow_latencies.append(latency_ms)
    return True


# Client loop

def run_client(
    kind: ClientKind,
    config: LoadTestConfig,
    stats: LoadStats,
    stop: threading.Event,
    client_factory: ClientFactory = httpx.Client,
) -> None:
    """Send up to ``requests_per_client`` requests, checking *stop* each iteration."""
    fast = kind is ClientKind.FAST
    timeout = config.fast_timeout if fast else config.slow_timeout
    pause = config.fast_pause if fast else config.slow_pause
    attempts = stats.fast if fast else stats.slow
    url = config.server_url.rstrip("/") + "/experiment"

    with client_factory(timeout=timeout) as client:
        for _ in range(config.requests_per_client):
            if stop.is_set():
                return
            make_request(client, url, stats, kind, config.slow_download_speed, timeout)
            attempts.add()
            if stop.wait(pause):
                return


# Harness

def _launch(
    kind: ClientKind,
    count: int,
    config: LoadTestConfig,
    stats: LoadStats,
    stop: threading.Event,
    client_factory: ClientFactory,
) -> List[threading.Thread]:
    threads = []
    for i in range(count):
        t = threading.Thread(
            target=run_client,
            args=(kind, config, stats, stop, client_factory),
            name=f"{kind.value}-client-{i}",
            daemon=True,
        )
        t.start()
        threads.append(t)
    return threads


def build_result(stats: LoadStats, elapsed: float, fast_clients: int) -> LoadTestResult:
    """Freeze *stats* into a :class:`LoadTestResult`."""
    fast_samples = stats.fast_latencies.snapshot()
    slow_samples = stats.slow_latencies.snapshot()
    fast = summarize(fast_samples)
    slow = summarize(slow_samples)

    successful = stats.success.value
    seconds = elapsed if elapsed > 0 else float("inf")
    fast_rps = fast.count / seconds

    efficiency = None
    if fast.count and fast.mean > 0 and fast_clients:
        theoretical = 1000.0 / fast.mean * fast_clients
        efficiency = fast_rps / theoretical * 100

    return LoadTestResult(
        total_requests=stats.total.value,
        successful=successful,
        failed=stats.failed.value,
        fast_requests=stats.fast.value,
        slow_requests=stats.slow.value,
        elapsed=elapsed,
        overall=summarize(fast_samples + slow_samples),
        fast=fast,
        slow=slow,
        throughput=successful / seconds,
        fast_throughput=fast_rps,
        slow_throughput=slow.count / seconds,
        fast_efficiency=efficiency,
    )


def run_load_test(
    config: LoadTestConfig,
    stats: Optional[LoadStats] = None,
    client_factory: ClientFactory = httpx.Client,
) -> LoadTestResult:
    """Drive fast and slow clients for ``config.duration`` seconds."""
    stats = stats or LoadStats()
    stop = threading.Event()
    threads: List[threading.Thread] = []

    start = time.perf_counter()
    deadline = start + config.duration

    if config.hog_test:
        logger.info("pre-warming with %d slow clients", config.slow_clients)
        threads += _launch(ClientKind.SLOW, config.slow_clients, config, stats, stop, client_factory)
        time.sleep(min(config.warmup, config.duration))
        logger.info("starting %d fast clients", config.fast_clients)
        threads += _launch(ClientKind.FAST, config.fast_clients, config, stats, stop, client_factory)
    else:
        threads += _launch(ClientKind.FAST, config.fast_clients, config, stats, stop, client_factory)
        threads += _launch(ClientKind.SLOW, config.slow_clients, config, stats, stop, client_factory)

    # run until the duration expires or every client has spent its budget
    for t in threads:
        remaining = deadline - time.perf_counter()
        if remaining <= 0:
            break
        t.join(remaining)

    stop.set()
    for t in threads:
        t.join()
    elapsed = time.perf_counter() - start

    return build_result(stats, elapsed, config.fast_clients)


def check_health(server_url: str, timeout: float = 5.0) -> bool:
    """Return ``True`` when ``GET /health`` answers 200."""
    try:
        resp = httpx.get(server_url.rstrip("/") + "/health", timeout=timeout)
    except httpx.HTTPError as exc:
        logger.error("health check against %s failed: %s", server_url, exc)
        return False
    return resp.status_code == 200
