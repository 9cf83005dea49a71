"""
Load generator tests: slow-reader throttling, single requests, and whole runs
against ``httpx.MockTransport`` or the in-process app.
"""

import json
import pathlib
import threading
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from localization_ab import loadtest
from localization_ab.api import create_app
from localization_ab.config import LoadTestConfig
from localization_ab.loadtest import ClientKind, LoadStats, SlowReader, check_health, make_request, run_load_test
from localization_ab.payload_store import build

FIXTURES = pathlib.Path(__file__).parent / "fixtures" / "payloads"


class FakeResponse:
    request = None

    def __init__(self, body):
        self.body = body
        self.chunk_sizes = []

    def iter_bytes(self, chunk_size):
        self.chunk_sizes.append(chunk_size)
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i : i + chunk_size]


class FixedRng:
    def __init__(self, value, stall_ms=0):
        self.value = value
        self.stall_ms = stall_ms

    def random(self):
        return self.value

    def randrange(self, stop):
        return self.stall_ms


class FakeClock:
    """Time only advances when someone sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_slow_reader_throttles_each_chunk_with_jitter():
    clock = FakeClock()
    resp = FakeResponse(b"z" * 30)
    reader = SlowReader(resp, 100, rng=FixedRng(0.99), sleep=clock.sleep, clock=clock)

    assert reader.drain() == 30
    assert resp.chunk_sizes == [10]
    # 10 bytes at 100 B/s = 0.1 s base, plus 0.99 * 50% jitter; no stalls
    assert clock.sleeps == pytest.approx([0.1495] * 3)


def test_slow_reader_adds_random_stalls():
    clock = FakeClock()
    reader = SlowReader(FakeResponse(b"z" * 10), 100, rng=FixedRng(0.05, stall_ms=42), sleep=clock.sleep, clock=clock)
    reader.drain()
    assert clock.sleeps == pytest.approx([0.1025, 0.042])


def test_slow_reader_skips_sleep_when_already_behind():
    clock = FakeClock()
    reader = SlowReader(FakeResponse(b"z" * 10), 100, rng=FixedRng(0.5), sleep=clock.sleep, clock=clock)
    clock.now = 5.0  # first chunk arrives long after the reader was created
    reader.drain()
    assert clock.sleeps == []


def test_slow_reader_gives_up_at_deadline():
    clock = FakeClock()
    reader = SlowReader(FakeResponse(b"z" * 30), 100, rng=FixedRng(0.99), sleep=clock.sleep, clock=clock, deadline=0.2)
    with pytest.raises(httpx.ReadTimeout):
        reader.drain()
    # second chunk lands at ~0.3 s, past the deadline; the third is never read
    assert len(clock.sleeps) == 2


def trickle(chunks, delay):
    for chunk in chunks:
        time.sleep(delay)
        yield chunk


def test_fast_request_times_out_on_trickling_body():
    """A body that keeps arriving slowly must not outlive the request timeout."""

    def handler(request):
        request.read()
        return httpx.Response(200, content=trickle([b"x"] * 20, 0.05))

    stats = LoadStats()
    with _mock_client(handler) as client:
        start = time.monotonic()
        ok = make_request(client, "http://server/experiment", stats, ClientKind.FAST, timeout=0.2)
        assert time.monotonic() - start < 0.8

    assert not ok
    assert (stats.success.value, stats.failed.value) == (0, 1)
    assert len(stats.fast_latencies) == 0


def test_slow_request_times_out_on_trickling_body():
    def handler(request):
        request.read()
        return httpx.Response(200, content=trickle([b"x"] * 20, 0.05))

    stats = LoadStats()
    with _mock_client(handler) as client:
        ok = make_request(client, "http://server/experiment", stats, ClientKind.SLOW, slow_speed=1_000_000, timeout=0.2)
    assert not ok
    assert stats.failed.value == 1


def test_slow_reader_chunk_size_floor():
    assert SlowReader(FakeResponse(b""), 5).chunk_size == 1
    assert SlowReader(FakeResponse(b""), 500 * 1024).chunk_size == 51_200
    with pytest.raises(ValueError):
        SlowReader(FakeResponse(b""), 0)


def _mock_client(handler, **kwargs):
    return httpx.Client(transport=httpx.MockTransport(handler), **kwargs)


def ok_handler(request):
    request.read()
    return httpx.Response(200, json={"experimentId": "exp-localization-v1", "selectedPayloadName": "a", "payload": {}})


def test_make_request_records_success():
    stats = LoadStats()
    with _mock_client(ok_handler) as client:
        assert make_request(client, "http://server/experiment", stats, ClientKind.FAST)
    assert (stats.total.value, stats.success.value, stats.failed.value) == (1, 1, 0)
    assert len(stats.fast_latencies) == 1 and len(stats.slow_latencies) == 0


def test_make_request_sends_unique_user_ids():
    seen = []

    def handler(request):
        seen.append(json.loads(request.read())["userId"])
        return ok_handler(request)

    stats = LoadStats()
    with _mock_client(handler) as client:
        for _ in range(3):
            make_request(client, "http://server/experiment", stats, ClientKind.SLOW, slow_speed=1_000_000)
    assert len(set(seen)) == 3
    assert all(uid.startswith("slow-user-") for uid in seen)
    assert len(stats.slow_latencies) == 3


def test_make_request_counts_bad_status_as_failure():
    stats = LoadStats()
    with _mock_client(lambda request: httpx.Response(503)) as client:
        assert not make_request(client, "http://server/experiment", stats, ClientKind.FAST)
    assert (stats.success.value, stats.failed.value) == (0, 1)
    assert len(stats.fast_latencies) == 0


def test_make_request_counts_transport_error_as_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    stats = LoadStats()
    with _mock_client(refuse) as client:
        assert not make_request(client, "http://server/experiment", stats, ClientKind.SLOW, slow_speed=1024)
    assert stats.failed.value == 1


def _config(**overrides):
    values = dict(
        server_url="http://server",
        fast_clients=3,
        slow_clients=2,
        requests_per_client=4,
        slow_download_speed=1_000_000,
        duration=10.0,
        fast_pause=0,
        slow_pause=0,
    )
    values.update(overrides)
    return LoadTestConfig(**values)


def test_run_finishes_when_every_budget_is_spent():
    factory = lambda **kw: _mock_client(ok_handler, **kw)  # noqa: E731
    result = run_load_test(_config(), client_factory=factory)

    assert result.total_requests == 20
    assert result.successful == 20
    assert (result.fast_requests, result.slow_requests) == (12, 8)
    assert (result.fast.count, result.slow.count, result.overall.count) == (12, 8, 20)
    assert result.elapsed < 10.0
    assert result.success_rate == 100.0


def test_run_stops_all_clients_at_duration():
    factory = lambda **kw: _mock_client(ok_handler, **kw)  # noqa: E731
    stats = LoadStats()
    before = threading.active_count()

    start = time.perf_counter()
    result = run_load_test(
        _config(requests_per_client=10**9, duration=0.3, fast_pause=0.01, slow_pause=0.01),
        stats=stats,
        client_factory=factory,
    )

    assert time.perf_counter() - start < 5
    assert result.total_requests > 0
    # drained: nothing in flight once the run returns
    assert stats.total.value == stats.success.value + stats.failed.value
    assert threading.active_count() <= before


def test_hog_mode_starts_slow_clients_first():
    order = []
    lock = threading.Lock()

    def handler(request):
        with lock:
            order.append(json.loads(request.read())["userId"])
        return ok_handler(request)

    factory = lambda **kw: _mock_client(handler, **kw)  # noqa: E731
    run_load_test(
        _config(hog_test=True, warmup=0.2, requests_per_client=2, slow_pause=0.01),
        client_factory=factory,
    )

    assert order[0].startswith("slow-user-")
    first_fast = next(i for i, uid in enumerate(order) if uid.startswith("fast-user-"))
    assert all(uid.startswith("slow-user-") for uid in order[:first_fast])


def test_failures_are_excluded_from_latency():
    factory = lambda **kw: _mock_client(lambda request: httpx.Response(500), **kw)  # noqa: E731
    result = run_load_test(_config(slow_clients=0), client_factory=factory)
    assert result.failed == 12
    assert result.overall.count == 0
    assert result.throughput == 0
    assert result.fast_efficiency is None


def test_run_against_in_process_app():
    app = create_app(build(FIXTURES))
    factory = lambda **kw: TestClient(app)  # noqa: E731
    result = run_load_test(
        _config(server_url="http://testserver", fast_clients=2, slow_clients=1, requests_per_client=3),
        client_factory=factory,
    )
    assert result.successful == 9
    assert result.failed == 0


def test_check_health(monkeypatch):
    monkeypatch.setattr(loadtest.httpx, "get", lambda url, timeout: httpx.Response(200))
    assert check_health("http://server")

    def refuse(url, timeout):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(loadtest.httpx, "get", refuse)
    assert not check_health("http://server")
