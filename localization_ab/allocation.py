"""
A/B allocation consistency check against a running service.

Every synthetic user is queried ``requests_per_user`` times through a bounded
thread pool. A user is *consistent* when every successful response named the same
payload; the per-user majority payload (first seen wins ties) feeds the
distribution table, which approximates the real bucket balance.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Mapping, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from localization_ab.loadtest import read_within
from localization_ab.model import ExperimentResponse
from localization_ab.stats import AtomicCounter

logger = logging.getLogger(__name__)


class AllocationTally:
    """``user -> {payload name: count}``, insertion-ordered, lock-guarded."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, int]] = {}
        self._lock = threading.Lock()

    def record(self, user_id: str, payload_name: str) -> None:
        with self._lock:
            seen = self._records.setdefault(user_id, {})
            seen[payload_name] = seen.get(payload_name, 0) + 1

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {user: dict(seen) for user, seen in self._records.items()}


class UserAllocation(BaseModel):
    user_id: str
    payload_name: str
    request_count: int
    consistent: bool


class AllocationResults(BaseModel):
    total_users: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consistent_users: int = 0
    inconsistent_users: int = 0
    payload_distribution: Dict[str, int] = Field(default_factory=dict)
    user_allocations: List[UserAllocation] = Field(default_factory=list)
    inconsistent_details: List[str] = Field(default_factory=list)
    duration: float = 0.0
    requests_per_second: float = 0.0
    consistency_rate: float = 0.0

    def distribution_percentages(self) -> Dict[str, float]:
        """Share of users per payload name, in percent."""
        if not self.total_users:
            return {}
        return {name: count / self.total_users * 100 for name, count in self.payload_distribution.items()}

    @property
    def passed(self) -> bool:
        return self.total_users > 0 and self.inconsistent_users == 0


def generate_user_ids(n: int) -> List[str]:
    return [str(uuid.uuid4()) for _ in range(n)]


def fetch_payload_name(client: httpx.Client, url: str, user_id: str, timeout: Optional[float] = None) -> str:
    """Return ``selectedPayloadName`` for *user_id*.

    Raises ``httpx.HTTPError`` on transport failure, non-200 status or when the
    whole exchange outlasts *timeout* seconds, and ``pydantic.ValidationError``
    on a malformed body.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    with client.stream("POST", url, json={"userId": user_id}) as resp:
        resp.raise_for_status()
        body = read_within(resp, deadline)
    return ExperimentResponse.model_validate_json(body).selected_payload_name


def analyze_results(
    records: Mapping[str, Mapping[str, int]],
    duration: float,
    total_requests: int,
    successful_requests: int,
    failed_requests: int,
) -> AllocationResults:
    """Derive consistency verdicts and the payload distribution from *records*."""
    results = AllocationResults(
        total_users=len(records),
        total_requests=total_requests,
        successful_requests=successful_requests,
        failed_requests=failed_requests,
        duration=duration,
    )
    if duration > 0:
        results.requests_per_second = successful_requests / duration

    for user_id, seen in records.items():
        # max() keeps the first encountered name on ties
        primary = max(seen, key=seen.__getitem__)
        consistent = len(seen) == 1

        results.payload_distribution[primary] = results.payload_distribution.get(primary, 0) + 1
        results.user_allocations.append(
            UserAllocation(
                user_id=user_id,
                payload_name=primary,
                request_count=sum(seen.values()),
                consistent=consistent,
            )
        )

        if consistent:
            results.consistent_users += 1
        else:
            results.inconsistent_users += 1
            listing = ", ".join(f"{name}({count})" for name, count in seen.items())
            results.inconsistent_details.append(f"User {user_id} received multiple payloads: {listing}")

    if results.total_users:
        results.consistency_rate = results.consistent_users / results.total_users * 100
    return results


def run_allocation_test(
    server_url: str,
    user_ids: List[str],
    requests_per_user: int,
    concurrency: int,
    client: Optional[httpx.Client] = None,
    timeout: float = 10.0,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> AllocationResults:
    """Issue ``len(user_ids) * requests_per_user`` requests through *concurrency* workers."""
    url = server_url.rstrip("/") + "/experiment"
    expected = len(user_ids) * requests_per_user
    work = [uid for uid in user_ids for _ in range(requests_per_user)]

    tally = AllocationTally()
    total = AtomicCounter()
    success = AtomicCounter()
    failed = AtomicCounter()
    completed = AtomicCounter()

    owns_client = client is None
    if client is None:
        limits = httpx.Limits(max_connections=concurrency, max_keepalive_connections=concurrency)
        client = httpx.Client(timeout=timeout, limits=limits)

    def one(user_id: str) -> None:
        total.add()
        try:
            name = fetch_payload_name(client, url, user_id, timeout=timeout)
        except (httpx.HTTPError, ValidationError) as exc:
            logger.debug("request for %s failed: %s", user_id, exc)
            failed.add()
        else:
            success.add()
            tally.record(user_id, name)
        done = completed.add()
        if on_progress is not None:
            on_progress(done, expected)

    start = time.perf_counter()
    try:
        with ThreadPoolExecutor(max_workers=concurrency) as pool:
            list(pool.map(one, work))
    finally:
        if owns_client:
            client.close()
    duration = time.perf_counter() - start

    return analyze_results(tally.snapshot(), duration, total.value, success.value, failed.value)
