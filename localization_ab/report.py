"""
Console summaries and Markdown reports for the load and allocation harnesses.

Read-only: every function returns text; only :func:`write_report` touches disk.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from localization_ab.allocation import AllocationResults
from localization_ab.config import LoadTestConfig
from localization_ab.loadtest import LoadTestResult
from localization_ab.stats import LatencySummary

RULE = "━" * 40
SAMPLE_USERS = 20


def _pct(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def _latency_block(title: str, s: LatencySummary) -> List[str]:
    return [
        f"{title}:",
        f"  Minimum:          {s.minimum:.0f} ms",
        f"  Average:          {s.mean:.0f} ms",
        f"  Maximum:          {s.maximum:.0f} ms",
        f"  p50:              {s.p50:.0f} ms",
        f"  p90:              {s.p90:.0f} ms",
        f"  p99:              {s.p99:.0f} ms",
        "",
    ]


# Load test

def format_load_config(config: LoadTestConfig) -> str:
    lines = [
        RULE,
        f"Server URL: {config.server_url}",
        f"Fast Clients: {config.fast_clients}",
        f"Slow Clients: {config.slow_clients} (simulating {config.slow_download_speed} bytes/sec network)",
        f"Requests per Client: {config.requests_per_client}",
        f"Test Duration: {config.duration:g}s",
    ]
    if config.hog_test:
        lines.append("Mode: Connection Hogging Test")
    lines.append(RULE)
    return "\n".join(lines)


def assess(result: LoadTestResult, hog_test: bool = False) -> List[str]:
    """Grade latency and success rate; fast-client numbers are preferred when present."""
    key = result.fast if result.fast.count else result.overall
    lines: List[str] = []

    if key.p50 < 50:
        lines.append("p50: Excellent - under 50ms")
    elif key.p50 < 100:
        lines.append("p50: Good - under 100ms")
    elif key.p50 < 200:
        lines.append("p50: Fair - under 200ms")
    else:
        lines.append("p50: Poor - over 200ms")

    if key.p99 < 200:
        lines.append("p99: Excellent - under 200ms")
    elif key.p99 < 500:
        lines.append("p99: Good - under 500ms")
    elif key.p99 < 1000:
        lines.append("p99: Fair - under 1s")
    else:
        lines.append("p99: Poor - over 1s")

    rate = result.success_rate
    if rate >= 99.9:
        lines.append("Success rate: Excellent - 99.9%+")
    elif rate >= 99:
        lines.append("Success rate: Good - 99%+")
    elif rate >= 95:
        lines.append("Success rate: Fair - 95%+")
    else:
        lines.append("Success rate: Poor - below 95%")

    if hog_test and result.fast.count:
        p99 = result.fast.p99
        if p99 > 500:
            lines.append(f"Hogging: DETECTED - slow clients significantly impact fast clients (fast p99 {p99:.0f} ms)")
        elif p99 > 200:
            lines.append(f"Hogging: WARNING - some impact from slow clients (fast p99 {p99:.0f} ms)")
        else:
            lines.append(f"Hogging: none - fast clients unaffected (fast p99 {p99:.0f} ms)")
    return lines


def format_load_summary(result: LoadTestResult, config: LoadTestConfig) -> str:
    lines = [
        RULE,
        "Load Test Results",
        RULE,
        f"Test Duration: {result.elapsed:.3f}s",
        "",
        "Request Statistics:",
        f"  Total Requests:   {result.total_requests}",
        f"  Successful:       {result.successful} ({_pct(result.successful, result.total_requests):.2f}%)",
        f"  Failed:           {result.failed} ({_pct(result.failed, result.total_requests):.2f}%)",
        f"  Fast Clients:     {result.fast_requests}",
        f"  Slow Clients:     {result.slow_requests}",
        "",
    ]
    lines += _latency_block("Overall Latency", result.overall)
    if result.fast.count:
        lines += _latency_block("Fast Client Latency", result.fast)
    if result.slow.count:
        lines += _latency_block("Slow Client Latency (includes download time)", result.slow)

    lines += ["Throughput:", f"  Overall:          {result.throughput:.2f} req/s"]
    if result.fast.count:
        lines.append(f"  Fast Clients:     {result.fast_throughput:.2f} req/s")
    if result.slow.count:
        lines.append(f"  Slow Clients:     {result.slow_throughput:.2f} req/s")
    if result.fast_efficiency is not None:
        lines.append(f"  Fast Client Efficiency: {result.fast_efficiency:.1f}% (actual vs theoretical max)")
        if result.fast_efficiency < 50:
            lines.append("     Low efficiency suggests connection hogging!")

    lines += ["", "Performance Assessment:"]
    lines += [f"  {line}" for line in assess(result, config.hog_test)]
    lines.append(RULE)
    return "\n".join(lines)


def render_load_markdown(
    result: LoadTestResult,
    config: LoadTestConfig,
    generated_at: Optional[datetime] = None,
) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    out = [
        "# Load Test Results",
        "",
        f"**Test Date:** {generated_at.isoformat()}",
        "",
        "## Test Configuration",
        "",
        f"- **Server URL:** {config.server_url}",
        f"- **Fast Clients:** {config.fast_clients}",
        f"- **Slow Clients:** {config.slow_clients} ({config.slow_download_speed} bytes/sec)",
        f"- **Requests per Client:** {config.requests_per_client}",
        f"- **Hog Test:** {'yes' if config.hog_test else 'no'}",
        f"- **Test Duration:** {result.elapsed:.3f}s",
        "",
        "## Request Statistics",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Requests | {result.total_requests} |",
        f"| Successful | {result.successful} |",
        f"| Failed | {result.failed} |",
        f"| Success Rate | {result.success_rate:.2f}% |",
        "",
        "## Latency (ms)",
        "",
        "| Class | Count | Min | Mean | Max | p50 | p90 | p99 | req/s |",
        "|-------|-------|-----|------|-----|-----|-----|-----|-------|",
    ]
    for label, s, rps in (
        ("overall", result.overall, result.throughput),
        ("fast", result.fast, result.fast_throughput),
        ("slow", result.slow, result.slow_throughput),
    ):
        out.append(
            f"| {label} | {s.count} | {s.minimum:.0f} | {s.mean:.0f} | {s.maximum:.0f} "
            f"| {s.p50:.0f} | {s.p90:.0f} | {s.p99:.0f} | {rps:.2f} |"
        )
    out += ["", "## Assessment", ""]
    out += [f"- {line}" for line in assess(result, config.hog_test)]
    out.append("")
    return "\n".join(out)


# Allocation test

def format_allocation_summary(results: AllocationResults) -> str:
    lines = [
        RULE,
        "Test Summary",
        RULE,
        f"Test Duration: {results.duration:.3f}s",
        f"Throughput: {results.requests_per_second:.2f} req/s",
        "",
        "Request Statistics:",
        f"  Total Requests: {results.total_requests}",
        f"  Successful: {results.successful_requests}",
        f"  Failed: {results.failed_requests}",
        "",
        "Allocation Consistency:",
        f"  Total Users: {results.total_users}",
        f"  Consistent Users: {results.consistent_users}",
        f"  Inconsistent Users: {results.inconsistent_users}",
        f"  Consistency Rate: {results.consistency_rate:.2f}%",
        "",
        "PASS: All users received consistent payload assignments!"
        if results.passed
        else "FAIL: Some users received inconsistent payload assignments!",
        "",
        "Payload Distribution:",
    ]
    pcts = results.distribution_percentages()
    for name in sorted(results.payload_distribution):
        lines.append(f"  {name}: {results.payload_distribution[name]} users ({pcts[name]:.1f}%)")
    lines.append(RULE)
    return "\n".join(lines)


def render_allocation_markdown(results: AllocationResults, generated_at: Optional[datetime] = None) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    out = [
        "# A/B Allocation Test Results",
        "",
        f"**Test Date:** {generated_at.isoformat()}",
        "",
        "## Test Configuration",
        "",
        f"- **Total Users:** {results.total_users}",
        f"- **Total Requests:** {results.total_requests}",
        f"- **Test Duration:** {results.duration:.3f}s",
        f"- **Throughput:** {results.requests_per_second:.2f} req/s",
        "",
        "## Request Statistics",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Requests | {results.total_requests} |",
        f"| Successful | {results.successful_requests} |",
        f"| Failed | {results.failed_requests} |",
        f"| Success Rate | {_pct(results.successful_requests, results.total_requests):.2f}% |",
        "",
        "## Allocation Consistency",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Total Users | {results.total_users} |",
        f"| Consistent Users | {results.consistent_users} |",
        f"| Inconsistent Users | {results.inconsistent_users} |",
        f"| **Consistency Rate** | **{results.consistency_rate:.2f}%** |",
        "",
    ]
    if results.passed:
        out += [
            "### PASS",
            "",
            "All users received consistent payload assignments across multiple requests.",
            "The assignment is **deterministic**.",
            "",
        ]
    else:
        out += ["### FAIL", "", "Some users received inconsistent payload assignments.", ""]
        if results.inconsistent_details:
            out += ["**Inconsistency Details:**", ""]
            out += [f"- {detail}" for detail in results.inconsistent_details]
            out.append("")

    out += [
        "## Payload Distribution",
        "",
        "| Payload | Users | Percentage |",
        "|---------|-------|------------|",
    ]
    pcts = results.distribution_percentages()
    for name in sorted(results.payload_distribution):
        out.append(f"| {name} | {results.payload_distribution[name]} | {pcts[name]:.1f}% |")

    out += [
        "",
        "## Sample User Allocations",
        "",
        f"First {SAMPLE_USERS} users and their assigned payloads:",
        "",
        "| User ID | Payload | Requests | Consistent |",
        "|---------|---------|----------|------------|",
    ]
    for alloc in sorted(results.user_allocations, key=lambda a: a.user_id)[:SAMPLE_USERS]:
        mark = "yes" if alloc.consistent else "no"
        out.append(f"| {alloc.user_id} | {alloc.payload_name} | {alloc.request_count} | {mark} |")
    out.append("")
    return "\n".join(out)


def write_report(path: Union[str, Path], text: str) -> Path:
    path = Path(path)
    path.write_text(text, encoding="utf-8")
    return path
