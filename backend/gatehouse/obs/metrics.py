"""Central registry for Prometheus metrics used across the service."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"gatehouse_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"gatehouse_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

RATE_LIMIT_DECISIONS = Counter(
	"gatehouse_rate_limit_decisions_total",
	"Rate limit decisions per action",
	["action", "outcome"],
)

RATE_LIMIT_FAIL_OPEN = Counter(
	"gatehouse_rate_limit_fail_open_total",
	"Checks allowed because the counter store was unavailable",
	["action", "reason"],
)

RATE_LIMIT_STORE_LATENCY = Histogram(
	"gatehouse_rate_limit_store_seconds",
	"Round-trip latency of sliding-window checks against the counter store",
	buckets=(0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

REALTIME_TOKENS_ISSUED = Counter(
	"gatehouse_realtime_tokens_issued_total",
	"Realtime capability tokens issued",
)

REALTIME_TOKEN_FAILURES = Counter(
	"gatehouse_realtime_token_failures_total",
	"Realtime token issuance failures",
	["reason"],
)

REALTIME_CAPABILITY_CHANNELS = Histogram(
	"gatehouse_realtime_capability_channels",
	"Channel patterns per issued capability map",
	buckets=(1, 2, 5, 10, 25, 50, 100, 250),
)

CHANNEL_ACCESS_CHECKS = Counter(
	"gatehouse_channel_access_checks_total",
	"Server-side channel access checks",
	["outcome"],
)


def observe_request(route: str, method: str, status: int, duration_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(duration_seconds)


def inc_rate_limit_decision(action: str, outcome: str) -> None:
	RATE_LIMIT_DECISIONS.labels(action=action, outcome=outcome).inc()


def inc_rate_limit_fail_open(action: str, reason: str) -> None:
	RATE_LIMIT_FAIL_OPEN.labels(action=action, reason=reason).inc()


def observe_rate_limit_store(duration_seconds: float) -> None:
	RATE_LIMIT_STORE_LATENCY.observe(duration_seconds)


def inc_token_issued(channel_count: int) -> None:
	REALTIME_TOKENS_ISSUED.inc()
	REALTIME_CAPABILITY_CHANNELS.observe(channel_count)


def inc_token_failure(reason: str) -> None:
	REALTIME_TOKEN_FAILURES.labels(reason=reason).inc()


def inc_channel_access(outcome: str) -> None:
	CHANNEL_ACCESS_CHECKS.labels(outcome=outcome).inc()
