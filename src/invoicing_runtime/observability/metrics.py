"""Prometheus metrics for the runtime primitives.

Counters and histograms are module-level so every dispatcher, bus and
cache instance in the process reports into the same registry.
"""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    start_http_server,
)

RUNTIME_INFO = Info("invoicing_runtime", "Runtime information")

# ---------------------------------------------------------------------------
# Command dispatch
# ---------------------------------------------------------------------------

COMMANDS_TOTAL = Counter(
    "invoicing_commands_total",
    "Commands executed by the dispatcher",
    ["command", "kind", "outcome"],
)

COMMAND_LATENCY = Histogram(
    "invoicing_command_latency_seconds",
    "Command handler execution time",
    ["command"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

EVENTS_SENT = Counter(
    "invoicing_events_sent_total",
    "Events handed to the transport",
    ["event"],
)

EVENTS_HANDLED = Counter(
    "invoicing_events_handled_total",
    "Event deliveries processed by consumers",
    ["event", "outcome"],
)

DEAD_LETTERS = Counter(
    "invoicing_dead_letters_total",
    "Events dead-lettered after permanent or repeated failure",
    ["event"],
)

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

CACHE_LOOKUPS = Counter(
    "invoicing_cache_lookups_total",
    "TTL memo cache lookups",
    ["cache", "result"],
)


def start_metrics_server(port: int = 9090, service: str = "unknown") -> None:
    """Start Prometheus metrics HTTP server in a background thread."""
    RUNTIME_INFO.info({
        "version": "0.1.0",
        "service": service,
    })
    start_http_server(port)


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def record_command(command: str, kind: str, outcome: str, seconds: float) -> None:
    """Record one dispatcher execution."""
    COMMANDS_TOTAL.labels(command=command, kind=kind, outcome=outcome).inc()
    COMMAND_LATENCY.labels(command=command).observe(seconds)


def record_event_sent(event: str) -> None:
    EVENTS_SENT.labels(event=event).inc()


def record_event_handled(event: str, outcome: str) -> None:
    """Record a consumer-side delivery outcome (success/retry/dead_letter)."""
    EVENTS_HANDLED.labels(event=event, outcome=outcome).inc()
    if outcome == "dead_letter":
        DEAD_LETTERS.labels(event=event).inc()


def record_cache_lookup(cache: str, hit: bool) -> None:
    CACHE_LOOKUPS.labels(cache=cache, result="hit" if hit else "miss").inc()
