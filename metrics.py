"""Prometheus metrics for the credits ledger and trial-grant engine."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"
_SERVICE = (os.getenv("APP_SERVICE") or "credits").strip() or "credits"


def _labels() -> dict[str, str]:
    return {"env": _ENV, "service": _SERVICE}


LEDGER_MUTATIONS_TOTAL = Counter(
    "ledger_mutations_total",
    "Ledger mutations grouped by entry type and outcome",
    labelnames=("type", "result"),
    registry=REGISTRY,
)

DB_RETRIES_TOTAL = Counter(
    "db_retries_total",
    "Transient database failures retried, grouped by operation",
    labelnames=("op",),
    registry=REGISTRY,
)

TRIAL_GRANTS_TOTAL = Counter(
    "trial_grants_total",
    "Trial grant and claim attempts grouped by policy mode and eligibility",
    labelnames=("mode", "eligibility", "env", "service"),
    registry=REGISTRY,
)

ABUSE_CHECKS_TOTAL = Counter(
    "abuse_checks_total",
    "Signup abuse checks grouped by assigned credit tier",
    labelnames=("tier", "env", "service"),
    registry=REGISTRY,
)

SIGNUP_RISK_SCORE = Histogram(
    "signup_risk_score",
    "Distribution of computed signup risk scores",
    labelnames=("env", "service"),
    buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
    registry=REGISTRY,
)

COUNTER_PURGED_TOTAL = Counter(
    "counter_purged_total",
    "Expired abuse counters removed by the purge job",
    registry=REGISTRY,
)

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Process uptime in seconds",
    labelnames=("env", "service"),
    registry=REGISTRY,
)

_START_TIME = time.time()


def record_trial_attempt(mode: str, eligibility: str) -> None:
    TRIAL_GRANTS_TOTAL.labels(mode=mode, eligibility=eligibility, **_labels()).inc()


def record_abuse_check(tier: str, score: int) -> None:
    ABUSE_CHECKS_TOTAL.labels(tier=tier, **_labels()).inc()
    SIGNUP_RISK_SCORE.labels(**_labels()).observe(score)


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.labels(**_labels()).set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "ABUSE_CHECKS_TOTAL",
    "COUNTER_PURGED_TOTAL",
    "DB_RETRIES_TOTAL",
    "LEDGER_MUTATIONS_TOTAL",
    "SIGNUP_RISK_SCORE",
    "TRIAL_GRANTS_TOTAL",
    "record_abuse_check",
    "record_trial_attempt",
    "render_metrics",
]
