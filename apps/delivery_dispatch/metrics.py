"""Prometheus metrics definitions for Delivery Dispatch.

This module centralizes all Prometheus metric definitions so metric names
and labels stay consistent across the client, scheduler and coordinator.

Usage:
    from apps.delivery_dispatch.metrics import dispatch_outcomes_total

    dispatch_outcomes_total.labels(status="existing").inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Business Metrics
# ============================================================================

dispatch_outcomes_total = Counter(
    "delivery_dispatch_outcomes_total",
    "Total dispatch outcomes by status",
    ["status"],  # status: created, existing, scheduled, skipped, failed
)

schedule_results_total = Counter(
    "delivery_dispatch_schedule_results_total",
    "Total scheduler decisions",
    ["status", "reason"],
)

scheduled_entries_current = Gauge(
    "delivery_dispatch_scheduled_entries_current",
    "Live schedule entries (armed timers)",
)

reconciliation_updates_total = Counter(
    "delivery_dispatch_reconciliation_updates_total",
    "Local status updates applied from partner status",
    ["source", "status"],  # source: poll, event
)

reconciliation_errors_total = Counter(
    "delivery_dispatch_reconciliation_errors_total",
    "Partner status lookups that failed during reconciliation",
)

# ============================================================================
# Partner API Metrics
# ============================================================================

partner_requests_total = Counter(
    "delivery_dispatch_partner_requests_total",
    "Total DoorDash Drive API requests",
    ["operation", "outcome"],  # outcome: success, http_error, transport_error
)

partner_request_duration = Histogram(
    "delivery_dispatch_partner_request_duration_seconds",
    "Time taken by DoorDash Drive API requests",
    ["operation"],
)
