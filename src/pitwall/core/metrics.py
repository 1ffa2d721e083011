"""Prometheus metrics for the reconciliation loop.

Metrics exported:
- pitwall_channel_calls_total: Counter of chat API calls by operation and outcome
- pitwall_notifications_sent_total: Counter of session notifications posted
- pitwall_reconcile_errors_total: Counter of loop step failures
- pitwall_expired_messages_swept_total: Counter of expiry sweep results

All per-series metrics carry a ``series`` label. Counters live in the default
registry; exposing them is left to the deployment.
"""

from __future__ import annotations

from prometheus_client import Counter

from pitwall.errors import MessageNotFoundError, RateLimitedError

channel_calls_total = Counter(
    "pitwall_channel_calls_total",
    "Total number of chat API calls",
    labelnames=["operation", "status"],
)

notifications_sent_total = Counter(
    "pitwall_notifications_sent_total",
    "Total number of session notifications posted",
    labelnames=["series"],
)

reconcile_errors_total = Counter(
    "pitwall_reconcile_errors_total",
    "Total number of failed reconciliation steps",
    labelnames=["series", "step"],
)

expired_messages_swept_total = Counter(
    "pitwall_expired_messages_swept_total",
    "Total number of expired messages handled by the sweeper",
    labelnames=["result"],
)


class ReconcilerMetrics:
    """Convenience wrapper so call sites don't repeat label plumbing."""

    def record_channel_call(self, operation: str, status: str) -> None:
        """Record a chat API call.

        Args:
            operation: "send", "edit" or "delete".
            status: "success", "not_found", "rate_limited" or "error".
        """
        channel_calls_total.labels(operation=operation, status=status).inc()

    def record_notification(self, series: str) -> None:
        notifications_sent_total.labels(series=series).inc()

    def record_step_error(self, series: str, step: str) -> None:
        reconcile_errors_total.labels(series=series, step=step).inc()

    def record_swept(self, result: str) -> None:
        """Record one expiry sweep outcome ("deleted", "already_gone", "retry")."""
        expired_messages_swept_total.labels(result=result).inc()


def get_error_type(exc: Exception) -> str:
    """Map an exception to a coarse status label for ``record_channel_call``."""
    if isinstance(exc, MessageNotFoundError):
        return "not_found"
    if isinstance(exc, RateLimitedError):
        return "rate_limited"
    return "error"
