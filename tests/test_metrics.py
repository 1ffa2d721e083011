"""Tests for pitwall.core.metrics."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from pitwall.core.metrics import ReconcilerMetrics, get_error_type
from pitwall.errors import (
    ChannelUnavailableError,
    MessageNotFoundError,
    RateLimitedError,
)

pytestmark = pytest.mark.unit


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (MessageNotFoundError("gone"), "not_found"),
        (RateLimitedError("slow", retry_after=1.0), "rate_limited"),
        (ChannelUnavailableError("503"), "error"),
        (RuntimeError("boom"), "error"),
    ],
)
def test_get_error_type(exc: Exception, expected: str) -> None:
    assert get_error_type(exc) == expected


def test_counters_increment() -> None:
    metrics = ReconcilerMetrics()
    before_call = _sample("pitwall_channel_calls_total", operation="edit", status="success")
    before_note = _sample("pitwall_notifications_sent_total", series="F3")
    before_step = _sample("pitwall_reconcile_errors_total", series="F3", step="calendar")
    before_sweep = _sample("pitwall_expired_messages_swept_total", result="already_gone")

    metrics.record_channel_call("edit", "success")
    metrics.record_notification("F3")
    metrics.record_step_error("F3", "calendar")
    metrics.record_swept("already_gone")

    assert _sample("pitwall_channel_calls_total", operation="edit", status="success") == (
        before_call + 1
    )
    assert _sample("pitwall_notifications_sent_total", series="F3") == before_note + 1
    assert _sample("pitwall_reconcile_errors_total", series="F3", step="calendar") == (
        before_step + 1
    )
    assert _sample("pitwall_expired_messages_swept_total", result="already_gone") == (
        before_sweep + 1
    )
