"""
Prometheus Metrics

In-process counters and histograms rendered in Prometheus text format:
- HTTP request metrics (count, duration)
- Booking lifecycle metrics (created, cancelled, refunds, payment transitions)
- Webhook and advisory (background) task outcomes
"""

from typing import Dict, List
from collections import defaultdict
from threading import Lock


class Counter:
    """Monotonic counter metric."""

    metric_type = "counter"

    def __init__(self, name: str, description: str, labels: tuple = ()):
        self.name = name
        self.description = description
        self.labels = labels
        self._values: Dict[tuple, float] = defaultdict(float)
        self._lock = Lock()
        REGISTRY.append(self)

    def _key(self, label_values: dict) -> tuple:
        return tuple(str(label_values.get(l, '')) for l in self.labels)

    def inc(self, value: float = 1, **label_values):
        key = self._key(label_values)
        with self._lock:
            self._values[key] += value

    def value(self, **label_values) -> float:
        with self._lock:
            return self._values.get(self._key(label_values), 0.0)

    def get_all(self) -> Dict[tuple, float]:
        with self._lock:
            return dict(self._values)

    def render(self) -> List[str]:
        lines = []
        for key, value in self.get_all().items():
            lines.append(f"{self.name}{_label_str(self.labels, key)} {value}")
        return lines


class Histogram:
    """Histogram metric (sum/count plus cumulative buckets)."""

    metric_type = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float('inf'))

    def __init__(self, name: str, description: str, labels: tuple = (), buckets: tuple = None):
        self.name = name
        self.description = description
        self.labels = labels
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._lock = Lock()
        REGISTRY.append(self)

    def observe(self, value: float, **label_values):
        key = tuple(str(label_values.get(l, '')) for l in self.labels)
        with self._lock:
            self._sums[key] += value
            self._totals[key] += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._counts[key][bucket] += 1

    def render(self) -> List[str]:
        lines = []
        with self._lock:
            for key in list(self._sums.keys()):
                for bucket in self.buckets:
                    le = "+Inf" if bucket == float('inf') else str(bucket)
                    labels = _label_str(self.labels + ("le",), key + (le,))
                    lines.append(f"{self.name}_bucket{labels} {self._counts[key][bucket]}")
                labels = _label_str(self.labels, key)
                lines.append(f"{self.name}_sum{labels} {self._sums[key]}")
                lines.append(f"{self.name}_count{labels} {self._totals[key]}")
        return lines


def _label_str(names: tuple, values: tuple) -> str:
    if not names:
        return ""
    pairs = ",".join(f'{k}="{v}"' for k, v in zip(names, values))
    return "{" + pairs + "}"


REGISTRY: list = []


# ================================
# APPLICATION METRICS
# ================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labels=("method", "path", "status_code")
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    labels=("method", "path")
)

bookings_created_total = Counter(
    "booknow_bookings_created_total",
    "Bookings created",
    labels=("payment_option",)
)

bookings_cancelled_total = Counter(
    "booknow_bookings_cancelled_total",
    "Bookings cancelled",
    labels=("cancelled_by", "refunded")
)

payment_transitions_total = Counter(
    "booknow_payment_transitions_total",
    "Payment mirror transitions applied",
    labels=("to_status", "source")
)

gateway_calls_total = Counter(
    "booknow_gateway_calls_total",
    "Payment provider calls",
    labels=("operation", "status")
)

gateway_call_duration_seconds = Histogram(
    "booknow_gateway_call_duration_seconds",
    "Payment provider call duration in seconds",
    labels=("operation",)
)

webhook_events_total = Counter(
    "booknow_webhook_events_total",
    "Payment webhook events received",
    labels=("event_type", "status")
)

advisory_failures_total = Counter(
    "booknow_advisory_failures_total",
    "Background (notification/email) tasks that raised",
    labels=("task",)
)

notifications_total = Counter(
    "booknow_notifications_total",
    "Notifications persisted and their live delivery outcome",
    labels=("type", "delivery")
)


def format_prometheus_metrics() -> str:
    """Format all metrics in Prometheus text format."""
    lines = []
    for metric in REGISTRY:
        lines.append(f"# HELP {metric.name} {metric.description}")
        lines.append(f"# TYPE {metric.name} {metric.metric_type}")
        lines.extend(metric.render())
    return "\n".join(lines) + "\n"


# ================================
# CONVENIENCE FUNCTIONS
# ================================

def record_http_request(method: str, path: str, status_code: int, duration: float):
    http_requests_total.inc(method=method, path=path, status_code=str(status_code))
    http_request_duration_seconds.observe(duration, method=method, path=path)


def record_gateway_call(operation: str, success: bool, duration: float):
    status = "success" if success else "error"
    gateway_calls_total.inc(operation=operation, status=status)
    gateway_call_duration_seconds.observe(duration, operation=operation)


def record_webhook_event(event_type: str, status: str):
    webhook_events_total.inc(event_type=event_type, status=status)
