"""
Process-local billing metrics rendered in the Prometheus text format.

Counters and gauges share one labeled-series store; the registry renders them
for GET /metrics. Values reset on restart, which is fine for rate queries.
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _Series:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, description: str = ""):
        self.name = name
        self.description = description
        self.label_names = tuple(label_names or ())
        self._samples: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Mapping[str, str]]) -> LabelKey:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def value(self, labels: Optional[Mapping[str, str]] = None) -> float:
        with self._lock:
            return self._samples.get(self._key(labels), 0.0)

    def render(self) -> List[str]:
        lines = []
        if self.description:
            lines.append(f"# HELP {self.name} {self.description}")
        lines.append(f"# TYPE {self.name} {self.kind}")
        with self._lock:
            samples = sorted(self._samples.items())
        for key, sample in samples:
            if self.label_names:
                pairs = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, key))
                lines.append(f"{self.name}{{{pairs}}} {sample}")
            else:
                lines.append(f"{self.name} {sample}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()


class Counter(_Series):
    kind = "counter"

    def inc(self, labels: Optional[Mapping[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        key = self._key(labels)
        with self._lock:
            self._samples[key] = self._samples.get(key, 0.0) + float(amount)


class Gauge(_Series):
    kind = "gauge"

    def set(self, value: float, labels: Optional[Mapping[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._samples[key] = float(value)


class MetricsRegistry:
    def __init__(self):
        self._series: Dict[str, _Series] = {}
        self._lock = threading.Lock()

    def _register(self, cls, name: str, label_names, description: str):
        with self._lock:
            existing = self._series.get(name)
            if existing is None:
                existing = self._series[name] = cls(name, label_names, description)
            elif not isinstance(existing, cls):
                raise ValueError(f"metric {name} already registered as a {existing.kind}")
            return existing

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, description: str = "") -> Counter:
        return self._register(Counter, name, label_names, description)

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None, description: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, description)

    def export_prometheus(self) -> str:
        with self._lock:
            series = [self._series[name] for name in sorted(self._series)]
        lines: List[str] = []
        for metric in series:
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            series = list(self._series.values())
        for metric in series:
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status"
)
gateway_calls_total = METRICS.counter(
    "billing_gateway_calls_total", ["operation", "outcome"], "Payment gateway calls"
)
lifecycle_operations_total = METRICS.counter(
    "billing_lifecycle_operations_total", ["operation", "outcome"], "Subscription lifecycle operations"
)
access_decisions_total = METRICS.counter(
    "access_gate_decisions_total", ["rule"], "Workspace access decisions by matching rule"
)
webhook_events_total = METRICS.counter(
    "billing_webhook_events_total", ["event_type", "outcome"], "Gateway webhook deliveries"
)
access_cache_entries = METRICS.gauge("access_gate_cache_entries", description="Owners with a cached access status")

# Numeric ids, uuids and gateway/workspace handles
_ID_SEGMENT = re.compile(r"^(?:[0-9]+|[0-9a-fA-F-]{16,}|(?:ws|sub|cus|usr|user|evt)_[A-Za-z0-9_]+)$")


def normalize_path(path: str) -> str:
    """/api/workspaces/ws_123/access -> /api/workspaces/:id/access"""
    segments = [":id" if segment and _ID_SEGMENT.match(segment) else segment for segment in path.split("/")]
    return "/".join(segments) or "/"
