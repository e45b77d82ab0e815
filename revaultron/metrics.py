"""In-process metrics for rebalancing and volatility updates.

Counters and gauges live in a ``MetricsRegistry`` owned by each component
(or shared across a deployment). Alert thresholds are evaluated when a
snapshot is taken; snapshots export to Prometheus text or a plain dict.

Metric names used by the package:

* ``rebalance.executed`` / ``rebalance.skipped`` / ``rebalance.swap_failures`` / ``rebalance.unwinds``
* ``rebalance.last_drift_bps`` / ``rebalance.last_volatility_bps``
* ``volatility.updates`` / ``volatility.refund_failures``
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

LOGGER = logging.getLogger(__name__)


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricValue:
    name: str
    metric_type: MetricType
    value: float = 0.0
    labels: Dict[str, str] = field(default_factory=dict)
    updated_at: float = 0.0

    def increment(self, amount: float = 1.0, now: float | None = None) -> None:
        if self.metric_type is MetricType.COUNTER and amount < 0:
            raise ValueError(f"counter {self.name} cannot decrease")
        self.value += amount
        self.updated_at = now if now is not None else time.monotonic()

    def set(self, value: float, now: float | None = None) -> None:
        self.value = value
        self.updated_at = now if now is not None else time.monotonic()

    def reset(self) -> None:
        self.value = 0.0
        self.updated_at = 0.0


class AlertSeverity(Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertThreshold:
    metric_name: str
    condition: str         # "above" or "below"
    threshold: float
    severity: AlertSeverity = AlertSeverity.WARNING
    message: str = ""


@dataclass(frozen=True)
class Alert:
    metric_name: str
    current_value: float
    threshold: float
    severity: AlertSeverity
    message: str
    triggered_at: float


def rebalance_alerts(max_swap_failures: int = 3) -> List[AlertThreshold]:
    """Default alerts for an executor deployment."""
    return [
        AlertThreshold(
            metric_name="rebalance.swap_failures",
            condition="above",
            threshold=float(max_swap_failures),
            severity=AlertSeverity.CRITICAL,
            message="swap venue keeps failing; funds are being returned to vaults",
        ),
    ]


@dataclass(frozen=True)
class MetricSnapshot:
    timestamp: float
    metrics: Dict[str, float]
    types: Dict[str, MetricType]
    alerts: tuple[Alert, ...]

    @property
    def has_critical_alerts(self) -> bool:
        return any(a.severity == AlertSeverity.CRITICAL for a in self.alerts)

    def to_prometheus_text(self, prefix: str = "revaultron") -> str:
        lines: list[str] = []
        for name, value in sorted(self.metrics.items()):
            prom_name = f"{prefix}_{name}".replace(".", "_").replace("-", "_")
            metric_type = self.types.get(name, MetricType.GAUGE)
            lines.append(f"# TYPE {prom_name} {metric_type.value}")
            lines.append(f"{prom_name} {value:g}")
        return "\n".join(lines) + "\n" if lines else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "metrics": dict(self.metrics),
            "alerts": [
                {
                    "metric": a.metric_name,
                    "value": a.current_value,
                    "threshold": a.threshold,
                    "severity": a.severity.value,
                    "message": a.message,
                }
                for a in self.alerts
            ],
        }


class MetricsRegistry:
    """Get-or-create registry of named counters and gauges."""

    def __init__(self, alerts: List[AlertThreshold] | None = None) -> None:
        self._metrics: Dict[str, MetricValue] = {}
        self._alerts: list[AlertThreshold] = list(alerts or [])

    def counter(self, name: str, **labels: str) -> MetricValue:
        return self._get_or_create(name, MetricType.COUNTER, labels)

    def gauge(self, name: str, **labels: str) -> MetricValue:
        return self._get_or_create(name, MetricType.GAUGE, labels)

    def _get_or_create(self, name: str, metric_type: MetricType, labels: Dict[str, str]) -> MetricValue:
        metric = self._metrics.get(name)
        if metric is None:
            metric = MetricValue(name=name, metric_type=metric_type, labels=labels)
            self._metrics[name] = metric
        elif metric.metric_type is not metric_type:
            raise ValueError(f"metric {name} already registered as {metric.metric_type.value}")
        return metric

    def value(self, name: str) -> float:
        metric = self._metrics.get(name)
        return metric.value if metric is not None else 0.0

    def add_alert(self, threshold: AlertThreshold) -> None:
        self._alerts.append(threshold)

    def evaluate_alerts(self, now: float | None = None) -> list[Alert]:
        if now is None:
            now = time.monotonic()
        triggered: list[Alert] = []
        for at in self._alerts:
            metric = self._metrics.get(at.metric_name)
            if metric is None:
                continue
            fired = (
                (at.condition == "above" and metric.value > at.threshold)
                or (at.condition == "below" and metric.value < at.threshold)
            )
            if not fired:
                continue
            alert = Alert(
                metric_name=at.metric_name,
                current_value=metric.value,
                threshold=at.threshold,
                severity=at.severity,
                message=at.message or f"{at.metric_name} is {at.condition} {at.threshold:g}",
                triggered_at=now,
            )
            triggered.append(alert)
            LOGGER.warning("alert %s: %s (value=%g)", alert.severity.value, alert.message, metric.value)
        return triggered

    def snapshot(self, now: float | None = None) -> MetricSnapshot:
        if now is None:
            now = time.monotonic()
        return MetricSnapshot(
            timestamp=now,
            metrics={name: mv.value for name, mv in self._metrics.items()},
            types={name: mv.metric_type for name, mv in self._metrics.items()},
            alerts=tuple(self.evaluate_alerts(now=now)),
        )

    def metric_names(self) -> list[str]:
        return sorted(self._metrics)

    def reset_all(self) -> None:
        for mv in self._metrics.values():
            mv.reset()
