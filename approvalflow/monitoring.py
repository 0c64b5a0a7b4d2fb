"""
Monitoring Module

Metrics collection and alerting for the approval workflow engine.
Lifecycle transitions feed the counters and histograms; escalation timers
that cannot advance a stage on their own raise alerts.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from approvalflow.document_lifecycle import TransitionEvent

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================

class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertState(str, Enum):
    """Alert states."""
    FIRING = "firing"
    RESOLVED = "resolved"


# =============================================================================
# METRIC CLASSES
# =============================================================================

@dataclass
class MetricValue:
    """A single metric value with timestamp."""
    value: float
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


def _label_key(labels: Dict[str, Any]) -> tuple:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


class Counter:
    """A monotonically increasing counter metric."""

    def __init__(self, name: str, description: str = "", labels: List[str] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = defaultdict(float)

    def inc(self, value: float = 1, **labels):
        self._values[_label_key(labels)] += value

    def get(self, **labels) -> float:
        return self._values.get(_label_key(labels), 0.0)

    def total(self) -> float:
        """Sum across every label combination."""
        return sum(self._values.values())

    def collect(self) -> List[MetricValue]:
        now = utc_now()
        return [MetricValue(value=v, timestamp=now, labels=dict(k)) for k, v in self._values.items()]


class Gauge:
    """A gauge metric that can go up and down."""

    def __init__(self, name: str, description: str = "", labels: List[str] = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._values: Dict[tuple, float] = defaultdict(float)

    def set(self, value: float, **labels):
        self._values[_label_key(labels)] = value

    def inc(self, value: float = 1, **labels):
        self._values[_label_key(labels)] += value

    def dec(self, value: float = 1, **labels):
        self._values[_label_key(labels)] -= value

    def get(self, **labels) -> float:
        return self._values.get(_label_key(labels), 0.0)

    def collect(self) -> List[MetricValue]:
        now = utc_now()
        return [MetricValue(value=v, timestamp=now, labels=dict(k)) for k, v in self._values.items()]


class Histogram:
    """A histogram metric for measuring distributions."""

    DEFAULT_BUCKETS = (1, 4, 8, 24, 48, 72, 120, 168, 336, float('inf'))

    def __init__(self, name: str, description: str = "", labels: List[str] = None, buckets: tuple = None):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[tuple, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[tuple, float] = defaultdict(float)
        self._totals: Dict[tuple, int] = defaultdict(int)
        self._values: Dict[tuple, List[float]] = defaultdict(list)

    def observe(self, value: float, **labels):
        label_key = _label_key(labels)

        for bucket in self.buckets:
            if value <= bucket:
                self._counts[label_key][bucket] += 1

        self._sums[label_key] += value
        self._totals[label_key] += 1

        # Keep recent values for percentiles
        self._values[label_key].append(value)
        if len(self._values[label_key]) > 10000:
            self._values[label_key] = self._values[label_key][-5000:]

    def get_percentile(self, percentile: float, **labels) -> float:
        """Get a percentile value (e.g., 0.95 for p95)."""
        values = sorted(self._values.get(_label_key(labels), []))
        if not values:
            return 0.0
        index = int(len(values) * percentile)
        return values[min(index, len(values) - 1)]

    def get_sum(self, **labels) -> float:
        return self._sums.get(_label_key(labels), 0.0)

    def get_count(self, **labels) -> int:
        return self._totals.get(_label_key(labels), 0)

    def get_mean(self, **labels) -> float:
        count = self.get_count(**labels)
        if count == 0:
            return 0.0
        return self.get_sum(**labels) / count


# =============================================================================
# METRICS REGISTRY
# =============================================================================

class MetricsRegistry:
    """Central registry for all metrics."""

    def __init__(self):
        self._metrics: Dict[str, Any] = {}

    def counter(self, name: str, description: str = "", labels: List[str] = None) -> Counter:
        if name not in self._metrics:
            self._metrics[name] = Counter(name, description, labels)
        return self._metrics[name]

    def gauge(self, name: str, description: str = "", labels: List[str] = None) -> Gauge:
        if name not in self._metrics:
            self._metrics[name] = Gauge(name, description, labels)
        return self._metrics[name]

    def histogram(self, name: str, description: str = "", labels: List[str] = None, buckets: tuple = None) -> Histogram:
        if name not in self._metrics:
            self._metrics[name] = Histogram(name, description, labels, buckets)
        return self._metrics[name]

    def metrics(self) -> Dict[str, Any]:
        return dict(self._metrics)


# Global registry
REGISTRY = MetricsRegistry()


# =============================================================================
# WORKFLOW METRICS
# =============================================================================

class WorkflowMetrics:
    """Metrics specific to document approval."""

    def __init__(self, registry: MetricsRegistry = None):
        self.registry = registry or REGISTRY

        # Counters
        self.workflows_synthesized = self.registry.counter(
            "approvalflow_workflows_synthesized_total",
            "Workflows synthesized from uploaded documents",
            labels=["primary_department"]
        )

        self.transitions = self.registry.counter(
            "approvalflow_transitions_total",
            "Lifecycle transitions applied",
            labels=["event", "to_status"]
        )

        self.escalations = self.registry.counter(
            "approvalflow_escalations_total",
            "Escalation timers that fired",
            labels=["outcome"]
        )

        # Gauges
        self.documents_by_status = self.registry.gauge(
            "approvalflow_documents",
            "Documents currently in each status",
            labels=["status"]
        )

        # Histograms
        self.synthesized_steps = self.registry.histogram(
            "approvalflow_synthesized_steps",
            "Steps per synthesized workflow",
            buckets=(1, 2, 3, 5, 8, 13, 21, float('inf'))
        )

        self.approval_duration = self.registry.histogram(
            "approvalflow_approval_duration_hours",
            "Hours from submission to final approval"
        )

    def record_synthesis(self, primary_department: str, step_count: int):
        self.workflows_synthesized.inc(primary_department=primary_department)
        self.synthesized_steps.observe(step_count)

    def seed_document_counts(self, counts: Dict[str, int]):
        """Start the status gauge from documents already in storage."""
        for status, count in counts.items():
            self.documents_by_status.set(count, status=status)

    def record_transition(self, event: "TransitionEvent"):
        """Subscriber hook: count a transition and move the status gauge."""
        self.transitions.inc(event=event.event, to_status=event.to_status)
        if event.from_status:
            self.documents_by_status.dec(status=event.from_status)
        self.documents_by_status.inc(status=event.to_status)

    def record_escalation(self, outcome: str):
        self.escalations.inc(outcome=outcome)

    def record_approval_duration(self, hours: float):
        self.approval_duration.observe(hours)


# =============================================================================
# ALERT MANAGER
# =============================================================================

@dataclass
class Alert:
    """An alert raised by the engine, e.g. an overdue review stage."""
    alert_id: str
    name: str
    severity: AlertSeverity
    state: AlertState
    message: str
    started_at: datetime
    document_id: Optional[str] = None
    stage_id: Optional[str] = None
    resolved_at: Optional[datetime] = None
    acknowledged: bool = False
    acknowledged_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "name": self.name,
            "severity": self.severity.value,
            "state": self.state.value,
            "message": self.message,
            "document_id": self.document_id,
            "stage_id": self.stage_id,
            "started_at": self.started_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "acknowledged": self.acknowledged,
        }


class AlertManager:
    """Manages alerts and notifications."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._handlers: List[Callable[[Alert], None]] = []

    def register_handler(self, handler: Callable[[Alert], None]):
        self._handlers.append(handler)

    def fire(
        self,
        name: str,
        message: str,
        severity: AlertSeverity = AlertSeverity.WARNING,
        document_id: Optional[str] = None,
        stage_id: Optional[str] = None,
    ) -> Alert:
        """Fire an alert; an alert already firing under the same name is returned as is."""
        existing = next(
            (a for a in self._alerts.values() if a.name == name and a.state == AlertState.FIRING),
            None
        )
        if existing:
            return existing

        alert = Alert(
            alert_id=f"alert_{uuid.uuid4().hex[:12]}",
            name=name,
            severity=severity,
            state=AlertState.FIRING,
            message=message,
            started_at=utc_now(),
            document_id=document_id,
            stage_id=stage_id,
        )

        self._alerts[alert.alert_id] = alert
        logger.warning(f"Alert fired: {alert.message}")

        for handler in self._handlers:
            try:
                handler(alert)
            except Exception as e:
                logger.error(f"Alert handler failed: {e}")

        return alert

    def resolve(self, name: str):
        for alert in self._alerts.values():
            if alert.name == name and alert.state == AlertState.FIRING:
                alert.state = AlertState.RESOLVED
                alert.resolved_at = utc_now()
                logger.info(f"Alert resolved: {alert.name}")

    def resolve_document(self, document_id: str):
        """Resolve every firing alert raised for a document."""
        for alert in self._alerts.values():
            if alert.document_id == document_id and alert.state == AlertState.FIRING:
                self.resolve(alert.name)

    def acknowledge(self, alert_id: str, user: str):
        if alert_id in self._alerts:
            self._alerts[alert_id].acknowledged = True
            self._alerts[alert_id].acknowledged_by = user

    def get_active_alerts(self) -> List[Alert]:
        return [a for a in self._alerts.values() if a.state == AlertState.FIRING]

    def get_alerts_by_severity(self, severity: AlertSeverity) -> List[Alert]:
        return [a for a in self.get_active_alerts() if a.severity == severity]


# =============================================================================
# METRICS EXPORTER
# =============================================================================

class MetricsExporter:
    """Exports metrics in Prometheus text or JSON form."""

    def __init__(self, registry: MetricsRegistry):
        self.registry = registry

    @staticmethod
    def _labels(label_items) -> str:
        labels = ",".join(f'{k}="{v}"' for k, v in label_items)
        return f"{{{labels}}}" if labels else ""

    def to_prometheus(self) -> str:
        lines = []

        for name, metric in self.registry.metrics().items():
            if metric.description:
                lines.append(f"# HELP {name} {metric.description}")

            if isinstance(metric, (Counter, Gauge)):
                kind = "counter" if isinstance(metric, Counter) else "gauge"
                lines.append(f"# TYPE {name} {kind}")
                for mv in metric.collect():
                    lines.append(f"{name}{self._labels(mv.labels.items())} {mv.value}")

            elif isinstance(metric, Histogram):
                lines.append(f"# TYPE {name} histogram")
                for label_key, total in metric._totals.items():
                    label_str = self._labels(label_key)
                    lines.append(f"{name}_count{label_str} {total}")
                    lines.append(f"{name}_sum{label_str} {metric._sums[label_key]}")

            lines.append("")

        return "\n".join(lines)

    def to_json(self) -> Dict[str, Any]:
        result = {}

        for name, metric in self.registry.metrics().items():
            if isinstance(metric, (Counter, Gauge)):
                result[name] = {
                    "type": "counter" if isinstance(metric, Counter) else "gauge",
                    "values": [
                        {"value": mv.value, "labels": mv.labels}
                        for mv in metric.collect()
                    ]
                }
            elif isinstance(metric, Histogram):
                result[name] = {
                    "type": "histogram",
                    "p50": metric.get_percentile(0.5),
                    "p95": metric.get_percentile(0.95),
                    "mean": metric.get_mean(),
                    "count": metric.get_count(),
                    "sum": metric.get_sum()
                }

        return result


# =============================================================================
# LOGGING ALERT HANDLER
# =============================================================================

def log_alert_handler(alert: Alert):
    """Simple alert handler that logs alerts."""
    if alert.severity == AlertSeverity.CRITICAL:
        logger.critical(f"CRITICAL ALERT: {alert.message}")
    elif alert.severity == AlertSeverity.WARNING:
        logger.warning(f"WARNING: {alert.message}")
    else:
        logger.info(f"INFO: {alert.message}")
