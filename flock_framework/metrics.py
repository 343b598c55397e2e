"""
Flock Coordination Framework - Prometheus Metrics

Metrics collection and export for:
- Task execution (outcome counts, latency)
- Heartbeats and the agent roster
- Capability brokering outcomes
- Bus reconnects and dropped messages
"""

import logging
from typing import Dict, Any

from prometheus_client import (
    Counter, Histogram, Gauge, Info,
    CollectorRegistry, generate_latest,
    start_http_server,
)

from . import __version__

logger = logging.getLogger("flock.metrics")


# ══════════════════════════════════════════════════════════════════════════════
# METRICS DEFINITIONS
# ══════════════════════════════════════════════════════════════════════════════

REGISTRY = CollectorRegistry()

# ── Task Metrics ──
TASKS_TOTAL = Counter(
    "flock_tasks_total",
    "Tasks executed by agents",
    ["agent_id", "status"],
    registry=REGISTRY,
)
TASK_DURATION = Histogram(
    "flock_task_duration_seconds",
    "Task handler duration in seconds",
    ["task_type"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
    registry=REGISTRY,
)
TASKS_PUBLISHED = Counter(
    "flock_tasks_published_total",
    "Tasks published to type-scoped topics",
    ["task_type"],
    registry=REGISTRY,
)

# ── Liveness Metrics ──
HEARTBEATS_TOTAL = Counter(
    "flock_heartbeats_total",
    "Heartbeats published",
    ["agent_id", "status"],
    registry=REGISTRY,
)
ROSTER_AGENTS = Gauge(
    "flock_directory_agents",
    "Agents known to the directory",
    ["status"],
    registry=REGISTRY,
)

# ── Broker Metrics ──
CAPABILITY_REQUESTS = Counter(
    "flock_capability_requests_total",
    "Capability requests by outcome",
    ["capability", "outcome"],
    registry=REGISTRY,
)

# ── Bus Metrics ──
BUS_RECONNECTS = Counter(
    "flock_bus_reconnect_attempts_total",
    "Bus connection attempts that failed",
    ["component"],
    registry=REGISTRY,
)
DROPPED_MESSAGES = Counter(
    "flock_dropped_messages_total",
    "Inbound messages dropped as invalid",
    ["kind"],
    registry=REGISTRY,
)

# ── Framework Info ──
FRAMEWORK_INFO = Info(
    "flock_framework",
    "Framework information",
    registry=REGISTRY,
)
FRAMEWORK_INFO.info({
    "version": __version__,
    "name": "Flock Coordination Framework",
})


# ══════════════════════════════════════════════════════════════════════════════
# METRICS MANAGER
# ══════════════════════════════════════════════════════════════════════════════

class MetricsManager:
    """Central metrics management."""

    def __init__(self):
        self._server_started = False

    def start_server(self, port: int = 9090):
        """Start Prometheus metrics HTTP server."""
        if self._server_started:
            return

        try:
            start_http_server(port, registry=REGISTRY)
            self._server_started = True
            logger.info(f"Prometheus metrics server started on port {port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def record_task(self, agent_id: str, task_type: str, duration: float, success: bool):
        """Record a finished task."""
        status = "completed" if success else "failed"
        TASKS_TOTAL.labels(agent_id=agent_id, status=status).inc()
        TASK_DURATION.labels(task_type=task_type).observe(duration)

    def record_task_published(self, task_type: str):
        TASKS_PUBLISHED.labels(task_type=task_type).inc()

    def record_heartbeat(self, agent_id: str, status: str):
        HEARTBEATS_TOTAL.labels(agent_id=agent_id, status=status).inc()

    def set_roster(self, online: int, offline: int):
        """Update the roster gauges after a directory change."""
        ROSTER_AGENTS.labels(status="online").set(online)
        ROSTER_AGENTS.labels(status="offline").set(offline)

    def record_capability_request(self, capability: str, outcome: str):
        CAPABILITY_REQUESTS.labels(capability=capability, outcome=outcome).inc()

    def record_reconnect_attempt(self, component: str):
        BUS_RECONNECTS.labels(component=component).inc()

    def record_dropped_message(self, kind: str):
        DROPPED_MESSAGES.labels(kind=kind).inc()

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus exposition format."""
        return generate_latest(REGISTRY).decode("utf-8")

    def get_summary(self) -> Dict[str, Any]:
        """Get a human-readable metrics summary."""
        return {
            "server_started": self._server_started,
            "collectors": len(list(REGISTRY.collect())),
        }


# ══════════════════════════════════════════════════════════════════════════════
# GLOBAL INSTANCE
# ══════════════════════════════════════════════════════════════════════════════

metrics_manager = MetricsManager()
