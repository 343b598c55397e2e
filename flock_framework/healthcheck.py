"""
Flock Coordination Framework - Health Check System

Validates the installation, the configuration and connectivity to the
configured message bus. Can be run standalone (``flock health``) or
imported by supervisors.

Usage:
    flock health            # Full health check
    flock health --json     # JSON output
    flock health --quick    # Skip bus connectivity
"""

import asyncio
import datetime
import importlib
import platform
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .config import bus_config, get_all_configs


# ══════════════════════════════════════════════════════════════════════════════
# DATA MODELS
# ══════════════════════════════════════════════════════════════════════════════

class Status(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"
    SKIP = "skip"


@dataclass
class CheckResult:
    name: str
    status: Status
    message: str
    duration_ms: float = 0.0
    details: Optional[Dict] = None


@dataclass
class HealthReport:
    timestamp: str = ""
    overall_status: Status = Status.OK
    version: str = ""
    hostname: str = ""
    python_version: str = ""
    bus_url: str = ""
    checks: List[CheckResult] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "overall_status": self.overall_status.value,
            "version": self.version,
            "hostname": self.hostname,
            "python_version": self.python_version,
            "bus_url": self.bus_url,
            "summary": self.summary,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "message": c.message,
                    "duration_ms": round(c.duration_ms, 2),
                    **({"details": c.details} if c.details else {}),
                }
                for c in self.checks
            ],
        }


# ══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK ENGINE
# ══════════════════════════════════════════════════════════════════════════════

class _Timer:
    def __init__(self):
        self.start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        self.elapsed_ms = (time.perf_counter() - self.start) * 1000


def _run_async(coro_fn, *args, **kwargs):
    """Run a coroutine safely even if a loop is already running."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro_fn(*args, **kwargs))

    new_loop = asyncio.new_event_loop()
    try:
        return new_loop.run_until_complete(coro_fn(*args, **kwargs))
    finally:
        new_loop.close()


# ──────────────────────────────────────────────────────────────────────────────
# 1. INSTALLATION CHECKS
# ──────────────────────────────────────────────────────────────────────────────

CORE_MODULES = [
    "flock_framework",
    "flock_framework.bus",
    "flock_framework.agents",
    "flock_framework.directory",
    "flock_framework.broker",
    "flock_framework.tasks",
    "flock_framework.client",
    "flock_framework.server",
]

DEPENDENCIES = {
    "click": "click",
    "anyio": "anyio",
    "mcp": "mcp",
    "prometheus_client": "prometheus-client",
    "redis": "redis",
}


def check_core_imports() -> CheckResult:
    """Verify every framework module imports."""
    with _Timer() as t:
        errors = []
        for mod in CORE_MODULES:
            try:
                importlib.import_module(mod)
            except Exception as e:
                errors.append(f"{mod}: {e}")

    if errors:
        return CheckResult("core_imports", Status.FAIL, f"{len(errors)} module(s) failed to import",
                           t.elapsed_ms, {"errors": errors})
    return CheckResult("core_imports", Status.OK, f"All {len(CORE_MODULES)} modules imported", t.elapsed_ms)


def check_version() -> CheckResult:
    from . import __version__

    with _Timer() as t:
        valid = bool(__version__) and __version__.count(".") == 2
    if not valid:
        return CheckResult("version", Status.WARN, f"Unexpected version string '{__version__}'", t.elapsed_ms)
    return CheckResult("version", Status.OK, f"v{__version__}", t.elapsed_ms)


def check_python_dependencies() -> CheckResult:
    with _Timer() as t:
        missing = []
        found = {}
        for module, dist in DEPENDENCIES.items():
            try:
                imported = importlib.import_module(module)
                found[dist] = getattr(imported, "__version__", "installed")
            except ImportError:
                missing.append(dist)

    if missing:
        return CheckResult("python_dependencies", Status.FAIL, f"Missing: {', '.join(missing)}",
                           t.elapsed_ms, {"missing": missing})
    return CheckResult("python_dependencies", Status.OK, f"{len(found)} dependencies available",
                       t.elapsed_ms, found)


def check_configuration() -> CheckResult:
    """Validate timing relationships and the bus URL scheme."""
    from .bus import create_bus
    from .exceptions import ConfigurationError

    with _Timer() as t:
        configs = get_all_configs()
        problems = []
        try:
            create_bus(bus_config.url)
        except ConfigurationError as e:
            problems.append(str(e))
        directory = configs["directory"]
        if directory["sweep_interval"] <= 0:
            problems.append("sweep interval must be positive")
        if directory["staleness_threshold"] <= directory["heartbeat_interval"]:
            problems.append("staleness threshold must exceed the heartbeat interval")
        if configs["bus"]["max_reconnect_attempts"] < 1:
            problems.append("at least one connection attempt is required")

    if problems:
        return CheckResult("configuration", Status.FAIL, "; ".join(problems), t.elapsed_ms)
    return CheckResult("configuration", Status.OK, f"bus={bus_config.url}", t.elapsed_ms,
                       {"staleness_threshold": directory["staleness_threshold"]})


def check_tool_registration() -> CheckResult:
    with _Timer() as t:
        tools = _run_async(_list_tools)
    expected = {"list_agents", "get_agent_info", "send_message", "request_capability",
                "subscribe_to_agent", "unsubscribe_from_agent", "publish_task"}
    missing = expected - set(tools)
    if missing:
        return CheckResult("tool_registration", Status.FAIL, f"Missing tools: {sorted(missing)}", t.elapsed_ms)
    return CheckResult("tool_registration", Status.OK, f"{len(tools)} MCP tools registered", t.elapsed_ms)


async def _list_tools() -> List[str]:
    from .server import list_available_tools

    return [tool.name for tool in await list_available_tools()]


# ──────────────────────────────────────────────────────────────────────────────
# 2. BUS CONNECTIVITY
# ──────────────────────────────────────────────────────────────────────────────

def check_bus_connectivity() -> CheckResult:
    """Connect to the configured bus and round-trip one message."""
    with _Timer() as t:
        try:
            _run_async(_bus_roundtrip, bus_config.url, bus_config.request_timeout)
            error = None
        except Exception as e:
            error = e
    if error is not None:
        return CheckResult("bus_connectivity", Status.FAIL, f"{type(error).__name__}: {error}", t.elapsed_ms)
    return CheckResult("bus_connectivity", Status.OK, f"Round-trip on {bus_config.url}", t.elapsed_ms)


async def _bus_roundtrip(url: str, timeout: float):
    from .bus import create_bus

    bus = create_bus(url)
    await bus.connect()
    try:
        topic = f"_health.{uuid.uuid4().hex}"
        sub = await bus.subscribe(topic)
        await bus.publish(topic, {"ping": True})
        await asyncio.wait_for(sub.next(), timeout=timeout)
    finally:
        await bus.close()


# ══════════════════════════════════════════════════════════════════════════════
# RUNNER
# ══════════════════════════════════════════════════════════════════════════════

QUICK_CHECKS = [
    check_core_imports,
    check_version,
    check_python_dependencies,
    check_configuration,
]

FULL_CHECKS = QUICK_CHECKS + [
    check_tool_registration,
    check_bus_connectivity,
]


def run_health_check(quick: bool = False) -> HealthReport:
    """
    Run all health checks and produce a report.

    Args:
        quick: Skip the MCP tool listing and the bus round-trip.

    Returns:
        HealthReport with all results.
    """
    from . import __version__

    report = HealthReport(
        timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
        version=__version__,
        hostname=platform.node(),
        python_version=platform.python_version(),
        bus_url=bus_config.url,
    )

    checks = QUICK_CHECKS if quick else FULL_CHECKS
    for check_fn in checks:
        try:
            report.checks.append(check_fn())
        except Exception as e:
            report.checks.append(CheckResult(check_fn.__name__, Status.FAIL, f"Check crashed: {e}", 0.0))

    summary = {"ok": 0, "warn": 0, "fail": 0, "skip": 0}
    for check in report.checks:
        summary[check.status.value] += 1
    report.summary = summary

    if summary["fail"] > 0:
        report.overall_status = Status.FAIL
    elif summary["warn"] > 0:
        report.overall_status = Status.WARN
    else:
        report.overall_status = Status.OK

    return report


def format_report_text(report: HealthReport) -> str:
    """Format health report as human-readable text."""
    icons = {
        Status.OK: "[ OK ]",
        Status.WARN: "[WARN]",
        Status.FAIL: "[FAIL]",
        Status.SKIP: "[SKIP]",
    }

    lines = [
        "=" * 60,
        "  Flock Coordination Framework - Health Check Report",
        "=" * 60,
        f"  Timestamp:  {report.timestamp}",
        f"  Version:    {report.version}",
        f"  Hostname:   {report.hostname}",
        f"  Python:     {report.python_version}",
        f"  Bus:        {report.bus_url}",
        "",
        f"  Overall:    {icons[report.overall_status]} {report.overall_status.value.upper()}",
        f"  Summary:    ok={report.summary.get('ok', 0)} warn={report.summary.get('warn', 0)} "
        f"fail={report.summary.get('fail', 0)} skip={report.summary.get('skip', 0)}",
        "-" * 60,
    ]

    for check in report.checks:
        lines.append(f"  {icons[check.status]}  {check.name:<22}  {check.message}")
        if check.details:
            for key, val in check.details.items():
                if isinstance(val, list) and len(val) > 5:
                    lines.append(f"       {key}: [{len(val)} items]")
                else:
                    lines.append(f"       {key}: {val}")
        lines.append(f"       ({check.duration_ms:.1f}ms)")

    lines.append("-" * 60)
    lines.append("")
    return "\n".join(lines)
