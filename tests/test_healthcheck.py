"""
Health check tests.
"""

from unittest.mock import patch

from flock_framework.config import BusConfig
from flock_framework.healthcheck import (
    FULL_CHECKS,
    QUICK_CHECKS,
    CheckResult,
    Status,
    check_bus_connectivity,
    check_configuration,
    check_core_imports,
    check_python_dependencies,
    check_tool_registration,
    format_report_text,
    run_health_check,
)

MEMORY_BUS = BusConfig(url="memory://health", request_timeout=0.5)


class TestChecks:

    def test_core_imports(self):
        assert check_core_imports().status == Status.OK

    def test_dependencies(self):
        result = check_python_dependencies()
        assert result.status == Status.OK
        assert "redis" in result.details

    def test_tool_registration(self):
        result = check_tool_registration()
        assert result.status == Status.OK
        assert result.message == "7 MCP tools registered"

    def test_configuration_ok(self):
        with patch("flock_framework.healthcheck.bus_config", MEMORY_BUS):
            assert check_configuration().status == Status.OK

    def test_configuration_rejects_unknown_scheme(self):
        with patch("flock_framework.healthcheck.bus_config", BusConfig(url="nats://localhost:4222")):
            result = check_configuration()
        assert result.status == Status.FAIL
        assert "Unsupported bus URL" in result.message

    def test_bus_roundtrip(self):
        with patch("flock_framework.healthcheck.bus_config", MEMORY_BUS):
            result = check_bus_connectivity()
        assert result.status == Status.OK

    def test_bus_unreachable(self):
        with patch("flock_framework.healthcheck.bus_config", BusConfig(url="nats://localhost:4222")):
            result = check_bus_connectivity()
        assert result.status == Status.FAIL
        assert "ConfigurationError" in result.message


class TestReport:

    def test_quick_report(self):
        report = run_health_check(quick=True)
        assert len(report.checks) == len(QUICK_CHECKS)
        assert report.overall_status == Status.OK
        assert report.summary["ok"] == len(QUICK_CHECKS)

    def test_full_report(self):
        with patch("flock_framework.healthcheck.bus_config", MEMORY_BUS):
            report = run_health_check()
        assert [c.name for c in report.checks][-2:] == ["tool_registration", "bus_connectivity"]
        assert len(report.checks) == len(FULL_CHECKS)
        assert report.bus_url == "memory://health"

    def test_crashing_check_is_a_failure(self):
        def boom():
            raise RuntimeError("kaput")

        with patch("flock_framework.healthcheck.QUICK_CHECKS", [boom]):
            report = run_health_check(quick=True)
        assert report.overall_status == Status.FAIL
        assert report.checks[0].message == "Check crashed: kaput"

    def test_warning_downgrades_overall(self):
        def warn():
            return CheckResult("warn", Status.WARN, "meh")

        with patch("flock_framework.healthcheck.QUICK_CHECKS", [warn]):
            assert run_health_check(quick=True).overall_status == Status.WARN

    def test_text_and_dict(self):
        report = run_health_check(quick=True)
        text = format_report_text(report)
        assert "Health Check Report" in text
        assert "[ OK ]" in text
        payload = report.to_dict()
        assert payload["overall_status"] == "ok"
        assert {c["name"] for c in payload["checks"]} >= {"core_imports", "configuration"}
