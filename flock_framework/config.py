"""
Flock Coordination Framework - Centralized Configuration

Single source of truth for all framework settings.
Environment-variable driven with sensible defaults.
"""

import os
import socket
from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any


# ══════════════════════════════════════════════════════════════════════════════
# ENVIRONMENT
# ══════════════════════════════════════════════════════════════════════════════

def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


def _env_int(key: str, default: int = 0) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_float(key: str, default: float = 0.0) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_list(key: str, default: str = "", sep: str = ",") -> List[str]:
    raw = os.environ.get(key, default)
    return [item.strip() for item in raw.split(sep) if item.strip()] if raw else []


# ══════════════════════════════════════════════════════════════════════════════
# BUS CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BusConfig:
    """Message bus connection and reconnect policy."""
    url: str = _env("FLOCK_BUS_URL", "memory://default")
    max_reconnect_attempts: int = _env_int("FLOCK_MAX_RECONNECT", _env_int("MAX_RETRIES", 10))
    reconnect_base_delay: float = _env_float("FLOCK_RECONNECT_BASE_DELAY", 1.0)
    reconnect_max_delay: float = _env_float("FLOCK_RECONNECT_MAX_DELAY", 30.0)
    request_timeout: float = _env_float("FLOCK_REQUEST_TIMEOUT", 5.0)


# ══════════════════════════════════════════════════════════════════════════════
# AGENT CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AgentConfig:
    """Identity and timing of a single agent runtime."""
    agent_id: str = _env("AGENT_ID", f"agent-{socket.gethostname()}")
    name: str = _env("AGENT_NAME", "")
    capabilities: List[str] = field(default_factory=lambda: _env_list(
        "AGENT_CAPABILITIES", "text-processing,task-execution"
    ))
    # Empty means every task type (``tasks.*``)
    task_types: List[str] = field(default_factory=lambda: _env_list("AGENT_TASK_TYPES"))
    heartbeat_interval: float = _env_float("HEARTBEAT_INTERVAL", 30.0)

    @property
    def display_name(self) -> str:
        return self.name or self.agent_id


# ══════════════════════════════════════════════════════════════════════════════
# DIRECTORY CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DirectoryConfig:
    """Roster sweep timing."""
    sweep_interval: float = _env_float("FLOCK_SWEEP_INTERVAL", 60.0)
    heartbeat_interval: float = _env_float("HEARTBEAT_INTERVAL", 30.0)
    staleness_factor: int = _env_int("FLOCK_STALENESS_FACTOR", 3)

    @property
    def staleness_threshold(self) -> float:
        return self.heartbeat_interval * self.staleness_factor


# ══════════════════════════════════════════════════════════════════════════════
# LOGGING CONFIG
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LogConfig:
    """Log level and output format (text or json)."""
    level: str = _env("LOG_LEVEL", "INFO")
    format: str = _env("FLOCK_LOG_FORMAT", "text")


# ══════════════════════════════════════════════════════════════════════════════
# GLOBAL CONFIG INSTANCE
# ══════════════════════════════════════════════════════════════════════════════

bus_config = BusConfig()
agent_config = AgentConfig()
directory_config = DirectoryConfig()
log_config = LogConfig()


def get_all_configs() -> Dict[str, Any]:
    """Return all configuration as a serializable dictionary."""
    return {
        "bus": asdict(bus_config),
        "agent": asdict(agent_config),
        "directory": {
            **asdict(directory_config),
            "staleness_threshold": directory_config.staleness_threshold,
        },
        "logging": asdict(log_config),
    }
