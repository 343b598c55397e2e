"""
Flock Coordination Framework - Agent Coordination Layer

Coordinates independent worker agents over a publish/subscribe message bus:
discovery, heartbeat-based health tracking, task fan-out with result
correlation, and an on-demand capability broker.

Modules:
- config: Centralized configuration (environment-driven)
- exceptions: Structured exception hierarchy
- logs: Console / JSON-lines logging setup
- metrics: Prometheus metrics export
- models: Wire data model (tasks, results, heartbeats, envelopes)
- bus: Message bus contract, in-memory and Redis transports, reconnect backoff
- agents: Agent runtime (state machine, subscription loops, heartbeats)
- directory: Agent roster actor and directory service
- broker: Capability request broker
- tasks: Task fan-out and result correlation
- client: Coordination client for agents and external callers
- server: Coordinator MCP server
- healthcheck: System health diagnostics
"""

__version__ = "1.0.0"
__author__ = "Flock Development Team"
__description__ = "Publish/subscribe coordination layer for autonomous worker agents"
