"""
Capability Broker

Routes an ad-hoc capability request to whichever agent answers first on
``capability.request``. Later replies are discarded with the reply inbox.
A request nobody answers resolves to a soft "unavailable" response once
the timeout elapses; the broker never raises to its caller.
"""

import logging
from typing import Any, Dict, Optional

from .bus.base import MessageBus
from .exceptions import BusError, MessageValidationError, RequestTimeoutError
from .metrics import metrics_manager
from .models import CapabilityRequest, CapabilityResponse

CAPABILITY_TOPIC = "capability.request"


class CapabilityBroker:
    """Publish capability requests and wait for the first answer."""

    def __init__(self, bus: MessageBus, requester_id: str = "broker", default_timeout: float = 30.0):
        self.bus = bus
        self.requester_id = requester_id
        self.default_timeout = default_timeout
        self.logger = logging.getLogger("flock.capability_broker")
        self.stats = {"requests": 0, "answered": 0, "unavailable": 0, "errors": 0}

    async def request(
        self,
        capability: str,
        parameters: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CapabilityResponse:
        """Ask the flock for ``capability``.

        Args:
            capability: Capability name, e.g. ``echo``.
            parameters: Free-form parameters passed to the handler.
            timeout: Seconds to wait for the first reply.

        Returns:
            The first agent's response, or an ``available=False`` response
            when the deadline passes or the bus is down.
        """
        timeout = self.default_timeout if timeout is None else timeout
        request = CapabilityRequest(
            capability=capability,
            parameters=parameters or {},
            requester_id=self.requester_id,
            timeout_ms=max(1, int(timeout * 1000)),
        )
        self.stats["requests"] += 1
        self.logger.debug(f"Requesting capability {capability} ({request.request_id})")

        try:
            reply = await self.bus.request(CAPABILITY_TOPIC, request.to_dict(), timeout)
            response = CapabilityResponse.from_dict(reply)
        except RequestTimeoutError:
            self.stats["unavailable"] += 1
            metrics_manager.record_capability_request(capability, "unavailable")
            self.logger.info(f"No agent answered capability {capability} within {timeout}s")
            return CapabilityResponse.unavailable(request)
        except (BusError, MessageValidationError) as e:
            self.stats["errors"] += 1
            metrics_manager.record_capability_request(capability, "error")
            self.logger.warning(f"Capability request {capability} failed: {e}")
            return CapabilityResponse(
                request_id=request.request_id,
                capability=capability,
                available=False,
                error=str(e),
            )

        self.stats["answered"] += 1
        metrics_manager.record_capability_request(capability, "answered")
        self.logger.info(f"Capability {capability} answered by {response.agent_id or 'unknown agent'}")
        return response
