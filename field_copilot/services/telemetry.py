"""
Orchestration telemetry sinks
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog

from field_copilot.utils import metrics

logger = structlog.get_logger()

REQUEST_STARTED = "request.started"
MODEL_COMPLETED = "model.completed"
RESPONSE_PARSED = "response.parsed"
REQUEST_COMPLETED = "request.completed"
REQUEST_FAILED = "request.failed"


@dataclass(frozen=True)
class TelemetryEvent:
    """One lifecycle event of an orchestration"""
    name: str
    request_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Telemetry(ABC):
    """Receives orchestration lifecycle events"""

    @abstractmethod
    def emit(self, event: TelemetryEvent) -> None:
        ...


class NullTelemetry(Telemetry):
    """Discards every event"""

    def emit(self, event: TelemetryEvent) -> None:
        return None


class StructlogTelemetry(Telemetry):
    """Logs events with structlog and feeds the prometheus instruments"""

    def __init__(self, include_payload: bool = True, model: str = "unknown"):
        self.include_payload = include_payload
        self.model = model

    def emit(self, event: TelemetryEvent) -> None:
        if self.include_payload:
            logger.info(event.name, request_id=event.request_id, **event.payload)
        else:
            logger.info(event.name, request_id=event.request_id)

        if event.name == MODEL_COMPLETED:
            metrics.track_token_usage(event.payload.get("usage"), model=self.model)
        elif event.name == RESPONSE_PARSED:
            metrics.track_citations(event.payload.get("citations", 0))
        elif event.name == REQUEST_COMPLETED:
            metrics.track_orchestration("completed", event.payload.get("latency_ms"))
        elif event.name == REQUEST_FAILED:
            metrics.track_orchestration("failed", event.payload.get("latency_ms"))
