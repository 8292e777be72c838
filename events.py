"""Progress events emitted at step and agent boundaries."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

log = logging.getLogger(__name__)

STEP_START = "step-start"
STEP_COMPLETE = "step-complete"
AGENT_REASONING = "agent-reasoning"
TOOL_CALL = "tool-call"
VOCABULARY_UPDATE = "vocabulary-update"
ITERATION_UPDATE = "iteration-update"

EVENT_TYPES = (
    STEP_START,
    STEP_COMPLETE,
    AGENT_REASONING,
    TOOL_CALL,
    VOCABULARY_UPDATE,
    ITERATION_UPDATE,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Event:
    """One telemetry event. `seq` gives the total order within a run."""
    type: str
    step_id: str
    seq: int
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "type": f"data-{self.type}",
            "data": {"stepId": self.step_id, "timestamp": self.timestamp, **self.data},
        }


class EventLog:
    """
    Append-only, ordered event sink.

    Keeps every event in memory and forwards it to subscribers: plain
    callables, or asyncio queues for streaming consumers.
    """

    def __init__(self):
        self.events: list[Event] = []
        self._callbacks: list[Callable[[Event], None]] = []
        self._queues: list[asyncio.Queue] = []

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self._callbacks.append(callback)

    def stream(self) -> asyncio.Queue:
        """Queue receiving every future event."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def emit(self, type: str, step_id: str, **data) -> Event:
        """
        Record and publish an event.

        Args:
            type: One of EVENT_TYPES
            step_id: Stable identifier of the emitting step
            **data: Event payload

        Returns:
            The recorded Event
        """
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {type}")

        event = Event(type=type, step_id=step_id, seq=len(self.events), data=data)
        self.events.append(event)

        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                # Subscriber errors are logged, never raised
                log.warning(f"Event subscriber failed on {type}: {e}")
        for queue in self._queues:
            queue.put_nowait(event)
        return event

    def of_type(self, type: str) -> list[Event]:
        return [e for e in self.events if e.type == type]

    def __len__(self) -> int:
        return len(self.events)
