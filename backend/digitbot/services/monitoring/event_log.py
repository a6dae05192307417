"""In-memory bot event log (the human-readable activity feed).

Each event is also emitted through structlog so the JSON log stream and the
feed shown to users never diverge.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, List

from digitbot.infrastructure.logging.logging import get_logger
from digitbot.infrastructure.utils.timeutils import utc_now

JsonDict = Dict[str, Any]


@dataclass(frozen=True)
class BotEvent:
    ts: str
    level: str
    type: str
    message: str
    data: JsonDict = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        return asdict(self)


EventListener = Callable[[BotEvent], None]


class EventLog:
    def __init__(self, max_events: int = 500) -> None:
        self._events: Deque[BotEvent] = deque(maxlen=max_events)
        self._listeners: List[EventListener] = []
        self._logger = get_logger("events")

    def __len__(self) -> int:
        return len(self._events)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def log_event(self, type: str, message: str, *, level: str = "INFO", **data: Any) -> BotEvent:
        event = BotEvent(ts=utc_now().isoformat(), level=level.upper(), type=type, message=message, data=data)
        self._events.append(event)

        log_fn = getattr(self._logger, level.lower(), self._logger.info)
        log_fn(type, message=message, **data)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self._logger.error("event_listener_error", error=str(e))
        return event

    def list_events(self, limit: int = 200) -> List[JsonDict]:
        """Newest first, like the dashboard feed."""
        events = list(self._events)[-limit:] if limit > 0 else []
        return [e.to_dict() for e in reversed(events)]

    def of_type(self, type: str) -> List[BotEvent]:
        return [e for e in self._events if e.type == type]

    def clear(self) -> None:
        self._events.clear()
