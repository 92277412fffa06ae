from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from circulation_desk.core.logging import get_logger
from circulation_desk.core.utils import utcnow

logger = get_logger("events")


@dataclass
class DomainEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


Publisher = Callable[[DomainEvent], None]


def log_event(event: DomainEvent) -> None:
    logger.info(f"event {event.name} {event.payload}")
