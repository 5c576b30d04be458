"""Publish/subscribe channel for log and status events.

Sessions and the wallet store publish here; consumers (the CLI, a dashboard)
subscribe.  Delivery is synchronous and in publish order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

LOG = "log"
STATUS = "status"
SCREENSHOT = "screenshot"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "action": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class Event:
    """A single published event.

    Attributes:
        kind: One of ``log``, ``status`` or ``screenshot``.
        source: Publisher name (``nano``, ``faucet`` ...).
        level: Severity for log events (``info``, ``success``, ``warning`` ...).
        message: Human readable text.
        payload: Extra structured data (status snapshot, image bytes).
        timestamp: UTC time of publication.
    """

    kind: str
    source: str
    level: str = "info"
    message: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Simple synchronous event bus.

    A failing subscriber is logged and skipped so one broken consumer never
    stops the workflow that published the event.
    """

    def __init__(self) -> None:
        self.listeners: Dict[str, List[Callable[[Event], None]]] = {}

    def subscribe(self, kind: str, callback: Callable[[Event], None]) -> None:
        self.listeners.setdefault(kind, []).append(callback)
        logger.debug(f"Subscribed to event: {kind}")

    def unsubscribe(self, kind: str, callback: Callable[[Event], None]) -> None:
        if kind in self.listeners:
            try:
                self.listeners[kind].remove(callback)
            except ValueError:
                logger.warning(f"Callback not found for event: {kind}")

    def publish(self, event: Event) -> None:
        for callback in list(self.listeners.get(event.kind, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.kind}: {e}", exc_info=True)

    def log(self, source: str, level: str, message: str, log: Optional[logging.Logger] = None) -> None:
        """Write *message* to the Python logger and publish it as a log event."""
        (log or logger).log(_LEVELS.get(level, logging.INFO), f"[{source}] {message}")
        self.publish(Event(kind=LOG, source=source, level=level, message=message))
