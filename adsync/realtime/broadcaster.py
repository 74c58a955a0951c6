"""AdSync — Realtime Broadcast Capability.

Components that announce data changes receive a `Broadcaster` through their
constructor. The transport behind it (websocket hub, message bus) is not part
of this service; the default implementation only logs.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from adsync.core.logging import get_logger

logger = get_logger("realtime")


class Broadcaster(ABC):
    """Publishes `(event, payload)` notifications to connected clients."""

    @abstractmethod
    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingBroadcaster(Broadcaster):
    async def broadcast(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info(f"📡 {event}", extra={"entity_id": payload.get("id")})

