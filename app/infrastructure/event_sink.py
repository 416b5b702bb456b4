"""
Infrastructure layer: sinks for group change events.
"""
import logging

from app.domain.models import GroupChangeEvent

logger = logging.getLogger(__name__)


class LoggingEventSink:
    """Writes each event to the application log."""

    async def publish(self, event: GroupChangeEvent) -> None:
        logger.info(
            f"Group {event.change_type}: {event.group_id} "
            f"(cluster={event.cluster_id}, season={event.season_id}, year={event.year})"
        )


class InMemoryEventSink:
    """Keeps published events in a list."""

    def __init__(self):
        self.events: list[GroupChangeEvent] = []

    async def publish(self, event: GroupChangeEvent) -> None:
        self.events.append(event)
