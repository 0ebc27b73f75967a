"""
Health event audit records.

Health transitions are appended to the ``system_log`` table so operators can see
when the database went away and when it came back. Writing the record is best
effort: the database being written to may be the one that just failed.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dbresilience.database.client import DatabaseClient

logger = logging.getLogger(__name__)

HEALTH_EVENT_SOURCE = "DB_HEALTH_MONITOR"


class HealthEventStatus(Enum):
    """Kind of health transition."""

    RESTORED = "RESTORED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class HealthEvent:
    """One row of the append-only system log."""

    level: str
    message: str
    details: str
    source: str = HEALTH_EVENT_SOURCE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def for_transition(cls, status: HealthEventStatus, details: str) -> "HealthEvent":
        """Build the event for a health transition."""
        return cls(
            level="INFO" if status is HealthEventStatus.RESTORED else "ERROR",
            message=f"Database health status: {status.value}",
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class HealthEventRecorder:
    """Writes HealthEvents to ``system_log``; never raises."""

    INSERT_SQL = (
        "INSERT INTO system_log (id, level, source, message, details, timestamp) "
        "VALUES (%s, %s, %s, %s, %s, %s)"
    )

    def __init__(self, client: "DatabaseClient", timeout: float = 5.0) -> None:
        self.client = client
        self.timeout = timeout
        self.recorded = 0
        self.failed = 0

    async def record(self, event: HealthEvent) -> bool:
        """
        Persist an event.

        Returns:
            True if the row was written, False if the write failed
        """
        try:
            await self.client.execute(
                self.INSERT_SQL,
                event.id,
                event.level,
                event.source,
                event.message,
                event.details,
                event.timestamp,
                timeout=self.timeout,
            )
        except Exception as e:
            self.failed += 1
            logger.error(
                f"Failed to log health event to database: {e} | "
                f"event={json.dumps(event.to_dict())}"
            )
            return False

        self.recorded += 1
        logger.debug(f"Recorded health event {event.id}: {event.message}")
        return True
