"""
Canonical Type Definitions
===========================

Shared enums used across the cache, dispatch, streaming and telemetry layers.

- CacheCategory: coarse query class selecting cache TTL
- RequestType: kind of inbound agent request
- PriorityLevel: named dispatch tiers (lower value = more urgent)
- StreamState: lifecycle of one streaming session
- AlertSeverity / AlertStatus: alert evaluation outcome
"""

from enum import IntEnum, StrEnum

__all__ = [
    "MAX_PRIORITY_VALUE",
    "MIN_PRIORITY_VALUE",
    "AlertSeverity",
    "AlertStatus",
    "CacheCategory",
    "PriorityLevel",
    "RequestType",
    "StreamState",
    "clamp_priority",
]

class CacheCategory(StrEnum):
    """Query categories, each bound to a TTL and an advisory entry ceiling."""

    STATUS = "status"
    HELP = "help"
    PROJECT = "project"

class RequestType(StrEnum):
    """Inbound request kinds handled by the dispatch queue."""

    SYSTEM_CHECK = "system_check"
    DIRECT_CHAT = "direct_chat"
    STATUS_QUERY = "status_query"
    TASK_UPDATE = "task_update"
    BULK_REPORT = "bulk_report"
    BACKGROUND_TASK = "background_task"

class PriorityLevel(IntEnum):
    """Base dispatch tiers. Lower numeric value = higher urgency."""

    CRITICAL = 1
    HIGH = 20
    NORMAL = 50
    LOW = 80
    BATCH = 100

MIN_PRIORITY_VALUE = int(PriorityLevel.CRITICAL)
MAX_PRIORITY_VALUE = int(PriorityLevel.BATCH)

def clamp_priority(value: float) -> int:
    return max(MIN_PRIORITY_VALUE, min(MAX_PRIORITY_VALUE, int(value)))

class StreamState(StrEnum):
    """Streaming session lifecycle. The last three states are terminal."""

    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamState.COMPLETED, StreamState.ABORTED, StreamState.FAILED)

class AlertSeverity(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"

class AlertStatus(StrEnum):
    FIRING = "firing"
    RESOLVED = "resolved"
