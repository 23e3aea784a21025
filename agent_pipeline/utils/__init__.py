"""Shared utilities: detached background tasks and cooperative cancellation."""

from agent_pipeline.utils.background import BackgroundTasks
from agent_pipeline.utils.cancellation import (
    CancellationReason,
    CancellationToken,
    cancel_on_disconnect,
)

__all__ = [
    "BackgroundTasks",
    "CancellationReason",
    "CancellationToken",
    "cancel_on_disconnect",
]
