"""Relational persistence for completed agent messages."""

from agent_pipeline.infra.persistence.database import (
    Base,
    create_engine,
    create_session_factory,
    init_models,
)
from agent_pipeline.infra.persistence.messages import (
    AgentMessage,
    MessagePersistenceError,
    SqlMessageStore,
)

__all__ = [
    "AgentMessage",
    "Base",
    "MessagePersistenceError",
    "SqlMessageStore",
    "create_engine",
    "create_session_factory",
    "init_models",
]
