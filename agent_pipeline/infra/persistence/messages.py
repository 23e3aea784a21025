"""
Agent message persistence.

``SqlMessageStore`` implements the ``MessageStore`` contract used by stream
delivery: each completed answer becomes one ``agent_messages`` row.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Column, DateTime, Index, String, Text, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from agent_pipeline.core.exceptions import PipelineException
from agent_pipeline.core.interfaces import MessageRecord, StoredMessage
from agent_pipeline.infra.persistence.database import Base
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

def utcnow():
    return datetime.now(UTC)

class AgentMessage(Base):
    """A completed agent response."""

    __tablename__ = "agent_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(String(64), nullable=False, unique=True)
    agent_id = Column(String(64), nullable=False, index=True)
    conversation_id = Column(String(64), index=True)
    workspace_id = Column(String(64), index=True)
    requester_id = Column(String(64))
    content = Column(Text, nullable=False)
    message_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_conversation_created", "conversation_id", "created_at"),
    )

class MessagePersistenceError(PipelineException):
    def __init__(self, message_id: str, original_error: Exception | None = None):
        super().__init__(
            detail=f"Failed to store message {message_id}: {original_error}",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
        )
        self.message_id = message_id
        self.original_error = original_error

class SqlMessageStore:
    """``MessageStore`` over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def store_message(self, record: MessageRecord) -> StoredMessage:
        row = AgentMessage(
            message_id=record.message_id,
            agent_id=record.agent_id,
            conversation_id=record.conversation_id,
            workspace_id=record.workspace_id,
            requester_id=record.requester_id,
            content=record.content,
            message_metadata=dict(record.metadata),
            created_at=utcnow(),
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("message_store_failed", exc=exc, stored_message_id=record.message_id)
            raise MessagePersistenceError(record.message_id, exc) from exc

        return StoredMessage(id=row.id, message_id=row.message_id, created_at=row.created_at.timestamp())

    async def get_message(self, message_id: str) -> AgentMessage | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentMessage).where(AgentMessage.message_id == message_id)
            )
            return result.scalar_one_or_none()

    async def list_conversation(self, conversation_id: str, limit: int = 50) -> list[AgentMessage]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentMessage)
                .where(AgentMessage.conversation_id == conversation_id)
                .order_by(AgentMessage.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())
