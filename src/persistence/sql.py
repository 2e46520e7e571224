"""SQLAlchemy async conversation store.

Usage
-----

- Create an async engine with ``create_engine``.
- Create tables with ``create_all``.
- Create a session factory with ``create_sessionmaker``.
- Build the store with ``SqlConversationStore(session_factory)``.

Transaction model
-----------------

Each store method opens an ``AsyncSession``, performs its operation, and
commits. Every appended message is durable when ``append`` returns, so a
crash mid-turn leaves a prefix of the turn recorded.
"""

import re
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from persistence.base import ConversationStore
from persistence.models import (
    Base,
    ConversationRow,
    MessageRow,
    StateCheckpointRow,
    ToolExecutionRow,
)
from shared.errors import ConversationNotFoundError, PersistenceError
from shared.logging import get_logger
from shared.models import (
    AssistantMessage,
    CapabilityCall,
    Conversation,
    ExecutionStatus,
    Message,
    ToolExecutionRecord,
    ToolMessage,
    UserMessage,
    utc_now,
)

logger = get_logger(__name__)


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Postgres URLs are normalized to the asyncpg driver and plain SQLite URLs
    to aiosqlite.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    url = re.sub(r"^sqlite://", "sqlite+aiosqlite://", url, count=1)
    return create_async_engine(url, echo=echo)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` that keeps objects usable after commit."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables for the current ORM metadata."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def message_to_row(conversation_id: str, message: Message) -> MessageRow:
    """Map a message variant to its row; variant fields go into ``metadata``."""
    meta: dict[str, Any] = {}
    if isinstance(message, AssistantMessage) and message.calls:
        meta["tool_calls"] = [call.model_dump() for call in message.calls]
    elif isinstance(message, ToolMessage):
        meta["tool_call_id"] = message.call_id
        meta["name"] = message.capability_name
        meta["is_error"] = message.is_error

    return MessageRow(
        id=message.id,
        conversation_id=conversation_id,
        role=message.role,
        content=message.content,
        meta=meta,
        created_at=message.created_at,
    )


def row_to_message(row: MessageRow) -> Message:
    """Rebuild the message variant stored in a row."""
    meta = row.meta or {}

    if row.role == "assistant":
        return AssistantMessage(
            id=row.id,
            content=row.content,
            created_at=row.created_at,
            calls=[CapabilityCall(**call) for call in meta.get("tool_calls") or []],
        )
    if row.role == "tool":
        return ToolMessage(
            id=row.id,
            content=row.content,
            created_at=row.created_at,
            call_id=meta.get("tool_call_id", ""),
            capability_name=meta.get("name", ""),
            is_error=bool(meta.get("is_error", False)),
        )
    if row.role == "user":
        return UserMessage(id=row.id, content=row.content, created_at=row.created_at)

    raise PersistenceError(f"Unknown message role in row {row.id}: {row.role}")


def _row_to_conversation(row: ConversationRow) -> Conversation:
    return Conversation(
        id=row.id,
        user_id=row.user_id,
        title=row.title,
        state=row.state or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_record(row: ToolExecutionRow) -> ToolExecutionRecord:
    return ToolExecutionRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        call_id=row.call_id,
        tool_name=row.tool_name,
        provider_id=row.provider_id,
        input=row.input or {},
        output=row.output,
        error=row.error,
        status=ExecutionStatus(row.status),
        duration_ms=row.duration_ms,
        created_at=row.created_at,
    )


class SqlConversationStore(ConversationStore):
    """SQL implementation of ``ConversationStore``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None
    ) -> None:
        """
        Args:
            session_factory: Factory for ``AsyncSession`` objects
            engine: Engine to dispose on ``close``; left open when None
        """
        self.session_factory = session_factory
        self._engine = engine

    @classmethod
    async def from_url(cls, db_url: str, echo: bool = False) -> "SqlConversationStore":
        """Create engine, tables and store in one step."""
        engine = create_engine(db_url, echo=echo)
        try:
            await create_all(engine)
        except SQLAlchemyError as e:
            await engine.dispose()
            raise PersistenceError(f"Cannot initialize database: {e}") from e
        return cls(create_sessionmaker(engine), engine=engine)

    async def _require(self, session: AsyncSession, conversation_id: str) -> ConversationRow:
        row = await session.get(ConversationRow, conversation_id)
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return row

    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None
    ) -> Conversation:
        conversation = Conversation(user_id=user_id)
        if title:
            conversation.title = title

        try:
            async with self.session_factory() as s:
                s.add(ConversationRow(
                    id=conversation.id,
                    user_id=conversation.user_id,
                    title=conversation.title,
                    state=conversation.state,
                    created_at=conversation.created_at,
                    updated_at=conversation.updated_at,
                ))
                await s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot create conversation: {e}") from e

        logger.info("Conversation created", conversation_id=conversation.id, user=user_id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            async with self.session_factory() as s:
                row = await s.get(ConversationRow, conversation_id)
                return _row_to_conversation(row) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot load conversation: {e}") from e

    async def append(self, conversation_id: str, message: Message) -> None:
        try:
            async with self.session_factory() as s:
                conversation = await self._require(s, conversation_id)
                s.add(message_to_row(conversation_id, message))
                conversation.updated_at = utc_now()
                await s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot append message: {e}") from e

    async def load_recent(self, conversation_id: str, limit: int) -> list[Message]:
        try:
            async with self.session_factory() as s:
                await self._require(s, conversation_id)
                if limit <= 0:
                    return []
                stmt = (
                    select(MessageRow)
                    .where(MessageRow.conversation_id == conversation_id)
                    .order_by(MessageRow.seq.desc())
                    .limit(limit)
                )
                rows = list((await s.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot load messages: {e}") from e

        # Most recent first from the query; callers want oldest to newest
        rows.reverse()
        return [row_to_message(row) for row in rows]

    async def load_all(self, conversation_id: str) -> list[Message]:
        try:
            async with self.session_factory() as s:
                await self._require(s, conversation_id)
                stmt = (
                    select(MessageRow)
                    .where(MessageRow.conversation_id == conversation_id)
                    .order_by(MessageRow.seq)
                )
                rows = (await s.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot load messages: {e}") from e

        return [row_to_message(row) for row in rows]

    async def record_tool_execution(
        self,
        conversation_id: str,
        record: ToolExecutionRecord
    ) -> None:
        try:
            async with self.session_factory() as s:
                await self._require(s, conversation_id)
                s.add(ToolExecutionRow(
                    id=record.id,
                    conversation_id=conversation_id,
                    call_id=record.call_id,
                    tool_name=record.tool_name,
                    provider_id=record.provider_id,
                    input=record.input,
                    output=record.output,
                    error=record.error,
                    status=record.status.value,
                    duration_ms=record.duration_ms,
                    created_at=record.created_at,
                ))
                await s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot record tool execution: {e}") from e

    async def list_tool_executions(self, conversation_id: str) -> list[ToolExecutionRecord]:
        try:
            async with self.session_factory() as s:
                await self._require(s, conversation_id)
                stmt = (
                    select(ToolExecutionRow)
                    .where(ToolExecutionRow.conversation_id == conversation_id)
                    .order_by(ToolExecutionRow.seq)
                )
                rows = (await s.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot load tool executions: {e}") from e

        return [_row_to_record(row) for row in rows]

    async def checkpoint(
        self,
        conversation_id: str,
        state: dict[str, Any],
        step: int
    ) -> None:
        now = utc_now()
        try:
            async with self.session_factory() as s:
                conversation = await self._require(s, conversation_id)
                conversation.state = dict(state)
                conversation.updated_at = now
                s.add(StateCheckpointRow(
                    conversation_id=conversation_id,
                    state=dict(state),
                    step=step,
                    created_at=now,
                ))
                await s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot checkpoint state: {e}") from e

    async def latest_checkpoint(
        self,
        conversation_id: str
    ) -> Optional[tuple[dict[str, Any], int]]:
        try:
            async with self.session_factory() as s:
                await self._require(s, conversation_id)
                stmt = (
                    select(StateCheckpointRow)
                    .where(StateCheckpointRow.conversation_id == conversation_id)
                    .order_by(StateCheckpointRow.seq.desc())
                    .limit(1)
                )
                row = (await s.execute(stmt)).scalars().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot load checkpoint: {e}") from e

        if row is None:
            return None
        return row.state or {}, row.step

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
