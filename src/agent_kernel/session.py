# session.py
# Conversation persistence and the optimistic-concurrency gate.
#
# A conversation row carries an immutable agent snapshot plus a `version`.
# send_message() claims the conversation with a compare-and-increment on that
# version before the agent runs; a second caller holding the same expected
# version loses the UPDATE and gets VersionConflictError. No lock is held
# across the LLM round-trip.
#
# Messages are append-only rows keyed by (conversation_id, seq), seq strictly
# increasing per conversation.

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from agent_kernel.config import KernelSettings
from agent_kernel.errors import SessionNotFoundError, VersionConflictError
from agent_kernel.models import AgentResult, ExecutionContext, TerminationReason, ToolChoice

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Models ----


class ConversationSession(Base):
    __tablename__ = "conversation_session"

    conversation_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agent_type: Mapped[str] = mapped_column(String(64), default="react")
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_step_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    max_steps: Mapped[int] = mapped_column(Integer, default=15)
    duplicate_threshold: Mapped[int] = mapped_column(Integer, default=3)
    empty_threshold: Mapped[int] = mapped_column(Integer, default=2)
    tool_choice: Mapped[str] = mapped_column(String(16), default=ToolChoice.AUTO.value)
    enabled_source_ids: Mapped[list] = mapped_column(JSON, default=list)
    knowledge_enabled: Mapped[bool] = mapped_column(default=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class ConversationMessage(Base):
    __tablename__ = "conversation_message"
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_message_seq"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversation_session.conversation_id"), index=True
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(16))
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tool_call_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tool_calls: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_turn(self) -> dict:
        turn: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_call_id:
            turn["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            turn["tool_calls"] = self.tool_calls
        return turn


# ---- Engine ----


def create_engine(url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---- Repositories ----


class SessionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, record: ConversationSession) -> ConversationSession:
        self.db.add(record)
        return record

    async def get(self, conversation_id: str) -> Optional[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).where(ConversationSession.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def list_all(self) -> Sequence[ConversationSession]:
        result = await self.db.execute(
            select(ConversationSession).order_by(ConversationSession.created_at, ConversationSession.conversation_id)
        )
        return result.scalars().all()

    async def try_bump_version(self, conversation_id: str, expected_version: int) -> bool:
        """Atomically increment the version iff it still equals `expected_version`."""
        result = await self.db.execute(
            update(ConversationSession)
            .where(
                ConversationSession.conversation_id == conversation_id,
                ConversationSession.version == expected_version,
            )
            .values(version=ConversationSession.version + 1, updated_at=_utcnow())
        )
        return result.rowcount == 1


class MessageRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def last_seq(self, conversation_id: str) -> int:
        result = await self.db.execute(
            select(func.max(ConversationMessage.seq)).where(ConversationMessage.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none() or 0

    async def list_recent(self, conversation_id: str, limit: int | None = None) -> list[ConversationMessage]:
        """The latest `limit` messages (all when limit is None), oldest first."""
        stmt = (
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.seq.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def append(self, conversation_id: str, turns: list[dict]) -> int:
        seq = await self.last_seq(conversation_id)
        for turn in turns:
            seq += 1
            self.db.add(
                ConversationMessage(
                    conversation_id=conversation_id,
                    seq=seq,
                    role=turn.get("role", "user"),
                    content=turn.get("content"),
                    tool_call_id=turn.get("tool_call_id"),
                    tool_calls=turn.get("tool_calls"),
                )
            )
        return len(turns)


# ---- Service ----


class AgentRunner(Protocol):
    async def execute(self, ctx: ExecutionContext, history: list[dict] | None = None) -> AgentResult: ...


class SendMessageResponse(BaseModel):
    conversation_id: str
    success: bool
    finished: bool
    answer: str | None = None
    termination_reason: TerminationReason | None = None
    version: int = Field(..., description="Session version after this request claimed it.")
    messages: list[dict[str, Any]] = Field(default_factory=list)
    error: str | None = None
    persisted: bool = Field(True, description="False when the run's messages could not be stored.")
    result: AgentResult = Field(..., description="Full run result, step trail included.")


class SessionService:
    """
    Request boundary for conversations.

    Example:
        service = SessionService(factory, runner, settings)
        record = await service.create_session(enabled_source_ids=["weather"])
        reply = await service.send_message(record.conversation_id, "Hi", expected_version=0)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        runner: AgentRunner,
        settings: KernelSettings | None = None,
    ) -> None:
        self._factory = session_factory
        self._runner = runner
        self._settings = settings or KernelSettings()

    async def create_session(
        self,
        conversation_id: str | None = None,
        agent_type: str = "react",
        system_prompt: str | None = None,
        next_step_prompt: str | None = None,
        max_steps: int | None = None,
        duplicate_threshold: int | None = None,
        empty_threshold: int | None = None,
        tool_choice: ToolChoice | None = None,
        enabled_source_ids: list[str] | None = None,
        knowledge_enabled: bool = False,
    ) -> ConversationSession:
        """Snapshot the agent definition. Unset fields take the settings defaults."""
        s = self._settings
        record = ConversationSession(
            conversation_id=conversation_id or str(uuid.uuid4()),
            agent_type=agent_type,
            system_prompt=system_prompt if system_prompt is not None else s.system_prompt,
            next_step_prompt=next_step_prompt if next_step_prompt is not None else s.next_step_prompt,
            max_steps=max_steps or s.max_steps,
            duplicate_threshold=duplicate_threshold or s.duplicate_threshold,
            empty_threshold=empty_threshold or s.empty_threshold,
            tool_choice=(tool_choice or s.tool_choice).value,
            enabled_source_ids=list(enabled_source_ids or []),
            knowledge_enabled=knowledge_enabled,
            version=0,
        )
        async with self._factory() as db:
            async with db.begin():
                await SessionRepository(db).create(record)
        logger.info("Created session %s (agent=%s)", record.conversation_id, agent_type)
        return record

    async def list_sessions(self) -> Sequence[ConversationSession]:
        async with self._factory() as db:
            return await SessionRepository(db).list_all()

    async def get_session(self, conversation_id: str) -> ConversationSession:
        async with self._factory() as db:
            record = await SessionRepository(db).get(conversation_id)
        if record is None:
            raise SessionNotFoundError(conversation_id)
        return record

    async def get_messages(self, conversation_id: str) -> list[dict]:
        async with self._factory() as db:
            rows = await MessageRepository(db).list_recent(conversation_id)
        return [row.to_turn() for row in rows]

    async def load_for_processing(
        self, conversation_id: str, expected_version: int | None = None
    ) -> tuple[ConversationSession, int]:
        """
        Claim the conversation. Returns the snapshot and the new version.

        Raises SessionNotFoundError or VersionConflictError; nothing is
        written on either path.
        """
        record = await self.get_session(conversation_id)
        expected = record.version if expected_version is None else expected_version

        async with self._factory() as db:
            async with db.begin():
                claimed = await SessionRepository(db).try_bump_version(conversation_id, expected)
        if not claimed:
            logger.warning("Version conflict on %s (expected %d)", conversation_id, expected)
            raise VersionConflictError(conversation_id, expected)
        return record, expected + 1

    async def send_message(
        self, conversation_id: str, content: str, expected_version: int | None = None
    ) -> SendMessageResponse:
        record, version = await self.load_for_processing(conversation_id, expected_version)

        async with self._factory() as db:
            rows = await MessageRepository(db).list_recent(conversation_id, self._settings.history_window)
        history = [row.to_turn() for row in rows]

        ctx = self._context_for(record, content)
        result = await self._runner.execute(ctx, history)

        # Failed runs still persist what they appended.
        error = result.error
        persisted = True
        try:
            async with self._factory() as db:
                async with db.begin():
                    await MessageRepository(db).append(conversation_id, result.messages)
        except SQLAlchemyError as exc:
            # Seq taken by a concurrent run. The result is returned unpersisted.
            logger.exception("Persisting messages for %s failed", conversation_id)
            persisted = False
            error = error or f"Failed to persist messages: {type(exc).__name__}"
        else:
            logger.info(
                "Conversation %s: %d message(s) persisted, reason=%s",
                conversation_id, len(result.messages),
                result.termination_reason.value if result.termination_reason else None,
            )

        return SendMessageResponse(
            conversation_id=conversation_id,
            success=result.success,
            finished=result.final_state.is_terminal,
            answer=result.answer,
            termination_reason=result.termination_reason,
            version=version,
            messages=result.messages,
            error=error,
            persisted=persisted,
            result=result,
        )

    def _context_for(self, record: ConversationSession, content: str) -> ExecutionContext:
        return ExecutionContext(
            conversation_id=record.conversation_id,
            user_request=content,
            max_steps=record.max_steps,
            duplicate_threshold=record.duplicate_threshold,
            empty_threshold=record.empty_threshold,
            enabled_source_ids=list(record.enabled_source_ids or []),
            knowledge_enabled=record.knowledge_enabled,
            tool_choice=ToolChoice(record.tool_choice),
            system_prompt=record.system_prompt,
            next_step_prompt=record.next_step_prompt,
            metadata={"agent_type": record.agent_type},
        )
