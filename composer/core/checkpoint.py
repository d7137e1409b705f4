"""
Per-step checkpoint persistence for the composition graph.

`SQLModelCheckpointSaver` is a LangGraph checkpointer over the
`conversation_checkpoints` table. Rows are keyed by
`(conversation_id, checkpoint_ns, step)`; the step counter grows
monotonically for a conversation and defines what "latest" means. Writes are
idempotent upserts: rewriting a key refreshes `updated_at` but keeps the
original `created_at`.

The memory backend is the same saver over a private in-memory SQLite
database, so both backends share one code path.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import (
    WRITES_IDX_MAP,
    BaseCheckpointSaver,
    ChannelVersions,
    Checkpoint,
    CheckpointMetadata,
    CheckpointTuple,
    get_checkpoint_id,
    get_checkpoint_metadata,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from composer.core.state import AgentState, state_values
from composer.models.checkpoint import ConversationCheckpoint, ConversationCheckpointWrite

logger = logging.getLogger(__name__)

INPUT_NODE = "__input__"  # Checkpoint taken when new input is applied
ERROR_CHANNEL = "__error__"


def utcnow() -> datetime:
    """Naive UTC timestamp (matches the DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class CheckpointRecord:
    conversation_id: str
    step: int
    node: str
    state: AgentState
    metadata: Dict[str, Any] = field(default_factory=dict)
    checkpoint_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def _node_label(checkpoint: Checkpoint, metadata: CheckpointMetadata) -> str:
    if metadata.get("source") == "input":
        return INPUT_NODE
    return checkpoint["channel_values"].get("last_node") or metadata.get("source") or "loop"


class SQLModelCheckpointSaver(BaseCheckpointSaver):
    """
    LangGraph checkpointer backed by SQLModel tables.

    Every database call is serialized through one lock: SQLite allows a single
    writer and the in-memory backend shares one connection between sessions.
    """

    def __init__(
        self,
        session_factory=None,
        engine: Optional[AsyncEngine] = None,
        clock: Callable[[], datetime] = utcnow,
        owns_engine: bool = False,
        serde=None,
    ):
        super().__init__(serde=serde)
        if session_factory is None:
            from composer.core.db import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self._engine = engine  # Tables are created on first use when given
        self._owns_engine = owns_engine
        self._clock = clock
        self._ready = engine is None
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        if self._ready:
            return
        async with self._lock:
            if not self._ready:
                async with self._engine.begin() as conn:
                    await conn.run_sync(
                        SQLModel.metadata.create_all,
                        tables=[ConversationCheckpoint.__table__, ConversationCheckpointWrite.__table__],
                    )
                self._ready = True

    async def aclose(self) -> None:
        if self._owns_engine and self._engine is not None:
            await self._engine.dispose()

    # ==========================================
    # BaseCheckpointSaver
    # ==========================================

    async def aget_tuple(self, config: RunnableConfig) -> Optional[CheckpointTuple]:
        await self.setup()
        configurable = config["configurable"]
        query = select(ConversationCheckpoint).where(
            ConversationCheckpoint.conversation_id == str(configurable["thread_id"]),
            ConversationCheckpoint.checkpoint_ns == configurable.get("checkpoint_ns", ""),
        )
        checkpoint_id = get_checkpoint_id(config)
        if checkpoint_id:
            query = query.where(ConversationCheckpoint.checkpoint_id == checkpoint_id)
        else:
            query = query.order_by(ConversationCheckpoint.step.desc()).limit(1)

        async with self._lock:
            async with self._session_factory() as db:
                row = (await db.execute(query)).scalars().first()
                if row is None:
                    return None
                writes = await self._load_writes(db, row)
        return self._to_tuple(row, writes)

    async def alist(
        self,
        config: Optional[RunnableConfig],
        *,
        filter: Optional[Dict[str, Any]] = None,
        before: Optional[RunnableConfig] = None,
        limit: Optional[int] = None,
    ) -> AsyncIterator[CheckpointTuple]:
        await self.setup()
        query = select(ConversationCheckpoint).order_by(
            ConversationCheckpoint.conversation_id, ConversationCheckpoint.step.desc()
        )
        if config is not None:
            configurable = config["configurable"]
            query = query.where(ConversationCheckpoint.conversation_id == str(configurable["thread_id"]))
            if "checkpoint_ns" in configurable:
                query = query.where(ConversationCheckpoint.checkpoint_ns == configurable["checkpoint_ns"])
            if checkpoint_id := get_checkpoint_id(config):
                query = query.where(ConversationCheckpoint.checkpoint_id == checkpoint_id)
        if before is not None and (before_id := get_checkpoint_id(before)):
            query = query.where(ConversationCheckpoint.checkpoint_id < before_id)

        tuples: List[CheckpointTuple] = []
        async with self._lock:
            async with self._session_factory() as db:
                for row in (await db.execute(query)).scalars().all():
                    found = self._to_tuple(row, await self._load_writes(db, row))
                    if filter and not all(found.metadata.get(k) == v for k, v in filter.items()):
                        continue
                    tuples.append(found)
                    if limit is not None and len(tuples) >= limit:
                        break

        for found in tuples:
            yield found

    async def aput(
        self,
        config: RunnableConfig,
        checkpoint: Checkpoint,
        metadata: CheckpointMetadata,
        new_versions: ChannelVersions,
    ) -> RunnableConfig:
        await self.setup()
        configurable = config["configurable"]
        conversation_id = str(configurable["thread_id"])
        checkpoint_ns = configurable.get("checkpoint_ns", "")
        metadata = get_checkpoint_metadata(config, metadata)
        step = metadata.get("step", -1)
        node = _node_label(checkpoint, metadata)

        checkpoint_type, checkpoint_blob = self.serde.dumps_typed(checkpoint)
        meta_type, meta_blob = self.serde.dumps_typed(dict(metadata))
        values = {
            "node": node,
            "checkpoint_id": checkpoint["id"],
            "parent_checkpoint_id": configurable.get("checkpoint_id"),
            "checkpoint_type": checkpoint_type,
            "checkpoint": checkpoint_blob,
            "meta_type": meta_type,
            "meta": meta_blob,
        }

        async with self._lock:
            # Two attempts: a concurrent insert of the same key turns the second into an update
            for attempt in range(2):
                async with self._session_factory() as db:
                    result = await db.execute(
                        select(ConversationCheckpoint).where(
                            ConversationCheckpoint.conversation_id == conversation_id,
                            ConversationCheckpoint.checkpoint_ns == checkpoint_ns,
                            ConversationCheckpoint.step == step,
                        )
                    )
                    row = result.scalar_one_or_none()
                    now = self._clock()

                    if row is None:
                        db.add(
                            ConversationCheckpoint(
                                conversation_id=conversation_id,
                                checkpoint_ns=checkpoint_ns,
                                step=step,
                                created_at=now,
                                updated_at=now,
                                **values,
                            )
                        )
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                        row.updated_at = now

                    try:
                        await db.commit()
                    except IntegrityError:
                        await db.rollback()
                        if attempt == 0:
                            logger.info(f"Checkpoint {conversation_id}#{step} inserted concurrently, retrying as update")
                            continue
                        raise
                    break

        logger.debug(f"Checkpoint written: {conversation_id}#{step} ({node})")
        return {
            "configurable": {
                "thread_id": conversation_id,
                "checkpoint_ns": checkpoint_ns,
                "checkpoint_id": checkpoint["id"],
            }
        }

    async def aput_writes(
        self,
        config: RunnableConfig,
        writes: Sequence[Tuple[str, Any]],
        task_id: str,
        task_path: str = "",
    ) -> None:
        await self.setup()
        configurable = config["configurable"]
        key = {
            "conversation_id": str(configurable["thread_id"]),
            "checkpoint_ns": configurable.get("checkpoint_ns", ""),
            "checkpoint_id": configurable["checkpoint_id"],
            "task_id": task_id,
        }

        async with self._lock:
            async with self._session_factory() as db:
                for idx, (channel, value) in enumerate(writes):
                    slot = WRITES_IDX_MAP.get(channel, idx)
                    if channel == ERROR_CHANNEL:
                        # Exceptions are kept as text; the step is rerun, never replayed
                        value = repr(value)
                    value_type, blob = self.serde.dumps_typed(value)

                    result = await db.execute(
                        select(ConversationCheckpointWrite).where(
                            *(getattr(ConversationCheckpointWrite, k) == v for k, v in key.items()),
                            ConversationCheckpointWrite.idx == slot,
                        )
                    )
                    existing = result.scalar_one_or_none()
                    if existing is None:
                        db.add(
                            ConversationCheckpointWrite(
                                **key, task_path=task_path, idx=slot, channel=channel, value_type=value_type, value=blob
                            )
                        )
                    elif slot < 0:
                        # Special channels (error, interrupt, resume) are replaced; task writes are stored once
                        existing.channel = channel
                        existing.task_path = task_path
                        existing.value_type = value_type
                        existing.value = blob
                await db.commit()

    # ==========================================
    # Conversation view
    # ==========================================

    async def get_latest(self, conversation_id: str) -> Optional[CheckpointRecord]:
        records = await self._records(conversation_id, latest_only=True)
        return records[0] if records else None

    async def history(self, conversation_id: str) -> List[CheckpointRecord]:
        """Every checkpoint of the conversation, oldest first."""
        return await self._records(conversation_id)

    async def _records(self, conversation_id: str, latest_only: bool = False) -> List[CheckpointRecord]:
        await self.setup()
        query = select(ConversationCheckpoint).where(
            ConversationCheckpoint.conversation_id == conversation_id,
            ConversationCheckpoint.checkpoint_ns == "",
        )
        if latest_only:
            query = query.order_by(ConversationCheckpoint.step.desc()).limit(1)
        else:
            query = query.order_by(ConversationCheckpoint.step.asc())

        async with self._lock:
            async with self._session_factory() as db:
                rows = (await db.execute(query)).scalars().all()
        return [self._to_record(row) for row in rows]

    # ==========================================
    # Row mapping
    # ==========================================

    async def _load_writes(self, db, row: ConversationCheckpoint) -> List[Tuple[str, str, Any]]:
        result = await db.execute(
            select(ConversationCheckpointWrite)
            .where(
                ConversationCheckpointWrite.conversation_id == row.conversation_id,
                ConversationCheckpointWrite.checkpoint_ns == row.checkpoint_ns,
                ConversationCheckpointWrite.checkpoint_id == row.checkpoint_id,
            )
            .order_by(
                ConversationCheckpointWrite.task_path,
                ConversationCheckpointWrite.task_id,
                ConversationCheckpointWrite.idx,
            )
        )
        return [
            (w.task_id, w.channel, self.serde.loads_typed((w.value_type, w.value))) for w in result.scalars().all()
        ]

    def _to_tuple(self, row: ConversationCheckpoint, writes: List[Tuple[str, str, Any]]) -> CheckpointTuple:
        base = {"thread_id": row.conversation_id, "checkpoint_ns": row.checkpoint_ns}
        return CheckpointTuple(
            config={"configurable": {**base, "checkpoint_id": row.checkpoint_id}},
            checkpoint=self.serde.loads_typed((row.checkpoint_type, row.checkpoint)),
            metadata=self.serde.loads_typed((row.meta_type, row.meta)),
            parent_config=(
                {"configurable": {**base, "checkpoint_id": row.parent_checkpoint_id}}
                if row.parent_checkpoint_id
                else None
            ),
            pending_writes=writes,
        )

    def _to_record(self, row: ConversationCheckpoint) -> CheckpointRecord:
        checkpoint = self.serde.loads_typed((row.checkpoint_type, row.checkpoint))
        return CheckpointRecord(
            conversation_id=row.conversation_id,
            step=row.step,
            node=row.node,
            state=state_values(checkpoint.get("channel_values") or {}),
            metadata=self.serde.loads_typed((row.meta_type, row.meta)),
            checkpoint_id=row.checkpoint_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def create_checkpoint_saver(backend: Optional[str] = None) -> SQLModelCheckpointSaver:
    from composer.core.config import settings

    backend = (backend or settings.CHECKPOINT_BACKEND).lower()
    if backend == "memory":
        engine = create_async_engine(
            "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
        session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        return SQLModelCheckpointSaver(session_factory, engine=engine, owns_engine=True)
    if backend == "sql":
        from composer.core.db import AsyncSessionLocal, engine

        return SQLModelCheckpointSaver(AsyncSessionLocal, engine=engine)
    raise ValueError(f"Unknown checkpoint backend: {backend}")
