from datetime import datetime
from typing import Optional

from sqlalchemy import Column, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel


class ConversationCheckpoint(SQLModel, table=True):
    __tablename__ = "conversation_checkpoints"
    __table_args__ = (
        UniqueConstraint("conversation_id", "checkpoint_ns", "step", name="uq_checkpoint_conversation_step"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: str = Field(index=True)  # LangGraph thread_id
    checkpoint_ns: str = Field(default="")
    step: int = Field(index=True)  # Monotonic per conversation, survives resumptions
    node: str = Field()  # Graph step that produced this snapshot

    checkpoint_id: str = Field(index=True)
    parent_checkpoint_id: Optional[str] = Field(default=None)

    # Serialized with the saver's serde (type tag + payload)
    checkpoint_type: str = Field()
    checkpoint: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    meta_type: str = Field()
    meta: bytes = Field(sa_column=Column(LargeBinary, nullable=False))

    created_at: datetime = Field(default_factory=datetime.utcnow)  # Set on first insert only
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ConversationCheckpointWrite(SQLModel, table=True):
    """Writes of a step that has not produced its checkpoint yet (interrupts, resume values, errors)."""

    __tablename__ = "conversation_checkpoint_writes"
    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "checkpoint_ns", "checkpoint_id", "task_id", "idx", name="uq_checkpoint_write"
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    conversation_id: str = Field(index=True)
    checkpoint_ns: str = Field(default="")
    checkpoint_id: str = Field(index=True)
    task_id: str = Field()
    task_path: str = Field(default="")
    idx: int = Field()
    channel: str = Field()

    value_type: str = Field()
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
