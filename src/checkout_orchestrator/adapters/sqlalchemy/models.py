"""
SQLAlchemy models for execution-context persistence.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Enum, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .types.json import JSONType


class Base(DeclarativeBase):
    """
    Declarative base for the orchestrator tables.

    Domain steps that write their own entities inside the orchestrator's
    unit of work may declare their models on this base so that one
    ``Base.metadata.create_all`` provisions everything.
    """


class RunStatusColumn(str, enum.Enum):
    INITIALIZED = "INITIALIZED"
    RUNNING = "RUNNING"
    PENDING_EXTERNAL = "PENDING_EXTERNAL"
    COMPLETED = "COMPLETED"
    ROLLED_BACK = "ROLLED_BACK"


class ExecutionContextModel(Base):
    """
    Persists one execution context; step records are embedded as a JSON
    array that is only ever extended.
    """

    __tablename__ = "execution_contexts"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    task_kind: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[RunStatusColumn] = mapped_column(
        Enum(RunStatusColumn), index=True, default=RunStatusColumn.INITIALIZED
    )
    request_params: Mapped[dict[str, Any]] = mapped_column(JSONType)
    entity_ids: Mapped[list[str]] = mapped_column(JSONType)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSONType)
    response: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    failure: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(
        String, nullable=True, unique=True, index=True
    )
    retry_timestamps: Mapped[list[str]] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, default=0)

    __mapper_args__ = {
        "version_id_col": version,
        "version_id_generator": False,
    }
