"""SQLAlchemy persistence for execution contexts."""

from __future__ import annotations

from .context_store import SQLAlchemyContextStore
from .exceptions import (
    SessionManagementError,
    SQLAlchemyPersistenceError,
    UnitOfWorkError,
)
from .models import Base, ExecutionContextModel, RunStatusColumn
from .types import JSONType
from .uow import SQLAlchemyUnitOfWork

__all__ = [
    "Base",
    "ExecutionContextModel",
    "JSONType",
    "RunStatusColumn",
    "SQLAlchemyContextStore",
    "SQLAlchemyPersistenceError",
    "SQLAlchemyUnitOfWork",
    "SessionManagementError",
    "UnitOfWorkError",
]
