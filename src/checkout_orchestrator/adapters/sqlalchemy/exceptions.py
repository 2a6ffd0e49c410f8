"""Exceptions for the SQLAlchemy persistence layer."""

from __future__ import annotations

from ...primitives.exceptions import PersistenceError


class SQLAlchemyPersistenceError(PersistenceError):
    """Base exception for all SQLAlchemy-specific persistence errors."""


class SessionManagementError(SQLAlchemyPersistenceError):
    """Raised when session creation or management fails."""


class UnitOfWorkError(SQLAlchemyPersistenceError):
    """Raised when Unit of Work operations fail."""


__all__: list[str] = [
    "SQLAlchemyPersistenceError",
    "SessionManagementError",
    "UnitOfWorkError",
]
