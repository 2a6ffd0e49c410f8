"""Redis integration for distributed leases."""

from __future__ import annotations

from .locking import RedisLeaseManager

__all__ = ["RedisLeaseManager"]
