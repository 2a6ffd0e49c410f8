"""Adapters implementing the ports (memory, SQLAlchemy, Redis)."""
