"""Database engine, sessions and ORM models."""

__all__ = []
