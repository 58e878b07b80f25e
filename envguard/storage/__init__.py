"""Local SQLite store (aiosqlite) and table repositories."""

from .database import Database, Transaction

__all__ = ["Database", "Transaction"]
