"""Persistence module for users, messages and typing state (DuckDB)."""

from .schemas import OnlineUser, PersistResult, UserRecord
from .service import ChatStore, RegistrationConflict, persist

__all__ = [
    "ChatStore",
    "OnlineUser",
    "PersistResult",
    "RegistrationConflict",
    "UserRecord",
    "persist",
]
