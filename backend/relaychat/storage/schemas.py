"""Pydantic schemas for the persistence layer.

These schemas are used by:
    - ChatStore: DuckDB storage layer
    - auth router: registration / login responses
    - chat core: recipient lookup and persistence results
"""
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class UserRecord(BaseModel):
    """A registered user as stored in the users table.

    Attributes:
        id: Auto-incrementing user id.
        username: Unique login name (doubles as display name).
        phoneNumber: Unique phone number, usable as an alternate login.
        passwordHash: Encoded PBKDF2 hash (never sent to clients).
        createdAt: Registration time (UTC).
        lastLogin: Last successful login (UTC), if any.
        isOnline: Persisted presence flag (best-effort, may lag).
        connectionId: Connection id recorded by the last setUserOnline.
    """
    id: int
    username: str
    phoneNumber: str
    passwordHash: str = Field(default="", exclude=True)
    createdAt: Optional[datetime] = None
    lastLogin: Optional[datetime] = None
    isOnline: bool = False
    connectionId: Optional[str] = None


class OnlineUser(BaseModel):
    id: int
    username: str
    isOnline: bool = True
    lastLogin: Optional[datetime] = None


class PersistResult(BaseModel, Generic[T]):
    """Outcome of a persistence call on the live delivery path.

    Failures are carried as data so the caller can log them and continue;
    they are never raised into the fan-out.
    """
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "PersistResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "PersistResult":
        return cls(ok=False, error=error)
