"""Domain models for the task manager service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a registered account stored in the tasks database."""

    id: int
    name: str
    email: str
    created_at: datetime


@dataclass(frozen=True)
class Identity:
    """Caller identity recovered from a verified bearer token."""

    id: int
    email: str
    name: str


@dataclass(frozen=True)
class Task:
    """A single task row. ``user_id`` is ``None`` when authentication is disabled."""

    id: int
    title: str
    description: str
    status: str
    created_at: datetime
    updated_at: datetime
    user_id: Optional[int] = None


__all__ = ["Identity", "Task", "User"]
