"""Explicitly constructed dependencies shared by the request handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import Settings
from .database import Database
from .security import TokenService

logger = logging.getLogger("taskmanager.context")


@dataclass(frozen=True)
class AppContext:
    settings: Settings
    database: Database
    tokens: TokenService

    @classmethod
    def from_settings(cls, settings: Settings, *, database: Database | None = None) -> "AppContext":
        """Open the database pool and token signer described by ``settings``."""

        if settings.uses_default_secret:
            logger.warning(
                "JWT_SECRET is not set; tokens are signed with the insecure development"
                " default. Override it for any real deployment."
            )

        db = database or Database(settings.database_path, pool_size=settings.pool_size)
        return cls(settings=settings, database=db, tokens=TokenService(settings.jwt_secret))


__all__ = ["AppContext"]
