"""Bearer token issuing and verification for the tasks API."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

import jwt
from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .models import Identity, User

TOKEN_TTL = timedelta(days=7)
TOKEN_ALGORITHM = "HS256"


class AuthFailureKind(str, Enum):
    MISSING = "missing"
    INVALID = "invalid"


_FAILURE_MESSAGES = {
    AuthFailureKind.MISSING: "Missing auth token",
    AuthFailureKind.INVALID: "Invalid auth token",
}


@dataclass(frozen=True)
class Authenticated:
    identity: Identity


@dataclass(frozen=True)
class AuthFailure:
    kind: AuthFailureKind

    @property
    def message(self) -> str:
        return _FAILURE_MESSAGES[self.kind]


TokenResult = Union[Authenticated, AuthFailure]


class TokenService:
    """Sign and validate session tokens with a server-held secret."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = TOKEN_TTL,
        algorithm: str = TOKEN_ALGORITHM,
    ) -> None:
        if not secret:
            raise ValueError("A token signing secret must be provided")
        self._secret = secret
        self._ttl = ttl
        self._algorithm = algorithm

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self, user: User | Identity) -> str:
        issued_at = datetime.now(timezone.utc)
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "name": user.name,
            "iat": issued_at,
            "exp": issued_at + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: Optional[str]) -> TokenResult:
        """Validate signature and expiry, yielding the embedded identity or a failure."""

        if not token:
            return AuthFailure(AuthFailureKind.MISSING)

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.InvalidTokenError:
            return AuthFailure(AuthFailureKind.INVALID)

        email = payload.get("email")
        name = payload.get("name")
        try:
            user_id = int(payload["sub"])
        except (TypeError, ValueError):
            return AuthFailure(AuthFailureKind.INVALID)
        if not isinstance(email, str) or not isinstance(name, str):
            return AuthFailure(AuthFailureKind.INVALID)

        return Authenticated(Identity(id=user_id, email=email, name=name))


class BearerAuth:
    """Resolve the ``Authorization: Bearer`` header of a request into a :data:`TokenResult`."""

    def __init__(self, tokens: TokenService) -> None:
        self._tokens = tokens
        self._bearer = HTTPBearer(auto_error=False)

    async def __call__(self, request: Request) -> TokenResult:
        credentials: HTTPAuthorizationCredentials | None = await self._bearer(request)  # type: ignore[assignment]
        if credentials is None or credentials.scheme.lower() != "bearer":
            return AuthFailure(AuthFailureKind.MISSING)
        return self._tokens.verify(credentials.credentials.strip())


__all__ = [
    "AuthFailure",
    "AuthFailureKind",
    "Authenticated",
    "BearerAuth",
    "TOKEN_TTL",
    "TokenResult",
    "TokenService",
]
