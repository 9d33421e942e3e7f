from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol

import jwt
from fastapi import HTTPException, Request

from surveygate.config import Settings
from surveygate.tokens import ALGORITHM
from surveygate.utils import now_utc

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"


class AuthProvider(Protocol):
    def resolve_owner(self, request: Request) -> str: ...


class NoAuthProvider:
    def __init__(self, owner_id: str) -> None:
        self.owner_id = owner_id

    def resolve_owner(self, request: Request) -> str:
        return self.owner_id


class TokenAuthProvider:
    def __init__(self, secret: str) -> None:
        self._secret = secret

    def resolve_owner(self, request: Request) -> str:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise HTTPException(status_code=401, detail="missing bearer token")
        try:
            claims = jwt.decode(
                token.strip(),
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
        except jwt.PyJWTError as exc:
            logger.warning("Owner token rejected: %s", exc)
            raise HTTPException(status_code=401, detail="invalid access token") from exc
        if claims.get("type") != ACCESS_TOKEN_TYPE or not claims.get("sub"):
            raise HTTPException(status_code=401, detail="invalid access token")
        return str(claims["sub"])


def issue_owner_token(
    secret: str, owner_id: str, ttl: timedelta, now: datetime | None = None
) -> str:
    issued_at = now or now_utc()
    claims = {
        "sub": owner_id,
        "type": ACCESS_TOKEN_TYPE,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    return jwt.encode(claims, secret, algorithm=ALGORITHM)


def get_auth_provider(settings: Settings) -> AuthProvider:
    if settings.auth_mode == "token":
        return TokenAuthProvider(settings.token_secret)
    return NoAuthProvider(settings.default_owner_id)
