from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import jwt

from surveygate.errors import InvalidTokenError, TokenExpiredError
from surveygate.utils import ensure_aware, new_short_id, now_utc

TOKEN_TYPE = "survey_invitation"
ALGORITHM = "HS256"
DEFAULT_INVITATION_TTL = timedelta(days=15)


@dataclass(frozen=True)
class EnrollmentTokenPayload:
    survey_id: str
    enrollment_id: str
    owner_id: str
    full_name: str = ""
    email: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class EnrollmentClaims:
    enrollment_id: str
    survey_id: str
    owner_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    not_before: datetime | None = None
    name: str | None = None
    email: str | None = None


TokenGenerator = Callable[[EnrollmentTokenPayload], IssuedToken]


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _timestamp(value: datetime) -> int:
    return int(ensure_aware(value).timestamp())


def _from_timestamp(value: Any) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidTokenError("timestamp claim is malformed")
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _required_str(claims: dict[str, Any], key: str) -> str:
    value = claims.get(key)
    if isinstance(value, bool) or value is None:
        raise InvalidTokenError(f"claim {key} is missing")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidTokenError(f"claim {key} is malformed")
    return value


def _optional_str(claims: dict[str, Any], key: str) -> str | None:
    value = claims.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidTokenError(f"claim {key} is malformed")
    return value


class TokenCodec:
    """Builds and parses HS256-signed enrollment invitation tokens.

    Apart from a random ``jti`` that keeps reissued tokens distinct, the codec
    depends only on the claims, the secret and the supplied clock value. Expiry and not-before are written into the token but not
    enforced by :meth:`parse`; the stored enrollment expiry is the
    authoritative one because owners may extend it without reissuing.
    """

    def __init__(
        self,
        secret: str,
        invitation_ttl: timedelta = DEFAULT_INVITATION_TTL,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self.invitation_ttl = invitation_ttl

    def expiry_for(self, payload: EnrollmentTokenPayload, now: datetime) -> datetime:
        if payload.ends_at is not None:
            return ensure_aware(payload.ends_at)
        return ensure_aware(now) + self.invitation_ttl

    def issue(
        self, payload: EnrollmentTokenPayload, now: datetime | None = None
    ) -> IssuedToken:
        issued_at = ensure_aware(now) if now is not None else now_utc()
        expires_at = self.expiry_for(payload, issued_at)
        if expires_at <= issued_at:
            raise TokenExpiredError(
                f"invitation for enrollment {payload.enrollment_id} would already be expired"
            )

        claims: dict[str, Any] = {
            "sub": str(payload.enrollment_id),
            "survey_id": str(payload.survey_id),
            "owner_id": str(payload.owner_id),
            "type": TOKEN_TYPE,
            "iat": _timestamp(issued_at),
            "exp": _timestamp(expires_at),
            "jti": new_short_id(),
        }
        if payload.starts_at is not None:
            claims["nbf"] = _timestamp(payload.starts_at)
        if payload.full_name:
            claims["name"] = payload.full_name
        if payload.email:
            claims["email"] = payload.email

        token = jwt.encode(claims, self._secret, algorithm=ALGORITHM)
        return IssuedToken(token=token, token_hash=hash_token(token), expires_at=expires_at)

    def parse(self, token: str) -> EnrollmentClaims:
        if not token:
            raise InvalidTokenError("token is empty")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "iat"],
                },
            )
        except jwt.PyJWTError as exc:
            raise InvalidTokenError(str(exc)) from exc

        if claims.get("type") != TOKEN_TYPE:
            raise InvalidTokenError("unexpected token type")

        not_before = claims.get("nbf")
        return EnrollmentClaims(
            enrollment_id=_required_str(claims, "sub"),
            survey_id=_required_str(claims, "survey_id"),
            owner_id=_required_str(claims, "owner_id"),
            token_type=claims["type"],
            issued_at=_from_timestamp(claims["iat"]),
            expires_at=_from_timestamp(claims["exp"]),
            not_before=_from_timestamp(not_before) if not_before is not None else None,
            name=_optional_str(claims, "name"),
            email=_optional_str(claims, "email"),
        )
