from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from surveygate.enrollment import ensure_token_usable, is_token_allowed
from surveygate.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
)
from surveygate.storage import EnrollmentRepository
from surveygate.tokens import TokenCodec, hash_token
from surveygate.utils import ensure_aware, now_utc

logger = logging.getLogger(__name__)


class AccessResolver:
    """Resolves an enrollment token to the survey and enrollment it grants.

    Lookup goes through the digest of the presented token, so only the most
    recently issued token of an enrollment resolves. Resolution never writes.
    """

    def __init__(
        self,
        enrollments: EnrollmentRepository,
        codec: TokenCodec,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._enrollments = enrollments
        self._codec = codec
        self._clock = clock

    def resolve(self, token: str) -> dict[str, Any]:
        if not token:
            raise InvalidTokenError("token is empty")

        try:
            claims = self._codec.parse(token)
        except InvalidTokenError as exc:
            logger.warning("Token rejected: %s", exc)
            raise

        access = self._enrollments.get_access_by_hash(hash_token(token))
        if access is None:
            logger.warning("Token rejected: no enrollment holds it (enrollment %s)", claims.enrollment_id)
            raise InvalidTokenError("token is not recognised")

        enrollment = access["enrollment"]
        survey = access["survey"]
        if enrollment["id"] != claims.enrollment_id:
            logger.warning(
                "Token rejected: enrollment mismatch expected=%s actual=%s",
                claims.enrollment_id,
                enrollment["id"],
            )
            raise InvalidTokenError("enrollment mismatch")
        if survey["id"] != claims.survey_id or enrollment["survey_id"] != claims.survey_id:
            logger.warning(
                "Token rejected: survey mismatch expected=%s actual=%s",
                claims.survey_id,
                survey["id"],
            )
            raise InvalidTokenError("survey mismatch")

        now = ensure_aware(self._clock())
        expires_at = enrollment.get("token_expires_at")
        if expires_at is not None and now > ensure_aware(expires_at):
            raise TokenExpiredError(f"token for enrollment {enrollment['id']} expired")
        starts_at = survey.get("starts_at")
        if starts_at is not None and now < ensure_aware(starts_at):
            raise TokenNotYetValidError(f"survey {survey['id']} has not started yet")

        if not is_token_allowed(enrollment.get("state")):
            raise InvalidTokenError(f"enrollment {enrollment['id']} is {enrollment.get('state')}")

        return access

    def ensure_usable(self, access: dict[str, Any]) -> None:
        ensure_token_usable(access["enrollment"])

    def resolve_usable(self, token: str) -> dict[str, Any]:
        access = self.resolve(token)
        self.ensure_usable(access)
        return access
