from __future__ import annotations


class SurveyGateError(Exception):
    """Base class for domain errors raised by services and storage."""


class InvalidTokenError(SurveyGateError):
    pass


class TokenExpiredError(SurveyGateError):
    pass


class TokenUsedError(SurveyGateError):
    pass


class TokenNotYetValidError(SurveyGateError):
    pass


class ScheduleInvalidError(SurveyGateError):
    pass


class StatusTransitionError(SurveyGateError):
    pass


class TemplateSchemaError(SurveyGateError):
    pass


class NotFoundError(SurveyGateError):
    pass


class ParticipantNotFoundError(NotFoundError):
    pass


class ResponseNotFoundError(NotFoundError):
    pass


class ConflictError(SurveyGateError):
    pass


class ParticipantExistsError(ConflictError):
    pass


class ParticipantLimitError(ConflictError):
    pass
