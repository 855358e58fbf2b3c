"""Error taxonomy shared by the challenge service and the widget client."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INSUFFICIENT_TELEMETRY = "InsufficientTelemetry"
    CONTENT_STORE_UNAVAILABLE = "ContentStoreUnavailable"
    NO_TEMPLATE_FOR_TYPE = "NoTemplateForType"
    INCORRECT_ANSWER = "IncorrectAnswer"
    BEHAVIOR_INCONCLUSIVE = "BehaviorInconclusive"
    NETWORK_FAILURE = "NetworkFailure"
    CHALLENGE_NOT_FOUND = "ChallengeNotFound"
    INVALID_CHALLENGE_TYPE = "InvalidChallengeType"
    UNAUTHORIZED = "Unauthorized"


class CaptchaError(Exception):
    """Base class for errors raised by the challenge core."""

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class InvalidChallengeType(CaptchaError, ValueError):
    kind = ErrorKind.INVALID_CHALLENGE_TYPE


class ContentStoreUnavailable(CaptchaError):
    """The content store errored or did not answer within its timeout."""

    kind = ErrorKind.CONTENT_STORE_UNAVAILABLE


class ChallengeNotFound(CaptchaError):
    kind = ErrorKind.CHALLENGE_NOT_FOUND


class Unauthorized(CaptchaError):
    kind = ErrorKind.UNAUTHORIZED


class NetworkFailure(CaptchaError):
    """A client call failed at the transport level.

    ``retryable`` is False for failures that another attempt cannot fix
    (e.g. a rejected API key).
    """

    kind = ErrorKind.NETWORK_FAILURE

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
