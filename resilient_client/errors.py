"""Typed error taxonomy and best-effort classification of raw failures."""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import httpx


class ErrorKind(str, Enum):
    """Closed set of failure categories."""

    # Upload and file errors
    UPLOAD_FAILED = "UPLOAD_FAILED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"

    # Image analysis
    FACE_NOT_DETECTED = "FACE_NOT_DETECTED"
    VISION_SERVICE_ERROR = "VISION_SERVICE_ERROR"

    # Generative services
    LLM_SERVICE_ERROR = "LLM_SERVICE_ERROR"
    COMMENT_GENERATION_FAILED = "COMMENT_GENERATION_FAILED"
    STORYBOOK_GENERATION_FAILED = "STORYBOOK_GENERATION_FAILED"
    ILLUSTRATION_GENERATION_FAILED = "ILLUSTRATION_GENERATION_FAILED"

    # Audio
    SPEECH_SYNTHESIS_FAILED = "SPEECH_SYNTHESIS_FAILED"
    AUDIO_PLAYBACK_ERROR = "AUDIO_PLAYBACK_ERROR"

    # Connectivity
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

    # Auth
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Persistence
    DATABASE_ERROR = "DATABASE_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"

    # Limits
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.UPLOAD_FAILED: "The photo could not be uploaded. Please try again.",
    ErrorKind.FILE_TOO_LARGE: "The file is too large. Please choose an image of 10MB or less.",
    ErrorKind.INVALID_FILE_TYPE: "This file type is not supported. Please choose a JPEG, PNG or WebP image.",
    ErrorKind.FACE_NOT_DETECTED: "We could not find a face in this photo. Please try one where the face is clearly visible.",
    ErrorKind.VISION_SERVICE_ERROR: "Something went wrong while analyzing the image. Please wait a moment and try again.",
    ErrorKind.LLM_SERVICE_ERROR: "We could not reach the AI service. Please wait a moment and try again.",
    ErrorKind.COMMENT_GENERATION_FAILED: "The comment could not be generated. Please try again.",
    ErrorKind.STORYBOOK_GENERATION_FAILED: "The storybook could not be generated. Please try again.",
    ErrorKind.ILLUSTRATION_GENERATION_FAILED: "The illustration could not be generated. Please try again.",
    ErrorKind.SPEECH_SYNTHESIS_FAILED: "The narration could not be generated. Please try again.",
    ErrorKind.AUDIO_PLAYBACK_ERROR: "Something went wrong while playing the audio.",
    ErrorKind.NETWORK_ERROR: "Please check your internet connection.",
    ErrorKind.TIMEOUT_ERROR: "This is taking too long. Please try again.",
    ErrorKind.AUTHENTICATION_ERROR: "Please sign in to continue.",
    ErrorKind.PERMISSION_DENIED: "You do not have permission to do this.",
    ErrorKind.DATABASE_ERROR: "Something went wrong while saving your data.",
    ErrorKind.STORAGE_ERROR: "Something went wrong while saving the file.",
    ErrorKind.QUOTA_EXCEEDED: "You have reached your usage limit. Please wait a while and try again.",
    ErrorKind.RATE_LIMIT_EXCEEDED: "Too many requests. Please wait a moment and try again.",
    ErrorKind.VALIDATION_ERROR: "Some of the information provided is not valid.",
    ErrorKind.UNKNOWN_ERROR: "An unexpected error occurred.",
}

RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_ERROR,
    ErrorKind.TIMEOUT_ERROR,
    ErrorKind.LLM_SERVICE_ERROR,
    ErrorKind.VISION_SERVICE_ERROR,
    ErrorKind.SPEECH_SYNTHESIS_FAILED,
    ErrorKind.UPLOAD_FAILED,
    ErrorKind.DATABASE_ERROR,
    ErrorKind.STORAGE_ERROR,
})

DEFAULT_MAX_RETRIES = 3
NETWORK_MAX_RETRIES = 5

# HTTP statuses that are worth retrying even though their kind is not
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# Kinds retried when inferred from a raw failure, matching the HTTP 429 case
RETRYABLE_CLASSIFIED_KINDS = frozenset({ErrorKind.RATE_LIMIT_EXCEEDED})


def user_message_for(kind: ErrorKind) -> str:
    """Get the fixed user-facing message for a kind."""
    return USER_MESSAGES[kind]


def default_max_retries(kind: ErrorKind) -> int:
    """Get the default retry ceiling for a kind."""
    return NETWORK_MAX_RETRIES if kind == ErrorKind.NETWORK_ERROR else DEFAULT_MAX_RETRIES


class TypedError(Exception):
    """
    Structured application error.

    Only ``user_message`` is meant for end users. ``message``, ``details``
    and ``cause`` are diagnostics and may contain internals.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Any = None,
        retryable: Optional[bool] = None,
        max_retries: Optional[int] = None,
        cause: Optional[BaseException] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self._kind = ErrorKind(kind)
        self._timestamp = datetime.now(timezone.utc)
        self.message = message
        self.details = details
        self.retryable = self._kind in RETRYABLE_KINDS if retryable is None else retryable
        self.max_retries = default_max_retries(self._kind) if max_retries is None else max_retries
        self.retry_count = 0
        self.cause = cause
        self.retry_after = retry_after
        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self._kind]

    @property
    def can_retry(self) -> bool:
        """True while the error is retryable and under its own ceiling."""
        return self.retryable and self.retry_count < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs and diagnostics."""
        return {
            "kind": self._kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "timestamp": self._timestamp.isoformat(),
            "retryable": self.retryable,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "cause": repr(self.cause) if self.cause is not None else None,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self._kind.value}, message={self.message!r})"

    def __reduce__(self) -> Tuple[Any, ...]:
        return _rebuild_error, (type(self), self.args, dict(self.__dict__))


def _rebuild_error(cls: type, args: Tuple[Any, ...], state: Dict[str, Any]) -> TypedError:
    error = cls.__new__(cls, *args)
    error.__dict__.update(state)
    if error.cause is not None:
        error.__cause__ = error.cause
    return error


def create_error(
    kind: ErrorKind,
    cause: Any = None,
    details: Any = None,
    *,
    retryable: Optional[bool] = None,
    max_retries: Optional[int] = None,
    retry_after: Optional[float] = None,
) -> TypedError:
    """
    Build a TypedError of a known kind.

    Args:
        kind: Failure category
        cause: Original exception, or a plain diagnostic string
        details: Structured context (e.g. a response body)
        retryable: Override the kind's default retryability
        max_retries: Override the kind's default retry ceiling
        retry_after: Server-provided delay hint in seconds

    Returns:
        The constructed TypedError
    """
    if cause is None:
        message = kind.value
    else:
        message = str(cause) or type(cause).__name__
    return TypedError(
        kind,
        message,
        details=details,
        retryable=retryable,
        max_retries=max_retries,
        cause=cause if isinstance(cause, BaseException) else None,
        retry_after=retry_after,
    )


Rule = Tuple[Callable[[BaseException, str], bool], ErrorKind]


def _message_contains(*needles: str) -> Callable[[BaseException, str], bool]:
    def predicate(error: BaseException, message: str) -> bool:
        return any(needle in message for needle in needles)
    return predicate


def _is_instance(*types: type) -> Callable[[BaseException, str], bool]:
    def predicate(error: BaseException, message: str) -> bool:
        return isinstance(error, types)
    return predicate


# Evaluated top to bottom, first match wins. Heuristic, not exhaustive:
# deployments may pass their own list to classify().
CLASSIFICATION_RULES: Tuple[Rule, ...] = (
    (_is_instance(httpx.TimeoutException, asyncio.TimeoutError, TimeoutError), ErrorKind.TIMEOUT_ERROR),
    (_is_instance(httpx.TransportError, ConnectionError), ErrorKind.NETWORK_ERROR),
    (_message_contains("fetch", "network"), ErrorKind.NETWORK_ERROR),
    (_message_contains("timeout", "timed out"), ErrorKind.TIMEOUT_ERROR),
    (_message_contains("permission-denied", "permission denied"), ErrorKind.PERMISSION_DENIED),
    (_message_contains("unauthenticated"), ErrorKind.AUTHENTICATION_ERROR),
    (_message_contains("openai", "gpt"), ErrorKind.LLM_SERVICE_ERROR),
    (_message_contains("vision", "google"), ErrorKind.VISION_SERVICE_ERROR),
    (_message_contains("rate limit", "ratelimit", "too many requests"), ErrorKind.RATE_LIMIT_EXCEEDED),
    (_message_contains("quota"), ErrorKind.QUOTA_EXCEEDED),
)


def classify(
    raw: Any,
    hint_kind: Optional[ErrorKind] = None,
    *,
    details: Any = None,
    retryable: Optional[bool] = None,
    max_retries: Optional[int] = None,
    rules: Optional[Sequence[Rule]] = None,
) -> TypedError:
    """
    Convert any raw failure into a TypedError.

    Already-typed errors are returned unchanged, so classification is
    idempotent. A hint kind bypasses the heuristics entirely.

    Args:
        raw: Exception, string or any other failure value
        hint_kind: Kind to use when the caller already knows it
        details: Structured context attached to the new error
        retryable: Override default retryability
        max_retries: Override default retry ceiling
        rules: Ordered (predicate, kind) pairs replacing CLASSIFICATION_RULES

    Returns:
        A TypedError describing the failure
    """
    if isinstance(raw, TypedError):
        return raw

    overrides = {"retryable": retryable, "max_retries": max_retries}

    if hint_kind is not None:
        return create_error(hint_kind, raw, details, **overrides)

    if isinstance(raw, BaseException):
        message = str(raw).lower()
        for predicate, kind in (CLASSIFICATION_RULES if rules is None else rules):
            if predicate(raw, message):
                if retryable is None and kind in RETRYABLE_CLASSIFIED_KINDS:
                    overrides["retryable"] = True
                return create_error(kind, raw, details, **overrides)

    return create_error(ErrorKind.UNKNOWN_ERROR, raw, details, **overrides)


def status_to_kind(status_code: int) -> Tuple[ErrorKind, Optional[bool]]:
    """
    Map an HTTP error status to a kind.

    Returns:
        (kind, retryable override or None to keep the kind's default)
    """
    if status_code == 400:
        kind = ErrorKind.VALIDATION_ERROR
    elif status_code == 401:
        kind = ErrorKind.AUTHENTICATION_ERROR
    elif status_code == 403:
        kind = ErrorKind.PERMISSION_DENIED
    elif status_code == 429:
        kind = ErrorKind.RATE_LIMIT_EXCEEDED
    else:
        kind = ErrorKind.UNKNOWN_ERROR

    if status_code in RETRYABLE_STATUS_CODES:
        return kind, True
    return kind, None
