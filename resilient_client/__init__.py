"""
resilient-client - Typed errors, retry and circuit breaking for network calls.

This package wraps any async network call with:
- A closed taxonomy of typed errors with fixed user-facing messages
- Exponential backoff with jitter for retryable failures
- A circuit breaker to fail fast on a consistently failing dependency
- An httpx-based API client that applies all of the above

Basic usage:
    from resilient_client import create_client

    async with create_client("https://api.example.com") as client:
        photos = await client.get("/photos")

Handling failures:
    from resilient_client import ErrorKind, TypedError

    try:
        await client.post("/comments", {"text": "..."})
    except TypedError as e:
        show(e.user_message)
        if e.kind == ErrorKind.AUTHENTICATION_ERROR:
            prompt_sign_in()

Wrapping arbitrary operations:
    from resilient_client import CircuitBreaker, RetryPolicy, with_retry

    breaker = CircuitBreaker("database")
    doc = await breaker.execute(
        lambda: with_retry(load_document, RetryPolicy(max_retries=2))
    )
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    ErrorKind,
    TypedError,
    USER_MESSAGES,
    RETRYABLE_KINDS,
    CLASSIFICATION_RULES,
    classify,
    create_error,
    status_to_kind,
    user_message_for,
)

# Retry module
from .retry import (
    RetryPolicy,
    DEFAULT_POLICY,
    AI_POLICY,
    VISION_POLICY,
    compute_delay,
    with_retry,
    retryable,
    retry_with_condition,
    retry_for_kinds,
    with_timeout,
)

# Circuit breaker module
from .circuit import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitOpenError,
    CircuitBreakerRegistry,
    circuit_breaker,
)

# Client
from .client import (
    ApiClient,
    ClientConfig,
    create_client,
    create_ai_client,
    create_vision_client,
)

from .log import configure_logging, get_logger, log_error

__all__ = [
    # Version
    "__version__",
    # Errors
    "ErrorKind",
    "TypedError",
    "USER_MESSAGES",
    "RETRYABLE_KINDS",
    "CLASSIFICATION_RULES",
    "classify",
    "create_error",
    "status_to_kind",
    "user_message_for",
    # Retry
    "RetryPolicy",
    "DEFAULT_POLICY",
    "AI_POLICY",
    "VISION_POLICY",
    "compute_delay",
    "with_retry",
    "retryable",
    "retry_with_condition",
    "retry_for_kinds",
    "with_timeout",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "CircuitOpenError",
    "CircuitBreakerRegistry",
    "circuit_breaker",
    # Client
    "ApiClient",
    "ClientConfig",
    "create_client",
    "create_ai_client",
    "create_vision_client",
    # Logging
    "configure_logging",
    "get_logger",
    "log_error",
]
