"""HTTP client facade with timeout, retry and typed error mapping."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, BinaryIO, Callable, Dict, Optional, Tuple, Union

import httpx

from .circuit import CircuitBreaker
from .errors import ErrorKind, TypedError, classify, create_error, status_to_kind
from .log import get_logger
from .retry import AI_POLICY, DEFAULT_POLICY, VISION_POLICY, RetryPolicy, with_retry, with_timeout

logger = get_logger("client")

FileInput = Union[bytes, str, Path, BinaryIO]

UPLOAD_CHUNK_SIZE = 64 * 1024


@dataclass
class ClientConfig:
    """Configuration for an ApiClient."""

    base_url: str = ""
    timeout: float = 30.0  # Seconds per attempt
    retry_policy: RetryPolicy = field(default_factory=lambda: DEFAULT_POLICY)
    default_headers: Dict[str, str] = field(default_factory=dict)
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None  # Environment variable name for API key
    circuit_breaker: Optional[CircuitBreaker] = None

    def get_api_key(self) -> Optional[str]:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


def unwrap_envelope(payload: Any) -> Any:
    """
    Unwrap a ``{success, data, error, message}`` response envelope.

    Payloads without a ``success`` key are returned unchanged.

    Raises:
        TypedError: If the envelope reports ``success: false``
    """
    if not isinstance(payload, dict) or "success" not in payload:
        return payload

    if not payload["success"]:
        raise create_error(
            ErrorKind.UNKNOWN_ERROR,
            payload.get("error") or payload.get("message") or "API request failed",
            {"response": payload},
        )

    if payload.get("data") is not None:
        return payload["data"]
    return payload


def decode_chunk(text: str) -> Any:
    """Decode a streamed chunk as JSON, falling back to the raw text."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def _error_text(body: Dict[str, Any]) -> Optional[str]:
    error = body.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    return error or body.get("message")


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def http_error(response: httpx.Response) -> TypedError:
    """
    Convert a non-2xx response to a TypedError.

    The body's ``error``/``message`` becomes the diagnostic message; a
    non-JSON body falls back to the HTTP reason phrase.
    """
    try:
        body = response.json()
    except ValueError:
        body = {"message": response.reason_phrase}
    if not isinstance(body, dict):
        body = {"message": str(body)}

    message = _error_text(body) or f"HTTP {response.status_code}"
    kind, retryable = status_to_kind(response.status_code)

    return create_error(
        kind,
        str(message),
        {"status_code": response.status_code, "response": body},
        retryable=retryable,
        retry_after=_parse_retry_after(response),
    )


def _read_file(file: FileInput, filename: Optional[str]) -> Tuple[bytes, str]:
    if isinstance(file, bytes):
        return file, filename or "upload"
    if isinstance(file, (str, Path)):
        path = Path(file)
        return path.read_bytes(), filename or path.name
    name = getattr(file, "name", None)
    return file.read(), filename or (Path(name).name if isinstance(name, str) else "upload")


async def _iter_with_progress(
    body: bytes,
    on_progress: Optional[Callable[[float], None]],
    chunk_size: int = UPLOAD_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    total = len(body)
    for start in range(0, total, chunk_size):
        chunk = body[start:start + chunk_size]
        yield chunk
        if on_progress:
            on_progress((start + len(chunk)) / total)
    if total == 0 and on_progress:
        on_progress(1.0)


class ApiClient:
    """
    Single entry point for HTTP calls.

    Every call gets merged headers, a per-attempt timeout, retries per the
    effective RetryPolicy, and typed errors. If the config carries a
    circuit breaker, each retried call is routed through it.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or ClientConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.timeout,
            )
        return self._client

    def _build_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.config.base_url}{url}"

    def _build_headers(
        self,
        headers: Optional[Dict[str, str]] = None,
        include_content_type: bool = True,
    ) -> Dict[str, str]:
        merged = {"Content-Type": "application/json"}
        merged.update(self.config.default_headers)

        api_key = self.config.get_api_key()
        if api_key:
            merged["Authorization"] = f"Bearer {api_key}"

        if headers:
            merged.update(headers)

        if not include_content_type:
            merged = {k: v for k, v in merged.items() if k.lower() != "content-type"}
        return merged

    async def _guarded(
        self,
        attempt: Callable[[], Awaitable[Any]],
        retry_policy: Optional[RetryPolicy],
    ) -> Any:
        policy = retry_policy or self.config.retry_policy

        async def run() -> Any:
            return await with_retry(attempt, policy)

        if self.config.circuit_breaker is not None:
            return await self.config.circuit_breaker.execute(run)
        return await run()

    async def _send(
        self,
        method: str,
        url: str,
        data: Any,
        headers: Dict[str, str],
        timeout: float,
    ) -> Any:
        response = await self.client.request(
            method,
            url,
            json=data,
            headers=headers,
            timeout=timeout,
        )

        if not response.is_success:
            raise http_error(response)

        if response.status_code == 204 or not response.content:
            return None

        try:
            payload = response.json()
        except ValueError as e:
            raise create_error(
                ErrorKind.UNKNOWN_ERROR,
                f"Invalid JSON in response: {e}",
                {"status_code": response.status_code, "body": response.text[:500]},
            ) from e

        return unwrap_envelope(payload)

    async def request(
        self,
        method: str,
        url: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Perform an HTTP request.

        Args:
            method: HTTP method
            url: Absolute URL, or path appended to the configured base URL
            data: JSON-serializable request body
            headers: Per-call headers, merged over the defaults
            timeout: Per-attempt timeout override in seconds
            retry_policy: Per-call retry policy override

        Returns:
            Parsed JSON payload (unwrapped from a success envelope), or
            None for an empty body

        Raises:
            TypedError: On any failure, after retries are exhausted
        """
        full_url = self._build_url(url)
        merged_headers = self._build_headers(headers)
        effective_timeout = timeout if timeout is not None else self.config.timeout

        async def attempt() -> Any:
            logger.debug("request_started", method=method, url=full_url)
            return await with_timeout(
                self._send(method, full_url, data, merged_headers, effective_timeout),
                effective_timeout,
            )

        return await self._guarded(attempt, retry_policy)

    async def get(self, url: str, **kwargs: Any) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, data: Any = None, **kwargs: Any) -> Any:
        return await self.request("POST", url, data, **kwargs)

    async def put(self, url: str, data: Any = None, **kwargs: Any) -> Any:
        return await self.request("PUT", url, data, **kwargs)

    async def patch(self, url: str, data: Any = None, **kwargs: Any) -> Any:
        return await self.request("PATCH", url, data, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> Any:
        return await self.request("DELETE", url, **kwargs)

    async def upload_file(
        self,
        url: str,
        file: FileInput,
        filename: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
        field_name: str = "file",
        content_type: str = "application/octet-stream",
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """
        Upload a file as multipart/form-data.

        Args:
            url: Absolute URL, or path appended to the configured base URL
            file: Raw bytes, a filesystem path or a binary file object
            filename: Name sent for the file part
            fields: Extra form fields; non-string values are JSON-encoded
            on_progress: Called with the fraction of the body sent, 0.0-1.0
            field_name: Form field name of the file part
            content_type: MIME type of the file part
            headers: Per-call headers
            timeout: Per-attempt timeout override in seconds
            retry_policy: Per-call retry policy override

        Returns:
            Parsed JSON response

        Raises:
            TypedError: NETWORK_ERROR on transport failure, TIMEOUT_ERROR on
                timeout, UPLOAD_FAILED on a non-2xx response
        """
        full_url = self._build_url(url)
        content, name = _read_file(file, filename)
        form = {
            key: value if isinstance(value, str) else json.dumps(value)
            for key, value in (fields or {}).items()
        }

        # Let httpx produce the multipart body and boundary once
        encoded = httpx.Request(
            "POST",
            full_url,
            files={field_name: (name, content, content_type)},
            data=form,
        )
        body = encoded.read()
        upload_headers = self._build_headers(headers, include_content_type=False)
        upload_headers["Content-Type"] = encoded.headers["Content-Type"]
        upload_headers["Content-Length"] = str(len(body))
        effective_timeout = timeout if timeout is not None else self.config.timeout

        async def send() -> Any:
            try:
                response = await self.client.request(
                    "POST",
                    full_url,
                    content=_iter_with_progress(body, on_progress),
                    headers=upload_headers,
                    timeout=effective_timeout,
                )
            except httpx.TimeoutException as e:
                raise TypedError(ErrorKind.TIMEOUT_ERROR, "Upload timed out", cause=e) from e
            except httpx.TransportError as e:
                raise TypedError(
                    ErrorKind.NETWORK_ERROR, "Upload failed due to network error", cause=e
                ) from e

            if not response.is_success:
                status = response.status_code
                raise create_error(
                    ErrorKind.UPLOAD_FAILED,
                    f"Upload failed with status {status}",
                    {"status_code": status, "body": response.text[:500]},
                    retryable=status >= 500 or status in (408, 429),
                )

            try:
                return response.json()
            except ValueError as e:
                raise classify(e, ErrorKind.UNKNOWN_ERROR) from e

        async def attempt() -> Any:
            logger.debug("upload_started", url=full_url, size=len(body))
            return await with_timeout(send(), effective_timeout)

        return await self._guarded(attempt, retry_policy)

    async def stream(
        self,
        url: str,
        on_chunk: Callable[[Any], None],
        method: str = "GET",
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """
        Consume a chunked response, handing each chunk to ``on_chunk``.

        Chunks that parse as JSON are delivered decoded, anything else as
        raw text. The timeout applies to each network read, not to the
        whole stream. A retried stream starts over from the first chunk.
        """
        full_url = self._build_url(url)
        merged_headers = self._build_headers(headers)
        effective_timeout = timeout if timeout is not None else self.config.timeout

        async def attempt() -> None:
            logger.debug("stream_started", method=method, url=full_url)
            async with self.client.stream(
                method,
                full_url,
                json=data,
                headers=merged_headers,
                timeout=effective_timeout,
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise http_error(response)

                async for text in response.aiter_text():
                    if text:
                        on_chunk(decode_chunk(text))

        await self._guarded(attempt, retry_policy)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


def create_client(
    base_url: str = "",
    timeout: float = 30.0,
    retry_policy: Optional[RetryPolicy] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **config: Any,
) -> ApiClient:
    """
    Create a general-purpose API client.

    Args:
        base_url: Prefix for relative URLs
        timeout: Per-attempt timeout in seconds
        retry_policy: Default retry policy (DEFAULT_POLICY if omitted)
        transport: Custom httpx transport
        **config: Remaining ClientConfig fields

    Returns:
        A new ApiClient
    """
    client_config = ClientConfig(
        base_url=base_url,
        timeout=timeout,
        retry_policy=retry_policy or DEFAULT_POLICY,
        **config,
    )
    return ApiClient(client_config, transport=transport)


def create_ai_client(base_url: str = "", **kwargs: Any) -> ApiClient:
    """Create a client for generative AI calls: longer timeout, fewer retries."""
    kwargs.setdefault("timeout", 60.0)
    kwargs.setdefault("retry_policy", AI_POLICY)
    return create_client(base_url, **kwargs)


def create_vision_client(base_url: str = "", **kwargs: Any) -> ApiClient:
    """Create a client for image analysis calls."""
    kwargs.setdefault("timeout", 45.0)
    kwargs.setdefault("retry_policy", VISION_POLICY)
    return create_client(base_url, **kwargs)
