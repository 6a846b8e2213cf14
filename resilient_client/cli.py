"""Command-line interface for resilient-client."""

import asyncio
import json
import sys
from typing import Any, Optional, Tuple

import click

from .client import ApiClient, create_client
from .errors import ErrorKind, TypedError, USER_MESSAGES, RETRYABLE_KINDS, classify, default_max_retries
from .log import configure_logging, log_error
from .retry import DEFAULT_POLICY, RetryPolicy


@click.group()
@click.version_option(version="0.1.0", prog_name="resilient-client")
@click.option("--base-url", "-b", default="", help="Prefix for relative URLs")
@click.option("--api-key", "-k", envvar="RESILIENT_CLIENT_API_KEY",
              help="Bearer token (or set RESILIENT_CLIENT_API_KEY)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(ctx: click.Context, base_url: str, api_key: Optional[str], verbose: bool) -> None:
    """Resilient HTTP calls with typed errors, retry and circuit breaking."""
    ctx.ensure_object(dict)
    ctx.obj["base_url"] = base_url
    ctx.obj["api_key"] = api_key
    ctx.obj["verbose"] = verbose
    configure_logging(level="DEBUG" if verbose else "ERROR")


def get_client(ctx: click.Context, timeout: float, policy: RetryPolicy) -> ApiClient:
    """Create client from context."""
    return create_client(
        base_url=ctx.obj["base_url"],
        timeout=timeout,
        retry_policy=policy,
        api_key=ctx.obj["api_key"],
        transport=ctx.obj.get("transport"),
    )


def _parse_headers(raw_headers: Tuple[str, ...]) -> dict:
    headers = {}
    for raw in raw_headers:
        key, sep, value = raw.partition(":")
        if not sep:
            raise click.BadParameter(f"Expected 'Name: value', got {raw!r}", param_hint="--header")
        headers[key.strip()] = value.strip()
    return headers


def _fail(ctx: click.Context, error: TypedError) -> None:
    if ctx.obj["verbose"]:
        log_error(error, context="cli")
    click.echo(f"Error [{error.kind.value}]: {error.user_message}", err=True)
    sys.exit(1)


@cli.command()
@click.argument("method", type=click.Choice(["GET", "POST", "PUT", "PATCH", "DELETE"], case_sensitive=False))
@click.argument("url")
@click.option("--data", "-d", help="JSON request body")
@click.option("--header", "-H", "raw_headers", multiple=True, help="Extra header, 'Name: value'")
@click.option("--max-retries", "-r", type=int, default=DEFAULT_POLICY.max_retries, help="Maximum retries")
@click.option("--base-delay", type=float, default=DEFAULT_POLICY.base_delay, help="First retry delay in seconds")
@click.option("--timeout", "-t", type=float, default=30.0, help="Per-attempt timeout in seconds")
@click.option("--no-jitter", is_flag=True, help="Disable random jitter between retries")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
@click.pass_context
def request(ctx: click.Context, method: str, url: str, data: Optional[str], raw_headers: Tuple[str, ...],
            max_retries: int, base_delay: float, timeout: float, no_jitter: bool, json_output: bool) -> None:
    """Perform a single HTTP request.

    Example:
        resilient-client request GET https://api.example.com/photos
        resilient-client -b https://api.example.com request POST /comments -d '{"text": "hi"}'
    """
    try:
        body = json.loads(data) if data else None
    except ValueError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--data") from e

    headers = _parse_headers(raw_headers)
    policy = DEFAULT_POLICY.with_overrides(
        max_retries=max_retries,
        base_delay=base_delay,
        jitter=not no_jitter,
        on_retry=lambda error, attempt: click.echo(
            f"Retry {attempt}/{max_retries} after {error.kind.value}", err=True
        ),
    )

    async def run() -> Any:
        async with get_client(ctx, timeout, policy) as client:
            return await client.request(method.upper(), url, body, headers=headers)

    try:
        result = asyncio.run(run())
    except TypedError as e:
        _fail(ctx, e)
        return

    if json_output or not isinstance(result, str):
        click.echo(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        click.echo(result)


@cli.command()
@click.argument("url")
@click.option("--timeout", "-t", type=float, default=30.0, help="Per-read timeout in seconds")
@click.pass_context
def stream(ctx: click.Context, url: str, timeout: float) -> None:
    """Print a streamed response chunk by chunk.

    Example:
        resilient-client stream https://api.example.com/storybook/progress
    """

    def on_chunk(chunk: Any) -> None:
        if isinstance(chunk, str):
            click.echo(chunk, nl=False)
        else:
            click.echo(json.dumps(chunk, ensure_ascii=False))

    async def run() -> None:
        async with get_client(ctx, timeout, DEFAULT_POLICY) as client:
            await client.stream(url, on_chunk)

    try:
        asyncio.run(run())
    except TypedError as e:
        _fail(ctx, e)


@cli.command(name="classify")
@click.argument("message")
@click.option("--json-output", "-j", is_flag=True, help="Output as JSON")
def classify_command(message: str, json_output: bool) -> None:
    """Show how an error message would be classified.

    Example:
        resilient-client classify "fetch failed: ECONNRESET"
    """
    error = classify(RuntimeError(message))

    if json_output:
        click.echo(json.dumps({
            "kind": error.kind.value,
            "retryable": error.retryable,
            "max_retries": error.max_retries,
            "user_message": error.user_message,
        }, indent=2))
    else:
        click.echo(f"Kind: {error.kind.value}")
        click.echo(f"Retryable: {'yes' if error.retryable else 'no'} (max {error.max_retries})")
        click.echo(f"User message: {error.user_message}")


@cli.command()
def kinds() -> None:
    """List every error kind with its retry defaults and user message.

    Example:
        resilient-client kinds
    """
    for kind in ErrorKind:
        retry = f"retry x{default_max_retries(kind)}" if kind in RETRYABLE_KINDS else "no retry"
        click.echo(f"{kind.value} ({retry})")
        click.echo(f"    {USER_MESSAGES[kind]}")


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
