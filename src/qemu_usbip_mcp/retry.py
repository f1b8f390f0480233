"""
Bounded retry with exponential backoff.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


async def with_retry(
    operation: Callable[[], Union[T, Awaitable[T]]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    retry_on: ExceptionTypes = Exception,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    description: str = "operation",
) -> T:
    """Run operation until it succeeds or max_attempts is reached.

    Between attempts k and k+1 the executor sleeps initial_delay * 2**(k-1),
    so the delays are 1s, 2s, 4s, ... for the default initial delay.
    Exceptions outside retry_on propagate immediately.

    Args:
        operation: Zero-argument callable, sync or async
        max_attempts: Total attempts including the first
        initial_delay: Delay in seconds before the second attempt
        retry_on: Exception type(s) that trigger another attempt
        sleep: Async sleep used between attempts (default asyncio.sleep)
        description: Name used in log messages

    Returns:
        The first successful result

    Raises:
        RetryExhausted: every attempt failed with a retryable error
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    retrying = AsyncRetrying(
        sleep=sleep or asyncio.sleep,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=2),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )

    try:
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying {description} "
                        f"(attempt {attempt.retry_state.attempt_number}/{max_attempts})"
                    )
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
                return result
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(f"✗ {description} failed after {max_attempts} attempt(s): {last_error}")
        raise RetryExhausted(e.last_attempt.attempt_number, last_error) from last_error

    # AsyncRetrying either returns from the loop or raises
    raise AssertionError("retry loop exited without a result")


async def probe_port(host: str, port: int, timeout: float = 1.0) -> None:
    """Open and close a TCP connection.

    Raises:
        OSError: the port did not accept a connection in time
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise OSError(f"Connection to {host}:{port} timed out") from e
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def wait_for_port(
    host: str,
    port: int,
    max_attempts: int = 5,
    initial_delay: float = 1.0,
    connect_timeout: float = 1.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    probe: Optional[Callable[[str, int, float], Awaitable[Any]]] = None,
) -> None:
    """Wait until a forwarded host port accepts TCP connections.

    Raises:
        RetryExhausted: the port never became reachable
    """
    probe = probe or probe_port
    await with_retry(
        lambda: probe(host, port, connect_timeout),
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        retry_on=OSError,
        sleep=sleep,
        description=f"connect to {host}:{port}",
    )
    logger.info(f"✓ {host}:{port} is reachable")
