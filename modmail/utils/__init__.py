"""Utility functions for modmail."""

import asyncio
import os
import re
from functools import wraps
from typing import Awaitable, Callable, ParamSpec, TypeVar

from instrukt_ai_logging import get_logger

T = TypeVar("T")
P = ParamSpec("P")
logger = get_logger(__name__)


def bounded_retry(
    max_attempts: int = 3, base_delay: float = 0.5, retry_on: tuple[type[BaseException], ...] = (Exception,)
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator retrying an async collaborator call a fixed number of times.

    Delays grow exponentially (base_delay, 2x, 4x ...). Rate-limit errors that
    carry a `retry_after` attribute wait for that long instead. The last error
    is re-raised once all attempts are spent.

    Args:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the second attempt, in seconds
        retry_on: Exception types that trigger another attempt

    Returns:
        Decorator function
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_attempts - 1:
                        logger.error("%s failed after %d attempts: %s", func.__name__, max_attempts, e)
                        raise

                    retry_after = getattr(e, "retry_after", None)
                    delay = float(retry_after) if isinstance(retry_after, (int, float)) else base_delay * 2**attempt
                    logger.warning(
                        "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                        func.__name__,
                        type(e).__name__,
                        delay,
                        attempt + 1,
                        max_attempts,
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError(f"Retry logic failed unexpectedly in {func.__name__}")

        return wrapper

    return decorator


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values; unknown
    variables are left as-is.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config
