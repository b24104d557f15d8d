import functools
from datetime import timedelta
from typing import Any, Callable

from loguru import logger


def safe_call(func: Callable[..., Any] | None, *args: Any, **kwargs: Any) -> Any:
    """
    Invoke a user callback (lifecycle hooks, error handlers).

    Exceptions raised by the callback are logged and do not reach the caller:
    a broken hook must not break the resource state machine.
    """
    if func is None:
        return None

    name = getattr(func, "__name__", repr(func))
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.opt(exception=e).error(f"Callback {name} failed: {type(e).__name__}: {e}")
        return None


def logged_job(func):
    """
    Decorator for scheduler jobs: logs failures instead of letting them
    escape into the scheduler.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            logger.error(f"Job {func.__name__} failed: {type(e).__name__}: {e}")

    return wrapper


def parse_cache_control(value: str | None) -> dict[str, str | None]:
    """
    Parse a Cache-Control header into lower-cased directives.

        parse_cache_control("public, max-age=60")
        # => {"public": None, "max-age": "60"}
    """
    directives: dict[str, str | None] = {}
    if not value:
        return directives

    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, _, arg = part.partition("=")
        directives[name.strip().lower()] = arg.strip().strip('"') if arg else None
    return directives


def max_age(directives: dict[str, str | None]) -> timedelta | None:
    """max-age directive as a timedelta, None when absent or invalid."""
    raw = directives.get("max-age")
    if raw is None:
        return None
    try:
        seconds = int(raw)
    except ValueError:
        return None
    return timedelta(seconds=max(seconds, 0))
