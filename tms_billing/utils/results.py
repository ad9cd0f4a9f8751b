import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a best-effort side call. Failures carry the error, never vanish."""

    ok: bool
    value: T | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "Result[T]":
        return cls(ok=False, error=error)


def attempt(
    logger: logging.Logger,
    action: str,
    func: Callable[..., T],
    *args: Any,
    context: dict[str, Any] | None = None,
    **kwargs: Any,
) -> Result[T]:
    """
    Run `func` and wrap the outcome. A failure is logged with `action` and the
    key=value `context` so it can be reconciled by hand later.
    """
    try:
        return Result.success(func(*args, **kwargs))
    except Exception as exc:
        details = " ".join(f"{key}={value}" for key, value in (context or {}).items())
        logger.warning("%s failed %s error=%s", action, details, exc, exc_info=True)
        return Result.failure(str(exc) or exc.__class__.__name__)
