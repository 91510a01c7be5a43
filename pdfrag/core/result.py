"""Tagged success/failure values for calls to external services.

Every call site that talks to an embedding model, the vector database or an
LLM goes through ``call_external`` and receives either ``Ok`` or ``Err``.
Callers branch on the tag and pick their own fallback value instead of
catching arbitrary exceptions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar, Union

from pdfrag.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ExternalFailure:
    """Description of a failed external call."""

    operation: str
    kind: Literal["error", "timeout"]
    message: str


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    failure: ExternalFailure

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


async def call_external(
    operation: str,
    factory: Callable[[], Awaitable[T]],
    timeout: float | None,
) -> Ok[T] | Err:
    """
    Await an external call under a timeout and capture any failure.

    Args:
        operation: Name used in logs and in the failure record
        factory: Zero-arg callable producing the awaitable to run
        timeout: Seconds before giving up (None waits forever)

    Returns:
        Ok with the call's value, or Err describing the failure
    """
    try:
        value = await asyncio.wait_for(factory(), timeout=timeout)
        return Ok(value)
    except asyncio.TimeoutError:
        logger.warning(
            f"{operation} timed out after {timeout}s",
            extra={"operation": operation, "timeout": timeout},
        )
        return Err(ExternalFailure(operation, "timeout", f"timed out after {timeout}s"))
    except Exception as e:
        logger.warning(
            f"{operation} failed: {e}",
            extra={"operation": operation, "error_type": type(e).__name__},
        )
        return Err(ExternalFailure(operation, "error", str(e)))


def unwrap_or(result: Ok[Any] | Err, default: Any) -> Any:
    """Return the success value, or ``default`` on failure."""
    if isinstance(result, Ok):
        return result.value
    return default
