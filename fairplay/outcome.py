"""
OUTCOME - Explicit result type for best-effort boundaries

Every storage call on the gameplay path is best-effort. Instead of
swallowing errors silently, the boundary returns:

    Ok(value)         - the call succeeded (value may be None = "no data")
    Skipped(reason)   - the call did not happen (storage unreachable, ...)

so callers can tell "no data" apart from "failed to fetch".
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageError(Exception):
    """Backend unreachable or write rejected."""


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class Skipped:
    reason: str
    ok: bool = False
    value: Any = None


Outcome = Union[Ok[T], Skipped]


def best_effort(label: str, fn: Callable[..., T], *args, **kwargs) -> "Outcome[T]":
    """Run fn and convert storage failures into Skipped.

    Only StorageError is contained here. Programming errors still propagate
    so they surface in tests.
    """
    try:
        return Ok(fn(*args, **kwargs))
    except StorageError as e:
        logger.error(f"{label} skipped: {e}")
        return Skipped(reason=f"{label}: {e}")
