from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from fundwatch.services.errors import FundDataError

log = logging.getLogger(__name__)

T = TypeVar("T")


class FailurePolicy(str, Enum):
    HARD = "hard"  # failure propagates to the caller
    DEGRADE = "degrade"  # failure becomes the operation's empty value


OPERATION_POLICY: Dict[str, FailurePolicy] = {
    "valuation": FailurePolicy.HARD,
    "detail": FailurePolicy.HARD,
    "batch_valuation": FailurePolicy.DEGRADE,
    "history": FailurePolicy.DEGRADE,
    "rank": FailurePolicy.DEGRADE,
    "search": FailurePolicy.DEGRADE,
}


class Status(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    status: Status
    value: Optional[T] = None
    error: Optional[FundDataError] = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(Status.OK, value=value)

    @classmethod
    def empty(cls) -> "Outcome[T]":
        return cls(Status.EMPTY)

    @classmethod
    def failed(cls, error: FundDataError) -> "Outcome[T]":
        return cls(Status.FAILED, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status is Status.OK

    def resolve(self, operation: str, empty: Callable[[], T]) -> T:
        """
        Apply the operation's failure policy: hard operations re-raise the
        captured error, degrading ones return `empty()` instead.
        """
        if self.status is Status.OK:
            return self.value  # type: ignore[return-value]
        if self.status is Status.FAILED and OPERATION_POLICY[operation] is FailurePolicy.HARD:
            raise self.error or FundDataError(f"{operation} failed")
        if self.status is Status.FAILED:
            log.warning("%s degraded to empty result: %s", operation, self.error)
        return empty()


async def attempt(call: Callable[[], Awaitable[Any]]) -> Outcome[Any]:
    """Run one upstream step and capture its result as an Outcome."""
    try:
        value = await call()
    except FundDataError as exc:
        return Outcome.failed(exc)
    except Exception as exc:
        log.exception("unexpected failure in upstream step")
        wrapped = FundDataError(f"{exc.__class__.__name__}: {exc}")
        wrapped.__cause__ = exc
        return Outcome.failed(wrapped)
    if value is None or (isinstance(value, (list, dict)) and not value):
        return Outcome.empty()
    return Outcome.ok(value)
