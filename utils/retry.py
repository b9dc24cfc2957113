"""
Retry policy and call results for collaborator calls.

Every upstream call (data API, gamma, CLOB, order submission) goes through one
``RetryPolicy``; the pipeline sees only ``CallResult`` values, never raw
exceptions.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

import aiohttp


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(Enum):
    """Classification of a failed collaborator call."""
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    AUTH = "auth"
    BALANCE = "balance"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.TRANSIENT})

_AUTH_MARKERS = ("unauthorized", "invalid api key", "api key", "forbidden", "invalid signature")
_BALANCE_MARKERS = ("not enough balance", "insufficient", "allowance", "balance is not enough")
_TRANSIENT_MARKERS = ("nonce", "fee", "gas", "timeout", "timed out", "temporarily", "try again", "econnreset")


def error_status(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP-like status code carried by an exception."""
    for attr in ("status", "status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status", None)
    return value if isinstance(value, int) else None


def error_body(exc: BaseException) -> Any:
    """Upstream response body carried by an exception, if any."""
    for attr in ("body", "error_msg", "response_body"):
        value = getattr(exc, attr, None)
        if value is not None:
            return value
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT

    status = error_status(exc)
    message = str(exc).lower()

    if status in (401, 403) or any(marker in message for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH
    if any(marker in message for marker in _BALANCE_MARKERS):
        return ErrorKind.BALANCE
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 429 or (status is not None and status >= 500):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ServerDisconnectedError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    if status is not None and 400 <= status < 500:
        return ErrorKind.REJECTED
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: timeouts and transient upstream errors."""
    return classify_error(exc) in RETRYABLE_KINDS


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with full jitter."""
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0
    retryable: Callable[[BaseException], bool] = is_retryable
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def compute_backoff(self, attempt: int) -> float:
        """Delay before the retry following 1-based ``attempt``."""
        if attempt <= 0:
            return 0.0
        cap = min(max(self.base_delay_s, 0.0) * (2 ** (attempt - 1)), max(self.max_delay_s, 0.0))
        return self.rng.random() * cap

    async def run(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` until it succeeds, a non-retryable error occurs, or the
        attempt budget is spent. The last exception is re-raised.
        """
        attempts = self.max_attempts if self.max_attempts > 0 else 1
        for attempt in range(1, attempts + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt >= attempts or not self.retryable(e):
                    raise
                delay = self.compute_backoff(attempt)
                logger.warning(
                    f"attempt {attempt}/{attempts} of {getattr(func, '__name__', 'call')} failed: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")


NO_RETRY = RetryPolicy(max_attempts=1)


@dataclass
class CallResult(Generic[T]):
    """Outcome of a collaborator call: a value, or a classified failure."""
    ok: bool
    value: Optional[T] = None
    kind: Optional[ErrorKind] = None
    message: str = ""
    status: Optional[int] = None
    body: Any = None

    @classmethod
    def success(cls, value: T) -> "CallResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: BaseException) -> "CallResult[T]":
        return cls(
            ok=False,
            kind=classify_error(exc),
            message=str(exc) or exc.__class__.__name__,
            status=error_status(exc),
            body=error_body(exc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "status": self.status,
            "body": self.body,
        }


async def guarded_call(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    **kwargs: Any,
) -> CallResult[T]:
    """Run a collaborator call under ``policy`` and capture any failure."""
    try:
        value = await (policy or NO_RETRY).run(func, *args, **kwargs)
    except Exception as e:
        logger.debug(f"{getattr(func, '__name__', 'call')} failed: {e}")
        return CallResult.failure(e)
    return CallResult.success(value)
