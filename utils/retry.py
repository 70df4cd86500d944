"""
Retry with per-attempt timeouts and exponential backoff for async operations
"""

import asyncio
import logging
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar('T')


class AttemptTimeout(Exception):
    """A single attempt exceeded its time budget"""

    def __init__(self, timeout: float):
        super().__init__(f"Task attempt timed out after {timeout}s")
        self.timeout = timeout


def _retry_everything(error: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 2
    timeout_per_attempt: float = 10.0
    initial_delay: float = 1.0
    max_delay: float = 5.0
    delay_factor: float = 2.0
    should_retry: Callable[[BaseException], bool] = _retry_everything
    on_retry: Optional[Callable[[int, BaseException], None]] = None

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.timeout_per_attempt <= 0:
            raise ValueError("timeout_per_attempt must be positive")


@dataclass
class Success(Generic[T]):
    value: T
    attempt_errors: List[BaseException] = field(default_factory=list)

    is_success = True

    def get_or_raise(self) -> T:
        return self.value

    def get_or_none(self) -> Optional[T]:
        return self.value


@dataclass
class Failure:
    final_error: BaseException
    attempt_errors: List[BaseException] = field(default_factory=list)

    is_success = False

    def get_or_raise(self):
        raise self.final_error

    def get_or_none(self):
        return None


RetryResult = Union[Success[T], Failure]


async def run_with_retries(policy: RetryPolicy,
                           operation: Callable[[], Awaitable[T]]) -> RetryResult:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Each attempt is bounded by ``policy.timeout_per_attempt``; a timeout counts as
    a failed attempt. Cancellation of the caller is never retried and propagates.
    """
    attempt_errors: List[BaseException] = []
    delay = min(policy.initial_delay, policy.max_delay)

    for attempt in range(1, policy.attempts + 1):
        try:
            value = await asyncio.wait_for(operation(), timeout=policy.timeout_per_attempt)
            return Success(value=value, attempt_errors=attempt_errors)
        except asyncio.TimeoutError:
            error: BaseException = AttemptTimeout(policy.timeout_per_attempt)
        except Exception as e:
            error = e

        attempt_errors.append(error)

        if attempt == policy.attempts or not policy.should_retry(error):
            logger.debug(f"Giving up after attempt {attempt}/{policy.attempts}: {error!r}")
            return Failure(final_error=error, attempt_errors=attempt_errors)

        logger.debug(f"Attempt {attempt}/{policy.attempts} failed: {error!r}. Retrying in {delay:.1f}s")
        if policy.on_retry is not None:
            policy.on_retry(attempt, error)

        await asyncio.sleep(delay)
        delay = min(delay * policy.delay_factor, policy.max_delay)

    # attempts >= 1 guarantees a return inside the loop
    raise AssertionError("unreachable")


def retry_async(policy: RetryPolicy):
    """Decorator form of run_with_retries; raises the final error on failure"""
    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            result = await run_with_retries(policy, lambda: func(*args, **kwargs))
            return result.get_or_raise()
        return wrapper
    return decorator
