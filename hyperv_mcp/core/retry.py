"""Bounded polling for remote state that converges asynchronously.

Hyper-V removal and creation calls return before their effect is visible
(a deleted folder can linger while a worker process holds a handle, a
planned VM can outlive its realized twin). Every "did the remote side
converge yet" check in the migration code goes through ``assert_until`` so
the budget is defined once.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from ..constants import DEFAULT_ASSERT_INTERVAL, DEFAULT_ASSERT_MAX_ATTEMPTS

logger = structlog.get_logger()

Predicate = Callable[[], bool | Awaitable[bool]]
Action = Callable[[], Any]


@dataclass(frozen=True)
class RetryBudget:
    """How long to wait for convergence."""

    max_attempts: int = DEFAULT_ASSERT_MAX_ATTEMPTS
    interval: float = DEFAULT_ASSERT_INTERVAL

    @property
    def ceiling(self) -> float:
        """Upper bound on time spent sleeping, in seconds."""
        return max(self.max_attempts - 1, 0) * self.interval


async def _call(func: Callable[[], Any]) -> Any:
    result = func()
    if inspect.isawaitable(result):
        result = await result
    return result


async def assert_until(
    predicate: Predicate,
    action_if_false: Action | None = None,
    budget: RetryBudget | None = None,
    description: str = "",
) -> bool:
    """Poll ``predicate`` until it holds or the budget runs out.

    When the predicate is false, ``action_if_false`` (which must be
    idempotent) is issued before sleeping and polling again. A predicate
    that already holds returns ``True`` without ever invoking the action.

    Args:
        predicate: Sync or async callable reporting the desired state
        action_if_false: Optional sync or async callable that drives towards it
        budget: Attempts and interval; defaults to 6 x 5 seconds
        description: Human label used in log output

    Returns:
        True once the predicate held, False if the budget was exhausted.
        Exceptions raised by the predicate or action propagate.
    """
    budget = budget or RetryBudget()

    for attempt in range(1, budget.max_attempts + 1):
        if await _call(predicate):
            if attempt > 1:
                logger.debug("Assertion converged", assertion=description, attempt=attempt)
            return True

        if attempt == budget.max_attempts:
            break

        if action_if_false is not None:
            await _call(action_if_false)
        if budget.interval > 0:
            await asyncio.sleep(budget.interval)

    logger.warning(
        "Assertion did not converge",
        assertion=description,
        attempts=budget.max_attempts,
        interval=budget.interval,
    )
    return False
