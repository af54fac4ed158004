from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, before_sleep_log

from flakeguard.browser.driver import Predicate, UIDriver
from flakeguard.errors import AmbiguousElementError, ElementNotFoundError
from flakeguard.executor.actions import Action, ActionKind, ExecutionResult
from flakeguard.executor.retry import RetryPolicy, should_retry

logger = logging.getLogger(__name__)

# Slack given to the driver on top of a wait timeout before the wait is
# abandoned as "predicate did not hold".
WAIT_GRACE_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[Any]]


def _retry_while_unconverged(policy: RetryPolicy) -> Callable[[RetryCallState], bool]:
    def predicate(state: RetryCallState) -> bool:
        # Driver exceptions are never retried; they surface from the loop.
        if state.outcome is None or state.outcome.failed:
            return False
        return should_retry(state.attempt_number, policy.max_attempts, bool(state.outcome.result()))

    return predicate


async def resolve_one(driver: UIDriver, selector: str) -> Any:
    handles = list(await driver.find(selector))
    if not handles:
        raise ElementNotFoundError(selector)
    if len(handles) > 1:
        raise AmbiguousElementError(selector, len(handles))
    return handles[0]


def _last_outcome(state: RetryCallState) -> Any:
    return state.outcome.result() if state.outcome is not None else None


async def bounded_wait(driver: UIDriver, predicate: Predicate, timeout: float, subject: str) -> bool:
    """``driver.wait_until`` that gives up shortly after ``timeout`` even if the driver hangs.

    A driver that does not answer in time counts as the predicate not holding.
    """
    try:
        held = await asyncio.wait_for(driver.wait_until(predicate, timeout), timeout=timeout + WAIT_GRACE_SECONDS)
    except TimeoutError:
        logger.warning(f"Driver did not answer within {timeout}s while waiting on {subject!r}")
        return False
    return bool(held)


class ResilientExecutor:
    """Runs UI actions against one driver, re-issuing the interaction until its postcondition holds.

    Usage::

        executor = ResilientExecutor(driver, RetryPolicy(max_attempts=3))
        result = await executor.run(
            Action.click("li.euiSelectableListItem", AttributeEquals("aria-selected", "true"))
        )
        result.raise_for_failure()
    """

    def __init__(
        self,
        driver: UIDriver,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.driver = driver
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def run(self, action: Action, policy: RetryPolicy | None = None) -> ExecutionResult:
        policy = policy or self.policy
        handle = await resolve_one(self.driver, action.selector)

        retrying = AsyncRetrying(
            stop=policy.stop_strategy(),
            wait=policy.wait_strategy(),
            retry=_retry_while_unconverged(policy),
            sleep=self._pause,
            before_sleep=before_sleep_log(logger, logging.INFO),
            retry_error_callback=_last_outcome,
        )

        held = False
        attempts = 0
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                held = await self._attempt(action, policy, handle, attempts)
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(held)

        if held:
            logger.debug(f"{action.kind.value} on {action.selector!r} converged after {attempts} attempt(s)")
            return ExecutionResult(succeeded=True, attempts=attempts, action=action)

        observed = await self._observe(action, handle)
        result = ExecutionResult(
            succeeded=False,
            attempts=attempts,
            action=action,
            last_observed_state=observed,
        )
        logger.warning(result.describe())
        return result

    async def _attempt(self, action: Action, policy: RetryPolicy, handle: Any, attempt: int) -> bool:
        logger.debug(f"Attempt {attempt}/{policy.max_attempts}: {action.kind.value} on {action.selector!r}")
        await self._interact(action, handle)

        def postcondition() -> Awaitable[bool]:
            return action.postcondition.holds(self.driver, handle)

        return await bounded_wait(self.driver, postcondition, policy.timeout_per_attempt, action.selector)

    async def _interact(self, action: Action, handle: Any) -> None:
        if action.kind is ActionKind.SELECT:
            await self.driver.select(handle, action.value)
        else:
            await self.driver.click(handle)

    async def _observe(self, action: Action, handle: Any) -> dict[str, str | None]:
        return dict(await action.postcondition.observe(self.driver, handle))

    async def _pause(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleep(seconds)


async def execute(action: Action, policy: RetryPolicy, driver: UIDriver) -> ExecutionResult:
    """Run ``action`` once against ``driver`` under ``policy``.

    Raises ElementResolutionError when the selector does not match exactly one
    element and lets DriverError propagate. Exhausting ``policy.max_attempts``
    is reported through ``ExecutionResult.succeeded``, not raised.
    """
    return await ResilientExecutor(driver, policy).run(action)
