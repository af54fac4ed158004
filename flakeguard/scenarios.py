"""Data-driven UI scenarios.

A scenario is a record of steps (actions with postconditions) followed by
text checks and cleanup steps, so that variants of one interaction, such as
filtering a dashboard by different fields, are rows of data rather than
branches in code.

Document format::

    {
      "url": "http://localhost:5601/app/ux",
      "scenarios": [
        {
          "name": "os",
          "steps": [
            {"selector": "#local-filter-os",
             "expect": {"selector": "#local-filter-popover-os"}},
            {"selector": "#local-filter-popover-os li.euiSelectableListItem:nth-of-type(3)",
             "kind": "select",
             "require": {"text": "Mac OS X8"},
             "expect": {"attribute": "aria-selected", "equals": "true"}},
            {"selector": "#local-filter-popover-os [data-cy=applyFilter]",
             "expect": {"selector": "#local-filter-values-os span.euiBadge__content", "text": "Mac OS X"}}
          ],
          "checks": [
            {"selector": "#client-metrics .euiStat__title", "text": "82 ms"}
          ],
          "cleanup": [
            {"selector": "[data-cy=clearFilters]",
             "expect": {"selector": "#local-filter-values-os span.euiBadge__content", "absent": true}}
          ]
        }
      ]
    }

``require`` is checked once before the interaction; when it does not hold the
interaction is not issued. An ``expect`` or ``require`` entry with a
``selector`` applies to that element instead of the step's own. Cleanup steps
run after the scenario whether or not it passed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from flakeguard.browser.driver import UIDriver
from flakeguard.errors import ElementResolutionError, FlakeguardError, PreconditionError, ScenarioError
from flakeguard.executor.actions import (
    Absent,
    Action,
    ActionKind,
    AllOf,
    AttributeEquals,
    ElementMatches,
    ExecutionResult,
    Postcondition,
    TextEquals,
)
from flakeguard.executor.retry import RetryPolicy
from flakeguard.executor.runner import ResilientExecutor, bounded_wait, resolve_one

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Step:
    action: Action
    require: Postcondition | None = None


@dataclass(frozen=True, slots=True)
class TextCheck:
    selector: str
    text: str


@dataclass(frozen=True, slots=True)
class Scenario:
    name: str
    steps: tuple[Step, ...]
    checks: tuple[TextCheck, ...] = ()
    cleanup: tuple[Step, ...] = ()


@dataclass(frozen=True, slots=True)
class ScenarioSuite:
    scenarios: tuple[Scenario, ...]
    url: str | None = None

    def select(self, names: list[str] | None) -> tuple[Scenario, ...]:
        if not names:
            return self.scenarios
        known = {scenario.name for scenario in self.scenarios}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ScenarioError(f"Unknown scenario(s): {', '.join(unknown)}")
        return tuple(scenario for scenario in self.scenarios if scenario.name in names)


@dataclass(frozen=True, slots=True)
class CheckResult:
    check: TextCheck
    passed: bool
    observed: str | None = None


@dataclass(frozen=True, slots=True)
class ScenarioOutcome:
    scenario: Scenario
    steps: tuple[ExecutionResult, ...] = ()
    checks: tuple[CheckResult, ...] = ()
    error: str | None = None
    cleanup: tuple[ExecutionResult, ...] = ()
    cleanup_error: str | None = None

    @property
    def passed(self) -> bool:
        return (
            self.error is None
            and self.cleanup_error is None
            and len(self.steps) == len(self.scenario.steps)
            and all(result.succeeded for result in self.steps)
            and all(check.passed for check in self.checks)
            and len(self.cleanup) == len(self.scenario.cleanup)
            and all(result.succeeded for result in self.cleanup)
        )

    def failure_reason(self) -> str | None:
        if self.error:
            return self.error
        for result in self.steps:
            if not result.succeeded:
                return result.describe()
        for check in self.checks:
            if not check.passed:
                return f"{check.check.selector!r}: expected text {check.check.text!r}, observed {check.observed!r}"
        if self.cleanup_error:
            return f"cleanup: {self.cleanup_error}"
        for result in self.cleanup:
            if not result.succeeded:
                return f"cleanup: {result.describe()}"
        return None


def parse_postcondition(raw: Any, key: str = "expect") -> Postcondition:
    if isinstance(raw, list):
        if not raw:
            raise ScenarioError(f"The {key!r} list must not be empty")
        return AllOf(tuple(parse_postcondition(item, key) for item in raw))
    if not isinstance(raw, dict):
        raise ScenarioError(f"Unsupported {key!r} entry: {raw!r}")
    if "selector" in raw:
        return _parse_targeted(raw, key)
    if "attribute" in raw:
        if "equals" not in raw:
            raise ScenarioError(f"Attribute expectation needs 'equals': {raw!r}")
        return AttributeEquals(str(raw["attribute"]), str(raw["equals"]))
    if "text" in raw:
        return TextEquals(str(raw["text"]))
    raise ScenarioError(f"Unsupported {key!r} entry: {raw!r}")


def _parse_targeted(raw: dict[str, Any], key: str) -> Postcondition:
    selector = str(raw["selector"] or "").strip()
    if not selector:
        raise ScenarioError(f"Blank selector in {key!r} entry: {raw!r}")
    rest = {name: value for name, value in raw.items() if name != "selector"}
    if rest.get("absent"):
        if len(rest) > 1:
            raise ScenarioError(f"An 'absent' expectation takes no other conditions: {raw!r}")
        return Absent(selector)
    rest.pop("absent", None)
    if not rest:
        return ElementMatches(selector)
    return ElementMatches(selector, parse_postcondition(rest, key))


def parse_action(raw: Any) -> Action:
    if not isinstance(raw, dict):
        raise ScenarioError(f"A step must be an object, got {raw!r}")
    selector = str(raw.get("selector") or "").strip()
    if not selector:
        raise ScenarioError(f"Step is missing a selector: {raw!r}")
    kind_name = str(raw.get("kind", ActionKind.CLICK.value)).strip().lower()
    try:
        kind = ActionKind(kind_name)
    except ValueError as exc:
        raise ScenarioError(f"Unknown step kind {kind_name!r} for {selector!r}") from exc
    if "expect" not in raw:
        raise ScenarioError(f"Step {selector!r} has no 'expect' postcondition")
    value = raw.get("value")
    return Action(
        selector=selector,
        kind=kind,
        postcondition=parse_postcondition(raw["expect"]),
        value=None if value is None else str(value),
    )


def parse_step(raw: Any) -> Step:
    action = parse_action(raw)
    require = raw.get("require")
    return Step(action, None if require is None else parse_postcondition(require, "require"))


def parse_scenario(raw: Any) -> Scenario:
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ScenarioError(f"A scenario needs a name: {raw!r}")
    steps = raw.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ScenarioError(f"Scenario {raw['name']!r} needs a non-empty 'steps' list")
    cleanup = raw.get("cleanup", [])
    if not isinstance(cleanup, list):
        raise ScenarioError(f"Scenario {raw['name']!r}: 'cleanup' must be a list of steps")
    checks = []
    for item in raw.get("checks", []):
        if not isinstance(item, dict) or "selector" not in item or "text" not in item:
            raise ScenarioError(f"A check needs 'selector' and 'text': {item!r}")
        checks.append(TextCheck(str(item["selector"]), str(item["text"])))
    return Scenario(
        name=str(raw["name"]),
        steps=tuple(parse_step(step) for step in steps),
        checks=tuple(checks),
        cleanup=tuple(parse_step(step) for step in cleanup),
    )


def parse_suite(document: Any) -> ScenarioSuite:
    if not isinstance(document, dict) or not isinstance(document.get("scenarios"), list):
        raise ScenarioError("A scenario document needs a 'scenarios' list")
    scenarios = tuple(parse_scenario(raw) for raw in document["scenarios"])
    names = [scenario.name for scenario in scenarios]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ScenarioError(f"Duplicate scenario name(s): {', '.join(duplicates)}")
    return ScenarioSuite(scenarios=scenarios, url=document.get("url") or None)


def load_scenarios(path: str | Path) -> ScenarioSuite:
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ScenarioError(f"{path}: invalid JSON ({exc})") from exc
    return parse_suite(document)


async def run_scenario(
    scenario: Scenario,
    driver: UIDriver,
    policy: RetryPolicy,
    executor: ResilientExecutor | None = None,
) -> ScenarioOutcome:
    """Run the steps in order, stopping at the first one that does not converge.

    Each step and check first waits up to ``policy.timeout_per_attempt`` for
    its selector to match exactly one element. Resolution errors and unmet
    preconditions are recorded on the outcome; driver errors propagate.
    Cleanup steps run afterwards in every case.
    """
    executor = executor or ResilientExecutor(driver, policy)
    try:
        steps, checks, error = await _run_body(scenario, driver, policy, executor)
    except Exception:
        await _cleanup_after_error(scenario, driver, policy, executor)
        raise
    cleanup, cleanup_error = await _run_steps(scenario.cleanup, driver, policy, executor)
    if cleanup_error:
        logger.warning(f"Scenario {scenario.name!r} cleanup: {cleanup_error}")
    return ScenarioOutcome(scenario, steps, checks, error, cleanup, cleanup_error)


async def _run_body(
    scenario: Scenario,
    driver: UIDriver,
    policy: RetryPolicy,
    executor: ResilientExecutor,
) -> tuple[tuple[ExecutionResult, ...], tuple[CheckResult, ...], str | None]:
    steps, error = await _run_steps(scenario.steps, driver, policy, executor)
    if error:
        logger.warning(f"Scenario {scenario.name!r}: {error}")
        return steps, (), error
    if not all(result.succeeded for result in steps):
        return steps, (), None
    checks: list[CheckResult] = []
    try:
        for check in scenario.checks:
            checks.append(await check_text(driver, check, policy.timeout_per_attempt))
    except ElementResolutionError as exc:
        logger.warning(f"Scenario {scenario.name!r}: {exc}")
        return steps, tuple(checks), str(exc)
    return steps, tuple(checks), None


async def _run_steps(
    steps: tuple[Step, ...],
    driver: UIDriver,
    policy: RetryPolicy,
    executor: ResilientExecutor,
) -> tuple[tuple[ExecutionResult, ...], str | None]:
    results: list[ExecutionResult] = []
    try:
        for step in steps:
            await _wait_for_single(driver, step.action.selector, policy.timeout_per_attempt)
            if step.require is not None:
                await _check_precondition(driver, step, policy.timeout_per_attempt)
            result = await executor.run(step.action, policy)
            results.append(result)
            if not result.succeeded:
                break
    except (ElementResolutionError, PreconditionError) as exc:
        return tuple(results), str(exc)
    return tuple(results), None


async def _cleanup_after_error(
    scenario: Scenario,
    driver: UIDriver,
    policy: RetryPolicy,
    executor: ResilientExecutor,
) -> None:
    if not scenario.cleanup:
        return
    try:
        await _run_steps(scenario.cleanup, driver, policy, executor)
    except FlakeguardError as exc:
        logger.warning(f"Scenario {scenario.name!r} cleanup failed: {exc}")


async def _wait_for_single(driver: UIDriver, selector: str, timeout: float) -> None:
    async def single() -> bool:
        return len(await driver.find(selector)) == 1

    await bounded_wait(driver, single, timeout, selector)


async def _check_precondition(driver: UIDriver, step: Step, timeout: float) -> None:
    handle = await resolve_one(driver, step.action.selector)

    def holds():
        return step.require.holds(driver, handle)

    if not await bounded_wait(driver, holds, timeout, step.action.selector):
        observed = await step.require.observe(driver, handle)
        raise PreconditionError(step.action.selector, step.require, observed)


async def check_text(driver: UIDriver, check: TextCheck, timeout: float) -> CheckResult:
    await _wait_for_single(driver, check.selector, timeout)
    handle = await resolve_one(driver, check.selector)
    expectation = TextEquals(check.text)

    def holds():
        return expectation.holds(driver, handle)

    if await bounded_wait(driver, holds, timeout, check.selector):
        return CheckResult(check, passed=True, observed=check.text)
    return CheckResult(check, passed=False, observed=(await driver.get_text(handle)).strip())
