from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from flakeguard.errors import ActionNotConvergedError

if TYPE_CHECKING:
    from flakeguard.browser.driver import UIDriver

# Pseudo attribute under which element text is reported in observed state.
TEXT_KEY = "#text"


class ActionKind(str, Enum):
    CLICK = "click"
    SELECT = "select"


class Postcondition(Protocol):
    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        ...

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        """Current values of whatever `holds` inspects, for diagnostics."""
        ...


@dataclass(frozen=True, slots=True)
class AttributeEquals:
    name: str
    expected: str

    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        return await driver.get_attribute(handle, self.name) == self.expected

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        return {self.name: await driver.get_attribute(handle, self.name)}

    def __str__(self) -> str:
        return f"[{self.name}={self.expected!r}]"


@dataclass(frozen=True, slots=True)
class TextEquals:
    expected: str
    strip: bool = True

    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        text = await driver.get_text(handle)
        if self.strip:
            return text.strip() == self.expected.strip()
        return text == self.expected

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        return {TEXT_KEY: await driver.get_text(handle)}

    def __str__(self) -> str:
        return f"text == {self.expected!r}"


@dataclass(frozen=True, slots=True)
class AllOf:
    conditions: tuple[Postcondition, ...]

    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        for condition in self.conditions:
            if not await condition.holds(driver, handle):
                return False
        return True

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        state: dict[str, str | None] = {}
        for condition in self.conditions:
            state.update(await condition.observe(driver, handle))
        return state

    def __str__(self) -> str:
        return " and ".join(str(condition) for condition in self.conditions)


@dataclass(frozen=True, slots=True)
class ElementMatches:
    """Holds when ``selector`` matches exactly one element and ``condition`` holds on it.

    Lets an action be verified on another element, e.g. an apply button that
    closes its popover and leaves a filter badge behind. Without a condition
    the element only has to be present.
    """

    selector: str
    condition: Postcondition | None = None

    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        handles = list(await driver.find(self.selector))
        if len(handles) != 1:
            return False
        if self.condition is None:
            return True
        return await self.condition.holds(driver, handles[0])

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        handles = list(await driver.find(self.selector))
        if len(handles) != 1 or self.condition is None:
            return {self.selector: f"{len(handles)} match(es)"}
        observed = await self.condition.observe(driver, handles[0])
        return {f"{self.selector} {name}": value for name, value in observed.items()}

    def __str__(self) -> str:
        if self.condition is None:
            return f"{self.selector!r} present"
        return f"{self.selector!r} {self.condition}"


@dataclass(frozen=True, slots=True)
class Absent:
    selector: str

    async def holds(self, driver: UIDriver, handle: Any) -> bool:
        return not await driver.find(self.selector)

    async def observe(self, driver: UIDriver, handle: Any) -> dict[str, str | None]:
        return {self.selector: f"{len(await driver.find(self.selector))} match(es)"}

    def __str__(self) -> str:
        return f"{self.selector!r} absent"


@dataclass(frozen=True, slots=True)
class Action:
    selector: str
    kind: ActionKind
    postcondition: Postcondition
    value: str | None = None

    def __post_init__(self) -> None:
        if not self.selector or not self.selector.strip():
            raise ValueError("Action selector must not be empty")

    @classmethod
    def click(cls, selector: str, postcondition: Postcondition) -> Action:
        return cls(selector=selector, kind=ActionKind.CLICK, postcondition=postcondition)

    @classmethod
    def select(cls, selector: str, postcondition: Postcondition, value: str | None = None) -> Action:
        return cls(selector=selector, kind=ActionKind.SELECT, postcondition=postcondition, value=value)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one `execute` call. A failed result is a value, not an error."""

    succeeded: bool
    attempts: int
    action: Action
    last_observed_state: Mapping[str, str | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("ExecutionResult.attempts must be >= 1")
        object.__setattr__(self, "last_observed_state", MappingProxyType(dict(self.last_observed_state)))

    def describe(self) -> str:
        status = "converged" if self.succeeded else "did not converge"
        message = (
            f"{self.action.kind.value} on {self.action.selector!r} {status} "
            f"after {self.attempts} attempt(s), expected {self.action.postcondition}"
        )
        if self.last_observed_state:
            observed = ", ".join(f"{name}={value!r}" for name, value in self.last_observed_state.items())
            message += f"; observed {observed}"
        return message

    def raise_for_failure(self) -> ExecutionResult:
        if not self.succeeded:
            raise ActionNotConvergedError(self)
        return self
