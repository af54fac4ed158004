from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from flakeguard.errors import DriverError


@dataclass
class FakeElement:
    attributes: dict[str, str] = field(default_factory=lambda: {"aria-selected": "false"})
    text: str = ""
    converge_after: int | None = None
    on_converge: dict[str, str] = field(default_factory=lambda: {"aria-selected": "true"})
    effect: Callable[[], None] | None = None
    interactions: int = 0

    def interact(self) -> None:
        self.interactions += 1
        if self.converge_after is not None and self.interactions >= self.converge_after:
            self.attributes.update(self.on_converge)
        if self.effect is not None:
            self.effect()


class FakeDriver:
    """In-memory UIDriver: elements flip to their converged state after N interactions.

    ``hidden_for`` maps a selector to the number of ``find`` calls that see no
    match before its elements render. ``wait_until`` evaluates the predicate
    up to ``polls`` times.
    """

    def __init__(
        self,
        elements: dict[str, list[FakeElement]],
        fail_with: DriverError | None = None,
        hidden_for: dict[str, int] | None = None,
        polls: int = 1,
    ) -> None:
        self.elements = elements
        self.fail_with = fail_with
        self.hidden_for = dict(hidden_for or {})
        self.polls = polls
        self.interactions: list[tuple[str, tuple[str, int], str | None]] = []
        self.waits: list[float] = []
        self.finds: list[str] = []

    def _element(self, handle: tuple[str, int]) -> FakeElement | None:
        selector, index = handle
        matches = self.elements.get(selector, [])
        return matches[index] if index < len(matches) else None

    def clicks_on(self, selector: str) -> int:
        return sum(1 for _, (target, _), _ in self.interactions if target == selector)

    async def find(self, selector):
        self.finds.append(selector)
        if self.hidden_for.get(selector, 0) > 0:
            self.hidden_for[selector] -= 1
            return []
        return [(selector, index) for index in range(len(self.elements.get(selector, [])))]

    async def click(self, handle):
        await self._interact("click", handle, None)

    async def select(self, handle, value=None):
        await self._interact("select", handle, value)

    async def _interact(self, kind, handle, value):
        if self.fail_with is not None:
            raise self.fail_with
        self.interactions.append((kind, handle, value))
        # A vanished element swallows the interaction, like a stale DOM node.
        target = self._element(handle)
        if target is not None:
            target.interact()

    async def get_attribute(self, handle, name):
        target = self._element(handle)
        return None if target is None else target.attributes.get(name)

    async def get_text(self, handle):
        target = self._element(handle)
        return "" if target is None else target.text

    async def wait_until(self, predicate, timeout):
        self.waits.append(timeout)
        for _ in range(self.polls):
            if await predicate():
                return True
        return False


@pytest.fixture
def element():
    return FakeElement


@pytest.fixture
def driver_for():
    def build(
        elements: dict[str, list[FakeElement]],
        fail_with: DriverError | None = None,
        hidden_for: dict[str, int] | None = None,
        polls: int = 1,
    ) -> FakeDriver:
        return FakeDriver(elements, fail_with=fail_with, hidden_for=hidden_for, polls=polls)

    return build
