from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

Predicate = Callable[[], Awaitable[bool]]


class UIDriver(Protocol):
    """Capability the executor consumes to talk to a live UI.

    Handles are opaque to the executor. One driver instance serves one
    logical flow of interaction at a time.
    """

    async def find(self, selector: str) -> Sequence[Any]:
        """Return every element currently matching ``selector``.

        A selector the page cannot parse raises InvalidSelectorError.
        """
        ...

    async def click(self, handle: Any) -> None:
        ...

    async def select(self, handle: Any, value: str | None = None) -> None:
        """Select ``handle`` (an option or list item), or ``value`` when ``handle`` is a <select>."""
        ...

    async def get_attribute(self, handle: Any, name: str) -> str | None:
        ...

    async def get_text(self, handle: Any) -> str:
        ...

    async def wait_until(self, predicate: Predicate, timeout: float) -> bool:
        """Wait until the page is settled and ``predicate`` holds, at most ``timeout`` seconds."""
        ...
