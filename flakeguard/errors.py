from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from flakeguard.executor.actions import ExecutionResult


class FlakeguardError(Exception):
    """Base class for every error raised by flakeguard."""


class ResolutionFailure(str, Enum):
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    INVALID = "invalid"


class ElementResolutionError(FlakeguardError):
    """A selector did not resolve to exactly one element.

    This is a structural problem with the selector or the page state, so it
    is never retried.
    """

    reason: ResolutionFailure

    def __init__(self, selector: str, count: int) -> None:
        self.selector = selector
        self.count = count
        super().__init__(self._message())

    def _message(self) -> str:
        return f"Selector {self.selector!r} matched {self.count} elements"


class ElementNotFoundError(ElementResolutionError):
    reason = ResolutionFailure.NOT_FOUND

    def __init__(self, selector: str) -> None:
        super().__init__(selector, 0)

    def _message(self) -> str:
        return f"No element matches selector {self.selector!r}"


class AmbiguousElementError(ElementResolutionError):
    reason = ResolutionFailure.AMBIGUOUS

    def _message(self) -> str:
        return f"Selector {self.selector!r} is ambiguous: {self.count} elements match"


class InvalidSelectorError(ElementResolutionError):
    reason = ResolutionFailure.INVALID

    def __init__(self, selector: str, detail: str) -> None:
        self.detail = detail
        super().__init__(selector, 0)

    def _message(self) -> str:
        return f"Invalid selector {self.selector!r}: {self.detail}"


class PreconditionError(FlakeguardError):
    """A step's precondition did not hold, so its interaction was not issued."""

    def __init__(self, selector: str, condition: Any, observed: dict[str, str | None]) -> None:
        self.selector = selector
        self.condition = condition
        self.observed = observed
        details = ", ".join(f"{name}={value!r}" for name, value in observed.items())
        super().__init__(f"Precondition {condition} not met on {selector!r}; observed {details}")


class DriverError(FlakeguardError):
    """Transport or session failure in the UI driver. Never retried."""


class TransportClosedError(DriverError):
    pass


class JsonRpcError(DriverError):
    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"JSON-RPC error {code}: {message}")


class ActionNotConvergedError(FlakeguardError):
    """Raised on demand by callers that require an action to converge."""

    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        super().__init__(result.describe())


class ScenarioError(FlakeguardError, ValueError):
    """A scenario document is malformed."""
