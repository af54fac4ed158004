import asyncio
import json

import pytest

from flakeguard.browser.devtools_driver import DevToolsDriver, ElementHandle
from flakeguard.errors import DriverError, ElementResolutionError, InvalidSelectorError, ResolutionFailure


def script_reply(payload: dict) -> dict:
    return {
        "content": [
            {"type": "text", "text": f"# evaluate_script response\nScript ran on page and returned:\n```json\n{json.dumps(payload)}\n```"}
        ]
    }


class ScriptedSession:
    """Answers evaluate_script calls with the first reply whose marker occurs in the script."""

    def __init__(self, replies: list[tuple[str, dict]]) -> None:
        self.replies = replies
        self.calls: list[tuple[str, dict]] = []

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if name != "evaluate_script":
            return {"content": [{"type": "text", "text": "ok"}]}
        script = arguments["function"]
        for marker, reply in self.replies:
            if marker in script:
                return reply
        raise AssertionError(f"unexpected script: {script[:120]}")

    def scripts(self) -> list[str]:
        return [arguments["function"] for name, arguments in self.calls if name == "evaluate_script"]


async def _no_sleep(seconds):
    return None


def _driver(replies, **kwargs) -> tuple[DevToolsDriver, ScriptedSession]:
    session = ScriptedSession(replies)
    return DevToolsDriver(session, sleep=_no_sleep, **kwargs), session


def test_find_returns_one_handle_per_match() -> None:
    driver, session = _driver([("querySelectorAll(selector).length", script_reply({"ok": True, "count": 2}))])

    handles = asyncio.run(driver.find("li.euiSelectableListItem"))

    assert handles == [ElementHandle("li.euiSelectableListItem", 0), ElementHandle("li.euiSelectableListItem", 1)]
    assert json.dumps("li.euiSelectableListItem") in session.scripts()[0]


def test_find_rejects_invalid_selector() -> None:
    driver, _ = _driver(
        [("querySelectorAll(selector).length", script_reply({"ok": False, "reason": "not a valid selector"}))]
    )
    with pytest.raises(InvalidSelectorError, match="Invalid selector 'li\\[\\[': not a valid selector") as info:
        asyncio.run(driver.find("li[["))

    assert isinstance(info.value, ElementResolutionError)
    assert not isinstance(info.value, DriverError)
    assert info.value.reason is ResolutionFailure.INVALID


def test_get_attribute_and_text() -> None:
    driver, session = _driver(
        [
            ("getAttribute", script_reply({"ok": True, "value": "true"})),
            ("innerText", script_reply({"ok": True, "value": "Mac OS X8 "})),
        ]
    )
    handle = ElementHandle("li.item", 2)

    assert asyncio.run(driver.get_attribute(handle, "aria-selected")) == "true"
    assert asyncio.run(driver.get_text(handle)) == "Mac OS X8 "
    assert "const index = 2;" in session.scripts()[0]


def test_missing_attribute_and_stale_handles() -> None:
    driver, _ = _driver(
        [
            ("getAttribute", script_reply({"ok": True, "value": None})),
            ("innerText", script_reply({"ok": False, "reason": "stale element", "count": 0})),
        ]
    )
    handle = ElementHandle("li.item")

    assert asyncio.run(driver.get_attribute(handle, "aria-selected")) is None
    assert asyncio.run(driver.get_text(handle)) == ""


def test_click_on_stale_handle_logs_instead_of_raising(caplog) -> None:
    driver, session = _driver([("el.click()", script_reply({"ok": False, "reason": "stale element", "count": 0}))])

    asyncio.run(driver.click(ElementHandle("li.item")))

    assert "not issued" in caplog.text
    assert len(session.calls) == 1


def test_select_sends_value() -> None:
    driver, session = _driver([("el.tagName === 'SELECT'", script_reply({"ok": True}))])

    asyncio.run(driver.select(ElementHandle("select#os"), "mac"))

    assert 'const value = "mac";' in session.scripts()[0]


def test_tool_error_raises_driver_error() -> None:
    error = {"isError": True, "content": [{"type": "text", "text": "No page selected"}]}
    driver, _ = _driver([("el.click()", error)])

    with pytest.raises(DriverError, match="No page selected"):
        asyncio.run(driver.click(ElementHandle("li.item")))


def test_unparseable_reply_raises_driver_error() -> None:
    driver, _ = _driver([("innerText", {"content": [{"type": "text", "text": "nothing here"}]})])

    with pytest.raises(DriverError, match="no JSON object"):
        asyncio.run(driver.get_text(ElementHandle("li.item")))


def test_wait_until_checks_predicate_only_once_page_is_settled() -> None:
    states = iter(
        [
            {"ok": True, "readyState": "loading", "busy": False},
            {"ok": True, "readyState": "complete", "busy": True},
            {"ok": True, "readyState": "complete", "busy": False},
        ]
    )

    class SettlingSession(ScriptedSession):
        async def call_tool(self, name, arguments):
            self.calls.append((name, arguments))
            return script_reply(next(states))

    session = SettlingSession([])
    driver = DevToolsDriver(session, busy_selector=".euiStat__title-isLoading", sleep=_no_sleep)
    checks = []

    async def predicate():
        checks.append(True)
        return True

    assert asyncio.run(driver.wait_until(predicate, timeout=5))
    assert len(checks) == 1
    assert len(session.calls) == 3
    assert json.dumps(".euiStat__title-isLoading") in session.scripts()[0]


def test_wait_until_gives_up_after_timeout() -> None:
    driver, _ = _driver([("document.readyState", script_reply({"ok": True, "readyState": "complete", "busy": False}))])
    checks = []

    async def predicate():
        checks.append(True)
        return False

    assert asyncio.run(driver.wait_until(predicate, timeout=0)) is False
    assert len(checks) == 1


def test_open_url_navigates() -> None:
    driver, session = _driver([])

    asyncio.run(driver.open_url("http://localhost:5601/app/ux"))

    assert session.calls == [("navigate_page", {"url": "http://localhost:5601/app/ux"})]
