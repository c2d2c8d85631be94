from __future__ import annotations

import pytest

from browser_sandbox.errors import ContextError
from browser_sandbox.session import is_browser_infra_error


class TargetClosedError(Exception):
    pass


@pytest.mark.parametrize(
    "message",
    [
        "Page.goto: Page crashed",
        "Page.wait_for_selector: Target crashed",
        "Locator.click: Target page, context or browser has been closed",
        "Browser.new_context: Connection closed while reading from the driver",
        "pipe closed by peer",
    ],
)
def test_browser_death_messages_are_infra(message: str) -> None:
    assert is_browser_infra_error(RuntimeError(message)) is True


def test_closed_target_is_infra_even_without_message() -> None:
    assert is_browser_infra_error(TargetClosedError()) is True


def test_wrapped_context_failure_keeps_the_driver_message() -> None:
    exc = ContextError("browser_context_error: Error: Connection closed while writing to the driver")
    assert is_browser_infra_error(exc) is True


@pytest.mark.parametrize("exc", [ValueError("boom"), RuntimeError("Timeout 30000ms exceeded."), KeyError("page")])
def test_script_mistakes_are_not_infra(exc: Exception) -> None:
    assert is_browser_infra_error(exc) is False
