from __future__ import annotations

import pytest

from airender_engine.cancellation import CANCELLED, Cancelled, CancellationToken
from airender_engine.errors import CancelledError
from airender_engine.providers.base import GenerateResult, unwrap


def test_cancel_runs_registered_callbacks_once() -> None:
    token = CancellationToken()
    calls: list[str] = []
    token.register(lambda: calls.append("a"))
    token.cancel()
    token.cancel()
    assert token.cancelled is True
    assert calls == ["a"]


def test_register_after_cancel_runs_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    calls: list[int] = []
    token.register(lambda: calls.append(1))
    assert calls == [1]


def test_unregister_prevents_callback() -> None:
    token = CancellationToken()
    calls: list[int] = []
    unregister = token.register(lambda: calls.append(1))
    unregister()
    token.cancel()
    assert calls == []


def test_child_follows_parent_but_not_the_reverse() -> None:
    parent = CancellationToken()
    child = parent.child()
    child.cancel()
    assert child.cancelled is True
    assert parent.cancelled is False

    second = parent.child()
    parent.cancel()
    assert second.cancelled is True


def test_failing_callback_does_not_stop_others() -> None:
    token = CancellationToken()
    calls: list[str] = []

    def boom() -> None:
        raise RuntimeError("boom")

    token.register(boom)
    token.register(lambda: calls.append("after"))
    token.cancel()
    assert calls == ["after"]


def test_wait_returns_true_once_cancelled() -> None:
    token = CancellationToken()
    assert token.wait(0.01) is False
    token.cancel()
    assert token.wait(0.01) is True


def test_unwrap_raises_on_cancelled_outcome() -> None:
    result = GenerateResult(images=[b"x"])
    assert unwrap(result) is result
    assert isinstance(CANCELLED, Cancelled)
    with pytest.raises(CancelledError):
        unwrap(CANCELLED)
    token = CancellationToken()
    token.cancel()
    with pytest.raises(CancelledError):
        token.raise_if_cancelled()
