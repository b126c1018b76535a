import asyncio
import threading
from typing import Any

import pytest

from flareharness.core.bridge import BridgeRejection, BridgeTimeout, CPSBridge, PendingCompletion, bridge_call, wrap


def test_success_continuation_resolves_value() -> None:
    def lookup(key: str, on_success: Any, on_failure: Any) -> None:
        on_success({"key": key, "value": "world"})

    result = asyncio.run(bridge_call(lookup, "hello"))
    assert result == {"key": "hello", "value": "world"}


def test_failure_continuation_rejects_with_same_error() -> None:
    error = ValueError("bad input")

    def failing(on_success: Any, on_failure: Any) -> None:
        on_failure(error)

    with pytest.raises(BridgeRejection) as exc_info:
        asyncio.run(bridge_call(failing))
    assert exc_info.value.error is error
    assert exc_info.value.__cause__ is error


def test_non_exception_rejection_value_is_preserved() -> None:
    def failing(on_success: Any, on_failure: Any) -> None:
        on_failure({"code": 42})

    with pytest.raises(BridgeRejection) as exc_info:
        asyncio.run(bridge_call(failing))
    assert exc_info.value.error == {"code": 42}
    assert exc_info.value.__cause__ is None


def test_first_continuation_wins() -> None:
    def settle_twice(on_success: Any, on_failure: Any) -> None:
        on_success("first")
        on_success("second")
        on_failure(RuntimeError("late"))

    assert asyncio.run(bridge_call(settle_twice)) == "first"


def test_failure_first_then_success_stays_rejected() -> None:
    def reject_then_resolve(on_success: Any, on_failure: Any) -> None:
        on_failure("nope")
        on_success("too late")

    with pytest.raises(BridgeRejection):
        asyncio.run(bridge_call(reject_then_resolve))


def test_pending_completion_counts_ignored_continuations() -> None:
    async def scenario() -> PendingCompletion:
        pending = PendingCompletion(asyncio.get_running_loop(), name="probe")
        assert pending.resolve(1) is True
        assert pending.reject(RuntimeError("late")) is False
        assert pending.resolve(2) is False
        assert await pending.future == 1
        return pending

    pending = asyncio.run(scenario())
    assert pending.outcome == "resolved"
    assert pending.ignored == 2


def test_synchronous_raise_before_settlement_rejects() -> None:
    def explode(on_success: Any, on_failure: Any) -> None:
        raise KeyError("missing")

    with pytest.raises(BridgeRejection) as exc_info:
        asyncio.run(bridge_call(explode))
    assert isinstance(exc_info.value.error, KeyError)


def test_synchronous_raise_after_settlement_is_ignored() -> None:
    def settle_then_raise(on_success: Any, on_failure: Any) -> None:
        on_success("done")
        raise RuntimeError("ignored")

    assert asyncio.run(bridge_call(settle_then_raise)) == "done"


def test_continuation_from_later_loop_tick() -> None:
    def deferred(value: int, on_success: Any, on_failure: Any) -> None:
        asyncio.get_running_loop().call_later(0.01, on_success, value * 2)

    assert asyncio.run(bridge_call(deferred, 21)) == 42


def test_continuation_from_another_thread() -> None:
    def threaded(on_success: Any, on_failure: Any) -> None:
        threading.Timer(0.01, on_success, args=("from thread",)).start()

    assert asyncio.run(bridge_call(threaded)) == "from thread"


def test_keyword_arguments_follow_continuations() -> None:
    def with_options(key: str, on_success: Any, on_failure: Any, *, suffix: str = "") -> None:
        on_success(key + suffix)

    assert asyncio.run(bridge_call(with_options, "a", suffix="-b")) == "a-b"


def test_timeout_is_opt_in() -> None:
    def never(on_success: Any, on_failure: Any) -> None:
        return None

    with pytest.raises(BridgeTimeout, match="did not settle within 0.05s"):
        asyncio.run(CPSBridge(timeout_seconds=0.05).call(never))


def test_late_continuation_after_timeout_is_ignored() -> None:
    captured: dict[str, Any] = {}

    def never(on_success: Any, on_failure: Any) -> None:
        captured["resolve"] = on_success

    async def scenario() -> None:
        with pytest.raises(BridgeTimeout):
            await CPSBridge(timeout_seconds=0.02).call(never)
        assert captured["resolve"]("late") is False

    asyncio.run(scenario())


def test_bridge_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="greater than zero"):
        CPSBridge(timeout_seconds=0)


def test_wrap_returns_async_callable() -> None:
    def add(a: int, b: int, on_success: Any, on_failure: Any) -> None:
        on_success(a + b)

    bridged = wrap(add)
    assert bridged.__name__ == "add"
    assert asyncio.run(bridged(2, 3)) == 5
