import asyncio
import threading

import pytest

from whispo.mcp.dispatcher import ToolDispatcher
from whispo.mcp.errors import InvalidArguments, ToolExecutionFailed, ToolNotFound
from whispo.mcp.registry import ToolDescriptor, ToolRegistry

COUNTER_SCHEMA = {"type": "object", "properties": {"step": {"type": "integer", "minimum": 1}}}


def _dispatcher(handler, *, mutating=False, name="counter", schema=None):
    registry = ToolRegistry()
    registry.register_local(
        ToolDescriptor(name=name, input_schema=schema or COUNTER_SCHEMA),
        handler,
        mutating=mutating,
    )
    return ToolDispatcher(registry), registry


@pytest.mark.asyncio
async def test_dispatch_runs_sync_handler_in_worker_thread():
    seen = {}

    def handler(arguments):
        seen["thread"] = threading.current_thread()
        return {"step": arguments.get("step", 1)}

    dispatcher, _ = _dispatcher(handler)
    assert await dispatcher.dispatch("counter", {"step": 3}) == {"step": 3}
    assert seen["thread"] is not threading.main_thread()


@pytest.mark.asyncio
async def test_dispatch_accepts_coroutine_handler_and_qualified_name():
    async def handler(arguments):
        return "async ok"

    dispatcher, _ = _dispatcher(handler)
    assert await dispatcher.dispatch("local/counter") == "async ok"


@pytest.mark.asyncio
async def test_unknown_and_remote_names_are_not_found():
    dispatcher, registry = _dispatcher(lambda args: None)
    registry.replace_provider_tools("git", [ToolDescriptor(name="status")])

    with pytest.raises(ToolNotFound):
        await dispatcher.dispatch("nope")
    with pytest.raises(ToolNotFound) as exc_info:
        await dispatcher.dispatch("git/status")
    assert exc_info.value.namespace == "git"


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_handler():
    calls = []
    dispatcher, _ = _dispatcher(lambda args: calls.append(args))

    with pytest.raises(InvalidArguments) as exc_info:
        await dispatcher.dispatch("counter", {"step": 0})
    assert exc_info.value.path == "step"
    assert calls == []


@pytest.mark.asyncio
async def test_handler_failure_keeps_cause():
    def handler(arguments):
        raise KeyError("missing-profile")

    dispatcher, _ = _dispatcher(handler)
    with pytest.raises(ToolExecutionFailed) as exc_info:
        await dispatcher.dispatch("counter")
    assert isinstance(exc_info.value.cause, KeyError)
    assert "KeyError" in exc_info.value.error_data()["cause"]


@pytest.mark.asyncio
async def test_mutating_tool_calls_do_not_interleave():
    active = 0
    overlaps = []
    lock = threading.Lock()

    def handler(arguments):
        nonlocal active
        with lock:
            active += 1
            overlaps.append(active)
        threading.Event().wait(0.02)
        with lock:
            active -= 1
        return "done"

    dispatcher, _ = _dispatcher(handler, mutating=True)
    results = await asyncio.gather(*(dispatcher.dispatch("counter") for _ in range(5)))
    assert results == ["done"] * 5
    assert max(overlaps) == 1


@pytest.mark.asyncio
async def test_read_only_tool_calls_run_concurrently():
    barrier = threading.Barrier(2, timeout=2)

    def handler(arguments):
        barrier.wait()
        return "met"

    dispatcher, _ = _dispatcher(handler, mutating=False)
    results = await asyncio.gather(dispatcher.dispatch("counter"), dispatcher.dispatch("counter"))
    assert results == ["met", "met"]


@pytest.mark.asyncio
async def test_call_wraps_result_for_the_wire():
    dispatcher, _ = _dispatcher(lambda args: {"value": 42})
    result = await dispatcher.call("counter")
    assert result["isError"] is False
    assert result["structuredContent"] == {"value": 42}
    assert '"value": 42' in result["content"][0]["text"]

    none_dispatcher, _ = _dispatcher(lambda args: None)
    assert (await none_dispatcher.call("counter"))["content"][0]["text"] == "Success"


@pytest.mark.asyncio
async def test_call_truncates_large_results():
    registry = ToolRegistry()
    registry.register_local(ToolDescriptor(name="big"), lambda args: "x" * 5000)
    dispatcher = ToolDispatcher(registry, max_response_chars=200)
    text = (await dispatcher.call("big"))["content"][0]["text"]
    assert len(text) == 200
    assert text.endswith("[Response truncated due to size limits]")
