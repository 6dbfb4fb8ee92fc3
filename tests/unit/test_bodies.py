"""Tests for executable task bodies."""

import asyncio
import functools
import sys
import threading

import pytest

from waypoint.bodies import CommandBody, invoke_body, is_async_body, noop_body, resolve_body
from waypoint.errors import DefinitionError, TaskBodyError


class StubContext:
    task_name = "stub"

    def __init__(self):
        self.lines = []
        self.progress = []

    def write_output(self, message, level="OUTPUT"):
        self.lines.append(message)

    def update_progress(self, percent, message=None):
        self.progress.append((percent, message))


async def _async_body(context):
    return "async"


class _AsyncCallable:
    async def __call__(self, context):
        return "callable"


def test_is_async_body_detects_coroutines():
    assert is_async_body(_async_body)
    assert is_async_body(_AsyncCallable())
    assert is_async_body(functools.partial(_async_body))
    assert not is_async_body(noop_body)


@pytest.mark.asyncio
async def test_invoke_body_runs_sync_bodies_in_a_thread():
    main_thread = threading.get_ident()
    seen = []

    def body(context):
        seen.append(threading.get_ident())
        return 42

    assert await invoke_body(body, StubContext()) == 42
    assert seen and seen[0] != main_thread
    assert await invoke_body(_async_body, StubContext()) == "async"
    assert await invoke_body(_AsyncCallable(), StubContext()) == "callable"


def test_noop_body_reports_half_progress():
    context = StubContext()
    noop_body(context)
    assert context.progress == [(50, "Running")]


@pytest.mark.asyncio
async def test_command_body_streams_output():
    body = CommandBody([sys.executable, "-c", "print('one'); print('two')"])
    context = StubContext()

    await body(context)

    assert context.lines == ["one", "two"]


@pytest.mark.asyncio
async def test_command_body_nonzero_exit_fails():
    body = CommandBody([sys.executable, "-c", "import sys; print('bad'); sys.exit(3)"])

    with pytest.raises(TaskBodyError, match="exited with code 3"):
        await body(StubContext())


@pytest.mark.asyncio
async def test_command_body_missing_executable():
    body = CommandBody(["/nonexistent/waypoint-binary"])

    with pytest.raises(TaskBodyError, match="Failed to start"):
        await body(StubContext())


@pytest.mark.asyncio
async def test_command_body_is_killed_on_cancel():
    body = CommandBody([sys.executable, "-c", "import time; print('start', flush=True); time.sleep(30)"])
    context = StubContext()
    task = asyncio.ensure_future(body(context))

    for _ in range(100):
        if context.lines:
            break
        await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(task, 5)
    assert context.lines == ["start"]


def test_resolve_body_imports_callable(tmp_path, monkeypatch):
    module = tmp_path / "sample_bodies.py"
    module.write_text("def greet(context):\n    return 'hi'\n\nclass Holder:\n    @staticmethod\n    def run(context):\n        return 1\n\nVALUE = 3\n")
    monkeypatch.syspath_prepend(str(tmp_path))

    assert resolve_body("sample_bodies:greet")(None) == "hi"
    assert resolve_body("sample_bodies:Holder.run")(None) == 1

    with pytest.raises(DefinitionError):
        resolve_body("sample_bodies:VALUE")
    with pytest.raises(DefinitionError):
        resolve_body("sample_bodies:absent")
    with pytest.raises(DefinitionError):
        resolve_body("no_such_module_waypoint:body")
    with pytest.raises(DefinitionError):
        resolve_body("missing_colon")
