"""Executable units that can be attached to a task."""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import os
from typing import Any, Callable, Dict, Optional, Sequence

from .errors import DefinitionError, TaskBodyError

logger = logging.getLogger(__name__)

TaskBody = Callable[[Any], Any]


def is_async_body(body: Any) -> bool:
    """Whether ``body`` must be awaited on the event loop."""
    if inspect.iscoroutinefunction(body):
        return True
    call = getattr(body, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


async def invoke_body(body: TaskBody, context: Any) -> Any:
    """Run ``body`` with ``context`` and return its result.

    Coroutine functions run on the loop; plain callables are dispatched to a
    worker thread so the loop stays free for observers and timers.
    """
    if is_async_body(body):
        return await body(context)
    result = await asyncio.to_thread(body, context)
    if inspect.isawaitable(result):
        result = await result
    return result


def noop_body(context: Any) -> None:
    """Placeholder for tasks that only mark a point in the workflow."""
    context.update_progress(50, "Running")


class CommandBody:
    """Run an external command and stream its output into the task.

    stdout and stderr are merged and written line by line. A non-zero exit
    code fails the attempt. When the attempt is cancelled (timeout, workflow
    cancel) the process is killed.
    """

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        success_codes: Sequence[int] = (0,),
    ) -> None:
        if not argv:
            raise ValueError("CommandBody requires at least one argument")
        self.argv = [str(arg) for arg in argv]
        self.cwd = cwd
        self.env = env
        self.success_codes = tuple(success_codes)

    def __repr__(self) -> str:
        return f"CommandBody({self.argv!r})"

    async def __call__(self, context: Any) -> None:
        env = None
        if self.env:
            env = {**os.environ, **self.env}
        logger.debug(f"Starting command for {context.task_name}: {self.argv}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=self.cwd,
                env=env,
            )
        except OSError as exc:
            raise TaskBodyError(
                f"Failed to start command {self.argv[0]}: {exc}", context.task_name
            ) from exc

        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode(errors="replace").rstrip("\r\n")
                context.write_output(line)
            code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if code not in self.success_codes:
            raise TaskBodyError(
                f"Command {self.argv[0]} exited with code {code}", context.task_name
            )


def resolve_body(reference: str) -> TaskBody:
    """Import a body from a ``package.module:attribute`` reference."""

    module_name, sep, attr_path = reference.partition(":")
    if not sep or not module_name or not attr_path:
        raise DefinitionError(
            f"Body reference '{reference}' must look like 'package.module:function'"
        )
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise DefinitionError(f"Cannot import module '{module_name}': {exc}") from exc

    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise DefinitionError(
                f"Module '{module_name}' has no attribute '{attr_path}'"
            ) from exc

    if not callable(target):
        raise DefinitionError(f"Body reference '{reference}' is not callable")
    return target
