"""Sequential task orchestration with retries, timeouts, approval and reboot."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from .approval import ApprovalGateCoordinator
from .bodies import invoke_body, noop_body
from .context import TaskExecutionContext
from .contracts import (
    ApprovalDecision,
    ErrorAction,
    EventKind,
    RunOutcome,
    RunResult,
    TaskStatus,
    WorkflowEvent,
    WorkflowRun,
    WorkflowTask,
)
from .data_store import SharedDataStore
from .errors import (
    ApprovalRejected,
    ApprovalTimedOut,
    DefinitionError,
    TaskBodyError,
    TaskTimeout,
    WorkflowCancelled,
)
from .events import BaseEventSink, NullEventSink
from .persistence import CheckpointManager
from .skip import SkipConditionEvaluator, build_bindings

_STOP_GRACE_SECONDS = 5.0
_REBOOT_SAVE_TIMEOUT_SECONDS = 30.0


class _Resolution(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    REBOOT = "reboot"


class _Interrupted(Exception):
    """A reboot request ended the current suspension."""


class _DeadlineExceeded(Exception):
    def __init__(self) -> None:
        super().__init__("timed out")


class TaskOrchestrator:
    """Runs an ordered list of tasks to completion, failure, reboot or cancel.

    Forward progress happens on one event loop. Synchronous task bodies are
    dispatched to worker threads; the body, its timeout and the run's cancel
    signal are raced against each other at every suspension point.

    The orchestrator also implements the controller side of
    :class:`~waypoint.context.TaskExecutionContext`: bodies report output,
    progress, skip and reboot requests through it, and it turns them into
    task state changes and :class:`~waypoint.contracts.WorkflowEvent`\\s.
    """

    def __init__(
        self,
        checkpoints: Optional[CheckpointManager] = None,
        approvals: Optional[ApprovalGateCoordinator] = None,
        events: Optional[BaseEventSink] = None,
        logger: Optional[logging.Logger] = None,
        skip_evaluator: Optional[SkipConditionEvaluator] = None,
        error_action: ErrorAction = ErrorAction.STOP,
        wizard_inputs: Optional[Mapping[str, Any]] = None,
        title: str = "Workflow",
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self.checkpoints = checkpoints
        self.approvals = approvals or ApprovalGateCoordinator(logger=self._logger)
        self.events = events or NullEventSink()
        self.skip_evaluator = skip_evaluator or SkipConditionEvaluator(logger=self._logger)
        self.error_action = error_action
        self.title = title
        self.log_file_path: Optional[str] = None
        self.shared_data = SharedDataStore()
        self.run_state: Optional[WorkflowRun] = None

        self._wizard_inputs: Dict[str, Any] = dict(wizard_inputs or {})
        self._executing = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._cancel_requested = False
        self._interrupt: Optional[asyncio.Event] = None
        self._context: Optional[TaskExecutionContext] = None
        self._skip_reason: Optional[str] = None
        self._reboot_reason: Optional[str] = None

    # ------------------------------------------------------------------
    # Controller interface used by TaskExecutionContext
    @property
    def wizard_inputs(self) -> Mapping[str, Any]:
        if self.run_state is not None:
            return self.run_state.wizard_inputs
        return self._wizard_inputs

    @property
    def current_task_index(self) -> int:
        return self.run_state.current_index if self.run_state is not None else -1

    @property
    def total_task_count(self) -> int:
        return len(self.run_state.tasks) if self.run_state is not None else 0

    @property
    def is_executing(self) -> bool:
        return self._executing

    def record_output(self, task: WorkflowTask, level: str, message: str) -> None:
        task.add_output_line(level, message)
        self._logger.info(f"[{task.name}] [{level}] {message}")
        self._publish(EventKind.TASK_OUTPUT, task, level=level, message=message)

    def record_progress(
        self, task: WorkflowTask, percent: Optional[int], message: Optional[str]
    ) -> None:
        if percent is not None:
            task.progress_percent = percent
        if message is not None:
            task.progress_message = message
        self._publish(
            EventKind.TASK_PROGRESS,
            task,
            percent=task.progress_percent,
            message=task.progress_message,
            overall_percent=(
                self.run_state.overall_progress if self.run_state is not None else None
            ),
        )

    def request_skip(self, reason: str) -> None:
        if self._context is None:
            self._logger.warning(f"Ignoring skip request outside a running task: {reason}")
            return
        self._skip_reason = reason
        self._logger.info(f"Skip requested: {reason}")

    def request_reboot(self, reason: Optional[str] = None) -> None:
        """Mark the current task Completed, checkpoint the run and halt.

        The checkpoint is on disk by the time this returns, so a body may
        restart the machine right after calling it. Safe to call from a task
        body, from another coroutine or from another thread while :meth:`run`
        is executing; off the event loop the call blocks until the loop has
        written the checkpoint.
        """
        reason = reason or "Reboot required to continue"
        if not self._executing or self._loop is None:
            self._logger.warning(f"Ignoring reboot request while idle: {reason}")
            return
        if self._on_loop_thread():
            self._begin_reboot(reason)
            return

        try:
            future = asyncio.run_coroutine_threadsafe(
                self._begin_reboot_on_loop(reason), self._loop
            )
            future.result(timeout=_REBOOT_SAVE_TIMEOUT_SECONDS)
        except RuntimeError as exc:
            self._logger.warning(f"Ignoring reboot request, event loop is gone: {exc}")
        except concurrent.futures.TimeoutError:
            self._logger.error("Timed out waiting for the reboot checkpoint to be written")

    def cancel(self) -> None:
        """Abort the run. Safe to call from any thread."""
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._signal(self._cancel_event)

    # ------------------------------------------------------------------
    # Run
    async def run(
        self,
        tasks: Iterable[WorkflowTask],
        shared_data: Union[SharedDataStore, Mapping[str, Any], None] = None,
        cancel_event: Optional[asyncio.Event] = None,
        resume: bool = True,
    ) -> RunResult:
        """Execute ``tasks`` in ascending ``order`` and summarize the outcome.

        A task that fails all its attempts without continue-on-error stops
        the run; the result then has ``aborted`` set and carries the error.
        Cancelling the asyncio task running this coroutine propagates
        ``CancelledError`` once the run state has been updated.

        Raises:
            RuntimeError: If this orchestrator is already executing a run.
            DefinitionError: If two tasks share a name.
        """
        if self._executing:
            raise RuntimeError("Workflow is already executing")

        self._executing = True
        self._loop = asyncio.get_running_loop()
        self._cancel_event = cancel_event if cancel_event is not None else asyncio.Event()
        if self._cancel_requested:
            self._cancel_event.set()
        self._interrupt = asyncio.Event()
        self._skip_reason = None
        self._reboot_reason = None
        try:
            return await self._execute_run(list(tasks), shared_data, resume)
        finally:
            self._executing = False
            self._cancel_requested = False
            self._context = None
            if self.run_state is not None:
                self.run_state.current_index = -1

    async def _execute_run(
        self,
        tasks: list,
        shared_data: Union[SharedDataStore, Mapping[str, Any], None],
        resume: bool,
    ) -> RunResult:
        seen = set()
        for task in tasks:
            if task.name in seen:
                raise DefinitionError(f"Duplicate task name: {task.name}")
            seen.add(task.name)
            if not task.is_done:
                task.reset()

        if isinstance(shared_data, SharedDataStore):
            self.shared_data = shared_data
        else:
            self.shared_data = SharedDataStore(shared_data)

        run = WorkflowRun(
            title=self.title,
            tasks=tasks,
            error_action=self.error_action,
            wizard_inputs=dict(self._wizard_inputs),
            log_file_path=self.log_file_path,
        )
        run.tasks = run.ordered_tasks()
        self.run_state = run

        resumed = False
        if resume and self.checkpoints is not None:
            checkpoint = self.checkpoints.load()
            if checkpoint is not None:
                if CheckpointManager.matches(checkpoint, run):
                    self.checkpoints.apply(checkpoint, run, self.shared_data)
                    resumed = True
                else:
                    self._logger.warning(
                        f"Ignoring checkpoint for '{checkpoint.title}': "
                        "it does not match this workflow"
                    )

        self._logger.info(
            f"Starting workflow '{run.title}' with {len(run.tasks)} task(s)"
            + (f" (resumed, reboot count {run.reboot_count})" if resumed else "")
        )
        self._publish(
            EventKind.RUN_STARTED,
            title=run.title,
            total=len(run.tasks),
            resumed=resumed,
            reboot_count=run.reboot_count,
        )

        cancelled = False
        extra: Dict[str, Any] = {}
        task: Optional[WorkflowTask] = None
        try:
            for index, task in enumerate(run.tasks):
                run.current_index = index
                if self._reboot_reason is not None:
                    self._logger.info(f"Reboot requested, stopping at task {index}")
                    break
                if self._is_cancel_requested():
                    self._logger.info("Workflow execution cancelled")
                    self._mark_cancelled(run, None)
                    cancelled = True
                    break
                if task.is_done:
                    self._logger.info(f"Skipping already completed task: {task.name}")
                    continue

                try:
                    resolution, error = await self._execute_task(task)
                    if resolution == _Resolution.FAILED:
                        run.has_failed = True
                        await self._run_rollback(task)
                except WorkflowCancelled:
                    self._logger.info("Workflow execution cancelled")
                    self._mark_cancelled(run, task)
                    cancelled = True
                    break

                if resolution == _Resolution.REBOOT:
                    break
                if resolution != _Resolution.FAILED:
                    continue

                if task.continue_on_error or run.error_action == ErrorAction.CONTINUE:
                    self._logger.warning(
                        f"Task '{task.name}' failed after {task.attempts} attempt(s), continuing"
                    )
                    continue
                self._logger.error(
                    f"Task '{task.name}' failed after {task.attempts} attempt(s), stopping workflow"
                )
                extra = {"aborted": True, "failed_task": task.name, "error": error}
                break
        except asyncio.CancelledError:
            self._mark_cancelled(run, task)
            self._finish(run, RunOutcome.CANCELLED)
            raise

        if cancelled:
            return self._finish(run, RunOutcome.CANCELLED)

        if self._reboot_reason is not None:
            # refresh with whatever the body did after asking for the reboot
            path = self._save_checkpoint(run)
            return self._finish(run, RunOutcome.HALTED_FOR_REBOOT, checkpoint_path=path)

        if run.all_done():
            run.is_completed = True
            self._logger.info("Workflow execution completed successfully")
            if self.checkpoints is not None:
                self.checkpoints.clear()
            return self._finish(run, RunOutcome.COMPLETED_SUCCESSFULLY)

        run.is_completed = not extra.get("aborted", False)
        return self._finish(run, RunOutcome.COMPLETED_WITH_FAILURES, **extra)

    def _finish(self, run: WorkflowRun, outcome: RunOutcome, **extra: Any) -> RunResult:
        result = RunResult.from_run(run, outcome, **extra)
        self._logger.info(
            f"Workflow '{run.title}' finished: {outcome.value} "
            f"({result.completed} completed, {result.failed} failed, "
            f"{result.skipped} skipped, {result.pending} pending)"
        )
        self._publish(
            EventKind.RUN_FINISHED,
            outcome=outcome.value,
            completed=result.completed,
            failed=result.failed,
            skipped=result.skipped,
            pending=result.pending,
        )
        return result

    # ------------------------------------------------------------------
    # Per-task execution
    async def _execute_task(
        self, task: WorkflowTask
    ) -> Tuple[_Resolution, Optional[BaseException]]:
        if task.skip_condition:
            bindings = build_bindings(self.wizard_inputs, self.shared_data.snapshot())
            if self.skip_evaluator.evaluate(task.skip_condition, bindings):
                reason = task.skip_reason or "Condition not met"
                self._logger.info(f"Task '{task.name}' skipped: {reason}")
                self._skip(task, reason)
                return _Resolution.SKIPPED, None

        if task.is_approval_gate:
            return await self._run_approval_gate(task)
        return await self._run_with_retries(task)

    async def _run_with_retries(
        self, task: WorkflowTask
    ) -> Tuple[_Resolution, Optional[BaseException]]:
        total = task.retry_count + 1
        error: Optional[BaseException] = None
        self._begin(task)

        for attempt in range(1, total + 1):
            task.attempts = attempt
            if attempt > 1:
                message = f"Retrying (attempt {attempt}/{total})..."
                self._logger.info(f"Retrying task '{task.name}' (attempt {attempt}/{total})")
                task.reset_progress()
                task.progress_message = message
                self._publish(
                    EventKind.TASK_RETRYING,
                    task,
                    attempt=attempt,
                    max_attempts=total,
                    error=str(error),
                )
                if task.retry_delay_seconds > 0:
                    try:
                        await self._supervise(
                            asyncio.sleep(task.retry_delay_seconds),
                            interrupt=self._interrupt,
                        )
                    except _Interrupted:
                        pass
                if self._reboot_reason is not None:
                    self._complete_for_reboot(task)
                    return _Resolution.REBOOT, None

            resolution, error = await self._run_attempt(task)
            if resolution is not None:
                return resolution, None
            if attempt < total:
                self._logger.warning(
                    f"Task '{task.name}' failed (attempt {attempt}/{total}), will retry: {error}"
                )

        assert error is not None
        self._fail(task, error)
        return _Resolution.FAILED, error

    async def _run_attempt(
        self, task: WorkflowTask
    ) -> Tuple[Optional[_Resolution], Optional[BaseException]]:
        self._skip_reason = None
        context = TaskExecutionContext(task, self)
        self._context = context
        body = task.body if task.body is not None else noop_body

        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = await self._supervise(
                invoke_body(body, context),
                timeout=task.timeout_seconds,
                interrupt=self._interrupt,
            )
        except _Interrupted:
            pass
        except _DeadlineExceeded:
            error = TaskTimeout(task.name, task.timeout_seconds)
        except WorkflowCancelled:
            raise
        except Exception as exc:
            error = exc
        finally:
            context.detach()
            self._context = None

        if self._reboot_reason is not None:
            self._complete_for_reboot(task)
            return _Resolution.REBOOT, None
        if self._skip_reason is not None:
            self._logger.info(f"Task '{task.name}' skipped during execution: {self._skip_reason}")
            self._skip(task, self._skip_reason)
            return _Resolution.SKIPPED, None

        if error is None and result is False:
            error = TaskBodyError("Task reported failure", task.name)
        if error is not None:
            return None, error

        if result is not None and result is not True:
            self.record_output(task, "OUTPUT", str(result))
        self._complete(task)
        return _Resolution.COMPLETED, None

    async def _run_approval_gate(
        self, task: WorkflowTask
    ) -> Tuple[_Resolution, Optional[BaseException]]:
        task.attempts = 1
        self._begin(task)
        self.approvals.open(task)
        task.transition(TaskStatus.AWAITING_APPROVAL)
        task.progress_message = task.approval_message or "Waiting for approval"
        self._logger.info(f"Task '{task.name}' is waiting for approval")
        self._publish(
            EventKind.APPROVAL_REQUESTED,
            task,
            message=task.progress_message,
            timeout_seconds=task.approval_timeout_seconds,
            require_reason=task.require_reason,
        )

        try:
            decision = await self._supervise(
                self.approvals.wait_for_decision(task.name, task.approval_timeout_seconds),
                interrupt=self._interrupt,
            )
        except _Interrupted:
            self.approvals.discard(task.name)
            self._complete_for_reboot(task)
            return _Resolution.REBOOT, None
        except (WorkflowCancelled, asyncio.CancelledError):
            self.approvals.discard(task.name)
            raise
        if self._reboot_reason is not None:
            return _Resolution.REBOOT, None

        reason = task.approval_reason
        self._publish(
            EventKind.APPROVAL_DECIDED, task, decision=decision.value, reason=reason
        )
        if decision == ApprovalDecision.APPROVED:
            self._complete(task, f"Approved: {reason}" if reason else "Approved")
            return _Resolution.COMPLETED, None

        error: BaseException
        if decision == ApprovalDecision.REJECTED:
            message = f"Rejected: {reason}" if reason else "Rejected"
            error = ApprovalRejected(message, task.name, reason)
        else:
            error = ApprovalTimedOut(f"Approval timed out: {reason}", task.name, reason)
        self._fail(task, error)
        return _Resolution.FAILED, error

    async def _run_rollback(self, task: WorkflowTask) -> None:
        if task.rollback is None:
            return
        self._logger.info(f"Running rollback for task '{task.name}'")
        context = TaskExecutionContext(task, self)
        try:
            await self._supervise(
                invoke_body(task.rollback, context), timeout=task.timeout_seconds
            )
        except WorkflowCancelled:
            raise
        except Exception as exc:
            self._logger.error(f"Rollback for task '{task.name}' failed: {exc}")
        else:
            self._logger.info(f"Rollback for task '{task.name}' finished")
        finally:
            context.detach()

    # ------------------------------------------------------------------
    # Suspension
    async def _supervise(
        self,
        coro: Any,
        timeout: Optional[float] = None,
        interrupt: Optional[asyncio.Event] = None,
    ) -> Any:
        """Await ``coro`` under the run's cancel signal and an optional deadline.

        Raises:
            WorkflowCancelled: The run was cancelled first.
            _Interrupted: ``interrupt`` fired first.
            _DeadlineExceeded: ``timeout`` elapsed first.
        """
        if self._is_cancel_requested():
            coro.close()
            raise WorkflowCancelled("Task was cancelled")

        assert self._cancel_event is not None
        work = asyncio.ensure_future(coro)
        cancel_watch = asyncio.ensure_future(self._cancel_event.wait())
        watchers = {cancel_watch}
        interrupt_watch = None
        if interrupt is not None:
            interrupt_watch = asyncio.ensure_future(interrupt.wait())
            watchers.add(interrupt_watch)

        try:
            done, _ = await asyncio.wait(
                {work, *watchers},
                timeout=timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            for watcher in watchers:
                watcher.cancel()

        if cancel_watch in done or self._is_cancel_requested():
            await self._stop(work)
            raise WorkflowCancelled("Task was cancelled")
        if work in done:
            return work.result()
        await self._stop(work)
        if interrupt_watch is not None and interrupt_watch in done:
            raise _Interrupted()
        raise _DeadlineExceeded()

    async def _stop(self, work: asyncio.Future) -> None:
        if not work.done():
            work.cancel()
            done, _ = await asyncio.wait({work}, timeout=_STOP_GRACE_SECONDS)
            if not done:
                self._logger.warning("Task body did not stop after cancellation")
                return
        if not work.cancelled() and work.exception() is not None:
            self._logger.debug(f"Stopped body raised: {work.exception()}")

    def _is_cancel_requested(self) -> bool:
        return self._cancel_requested or (
            self._cancel_event is not None and self._cancel_event.is_set()
        )

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _signal(self, event: asyncio.Event) -> None:
        if self._loop is None:
            return
        if self._on_loop_thread():
            event.set()
        else:
            self._loop.call_soon_threadsafe(event.set)

    # ------------------------------------------------------------------
    # State changes
    def _begin(self, task: WorkflowTask) -> None:
        task.transition(TaskStatus.RUNNING)
        task.progress_percent = 0
        task.progress_message = "Running"
        self._logger.info(f"Task started: {task.name} ({task.display_title})")
        self._publish(EventKind.TASK_STARTED, task, title=task.display_title)

    def _complete(self, task: WorkflowTask, message: str = "Completed") -> None:
        task.progress_percent = 100
        task.progress_message = message
        task.error_message = None
        task.transition(TaskStatus.COMPLETED)
        self._logger.info(f"Task completed: {task.name}")
        self._publish(
            EventKind.TASK_COMPLETED,
            task,
            message=message,
            attempts=task.attempts,
            duration_seconds=self._duration(task),
        )

    def _complete_for_reboot(self, task: WorkflowTask) -> None:
        reason = self._reboot_reason
        self._logger.info(f"Task '{task.name}' stopped for reboot")
        if task.is_terminal:
            return
        self._complete(task, f"Completed (reboot: {reason})")

    def _skip(self, task: WorkflowTask, reason: str) -> None:
        task.progress_message = f"Skipped: {reason}"
        task.transition(TaskStatus.SKIPPED)
        self._publish(EventKind.TASK_SKIPPED, task, reason=reason)

    def _fail(self, task: WorkflowTask, error: BaseException) -> None:
        task.error_message = str(error) or type(error).__name__
        task.progress_message = "Failed"
        task.transition(TaskStatus.FAILED)
        self._logger.error(f"Task failed: {task.name}: {task.error_message}")
        self._publish(
            EventKind.TASK_FAILED,
            task,
            error=task.error_message,
            attempts=task.attempts,
        )

    def _mark_cancelled(self, run: WorkflowRun, task: Optional[WorkflowTask]) -> None:
        run.was_cancelled = True
        run.has_failed = True
        if task is not None and task.status in (
            TaskStatus.RUNNING,
            TaskStatus.AWAITING_APPROVAL,
        ):
            self._fail(task, WorkflowCancelled("Task was cancelled"))

    async def _begin_reboot_on_loop(self, reason: str) -> None:
        self._begin_reboot(reason)

    def _begin_reboot(self, reason: str) -> None:
        """Complete the current task, write the checkpoint, then interrupt the run.

        Runs on the event loop so task state has a single writer.
        """
        run = self.run_state
        if not self._executing or run is None:
            self._logger.warning(f"Ignoring reboot request while idle: {reason}")
            return
        if self._reboot_reason is not None:
            self._logger.info(f"Reboot already requested: {self._reboot_reason}")
            return

        self._reboot_reason = reason
        self._logger.info(f"Reboot requested: {reason}, stopping execution")
        task = run.current_task
        if task is not None and task.status in (
            TaskStatus.RUNNING,
            TaskStatus.AWAITING_APPROVAL,
        ):
            self._complete_for_reboot(task)
        self._persist_for_reboot(run)
        if self._interrupt is not None:
            self._interrupt.set()

    def _persist_for_reboot(self, run: WorkflowRun) -> Optional[str]:
        reason = self._reboot_reason
        run.reboot_pending = True
        run.reboot_reason = reason
        run.reboot_count += 1
        path = self._save_checkpoint(run)
        self._publish(EventKind.REBOOT_REQUESTED, reason=reason, checkpoint=path)
        return path

    def _save_checkpoint(self, run: WorkflowRun) -> Optional[str]:
        if self.checkpoints is None:
            return None
        return self.checkpoints.save(run, self.shared_data.snapshot(), run.wizard_inputs)

    @staticmethod
    def _duration(task: WorkflowTask) -> Optional[float]:
        duration = task.duration
        return duration.total_seconds() if duration is not None else None

    def _publish(
        self, kind: EventKind, task: Optional[WorkflowTask] = None, **data: Any
    ) -> None:
        event = WorkflowEvent(
            kind=kind,
            run_id=self.run_state.run_id if self.run_state is not None else "",
            task_name=task.name if task is not None else None,
            data=data,
        )
        try:
            self.events.publish(event)
        except Exception as exc:
            self._logger.error(f"Failed to publish {kind.value} event: {exc}")
