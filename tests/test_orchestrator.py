"""End-to-end tests for sequential task execution."""

import asyncio
import logging
import time

import pytest

from waypoint import (
    ErrorAction,
    EventKind,
    InMemoryEventBus,
    RunOutcome,
    TaskOrchestrator,
    TaskStatus,
    WorkflowRun,
    WorkflowTask,
)
from waypoint.errors import DefinitionError
from waypoint.persistence import CheckpointManager, InMemoryCheckpointStore


def _task(name, body=None, **kwargs) -> WorkflowTask:
    kwargs.setdefault("retry_delay_seconds", 0)
    return WorkflowTask(name=name, body=body, **kwargs)


@pytest.mark.asyncio
async def test_successful_run_completes_every_task():
    bus = InMemoryEventBus()
    orchestrator = TaskOrchestrator(events=bus, title="Setup")

    def chatty(context):
        context.write_output("step one")
        context.write_output("step two")

    tasks = [_task("a", chatty), _task("b"), _task("c", lambda context: True)]
    result = await orchestrator.run(tasks)

    assert result.outcome == RunOutcome.COMPLETED_SUCCESSFULLY
    assert result.succeeded
    assert result.completed == 3
    assert all(task.status == TaskStatus.COMPLETED for task in tasks)
    assert all(task.progress_percent == 100 for task in tasks)
    assert all(task.progress_message == "Completed" for task in tasks)
    assert all(task.duration is not None for task in tasks)
    assert tasks[0].output_lines == ["[OUTPUT] step one", "[OUTPUT] step two"]
    assert orchestrator.run_state.is_completed
    assert not orchestrator.run_state.has_failed

    kinds = [event.kind for event in bus.history]
    assert kinds[0] == EventKind.RUN_STARTED
    assert kinds[-1] == EventKind.RUN_FINISHED
    assert kinds.count(EventKind.TASK_COMPLETED) == 3
    assert bus.history[-1].data["outcome"] == "CompletedSuccessfully"


@pytest.mark.asyncio
async def test_tasks_run_in_order_field_sequence():
    seen = []

    def record(context):
        seen.append((context.task_name, context.current_task_index, context.total_task_count))

    tasks = [
        _task("third", record, order=3),
        _task("first", record, order=1),
        _task("second", record, order=2),
    ]
    await TaskOrchestrator().run(tasks)

    assert seen == [("first", 0, 3), ("second", 1, 3), ("third", 2, 3)]


@pytest.mark.asyncio
async def test_async_bodies_and_return_values():
    async def produce(context):
        await asyncio.sleep(0)
        return "build 42"

    tasks = [_task("produce", produce), _task("quiet", lambda context: None)]
    result = await TaskOrchestrator().run(tasks)

    assert result.succeeded
    assert tasks[0].output_lines == ["[OUTPUT] build 42"]
    assert tasks[1].output_lines == []


@pytest.mark.asyncio
async def test_returning_false_is_a_failure():
    task = _task("check", lambda context: False)
    result = await TaskOrchestrator().run([task])

    assert result.outcome == RunOutcome.COMPLETED_WITH_FAILURES
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Task reported failure"


@pytest.mark.asyncio
async def test_true_skip_condition_never_runs_body():
    calls = []
    tasks = [
        _task("flag", lambda context: context.set_data("skip_cleanup", True)),
        _task(
            "prod_only",
            lambda context: calls.append("prod_only"),
            skip_condition="Environment != 'prod'",
            skip_reason="Only runs in prod",
        ),
        _task(
            "cleanup",
            lambda context: calls.append("cleanup"),
            skip_condition="WorkflowData['skip_cleanup']",
            retry_count=3,
            timeout_seconds=1,
        ),
    ]
    bus = InMemoryEventBus()
    result = await TaskOrchestrator(events=bus, wizard_inputs={"Environment": "dev"}).run(tasks)

    assert calls == []
    assert result.succeeded
    assert result.skipped == 2
    assert tasks[1].status == TaskStatus.SKIPPED
    assert tasks[1].progress_message == "Skipped: Only runs in prod"
    assert tasks[2].progress_message == "Skipped: Condition not met"
    assert tasks[2].attempts == 0
    assert [e.task_name for e in bus.events_of(EventKind.TASK_SKIPPED)] == ["prod_only", "cleanup"]


@pytest.mark.asyncio
async def test_broken_skip_condition_runs_the_task(caplog):
    calls = []
    task = _task("t", lambda context: calls.append(1), skip_condition="Undefined == 1")

    with caplog.at_level(logging.WARNING):
        result = await TaskOrchestrator().run([task])

    assert calls == [1]
    assert result.succeeded
    assert "Failed to evaluate skip condition" in caplog.text


@pytest.mark.asyncio
async def test_failing_body_is_attempted_retry_count_plus_one_times():
    attempts = []

    def always_fails(context):
        attempts.append(1)
        raise RuntimeError("disk full")

    bus = InMemoryEventBus()
    tasks = [_task("install", always_fails, retry_count=2), _task("after")]
    result = await TaskOrchestrator(events=bus).run(tasks)

    assert len(attempts) == 3
    assert tasks[0].attempts == 3
    assert tasks[0].status == TaskStatus.FAILED
    assert tasks[0].error_message == "disk full"
    assert tasks[1].status == TaskStatus.PENDING
    assert result.outcome == RunOutcome.COMPLETED_WITH_FAILURES
    assert result.aborted
    assert result.failed_task == "install"
    assert isinstance(result.error, RuntimeError)
    assert result.pending == 1
    assert [e.data["attempt"] for e in bus.events_of(EventKind.TASK_RETRYING)] == [2, 3]


@pytest.mark.asyncio
async def test_retry_recovers_and_resets_progress():
    attempts = []
    progress_at_retry = []
    bus = InMemoryEventBus()

    def flaky(context):
        attempts.append(1)
        context.write_output(f"attempt {len(attempts)}")
        if len(attempts) < 3:
            raise RuntimeError("not yet")

    task = _task("flaky", flaky, retry_count=2)

    def on_event(event):
        if event.kind == EventKind.TASK_RETRYING:
            progress_at_retry.append((task.progress_percent, task.progress_message))

    bus.subscribe(on_event)
    result = await TaskOrchestrator(events=bus).run([task])

    assert result.succeeded
    assert task.attempts == 3
    assert task.progress_percent == 100
    assert len(task.output_lines) == 3
    assert progress_at_retry == [
        (0, "Retrying (attempt 2/3)..."),
        (0, "Retrying (attempt 3/3)..."),
    ]


@pytest.mark.asyncio
async def test_retry_delay_is_honoured():
    attempts = []

    def flaky(context):
        attempts.append(time.monotonic())
        if len(attempts) == 1:
            raise RuntimeError("first try")

    task = _task("flaky", flaky, retry_count=1, retry_delay_seconds=0.2)
    result = await TaskOrchestrator().run([task])

    assert result.succeeded
    assert attempts[1] - attempts[0] >= 0.19


@pytest.mark.asyncio
async def test_async_timeout_is_a_failed_attempt():
    attempts = []

    async def hang(context):
        attempts.append(1)
        await asyncio.sleep(10)

    task = _task("hang", hang, timeout_seconds=0.1, retry_count=1)
    started = time.monotonic()
    result = await TaskOrchestrator().run([task])

    assert time.monotonic() - started < 5
    assert len(attempts) == 2
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Task timed out after 0.1 seconds"
    assert result.aborted


@pytest.mark.asyncio
async def test_sync_timeout_detaches_the_body():
    def stubborn(context):
        while not context.cancellation_requested:
            time.sleep(0.01)
        context.write_output("too late")
        context.set_data("late", True)

    task = _task("stubborn", stubborn, timeout_seconds=0.1, continue_on_error=True)
    orchestrator = TaskOrchestrator()
    result = await orchestrator.run([task, _task("next")])
    await asyncio.sleep(0.1)

    assert task.status == TaskStatus.FAILED
    assert "timed out" in task.error_message
    assert "[OUTPUT] too late" not in task.output_lines
    assert not orchestrator.shared_data.has("late")
    assert result.completed == 1


@pytest.mark.asyncio
async def test_run_level_continue_on_error():
    tasks = [
        _task("a"),
        _task("b", lambda context: 1 / 0),
        _task("c"),
    ]
    orchestrator = TaskOrchestrator(error_action=ErrorAction.CONTINUE)
    result = await orchestrator.run(tasks)

    assert result.outcome == RunOutcome.COMPLETED_WITH_FAILURES
    assert not result.aborted
    assert (result.completed, result.failed) == (2, 1)
    assert tasks[2].status == TaskStatus.COMPLETED
    assert orchestrator.run_state.has_failed
    assert "division by zero" in tasks[1].error_message


@pytest.mark.asyncio
async def test_task_level_continue_on_error():
    tasks = [
        _task("optional", lambda context: False, continue_on_error=True),
        _task("required", lambda context: False),
        _task("never"),
    ]
    result = await TaskOrchestrator().run(tasks)

    assert tasks[0].status == TaskStatus.FAILED
    assert tasks[1].status == TaskStatus.FAILED
    assert tasks[2].status == TaskStatus.PENDING
    assert result.failed_task == "required"


@pytest.mark.asyncio
async def test_in_body_skip_wins_over_failure_and_stops_retries():
    attempts = []

    def not_applicable(context):
        attempts.append(1)
        context.skip_task("Feature disabled")
        raise RuntimeError("ignored")

    task = _task("feature", not_applicable, retry_count=3)
    result = await TaskOrchestrator().run([task])

    assert attempts == [1]
    assert task.status == TaskStatus.SKIPPED
    assert task.progress_message == "Skipped: Feature disabled"
    assert result.succeeded


@pytest.mark.asyncio
async def test_manual_progress_is_finalized_on_completion():
    def manual(context):
        context.update_progress(30, "Downloading")
        context.write_output("still downloading")
        assert context.progress_mode.value == "manual"

    task = _task("manual", manual)
    await TaskOrchestrator().run([task])

    assert task.progress_percent == 100
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_rollback_runs_once_after_final_failure(caplog):
    rolled_back = []

    def install(context):
        raise RuntimeError("broken package")

    def undo(context):
        rolled_back.append(context.task_name)

    def bad_undo(context):
        raise RuntimeError("rollback exploded")

    tasks = [
        _task("install", install, rollback=undo, retry_count=1, continue_on_error=True),
        _task("configure", install, rollback=bad_undo, continue_on_error=True),
        _task("fine", rollback=undo),
    ]
    with caplog.at_level(logging.ERROR):
        result = await TaskOrchestrator().run(tasks)

    assert rolled_back == ["install"]
    assert tasks[1].status == TaskStatus.FAILED
    assert tasks[1].error_message == "broken package"
    assert "Rollback for task 'configure' failed" in caplog.text
    assert result.completed == 1


@pytest.mark.asyncio
async def test_run_refuses_to_start_twice():
    orchestrator = TaskOrchestrator()
    started = asyncio.Event()
    release = asyncio.Event()

    async def wait(context):
        started.set()
        await release.wait()

    first = asyncio.create_task(orchestrator.run([_task("a", wait)]))
    await started.wait()
    assert orchestrator.is_executing

    with pytest.raises(RuntimeError):
        await orchestrator.run([_task("b")])

    release.set()
    result = await first
    assert result.succeeded
    assert not orchestrator.is_executing


@pytest.mark.asyncio
async def test_duplicate_task_names_are_rejected():
    with pytest.raises(DefinitionError):
        await TaskOrchestrator().run([_task("a"), _task("a")])


@pytest.mark.asyncio
async def test_successful_run_clears_an_old_checkpoint():
    store = InMemoryCheckpointStore()
    manager = CheckpointManager(store)
    stale_tasks = [_task("a", status=TaskStatus.COMPLETED), _task("b")]
    manager.save(WorkflowRun(title="Setup", tasks=stale_tasks), {}, {})
    assert store.exists()

    result = await TaskOrchestrator(checkpoints=manager, title="Setup").run(
        [_task("a"), _task("b")], resume=False
    )

    assert result.succeeded
    assert not store.exists()


@pytest.mark.asyncio
async def test_injected_logger_is_used(caplog):
    logger = logging.getLogger("custom.workflow")
    with caplog.at_level(logging.INFO, logger="custom.workflow"):
        await TaskOrchestrator(logger=logger).run([_task("a")])

    assert any(record.name == "custom.workflow" for record in caplog.records)
    assert "Task completed: a" in caplog.text


@pytest.mark.asyncio
async def test_progress_events_carry_overall_run_progress():
    bus = InMemoryEventBus()

    def halfway(context):
        context.update_progress(50, "Halfway")

    await TaskOrchestrator(events=bus).run([_task("a"), _task("b", halfway)])

    overall = [
        (event.task_name, event.data["overall_percent"])
        for event in bus.events_of(EventKind.TASK_PROGRESS)
    ]
    assert overall == [("a", 25.0), ("b", 75.0)]
