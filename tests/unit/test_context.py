"""Tests for the execution context handed to task bodies."""

from typing import Any, List, Optional, Tuple

import pytest

from waypoint.context import ProgressMode, TaskExecutionContext
from waypoint.contracts import WorkflowTask
from waypoint.data_store import SharedDataStore


class RecordingController:
    def __init__(self) -> None:
        self.shared_data = SharedDataStore()
        self.wizard_inputs = {"Environment": "dev"}
        self.current_task_index = 2
        self.total_task_count = 5
        self.outputs: List[Tuple[str, str]] = []
        self.progress: List[Tuple[Optional[int], Optional[str]]] = []
        self.skips: List[str] = []
        self.reboots: List[str] = []

    def record_output(self, task: WorkflowTask, level: str, message: str) -> None:
        task.add_output_line(level, message)
        self.outputs.append((level, message))

    def record_progress(self, task: WorkflowTask, percent: Any, message: Any) -> None:
        if percent is not None:
            task.progress_percent = percent
        if message is not None:
            task.progress_message = message
        self.progress.append((percent, message))

    def request_skip(self, reason: str) -> None:
        self.skips.append(reason)

    def request_reboot(self, reason: str) -> None:
        self.reboots.append(reason)


@pytest.fixture
def controller():
    return RecordingController()


@pytest.fixture
def task():
    return WorkflowTask(name="install", title="Install packages", arguments={"pkg": "nginx"})


def test_auto_progress_advances_and_caps(controller, task):
    context = TaskExecutionContext(task, controller)

    percents = []
    for i in range(12):
        context.write_output(f"line {i}")
        percents.append(task.progress_percent)

    assert context.progress_mode == ProgressMode.AUTO
    assert percents[:3] == [15, 25, 35]
    assert percents[-1] == 90
    assert max(percents) == 90
    assert task.output_lines[0] == "[OUTPUT] line 0"
    assert task.progress_message == "line 11"


def test_manual_progress_disables_auto_progress(controller, task):
    context = TaskExecutionContext(task, controller)
    context.write_output("first")
    context.update_progress(40, "Downloading")
    context.write_output("second")
    context.write_output("third")

    assert context.progress_mode == ProgressMode.MANUAL
    assert task.progress_percent == 40
    assert task.progress_message == "Downloading"
    assert len(task.output_lines) == 3


def test_update_progress_clamps(controller, task):
    context = TaskExecutionContext(task, controller)
    context.update_progress(150)
    assert task.progress_percent == 100
    context.update_progress(-5)
    assert task.progress_percent == 0


def test_set_status_changes_message_only(controller, task):
    context = TaskExecutionContext(task, controller)
    task.progress_percent = 30
    context.set_status("Waiting for service")

    assert task.progress_percent == 30
    assert task.progress_message == "Waiting for service"


def test_shared_data_and_wizard_values(controller, task):
    context = TaskExecutionContext(task, controller)
    context.set_data("token", "abc")

    assert context.get_data("token") == "abc"
    assert context.get_data("missing", 1) == 1
    assert context.has_data("token")
    assert context.get_data_keys() == ["token"]
    assert context.get_wizard_value("Environment") == "dev"
    assert context.get_wizard_value("Missing", "x") == "x"
    assert context.arguments["pkg"] == "nginx"
    assert context.task_name == "install"
    assert context.task_title == "Install packages"
    assert context.current_task_index == 2
    assert context.total_task_count == 5

    with pytest.raises(TypeError):
        context.wizard_inputs["Environment"] = "prod"


def test_flow_control_defaults(controller, task):
    context = TaskExecutionContext(task, controller)
    context.skip_task()
    context.request_reboot()

    assert controller.skips == ["Skipped by script"]
    assert controller.reboots == ["Reboot required to continue"]


def test_detached_context_ignores_calls(controller, task):
    context = TaskExecutionContext(task, controller)
    context.detach()

    context.write_output("late")
    context.update_progress(80)
    context.set_data("late", True)
    context.skip_task("late")
    context.request_reboot("late")

    assert context.cancellation_requested
    assert controller.outputs == []
    assert controller.progress == []
    assert not controller.shared_data.has("late")
    assert controller.skips == []
    assert controller.reboots == []
