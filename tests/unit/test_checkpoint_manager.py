"""Tests for building, saving and restoring checkpoints."""

from waypoint.contracts import TaskStatus, WorkflowRun, WorkflowTask
from waypoint.data_store import SharedDataStore
from waypoint.persistence import CheckpointManager, FileCheckpointStore, InMemoryCheckpointStore


def _run() -> WorkflowRun:
    tasks = [
        WorkflowTask(name="prepare", status=TaskStatus.COMPLETED, progress_percent=100),
        WorkflowTask(name="skipme", status=TaskStatus.SKIPPED, progress_message="Skipped: n/a"),
        WorkflowTask(name="install", status=TaskStatus.FAILED, error_message="boom"),
        WorkflowTask(name="verify"),
    ]
    return WorkflowRun(title="Provision", tasks=tasks, wizard_inputs={"Environment": "dev"})


def test_build_points_at_first_unfinished_task():
    manager = CheckpointManager(InMemoryCheckpointStore())
    run = _run()

    checkpoint = manager.build(run, {"token": "abc"}, run.wizard_inputs)

    assert checkpoint.current_index == 2
    assert checkpoint.title == "Provision"
    assert [t.name for t in checkpoint.tasks] == ["prepare", "skipme", "install", "verify"]
    assert checkpoint.shared_data == {"token": "abc"}
    assert checkpoint.saved_at is not None


def test_unserializable_values_do_not_break_save(tmp_path):
    manager = CheckpointManager(FileCheckpointStore(tmp_path / "cp.json"))
    run = _run()

    location = manager.save(run, {"when": object(), "path": tmp_path}, {})

    assert location == str(tmp_path / "cp.json")
    assert manager.load().shared_data["path"] == str(tmp_path)


def test_save_failure_returns_none(tmp_path, caplog):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    manager = CheckpointManager(FileCheckpointStore(blocker / "cp.json"))

    assert manager.save(_run(), {}, {}) is None
    assert "Failed to save workflow state" in caplog.text


def test_load_treats_corrupt_file_as_absent(tmp_path, caplog):
    path = tmp_path / "cp.json"
    path.write_text("garbage", encoding="utf-8")
    manager = CheckpointManager(FileCheckpointStore(path))

    assert manager.load() is None
    assert "Ignoring unreadable checkpoint" in caplog.text


def test_apply_restores_done_tasks_and_resets_others():
    store = InMemoryCheckpointStore()
    manager = CheckpointManager(store)
    saved_run = _run()
    saved_run.reboot_count = 2
    manager.save(saved_run, {"token": "abc"}, {"Environment": "prod", "Saved": True})

    fresh = WorkflowRun(
        title="Provision",
        tasks=[
            WorkflowTask(name="prepare"),
            WorkflowTask(name="skipme"),
            WorkflowTask(name="install"),
            WorkflowTask(name="verify"),
        ],
        wizard_inputs={"Environment": "dev", "Fresh": 1},
    )
    shared = SharedDataStore({"stale": True})
    checkpoint = manager.load()

    assert CheckpointManager.matches(checkpoint, fresh)
    resume_index = manager.apply(checkpoint, fresh, shared)

    assert resume_index == 2
    assert fresh.tasks[0].status == TaskStatus.COMPLETED
    assert fresh.tasks[1].status == TaskStatus.SKIPPED
    assert fresh.tasks[1].progress_message == "Skipped: n/a"
    assert fresh.tasks[2].status == TaskStatus.PENDING
    assert fresh.tasks[2].error_message is None
    assert shared.snapshot() == {"token": "abc"}
    assert fresh.wizard_inputs == {"Environment": "prod", "Saved": True, "Fresh": 1}
    assert fresh.run_id == saved_run.run_id
    assert fresh.reboot_count == 2


def test_matches_rejects_other_workflows():
    manager = CheckpointManager(InMemoryCheckpointStore())
    checkpoint = manager.build(_run(), {}, {})

    renamed = _run()
    renamed.title = "Other"
    assert not CheckpointManager.matches(checkpoint, renamed)

    changed = _run()
    changed.tasks.append(WorkflowTask(name="extra"))
    assert not CheckpointManager.matches(checkpoint, changed)


def test_clear():
    store = InMemoryCheckpointStore()
    manager = CheckpointManager(store)
    manager.save(_run(), {}, {})

    assert manager.exists()
    assert manager.clear() is True
    assert not manager.exists()
    assert manager.clear() is False
