"""Tests for phasetrack.store (memory store, project files, watcher)."""

import json
import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from phasetrack.lib.config import AutoCompletionSettings, CompletionMode, save_settings
from phasetrack.lib.locking import LockTimeout, is_locked, project_lock
from phasetrack.lib.timeline import read_events
from phasetrack.lib.types import ItemStatus, WorkItem
from phasetrack.store import (
    ENGINE_SOURCE,
    EXTERNAL_SOURCE,
    MANUAL_SOURCE,
    PersistenceError,
    ProjectFiles,
    SnapshotWriter,
    WorkItemStore,
)
from phasetrack.store.watcher import StateFileWatcher
from phasetrack.workflow.changes import ChangeSet, EngineEvent, EventType


def _item(item_id, **kwargs):
    return WorkItem(id=item_id, title=item_id.title(), **kwargs)


class TestWorkItemStore:
    """Tests for the in-memory store."""

    def test_create_and_get(self):
        store = WorkItemStore()
        store.create(_item("a"))
        assert "a" in store
        assert store.get("a").title == "A"
        assert len(store) == 1

    def test_list_preserves_insertion_order(self):
        store = WorkItemStore([_item("b"), _item("a"), _item("c")])
        assert [i.id for i in store.list()] == ["b", "a", "c"]

    def test_duplicate_rejected(self):
        store = WorkItemStore([_item("a")])
        with pytest.raises(ValueError, match="already exists"):
            store.create(_item("a"))

    def test_empty_title_rejected(self):
        with pytest.raises(ValueError, match="Title is required"):
            WorkItemStore().create(WorkItem(id="a", title="  "))

    def test_duplicate_in_constructor(self):
        with pytest.raises(ValueError, match="Duplicate"):
            WorkItemStore([_item("a"), _item("a")])

    def test_get_returns_copy(self):
        store = WorkItemStore([_item("a")])
        item = store.get("a")
        item.tags.add("mutated")
        assert store.get("a").tags == set()

    def test_get_unknown_raises(self):
        with pytest.raises(KeyError):
            WorkItemStore().get("nope")

    def test_update(self):
        store = WorkItemStore([_item("a")])
        updated = store.update("a", {"status": ItemStatus.IN_PROGRESS, "assigned_to": "sam"})
        assert updated.status is ItemStatus.IN_PROGRESS
        assert store.get("a").assigned_to == "sam"

    def test_update_unknown_field(self):
        store = WorkItemStore([_item("a")])
        with pytest.raises(ValueError, match="Unknown work item fields"):
            store.update("a", {"colour": "red"})

    def test_update_id_not_editable(self):
        store = WorkItemStore([_item("a")])
        with pytest.raises(ValueError):
            store.update("a", {"id": "b"})

    def test_engine_cannot_move_phase(self):
        store = WorkItemStore([_item("a", phase_id="dev")])
        with pytest.raises(ValueError, match="manual edit"):
            store.update("a", {"phase_id": "release"}, source=ENGINE_SOURCE)
        assert store.get("a").phase_id == "dev"

    def test_engine_cannot_reopen(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED)])
        with pytest.raises(ValueError, match="cannot be reopened"):
            store.update("a", {"status": ItemStatus.PLANNED}, source=ENGINE_SOURCE)

    def test_manual_can_reopen(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED)])
        store.update("a", {"status": ItemStatus.PLANNED}, source=MANUAL_SOURCE)
        assert store.get("a").status is ItemStatus.PLANNED

    def test_delete(self):
        store = WorkItemStore([_item("a")])
        store.delete("a")
        assert "a" not in store
        with pytest.raises(KeyError):
            store.delete("a")

    def test_notifications(self):
        store = WorkItemStore()
        seen = []
        unsubscribe = store.on_change(seen.append)

        store.create(_item("a"))
        store.update("a", {"title": "Renamed"}, source=ENGINE_SOURCE)
        store.delete("a")
        store.merge([_item("b")])
        unsubscribe()
        store.create(_item("c"))

        assert [(c.action, c.item_id, c.source) for c in seen] == [
            ("create", "a", MANUAL_SOURCE),
            ("update", "a", ENGINE_SOURCE),
            ("delete", "a", MANUAL_SOURCE),
            ("reload", None, EXTERNAL_SOURCE),
        ]

    def test_failing_listener_logged(self, caplog):
        store = WorkItemStore()
        store.on_change(MagicMock(side_effect=RuntimeError("boom")))
        store.create(_item("a"))
        assert "a" in store
        assert "Change listener failed" in caplog.text

    def test_modify_builds_from_current_state(self):
        store = WorkItemStore([_item("a", notes=["one"])])
        store.update("a", {"notes": ["one", "two"]})
        updated = store.modify("a", lambda current: {"notes": current.notes + ["three"]}, source=ENGINE_SOURCE)
        assert updated.notes == ["one", "two", "three"]
        assert store.get("a").notes == ["one", "two", "three"]

    def test_modify_can_decline(self):
        store = WorkItemStore([_item("a")])
        seen = []
        store.on_change(seen.append)
        assert store.modify("a", lambda current: None) is None
        assert seen == []

    def test_modify_keeps_engine_rules(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED)])
        with pytest.raises(ValueError, match="cannot be reopened"):
            store.modify("a", lambda current: {"status": ItemStatus.PLANNED}, source=ENGINE_SOURCE)


class TestMerge:
    """Tests for folding external edits into the store."""

    def test_incoming_items_win(self):
        store = WorkItemStore([_item("a"), _item("gone")])
        assert store.merge([_item("a", assigned_to="sam"), _item("new")]) == []
        assert [i.id for i in store.list()] == ["a", "new"]
        assert store.get("a").assigned_to == "sam"

    def test_stale_copy_does_not_reopen(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED, notes=["[t] Auto-completed"])])
        assert store.merge([_item("a", status=ItemStatus.PLANNED)]) == ["a"]
        assert store.get("a").is_completed
        assert store.get("a").notes == ["[t] Auto-completed"]

    def test_stale_copy_does_not_reopen_manual_completion(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED)])
        assert store.merge([_item("a", status=ItemStatus.IN_PROGRESS)]) == ["a"]
        assert store.get("a").is_completed

    def test_reopen_that_extends_notes_taken(self):
        store = WorkItemStore([_item("a", status=ItemStatus.COMPLETED, notes=["done"])])
        assert store.merge([_item("a", status=ItemStatus.PLANNED, notes=["done", "reopened"])]) == []
        assert store.get("a").status is ItemStatus.PLANNED

    def test_external_completion_taken(self):
        store = WorkItemStore([_item("a")])
        store.merge([_item("a", status=ItemStatus.COMPLETED)])
        assert store.get("a").is_completed


@pytest.fixture
def files(tmp_path):
    return ProjectFiles(tmp_path, "web")


class TestProjectFiles:
    """Tests for project persistence."""

    def test_init_creates_layout(self, files):
        snapshot = files.init()
        assert (files.project_dir / "state.json").exists()
        assert (files.project_dir / "phases.yaml").exists()
        assert (files.project_dir / "settings.env").exists()
        assert snapshot.tracker.current_phase_id == "planning"

    def test_init_twice_fails(self, files):
        files.init()
        with pytest.raises(PersistenceError, match="Already initialised"):
            files.init()

    def test_write_and_load(self, files):
        snapshot = files.init()
        snapshot.store.create(_item("a", phase_id="planning", tags={"x"}))
        snapshot.graph.require("planning").criteria[0].satisfied = True
        snapshot.tracker.fired_triggers.add("t:a")
        files.write(snapshot)

        loaded = ProjectFiles(files.root, "web").load()
        assert loaded.project_id == "web"
        assert loaded.store.get("a").tags == {"x"}
        assert loaded.graph.require("planning").criteria[0].satisfied
        assert loaded.tracker.fired_triggers == {"t:a"}

    def test_state_json_is_camel_case(self, files):
        snapshot = files.init()
        snapshot.store.create(_item("a", phase_id="planning"))
        files.write(snapshot)
        data = json.loads(files.state_path.read_text())
        assert data["version"] == 1
        assert data["workItems"][0]["phaseId"] == "planning"
        assert data["tracker"]["currentPhaseId"] == "planning"

    def test_settings_env_overrides_stored(self, files):
        files.init()
        save_settings(files.project_dir, AutoCompletionSettings(mode=CompletionMode.STRICT))
        assert files.load().settings.mode is CompletionMode.STRICT

    def test_load_without_state_uses_phases(self, files):
        files.project_dir.mkdir(parents=True)
        snapshot = files.load()
        assert snapshot.graph.initial().id == "planning"
        assert len(snapshot.store) == 0

    def test_load_corrupt_state(self, files):
        files.init()
        files.state_path.write_text("{not json")
        with pytest.raises(PersistenceError, match="Failed to load state"):
            files.load()

    def test_load_schema_violation(self, files):
        files.init()
        files.state_path.write_text(json.dumps({"version": 2}))
        with pytest.raises(PersistenceError):
            files.load()

    def test_write_lock_timeout(self, files):
        snapshot = files.init()
        with patch("phasetrack.store.files.project_lock", side_effect=LockTimeout("busy")):
            with pytest.raises(PersistenceError, match="busy"):
                files.write(snapshot)

    def test_is_own_write(self, files):
        files.init()
        assert files.is_own_write()
        files.state_path.write_text(files.state_path.read_text() + " ")
        assert not files.is_own_write()

    def test_invalid_project_id(self, tmp_path):
        from phasetrack.lib.config import ConfigurationError
        with pytest.raises(ConfigurationError):
            ProjectFiles(tmp_path, "Not Valid")

    def test_own_write_recognised_when_file_lands(self, files):
        snapshot = files.init()
        snapshot.store.create(_item("a"))
        seen = []
        real_replace = os.replace

        def replace_and_check(src, dst):
            real_replace(src, dst)
            seen.append(files.is_own_write())

        with patch("phasetrack.store.files.os.replace", side_effect=replace_and_check):
            files.write(snapshot)
        assert seen == [True]

    def test_failed_write_keeps_previous_digest(self, files):
        snapshot = files.init()
        snapshot.store.create(_item("a"))
        with patch("phasetrack.store.files.os.replace", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceError, match="read-only"):
                files.write(snapshot)
        assert files.is_own_write()

    def test_write_rejects_foreign_project(self, files):
        snapshot = files.init()
        snapshot.project_id = "api"
        with pytest.raises(PersistenceError, match="expected 'web'"):
            files.write(snapshot)

    def test_edit_holds_lock(self, files):
        files.init()
        seen = []
        files.edit(lambda snapshot: seen.append(is_locked(files.project_dir)))
        assert seen == [True]
        assert not is_locked(files.project_dir)

    def test_edit_failure_writes_nothing(self, files):
        files.init()
        before = files.state_path.read_text()

        def fail(snapshot):
            snapshot.store.create(_item("a"))
            raise ValueError("nope")

        with pytest.raises(ValueError, match="nope"):
            files.edit(fail)
        assert files.state_path.read_text() == before


def _complete(snapshot, item_id):
    snapshot.store.update(item_id, {
        "status": ItemStatus.COMPLETED,
        "auto_completed": True,
        "notes": ["[2024-03-01T12:00:00] Auto-completed by trigger 'deps'"],
    }, source=ENGINE_SOURCE)
    return ChangeSet(project_id="web", items={item_id: {"status": "completed"}})


class TestConcurrentProcesses:
    """A running pt and one-shot pt commands sharing state.json."""

    @pytest.fixture
    def runner(self, files):
        files.init()
        files.edit(lambda snapshot: snapshot.store.create(_item("api", phase_id="planning")))
        runner_files = ProjectFiles(files.root, "web")
        return runner_files, runner_files.load()

    def test_command_after_runner_save_keeps_completion(self, files, runner):
        runner_files, snapshot = runner
        SnapshotWriter(runner_files, snapshot).save(_complete(snapshot, "api"))

        ProjectFiles(files.root, "web").edit(lambda s: s.store.create(_item("docs")))

        assert StateFileWatcher(runner_files, snapshot.store).reload()
        assert snapshot.store.get("api").is_completed
        assert "docs" in snapshot.store
        assert ProjectFiles(files.root, "web").load().store.get("api").is_completed

    def test_stale_external_copy_does_not_reopen(self, files, runner, caplog):
        runner_files, snapshot = runner
        stale = json.loads(files.state_path.read_text())
        SnapshotWriter(runner_files, snapshot).save(_complete(snapshot, "api"))

        stale["workItems"].append(_item("docs").to_dict())
        files.state_path.write_text(json.dumps(stale))

        assert StateFileWatcher(runner_files, snapshot.store).reload()
        assert snapshot.store.get("api").is_completed
        assert len(snapshot.store.get("api").notes) == 1
        assert "docs" in snapshot.store
        assert "would have reopened: api" in caplog.text

    def test_writer_merges_edit_not_yet_seen(self, files, runner):
        runner_files, snapshot = runner
        ProjectFiles(files.root, "web").edit(lambda s: s.store.create(_item("docs")))

        SnapshotWriter(runner_files, snapshot).save(_complete(snapshot, "api"))

        on_disk = ProjectFiles(files.root, "web").load().store
        assert on_disk.get("api").is_completed
        assert "docs" in on_disk
        assert "docs" in snapshot.store
        assert not StateFileWatcher(runner_files, snapshot.store).reload()


class TestSnapshotWriter:
    """Tests for the persistence collaborator."""

    def _event(self):
        return EngineEvent(EventType.CRITERION_SATISFIED, "Criterion x satisfied", datetime(2024, 3, 1))

    def test_empty_changes_not_written(self, files):
        snapshot = files.init()
        before = files.state_path.stat().st_mtime_ns
        SnapshotWriter(files, snapshot).save(ChangeSet(project_id="web"))
        assert files.state_path.stat().st_mtime_ns == before
        assert read_events(files.project_dir) == []

    def test_changes_written_with_events(self, files):
        snapshot = files.init()
        snapshot.store.create(_item("a"))
        changes = ChangeSet(project_id="web", criteria=[("planning", "x")], events=[self._event()])
        SnapshotWriter(files, snapshot).save(changes)

        assert json.loads(files.state_path.read_text())["workItems"][0]["id"] == "a"
        events = read_events(files.project_dir)
        assert [e.summary for e in events] == ["Criterion x satisfied"]

    def test_diagnostics_only_appends_timeline(self, files):
        snapshot = files.init()
        diag = EngineEvent(EventType.RULE_ERROR, "Rule 'r' failed", datetime(2024, 3, 1))
        with patch.object(files, "write") as mock_write:
            SnapshotWriter(files, snapshot).save(ChangeSet(project_id="web", diagnostics=[diag]))
        mock_write.assert_not_called()
        assert read_events(files.project_dir)[0].type is EventType.RULE_ERROR


class TestLocking:
    """Tests for the project lock."""

    def test_lock_and_release(self, tmp_path):
        with project_lock(tmp_path):
            assert (tmp_path / ".lock").exists()
        assert not is_locked(tmp_path)

    def test_unlocked_when_no_file(self, tmp_path):
        assert not is_locked(tmp_path)


class TestStateFileWatcher:
    """Tests for reloading external edits."""

    def test_own_write_ignored(self, files):
        snapshot = files.init()
        watcher = StateFileWatcher(files, snapshot.store)
        assert not watcher.reload()

    def test_external_edit_reloads(self, files):
        snapshot = files.init()
        data = json.loads(files.state_path.read_text())
        data["workItems"].append(_item("ext", status=ItemStatus.COMPLETED).to_dict())
        files.state_path.write_text(json.dumps(data))

        seen = []
        snapshot.store.on_change(seen.append)
        watcher = StateFileWatcher(files, snapshot.store)

        assert watcher.reload()
        assert snapshot.store.get("ext").status is ItemStatus.COMPLETED
        assert seen[0].source == EXTERNAL_SOURCE

    def test_unreadable_edit_ignored(self, files, caplog):
        snapshot = files.init()
        snapshot.store.create(_item("keep"))
        files.state_path.write_text("{broken")
        watcher = StateFileWatcher(files, snapshot.store)
        assert not watcher.reload()
        assert "keep" in snapshot.store
        assert "Ignoring unreadable external edit" in caplog.text

    def test_event_handler_filters_path(self, files):
        from phasetrack.store.watcher import _StateEventHandler

        callback = MagicMock()
        handler = _StateEventHandler(files.state_path, callback)
        other = MagicMock(is_directory=False, src_path=str(files.project_dir / "events.jsonl"))
        handler.on_modified(other)
        callback.assert_not_called()

        state = MagicMock(is_directory=False, src_path=str(files.state_path))
        handler.on_modified(state)
        callback.assert_called_once()

    def test_moved_onto_state_file(self, files):
        from phasetrack.store.watcher import _StateEventHandler

        callback = MagicMock()
        handler = _StateEventHandler(files.state_path, callback)
        moved = MagicMock(is_directory=False, dest_path=str(files.state_path))
        handler.on_moved(moved)
        callback.assert_called_once()

    def test_merge_logged_with_store_tag(self, files, caplog):
        snapshot = files.init()
        data = json.loads(files.state_path.read_text())
        data["workItems"].append(_item("ext").to_dict())
        files.state_path.write_text(json.dumps(data))

        with caplog.at_level("INFO", logger="phasetrack.store.files"):
            assert StateFileWatcher(files, snapshot.store).reload()
        assert "[STORE] Merged external edit of 'web' (1 work items)" in caplog.text
