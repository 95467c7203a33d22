"""Tests for the command/query façade."""
import logging
import time

import pytest

from trekker_core import (
    Tracker,
    ValidationError,
    NotFoundError,
    ImmutableFieldError,
    InvalidTransitionError,
    BlockedByDependencyError,
)


class TestReferenceScenario:
    """Walk through login work end to end."""

    def test_login_epic(self, tracker):
        e1 = tracker.create_epic("Auth")
        t1 = tracker.create_task("Implement login", epic_id=e1.id)
        t2 = tracker.create_task("Add tests", epic_id=e1.id)
        tracker.add_dependency(t2.id, t1.id)

        assert [e.id for e in tracker.ready()] == [t1.id]

        with pytest.raises(BlockedByDependencyError) as exc_info:
            tracker.update(t2.id, status="in_progress")
        assert exc_info.value.blocking_ids == [t1.id]
        assert str(exc_info.value) == f"task {t2.id} blocked by incomplete dependency {t1.id}"

        tracker.update(t1.id, status="completed")
        assert [e.id for e in tracker.ready()] == [t2.id]

        tracker.update(t2.id, status="completed")
        result = tracker.complete_epic(e1.id)

        assert result.epic.status == "completed"
        assert result.archived == []
        assert len(tracker.history(e1.id)) == 2


class TestCreate:
    """Test creation and validation."""

    def test_ids_and_defaults(self, tracker, epic):
        task = tracker.create_task("Implement login", epic_id=epic.id)
        sub = tracker.create_subtask("Write form", task_id=task.id, priority=0)
        comment = tracker.add_comment(task.id, author="alice", body="hi")

        assert epic.id == "EPIC-1"
        assert (task.id, sub.id) == ("TREK-1", "TREK-2")
        assert comment.id == "CMT-1"
        assert task.priority == 2
        assert task.status == "todo"
        assert task.parent_id == epic.id
        assert sub.parent_id == task.id
        assert epic.parent_id is None

    def test_title_is_stripped(self, tracker):
        assert tracker.create_epic("  Billing  ").title == "Billing"

    @pytest.mark.parametrize("title", ["", "   ", "x" * 201])
    def test_invalid_title(self, tracker, title):
        with pytest.raises(ValidationError) as exc_info:
            tracker.create_epic(title)

        assert exc_info.value.field == "title"

    @pytest.mark.parametrize("priority", [-1, 6])
    def test_priority_out_of_range(self, tracker, priority):
        with pytest.raises(ValidationError):
            tracker.create_epic("Billing", priority=priority)

    def test_missing_parent(self, tracker):
        with pytest.raises(NotFoundError) as exc_info:
            tracker.create_task("Orphan", epic_id="EPIC-9")

        assert exc_info.value.entity_id == "EPIC-9"

    def test_wrong_parent_kind(self, tracker, epic, task):
        with pytest.raises(ValidationError):
            tracker.create_task("Nested", epic_id=task.id)

        with pytest.raises(ValidationError):
            tracker.create_subtask("Nested", task_id=epic.id)

    def test_closed_parent(self, tracker, epic, task):
        tracker.update(task.id, status="wont_fix")
        with pytest.raises(ValidationError):
            tracker.create_subtask("Too late", task_id=task.id)

        tracker.update(epic.id, status="archived")
        with pytest.raises(ValidationError):
            tracker.create_task("Too late", epic_id=epic.id)

    def test_completed_parent_accepts_children(self, tracker, epic, task):
        tracker.update(task.id, status="completed")

        assert tracker.create_subtask("Follow-up", task_id=task.id).parent_id == task.id

    def test_rolled_back_create_keeps_sequence(self, tracker, epic):
        with pytest.raises(NotFoundError):
            tracker.create_subtask("Orphan", task_id="TREK-50")

        assert tracker.create_task("Real", epic_id=epic.id).id == "TREK-1"


class TestGetAndUpdate:
    """Test lookups and patches."""

    def test_lookup_is_case_insensitive(self, tracker, task):
        assert tracker.get(task.id.lower()).id == task.id

    def test_unknown_id(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.get("TREK-1")

        with pytest.raises(NotFoundError):
            tracker.update("TREK-1", priority=1)

    def test_parent_is_immutable(self, tracker, epic, task):
        other = tracker.create_epic("Other")

        with pytest.raises(ImmutableFieldError) as exc_info:
            tracker.update(task.id, parent_id=other.id)

        assert exc_info.value.field == "parent_id"
        assert tracker.get(task.id).parent_id == epic.id

    def test_kind_is_immutable(self, tracker, task):
        with pytest.raises(ImmutableFieldError) as exc_info:
            tracker.update(task.id, kind="epic")

        assert exc_info.value.field == "kind"
        assert tracker.get(task.id).kind == "task"
        assert len(tracker.history(task.id)) == 1

    def test_unknown_field(self, tracker, task):
        with pytest.raises(ValidationError) as exc_info:
            tracker.update(task.id, assignee="bob")

        assert "Unknown field" in str(exc_info.value)

    def test_cleared_title_rejected(self, tracker, task):
        with pytest.raises(ValidationError):
            tracker.update(task.id, title=None)

    def test_invalid_transition(self, tracker, task):
        tracker.update(task.id, status="completed")

        with pytest.raises(InvalidTransitionError) as exc_info:
            tracker.update(task.id, status="in_progress")

        assert exc_info.value.current_status == "completed"

    def test_terminal_entities_stay_editable(self, tracker, task):
        tracker.update(task.id, status="archived")

        updated = tracker.update(task.id, title="Login (shelved)", priority=5)

        assert updated.title == "Login (shelved)"
        assert updated.status == "archived"

    def test_updated_at_moves_forward(self, tracker, task):
        updated = tracker.update(task.id, priority=0)

        assert updated.updated_at >= task.updated_at
        assert updated.created_at == task.created_at


class TestCascades:
    """Test epic completion and task closure cascades."""

    def test_complete_epic_archives_open_work(self, tracker, epic):
        t1 = tracker.create_task("Open", epic_id=epic.id)
        t2 = tracker.create_task("Started", epic_id=epic.id)
        t3 = tracker.create_task("Done", epic_id=epic.id)
        s1 = tracker.create_subtask("Open sub", task_id=t1.id)
        s2 = tracker.create_subtask("Leftover sub", task_id=t3.id)
        tracker.update(t2.id, status="in_progress")
        tracker.update(t3.id, status="completed")
        seq_before = tracker.history()[-1].seq

        result = tracker.complete_epic(epic.id)

        assert [c.id for c in result.archived] == [t1.id, s1.id, t2.id, s2.id]
        assert all(c.status == "archived" for c in result.archived)
        assert tracker.get(t3.id).status == "completed"

        events = [e for e in tracker.history() if e.seq > seq_before]
        assert len(events) == 1 + len(result.archived)
        assert [e.entity_id for e in events] == [t1.id, s1.id, t2.id, s2.id, epic.id]
        assert events[-1].new_value == "completed"

    def test_update_status_completed_cascades_too(self, tracker, epic, task):
        tracker.update(epic.id, status="completed")

        assert tracker.get(task.id).status == "archived"

    def test_archived_epic_cascades(self, tracker, epic, task):
        tracker.update(epic.id, status="archived")

        assert tracker.get(task.id).status == "archived"

    def test_cascade_ignores_dependency_guard(self, tracker, epic):
        t1 = tracker.create_task("One", epic_id=epic.id)
        t2 = tracker.create_task("Two", epic_id=epic.id)
        tracker.add_dependency(t2.id, t1.id)

        result = tracker.complete_epic(epic.id)

        assert {c.id for c in result.archived} == {t1.id, t2.id}

    def test_task_wont_fix_archives_subtasks(self, tracker, task):
        sub = tracker.create_subtask("Sub", task_id=task.id)
        done = tracker.create_subtask("Done sub", task_id=task.id)
        tracker.update(done.id, status="completed")

        tracker.update(task.id, status="wont_fix")

        assert tracker.get(sub.id).status == "archived"
        assert tracker.get(done.id).status == "completed"

    def test_task_completion_does_not_cascade(self, tracker, task):
        sub = tracker.create_subtask("Sub", task_id=task.id)

        tracker.update(task.id, status="completed")

        assert tracker.get(sub.id).status == "todo"

    def test_complete_epic_errors(self, tracker, epic, task):
        with pytest.raises(NotFoundError):
            tracker.complete_epic(task.id)

        tracker.update(epic.id, status="archived")
        with pytest.raises(InvalidTransitionError):
            tracker.complete_epic(epic.id)


class TestComments:
    """Test comment.add and comment.list."""

    def test_comments_in_order(self, tracker, task):
        tracker.add_comment(task.id, author="alice", body="one")
        tracker.add_comment(task.id, author="bob", body="two")

        comments = tracker.comments(task.id)

        assert [(c.author, c.body) for c in comments] == [("alice", "one"), ("bob", "two")]
        assert all(c.entity_id == task.id for c in comments)

    def test_comment_on_terminal_entity(self, tracker, epic):
        tracker.complete_epic(epic.id)

        comment = tracker.add_comment(epic.id, author="alice", body="retro notes")

        assert comment.entity_id == epic.id
        assert tracker.history(epic.id)[-1].actor == "alice"

    def test_empty_body(self, tracker, task):
        with pytest.raises(ValidationError):
            tracker.add_comment(task.id, author="alice", body="  ")

    def test_unknown_entity(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.add_comment("EPIC-7", author="alice", body="hello")

    def test_comment_refreshes_updated_at(self, tracker, task):
        time.sleep(0.01)

        tracker.add_comment(task.id, author="alice", body="looking into it")

        assert tracker.get(task.id).updated_at > task.updated_at


class TestList:
    """Test list filters and ordering."""

    def test_filters(self, tracker, epic, task):
        sub = tracker.create_subtask("Sub", task_id=task.id)
        other = tracker.create_epic("Other")
        tracker.create_task("Elsewhere", epic_id=other.id)

        assert [e.id for e in tracker.list(kind="subtask")] == [sub.id]
        assert [e.id for e in tracker.list(parent_id=epic.id)] == [task.id]
        assert {e.id for e in tracker.list(kind="epic")} == {epic.id, other.id}

    def test_ordering(self, tracker, epic):
        low = tracker.create_task("Low", epic_id=epic.id, priority=4)
        high = tracker.create_task("High", epic_id=epic.id, priority=0)
        active = tracker.create_task("Active", epic_id=epic.id, priority=5)
        done = tracker.create_task("Done", epic_id=epic.id, priority=0)
        tracker.update(active.id, status="in_progress")
        tracker.update(done.id, status="completed")

        ids = [e.id for e in tracker.list(kind="task")]

        assert ids == [active.id, high.id, low.id, done.id]
        assert [e.id for e in tracker.list(status="completed")] == [done.id]

    def test_unknown_parent(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.list(parent_id="EPIC-3")


class TestAtomicity:
    """A failed command leaves the store unchanged."""

    def test_failed_commands_leave_export_identical(self, tracker, epic):
        t1 = tracker.create_task("One", epic_id=epic.id)
        t2 = tracker.create_task("Two", epic_id=epic.id)
        tracker.add_dependency(t2.id, t1.id)
        before = tracker.export()

        failing = [
            lambda: tracker.update(t2.id, title="Renamed", status="in_progress"),
            lambda: tracker.add_dependency(t1.id, t2.id),
            lambda: tracker.create_task("Orphan", epic_id="EPIC-9"),
            lambda: tracker.update(t1.id, priority=3, parent_id=epic.id),
            lambda: tracker.add_comment(t1.id, author="", body="nobody"),
        ]
        for command in failing:
            with pytest.raises(Exception):
                command()
            assert tracker.export() == before

        assert tracker.get(t2.id).title == "Two"

    def test_export_covers_every_table(self, tracker, task):
        tracker.add_comment(task.id, author="alice", body="hello world")

        snapshot = tracker.export()

        assert set(snapshot) == {
            "entities",
            "entity_dependencies",
            "comments",
            "history_events",
            "search_postings",
            "id_sequences",
        }
        assert len(snapshot["entities"]) == 2
        assert len(snapshot["comments"]) == 1


class TestLogging:
    """Test log output for committed and rejected commands."""

    def test_blocked_transition_logs_warning(self, tracker, epic, caplog):
        t1 = tracker.create_task("One", epic_id=epic.id)
        t2 = tracker.create_task("Two", epic_id=epic.id)
        tracker.add_dependency(t2.id, t1.id)

        with caplog.at_level(logging.WARNING, logger="trekker-core"):
            with pytest.raises(BlockedByDependencyError):
                tracker.update(t2.id, status="completed")

        assert "blocked by incomplete dependency" in caplog.text

    def test_commit_logs_info(self, tracker, caplog):
        with caplog.at_level(logging.INFO, logger="trekker-core"):
            tracker.create_epic("Billing")

        assert "Committed epic.create EPIC-1" in caplog.text


class TestOpen:
    """Test opening stores by path."""

    def test_reopen_sees_committed_state(self, tmp_path, settings):
        path = tmp_path / "nested" / "store.db"
        with Tracker.open(str(path), settings=settings) as tracker:
            epic = tracker.create_epic("Persisted")

        with Tracker.open(str(path), settings=settings) as tracker:
            assert tracker.get(epic.id).title == "Persisted"
            assert tracker.create_epic("Second").id == "EPIC-2"
