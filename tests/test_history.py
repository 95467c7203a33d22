"""Tests for the append-only audit log."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DatabaseError

from trekker_core.errors import NotFoundError
from trekker_core.models import utcnow


class TestAuditCompleteness:
    """Every successful mutation leaves exactly the events it should."""

    def test_create_writes_created_event(self, tracker, epic):
        events = tracker.history(epic.id)

        assert len(events) == 1
        assert events[0].change_type == "created"
        assert events[0].entity_kind == "epic"
        assert events[0].new_value == "Auth"
        assert events[0].actor == "tester"

    def test_one_event_per_changed_field(self, tracker, task):
        tracker.update(task.id, title="Implement SSO login", priority=1, status="in_progress", actor="bob")

        events = tracker.history(task.id)[1:]

        assert [(e.change_type, e.field_name) for e in events] == [
            ("updated", "title"),
            ("priority_changed", "priority"),
            ("status_changed", "status"),
        ]
        assert [e.new_value for e in events] == ["Implement SSO login", "1", "in_progress"]
        assert events[2].old_value == "todo"
        assert {e.actor for e in events} == {"bob"}

    def test_unchanged_patch_writes_nothing(self, tracker, task):
        tracker.update(task.id, title=task.title, priority=task.priority, status="todo")

        assert len(tracker.history(task.id)) == 1

    def test_event_count_matches_mutations(self, tracker, epic, task):
        tracker.update(task.id, priority=0)
        tracker.add_comment(task.id, author="alice", body="started looking")
        tracker.update(task.id, status="in_progress")
        tracker.update(task.id, status="completed")

        events = tracker.history(task.id)

        assert len(events) == 5
        assert events[2].change_type == "commented"
        assert events[-1].new_value == tracker.get(task.id).status

    def test_failed_command_writes_nothing(self, tracker, task):
        before = tracker.history()

        with pytest.raises(NotFoundError):
            tracker.create_subtask("Orphan", task_id="TREK-404")

        assert tracker.history() == before


class TestHistoryQueries:
    """Test ordering, filters and paging."""

    def test_seq_is_monotonic(self, tracker, epic, task):
        tracker.update(task.id, status="in_progress")
        tracker.update(epic.id, status="in_progress")

        seqs = [e.seq for e in tracker.history()]

        assert seqs == sorted(seqs)
        assert len(set(seqs)) == len(seqs)

    def test_entity_filter_is_case_insensitive(self, tracker, epic, task):
        events = tracker.history(task.id.lower())

        assert [e.entity_id for e in events] == [task.id]

    def test_unknown_entity(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.history("TREK-404")

    def test_since_until(self, tracker, epic):
        start = utcnow() - timedelta(seconds=1)
        task = tracker.create_task("Timed", epic_id=epic.id)
        after = utcnow() + timedelta(seconds=1)

        assert [e.entity_id for e in tracker.history(since=start, until=after)][-1] == task.id
        assert tracker.history(since=after) == []
        assert tracker.history(until=start - timedelta(days=1)) == []

    def test_aware_bounds_in_other_timezone(self, tracker, epic):
        eastern = timezone(timedelta(hours=-5))
        now = datetime.now(eastern)

        events = tracker.history(until=now + timedelta(minutes=1))
        assert [e.entity_id for e in events] == [epic.id]

        assert tracker.history(since=now - timedelta(minutes=1)) != []
        assert tracker.history(since=now + timedelta(minutes=1)) == []
        assert tracker.history(until=now - timedelta(minutes=1)) == []

    def test_skip_and_limit(self, tracker, epic):
        for n in range(4):
            tracker.create_task(f"Task {n}", epic_id=epic.id)

        everything = tracker.history()
        page = tracker.history(skip=1, limit=2)

        assert len(everything) == 5
        assert [e.seq for e in page] == [e.seq for e in everything[1:3]]


class TestAppendOnly:
    """Triggers reject UPDATE and DELETE on audit and comment rows."""

    def test_history_rows_cannot_change(self, tracker, epic):
        with tracker.engine.connect() as conn:
            with pytest.raises(DatabaseError, match="append-only"):
                conn.execute(text("UPDATE history_events SET actor = 'mallory'"))
            conn.rollback()

            with pytest.raises(DatabaseError, match="append-only"):
                conn.execute(text("DELETE FROM history_events"))
            conn.rollback()

        assert tracker.history(epic.id)[0].actor == "tester"

    def test_comments_are_immutable(self, tracker, task):
        tracker.add_comment(task.id, author="alice", body="first")

        with tracker.engine.connect() as conn:
            with pytest.raises(DatabaseError, match="immutable"):
                conn.execute(text("UPDATE comments SET body = 'edited'"))
            conn.rollback()

            with pytest.raises(DatabaseError, match="immutable"):
                conn.execute(text("DELETE FROM comments"))
            conn.rollback()

        assert [c.body for c in tracker.comments(task.id)] == ["first"]
