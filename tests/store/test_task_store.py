"""Tests for TaskStore: creation, guarded transitions and the follow-up lease."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from outreach.domain.context import ChurnRiskContext
from outreach.domain.errors import (
    DuplicateTaskError,
    InvalidTransitionError,
    MissingContactError,
    StaleTaskError,
    TaskNotFoundError,
)
from outreach.domain.models import Account
from outreach.domain.types import TaskOutcome, TaskStatus
from outreach.store import TaskStore


class TestCreate:
    def test_new_task_is_open_with_typed_context(self, make_task) -> None:
        """Emails are normalized and context is parsed into the task type's model."""
        task = make_task(contact_email="  Member@Example.COM ")
        assert task.status == TaskStatus.OPEN
        assert task.contact_email == "member@example.com"
        assert isinstance(task.context, ChurnRiskContext)
        assert task.context.risk_reason == "No check-ins for 21 days"
        assert task.next_action_at is None

    def test_one_active_thread_per_contact_and_type(self, make_task) -> None:
        make_task(contact_email="dup@example.com")
        with pytest.raises(DuplicateTaskError):
            make_task(contact_email="DUP@example.com")

    def test_one_active_thread_per_contact_id_without_email(self, make_task) -> None:
        """Tasks known only by contact id are deduplicated on that id."""
        make_task(contact_email=None, contact_id="member-42")
        with pytest.raises(DuplicateTaskError) as excinfo:
            make_task(contact_email=None, contact_id="member-42")
        assert excinfo.value.contact == "member-42"

    def test_contact_id_threads_are_per_member(self, make_task) -> None:
        """Different contact ids are different threads."""
        make_task(contact_email=None, contact_id="member-42")
        other = make_task(contact_email=None, contact_id="member-43")
        assert other.contact_id == "member-43"

    def test_task_needs_a_contact(self, make_task, task_store: TaskStore) -> None:
        with pytest.raises(MissingContactError):
            make_task(contact_email="  ", contact_id=None)
        assert task_store.count_active() == 0

    def test_duplicate_keeps_other_uncommitted_writes(
        self, make_task, task_store: TaskStore, conn
    ) -> None:
        """A rejected insert only undoes itself, not work pending on the connection."""
        task = make_task(contact_email="dup@example.com")
        conn.execute("UPDATE tasks SET goal = 'written-by-tick' WHERE id = ?", (task.id,))

        with pytest.raises(DuplicateTaskError):
            make_task(contact_email="dup@example.com")
        conn.commit()

        assert task_store.require(task.id).goal == "written-by-tick"

    def test_different_task_type_is_a_separate_thread(self, make_task) -> None:
        make_task(contact_email="dup@example.com")
        other = make_task(contact_email="dup@example.com", task_type="payment_failed")
        assert other.task_type == "payment_failed"

    def test_terminal_thread_frees_the_slot(self, make_task, task_store: TaskStore) -> None:
        """Once a thread is terminal the contact can be contacted again."""
        first = make_task(contact_email="dup@example.com")
        task_store.transition(first, "cancel", outcome=TaskOutcome.NOT_APPLICABLE)
        second = make_task(contact_email="dup@example.com")
        assert second.id != first.id

    def test_require_unknown_task(self, task_store: TaskStore) -> None:
        with pytest.raises(TaskNotFoundError):
            task_store.require("missing")


class TestTransition:
    def test_send_sets_next_action(self, make_task, task_store: TaskStore, clock) -> None:
        task = make_task()
        due = clock() + timedelta(days=1)
        updated = task_store.transition(task, "send", automated=True, next_action_at=due)
        assert updated.status == TaskStatus.AWAITING_REPLY
        assert updated.next_action_at == due

    def test_terminal_status_clears_next_action_and_stamps_resolved(
        self, make_task, task_store: TaskStore, clock
    ) -> None:
        task = task_store.transition(
            make_task(), "send", next_action_at=clock() + timedelta(days=1)
        )
        closed = task_store.transition(
            task, "timeout", outcome=TaskOutcome.UNRESPONSIVE, outcome_reason="no reply"
        )
        assert closed.status == TaskStatus.RESOLVED
        assert closed.next_action_at is None
        assert closed.resolved_at == clock()
        assert closed.outcome == TaskOutcome.UNRESPONSIVE
        assert closed.outcome_reason == "no reply"

    def test_stale_read_loses(self, make_task, task_store: TaskStore) -> None:
        """A transition from an outdated read raises StaleTaskError."""
        task = make_task()
        task_store.transition(task, "send")
        with pytest.raises(StaleTaskError):
            task_store.transition(task, "cancel")
        assert task_store.require(task.id).status == TaskStatus.AWAITING_REPLY

    def test_invalid_event_does_not_touch_the_row(self, make_task, task_store: TaskStore) -> None:
        """A rejected event leaves the stored status unchanged."""
        task = make_task()
        with pytest.raises(InvalidTransitionError):
            task_store.transition(task, "follow_up")
        assert task_store.require(task.id).status == TaskStatus.OPEN

    def test_expected_next_action_guard(self, make_task, task_store: TaskStore, clock) -> None:
        due = clock() + timedelta(days=1)
        task = task_store.transition(make_task(), "send", next_action_at=due)
        with pytest.raises(StaleTaskError):
            task_store.transition(
                task, "wait", next_action_at=due, expected_next_action_at=due + timedelta(hours=1)
            )
        waited = task_store.transition(
            task,
            "wait",
            next_action_at=due + timedelta(days=3),
            expected_next_action_at=due,
        )
        assert waited.next_action_at == due + timedelta(days=3)


class TestLease:
    def _awaiting(self, make_task, task_store: TaskStore, clock):
        return task_store.transition(make_task(), "send", next_action_at=clock())

    def test_reschedule_moves_due_time(self, make_task, task_store: TaskStore, clock) -> None:
        task = self._awaiting(make_task, task_store, clock)
        lease = clock() + timedelta(minutes=15)
        leased = task_store.reschedule(task, lease)
        assert leased is not None
        assert leased.next_action_at == lease

    def test_second_reschedule_from_same_read_loses(
        self, make_task, task_store: TaskStore, clock
    ) -> None:
        """Only one of two reschedules from the same read wins."""
        task = self._awaiting(make_task, task_store, clock)
        assert task_store.reschedule(task, clock() + timedelta(minutes=15)) is not None
        assert task_store.reschedule(task, clock() + timedelta(minutes=30)) is None

    def test_clear_next_action_breaks_the_lease(
        self, make_task, task_store: TaskStore, clock
    ) -> None:
        task = self._awaiting(make_task, task_store, clock)
        lease = clock() + timedelta(minutes=15)
        leased = task_store.reschedule(task, lease)
        cleared = task_store.clear_next_action(task.id)
        assert cleared is not None
        assert cleared.next_action_at is None
        with pytest.raises(StaleTaskError):
            task_store.transition(
                leased, "follow_up", next_action_at=clock(), expected_next_action_at=lease
            )

    def test_clear_next_action_requires_awaiting_reply(self, make_task, task_store: TaskStore) -> None:
        assert task_store.clear_next_action(make_task().id) is None


class TestQueries:
    def test_due_follow_ups_most_overdue_first(self, make_task, task_store: TaskStore, clock) -> None:
        later = task_store.transition(make_task(), "send", next_action_at=clock() - timedelta(hours=1))
        earlier = task_store.transition(make_task(), "send", next_action_at=clock() - timedelta(days=1))
        task_store.transition(make_task(), "send", next_action_at=clock() + timedelta(days=1))
        due = task_store.list_due_follow_ups(clock(), limit=10)
        assert [t.id for t in due] == [earlier.id, later.id]

    def test_autopilot_candidates_exclude_approval_and_missing_email(
        self, make_task, task_store: TaskStore
    ) -> None:
        """Approval tasks and tasks without an email never go out on autopilot."""
        eligible = make_task()
        make_task(requires_approval=True)
        make_task(contact_email=None, contact_id="member-7")
        assert [t.id for t in task_store.list_autopilot_candidates(10)] == [eligible.id]

    def test_autopilot_candidates_respect_account_switch(
        self, make_task, task_store: TaskStore, accounts
    ) -> None:
        accounts.upsert(Account(id="acct-manual", name="Manual Gym", autopilot_enabled=False))
        make_task(account_id="acct-manual")
        assert task_store.list_autopilot_candidates(10) == []

    def test_count_active(self, make_task, task_store: TaskStore) -> None:
        make_task()
        done = make_task()
        task_store.transition(done, "resolve", outcome=TaskOutcome.RECOVERED)
        assert task_store.count_active() == 1


class TestTransactionUnits:
    def test_writes_inside_a_unit_roll_back_together(
        self, make_task, task_store: TaskStore, command_store, clock
    ) -> None:
        """A failure after the transition also undoes the transition."""
        task = make_task()
        with pytest.raises(RuntimeError):
            with task_store.transaction():
                task_store.transition(task, "send", next_action_at=clock())
                command_store.enqueue("SendEmail", {"to": task.contact_email}, task_id=task.id)
                raise RuntimeError("enqueue failed")

        assert task_store.require(task.id).status == TaskStatus.OPEN
        assert command_store.count_for_task(task.id, "SendEmail") == 0

    def test_outer_unit_commits_inner_writes(
        self, make_task, task_store: TaskStore, command_store, conn, clock
    ) -> None:
        """Only the outermost unit commits."""
        task = make_task()
        with task_store.transaction():
            task_store.transition(task, "send", next_action_at=clock())
            command_store.enqueue("SendEmail", {"to": task.contact_email}, task_id=task.id)
            assert conn.in_transaction

        assert not conn.in_transaction
        assert task_store.require(task.id).status == TaskStatus.AWAITING_REPLY
        assert command_store.count_for_task(task.id, "SendEmail") == 1

    def test_open_unit_holds_the_connection_lock(self, task_store: TaskStore, conn) -> None:
        """Another thread cannot take the lock while a unit is open."""
        acquired: list[bool] = []

        def try_lock() -> None:
            got = conn.lock.acquire(blocking=False)
            acquired.append(got)
            if got:
                conn.lock.release()

        with task_store.transaction():
            worker = threading.Thread(target=try_lock)
            worker.start()
            worker.join()
        worker = threading.Thread(target=try_lock)
        worker.start()
        worker.join()

        assert acquired == [False, True]
