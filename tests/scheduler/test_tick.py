"""Scenario tests for Scheduler.tick over real stores and a mocked mailer/reasoner."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import structlog

from outreach.app import configure_logging
from outreach.domain.types import CommandStatus, MessageStatus, TaskOutcome, TaskStatus
from outreach.email.models import SendReceipt
from outreach.scheduler import FOLLOW_UP_LEASE, Scheduler


@pytest.fixture
def awaiting(make_task, task_store, clock):
    """Factory for tasks already in awaiting_reply, due one second ago."""

    def _make(due: timedelta = timedelta(seconds=-1), **overrides):
        task = make_task(**overrides)
        return task_store.transition(task, "send", next_action_at=clock() + due)

    return _make


class TestAutopilot:
    def test_open_task_gets_first_message(
        self, scheduler: Scheduler, make_task, task_store, outbound, conversation, mailer, clock
    ) -> None:
        task = make_task()
        summary = scheduler.tick()

        assert summary.sent == 1
        assert not summary.has_errors
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.AWAITING_REPLY
        assert stored.next_action_at == clock() + timedelta(days=3)

        rows = outbound.list_for_task(task.id)
        assert [r.status for r in rows] == [MessageStatus.SENT]
        assert rows[0].subject == "We miss you"
        email = mailer.send.call_args.args[0]
        assert email.to == task.contact_email
        assert email.reply_to == f"reply+{task.id}@replies.example.com"
        assert [e.content for e in conversation.history(task.id)] == [
            task.context.draft_message
        ]

    def test_second_tick_does_not_resend(self, scheduler: Scheduler, make_task, mailer) -> None:
        """The idempotency key keeps a second tick from sending the first touch again."""
        make_task()
        scheduler.tick()
        summary = scheduler.tick()
        assert summary.sent == 0
        assert mailer.send.call_count == 1

    def test_approval_tasks_are_left_alone(
        self, scheduler: Scheduler, make_task, task_store, mailer
    ) -> None:
        task = make_task(requires_approval=True)
        scheduler.tick()
        assert task_store.require(task.id).status == TaskStatus.OPEN
        mailer.send.assert_not_called()

    def test_task_without_draft_is_skipped(
        self, scheduler: Scheduler, make_task, task_store, mailer
    ) -> None:
        """Autopilot tasks with no draft are left open for an operator."""
        task = make_task(context={"riskReason": "No visits"})
        summary = scheduler.tick()
        assert summary.skipped == 1
        assert task_store.require(task.id).status == TaskStatus.OPEN
        mailer.send.assert_not_called()

    def test_quiet_hours_leave_task_open(
        self, scheduler: Scheduler, make_task, task_store, mailer, clock
    ) -> None:
        clock.set(datetime(2026, 3, 11, 2, 0, tzinfo=UTC))  # 22:00 EDT
        task = make_task()
        summary = scheduler.tick()
        assert summary.skipped == 1
        assert task_store.require(task.id).status == TaskStatus.OPEN
        mailer.send.assert_not_called()

        clock.set(datetime(2026, 3, 11, 13, 0, tzinfo=UTC))  # 09:00 EDT
        assert scheduler.tick().sent == 1

    def test_opted_out_contact_is_cancelled(
        self, scheduler: Scheduler, make_task, task_store, optouts, mailer
    ) -> None:
        """Opted-out contacts are cancelled rather than messaged."""
        task = make_task()
        optouts.add(task.account_id, task.contact_email)
        summary = scheduler.tick()
        assert summary.cancelled == 1
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.CANCELLED
        assert stored.outcome == TaskOutcome.NOT_APPLICABLE
        mailer.send.assert_not_called()

    def test_daily_cap_limits_sends(self, scheduler: Scheduler, make_task, mailer) -> None:
        for _ in range(12):
            make_task()
        summary = scheduler.tick()
        assert summary.sent == 10
        assert summary.skipped == 2
        assert mailer.send.call_count == 10

    def test_failed_first_send_is_retried_by_a_later_tick(
        self, scheduler: Scheduler, make_task, task_store, outbound, mailer, clock
    ) -> None:
        """A first touch that fails to send is picked up by the next tick."""
        mailer.send.side_effect = [TimeoutError("provider timeout"), SendReceipt(id="re_ok")]
        task = make_task()

        first = scheduler.tick()
        assert first.queued == 1
        assert task_store.require(task.id).status == TaskStatus.AWAITING_REPLY
        assert outbound.list_for_task(task.id)[0].status == MessageStatus.FAILED

        clock.advance(minutes=2)
        second = scheduler.tick()
        assert second.commands_completed == 1
        rows = outbound.list_for_task(task.id)
        assert len(rows) == 1
        assert rows[0].status == MessageStatus.SENT


class TestFollowUps:
    def test_wait_moves_next_check(
        self, scheduler: Scheduler, awaiting, task_store, mailer, clock
    ) -> None:
        task = awaiting()
        summary = scheduler.tick()
        assert summary.waited == 1
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.AWAITING_REPLY
        assert stored.next_action_at == clock() + timedelta(days=3)
        mailer.send.assert_not_called()

    def test_close_unresponsive_resolves(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide
    ) -> None:
        """close resolves the task as unresponsive."""
        reasoner.evaluate.return_value = decide(action="close", outcome="unresponsive")
        task = awaiting()
        summary = scheduler.tick()
        assert summary.closed == 1
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.RESOLVED
        assert stored.outcome == TaskOutcome.UNRESPONSIVE
        assert stored.next_action_at is None

    def test_close_engaged_uses_close_event(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide
    ) -> None:
        reasoner.evaluate.return_value = decide(action="close", outcome="engaged")
        task = awaiting()
        scheduler.tick()
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.RESOLVED
        assert stored.outcome == TaskOutcome.ENGAGED

    def test_follow_up_sends_in_thread(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide, mailer, clock
    ) -> None:
        reasoner.evaluate.return_value = decide(
            action="follow_up", message="Still thinking of you!", nextCheckDays=4
        )
        task = awaiting()
        summary = scheduler.tick()
        assert summary.follow_ups == 1
        assert summary.sent == 1
        email = mailer.send.call_args.args[0]
        assert email.subject == "Re: We miss you"
        assert email.text == "Still thinking of you!"
        assert task_store.require(task.id).next_action_at == clock() + timedelta(days=4)

    def test_escalate_notifies(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide, notifier
    ) -> None:
        """escalate moves the task to escalated and alerts Slack."""
        reasoner.evaluate.return_value = decide(action="escalate", reason="Mentions an injury")
        task = awaiting()
        summary = scheduler.tick()
        assert summary.escalated == 1
        assert task_store.require(task.id).status == TaskStatus.ESCALATED
        escalated, reason = notifier.notify_task_escalated.call_args.args
        assert escalated.id == task.id
        assert reason == "Mentions an injury"

    def test_not_yet_due_is_left_alone(self, scheduler: Scheduler, awaiting, reasoner) -> None:
        awaiting(due=timedelta(hours=1))
        scheduler.tick()
        reasoner.evaluate.assert_not_called()

    def test_opt_out_mid_thread_cancels_instead_of_sending(
        self, scheduler: Scheduler, make_task, task_store, optouts, reasoner, decide, mailer, clock
    ) -> None:
        """An opt-out recorded after the first touch cancels the thread."""
        reasoner.evaluate.return_value = decide(action="follow_up", message="Hello again")
        task = make_task()
        scheduler.tick()
        assert mailer.send.call_count == 1

        optouts.add(task.account_id, task.contact_email, reason="replied STOP")
        clock.advance(days=3, minutes=1)
        summary = scheduler.tick()

        assert summary.cancelled == 1
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.CANCELLED
        assert stored.outcome == TaskOutcome.NOT_APPLICABLE
        assert mailer.send.call_count == 1
        reasoner.evaluate.assert_not_called()

    def test_quiet_hours_defer_without_evaluating(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, clock
    ) -> None:
        task = awaiting()
        due = task.next_action_at
        clock.set(datetime(2026, 3, 11, 2, 0, tzinfo=UTC))
        summary = scheduler.tick()
        assert summary.deferred == 1
        assert task_store.require(task.id).next_action_at == due
        reasoner.evaluate.assert_not_called()

    def test_touch_ceiling_holds_when_model_keeps_following_up(
        self, scheduler: Scheduler, make_task, task_store, reasoner, decide, mailer, clock
    ) -> None:
        """The ceiling closes the thread even if the model would keep going."""
        reasoner.evaluate.return_value = decide(
            action="follow_up", message="One more thing!", nextCheckDays=1
        )
        task = make_task()
        for _ in range(8):
            scheduler.tick()
            clock.advance(days=3, minutes=1)

        assert mailer.send.call_count == 4
        assert reasoner.evaluate.call_count == 3
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.RESOLVED
        assert stored.outcome == TaskOutcome.UNRESPONSIVE

    def test_reply_during_evaluation_wins(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide, mailer
    ) -> None:
        task = awaiting()

        def reply_arrives(system: str, prompt: str) -> str:
            task_store.clear_next_action(task.id)
            return decide(action="follow_up", message="Checking in again")

        reasoner.evaluate.side_effect = reply_arrives
        summary = scheduler.tick()

        assert summary.skipped == 1
        assert summary.follow_ups == 0
        mailer.send.assert_not_called()
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.AWAITING_REPLY
        assert stored.next_action_at is None

    def test_evaluation_holds_a_lease(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, clock
    ) -> None:
        """A task being evaluated is invisible to a concurrent tick."""
        task = awaiting()
        seen = []

        def capture(system: str, prompt: str) -> str:
            seen.append(task_store.require(task.id).next_action_at)
            return '{"action": "wait", "nextCheckDays": 2}'

        reasoner.evaluate.side_effect = capture
        scheduler.tick()
        assert seen == [clock() + FOLLOW_UP_LEASE]

    def test_one_failing_task_does_not_stop_the_rest(
        self, scheduler: Scheduler, awaiting, task_store, reasoner, decide, notifier
    ) -> None:
        """One failing task is reported and the rest of the tick carries on."""
        first = awaiting(due=timedelta(hours=-2))
        second = awaiting(due=timedelta(hours=-1))
        reasoner.evaluate.side_effect = [
            decide(action="escalate", reason="Angry"),
            decide(action="wait", nextCheckDays=2),
        ]
        notifier.notify_task_escalated.side_effect = RuntimeError("notifier exploded")

        summary = scheduler.tick()

        assert summary.has_errors
        assert len(summary.errors) == 1
        assert first.id in summary.errors[0]
        assert summary.waited == 1
        assert task_store.require(second.id).status == TaskStatus.AWAITING_REPLY


class TestWithApplicationLogging:
    """Ticks run with the structlog configuration the service installs at startup."""

    @pytest.fixture(autouse=True)
    def app_logging(self) -> Iterator[None]:
        configure_logging(production=True)
        yield
        structlog.contextvars.clear_contextvars()
        structlog.reset_defaults()

    def test_open_task_is_sent_and_audited(
        self, scheduler: Scheduler, make_task, task_store, outbound, mailer
    ) -> None:
        """Autopilot sends log cleanly through the production structlog pipeline."""
        task = make_task()
        summary = scheduler.tick()

        assert summary.errors == []
        assert summary.sent == 1
        assert mailer.send.call_count == 1
        assert [r.status for r in outbound.list_for_task(task.id)] == [MessageStatus.SENT]
        assert task_store.require(task.id).status == TaskStatus.AWAITING_REPLY

    def test_follow_up_is_sent(
        self, scheduler: Scheduler, awaiting, reasoner, decide, mailer
    ) -> None:
        reasoner.evaluate.return_value = decide(action="follow_up", message="Hello again")
        awaiting()
        summary = scheduler.tick()
        assert summary.errors == []
        assert summary.follow_ups == 1
        mailer.send.assert_called_once()


class TestSendIsDurableWithTransition:
    """A task only leaves its pre-send status together with its queued email."""

    def test_failed_enqueue_leaves_autopilot_task_open(
        self,
        scheduler: Scheduler,
        make_task,
        task_store,
        command_store,
        sender,
        mailer,
        monkeypatch,
    ) -> None:
        task = make_task()
        monkeypatch.setattr(
            sender, "enqueue_touch", MagicMock(side_effect=RuntimeError("disk full"))
        )

        summary = scheduler.tick()

        assert len(summary.errors) == 1
        assert task_store.require(task.id).status == TaskStatus.OPEN
        assert command_store.count_for_task(task.id, "SendEmail", include_dead_letters=True) == 0
        mailer.send.assert_not_called()

        monkeypatch.undo()
        assert scheduler.tick().sent == 1

    def test_failed_enqueue_keeps_follow_up_due_after_the_lease(
        self,
        scheduler: Scheduler,
        awaiting,
        task_store,
        sender,
        reasoner,
        decide,
        monkeypatch,
        clock,
    ) -> None:
        reasoner.evaluate.return_value = decide(action="follow_up", message="Hello again")
        task = awaiting()
        monkeypatch.setattr(
            sender, "enqueue_touch", MagicMock(side_effect=RuntimeError("disk full"))
        )

        summary = scheduler.tick()

        assert len(summary.errors) == 1
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.AWAITING_REPLY
        assert stored.next_action_at == clock() + FOLLOW_UP_LEASE
        assert sender.touches_sent(task.id) == 0


class TestCommandDrain:
    def test_pending_commands_are_drained_first(
        self, scheduler: Scheduler, bus, clock
    ) -> None:
        """Commands left pending from a previous tick are dispatched first."""
        command = bus.enqueue(
            "SendEmail",
            {
                "to": "member@example.com",
                "subject": "Hi",
                "body": "Hello",
                "account_id": "acct-iron-temple",
            },
        )
        summary = scheduler.tick()
        assert summary.commands_completed == 1
        assert bus.store.get(command.id).status == CommandStatus.COMPLETED
