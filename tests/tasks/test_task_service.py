"""Tests for TaskService: creation, approval and operator status changes."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from outreach.domain.errors import (
    DuplicateTaskError,
    InvalidTransitionError,
    MissingContactError,
    MissingDraftError,
    TaskNotFoundError,
)
from outreach.domain.types import ConversationRole, MessageStatus, TaskOutcome, TaskStatus
from outreach.tasks import TaskService


def _create(service: TaskService, **overrides):
    fields = {
        "account_id": "acct-iron-temple",
        "task_type": "win_back",
        "goal": "Bring Jo back",
        "contact_email": "jo@example.com",
        "contact_name": "Jo",
        "context": {"draftMessage": "Hi Jo, we'd love to see you again.", "cancelReason": "moved"},
    }
    fields.update(overrides)
    return service.create_task(**fields)


class TestCreate:
    def test_autopilot_task_stays_open(self, task_service: TaskService) -> None:
        task = _create(task_service)
        assert task.status == TaskStatus.OPEN
        assert task.context.cancel_reason == "moved"

    def test_approval_task_is_parked(self, task_service: TaskService) -> None:
        """requires_approval parks the task in awaiting_approval."""
        task = _create(task_service, requires_approval=True)
        assert task.status == TaskStatus.AWAITING_APPROVAL

    def test_duplicate_live_thread_rejected(self, task_service: TaskService) -> None:
        _create(task_service)
        with pytest.raises(DuplicateTaskError):
            _create(task_service)


class TestApproval:
    def test_approve_sends_draft(
        self, task_service: TaskService, task_store, outbound, mailer, clock
    ) -> None:
        """Approval sends the draft and schedules the first check."""
        task = _create(task_service, requires_approval=True)
        approved = task_service.approve_task(task.id)
        assert approved.status == TaskStatus.AWAITING_REPLY
        assert approved.approved_at == clock()
        assert approved.next_action_at == clock() + timedelta(days=3)
        assert mailer.send.call_args.args[0].text == "Hi Jo, we'd love to see you again."
        assert [r.status for r in outbound.list_for_task(task.id)] == [MessageStatus.SENT]

    def test_approve_with_edited_message(self, task_service: TaskService, mailer) -> None:
        task = _create(task_service, requires_approval=True)
        task_service.approve_task(task.id, message="Hi Jo! Edited by the owner.")
        assert mailer.send.call_args.args[0].text == "Hi Jo! Edited by the owner."

    def test_approve_requires_awaiting_approval(self, task_service: TaskService) -> None:
        task = _create(task_service)
        with pytest.raises(InvalidTransitionError):
            task_service.approve_task(task.id)

    def test_approve_without_any_draft(self, task_service: TaskService, task_store) -> None:
        """Without a draft the task stays in awaiting_approval."""
        task = _create(task_service, requires_approval=True, context={})
        with pytest.raises(MissingDraftError):
            task_service.approve_task(task.id)
        assert task_store.require(task.id).status == TaskStatus.AWAITING_APPROVAL

    def test_approve_without_email_is_rejected_before_sending(
        self, task_service: TaskService, task_store, command_store
    ) -> None:
        """A task known only by contact id stays parked instead of sending nowhere."""
        task = _create(
            task_service, requires_approval=True, contact_email=None, contact_id="member-42"
        )
        with pytest.raises(MissingContactError):
            task_service.approve_task(task.id)
        assert task_store.require(task.id).status == TaskStatus.AWAITING_APPROVAL
        assert command_store.count_for_task(task.id, "SendEmail", include_dead_letters=True) == 0

    def test_approve_opted_out_contact_cancels(
        self, task_service: TaskService, optouts, mailer
    ) -> None:
        """Approving for an opted-out contact cancels instead of sending."""
        task = _create(task_service, requires_approval=True)
        optouts.add("acct-iron-temple", "jo@example.com")
        cancelled = task_service.approve_task(task.id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.outcome == TaskOutcome.NOT_APPLICABLE
        mailer.send.assert_not_called()

    def test_dismiss(self, task_service: TaskService) -> None:
        task = _create(task_service, requires_approval=True)
        dismissed = task_service.dismiss_task(task.id)
        assert dismissed.status == TaskStatus.CANCELLED
        assert dismissed.outcome_reason == "dismissed"

    def test_unknown_task(self, task_service: TaskService) -> None:
        with pytest.raises(TaskNotFoundError):
            task_service.approve_task("missing")


class TestUpdateStatus:
    def test_open_to_awaiting_reply_sends(self, task_service: TaskService, mailer) -> None:
        task = _create(task_service)
        updated = task_service.update_status(task.id, TaskStatus.AWAITING_REPLY)
        assert updated.status == TaskStatus.AWAITING_REPLY
        mailer.send.assert_called_once()

    def test_awaiting_reply_without_email_is_rejected(
        self, task_service: TaskService, task_store, mailer
    ) -> None:
        """Moving to awaiting_reply needs an email to send to."""
        task = _create(task_service, contact_email=None, contact_id="member-42")
        with pytest.raises(MissingContactError):
            task_service.update_status(task.id, TaskStatus.AWAITING_REPLY)
        assert task_store.require(task.id).status == TaskStatus.OPEN
        mailer.send.assert_not_called()

    def test_failed_enqueue_leaves_task_unsent(
        self, task_service: TaskService, task_store, sender, mailer, monkeypatch
    ) -> None:
        """The status change and the queued email commit together or not at all."""
        monkeypatch.setattr(
            sender, "enqueue_touch", MagicMock(side_effect=RuntimeError("disk full"))
        )
        task = _create(task_service)
        with pytest.raises(RuntimeError):
            task_service.update_status(task.id, TaskStatus.AWAITING_REPLY)
        stored = task_store.require(task.id)
        assert stored.status == TaskStatus.OPEN
        assert stored.next_action_at is None
        mailer.send.assert_not_called()

    def test_cancel_defaults_outcome(self, task_service: TaskService) -> None:
        task = _create(task_service)
        cancelled = task_service.update_status(task.id, TaskStatus.CANCELLED, reason="moved away")
        assert cancelled.outcome == TaskOutcome.NOT_APPLICABLE
        assert cancelled.outcome_reason == "moved away"

    def test_escalate_and_resume(
        self, task_service: TaskService, notifier, clock
    ) -> None:
        """Escalation clears next_action_at; resuming schedules it again."""
        task = task_service.update_status(_create(task_service).id, TaskStatus.AWAITING_REPLY)
        escalated = task_service.update_status(task.id, TaskStatus.ESCALATED, reason="VIP")
        notifier.notify_task_escalated.assert_called_once()
        assert escalated.next_action_at is None

        resumed = task_service.update_status(task.id, TaskStatus.AWAITING_REPLY)
        assert resumed.status == TaskStatus.AWAITING_REPLY
        assert resumed.next_action_at == clock() + timedelta(days=3)

    def test_same_status_is_rejected(self, task_service: TaskService) -> None:
        task = _create(task_service)
        with pytest.raises(InvalidTransitionError):
            task_service.update_status(task.id, TaskStatus.OPEN)

    def test_unreachable_status_is_rejected(self, task_service: TaskService) -> None:
        task = _create(task_service)
        with pytest.raises(InvalidTransitionError):
            task_service.update_status(task.id, TaskStatus.ESCALATED)

    def test_external_signal_resolves(self, task_service: TaskService) -> None:
        """An external recovery signal resolves the task as recovered."""
        task = _create(task_service)
        resolved = task_service.record_external_signal(task.id)
        assert resolved.status == TaskStatus.RESOLVED
        assert resolved.outcome == TaskOutcome.RECOVERED
        assert resolved.outcome_reason == "external_signal"


class TestConversation:
    def test_append_and_read(self, task_service: TaskService) -> None:
        task = _create(task_service)
        task_service.append_conversation(
            task.id, ConversationRole.SYSTEM, "Owner called the member", agent_name="owner"
        )
        history = task_service.get_conversation_history(task.id)
        assert [e.content for e in history] == ["Owner called the member"]

    def test_unknown_task(self, task_service: TaskService) -> None:
        with pytest.raises(TaskNotFoundError):
            task_service.get_conversation_history("missing")
