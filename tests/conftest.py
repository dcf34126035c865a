"""Shared pytest fixtures for the outreach engine test suite.

Every component is built over one in-memory SQLite connection and one
``FakeClock``, so tests can move time forward past backoffs and follow-up
horizons.  The mailer, reasoner and notifier are ``MagicMock`` objects.
"""

from __future__ import annotations

import itertools
import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

from outreach.commands import CommandBus, SendEmailExecutor
from outreach.domain.models import Account, Task
from outreach.domain.types import CommandType
from outreach.email.models import SendReceipt
from outreach.guardrails import Guardrails
from outreach.llm import CadencePolicy, FollowUpEvaluator, ReplyEvaluator
from outreach.replies import ReplyHandler
from outreach.scheduler import OutreachSender, Scheduler
from outreach.store import (
    AccountStore,
    CommandStore,
    ConversationLog,
    OptOutStore,
    OutboundMessageStore,
    StoreConnection,
    TaskStore,
    init_db,
)
from outreach.tasks import TaskService

# Tuesday 2026-03-10 16:00 UTC is 12:00 in New York (EDT): outside quiet hours.
MIDDAY_UTC = datetime(2026, 3, 10, 16, 0, tzinfo=UTC)
ACCOUNT_ID = "acct-iron-temple"


class FakeClock:
    """A settable clock; call it to read the current time."""

    def __init__(self, now: datetime = MIDDAY_UTC) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


def decision(**fields: Any) -> str:
    """Reasoner output for *fields*, wrapped in prose the way models answer."""
    return f"Here is my decision:\n{json.dumps(fields)}"


@pytest.fixture
def decide() -> Callable[..., str]:
    """Build reasoner output from keyword fields."""
    return decision


@pytest.fixture
def account_id() -> str:
    return ACCOUNT_ID


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def conn() -> Iterator[StoreConnection]:
    connection = init_db(":memory:")
    yield connection
    connection.close()


@pytest.fixture
def command_store(conn: StoreConnection, clock: FakeClock) -> CommandStore:
    return CommandStore(conn, clock=clock)


@pytest.fixture
def task_store(conn: StoreConnection, clock: FakeClock) -> TaskStore:
    return TaskStore(conn, clock=clock)


@pytest.fixture
def conversation(conn: StoreConnection, clock: FakeClock) -> ConversationLog:
    return ConversationLog(conn, clock=clock)


@pytest.fixture
def outbound(conn: StoreConnection, clock: FakeClock) -> OutboundMessageStore:
    return OutboundMessageStore(conn, clock=clock)


@pytest.fixture
def optouts(conn: StoreConnection, clock: FakeClock) -> OptOutStore:
    return OptOutStore(conn, clock=clock)


@pytest.fixture
def accounts(conn: StoreConnection) -> AccountStore:
    store = AccountStore(conn)
    store.upsert(
        Account(
            id=ACCOUNT_ID,
            name="Iron Temple Gym",
            timezone="America/New_York",
            autopilot_enabled=True,
        )
    )
    return store


@pytest.fixture
def guardrails(
    optouts: OptOutStore,
    accounts: AccountStore,
    outbound: OutboundMessageStore,
    clock: FakeClock,
) -> Guardrails:
    return Guardrails(optouts, accounts, outbound, daily_limit=10, clock=clock)


@pytest.fixture
def mailer() -> MagicMock:
    """Mailer mock returning a fresh provider id per send."""
    ids = itertools.count(1)
    mock = MagicMock()
    mock.send.side_effect = lambda email: SendReceipt(id=f"re_{next(ids)}")
    return mock


@pytest.fixture
def reasoner() -> MagicMock:
    mock = MagicMock()
    mock.evaluate.return_value = decision(action="wait", nextCheckDays=3, reason="Give them time")
    return mock


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def bus(
    command_store: CommandStore,
    mailer: MagicMock,
    outbound: OutboundMessageStore,
    conversation: ConversationLog,
    guardrails: Guardrails,
    notifier: MagicMock,
) -> CommandBus:
    command_bus = CommandBus(command_store, notifier=notifier)
    command_bus.register(
        CommandType.SEND_EMAIL,
        SendEmailExecutor(mailer, outbound, conversation, guardrails, reply_domain="replies.example.com"),
    )
    return command_bus


@pytest.fixture
def policy() -> CadencePolicy:
    return CadencePolicy()


@pytest.fixture
def sender(bus: CommandBus) -> OutreachSender:
    return OutreachSender(bus)


@pytest.fixture
def scheduler(
    bus: CommandBus,
    task_store: TaskStore,
    conversation: ConversationLog,
    accounts: AccountStore,
    guardrails: Guardrails,
    reasoner: MagicMock,
    policy: CadencePolicy,
    sender: OutreachSender,
    notifier: MagicMock,
    clock: FakeClock,
) -> Scheduler:
    return Scheduler(
        bus=bus,
        tasks=task_store,
        conversation=conversation,
        accounts=accounts,
        guardrails=guardrails,
        evaluator=FollowUpEvaluator(reasoner, policy),
        sender=sender,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def task_service(
    task_store: TaskStore,
    conversation: ConversationLog,
    sender: OutreachSender,
    guardrails: Guardrails,
    policy: CadencePolicy,
    notifier: MagicMock,
    clock: FakeClock,
) -> TaskService:
    return TaskService(
        task_store, conversation, sender, guardrails, policy=policy, notifier=notifier, clock=clock
    )


@pytest.fixture
def reply_handler(
    task_store: TaskStore,
    conversation: ConversationLog,
    accounts: AccountStore,
    reasoner: MagicMock,
    sender: OutreachSender,
    guardrails: Guardrails,
    policy: CadencePolicy,
    notifier: MagicMock,
    clock: FakeClock,
) -> ReplyHandler:
    return ReplyHandler(
        tasks=task_store,
        conversation=conversation,
        accounts=accounts,
        evaluator=ReplyEvaluator(reasoner),
        sender=sender,
        guardrails=guardrails,
        policy=policy,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def make_task(task_store: TaskStore, accounts: AccountStore) -> Callable[..., Task]:
    """Factory for open churn-risk tasks with a draft message."""
    counter = itertools.count(1)

    def _make(**overrides: Any) -> Task:
        n = next(counter)
        fields: dict[str, Any] = {
            "account_id": ACCOUNT_ID,
            "task_type": "churn_risk",
            "goal": "Get the member back into the gym",
            "contact_email": f"member{n}@example.com",
            "contact_name": f"Member {n}",
            "context": {
                "draftMessage": "Hi! We noticed you have not been in lately. Everything ok?",
                "riskReason": "No check-ins for 21 days",
            },
        }
        fields.update(overrides)
        return task_store.create(**fields)

    return _make
