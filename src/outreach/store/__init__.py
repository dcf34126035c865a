"""SQLite persistence for commands, tasks, conversations and guardrail state."""

from outreach.store.accounts import AccountStore
from outreach.store.commands import CommandStore
from outreach.store.conversation import ConversationLog
from outreach.store.optouts import OptOutStore
from outreach.store.outbound import OutboundMessageStore
from outreach.store.schema import StoreConnection, connect, create_tables, init_db
from outreach.store.serializers import from_db_ts, to_db_ts, utc_now
from outreach.store.tasks import TaskStore

__all__ = [
    "AccountStore",
    "CommandStore",
    "ConversationLog",
    "OptOutStore",
    "OutboundMessageStore",
    "StoreConnection",
    "TaskStore",
    "connect",
    "create_tables",
    "from_db_ts",
    "init_db",
    "to_db_ts",
    "utc_now",
]
