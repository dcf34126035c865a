"""Application entry point: the outreach engine's HTTP service.

Configures:
- **structlog** with JSON rendering (production) or colored console (development)
- **Sentry** error forwarding for ERROR-level log events
- **Prometheus** ``/metrics`` plus business counters
- the command bus, scheduler, task service and reply handler over one SQLite
  connection, exposed through FastAPI and served by uvicorn
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from outreach.api import register_error_handlers, router
from outreach.commands import CommandBus, SendEmailExecutor
from outreach.config import Settings, get_settings, validate_credentials
from outreach.domain.types import CommandType
from outreach.email import Mailer, ResendMailer
from outreach.guardrails import Guardrails
from outreach.health import register_health_routes
from outreach.llm import (
    AnthropicReasoner,
    CadencePolicy,
    FollowUpEvaluator,
    Reasoner,
    ReplyEvaluator,
    get_anthropic_client,
)
from outreach.notifications import Notifier, SlackNotifier
from outreach.observability.metrics import setup_metrics
from outreach.observability.middleware import RequestIdMiddleware
from outreach.observability.sentry import get_sentry_processor, init_sentry
from outreach.replies import ReplyHandler
from outreach.scheduler import OutreachSender, Scheduler
from outreach.store import (
    AccountStore,
    CommandStore,
    ConversationLog,
    OptOutStore,
    OutboundMessageStore,
    TaskStore,
    init_db,
    utc_now,
)
from outreach.tasks import TaskService

logger = structlog.get_logger()


def configure_logging(production: bool = False) -> None:
    """Configure structlog for production (JSON) or development (console).

    Production mode (*production=True*): JSON rendering at INFO level.
    Development mode: colored console rendering at DEBUG level.

    Args:
        production: Enable production mode if ``True``.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        get_sentry_processor(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if production:
        shared_processors.append(structlog.processors.dict_tracebacks)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        log_level = logging.INFO
    else:
        renderer = structlog.dev.ConsoleRenderer()
        log_level = logging.DEBUG

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service="outreach-engine")


def _build_notifier(settings: Settings) -> Notifier | None:
    bot_token = settings.slack_bot_token.get_secret_value()
    if not bot_token or not settings.slack_escalation_channel:
        logger.warning("slack_notifier_disabled")
        return None
    logger.info("slack_notifier_initialized", channel=settings.slack_escalation_channel)
    return SlackNotifier(settings.slack_escalation_channel, bot_token)


def initialize_services(
    settings: Settings | None = None,
    *,
    mailer: Mailer | None = None,
    reasoner: Reasoner | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> dict[str, Any]:
    """Set up all shared services for the application.

    Opens the database, builds the stores, guardrails, command bus (with the
    ``SendEmail`` executor registered), evaluators, scheduler, task service
    and reply handler.  The mailer, reasoner and notifier are built from
    settings unless passed in.

    Args:
        settings: Application settings.  If ``None``, ``get_settings()`` is used.
        mailer: Mail transport override.
        reasoner: Reasoning capability override.
        notifier: Operator alerting override.
        clock: Current UTC time; shared by every component.

    Returns:
        A dict of initialized service instances keyed by name.
    """
    if settings is None:
        settings = get_settings()

    services: dict[str, Any] = {"_settings": settings}

    conn = init_db(settings.database_path)
    services["conn"] = conn

    commands = CommandStore(
        conn,
        clock=clock,
        default_max_attempts=settings.command_max_attempts,
        backoff_minutes=settings.command_backoff_minutes,
        claim_timeout_seconds=settings.command_claim_timeout_seconds,
    )
    tasks = TaskStore(conn, clock=clock)
    conversation = ConversationLog(conn, clock=clock)
    outbound = OutboundMessageStore(conn, clock=clock)
    optouts = OptOutStore(conn, clock=clock)
    accounts = AccountStore(conn, default_timezone=settings.default_timezone)
    services.update(
        commands=commands,
        tasks=tasks,
        conversation=conversation,
        outbound=outbound,
        optouts=optouts,
        accounts=accounts,
    )

    guardrails = Guardrails(
        optouts,
        accounts,
        outbound,
        daily_limit=settings.daily_autopilot_limit,
        quiet_hour_start=settings.quiet_hour_start,
        quiet_hour_end=settings.quiet_hour_end,
        default_timezone=settings.default_timezone,
        clock=clock,
    )
    services["guardrails"] = guardrails

    if notifier is None:
        notifier = _build_notifier(settings)
    services["notifier"] = notifier

    if mailer is None:
        mailer = ResendMailer(
            settings.resend_api_key.get_secret_value(),
            settings.mail_from,
            timeout=settings.mailer_timeout_seconds,
        )
    services["mailer"] = mailer

    if reasoner is None:
        reasoner = AnthropicReasoner(
            get_anthropic_client(
                settings.anthropic_api_key.get_secret_value() or None,
                timeout=settings.reasoner_timeout_seconds,
            ),
            model=settings.reasoner_model,
        )
    services["reasoner"] = reasoner

    bus = CommandBus(commands, notifier=notifier)
    bus.register(
        CommandType.SEND_EMAIL,
        SendEmailExecutor(
            mailer, outbound, conversation, guardrails, reply_domain=settings.reply_domain
        ),
    )
    services["bus"] = bus

    policy = CadencePolicy(
        max_touches=settings.max_touches,
        day_offsets=settings.follow_up_day_offsets,
        max_thread_days=settings.max_thread_days,
        fallback_wait_days=settings.fallback_wait_days,
    )
    sender = OutreachSender(bus)
    services["sender"] = sender

    services["scheduler"] = Scheduler(
        bus=bus,
        tasks=tasks,
        conversation=conversation,
        accounts=accounts,
        guardrails=guardrails,
        evaluator=FollowUpEvaluator(reasoner, policy),
        sender=sender,
        notifier=notifier,
        command_batch_size=settings.command_batch_size,
        autopilot_batch_size=settings.autopilot_batch_size,
        follow_up_batch_size=settings.follow_up_batch_size,
        time_budget_seconds=settings.tick_time_budget_seconds,
        clock=clock,
    )
    services["task_service"] = TaskService(
        tasks, conversation, sender, guardrails, policy=policy, notifier=notifier, clock=clock
    )
    services["reply_handler"] = ReplyHandler(
        tasks=tasks,
        conversation=conversation,
        accounts=accounts,
        evaluator=ReplyEvaluator(reasoner),
        sender=sender,
        guardrails=guardrails,
        policy=policy,
        notifier=notifier,
        clock=clock,
    )

    logger.info("services_initialized", database_path=str(settings.database_path))
    return services


def close_services(services: dict[str, Any]) -> None:
    """Release the mail client and the database connection."""
    mailer = services.get("mailer")
    if isinstance(mailer, ResendMailer):
        mailer.close()
    conn = services.get("conn")
    if conn is not None:
        conn.close()
        logger.info("database_connection_closed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Lifespan context manager: closes services on shutdown."""
    logger.info("fastapi_application_starting")
    yield
    close_services(app.state.services)


def create_app(services: dict[str, Any]) -> FastAPI:
    """Create the FastAPI app with middleware, metrics, health and routes.

    Args:
        services: The initialized services dict from ``initialize_services``.

    Returns:
        The configured FastAPI application.
    """
    fastapi_app = FastAPI(title="Outreach Engine", lifespan=lifespan)
    fastapi_app.state.services = services
    fastapi_app.state.settings = services.get("_settings") or get_settings()
    fastapi_app.add_middleware(RequestIdMiddleware)
    setup_metrics(fastapi_app)
    register_error_handlers(fastapi_app)
    fastapi_app.include_router(router)
    register_health_routes(fastapi_app)
    return fastapi_app


async def main() -> None:
    """Main entry point.

    1. Configure logging and Sentry
    2. Validate credentials
    3. Initialize services and create the FastAPI app
    4. Serve with uvicorn until shutdown
    """
    settings = get_settings()
    configure_logging(production=settings.production)
    init_sentry(settings.sentry_dsn, environment="production" if settings.production else "development")
    logger.info("application_starting")

    validate_credentials(settings)

    services = initialize_services(settings)
    fastapi_app = create_app(services)

    config = uvicorn.Config(
        fastapi_app,
        host="0.0.0.0",
        port=settings.webhook_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()


def run() -> None:
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
