"""Summary: Application factory wiring storage, pipeline, schedulers, and services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from flowhub.ai import AiProvider, AiProviderFactory
from flowhub.classifier import ItemClassifier
from flowhub.config import AppConfig
from flowhub.delivery import DeliverySink, IcsCalendarSink, LoggingSink, SinkDispatcher
from flowhub.deriver import TaskDeriver
from flowhub.ingestion import IngestionSupervisor
from flowhub.ledger import DedupLedger
from flowhub.models import User, utc_now
from flowhub.reminders import ReminderScheduler
from flowhub.rescheduler import SmartRescheduler
from flowhub.services import (
    ConnectionService,
    ConversionService,
    NotificationService,
    PriorityContactService,
    TaskService,
    UsageService,
    UserService,
)
from flowhub.sources import GmailMessageSource, MessageSource
from flowhub.storage.sqlite_store import SqliteStore
from flowhub.time_parser import TimeParser
from flowhub.token_codec import TokenCodec


@dataclass(frozen=True)
class AppContainer:
    """Summary: Bundle of shared components and services for FlowHub.

    Importance: Gives the API and CLI one object to start, stop, and query.
    Alternatives: Use a dependency injection framework.
    """

    config: AppConfig
    store: SqliteStore
    sources: dict[str, MessageSource]
    classifier: ItemClassifier
    deriver: TaskDeriver
    ledger: DedupLedger
    supervisor: IngestionSupervisor
    reminders: ReminderScheduler
    rescheduler: SmartRescheduler
    dispatcher: SinkDispatcher
    users: UserService
    connections: ConnectionService
    tasks: TaskService
    usage: UsageService
    conversions: ConversionService
    contacts: PriorityContactService
    notifications: NotificationService
    default_user_id: int

    async def start(self) -> None:
        """Summary: Start account polling and the reminder sweep.

        Importance: Called from the API lifespan so background work shares the server loop.
        Alternatives: Run schedulers in a separate worker process.
        """

        await self.supervisor.start()
        self.reminders.start()

    async def stop(self) -> None:
        await self.reminders.stop()
        await self.supervisor.stop_all()


def build_container(
    config: AppConfig,
    sources: dict[str, MessageSource] | None = None,
    ai_provider: AiProvider | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> AppContainer:
    """Summary: Build every component from configuration.

    Importance: Tests swap in mock sources, scripted AI providers, and fixed clocks here.
    Alternatives: Construct dependencies separately per entrypoint.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    provider = ai_provider or AiProviderFactory(config).build()
    parser = TimeParser(utc_offset_minutes=config.local_utc_offset_minutes)
    classifier = ItemClassifier(
        provider,
        parser=parser,
        store=store,
        max_attempts=config.ai_max_attempts,
        backoff_seconds=config.ai_backoff_seconds,
        sleep=sleep,
        clock=clock,
    )
    deriver = TaskDeriver()
    ledger = DedupLedger(
        window=timedelta(seconds=config.dedup_window_seconds),
        gc_after=timedelta(seconds=config.ledger_gc_seconds),
        clock=clock,
    )
    sinks: list[DeliverySink] = [LoggingSink()]
    if config.calendar_export_dir:
        sinks.append(IcsCalendarSink(Path(config.calendar_export_dir)))
    dispatcher = SinkDispatcher(sinks)
    reminders = ReminderScheduler(
        store,
        sweep_seconds=config.reminder_sweep_seconds,
        escalation_window=timedelta(minutes=config.escalation_window_minutes),
        clock=clock,
    )
    rescheduler = SmartRescheduler(
        store,
        reminders=reminders,
        dispatcher=dispatcher,
        utc_offset_minutes=config.local_utc_offset_minutes,
        clock=clock,
    )
    if sources is None:
        sources = {GmailMessageSource.name: GmailMessageSource(config)}
    connections = ConnectionService(store=store, codec=TokenCodec(config.token_secret), clock=clock)
    supervisor = IngestionSupervisor(
        store,
        connections,
        sources,
        classifier,
        deriver,
        ledger,
        poll_interval_seconds=config.poll_interval_seconds,
        clock=clock,
    )
    connections.supervisor = supervisor
    tasks = TaskService(
        store=store, reminders=reminders, rescheduler=rescheduler, dispatcher=dispatcher, clock=clock
    )
    usage = UsageService(store=store, config=config, clock=clock)
    default_user_id = store.ensure_user(
        User(
            display_name=config.default_user_name,
            email=config.default_user_email,
            plan_type=config.default_plan_type,
        )
    )
    return AppContainer(
        config=config,
        store=store,
        sources=sources,
        classifier=classifier,
        deriver=deriver,
        ledger=ledger,
        supervisor=supervisor,
        reminders=reminders,
        rescheduler=rescheduler,
        dispatcher=dispatcher,
        users=UserService(store=store),
        connections=connections,
        tasks=tasks,
        usage=usage,
        conversions=ConversionService(
            store=store,
            classifier=classifier,
            deriver=deriver,
            tasks=tasks,
            usage=usage,
            clock=clock,
        ),
        contacts=PriorityContactService(store=store),
        notifications=NotificationService(store=store),
        default_user_id=default_user_id,
    )
