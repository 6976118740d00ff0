"""Summary: Command-line interface for FlowHub.

Importance: Provides a local-first entry point for polling, rescheduling, and conversion.
Alternatives: Drive everything through the HTTP API.
"""

from __future__ import annotations

import argparse
import logging
from datetime import timedelta
from pathlib import Path

import uvicorn

from flowhub.api import create_app
from flowhub.app import build_container
from flowhub.config import AppConfig
from flowhub.ingestion import to_account
from flowhub.models import utc_now
from flowhub.oauth import build_google_auth_url, create_state_token
from flowhub.sources import Credential, GmailMessageSource, MockMessageSource


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="FlowHub CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API with background polling")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)

    poll_once = subparsers.add_parser("poll-once", help="Run one ingestion tick")
    poll_target = poll_once.add_mutually_exclusive_group(required=True)
    poll_target.add_argument("--account-id", type=int)
    poll_target.add_argument("--fixture", type=str, help="Poll a JSON fixture instead of Gmail")

    subparsers.add_parser("reschedule", help="Rebalance pending task due times")

    list_tasks = subparsers.add_parser("list-tasks", help="List tasks")
    list_tasks.add_argument("--status", type=str, default=None)

    list_notifications = subparsers.add_parser("list-notifications", help="List notifications")
    list_notifications.add_argument("--limit", type=int, default=20)
    list_notifications.add_argument("--all", action="store_true", help="Include dismissed")

    add_contact = subparsers.add_parser("add-contact", help="Add a priority contact")
    add_contact.add_argument("email", type=str)
    add_contact.add_argument("--name", type=str, default=None)

    convert = subparsers.add_parser("convert", help="Convert notifications into tasks")
    convert.add_argument("notification_ids", nargs="+", type=int)

    subparsers.add_parser("sweep", help="Run one reminder and escalation sweep")
    subparsers.add_parser("oauth-google", help="Print Google OAuth URL")

    return parser


def run_cli(argv: list[str] | None = None) -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Lets the pipeline run without the API server.
    Alternatives: Invoke services via an HTTP API.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    config = AppConfig.from_env()

    if args.command == "oauth-google":
        state = create_state_token()
        print(build_google_auth_url(config, state))
        return

    if args.command == "serve":
        uvicorn.run(
            create_app(config),
            host=args.host or config.api_host,
            port=args.port or config.api_port,
        )
        return

    sources = None
    if args.command == "poll-once" and args.fixture:
        sources = {GmailMessageSource.name: MockMessageSource.from_fixture(Path(args.fixture))}
    services = build_container(config, sources=sources)
    user_id = services.default_user_id

    if args.command == "poll-once":
        account_id = args.account_id
        if args.fixture:
            # Start the checkpoint before every fixture item so the tick lists them all.
            connection = services.connections.connect_account(
                user_id, GmailMessageSource.name, "fixture@flowhub.local", Credential("fixture")
            )
            services.store.update_connection_checkpoint(
                connection.id, utc_now() - timedelta(days=365)
            )
            account_id = connection.id
        connection = services.store.get_connection(account_id)
        if connection is None:
            parser.error(f"Unknown account {account_id}")
        services.supervisor.register(to_account(connection))
        state = services.supervisor.tick_now(account_id)
        print(f"Account {account_id}: {state.value}")
        return

    if args.command == "reschedule":
        result = services.tasks.reschedule(user_id)
        for item in result.rescheduled:
            print(f"#{item.task_id} -> {item.new_due_at.isoformat()} ({item.reason})")
        for insight in result.insights:
            print(insight)
        return

    if args.command == "list-tasks":
        for task in services.tasks.list_tasks(user_id, status=args.status):
            due = task.due_at.isoformat() if task.due_at else "-"
            print(f"{task.id}: [{task.priority}] {task.title} ({task.status}, due {due})")
        return

    if args.command == "list-notifications":
        for notification in services.notifications.list_notifications(
            user_id, limit=args.limit, include_dismissed=args.all
        ):
            print(f"{notification.id}: [{notification.type}] {notification.title}")
        return

    if args.command == "add-contact":
        contact_id = services.contacts.add_contact(user_id, args.email, args.name)
        print(f"Added priority contact {contact_id} ({args.email}).")
        return

    if args.command == "convert":
        result = services.conversions.convert_batch(user_id, args.notification_ids)
        for notification_id, tasks in result.created.items():
            print(f"Notification {notification_id}: created {len(tasks)} tasks.")
        for notification_id, error in result.errors.items():
            print(f"Notification {notification_id}: {error}")
        return

    if args.command == "sweep":
        services.reminders.backfill()
        report = services.reminders.sweep()
        print(f"Promoted {len(report.promoted)} tasks, fired {len(report.fired)} reminders.")
        return


if __name__ == "__main__":
    run_cli()
