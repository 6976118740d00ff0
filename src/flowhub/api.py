"""Summary: FastAPI application for FlowHub.

Importance: Exposes task, notification, quota, contact, and account endpoints to clients.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from flowhub.app import AppContainer, build_container
from flowhub.config import AppConfig
from flowhub.errors import NotFoundError, QuotaExceededError, SourceError
from flowhub.models import NORMAL, utc_now
from flowhub.oauth import build_google_auth_url, create_state_token, exchange_oauth_code
from flowhub.rescheduler import ReschedulingResult
from flowhub.services import TaskTransition
from flowhub.sources import Credential, GmailMessageSource
from flowhub.storage.sqlite_store import StoredConnection, StoredNotification, StoredTask


logger = logging.getLogger(__name__)

OAUTH_STATE_TTL = timedelta(minutes=10)


class TaskCreateRequest(BaseModel):
    """Summary: Request payload for manual task creation.

    Importance: Manual tasks bypass classification and quota.
    Alternatives: Only allow tasks converted from notifications.
    """

    title: str = Field(min_length=1)
    description: str = ""
    priority: str = NORMAL
    estimated_minutes: int | None = Field(default=None, ge=1, le=480)
    due_at: datetime | None = None


class TaskUpdateRequest(BaseModel):
    """Summary: Request payload for partial task updates.

    Importance: Only fields present in the body are written.
    Alternatives: Require the full task on every update.
    """

    title: str | None = None
    description: str | None = None
    priority: str | None = None
    status: str | None = None
    estimated_minutes: int | None = Field(default=None, ge=1, le=480)
    due_at: datetime | None = None


class TaskCompleteRequest(BaseModel):
    actual_minutes: int | None = Field(default=None, ge=0)


class BatchConvertRequest(BaseModel):
    notification_ids: list[int] = Field(min_length=1, max_length=50)


class ContactCreateRequest(BaseModel):
    email: str
    name: str | None = None


class AccountConnectRequest(BaseModel):
    """Summary: Request payload for connecting an account with existing tokens.

    Importance: Allows connecting accounts without the browser OAuth round trip.
    Alternatives: Only support the OAuth callback flow.
    """

    provider_name: str = "gmail"
    account_email: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


def create_app(
    config: AppConfig, container: AppContainer | None = None, run_background: bool = True
) -> FastAPI:
    """Summary: Create a FastAPI app wired to FlowHub services.

    Importance: Ensures the API layer shares the same configuration, storage, and schedulers.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    services = container or build_container(config)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if run_background:
            await services.start()
        try:
            yield
        finally:
            if run_background:
                await services.stop()

    app = FastAPI(title="FlowHub API", version="0.1.0", lifespan=lifespan)
    app.state.services = services
    app.state.oauth_states = {}
    user_id = services.default_user_id

    @app.exception_handler(NotFoundError)
    async def not_found_handler(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(QuotaExceededError)
    async def quota_handler(_: Request, exc: QuotaExceededError) -> JSONResponse:
        return JSONResponse(status_code=429, content=exc.to_payload())

    @app.exception_handler(ValueError)
    async def value_error_handler(_: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    def _register_state(state: str) -> None:
        app.state.oauth_states[state] = utc_now()

    def _validate_state(state: str) -> None:
        """Summary: Validate and consume an OAuth state token.

        Importance: Reduces CSRF risks in OAuth flows.
        Alternatives: Use a dedicated session store for state.
        """

        created_at = app.state.oauth_states.pop(state, None)
        if created_at is None:
            raise HTTPException(status_code=400, detail="Invalid OAuth state")
        if utc_now() - created_at > OAUTH_STATE_TTL:
            raise HTTPException(status_code=400, detail="OAuth state expired")

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/tasks", dependencies=[Depends(require_api_key)])
    def list_tasks(status: str | None = None) -> list[dict[str, Any]]:
        return [_task_payload(task) for task in services.tasks.list_tasks(user_id, status=status)]

    @app.post("/tasks", dependencies=[Depends(require_api_key)])
    def create_task(payload: TaskCreateRequest) -> dict[str, Any]:
        task = services.tasks.create_task(
            user_id,
            payload.title,
            description=payload.description,
            priority=payload.priority,
            estimated_minutes=payload.estimated_minutes,
            due_at=payload.due_at,
        )
        return _task_payload(task)

    @app.get("/tasks/{task_id}", dependencies=[Depends(require_api_key)])
    def get_task(task_id: int) -> dict[str, Any]:
        return _task_payload(services.tasks.get_task(user_id, task_id))

    @app.patch("/tasks/{task_id}", dependencies=[Depends(require_api_key)])
    def update_task(task_id: int, payload: TaskUpdateRequest) -> dict[str, Any]:
        """Summary: Apply a partial update to a task.

        Importance: Due-time edits regenerate reminders and calendar events.
        Alternatives: Expose one endpoint per editable field.
        """

        fields = payload.model_dump(exclude_unset=True)
        if not fields:
            raise HTTPException(status_code=400, detail="No fields to update")
        return _task_payload(services.tasks.update_task(user_id, task_id, **fields))

    @app.delete("/tasks/{task_id}", dependencies=[Depends(require_api_key)])
    def delete_task(task_id: int) -> dict[str, Any]:
        services.tasks.delete_task(user_id, task_id)
        return {"status": "deleted", "id": task_id}

    @app.post("/tasks/{task_id}/start", dependencies=[Depends(require_api_key)])
    def start_task(task_id: int) -> dict[str, Any]:
        return _transition_payload(services.tasks.start_task(user_id, task_id))

    @app.post("/tasks/{task_id}/pause", dependencies=[Depends(require_api_key)])
    def pause_task(task_id: int) -> dict[str, Any]:
        return _transition_payload(services.tasks.pause_task(user_id, task_id))

    @app.post("/tasks/{task_id}/complete", dependencies=[Depends(require_api_key)])
    def complete_task(task_id: int, payload: TaskCompleteRequest | None = None) -> dict[str, Any]:
        actual = payload.actual_minutes if payload else None
        return _transition_payload(
            services.tasks.complete_task(user_id, task_id, actual_minutes=actual)
        )

    @app.post("/reschedule", dependencies=[Depends(require_api_key)])
    def reschedule() -> dict[str, Any]:
        return _rescheduling_payload(services.tasks.reschedule(user_id))

    @app.get("/notifications", dependencies=[Depends(require_api_key)])
    def list_notifications(limit: int = 50, include_dismissed: bool = False) -> list[dict[str, Any]]:
        return [
            _notification_payload(notification)
            for notification in services.notifications.list_notifications(
                user_id, limit=limit, include_dismissed=include_dismissed
            )
        ]

    @app.post("/notifications/{notification_id}/dismiss", dependencies=[Depends(require_api_key)])
    def dismiss_notification(notification_id: int) -> dict[str, Any]:
        services.notifications.dismiss(user_id, notification_id)
        return {"status": "dismissed", "id": notification_id}

    @app.post("/notifications/{notification_id}/convert", dependencies=[Depends(require_api_key)])
    def convert_notification(notification_id: int) -> dict[str, Any]:
        """Summary: Convert a notification into one or more AI-derived tasks.

        Importance: Returns 429 with PLAN_LIMIT_EXCEEDED once the plan ceiling is hit.
        Alternatives: Queue conversions and notify the client later.
        """

        tasks = services.conversions.convert_notification(user_id, notification_id)
        return {
            "notification_id": notification_id,
            "tasks": [_task_payload(task) for task in tasks],
            "multi_task": len(tasks) > 1,
        }

    @app.post("/notifications/convert-batch", dependencies=[Depends(require_api_key)])
    def convert_batch(payload: BatchConvertRequest) -> dict[str, Any]:
        result = services.conversions.convert_batch(user_id, payload.notification_ids)
        return {
            "created": {
                str(notification_id): [_task_payload(task) for task in tasks]
                for notification_id, tasks in result.created.items()
            },
            "errors": {str(key): value for key, value in result.errors.items()},
        }

    @app.get("/usage", dependencies=[Depends(require_api_key)])
    def usage() -> dict[str, Any]:
        status = services.usage.check_limit(user_id)
        return {
            "current_count": status.current_count,
            "limit": status.limit,
            "plan_type": status.plan_type,
            "within_limit": status.within_limit,
            "month": status.month,
        }

    @app.get("/contacts", dependencies=[Depends(require_api_key)])
    def list_contacts() -> list[str]:
        return services.contacts.list_contacts(user_id)

    @app.post("/contacts", dependencies=[Depends(require_api_key)])
    def add_contact(payload: ContactCreateRequest) -> dict[str, Any]:
        contact_id = services.contacts.add_contact(user_id, payload.email, payload.name)
        return {"id": contact_id, "email": payload.email.strip().lower()}

    @app.delete("/contacts/{email}", dependencies=[Depends(require_api_key)])
    def remove_contact(email: str) -> dict[str, Any]:
        services.contacts.remove_contact(user_id, email)
        return {"status": "deleted", "email": email}

    @app.get("/accounts", dependencies=[Depends(require_api_key)])
    def list_accounts() -> list[dict[str, Any]]:
        return [
            _connection_payload(connection, services.supervisor.state(connection.id))
            for connection in services.connections.list_accounts(user_id)
        ]

    @app.post("/accounts", dependencies=[Depends(require_api_key)])
    def connect_account(payload: AccountConnectRequest) -> dict[str, Any]:
        if payload.provider_name not in services.sources:
            raise HTTPException(status_code=400, detail="Unknown provider")
        connection = services.connections.connect_account(
            user_id,
            payload.provider_name,
            payload.account_email,
            Credential(
                access_token=payload.access_token,
                refresh_token=payload.refresh_token,
                expires_at=payload.expires_at,
            ),
        )
        return _connection_payload(connection, services.supervisor.state(connection.id))

    @app.delete("/accounts/{account_id}", dependencies=[Depends(require_api_key)])
    def disconnect_account(account_id: int) -> dict[str, Any]:
        services.connections.clear_credential(user_id, account_id)
        return {"status": "disconnected", "id": account_id}

    @app.post("/accounts/{account_id}/poll", dependencies=[Depends(require_api_key)])
    def poll_account(account_id: int) -> dict[str, Any]:
        try:
            state = services.supervisor.tick_now(account_id)
        except KeyError as exc:
            raise NotFoundError(f"Account {account_id} is not being polled") from exc
        return {"id": account_id, "state": state.value}

    @app.get("/oauth/google", dependencies=[Depends(require_api_key)])
    def oauth_google() -> dict[str, str]:
        """Summary: Return the Google OAuth authorization URL.

        Importance: Starts the Gmail connect flow.
        Alternatives: Use CLI-only OAuth helpers.
        """

        state = create_state_token()
        _register_state(state)
        return {"url": build_google_auth_url(config, state), "state": state}

    @app.get("/oauth/callback", response_class=HTMLResponse)
    def oauth_callback(code: str, state: str) -> str:
        """Summary: Exchange the authorization code and connect the Gmail account.

        Importance: Completes the connect flow and starts polling immediately.
        Alternatives: Ask the user to paste tokens into the API.
        """

        _validate_state(state)
        source = services.sources.get(GmailMessageSource.name)
        if source is None:
            raise HTTPException(status_code=400, detail="Gmail source is not configured")
        try:
            result = exchange_oauth_code(config, code)
            credential = Credential(
                access_token=result.access_token,
                refresh_token=result.refresh_token,
                expires_at=result.expires_at,
                token_type=result.token_type or "Bearer",
                scope=result.scope,
            )
            account_email = source.account_email(credential)
        except SourceError as exc:
            logger.warning("OAuth callback failed: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        services.connections.connect_account(
            user_id, GmailMessageSource.name, account_email, credential
        )
        return "<h1>FlowHub connected</h1><p>You can close this window.</p>"

    return app


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _task_payload(task: StoredTask) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "status": task.status,
        "estimated_minutes": task.estimated_minutes,
        "actual_minutes": task.actual_minutes,
        "due_at": _iso(task.due_at),
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
        "source_app": task.source_app,
        "source_item_id": task.source_item_id,
        "metadata": task.metadata,
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
    }


def _notification_payload(notification: StoredNotification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "title": notification.title,
        "description": notification.description,
        "type": notification.type,
        "source_app": notification.source_app,
        "source_item_id": notification.source_item_id,
        "ai_summary": notification.ai_summary,
        "actionable_insights": notification.actionable_insights,
        "metadata": notification.metadata,
        "dismissed": notification.dismissed,
        "created_at": _iso(notification.created_at),
    }


def _connection_payload(connection: StoredConnection, state: Any) -> dict[str, Any]:
    return {
        "id": connection.id,
        "provider_name": connection.provider_name,
        "account_email": connection.account_email,
        "status": connection.status,
        "polling_state": state.value if state is not None else None,
        "checkpoint": _iso(connection.checkpoint),
    }


def _rescheduling_payload(result: ReschedulingResult) -> dict[str, Any]:
    return {
        "rescheduled": [
            {
                "task_id": item.task_id,
                "old_due_at": _iso(item.old_due_at),
                "new_due_at": _iso(item.new_due_at),
                "reason": item.reason,
                "time_difference": item.time_difference,
            }
            for item in result.rescheduled
        ],
        "insights": result.insights,
        "total_time_saved": result.total_time_saved,
    }


def _transition_payload(transition: TaskTransition) -> dict[str, Any]:
    return {
        "task": _task_payload(transition.task),
        "rescheduling": _rescheduling_payload(transition.rescheduling),
    }
