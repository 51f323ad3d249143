"""Meter CLI application -- Typer-based operator interface.

Provides commands for tenant policy and tariff administration, session
lifecycle control (start, pause, resume, stop), inspection and listing, and
running the expiration sweeper.  Human-readable output goes to *stderr* via
Rich; with ``--json`` the result is written to *stdout* as JSON so that
scripts can compose cleanly.

Exit codes: ``2`` for metering errors (denied, invalid transition, not
found), ``3`` for invalid input, ``75`` for transient store failures.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

import typer
from meter_engine.config import Settings, load_settings
from meter_engine.errors import MeteringError, TransientStoreError
from meter_engine.models.session import SessionMode, SessionStatus, SessionView
from meter_engine.state.database import dispose_engine, get_engine, get_session_factory
from meter_engine.state.sqlite_adapter import create_local_tables
from meter_service.config import ServiceSettings, load_service_settings
from meter_service.log_format import configure_logging
from meter_service.services.expiration_sweeper import ExpirationSweeper
from meter_service.services.session_service import SessionService
from meter_service.services.tenant_admin_service import TenantAdminService
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from meter_cli.display import (
    display_actions,
    display_policy,
    display_session,
    display_session_list,
    display_tariffs,
)

T = TypeVar("T")

EXIT_METERING_ERROR = 2
EXIT_INVALID_INPUT = 3
EXIT_TRANSIENT = 75

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="meter",
    help="Metered rental-session billing engine",
    no_args_is_help=True,
)
console = Console(stderr=True)

policy_app = typer.Typer(name="policy", help="Tenant metering authorization and quotas.", no_args_is_help=True)
app.add_typer(policy_app, name="policy")

tariff_app = typer.Typer(name="tariff", help="Per-resource tariffs.", no_args_is_help=True)
app.add_typer(tariff_app, name="tariff")

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="SQLAlchemy async database URL.",
        envvar="METER_DATABASE_URL",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass
class _Runtime:
    settings: Settings
    service_settings: ServiceSettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    sessions: SessionService
    admin: TenantAdminService


@asynccontextmanager
async def _runtime() -> AsyncIterator[_Runtime]:
    overrides: dict[str, Any] = {"database_url": _database_url} if _database_url else {}
    settings = load_settings(**overrides)
    service_settings = load_service_settings()
    engine = get_engine(settings.database_url, settings.database_pool_size, settings.database_max_overflow)
    try:
        factory = get_session_factory(engine)
        sessions = SessionService(factory, settings=settings, service_settings=service_settings)
        yield _Runtime(
            settings=settings,
            service_settings=service_settings,
            engine=engine,
            session_factory=factory,
            sessions=sessions,
            admin=TenantAdminService(factory, sessions.tariff_cache),
        )
    finally:
        await dispose_engine(engine)


def _run(operation: Callable[[_Runtime], Awaitable[T]]) -> T:
    """Run *operation* against a fresh runtime, mapping errors to exit codes."""

    async def _invoke() -> T:
        async with _runtime() as runtime:
            return await operation(runtime)

    try:
        return asyncio.run(_invoke())
    except TransientStoreError as exc:
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        raise typer.Exit(code=EXIT_TRANSIENT) from exc
    except MeteringError as exc:
        console.print(f"[red]{exc.code}: {exc.message}[/red]")
        raise typer.Exit(code=EXIT_METERING_ERROR) from exc
    except SQLAlchemyError as exc:
        console.print(f"[red]Database error: {exc}[/red]")
        console.print("[dim]Has the schema been created? Run 'meter init-db'.[/dim]")
        raise typer.Exit(code=EXIT_TRANSIENT) from exc


def _emit_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _parse_decimal(value: str, label: str) -> Decimal:
    """Parse a non-negative decimal string, raising ``typer.Exit`` on failure."""
    try:
        parsed = Decimal(value)
    except InvalidOperation as exc:
        console.print(f"[red]Invalid {label} '{value}'.[/red]")
        raise typer.Exit(code=EXIT_INVALID_INPUT) from exc
    if not parsed.is_finite() or parsed < 0:
        console.print(f"[red]Invalid {label} '{value}': must be a non-negative number.[/red]")
        raise typer.Exit(code=EXIT_INVALID_INPUT)
    return parsed


def view_payload(view: SessionView) -> dict[str, Any]:
    """Flatten a session view into a JSON-ready dict."""
    payload = view.session.model_dump(mode="json")
    payload.update(view.model_dump(mode="json", exclude={"session"}))
    return payload


def _show_view(view: SessionView) -> None:
    if _json_output:
        _emit_json(view_payload(view))
    else:
        display_session(console, view)


def _show_views(views: list[SessionView], *, title: str, total: int | None = None) -> None:
    if _json_output:
        rows = [view_payload(v) for v in views]
        _emit_json(rows if total is None else {"total": total, "sessions": rows})
        return
    display_session_list(console, views, title=title)
    if total is not None:
        console.print(f"[dim]{len(views)} of {total} sessions[/dim]")


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the metering tables (idempotent)."""

    async def _op(rt: _Runtime) -> None:
        if rt.settings.is_sqlite():
            await create_local_tables(rt.engine)
        else:
            from meter_engine.state.tables import Base

            async with rt.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    _run(_op)
    console.print("[green]Metering schema ready.[/green]")


# ---------------------------------------------------------------------------
# policy
# ---------------------------------------------------------------------------


@policy_app.command("set")
def policy_set(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    authorize: bool = typer.Option(True, "--authorize/--revoke", help="Grant or revoke metering."),
    max_concurrent: int | None = typer.Option(None, "--max-concurrent", min=0, help="Concurrent session cap."),
    max_duration: int | None = typer.Option(None, "--max-duration", min=1, help="Countdown cap in seconds."),
    unlimited_duration: bool = typer.Option(False, "--unlimited-duration", help="Remove the duration cap."),
    approval_threshold: str | None = typer.Option(None, "--approval-threshold", help="Flag costs above this."),
    no_approval_threshold: bool = typer.Option(False, "--no-approval-threshold", help="Remove the threshold."),
    authorized_by: str = typer.Option("cli", "--by", help="Who granted the authorization."),
    notes: str | None = typer.Option(None, "--notes"),
) -> None:
    """Create or update a tenant's metering policy."""
    kwargs: dict[str, Any] = {}
    if unlimited_duration:
        kwargs["max_session_duration_seconds"] = None
    elif max_duration is not None:
        kwargs["max_session_duration_seconds"] = max_duration
    if no_approval_threshold:
        kwargs["approval_threshold_cost"] = None
    elif approval_threshold is not None:
        kwargs["approval_threshold_cost"] = _parse_decimal(approval_threshold, "approval threshold")

    policy = _run(
        lambda rt: rt.admin.set_policy(
            tenant_id,
            is_authorized=authorize,
            authorized_by=authorized_by,
            max_concurrent_sessions=max_concurrent,
            notes=notes,
            **kwargs,
        )
    )
    if _json_output:
        _emit_json(policy.model_dump(mode="json"))
    else:
        display_policy(console, policy)


@policy_app.command("show")
def policy_show(tenant_id: str = typer.Argument(..., help="Tenant identifier.")) -> None:
    """Show a tenant's policy and running totals."""
    policy = _run(lambda rt: rt.admin.get_policy(tenant_id))
    if _json_output:
        _emit_json(policy.model_dump(mode="json"))
    else:
        display_policy(console, policy)


# ---------------------------------------------------------------------------
# tariff
# ---------------------------------------------------------------------------


@tariff_app.command("set")
def tariff_set(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    resource_id: str = typer.Argument(..., help="Resource identifier."),
    rate: str = typer.Option(..., "--rate", help="Price per minute of active time."),
    name: str = typer.Option("", "--name", help="Display name."),
    active: bool = typer.Option(True, "--active/--inactive", help="Whether new sessions may start."),
) -> None:
    """Create or update a resource tariff."""
    rate_per_minute = _parse_decimal(rate, "rate")
    tariff = _run(
        lambda rt: rt.admin.set_tariff(
            tenant_id,
            resource_id,
            rate_per_minute=rate_per_minute,
            name=name,
            is_active=active,
        )
    )
    if _json_output:
        _emit_json(tariff.model_dump(mode="json"))
    else:
        display_tariffs(console, [tariff])


@tariff_app.command("list")
def tariff_list(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive resources."),
) -> None:
    """List a tenant's tariffs."""
    tariffs = _run(lambda rt: rt.admin.list_tariffs(tenant_id, include_inactive=include_inactive))
    if _json_output:
        _emit_json([t.model_dump(mode="json") for t in tariffs])
    else:
        display_tariffs(console, tariffs)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@app.command()
def start(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    resource_id: str = typer.Argument(..., help="Resource to meter."),
    subject_id: str = typer.Argument(..., help="Who the session is billed to."),
    countdown: int | None = typer.Option(
        None,
        "--countdown",
        help="Planned duration in seconds; omit for an open-ended session.",
    ),
    notes: str | None = typer.Option(None, "--notes"),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Start a metered session."""
    mode = SessionMode.COUNTDOWN if countdown is not None else SessionMode.OPEN_ENDED
    view = _run(
        lambda rt: rt.sessions.start_session(
            tenant_id,
            resource_id,
            subject_id,
            mode,
            countdown,
            notes,
            actor=actor,
        )
    )
    _show_view(view)


@app.command()
def pause(
    session_id: str = typer.Argument(..., help="Session identifier."),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Pause a running session."""
    _show_view(_run(lambda rt: rt.sessions.pause_session(session_id, actor=actor)))


@app.command()
def resume(
    session_id: str = typer.Argument(..., help="Session identifier."),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Resume a paused session."""
    _show_view(_run(lambda rt: rt.sessions.resume_session(session_id, actor=actor)))


@app.command()
def stop(
    session_id: str = typer.Argument(..., help="Session identifier."),
    actor: str = typer.Option("cli", "--actor"),
) -> None:
    """Stop a session and freeze its cost (idempotent)."""
    _show_view(_run(lambda rt: rt.sessions.stop_session(session_id, actor=actor)))


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session identifier."),
    actions: bool = typer.Option(False, "--actions", help="Include the action history."),
) -> None:
    """Show a session with projections recomputed now."""

    async def _op(rt: _Runtime) -> tuple[SessionView, list[Any]]:
        view = await rt.sessions.get_session(session_id)
        history = await rt.sessions.get_session_actions(session_id) if actions else []
        return view, history

    view, history = _run(_op)
    if _json_output:
        payload = view_payload(view)
        if actions:
            payload["actions"] = [a.model_dump(mode="json") for a in history]
        _emit_json(payload)
        return
    display_session(console, view)
    if actions:
        display_actions(console, history)


@app.command()
def active(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    subject_id: str | None = typer.Option(None, "--subject", help="Only this subject's sessions."),
) -> None:
    """List running and paused sessions."""
    views = _run(lambda rt: rt.sessions.list_active_sessions(tenant_id, subject_id))
    _show_views(views, title=f"Active sessions ({tenant_id})")


@app.command()
def history(
    tenant_id: str = typer.Argument(..., help="Tenant identifier."),
    status: SessionStatus | None = typer.Option(None, "--status", help="stopped or expired."),
    resource_id: str | None = typer.Option(None, "--resource"),
    subject_id: str | None = typer.Option(None, "--subject"),
    limit: int = typer.Option(20, "--limit", min=1),
    offset: int = typer.Option(0, "--offset", min=0),
) -> None:
    """List terminated sessions, newest first."""
    if status is not None and not status.is_terminal:
        console.print(f"[red]History only holds stopped or expired sessions, not '{status.value}'.[/red]")
        raise typer.Exit(code=EXIT_INVALID_INPUT)
    views, total = _run(
        lambda rt: rt.sessions.list_session_history(
            tenant_id,
            status=status,
            resource_id=resource_id,
            subject_id=subject_id,
            limit=limit,
            offset=offset,
        )
    )
    _show_views(views, title=f"Session history ({tenant_id})", total=total)


# ---------------------------------------------------------------------------
# Sweeper
# ---------------------------------------------------------------------------


@app.command()
def sweep(
    tenant_id: str | None = typer.Option(None, "--tenant", help="Only sweep this tenant."),
) -> None:
    """Run one expiration sweep and retry pending reconciliations."""

    async def _op(rt: _Runtime) -> tuple[int, int]:
        sweeper = ExpirationSweeper(rt.sessions, rt.session_factory, rt.service_settings, tenant_id=tenant_id)
        result = await sweeper.run_once()
        return result.expired, result.reconciled

    expired, reconciled = _run(_op)
    if _json_output:
        _emit_json({"expired": expired, "reconciled": reconciled})
    else:
        console.print(f"[green]Expired {expired} session(s); reconciled {reconciled} pending export(s).[/green]")


@app.command("run-sweeper")
def run_sweeper(
    tenant_id: str | None = typer.Option(None, "--tenant", help="Only sweep this tenant."),
) -> None:
    """Run the expiration sweeper in the foreground until interrupted."""

    async def _op(rt: _Runtime) -> None:
        configure_logging(rt.service_settings)
        sweeper = ExpirationSweeper(rt.sessions, rt.session_factory, rt.service_settings, tenant_id=tenant_id)
        await sweeper.start()
        try:
            while sweeper.running:
                await asyncio.sleep(rt.service_settings.sweep_interval_seconds)
        finally:
            await sweeper.stop()

    console.print("[bold]Expiration sweeper running.[/bold] Press Ctrl+C to stop.")
    try:
        _run(_op)
    except KeyboardInterrupt:
        console.print("[dim]Sweeper stopped.[/dim]")
