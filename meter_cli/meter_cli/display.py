"""Rich output formatting for the meter CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from meter_engine.models.policy import TariffResource, TenantMeteringPolicy
    from meter_engine.models.session import SessionActionRecord, SessionView


# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "running": "green",
    "paused": "yellow",
    "stopped": "blue",
    "expired": "dim red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def format_seconds(seconds: float | None) -> str:
    """Render a duration as ``H:MM:SS`` (``-`` for ``None``)."""
    if seconds is None:
        return "-"
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def format_money(amount: Decimal | None) -> str:
    if amount is None:
        return "-"
    return f"{amount:.2f}"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def display_session(console: Console, view: SessionView) -> None:
    """Render one session with its projections.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    view:
        The session view returned by the session service.
    """
    session = view.session
    cost_label = "Final Cost" if session.is_terminal else "Est. Cost"
    cost_value = session.final_cost if session.is_terminal else view.estimated_cost
    lines = [
        f"[bold]Session:[/bold]   {session.session_id}",
        f"[bold]Status:[/bold]    {_coloured_status(session.status.value)}",
        f"[bold]Tenant:[/bold]    {session.tenant_id}",
        f"[bold]Resource:[/bold]  {session.resource_id}",
        f"[bold]Subject:[/bold]   {session.subject_id}",
        f"[bold]Mode:[/bold]      {session.mode.value}",
        f"[bold]Rate/min:[/bold]  {format_money(session.rate_per_minute)}",
        f"[bold]Started:[/bold]   {session.started_at.isoformat()}",
        f"[bold]Active:[/bold]    {format_seconds(view.active_seconds)}",
    ]
    if view.remaining_seconds is not None:
        lines.append(f"[bold]Remaining:[/bold] {format_seconds(view.remaining_seconds)}")
    if session.stopped_at is not None:
        lines.append(f"[bold]Stopped:[/bold]   {session.stopped_at.isoformat()}")
    lines.append(f"[bold]{cost_label}:[/bold] {format_money(cost_value)}")
    if view.projected_cost is not None:
        lines.append(f"[bold]Projected:[/bold] {format_money(view.projected_cost)}")
    if view.approval_required:
        lines.append("[bold yellow]Approval required: projected cost exceeds the tenant threshold[/bold yellow]")

    console.print(Panel("\n".join(lines), title="Metered Session", border_style="blue"))


def display_session_list(console: Console, views: list[SessionView], *, title: str = "Sessions") -> None:
    """Render sessions as a table, one row per session."""
    if not views:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title=title, show_lines=False)
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Resource")
    table.add_column("Subject")
    table.add_column("Mode", style="dim")
    table.add_column("Active", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Cost", justify="right")

    for view in views:
        session = view.session
        cost_value = session.final_cost if session.is_terminal else view.estimated_cost
        table.add_row(
            session.session_id,
            _coloured_status(session.status.value),
            session.resource_id,
            session.subject_id,
            session.mode.value,
            format_seconds(view.active_seconds),
            format_seconds(view.remaining_seconds),
            format_money(cost_value),
        )

    console.print(table)


def display_actions(console: Console, actions: list[SessionActionRecord]) -> None:
    if not actions:
        console.print("[dim]No actions recorded.[/dim]")
        return
    table = Table(title="Action History")
    table.add_column("When")
    table.add_column("Action")
    table.add_column("Actor", style="dim")
    for action in actions:
        table.add_row(action.occurred_at.isoformat(), action.action.value, action.actor)
    console.print(table)


# ---------------------------------------------------------------------------
# Policies and tariffs
# ---------------------------------------------------------------------------


def display_policy(console: Console, policy: TenantMeteringPolicy) -> None:
    authorized = "[green]yes[/green]" if policy.is_authorized else "[red]no[/red]"
    max_duration = (
        format_seconds(policy.max_session_duration_seconds)
        if policy.max_session_duration_seconds is not None
        else "unlimited"
    )
    lines = [
        f"[bold]Tenant:[/bold]          {policy.tenant_id}",
        f"[bold]Authorized:[/bold]      {authorized}",
        f"[bold]Max concurrent:[/bold]  {policy.max_concurrent_sessions}",
        f"[bold]Max duration:[/bold]    {max_duration}",
        f"[bold]Approval above:[/bold]  {format_money(policy.approval_threshold_cost)}",
        f"[bold]Sessions billed:[/bold] {policy.total_sessions_completed}",
        f"[bold]Revenue:[/bold]         {format_money(policy.total_revenue)}",
    ]
    if policy.last_used_at is not None:
        lines.append(f"[bold]Last used:[/bold]       {policy.last_used_at.isoformat()}")
    console.print(Panel("\n".join(lines), title="Metering Policy", border_style="green"))


def display_tariffs(console: Console, tariffs: list[TariffResource]) -> None:
    if not tariffs:
        console.print("[dim]No tariffs configured.[/dim]")
        return
    table = Table(title="Tariffs")
    table.add_column("Resource", style="cyan")
    table.add_column("Name")
    table.add_column("Rate/min", justify="right")
    table.add_column("Active")
    table.add_column("Sessions", justify="right")
    table.add_column("Revenue", justify="right")
    for tariff in tariffs:
        table.add_row(
            tariff.resource_id,
            tariff.name,
            format_money(tariff.rate_per_minute),
            "yes" if tariff.is_active else "no",
            str(tariff.total_sessions),
            format_money(tariff.total_revenue),
        )
    console.print(table)
