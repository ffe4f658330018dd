"""Rich output formatting for the entitlements CLI.

All functions write to a :class:`rich.console.Console` (bound to *stderr*
by the app) so that ``--json`` output on *stdout* stays machine-readable.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from entitlement_engine.models.entitlement import AccessDecision, EntitlementSnapshot, SyncResult
    from entitlement_engine.state.tables import ProcessedEventTable

_STATUS_COLOURS: dict[str, str] = {
    "active": "green",
    "trialing": "cyan",
    "past_due": "yellow",
    "canceled": "red",
    "none": "dim",
}

_OUTCOME_COLOURS: dict[str, str] = {
    "applied": "green",
    "stale": "yellow",
    "duplicate": "dim",
    "ignored": "dim",
    "rejected": "red",
    "dropped": "red",
}


def _coloured(value: str, colours: dict[str, str]) -> str:
    colour = colours.get(value, "white")
    return f"[{colour}]{value}[/{colour}]"


def _fmt_time(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value is not None else "-"


def display_entitlement(console: Console, snapshot: EntitlementSnapshot) -> None:
    """Render one tenant's entitlement record as a panel."""
    lines = [
        f"Status:        {_coloured(snapshot.status.value, _STATUS_COLOURS)}",
        f"Plan:          {snapshot.plan.value}",
        f"Usage:         {snapshot.usage_count} / {snapshot.usage_limit} ({snapshot.usage_remaining} remaining)",
        f"Period:        {_fmt_time(snapshot.current_period_start)} -> {_fmt_time(snapshot.current_period_end)}",
        f"Customer:      {snapshot.billing_customer_ref or '-'}",
        f"Subscription:  {snapshot.billing_subscription_ref or '-'}",
        f"Last event:    {snapshot.last_applied_event_id or '-'} at {_fmt_time(snapshot.last_applied_event_at)}",
    ]
    console.print(Panel("\n".join(lines), title=f"[bold]{snapshot.tenant_id}[/bold]", expand=False))


def display_access(console: Console, decision: AccessDecision) -> None:
    verdict = "[green]ALLOWED[/green]" if decision.allowed else "[red]DENIED[/red]"
    suffix = f" until {_fmt_time(decision.access_until)}" if decision.access_until else ""
    console.print(f"{decision.tenant_id}: {verdict} ({decision.reason}){suffix}")


def display_ledger(console: Console, rows: Sequence[ProcessedEventTable]) -> None:
    """Render recent dedup ledger rows for a tenant."""
    if not rows:
        console.print("[dim]No billing events recorded.[/dim]")
        return
    table = Table(title="Recent billing events")
    table.add_column("Event ID", style="bold")
    table.add_column("Type")
    table.add_column("Outcome")
    table.add_column("Recorded at")
    for row in rows:
        table.add_row(
            row.event_id,
            row.event_type or "-",
            _coloured(row.outcome, _OUTCOME_COLOURS),
            _fmt_time(row.applied_at),
        )
    console.print(table)


def display_replay_results(console: Console, results: Sequence[SyncResult]) -> None:
    table = Table(title=f"Replayed {len(results)} event(s)")
    table.add_column("Event ID", style="bold")
    table.add_column("Type")
    table.add_column("Tenant")
    table.add_column("Outcome")
    table.add_column("Detail")
    for result in results:
        table.add_row(
            result.event_id or "-",
            result.event_type or "-",
            result.tenant_id or "-",
            _coloured(result.outcome.value, _OUTCOME_COLOURS),
            result.detail or "",
        )
    console.print(table)
