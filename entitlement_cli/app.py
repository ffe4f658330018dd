"""Entitlements CLI -- Typer-based operator interface.

Talks to the entitlement store directly (no HTTP hop) so operators can
provision tenants, inspect records, and replay billing events during an
incident.  Human-readable output goes to *stderr* via Rich; ``--json``
writes machine-readable output to *stdout*.

Exit codes: ``0`` success, ``2`` access denied or quota exhausted,
``3`` error (unknown tenant, bad input, storage failure).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_cli.display import (
    display_access,
    display_entitlement,
    display_ledger,
    display_replay_results,
)
from entitlement_engine.errors import (
    EntitlementError,
    QuotaExceededError,
    StorageTransientError,
    TenantAlreadyExistsError,
    TenantNotFoundError,
)
from entitlement_engine.gate import AuthorizationGate
from entitlement_engine.metering import DEFAULT_ACTION, UsageMeter
from entitlement_engine.models.entitlement import EntitlementSnapshot, PlanTier, ReleaseResult, SyncResult
from entitlement_engine.plans import PlanCatalog
from entitlement_engine.state.database import get_engine, get_session_factory, validate_tenant_id
from entitlement_engine.state.repository import EntitlementRepository, ProcessedEventRepository
from entitlement_engine.sync import EntitlementSync

T = TypeVar("T")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///.entitlements/state.db"

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="entitlements",
    help="Billing entitlement store: tenants, access checks, usage, and event replay.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str = DEFAULT_DATABASE_URL


@app.callback()
def _global_options(
    database_url: str = typer.Option(
        DEFAULT_DATABASE_URL,
        "--database-url",
        help="Async SQLAlchemy URL of the entitlement store.",
        envvar="ENTITLEMENT_DATABASE_URL",
    ),
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine log output."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(work: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Run *work* against a fresh engine, disposing it afterwards."""

    async def _main() -> T:
        engine = get_engine(_database_url)
        try:
            return await work(get_session_factory(engine))
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _emit_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _tenant_arg(tenant_id: str) -> str:
    try:
        return validate_tenant_id(tenant_id)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _fail(message: str, exc: BaseException, code: int = 3) -> typer.Exit:
    console.print(f"[red]{message}: {exc}[/red]")
    return typer.Exit(code=code)


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the entitlement tables (SQLite) or run migrations (PostgreSQL)."""
    if _database_url.startswith("sqlite"):
        from entitlement_engine.state.sqlite_adapter import create_local_tables

        async def _create() -> None:
            engine = get_engine(_database_url)
            try:
                await create_local_tables(engine)
            finally:
                await engine.dispose()

        asyncio.run(_create())
    else:
        from entitlement_engine.state.migrate import upgrade_to_head

        upgrade_to_head(_database_url)
    console.print("[green]Entitlement store ready.[/green]")


# ---------------------------------------------------------------------------
# create-tenant
# ---------------------------------------------------------------------------


@app.command("create-tenant")
def create_tenant(
    tenant_id: str = typer.Argument(..., help="Tenant identifier.", callback=_tenant_arg),
) -> None:
    """Provision a tenant with no subscription."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> EntitlementSnapshot:
        async with session_factory() as session:
            async with session.begin():
                row = await EntitlementRepository(session).create(tenant_id)
                return EntitlementSnapshot.model_validate(row)

    try:
        snapshot = _run(_work)
    except TenantAlreadyExistsError as exc:
        raise _fail("Cannot create tenant", exc) from exc

    if _json_output:
        _emit_json(snapshot.model_dump(mode="json"))
    else:
        console.print(f"[green]Created tenant {snapshot.tenant_id}.[/green]")


# ---------------------------------------------------------------------------
# show
# ---------------------------------------------------------------------------


@app.command()
def show(
    tenant_id: str = typer.Argument(..., help="Tenant identifier.", callback=_tenant_arg),
    events: int = typer.Option(10, "--events", "-n", min=0, help="Recent ledger rows to list."),
) -> None:
    """Show a tenant's entitlement record and recent billing events."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> tuple[EntitlementSnapshot | None, list[Any]]:
        async with session_factory() as session:
            snapshot = await AuthorizationGate(session).snapshot(tenant_id)
            rows = await ProcessedEventRepository(session).list_for_tenant(tenant_id, limit=events) if events else []
            return snapshot, rows

    snapshot, rows = _run(_work)
    if snapshot is None:
        console.print(f"[red]Tenant '{tenant_id}' not found.[/red]")
        raise typer.Exit(code=3)

    if _json_output:
        _emit_json(
            {
                "entitlement": snapshot.model_dump(mode="json"),
                "events": [
                    {
                        "event_id": row.event_id,
                        "event_type": row.event_type,
                        "outcome": row.outcome,
                        "applied_at": row.applied_at,
                    }
                    for row in rows
                ],
            }
        )
    else:
        display_entitlement(console, snapshot)
        display_ledger(console, rows)


# ---------------------------------------------------------------------------
# access
# ---------------------------------------------------------------------------


@app.command()
def access(
    tenant_id: str = typer.Argument(..., help="Tenant identifier.", callback=_tenant_arg),
) -> None:
    """Evaluate the authorization gate for a tenant (exit 2 when denied)."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> Any:
        async with session_factory() as session:
            return await AuthorizationGate(session).check(tenant_id)

    decision = _run(_work)
    if _json_output:
        _emit_json(decision.to_dict())
    else:
        display_access(console, decision)
    if not decision.allowed:
        raise typer.Exit(code=2)


# ---------------------------------------------------------------------------
# consume
# ---------------------------------------------------------------------------


@app.command()
def consume(
    tenant_id: str = typer.Argument(..., help="Tenant identifier.", callback=_tenant_arg),
    quantity: int = typer.Option(1, "--quantity", "-q", min=1, help="Units to consume."),
    action: str = typer.Option(DEFAULT_ACTION, "--action", help="Product action being metered."),
) -> None:
    """Gate, then consume usage for a tenant (exit 2 when denied or over quota)."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> Any:
        async with session_factory() as session:
            async with session.begin():
                decision = await AuthorizationGate(session).check(tenant_id)
                if not decision.allowed:
                    return decision
                return await UsageMeter(session).try_consume(tenant_id, quantity, action)

    try:
        result = _run(_work)
    except QuotaExceededError as exc:
        if _json_output:
            _emit_json(
                {
                    "tenant_id": exc.tenant_id,
                    "error": "quota_exceeded",
                    "usage_count": exc.usage_count,
                    "usage_limit": exc.usage_limit,
                    "requested": exc.requested,
                }
            )
        raise _fail("Quota exceeded", exc, code=2) from exc
    except TenantNotFoundError as exc:
        raise _fail("Cannot consume", exc) from exc

    if getattr(result, "allowed", True) is False:
        if _json_output:
            _emit_json(result.to_dict())
        else:
            display_access(console, result)
        raise typer.Exit(code=2)

    if _json_output:
        _emit_json({**result.model_dump(mode="json"), "remaining": result.remaining})
    else:
        console.print(
            f"[green]Consumed {result.consumed} for {tenant_id}:[/green] "
            f"{result.new_count}/{result.usage_limit} used, {result.remaining} remaining"
        )


# ---------------------------------------------------------------------------
# release
# ---------------------------------------------------------------------------


@app.command()
def release(
    tenant_id: str = typer.Argument(..., help="Tenant identifier.", callback=_tenant_arg),
    quantity: int = typer.Option(1, "--quantity", "-q", min=1, help="Units to give back."),
    action: str = typer.Option(DEFAULT_ACTION, "--action", help="Product action being refunded."),
) -> None:
    """Return usage to a tenant after a metered action failed."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> ReleaseResult:
        async with session_factory() as session:
            async with session.begin():
                return await UsageMeter(session).release(tenant_id, quantity, action)

    try:
        result = _run(_work)
    except TenantNotFoundError as exc:
        raise _fail("Cannot release", exc) from exc

    if _json_output:
        _emit_json({**result.model_dump(mode="json"), "remaining": result.remaining})
    else:
        console.print(
            f"[green]Released {result.released} for {tenant_id}:[/green] "
            f"{result.new_count}/{result.usage_limit} used, {result.remaining} remaining"
        )


# ---------------------------------------------------------------------------
# replay
# ---------------------------------------------------------------------------


def _parse_price_map(values: list[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for value in values:
        price_id, sep, plan = value.partition("=")
        if not sep or not price_id or not plan:
            raise typer.BadParameter(f"Expected PRICE_ID=PLAN, got {value!r}")
        try:
            PlanTier(plan)
        except ValueError:
            raise typer.BadParameter(f"Unknown plan {plan!r} in --price {value!r}") from None
        mapping[price_id] = plan
    return mapping


def _parse_plan_catalog(values: list[str]) -> PlanCatalog:
    overrides: dict[str, int] = {}
    for value in values:
        plan, sep, limit = value.partition("=")
        if not sep or not plan:
            raise typer.BadParameter(f"Expected PLAN=LIMIT, got {value!r}")
        try:
            overrides[plan] = int(limit)
        except ValueError:
            raise typer.BadParameter(f"Limit must be an integer in --plan-limit {value!r}") from None
    try:
        return PlanCatalog(overrides)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None


@app.command()
def replay(
    event_file: Path = typer.Argument(
        ...,
        help="JSON file holding one provider event object or a list of them.",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    price: list[str] = typer.Option([], "--price", help="Map a provider price ID to a plan: PRICE_ID=PLAN."),
    plan_limit: list[str] = typer.Option(
        [],
        "--plan-limit",
        help="Override a plan's usage limit: PLAN=LIMIT. Match the API's API_PLAN_LIMIT_OVERRIDES.",
    ),
) -> None:
    """Apply already-trusted billing events without signature verification.

    Intended for operator recovery, e.g. re-feeding events exported from
    the provider dashboard after an outage.  Deduplication still applies:
    events already in the ledger report ``duplicate``.
    """
    try:
        loaded = json.loads(event_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise _fail("Cannot read event file", exc) from exc
    payloads = loaded if isinstance(loaded, list) else [loaded]
    price_map = _parse_price_map(price)
    catalog = _parse_plan_catalog(plan_limit)

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> list[SyncResult]:
        sync = EntitlementSync(session_factory, catalog=catalog, price_plan_map=price_map)
        return [await sync.handle(payload) for payload in payloads]

    try:
        results = _run(_work)
    except StorageTransientError as exc:
        raise _fail("Replay aborted", exc) from exc
    except EntitlementError as exc:
        raise _fail("Replay failed", exc) from exc

    if _json_output:
        _emit_json([result.model_dump(mode="json") for result in results])
    else:
        display_replay_results(console, results)


# ---------------------------------------------------------------------------
# purge-ledger
# ---------------------------------------------------------------------------


@app.command("purge-ledger")
def purge_ledger(
    days: int = typer.Option(90, "--days", min=1, help="Delete ledger rows older than this many days."),
) -> None:
    """Delete dedup ledger rows past the retention window."""

    async def _work(session_factory: async_sessionmaker[AsyncSession]) -> int:
        async with session_factory() as session:
            async with session.begin():
                return await ProcessedEventRepository(session).purge_older_than(days)

    deleted = _run(_work)
    if _json_output:
        _emit_json({"deleted": deleted, "retention_days": days})
    else:
        console.print(f"Purged {deleted} ledger row(s) older than {days} days.")


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
) -> None:
    """Run the entitlement HTTP API against the selected store."""
    import os

    import uvicorn

    # The API reads API_* settings at import time; point it at the same store.
    previous = os.environ.get("API_DATABASE_URL")
    if previous and previous != _database_url:
        console.print("[yellow]Overriding API_DATABASE_URL with the CLI --database-url store.[/yellow]")
    os.environ["API_DATABASE_URL"] = _database_url

    server = uvicorn.Server(
        uvicorn.Config(
            "entitlement_api.main:app",
            host=host,
            port=port,
            log_level="info",
            access_log=False,
        )
    )
    console.print(f"[green]API server starting on http://{host}:{port}[/green]")
    console.print(f"Readiness probe at http://{host}:{port}/ready")
    server.run()
