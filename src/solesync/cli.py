"""Click-based CLI for solesync.

Thin wrapper around library modules. Zero business logic — every operation
delegates to the scheduling, ingestion, or market modules.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from solesync.core.exceptions import SolesyncError

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    try:
        return asyncio.run(coro)
    except SolesyncError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise SystemExit(1) from exc


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from solesync.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


async def _open_services_async(config):
    """Open storage and wire components from config."""
    from solesync.services import open_services

    return await open_services(config)


def _parse_decimal(value: str | None, name: str) -> Decimal | None:
    if value is None:
        return None
    try:
        parsed = Decimal(value)
    except InvalidOperation as e:
        raise click.BadParameter(f"not a number: {value!r}", param_hint=name) from e
    if parsed <= 0:
        raise click.BadParameter("must be > 0", param_hint=name)
    return parsed


def _fmt(amount: Decimal | None) -> str:
    return "-" if amount is None else f"{amount:.2f}"


_FRESHNESS_STYLE = {"fresh": "green", "aging": "yellow", "stale": "red"}


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="SOLESYNC_CONFIG",
    default=None,
    help="Path to solesync.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="solesync")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """solesync: sneaker market-data sync and cross-provider pricing."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# enqueue / map
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("sku")
@click.option(
    "--provider",
    "-p",
    type=click.Choice(["stockx", "alias", "ebay"], case_sensitive=False),
    default=None,
    help="Single provider; omit to refresh every mapped provider.",
)
@click.option("--size", type=str, default=None, help="Restrict the fetch to one size.")
@click.option("--priority", type=int, default=None, help="Job priority (higher runs first).")
@click.pass_context
def enqueue(
    ctx: click.Context,
    sku: str,
    provider: str | None,
    size: str | None,
    priority: int | None,
) -> None:
    """Queue a market refresh for a SKU."""
    from solesync.core.models import PRIORITY_BACKGROUND, PRIORITY_MANUAL, Provider

    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            if provider:
                job_id = await services.scheduler.enqueue(
                    Provider(provider.lower()),
                    sku,
                    size=size,
                    priority=priority if priority is not None else PRIORITY_BACKGROUND,
                )
                jobs = {Provider(provider.lower()): job_id}
            else:
                jobs = await services.scheduler.enqueue_for_sku(
                    sku,
                    priority=priority if priority is not None else PRIORITY_MANUAL,
                    size=size,
                )
        finally:
            await services.close()

        for p, job_id in jobs.items():
            console.print(f"[green]✓[/green] {p.value}: job {job_id}")
        if not jobs:
            console.print("[yellow]No enabled provider is mapped for this SKU.[/yellow]")

    _run_async(_run())


@cli.command("map")
@click.argument("sku")
@click.argument("provider", type=click.Choice(["stockx", "alias", "ebay"], case_sensitive=False))
@click.argument("product_id")
@click.option("--variant", type=str, default=None, help="Provider variant id.")
@click.option("--remove", is_flag=True, default=False, help="Delete the mapping instead.")
@click.pass_context
def map_sku(
    ctx: click.Context,
    sku: str,
    provider: str,
    product_id: str,
    variant: str | None,
    remove: bool,
) -> None:
    """Link a SKU to a provider product (queues a refresh on change)."""
    from solesync.core import Provider, ProviderMapping

    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            if remove:
                deleted = await services.store.delete_mapping(sku, Provider(provider.lower()))
                if deleted:
                    console.print(f"[green]✓[/green] Removed {provider} mapping for {sku}")
                else:
                    console.print(f"[yellow]No {provider} mapping for {sku}[/yellow]")
                return
            try:
                mapping = ProviderMapping(
                    sku=sku,
                    provider=Provider(provider.lower()),
                    provider_product_id=product_id,
                    provider_variant_id=variant,
                )
            except ValidationError as e:
                raise click.BadParameter(str(e), param_hint="PRODUCT_ID") from e
            changed = await services.store.upsert_mapping(mapping)
            job_id = None
            if changed:
                job_id = await services.scheduler.on_mapping_changed(
                    mapping.sku, mapping.provider
                )
        finally:
            await services.close()

        if not changed:
            console.print(f"Mapping for {mapping.sku} on {provider} unchanged")
            return
        console.print(
            f"[green]✓[/green] Mapped {mapping.sku} -> {provider}:{product_id}"
            + (f" (refresh job {job_id})" if job_id else "")
        )

    _run_async(_run())


# ---------------------------------------------------------------------------
# work
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--once", is_flag=True, default=False, help="Run a single pass and exit.")
@click.pass_context
def work(ctx: click.Context, once: bool) -> None:
    """Process queued jobs with the configured provider clients."""
    from solesync.scheduling import Worker, WorkerPool, load_clients

    config = _load_config(ctx)
    if not config.worker.client_factory:
        raise click.UsageError(
            "No provider clients configured. Set worker.client_factory "
            "(e.g. 'mypkg.clients:build') in solesync.yml."
        )

    async def _run():
        services = await _open_services_async(config)
        try:
            clients = load_clients(config.worker.client_factory, config)
            worker = Worker(
                services.queue,
                services.store,
                services.resolver,
                clients,
                config.providers,
            )
            pool = WorkerPool(
                services.scheduler,
                worker,
                services.materializer,
                services.store,
                config.worker,
                claim_batch_size=config.queue.claim_batch_size,
            )
            if once:
                run = await pool.run_once()
                console.print(
                    f"[green]✓[/green] Run {run.run_id[:8]}: "
                    f"{run.jobs_selected} selected, {run.jobs_succeeded} succeeded, "
                    f"{run.jobs_failed} failed, {run.jobs_deferred} deferred"
                )
            else:
                console.print(
                    f"Worker running with concurrency {config.worker.concurrency} "
                    f"(Ctrl+C to stop)"
                )
                await pool.run_forever()
        finally:
            await services.close()

    _run_async(_run())


# ---------------------------------------------------------------------------
# refresh-latest / sweep / prune
# ---------------------------------------------------------------------------


@cli.command("refresh-latest")
@click.pass_context
def refresh_latest(ctx: click.Context) -> None:
    """Rebuild the latest-price projection."""
    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            rows = await services.materializer.refresh()
        finally:
            await services.close()
        console.print(f"[green]✓[/green] Latest prices rebuilt: {rows} rows")

    _run_async(_run())


@cli.command()
@click.option("--no-stale", is_flag=True, default=False, help="Skip queueing stale prices.")
@click.pass_context
def sweep(ctx: click.Context, no_stale: bool) -> None:
    """Reclaim expired leases, promote deferred jobs, queue stale prices."""
    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            reclaimed = await services.scheduler.sweep_expired_leases()
            promoted = await services.scheduler.promote_deferred()
            stale = 0 if no_stale else await services.scheduler.enqueue_stale()
        finally:
            await services.close()
        console.print(
            f"[green]✓[/green] Reclaimed {reclaimed} leases, "
            f"promoted {promoted} deferred jobs, queued {stale} stale refreshes"
        )

    _run_async(_run())


@cli.command()
@click.option(
    "--budget-hours",
    type=int,
    default=48,
    help="Keep budget windows from the last N hours.",
)
@click.pass_context
def prune(ctx: click.Context, budget_hours: int) -> None:
    """Archive snapshots past retention and drop old budget windows."""
    from solesync.core.models import utcnow

    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            now = utcnow()
            archived = await services.store.archive_snapshots(
                now - timedelta(days=config.freshness.retention_days)
            )
            windows = await services.budget.prune(now - timedelta(hours=budget_hours))
        finally:
            await services.close()
        console.print(
            f"[green]✓[/green] Archived {archived} snapshots, "
            f"pruned {windows} budget windows"
        )

    _run_async(_run())


# ---------------------------------------------------------------------------
# market
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("sku")
@click.option("--size", type=str, default=None, help="e.g. 10.5, 'UK 9', 14W")
@click.option("--currency", type=str, default=None, help="GBP, USD or EUR.")
@click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="FX date (YYYY-MM-DD); defaults to today.",
)
@click.option("--region", type=str, default=None, help="Only quotes from this region.")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def market(
    ctx: click.Context,
    sku: str,
    size: str | None,
    currency: str | None,
    as_of,
    region: str | None,
    output: str,
) -> None:
    """Show unified prices for a SKU across providers."""
    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            rows = await services.market.unified_prices(
                sku,
                size=size,
                currency=currency,
                as_of=as_of.date() if as_of else None,
                region=region,
            )
        finally:
            await services.close()

        if not rows:
            console.print(f"[yellow]No prices for {sku.upper()}.[/yellow]")
            return
        if output == "json":
            _output_market_json(rows)
        else:
            _output_market_table(sku.upper(), rows)

    _run_async(_run())


def _output_market_table(sku: str, rows) -> None:
    providers = list(rows[0].quotes)
    table = Table(title=f"Market: {sku}")
    table.add_column("Size", style="bold")
    table.add_column("Channel")
    for p in providers:
        table.add_column(f"{p.value} ask/bid/last", justify="right")

    for row in rows:
        cells = []
        for p in providers:
            quote = row.quotes[p]
            if quote is None:
                cells.append("[dim]-[/dim]")
                continue
            style = _FRESHNESS_STYLE.get(quote.freshness.value, "")
            cells.append(
                f"[{style}]{_fmt(quote.lowest_ask)}/{_fmt(quote.highest_bid)}/"
                f"{_fmt(quote.last_sale_price)} {quote.currency_code}[/{style}]"
            )
        table.add_row(row.size_display, row.channel.value, *cells)

    console.print(table)


def _output_market_json(rows) -> None:
    data = [r.model_dump(mode="json") for r in rows]
    click.echo(json.dumps(data, indent=2))


# ---------------------------------------------------------------------------
# fx-set / fx-rate
# ---------------------------------------------------------------------------


@cli.command("fx-set")
@click.argument("as_of", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--usd", type=str, default=None, help="GBP per 1 USD.")
@click.option("--eur", type=str, default=None, help="GBP per 1 EUR.")
@click.option("--source", type=str, default="manual", help="Where the rate came from.")
@click.pass_context
def fx_set(ctx: click.Context, as_of, usd: str | None, eur: str | None, source: str) -> None:
    """Write or correct the FX row for a date. A missing leg is carried forward."""
    config = _load_config(ctx)
    gbp_per_usd = _parse_decimal(usd, "--usd")
    gbp_per_eur = _parse_decimal(eur, "--eur")

    async def _run():
        services = await _open_services_async(config)
        try:
            rate = await services.fx.upsert_rate(
                as_of.date(), gbp_per_usd=gbp_per_usd, gbp_per_eur=gbp_per_eur, source=source
            )
        finally:
            await services.close()
        console.print(
            f"[green]✓[/green] {rate.as_of}: 1 USD = {rate.gbp_per_usd} GBP, "
            f"1 EUR = {rate.gbp_per_eur} GBP"
        )

    _run_async(_run())


@cli.command("fx-rate")
@click.argument("from_ccy")
@click.argument("to_ccy")
@click.option("--as-of", type=click.DateTime(formats=["%Y-%m-%d"]), default=None)
@click.option("--amount", type=str, default=None, help="Amount to convert.")
@click.pass_context
def fx_rate(ctx: click.Context, from_ccy: str, to_ccy: str, as_of, amount: str | None) -> None:
    """Show the cross rate (and optionally convert an amount)."""
    config = _load_config(ctx)
    day: date = as_of.date() if as_of else date.today()
    value = _parse_decimal(amount, "--amount")

    async def _run():
        services = await _open_services_async(config)
        try:
            rate = await services.fx.rate_for(day, from_ccy, to_ccy)
            converted = (
                await services.fx.convert(value, day, from_ccy, to_ccy)
                if value is not None
                else None
            )
        finally:
            await services.close()
        click.echo(f"{day} 1 {from_ccy.upper()} = {rate:.6f} {to_ccy.upper()}")
        if converted is not None:
            click.echo(f"{value} {from_ccy.upper()} = {converted} {to_ccy.upper()}")

    _run_async(_run())


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("sku", required=False)
@click.pass_context
def status(ctx: click.Context, sku: str | None) -> None:
    """Show queue and budget status, or one SKU's sync status."""
    config = _load_config(ctx)

    async def _run():
        services = await _open_services_async(config)
        try:
            if sku:
                sync = await services.scheduler.sync_status(sku)
                table = Table(title=f"Sync status: {sync.sku} ({sync.overall.value})")
                table.add_column("Provider", style="bold")
                table.add_column("State")
                table.add_column("Last error")
                for provider, state in sync.providers.items():
                    table.add_row(
                        provider.value, state.value, sync.last_errors.get(provider, "")
                    )
                console.print(table)
                return

            counts = await services.queue.counts()
            latest = await services.materializer.count()
            remaining = {p: await services.budget.remaining(p) for p in config.providers.enabled()}
            runs = await services.store.list_job_runs(limit=1)
        finally:
            await services.close()

        table = Table(title="solesync Status")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        for job_status, n in counts.items():
            table.add_row(f"Jobs {job_status.value}", str(n))
        table.add_row("Latest price rows", str(latest))
        for provider, left in remaining.items():
            table.add_row(f"Budget left ({provider.value}, this hour)", str(left))
        table.add_row(
            "Last worker run",
            runs[0].started_at.isoformat(timespec="seconds") if runs else "N/A",
        )
        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port number (default from config).")
@click.option("--reload", is_flag=True, default=False, help="Auto-reload on code changes.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Start the REST API server."""
    import uvicorn

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port
    if ctx.obj.get("config_path"):
        # The factory reloads config inside the server process.
        os.environ["SOLESYNC_CONFIG"] = os.path.abspath(ctx.obj["config_path"])

    console.print(f"Starting solesync API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "solesync.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
