"""
catalogsync command line interface.

Usage:
    catalogsync scan --account-id 123456 --session-id s1
    catalogsync scan --account-id 123456 --session-id s1 --continue
    catalogsync sync --config config/catalogsync.yaml --output items.json
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .api import APIClient, StaticTokenProvider
from .core import AppConfig, RateLimiter, configure_logging, load_config
from .core.orchestrator import SyncOrchestrator
from .exceptions import CatalogSyncError
from .scan import CheckpointStore, CursorScanner


console = Console()


def _load(config_path: Optional[str]) -> AppConfig:
    try:
        config = load_config(config_path)
    except CatalogSyncError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        details = getattr(e, "details", None)
        if details:
            console.print(details)
        sys.exit(2)

    configure_logging(config.logging.level, config.logging.json_output)

    if not config.api.access_token:
        console.print(
            "[bold red]No access token.[/bold red] Set CATALOGSYNC_ACCESS_TOKEN "
            "or api.access_token in the config file."
        )
        sys.exit(2)
    return config


def _build(config: AppConfig):
    limiter = RateLimiter(config.rate_limit)
    client = APIClient(config.api, limiter, StaticTokenProvider(config.api.access_token))
    scanner = CursorScanner(
        client,
        CheckpointStore(ttl_seconds=config.scan.checkpoint_ttl),
        config.scan,
        rate_limiter=limiter,
    )
    return limiter, client, scanner


@click.group()
@click.version_option(version=__version__, prog_name="catalogsync")
def cli():
    """
    catalogsync - Quota-aware seller catalog enumeration.
    """
    pass


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), help='YAML configuration file')
@click.option('--account-id', help='Seller account id (default: account behind the token)')
@click.option('--session-id', default=None, help='Scan session id')
@click.option('--continue/--fresh', 'continue_scan', default=False, help='Resume from checkpoint')
def scan(config_path: Optional[str], account_id: Optional[str], session_id: Optional[str], continue_scan: bool):
    """
    Run a single bounded scan invocation and print the outcome.

    The checkpoint store is process-local, so --continue only has an effect
    when the same process ran the previous invocation.
    """
    config = _load(config_path)
    outcome = asyncio.run(run_scan(config, account_id, session_id, continue_scan))
    console.print_json(data=outcome)


async def run_scan(
    config: AppConfig,
    account_id: Optional[str],
    session_id: Optional[str],
    continue_scan: bool,
) -> Dict[str, Any]:
    limiter, client, scanner = _build(config)
    try:
        async with client:
            if account_id is None:
                identity = await client.get_account_identity()
                account_id = str(identity["id"])
            outcome = await scanner.scan(account_id, session_id, continue_from_checkpoint=continue_scan)
            return outcome.to_dict()
    finally:
        await limiter.close()


@cli.command()
@click.option('--config', 'config_path', type=click.Path(), help='YAML configuration file')
@click.option('--account-id', help='Seller account id (default: account behind the token)')
@click.option('--session-id', default=None, help='Scan session id')
@click.option('--max-steps', default=50, type=int, help='Maximum scan invocations (default: 50)')
@click.option('--output', type=click.Path(), help='Save fetched entities to a JSON file')
def sync(
    config_path: Optional[str],
    account_id: Optional[str],
    session_id: Optional[str],
    max_steps: int,
    output: Optional[str],
):
    """
    Enumerate the whole catalog, fetching entity details as ids arrive.

    Example:
        catalogsync sync --config config/catalogsync.yaml --output items.json
    """
    config = _load(config_path)

    console.print("\n" + "=" * 80)
    console.print("catalogsync - Catalog Sync")
    console.print("=" * 80 + "\n")
    console.print(f"[green]API:[/green] {config.api.base_url}")
    console.print(f"[green]Page size:[/green] {config.scan.page_size}")
    console.print(f"[green]Page budget:[/green] {config.scan.page_budget}")
    console.print(f"[green]Ceiling:[/green] {config.rate_limit.max_ceiling} req/{config.rate_limit.window_seconds:.0f}s")
    console.print()

    try:
        asyncio.run(run_sync(config, account_id, session_id, max_steps, output))
    except KeyboardInterrupt:
        console.print("\n\n[yellow]Sync interrupted by user[/yellow]")
        sys.exit(1)
    except CatalogSyncError as e:
        console.print(f"\n[bold red]Error during sync:[/bold red] {e}")
        sys.exit(1)


async def run_sync(
    config: AppConfig,
    account_id: Optional[str],
    session_id: Optional[str],
    max_steps: int,
    output: Optional[str],
):
    limiter, client, scanner = _build(config)
    entities: List[Dict[str, Any]] = []

    async def collect(account: str, batch: List[Dict[str, Any]]) -> None:
        entities.extend(batch)

    orchestrator = SyncOrchestrator(scanner, client, entity_sink=collect)

    try:
        async with client:
            if account_id is None:
                identity = await client.get_account_identity()
                account_id = str(identity["id"])

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
            ) as progress:
                task = progress.add_task("[cyan]Scanning catalog...", total=None)

                def on_event(event: str, data: Dict[str, Any]) -> None:
                    if event == "sync_step_completed":
                        progress.update(
                            task,
                            description=(
                                f"[cyan]Collected {data['progress']['total_collected'] or 0} ids, "
                                f"fetched {len(entities)} entities"
                            ),
                        )

                orchestrator.subscribe(on_event)
                results = await orchestrator.run(account_id, session_id, max_steps=max_steps)
                progress.update(task, description="[green]Sync complete!")
    finally:
        await limiter.close()

    table = Table(title="Sync Steps")
    table.add_column("Step", style="cyan", no_wrap=True)
    table.add_column("New", style="green")
    table.add_column("Fetched", style="green")
    table.add_column("Missing", style="yellow")
    table.add_column("Exit", style="magenta")
    for i, step in enumerate(results, 1):
        table.add_row(
            str(i),
            str(step.outcome.new_ids_count),
            str(step.fetched),
            str(len(step.missing_ids)),
            step.outcome.exit_reason.value,
        )
    console.print(table)

    stats = limiter.get_stats()
    console.print(
        f"\n[green]Requests:[/green] {stats['total_requests']}  "
        f"[green]Ceiling:[/green] {stats['ceiling']}  "
        f"[green]429s:[/green] {stats['rejected']}"
    )

    if output:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, 'w') as f:
            json.dump(entities, f, indent=2)
        console.print(f"\n[green]Entities saved to:[/green] {output_path}")


@cli.command()
def version():
    """Show version information and components"""
    console.print(f"\n[bold cyan]catalogsync v{__version__}[/bold cyan]\n")

    table = Table(title="Components")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Notes", style="yellow")

    table.add_row("Rate Limiter", "Sliding 60s window, 429 backoff, FIFO queue")
    table.add_row("Checkpoint Store", "In-memory, 10 min TTL")
    table.add_row("API Client", "aiohttp, multi-get in chunks of 20")
    table.add_row("Cursor Scanner", "Resumable scroll-cursor scan with dedup")
    table.add_row("Sync Orchestrator", "Scan + fetch + persist per invocation")

    console.print(table)
    console.print()


if __name__ == '__main__':
    cli()
