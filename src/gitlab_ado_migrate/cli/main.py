"""Command line entry point for the GitLab to Azure DevOps migration tool."""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..api.exceptions import MigrationError, PlatformAPIError
from ..config.config import Config
from ..migration.engine import ConnectivityError, MigrationEngine, load_entity_requests
from ..models.history import MigrationStatus
from ..models.results import BulkRun
from ..state.store import MigrationStateStore
from ..utils.logging import setup_logging

console = Console()

DEFAULT_CONFIG_PATHS = ['config.yaml', 'config.yml', '.gitlab-ado-migrate.yaml']

STATUS_STYLES = {
    MigrationStatus.SUCCESS: 'green',
    MigrationStatus.PARTIAL: 'yellow',
    MigrationStatus.FAILED: 'red',
}

# Failures reported as a message rather than a traceback
RUN_ERRORS = (
    ConnectivityError,
    FileNotFoundError,
    ValueError,
    PlatformAPIError,
    MigrationError,
)


@click.group()
@click.version_option(version=__version__, prog_name='gitlab-ado-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """GitLab to Azure DevOps Migration Tool - move repositories with their history, LFS objects and branch policies."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    # Replaced by the configured sinks once a config is loaded
    setup_logging('DEBUG' if verbose else 'INFO')


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Write a configuration template."""
    console.print(
        Panel.fit(
            '[bold green]GitLab to Azure DevOps Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)
    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)

    console.print(f'[green]✓[/green] Configuration template created at: {output}')
    console.print(
        f'[yellow]Please edit {output} with your GitLab and Azure DevOps details[/yellow]'
    )


@cli.command()
@click.argument('entities', nargs=-1)
@click.option(
    '--entities-file',
    '-f',
    type=click.Path(exists=True, dir_okay=False),
    help='File listing entities (one per line, or a YAML list)',
)
@click.option(
    '--force',
    is_flag=True,
    help='Update differing target entities in place',
)
@click.option(
    '--replace',
    is_flag=True,
    help='Delete and recreate differing target entities',
)
@click.option(
    '--allow-sync',
    is_flag=True,
    help='Force-converge targets that already hold content',
)
@click.option(
    '--dry-run',
    is_flag=True,
    help='Write preflight reports and show planned changes only',
)
@click.pass_context
def migrate(
    ctx: click.Context,
    entities: Tuple[str, ...],
    entities_file: Optional[str],
    force: bool,
    replace: bool,
    allow_sync: bool,
    dry_run: bool,
) -> None:
    """Migrate ENTITIES (GitLab project paths or group/* patterns)."""
    requested = list(entities)
    if entities_file:
        requested.extend(load_entity_requests(entities_file))
    if not requested:
        raise click.UsageError('Give at least one entity or --entities-file')

    console.print(
        Panel.fit(
            '[bold blue]GitLab to Azure DevOps Migration Tool[/bold blue]\n'
            f'Migrating {len(requested)} entit{"y" if len(requested) == 1 else "ies"}...',
            border_style='blue',
        )
    )
    if dry_run:
        console.print(
            '[yellow]Running in dry-run mode - no changes will be made[/yellow]'
        )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        run = asyncio.run(
            _run_migration(
                config,
                requested,
                # Unset flags fall back to the configuration
                force or None,
                replace or None,
                allow_sync or None,
                dry_run or None,
            )
        )
    except RUN_ERRORS as e:
        console.print(f'[red]✗[/red] Migration failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    _display_run_summary(run)
    if run.summary()['failed']:
        sys.exit(1)


@cli.command()
@click.argument('entity')
@click.pass_context
def history(ctx: click.Context, entity: str) -> None:
    """Show the recorded migration attempts of ENTITY."""
    try:
        config = _load_config(ctx)
    except (FileNotFoundError, ValueError) as e:
        console.print(f'[red]✗[/red] Failed to load configuration: {e}')
        sys.exit(1)

    store = MigrationStateStore(config.migration.work_dir)
    entries = store.load_history(entity)
    if not entries:
        console.print(f'[yellow]No migration history for {entity}[/yellow]')
        return

    table = Table(title=f'Migration History: {entity}')
    table.add_column('#', style='cyan', justify='right')
    table.add_column('Timestamp', style='blue')
    table.add_column('Type')
    table.add_column('Status')
    table.add_column('Run')

    for number, entry in enumerate(entries, start=1):
        style = STATUS_STYLES.get(entry.status, 'white')
        table.add_row(
            str(number),
            entry.timestamp.isoformat(),
            entry.type.value,
            f'[{style}]{entry.status.value}[/{style}]',
            entry.run_id or '-',
        )
    console.print(table)
    console.print(f'Next migration will be {store.next_migration_type(entity).value}')


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Check connectivity and credentials for both platforms."""
    console.print(
        Panel.fit(
            '[bold cyan]GitLab to Azure DevOps Migration Tool[/bold cyan]\n'
            'Validating configuration...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        engine = MigrationEngine(config)
        try:
            engine.test_connectivity()
            git_available = asyncio.run(engine.git.check_git_availability())
        finally:
            engine.transport.close()
    except RUN_ERRORS as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    console.print('[green]✓[/green] Connectivity validation passed')
    if git_available:
        console.print('[green]✓[/green] git is available')
    else:
        console.print('[red]✗[/red] git is not installed or not on PATH')
        sys.exit(1)


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        return Config.from_file(config_path)

    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except ValueError:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run '
            '"gitlab-ado-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging from the config file; --verbose overrides the level."""
    verbose = ctx.obj.get('verbose', False)
    setup_logging(
        level='DEBUG' if verbose else config.logging.level,
        log_file=config.logging.file,
        log_format=config.logging.format,
        secrets=config.secrets,
    )


async def _run_migration(
    config: Config,
    entities: list,
    force: Optional[bool],
    replace: Optional[bool],
    allow_sync: Optional[bool],
    dry_run: Optional[bool],
) -> BulkRun:
    engine = MigrationEngine(config)

    def install_stop_handler(orchestrator) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, orchestrator.request_stop)
        except NotImplementedError:
            # No loop signal handlers on Windows; Ctrl+C aborts the run instead
            return

    with console.status('[blue]Migration in progress...'):
        return await engine.migrate(
            entities,
            force=force,
            replace=replace,
            allow_sync=allow_sync,
            dry_run=dry_run,
            orchestrator_hook=install_stop_handler,
        )


def _display_run_summary(run: BulkRun) -> None:
    """Render per-entity results and the aggregate counts."""
    table = Table(title=f'Migration Summary ({run.run_id})')
    table.add_column('Entity', style='cyan')
    table.add_column('Target', style='blue')
    table.add_column('Type')
    table.add_column('Status')
    table.add_column('Stage')
    table.add_column('Duration', justify='right')

    for entry in run.entries:
        if entry.dry_run and entry.error is None:
            status = '[cyan]DRY RUN[/cyan]'
        elif entry.status is None:
            status = '[dim]NOT STARTED[/dim]'
        else:
            style = STATUS_STYLES.get(entry.status, 'white')
            status = f'[{style}]{entry.status.value}[/{style}]'
        stage = entry.failed_stage or entry.stage
        table.add_row(
            entry.entity_id,
            f'{entry.target_project}/{entry.target_repository}',
            entry.migration_type.value if entry.migration_type else '-',
            status,
            stage.value,
            f'{entry.duration:.1f}s',
        )
    console.print(table)

    summary = run.summary()
    console.print(
        f'\n[blue]Total:[/blue] {summary["total"]}  '
        f'[green]Succeeded:[/green] {summary["succeeded"]} '
        f'({summary["partial"]} partial)  '
        f'[red]Failed:[/red] {summary["failed"]}  '
        f'[blue]Elapsed:[/blue] {summary["elapsed"]}s'
    )

    for entry in run.entries:
        if entry.dry_run:
            for change in entry.reconciled:
                console.print(
                    f'  • {entry.entity_id}: {change.entity_type} {change.key} '
                    f'would be {change.outcome.value}'
                )
        for warning in entry.warnings:
            console.print(f'  [yellow]![/yellow] {entry.entity_id}: {warning}')
        if entry.error:
            console.print(
                f'  [red]✗[/red] {entry.entity_id} '
                f'({entry.error.get("side") or "local"}, '
                f'{entry.error.get("remediation")}): {entry.error.get("message")}'
            )
        for failure in entry.dependent_failures:
            console.print(
                f'  [yellow]✗[/yellow] {entry.entity_id} {failure.get("entity_type")} '
                f'{failure.get("key")}: {failure.get("message")}'
            )


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Migration interrupted by user[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
