"""Operator CLI for releasectl."""

import json
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .audit import AuditLogger
from .config import Config
from .errors import (
    EXIT_FAILURE,
    EXIT_ROLLBACK_FAILED,
    ReleaseCtlError,
    handle_exception,
    handle_keyboard_interrupt,
)
from .models import AttemptOutcome, DeploymentAttempt, TargetHost
from .orchestrator import CancellationToken, Deployer
from .secret_store import Credentials, EncryptedFileSecretStore, SecureVault
from .ui import (
    ProgressManager,
    configure_logging,
    display_attempt,
    display_hosts_table,
    display_release_table,
    display_status,
)
from .validators import InputValidator

console = Console()


def get_config(ctx: click.Context) -> Config:
    return ctx.obj['config']


def get_audit(ctx: click.Context) -> AuditLogger:
    """Audit logger writing next to the active configuration."""
    if ctx.obj.get('audit') is None:
        ctx.obj['audit'] = AuditLogger(get_config(ctx).config_dir / "logs")
    return ctx.obj['audit']


def get_deployer(ctx: click.Context) -> Deployer:
    """Build a deployer from the current configuration."""
    return Deployer.from_settings(get_config(ctx).load(), audit=get_audit(ctx))


def safe_live_release(deployer: Optional[Deployer], host: Optional[TargetHost]) -> Optional[str]:
    """Best-effort read of the live release for error reports."""
    if deployer is None or host is None:
        return None
    try:
        return deployer.releases.live_pointer(host)
    except ReleaseCtlError:
        return None


def confirm_destructive_action(action: str, resource: str, force: bool = False) -> bool:
    """Confirm actions that change what a host serves.

    Args:
        action: The action being performed (e.g., "roll back").
        resource: The resource being acted upon.
        force: Whether to skip confirmation.

    Returns:
        True if action should proceed, False otherwise.
    """
    if force:
        return True

    console.print(
        Panel(
            f"[bold red]Warning:[/bold red] You are about to {action} '{resource}'.\n"
            f"Live traffic will be switched immediately.",
            title="Confirmation Required",
            border_style="red"
        )
    )
    return Confirm.ask(f"Are you sure you want to {action} '{resource}'?")


def run_cancellable(work: Callable[[CancellationToken], Any]) -> Any:
    """Run work in a worker thread; Ctrl+C cancels it between steps.

    A second Ctrl+C stops waiting in the foreground, but the worker still runs
    the attempt to its end before the command exits, so a pointer switch is
    never cut short.
    """
    cancel = CancellationToken()
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(work, cancel)
        try:
            return future.result()
        except KeyboardInterrupt:
            cancel.cancel()
            console.print("\n[yellow]Cancelling after the current step (pointer switches always complete)...[/yellow]")
            return future.result()


def attempts_exit_code(attempts: List[DeploymentAttempt]) -> int:
    if any(a.error_type == "RollbackFailed" for a in attempts):
        return EXIT_ROLLBACK_FAILED
    if all(a.outcome is AttemptOutcome.SUCCEEDED for a in attempts):
        return 0
    return EXIT_FAILURE


@click.group()
@click.version_option(version=__version__)
@click.option('--config-dir', type=click.Path(file_okay=False, path_type=Path), envvar='RELEASECTL_HOME',
              help='Configuration directory (default: ~/.releasectl)')
@click.option('-v', '--verbose', is_flag=True, help='Show debug logging')
@click.pass_context
def main(ctx: click.Context, config_dir: Optional[Path], verbose: bool) -> None:
    """releasectl - ship static builds to your servers with atomic switches and rollback."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['config'] = Config(config_dir)


@main.command()
@click.argument('release_ref')
@click.argument('host_names', metavar='HOST...', nargs=-1, required=True)
@click.option('--bundle', required=True, type=click.Path(exists=True, path_type=Path),
              help='Build output directory or tar archive')
@click.option('--source-ref', default='', help='Commit or tag the bundle was built from')
@click.option('--checksum', help='Checksum reported by the build (sha256 content hash)')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def deploy(
    ctx: click.Context,
    release_ref: str,
    host_names: Tuple[str, ...],
    bundle: Path,
    source_ref: str,
    checksum: Optional[str],
    as_json: bool,
) -> None:
    """Deploy RELEASE_REF from --bundle to one or more hosts."""
    config = get_config(ctx)
    try:
        release_ref = InputValidator.validate_release_ref(release_ref)
        if checksum:
            checksum = InputValidator.validate_checksum(checksum)
        hosts = [config.get_host(name) for name in host_names]
        deployer = get_deployer(ctx)

        def work(cancel: CancellationToken) -> List[DeploymentAttempt]:
            if len(hosts) == 1:
                return [deployer.deploy(bundle, release_ref, hosts[0], source_ref, checksum, cancel)]
            return deployer.deploy_many(bundle, release_ref, hosts, source_ref, checksum, cancel)

        with ProgressManager(enabled=not as_json).spinner(
            f"Deploying {release_ref} to {', '.join(host_names)}..."
        ):
            attempts = run_cancellable(work)
    except ReleaseCtlError as e:
        handle_exception(e, f"Deploying {release_ref}")
        return
    except KeyboardInterrupt:
        handle_keyboard_interrupt()
        return

    if as_json:
        click.echo(json.dumps([attempt.to_dict() for attempt in attempts], indent=2))
    else:
        for attempt in attempts:
            display_attempt(attempt)
            if attempt.error_type == "RollbackFailed":
                console.print(
                    f"[bold red]Manual intervention required on {attempt.host}:[/bold red] "
                    "the previous release could not be restored."
                )

    sys.exit(attempts_exit_code(attempts))


@main.command()
@click.argument('host_name', metavar='HOST')
@click.option('--yes', '-y', 'force', is_flag=True, help='Skip confirmation')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def rollback(ctx: click.Context, host_name: str, force: bool, as_json: bool) -> None:
    """Switch HOST back to its previous release."""
    config = get_config(ctx)
    deployer: Optional[Deployer] = None
    host: Optional[TargetHost] = None
    try:
        host = config.get_host(host_name)
        if not as_json and not confirm_destructive_action("roll back", host_name, force):
            console.print("[yellow]Rollback cancelled.[/yellow]")
            return
        deployer = get_deployer(ctx)
        with ProgressManager(enabled=not as_json).spinner(f"Rolling back {host_name}..."):
            restored = deployer.rollback(host)
        live = deployer.releases.live_pointer(host)
    except ReleaseCtlError as e:
        live = safe_live_release(deployer, host)
        if as_json:
            click.echo(json.dumps({
                "host": host_name,
                "ok": False,
                "live_release": live,
                "error": str(e),
                "error_type": type(e).__name__,
            }))
        else:
            console.print(f"Live release on {host_name}: [cyan]{live or 'unknown'}[/cyan]")
        handle_exception(e, f"Rolling back {host_name}")
        return

    if as_json:
        click.echo(json.dumps({"host": host_name, "ok": True, "restored": restored.identifier, "live_release": live}))
    else:
        console.print(f"[green]✓[/green] {host_name} rolled back; live release is [cyan]{live}[/cyan]")


@main.command()
@click.argument('host_name', metavar='HOST')
@click.option('--json', 'as_json', is_flag=True, help='Print the result as JSON')
@click.pass_context
def status(ctx: click.Context, host_name: str, as_json: bool) -> None:
    """Show the live release and release history of HOST."""
    config = get_config(ctx)
    try:
        host = config.get_host(host_name)
        result = get_deployer(ctx).status(host)
    except ReleaseCtlError as e:
        handle_exception(e, f"Reading status of {host_name}")
        return

    if as_json:
        click.echo(json.dumps(result, indent=2))
    else:
        display_status(result)

    # A host with records but no resolvable pointer needs attention
    if result['releases'] and not result['live_release']:
        sys.exit(EXIT_FAILURE)


@main.command()
@click.argument('host_name', metavar='HOST')
@click.option('--status', 'status_filter', type=click.Choice(['staged', 'verified', 'live', 'failed', 'retired']),
              help='Only show releases with this status')
@click.pass_context
def releases(ctx: click.Context, host_name: str, status_filter: Optional[str]) -> None:
    """List release records kept on HOST."""
    config = get_config(ctx)
    try:
        host = config.get_host(host_name)
        state = get_deployer(ctx).releases.state(host)
    except ReleaseCtlError as e:
        handle_exception(e, f"Listing releases on {host_name}")
        return

    records = [release.to_dict() for release in state.by_sequence()]
    if status_filter:
        records = [record for record in records if record['status'] == status_filter]
    display_release_table(records, title=f"Releases on {host_name}")


@main.group()
def hosts() -> None:
    """Manage target hosts."""
    pass


@hosts.command(name='add')
@click.argument('name')
@click.option('--address', required=True, help='DNS name or IP address')
@click.option('--auth-ref', help='Secret store reference for credentials (default: host name)')
@click.option('--deploy-root', help='Directory holding releases/ and current on the host')
@click.option('--url', help='URL served from this host, used by the HTTP health probe')
@click.option('--port', type=int, help='SSH port')
@click.option('--transport', type=click.Choice(['ssh', 'local']), help='How to reach the host')
@click.pass_context
def hosts_add(
    ctx: click.Context,
    name: str,
    address: str,
    auth_ref: Optional[str],
    deploy_root: Optional[str],
    url: Optional[str],
    port: Optional[int],
    transport: Optional[str],
) -> None:
    """Register or update host NAME."""
    config = get_config(ctx)
    try:
        InputValidator.validate_host_name(name)
        host = config.add_host(
            name,
            address=InputValidator.validate_address(address),
            auth_ref=auth_ref,
            deploy_root=InputValidator.validate_deploy_root(deploy_root) if deploy_root else None,
            url=InputValidator.validate_url(url) if url else None,
            port=port,
            transport=transport,
        )
    except ReleaseCtlError as e:
        handle_exception(e, f"Adding host {name}")
        return

    get_audit(ctx).log_configuration_change(f"hosts.{name}", host.address)
    console.print(f"[green]✓[/green] Host [cyan]{name}[/cyan] saved ({host.address}, {host.deploy_root})")


@hosts.command(name='list')
@click.pass_context
def hosts_list(ctx: click.Context) -> None:
    """List configured hosts."""
    try:
        display_hosts_table(get_config(ctx).list_hosts())
    except ReleaseCtlError as e:
        handle_exception(e, "Listing hosts")


@hosts.command(name='remove')
@click.argument('name')
@click.pass_context
def hosts_remove(ctx: click.Context, name: str) -> None:
    """Forget host NAME. Nothing on the host is changed."""
    try:
        get_config(ctx).remove_host(name)
    except ReleaseCtlError as e:
        handle_exception(e, f"Removing host {name}")
        return
    get_audit(ctx).log_configuration_change(f"hosts.{name}", None)
    console.print(f"[green]✓[/green] Host [cyan]{name}[/cyan] removed")


@main.command(name='config')
@click.option('--set', 'assignments', multiple=True, metavar='KEY=VALUE', help='Set a configuration value')
@click.option('--restore', 'restore', is_flag=False, flag_value='latest', default=None,
              help='Restore the latest (or a given timestamp) configuration backup')
@click.option('--reset', is_flag=True, help='Reset configuration to defaults')
@click.pass_context
def config_cmd(ctx: click.Context, assignments: Tuple[str, ...], restore: Optional[str], reset: bool) -> None:
    """Show or change releasectl settings."""
    config = get_config(ctx)
    audit = get_audit(ctx)
    try:
        if reset:
            config.reset()
            audit.log_configuration_change("*", "defaults")
            console.print("[green]✓[/green] Configuration reset to defaults")
            return

        if restore:
            config.restore_from_backup(None if restore == 'latest' else restore)
            audit.log_configuration_change("*", f"backup {restore}")
            console.print("[green]✓[/green] Configuration restored")
            return

        for assignment in assignments:
            config.set_from_string(assignment)
            key, value = assignment.split('=', 1)
            audit.log_configuration_change(key, value)
            console.print(f"[green]✓[/green] {key} set to: {value}")
        if assignments:
            return

        settings = config.load()
    except ReleaseCtlError as e:
        handle_exception(e, "Updating configuration")
        return

    table = Table(title=f"Configuration ({config.config_file})", show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in sorted(settings.items()):
        if key == 'hosts':
            value = ', '.join(sorted(value)) or '-'
        table.add_row(key, json.dumps(value) if isinstance(value, list) else str(value))
    console.print(table)


@main.group()
def vault() -> None:
    """Manage the encrypted credential vault."""
    pass


@vault.command(name='keygen')
def vault_keygen() -> None:
    """Print a new vault key. Export it as RELEASECTL_VAULT_KEY."""
    click.echo(SecureVault.generate_key())


@vault.command(name='put')
@click.argument('auth_ref')
@click.option('--user', required=True, help='Login user on the host')
@click.option('--key-file', type=click.Path(exists=True, dir_okay=False), help='Private key file to use')
@click.option('--address', help='Override the host address')
@click.option('--port', type=int, help='Override the SSH port')
@click.pass_context
def vault_put(
    ctx: click.Context,
    auth_ref: str,
    user: str,
    key_file: Optional[str],
    address: Optional[str],
    port: Optional[int],
) -> None:
    """Store credentials for AUTH_REF in the vault."""
    config = get_config(ctx)
    try:
        vault_path = config.get('vault_path')
        if not vault_path:
            vault_path = str(config.config_dir / "vault.json")
            config.set('vault_path', vault_path)
        store = EncryptedFileSecretStore(Path(vault_path).expanduser())
        store.put(auth_ref, Credentials(
            principal=user,
            address=InputValidator.validate_address(address) if address else None,
            port=port,
            identity_file=key_file,
        ))
    except ReleaseCtlError as e:
        handle_exception(e, f"Storing credentials for {auth_ref}")
        return

    get_audit(ctx).log_configuration_change(f"vault.{auth_ref}", user)
    console.print(f"[green]✓[/green] Credentials for [cyan]{auth_ref}[/cyan] stored in {vault_path}")


if __name__ == '__main__':
    main()
