"""Display utilities for releasectl.

This module provides shared display functions to avoid circular imports.
"""

from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..models import DeploymentAttempt

console = Console()


def _get_status_style(status: str) -> str:
    """Get Rich style for a release status or attempt outcome.

    Args:
        status: Status string.

    Returns:
        Rich style string for the status.
    """
    status_styles = {
        'live': 'bold green',
        'succeeded': 'bold green',
        'verified': 'green',
        'staged': 'blue',
        'in-progress': 'yellow',
        'rolled-back': 'yellow',
        'retired': 'dim',
        'failed': 'bold red',
    }
    return status_styles.get(status.lower(), 'white')


def _styled(status: str) -> str:
    style = _get_status_style(status)
    return f"[{style}]{status}[/{style}]"


def display_attempt(attempt: DeploymentAttempt) -> None:
    """Display the step log and outcome of a deployment attempt."""
    table = Table(
        title=f"Deploy {attempt.release_ref} -> {attempt.host}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Step", style="cyan", no_wrap=True)
    table.add_column("Result", justify="center")
    table.add_column("Detail")
    table.add_column("Time", justify="right", style="dim")

    for step in attempt.steps:
        table.add_row(
            step.name,
            "[green]✓[/green]" if step.ok else "[red]✗[/red]",
            step.detail,
            f"{step.duration:.1f}s",
        )
    console.print(table)

    lines = [
        f"[bold]Outcome:[/bold] {_styled(attempt.outcome.value)}",
        f"[bold]Live release:[/bold] {attempt.live_release or '[red]none[/red]'}",
    ]
    if attempt.error:
        lines.append(f"[bold]Error:[/bold] {attempt.error}")
    console.print(Panel("\n".join(lines), border_style="green" if attempt.succeeded else "red", expand=False))


def display_status(status: Dict[str, Any]) -> None:
    """Display the live release and release records of a host.

    Args:
        status: Status dictionary as returned by ``Deployer.status``.
    """
    live = status.get('live_release')
    header = [
        f"[bold]Host:[/bold] {status['host']}",
        f"[bold]Live release:[/bold] {live or '[red]none[/red]'}",
        f"[bold]History:[/bold] {', '.join(status.get('history', [])) or '-'}",
    ]
    if not status.get('consistent', True):
        header.append(
            f"[yellow]Warning:[/yellow] records say {status.get('recorded_live')} is live, "
            f"but the pointer resolves to {live}"
        )
    if status.get('deploying'):
        header.append("[yellow]A deployment is in progress[/yellow]")
    console.print(Panel("\n".join(header), title="Status", expand=False))

    display_release_table(status.get('releases', []))


def display_release_table(releases: List[Dict[str, Any]], title: str = "Releases") -> None:
    """Display release records in a formatted table."""
    if not releases:
        console.print("[yellow]No releases found.[/yellow]")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Release", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Source", style="green")
    table.add_column("Checksum", style="dim")
    table.add_column("Created", style="dim")

    for release in releases:
        table.add_row(
            str(release.get('sequence', '')),
            release.get('identifier', 'N/A'),
            _styled(release.get('status', 'unknown')),
            release.get('source_ref') or '-',
            (release.get('checksum') or '')[:12],
            release.get('created_at', 'N/A'),
        )

    console.print(table)


def display_hosts_table(hosts: List[Any]) -> None:
    """Display configured target hosts."""
    if not hosts:
        console.print("[yellow]No hosts configured.[/yellow]")
        return

    table = Table(title="Hosts", show_header=True, header_style="bold magenta")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Address")
    table.add_column("Transport", justify="center")
    table.add_column("Deploy root", style="blue")
    table.add_column("URL", style="green")

    for host in hosts:
        table.add_row(host.name, f"{host.address}:{host.port}", host.transport, host.deploy_root, host.url or '-')

    console.print(table)
