"""Command-line interface for the Kantine device client."""

import sys
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .api import TeamSummary
from .audit_logging import configure_logging
from .cache import CacheStatus, TieredCache
from .config import Config, ConfigError
from .coordinator import EnrollmentCoordinator
from .errors import KantineError, handle_exception
from .merge import MergeResult
from .models import MAX_TEAMS
from .reconciliation import ReconcileOutcome
from .store import ModelStore

console = Console()


def get_config() -> Config:
    return Config()


def get_coordinator() -> EnrollmentCoordinator:
    """Build the coordinator for the current state directory."""
    return EnrollmentCoordinator.from_config(get_config())


def confirm_destructive_action(action: str, resource: str, force: bool = False) -> bool:
    """Confirm destructive actions with user.

    Args:
        action: The action being performed (e.g., "remove").
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
            f"Re-enrolling requires a new link from the club.",
            title="Confirmation Required",
            border_style="red"
        )
    )

    return Confirm.ask(f"Are you sure you want to {action} '{resource}'?", default=False)


def display_merge_result(result: MergeResult) -> None:
    for team in result.admitted:
        console.print(f"[green]✓[/green] {team.name} ({team.role.value})")
    if result.dropped:
        names = ", ".join(team.name for team in result.dropped)
        console.print(
            f"[yellow]Team limit of {MAX_TEAMS} reached.[/yellow] Not added: {names}"
        )
        console.print("Remove a team first with: [cyan]kantine remove-team <SLUG> <TEAM>[/cyan]")


@click.group()
@click.version_option(version=__version__)
@click.option('--verbose', '-v', is_flag=True, help='Show debug logging')
def main(verbose: bool) -> None:
    """Kantine - manage this device's club enrollments."""
    configure_logging(verbose)


@main.command()
def status() -> None:
    """Show enrolled clubs and teams."""
    try:
        with get_coordinator() as coordinator:
            model = coordinator.model
    except KantineError as e:
        handle_exception(e, "Loading enrollment state")
        return

    if not model.is_enrolled:
        console.print("[yellow]This device is not enrolled with any club.[/yellow]")
        console.print("Enroll with: [cyan]kantine enroll <TOKEN>[/cyan]")
        return

    table = Table(title=f"Enrollments ({model.total_team_count}/{MAX_TEAMS} teams)")
    table.add_column("Club", style="cyan")
    table.add_column("Team")
    table.add_column("Role")
    table.add_column("State")

    for tenant in model.tenants.values():
        state = "[red]season ended[/red]" if tenant.season_ended else "[green]active[/green]"
        if not tenant.teams:
            table.add_row(f"{tenant.name} ({tenant.slug})", "-", "-", state)
        for team in tenant.teams:
            table.add_row(f"{tenant.name} ({tenant.slug})", f"{team.name} [dim]{team.id}[/dim]", team.role.value, state)

    console.print(table)

    problems = model.validate()
    if problems:
        console.print(Panel("\n".join(problems), title="[yellow]Inconsistencies[/yellow]", border_style="yellow"))


@main.command()
@click.argument('token')
def enroll(token: str) -> None:
    """Redeem an enrollment TOKEN from a club link or QR code."""
    try:
        with get_coordinator() as coordinator:
            with console.status("[cyan]Registering device...", spinner="dots"):
                result = coordinator.complete_enrollment(token)
            tenant_slug = result.model.enrollments[result.enrollment_id].tenant_slug
            tenant = result.model.tenants.get(tenant_slug)
            console.print(f"[green]Enrolled with {tenant.name if tenant else 'club'}[/green]")
            display_merge_result(result)
            if not coordinator.wait_for_fresh_data():
                console.print("[dim]Club details will refresh in the background.[/dim]")
    except KantineError as e:
        handle_exception(e, "Enrolling device")


@main.command()
@click.argument('tenant_slug')
@click.argument('tenant_name')
@click.argument('team_ids', nargs=-1, required=True)
def join(tenant_slug: str, tenant_name: str, team_ids: Tuple[str, ...]) -> None:
    """Follow TEAM_IDS of a club as a member."""
    try:
        with get_coordinator() as coordinator:
            with console.status("[cyan]Registering device...", spinner="dots"):
                result = coordinator.register_member(tenant_slug, tenant_name, list(team_ids))
            console.print(f"[green]Following teams of {tenant_name}[/green]")
            display_merge_result(result)
    except KantineError as e:
        handle_exception(e, "Joining teams")


def display_teams(title: str, teams: List[TeamSummary]) -> None:
    table = Table(title=title)
    table.add_column("Code")
    table.add_column("Name")
    table.add_column("ID", style="dim")
    for team in teams:
        table.add_row(team.code or "-", team.name, team.id)
    console.print(table)


@main.command(name='request-link')
@click.argument('email')
@click.argument('tenant_slug')
@click.argument('team_codes', nargs=-1)
def request_link(email: str, tenant_slug: str, team_codes: Tuple[str, ...]) -> None:
    """Request a manager enrollment link by e-mail.

    Without TEAM_CODES, lists the teams EMAIL may manage.
    """
    try:
        with get_coordinator() as coordinator:
            if not team_codes:
                teams = coordinator.allowed_teams(email, tenant_slug)
                if not teams:
                    console.print(f"[yellow]No teams found for {email} in {tenant_slug}.[/yellow]")
                    return
                display_teams(f"Teams for {email}", teams)
                console.print(f"Request a link with: [cyan]kantine request-link {email} {tenant_slug} <CODE>...[/cyan]")
                return

            coordinator.request_enrollment_link(email, tenant_slug, list(team_codes))
            console.print(f"[green]Enrollment link sent to {email}[/green]")
            console.print("Redeem it with: [cyan]kantine enroll <TOKEN>[/cyan]")
    except KantineError as e:
        handle_exception(e, "Requesting enrollment link")


@main.command()
@click.argument('tenant_slug')
@click.argument('query')
def search(tenant_slug: str, query: str) -> None:
    """Search the teams of a club."""
    try:
        with get_coordinator() as coordinator:
            teams = coordinator.search_teams(tenant_slug, query)
    except KantineError as e:
        handle_exception(e, "Searching teams")
        return

    if not teams:
        console.print(f"[yellow]No teams matching '{query}'.[/yellow]")
        return
    display_teams(f"Teams in {tenant_slug}", teams)
    console.print(f"Follow them with: [cyan]kantine join {tenant_slug} <NAME> <ID>...[/cyan]")


@main.command(name='remove-team')
@click.argument('tenant_slug')
@click.argument('team_id')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation')
def remove_team(tenant_slug: str, team_id: str, yes: bool) -> None:
    """Remove one team of a club from this device."""
    if not confirm_destructive_action("remove team", team_id, yes):
        console.print("[yellow]Cancelled.[/yellow]")
        return
    try:
        with get_coordinator() as coordinator:
            notified = coordinator.remove_team(tenant_slug, team_id)
    except KantineError as e:
        handle_exception(e, f"Removing team {team_id}")
        return

    console.print(f"[green]✓[/green] Team {team_id} removed")
    if not notified:
        console.print("[yellow]The server could not be reached; it will be updated on the next sync.[/yellow]")


@main.command(name='remove-tenant')
@click.argument('tenant_slug')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation')
def remove_tenant(tenant_slug: str, yes: bool) -> None:
    """Remove a club and all its teams from this device."""
    if not confirm_destructive_action("remove club", tenant_slug, yes):
        console.print("[yellow]Cancelled.[/yellow]")
        return
    try:
        with get_coordinator() as coordinator:
            notified = coordinator.remove_tenant(tenant_slug)
    except KantineError as e:
        handle_exception(e, f"Removing club {tenant_slug}")
        return

    console.print(f"[green]✓[/green] Club {tenant_slug} removed")
    if not notified:
        console.print("[yellow]The server could not be reached; it will be updated on the next sync.[/yellow]")


@main.command()
@click.option('--force', is_flag=True, help='Ignore the sync interval')
def reconcile(force: bool) -> None:
    """Sync this device's enrollments with the server."""
    try:
        with get_coordinator() as coordinator:
            with console.status("[cyan]Syncing enrollments...", spinner="dots"):
                result = coordinator.reconcile(force=force)
    except KantineError as e:
        handle_exception(e, "Reconciling enrollments")
        return

    if result.outcome is ReconcileOutcome.SUCCEEDED:
        summary = result.summary
        console.print(f"[green]✓[/green] Synced {result.enrollments_sent} enrollment(s)")
        if summary and summary.has_changes:
            console.print(
                f"Server cleanup: {summary.teams_removed} team(s) removed, "
                f"{summary.enrollments_revoked} enrollment(s) revoked"
            )
    elif result.outcome is ReconcileOutcome.THROTTLED:
        console.print("[yellow]Synced recently; use --force to sync now.[/yellow]")
    elif result.outcome is ReconcileOutcome.NO_CREDENTIAL:
        console.print("[yellow]No active club to sync with.[/yellow]")
    elif result.outcome is ReconcileOutcome.INCOMPLETE:
        console.print("[red]Sync skipped: local team data is incomplete.[/red] Run [cyan]kantine status[/cyan].")
    else:
        console.print(f"[red]Sync failed:[/red] {result.error or result.outcome.value}")
        sys.exit(1)


@main.command()
@click.argument('tenant_slug')
@click.option('--period', default='season', type=click.Choice(['week', 'month', 'season']), help='Ranking period')
@click.option('--team', 'team_id', help='Highlight a team')
def leaderboard(tenant_slug: str, period: str, team_id: Optional[str]) -> None:
    """Show a club's leaderboard."""
    try:
        with get_coordinator() as coordinator:
            result = coordinator.get_leaderboard(tenant_slug, period, team_id)
    except KantineError as e:
        handle_exception(e, "Fetching leaderboard")
        return

    if result.status is CacheStatus.MISS:
        console.print("[yellow]Leaderboard unavailable.[/yellow]")
        return

    table = Table(title=f"Leaderboard {tenant_slug} ({period})")
    table.add_column("#", justify="right")
    table.add_column("Team")
    table.add_column("Points", justify="right")
    for entry in result.data.get("teams", []):
        table.add_row(str(entry.get("rank", "")), str(entry.get("name", "")), str(entry.get("points", "")))
    console.print(table)
    if result.status is CacheStatus.STALE:
        console.print("[dim]Showing cached data; refreshing.[/dim]")


@main.group()
def cache() -> None:
    """Manage the local data cache."""
    pass


def _open_cache() -> TieredCache:
    config = get_config()
    return TieredCache(config.config_dir / "cache", max_memory_bytes=config.get('cache_memory_bytes'))


@cache.command(name='sweep')
def cache_sweep() -> None:
    """Remove expired cache entries."""
    with _open_cache() as store:
        removed = store.sweep()
    console.print(f"[green]✓[/green] Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")


@cache.command(name='clear')
def cache_clear() -> None:
    """Remove all cached data."""
    with _open_cache() as store:
        store.invalidate_all()
    console.print("[green]✓[/green] Cache cleared")


@main.command()
@click.option('--force', is_flag=True, help='Skip confirmation')
def reset(force: bool) -> None:
    """Remove every enrollment from this device."""
    if not confirm_destructive_action("remove all enrollments from", "this device", force):
        console.print("[yellow]Cancelled.[/yellow]")
        return
    try:
        with get_coordinator() as coordinator:
            notified = coordinator.reset_all()
    except KantineError as e:
        handle_exception(e, "Resetting enrollments")
        return

    console.print("[green]✓[/green] All enrollments removed")
    if not notified:
        console.print("[yellow]The server could not be reached; it will be updated on the next sync.[/yellow]")


@main.command()
def restore() -> None:
    """Restore enrollment state from the newest backup."""
    try:
        model = ModelStore(get_config().config_dir).restore_latest()
    except KantineError as e:
        handle_exception(e, "Restoring enrollment state")
        return
    console.print(f"[green]✓[/green] Restored {len(model.tenants)} club(s), {model.total_team_count} team(s)")


@main.command(name='config')
@click.option('--url', help='Backend URL (e.g., https://kantinekoning.com)')
@click.option('--timeout', type=int, help='Request timeout in seconds')
@click.option('--reconcile-interval', type=int, help='Minimum seconds between syncs')
@click.option('--reset', 'reset_config', is_flag=True, help='Restore default settings')
def config_cmd(
    url: Optional[str],
    timeout: Optional[int],
    reconcile_interval: Optional[int],
    reset_config: bool
) -> None:
    """Show or change settings."""
    config = get_config()
    try:
        if reset_config:
            config.reset()
            console.print("[green]✓[/green] Configuration reset to defaults")
            return

        changes = {'url': url, 'timeout': timeout, 'reconcile_interval': reconcile_interval}
        changes = {key: value for key, value in changes.items() if value is not None}
        for key, value in changes.items():
            config.set(key, value)
            console.print(f"[green]✓[/green] {key} set to: {value}")
        if changes:
            return

        settings = config.load()
    except ConfigError as e:
        handle_exception(e, "Updating configuration")
        return

    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key in sorted(settings):
        table.add_row(key, str(settings[key]))
    console.print(table)

    results = config.validate_configuration()
    for warning in results['warnings']:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


if __name__ == '__main__':
    main()
