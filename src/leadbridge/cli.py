"""LeadBridge CLI - Main entry point."""

import asyncio
import json

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import settings
from .database import create_tables, dispose_engine

app = typer.Typer(
    name="leadbridge",
    help="LeadBridge - OAuth install broker for LeadConnector marketplace apps",
    no_args_is_help=True,
)
console = Console()

# Sub-command groups
oauth_app = typer.Typer(help="OAuth consent URL helpers")
installs_app = typer.Typer(help="Install records, backfill and sub-account tokens")

app.add_typer(oauth_app, name="oauth")
app.add_typer(installs_app, name="installs")


def _service():
    from .installs import InstallService

    return InstallService.from_settings(settings)


def _run(work):
    """Run an async unit of work against the configured database."""

    async def _main():
        if "sqlite" in settings.database_url:
            await create_tables()
        try:
            return await work()
        finally:
            await dispose_engine()

    return asyncio.run(_main())


def _fail(message: str):
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)


def _handled_errors():
    from .installs import InstallNotFound, MintError, StoreUnavailable
    from .oauth import OAuthConfigError, UpstreamTokenError

    return (InstallNotFound, MintError, StoreUnavailable, OAuthConfigError, UpstreamTokenError)


# ============================================================================
# Server
# ============================================================================


@app.command()
def serve(
    port: int = typer.Option(8030, "--port", "-p", help="Port to run on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the OAuth callback and install API server."""
    import uvicorn

    if not settings.oauth_configured:
        console.print("[yellow]GHL_CLIENT_ID / GHL_CLIENT_SECRET not set; installs will fail.[/yellow]")

    console.print(f"[bold cyan]Starting LeadBridge at http://{host}:{port}[/bold cyan]")
    uvicorn.run("leadbridge.web.app:app", host=host, port=port, reload=reload)


# ============================================================================
# OAuth Commands
# ============================================================================


@oauth_app.command("url")
def oauth_url(
    user_type: str = typer.Option(
        None, "--user-type", "-u", help="Install level hint: Company or Location"
    ),
):
    """Print the marketplace consent URL for a direct install.

    The URL carries no state, so the callback accepts it only when the
    browser arrives from the provider.
    """
    from .oauth.state import build_authorize_url, normalize_user_type

    if not settings.client_id.strip():
        _fail("GHL_CLIENT_ID not set.")

    hint = normalize_user_type(user_type)
    if user_type and not hint:
        _fail("--user-type must be Company or Location")

    url = build_authorize_url(
        settings.authorize_url,
        settings.client_id.strip(),
        settings.redirect_uri.strip(),
        scopes=settings.scope_list,
        user_type=hint,
    )
    console.print(url, soft_wrap=True)


# ============================================================================
# Install Commands
# ============================================================================


@installs_app.command("show")
def installs_show(
    tenant_key: str = typer.Argument(..., help="agency_<id> or location_<id>"),
):
    """Show a stored install record with token values redacted."""
    from .installs import get_token_store

    record = _run(lambda: get_token_store().get_by_tenant_key(tenant_key))
    if record is None:
        _fail(f"No install found for {tenant_key}")

    console.print_json(json.dumps(record.redacted()))


@installs_app.command("backfill")
def installs_backfill(
    company_id: str = typer.Option(None, "--company-id", "-c", help="Agency id (default: any stored agency)"),
):
    """Discover an agency's sub-accounts and mint a token for each."""
    try:
        summary = _run(lambda: _service().backfill(company_id))
    except _handled_errors() as e:
        _fail(f"Backfill failed: {e}")

    table = Table(title=f"Backfill {summary.agency_id}")
    table.add_column("Location", style="cyan")
    table.add_column("Result")
    for location_id in summary.minted_ids:
        table.add_row(location_id, "[green]minted[/green]")
    for failure in summary.failures:
        table.add_row(failure.sub_account_id, f"[red]failed ({failure.status})[/red]")
    console.print(table)

    console.print(
        f"found={summary.found} minted={summary.minted} source={summary.source or '-'}"
    )
    if summary.partial:
        raise typer.Exit(2)


@installs_app.command("mint")
def installs_mint(
    company_id: str = typer.Argument(..., help="Agency id"),
    location_id: str = typer.Argument(..., help="Sub-account id"),
):
    """Mint and store a token for one sub-account."""
    try:
        tokens = _run(lambda: _service().mint_sub_account(company_id, location_id))
    except _handled_errors() as e:
        _fail(f"Mint failed: {e}")

    console.print(
        Panel(
            f"[bold green]Minted location_{location_id}[/bold green]\n\n"
            f"Scopes: {len(tokens.scopes)}\n"
            f"Refresh token: {'yes' if tokens.refresh_token else 'no'}",
            title="Location Token",
        )
    )


@installs_app.command("refresh")
def installs_refresh(
    location_id: str = typer.Argument(..., help="Sub-account id"),
    show_token: bool = typer.Option(False, "--show-token", help="Print the new access token"),
):
    """Rotate a sub-account's stored refresh token and get a fresh access token."""
    try:
        tokens = _run(lambda: _service().sub_account_access_token(location_id))
    except _handled_errors() as e:
        _fail(f"Refresh failed: {e}")

    hours = tokens.expires_in // 3600
    minutes = (tokens.expires_in % 3600) // 60
    console.print(f"[green]Token refreshed! Valid for {hours}h {minutes}m[/green]")
    if show_token:
        console.print(tokens.access_token, soft_wrap=True)


@installs_app.command("status")
def installs_status(
    company_id: str = typer.Option(None, "--company-id", "-c", help="Agency id"),
    location_id: str = typer.Option(None, "--location-id", "-l", help="Sub-account id"),
):
    """Check whether the app is installed for a sub-account or agency."""
    if not company_id and not location_id:
        _fail("Pass --company-id or --location-id")

    try:
        status = _run(
            lambda: _service().install_status(agency_id=company_id, sub_account_id=location_id)
        )
    except _handled_errors() as e:
        _fail(f"Status check failed: {e}")

    table = Table(title="Install Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Installed", "[green]yes[/green]" if status.installed else "[red]no[/red]")
    table.add_row("Agency", status.agency_id or "-")
    table.add_row("Location", status.sub_account_id or "-")
    console.print(table)


if __name__ == "__main__":
    app()
