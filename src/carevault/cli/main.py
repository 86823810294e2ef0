"""
CareVault CLI Main Entry Point
"""

import logging
import sys
import uuid
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from carevault import __version__
from carevault.core.config import settings
from carevault.core.crypto import generate_encryption_key, key_fingerprint
from carevault.core.logging import get_logger, set_console_level
from carevault.database.types import Role
from carevault.security.context import SecurityContext
from carevault.security.exceptions import ConfigurationError
from carevault.security.key_manager import EncryptionKeyManager, load_master_key

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="carevault",
    help="CareVault - MFA and encryption key operations",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

SYSTEM_USER_ID = uuid.UUID(int=0)


@app.callback()
def main(
    verbose: Optional[bool] = typer.Option(
        False,
        "--verbose",
        help="Enable verbose logging"
    ),
) -> None:
    """
    CareVault - security core for healthcare practice portals
    """
    if verbose:
        set_console_level(logging.DEBUG)
        logger.info("Verbose logging enabled")


@app.command()
def version() -> None:
    """Show version and exit"""
    console.print(f"[bold blue]CareVault[/bold blue] version [green]{__version__}[/green]")


@app.command()
def check() -> None:
    """
    Check configuration and master key
    """
    info_text = Text()
    info_text.append(f"Version: {__version__}\n", style="green")
    info_text.append(f"Environment: {settings.ENVIRONMENT}\n", style="yellow")
    info_text.append(f"Database: {settings.DATABASE_URL.split('@')[-1]}\n", style="cyan")
    info_text.append(f"Python: {sys.version.split()[0]}\n", style="cyan")

    healthy = True
    try:
        load_master_key()
        info_text.append("Master key: configured\n", style="green")
    except ConfigurationError as e:
        healthy = False
        info_text.append(f"Master key: {e.message}\n", style="bold red")

    if settings.is_production and settings.DEBUG:
        healthy = False
        info_text.append("DEBUG must be disabled in production\n", style="bold red")

    console.print(Panel(
        info_text,
        title="[bold blue]System Check[/bold blue]",
        border_style="green" if healthy else "red"
    ))
    if not healthy:
        raise typer.Exit(code=1)


@app.command("generate-master-key")
def generate_master_key() -> None:
    """
    Generate a new base64 master key for ENCRYPTION_MASTER_KEY
    """
    key = generate_encryption_key()
    console.print(Panel(
        f"[bold]{key}[/bold]\n\n"
        f"[dim]Fingerprint: {key_fingerprint(key)}[/dim]\n"
        "[dim]Store this in your secret manager; it is not saved anywhere.[/dim]",
        title="[bold blue]Master Key[/bold blue]",
        border_style="yellow"
    ))


@app.command("init-db")
def init_db() -> None:
    """
    Create database tables
    """
    from carevault.database.session import init_db as create_tables

    tables = create_tables()
    console.print(f"[bold green]✓[/bold green] Database ready ({len(tables)} tables)")


@app.command("rotation-due")
def rotation_due(
    org: str = typer.Option(..., "--org", help="Organization id"),
) -> None:
    """
    List encryption keys due for rotation
    """
    from carevault.database.session import session_scope

    try:
        organization_id = uuid.UUID(org)
    except ValueError:
        console.print(f"[bold red]Invalid organization id:[/bold red] {org}")
        raise typer.Exit(code=2)

    ctx = SecurityContext(
        user_id=SYSTEM_USER_ID,
        organization_id=organization_id,
        role=Role.OWNER,
        email="system@carevault.local",
    )

    with session_scope() as db:
        keys = EncryptionKeyManager(db).keys_due_for_rotation(ctx)

    if not keys:
        console.print("[green]No keys are due for rotation[/green]")
        return

    table = Table(title="Keys Due For Rotation")
    table.add_column("Key", style="cyan")
    table.add_column("Purpose")
    table.add_column("Version", justify="right")
    table.add_column("Schedule")
    table.add_column("Due", style="yellow")

    for key in keys:
        table.add_row(
            key["key_identifier"],
            key["purpose"],
            str(key["key_version"]),
            key["rotation_schedule"] or "-",
            key["next_rotation_at"].isoformat() if key["next_rotation_at"] else "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()
