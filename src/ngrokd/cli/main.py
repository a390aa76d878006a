"""CLI entry point for ngrokd.

Invoked as::

    ngrokd [OPTIONS] COMMAND [ARGS]...

or, during development::

    python -m ngrokd.cli.main

Commands
--------
version              Show version information
identity show        Show the stored client identity
identity provision   Register a new client identity
endpoints            List bound endpoints
dial                 Open a connection to an address and report the result
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ngrokd.config import API_KEY_ENV, DEFAULT_INGRESS_ENDPOINT, DialerConfig
from ngrokd.context import Context
from ngrokd.errors import NgrokdError
from ngrokd.store import FileIdentityStore, default_cert_dir

console = Console()

_api_key_option = click.option(
    "--api-key",
    envvar=API_KEY_ENV,
    default="",
    show_envvar=True,
    help="Directory API key.",
)
_cert_dir_option = click.option(
    "--cert-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help=f"Identity directory (default: {default_cert_dir()}).",
)
_timeout_option = click.option(
    "--timeout",
    type=float,
    default=60.0,
    show_default=True,
    help="Seconds allowed for the whole command.",
)


# ------------------------------------------------------------------
# Root group
# ------------------------------------------------------------------


@click.group()
@click.version_option(package_name="ngrokd")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def cli(log_level: str) -> None:
    """Dial private, identity-bound endpoints through the relay."""
    logging.basicConfig(level=getattr(logging, log_level.upper()))


@cli.command(name="version")
def version_command() -> None:
    """Show detailed version information."""
    from ngrokd import __version__

    console.print(f"[bold]ngrokd[/bold] v{__version__}")


# ------------------------------------------------------------------
# identity command group
# ------------------------------------------------------------------


@cli.group(name="identity")
def identity_group() -> None:
    """Manage the client identity."""


@identity_group.command(name="show")
@_cert_dir_option
def identity_show_command(cert_dir: Path | None) -> None:
    """Show the identity stored in CERT_DIR."""
    from ngrokd.errors import IdentityNotFoundError, InvalidIdentityError
    from ngrokd.identity import Identity

    store = FileIdentityStore(cert_dir)
    try:
        identity = Identity.from_pem(*store.load())
    except IdentityNotFoundError:
        console.print(f"[red]Error:[/red] no identity stored in {store.directory}")
        sys.exit(1)
    except InvalidIdentityError as exc:
        console.print(f"[red]Error:[/red] stored identity is unusable: {escape(str(exc))}")
        sys.exit(1)

    status = "[red]expired[/red]" if identity.is_expired() else "[green]valid[/green]"
    console.print(f"[bold]Identity[/bold] in {store.directory}")
    console.print(f"  Operator ID: {identity.operator_id or '(none)'}")
    console.print(f"  Subject:     {identity.certificate().subject.rfc4514_string()}")
    console.print(f"  Expires:     {identity.not_after.isoformat()} ({status})")


@identity_group.command(name="provision")
@_api_key_option
@_cert_dir_option
@click.option("--force", is_flag=True, help="Register a new identity even if one is stored.")
@click.option(
    "--selector",
    "-s",
    multiple=True,
    help="Endpoint selector expression (repeatable). Defaults to 'true'.",
)
@_timeout_option
def identity_provision_command(
    api_key: str,
    cert_dir: Path | None,
    force: bool,
    selector: tuple[str, ...],
    timeout: float,
) -> None:
    """Register a client identity with the directory API and store it."""
    from ngrokd.api.client import DirectoryClient
    from ngrokd.provisioning import IdentityProvisioner

    if not api_key:
        console.print(f"[red]Error:[/red] an API key is required (--api-key or ${API_KEY_ENV})")
        sys.exit(1)

    store = FileIdentityStore(cert_dir)
    with DirectoryClient(api_key) as client, Context.background().with_timeout(timeout) as ctx:
        provisioner = IdentityProvisioner(store, client, endpoint_selectors=list(selector))
        try:
            identity = provisioner.ensure_identity(ctx, force=force)
        except NgrokdError as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")
            sys.exit(1)

    console.print(f"[green]Identity ready[/green] for operator [bold]{identity.operator_id}[/bold]")
    console.print(f"  Stored in: {store.directory}")
    console.print(f"  Expires:   {identity.not_after.isoformat()}")


# ------------------------------------------------------------------
# endpoints
# ------------------------------------------------------------------


@cli.command(name="endpoints")
@_api_key_option
@_cert_dir_option
@_timeout_option
def endpoints_command(api_key: str, cert_dir: Path | None, timeout: float) -> None:
    """List endpoints bound to the stored identity."""
    from ngrokd.dialer import BindingDialer

    config = DialerConfig(api_key=api_key, cert_store=FileIdentityStore(cert_dir), polling_interval=None)
    if not config.api_key:
        console.print(f"[red]Error:[/red] an API key is required (--api-key or ${API_KEY_ENV})")
        sys.exit(1)

    with Context.background().with_timeout(timeout) as ctx:
        try:
            with BindingDialer.create(config, ctx) as dialer:
                endpoints = dialer.discover_endpoints(ctx)
        except NgrokdError as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")
            sys.exit(1)

    if not endpoints:
        console.print("[yellow]No bound endpoints found.[/yellow]")
        return

    table = Table(title="Bound Endpoints", show_header=True)
    table.add_column("Hostname", style="cyan")
    table.add_column("Port", justify="right")
    table.add_column("Proto")
    table.add_column("URL")
    table.add_column("ID")
    for endpoint in sorted(endpoints, key=lambda ep: ep.hostname):
        table.add_row(
            endpoint.hostname,
            str(endpoint.port),
            endpoint.proto.value,
            endpoint.url,
            endpoint.id,
        )
    console.print(table)


# ------------------------------------------------------------------
# dial
# ------------------------------------------------------------------


@cli.command(name="dial")
@click.argument("address")
@_api_key_option
@_cert_dir_option
@click.option(
    "--ingress",
    default=DEFAULT_INGRESS_ENDPOINT,
    show_default=True,
    help="Relay ingress host:port.",
)
@_timeout_option
def dial_command(
    address: str,
    api_key: str,
    cert_dir: Path | None,
    ingress: str,
    timeout: float,
) -> None:
    """Open a connection to ADDRESS through the relay and close it again."""
    from ngrokd.dialer import BindingDialer

    config = DialerConfig(
        api_key=api_key,
        cert_store=FileIdentityStore(cert_dir),
        ingress_endpoint=ingress,
        polling_interval=None,
        discover_on_miss=True,
    )

    with Context.background().with_timeout(timeout) as ctx:
        try:
            with BindingDialer.create(config, ctx) as dialer:
                conn = dialer.dial_context(ctx, "tcp", address)
                conn.close()
        except NgrokdError as exc:
            console.print(f"[red]Error:[/red] {escape(str(exc))}")
            sys.exit(1)

    console.print(f"[green]Connected[/green] to [bold]{address}[/bold]")


if __name__ == "__main__":
    cli()
