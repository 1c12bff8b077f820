"""
Subscription issuance CLI.

Usage:
    subscription-issuance [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from subscription_issuance.config import IssuanceSettings, load_settings
from subscription_issuance.credentials import EnvCredentialProvider, StaticCredentialProvider
from subscription_issuance.exceptions import IssuanceError
from subscription_issuance.logging_config import mask, setup_logging
from subscription_issuance.orchestrator import IssuanceOrchestrator
from subscription_issuance.retry import RetryConfig
from subscription_issuance.service import GraphQLSubscriptionService, InMemorySubscriptionService
from subscription_issuance.session import SessionState
from subscription_issuance.wallet import Cip30BridgeWallet, SimulatedLedger, SimulatedWallet

console = Console()


@click.group()
@click.version_option(package_name="subscription-issuance", message="%(prog)s %(version)s")
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Settings file")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, env_file: str | None, verbose: bool):
    """Subscription NFT issuance - initiate, sign, finalize and submit."""
    ctx.ensure_object(dict)
    settings = load_settings(env_file)
    setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.log_json and not verbose,
    )
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = verbose


@cli.command()
@click.pass_context
def status(ctx):
    """Show the effective configuration."""
    settings: IssuanceSettings = ctx.obj["settings"]

    console.print("\n[bold blue]Subscription Issuance Status[/bold blue]\n")
    console.print(f"Environment: [cyan]{settings.environment}[/cyan]")
    console.print(f"Service URL: [cyan]{settings.graphql_url}[/cyan]")

    if settings.service_token:
        console.print(f"Service Token: [green]{mask(settings.service_token.get_secret_value())}[/green]")
    else:
        console.print("Service Token: [yellow]Not configured[/yellow]")

    console.print(f"Wallet: [cyan]{settings.wallet_provider}[/cyan] via {settings.wallet_bridge_url}")
    console.print(f"Network: [cyan]{settings.network}[/cyan]")
    console.print(
        f"Timeouts: connect {settings.connect_timeout_seconds}s, "
        f"signing {settings.signing_timeout_seconds}s, "
        f"service {settings.service_timeout_seconds}s, "
        f"broadcast {settings.broadcast_timeout_seconds}s"
    )
    console.print()


def _build_simulated(settings: IssuanceSettings, subscription_id: str) -> IssuanceOrchestrator:
    ledger = SimulatedLedger(network=settings.network, auto_confirm=True)
    service = InMemorySubscriptionService(ledger)
    service.add_offer(subscription_id, name=f"Demo offer {subscription_id}")
    return IssuanceOrchestrator(
        wallet=SimulatedWallet(ledger),
        service=service,
        confirmations=ledger,
        settings=settings,
    )


def _build_live(settings: IssuanceSettings) -> IssuanceOrchestrator:
    if settings.service_token is not None:
        credentials = StaticCredentialProvider(settings.service_token)
    else:
        credentials = EnvCredentialProvider()
    service = GraphQLSubscriptionService(
        settings.graphql_url,
        credentials=credentials,
        timeout=settings.service_timeout_seconds,
        retry=RetryConfig(
            max_retries=settings.service_max_retries,
            base_delay=settings.service_retry_base_delay,
        ),
    )
    wallet = Cip30BridgeWallet(
        settings.wallet_bridge_url,
        settings.wallet_provider,
        network=settings.network,
        timeout=settings.signing_timeout_seconds + 30,
    )
    return IssuanceOrchestrator(wallet=wallet, service=service, settings=settings)


def _receipt(session: SessionState) -> Table:
    table = Table(title="Subscription Issuance")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Session", session.session_id)
    table.add_row("Subscription", session.subscription_id or "-")
    table.add_row("Address", mask(session.address))
    table.add_row("Phase", session.phase.value)
    if session.acceptance is not None:
        table.add_row("Acceptance", session.acceptance.id)
        if session.acceptance.subscription_ends_at:
            table.add_row("Ends", session.acceptance.subscription_ends_at.isoformat())
    table.add_row("Tx Hash", session.tx_hash or "-")
    return table


async def _issue(orchestrator: IssuanceOrchestrator, subscription_id: str, user_vkh: str | None) -> SessionState:
    try:
        return await orchestrator.issue(subscription_id, user_vkh)
    finally:
        await orchestrator.close()


@cli.command()
@click.option("--subscription-id", "-s", required=True, help="Subscription offer to mint")
@click.option("--user-vkh", default=None, help="Verification key hash (defaults to the wallet address)")
@click.option("--simulate", is_flag=True, help="Use the in-memory service, wallet and ledger")
@click.pass_context
def issue(ctx, subscription_id: str, user_vkh: str | None, simulate: bool):
    """Issue a subscription NFT."""
    settings: IssuanceSettings = ctx.obj["settings"]

    if simulate:
        orchestrator = _build_simulated(settings, subscription_id)
        console.print("[dim]Simulation mode: nothing leaves this process[/dim]")
    else:
        orchestrator = _build_live(settings)

    try:
        session = asyncio.run(_issue(orchestrator, subscription_id, user_vkh))
    except IssuanceError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        console.print(f"[dim]{e.error_code} ({e.disposition.value})[/dim]")
        if ctx.obj["verbose"]:
            console.print(orchestrator.describe())
        ctx.exit(1)

    console.print(_receipt(session))
    console.print("\n[green]✓ Subscription issued[/green]\n")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
