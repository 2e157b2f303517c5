"""
trust-chain command line.

Usage:
    trust-chain [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import uuid

import click
from rich.console import Console
from rich.live import Live
from rich.table import Table

from .chain_writer import SignerChainWriter
from .config import TrustChainConfig, TrustChainSettings, build_default_config, set_config
from .contracts import RoleReader, is_valid_address, role_hash
from .coordinator import ReconciliationCoordinator
from .exceptions import TrustChainError
from .feed_store import FeedSnapshot
from .logging_utils import setup_logging
from .models import ActionKind, ActionSnapshot, ActionState, ReconciliationAction
from .normalizer import format_record
from .offchain import OffchainSyncClient
from .role_audit import RoleDriftAuditor
from .rpc_client import ChainClient
from .subscriptions import WebSocketSubscriptionSource
from .watcher import ChainEventWatcher

console = Console()


@click.group()
@click.version_option(package_name="trust-chain", message="%(prog)s %(version)s")
@click.option("--rpc-url", envvar="TRUST_CHAIN_RPC_URL", help="JSON-RPC HTTP endpoint")
@click.option("--ws-url", envvar="TRUST_CHAIN_WS_URL", help="JSON-RPC WebSocket endpoint")
@click.option("--api-url", envvar="TRUST_CHAIN_API_URL", help="Application API base URL")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, rpc_url: str | None, ws_url: str | None, api_url: str | None, verbose: bool):
    """trust-chain - live transaction feed and on-chain role reconciliation."""
    ctx.ensure_object(dict)

    settings = TrustChainSettings()
    overrides = {k: v for k, v in {"rpc_url": rpc_url, "ws_url": ws_url, "api_url": api_url}.items() if v}
    if overrides:
        settings = settings.model_copy(update=overrides)

    setup_logging("DEBUG" if verbose else settings.log_level, json_format=settings.log_json)
    config = build_default_config(settings)
    set_config(config)
    ctx.obj["config"] = config


def _require_factory(config: TrustChainConfig) -> None:
    if not is_valid_address(config.offer_factory_address):
        raise click.ClickException("TRUST_CHAIN_OFFER_FACTORY_ADDRESS is not set")


def _print_action(snapshot: ActionSnapshot) -> None:
    color = "green" if snapshot.state == ActionState.COMMITTED else "red"
    console.print(f"Action [cyan]{snapshot.idempotency_key}[/cyan]: [{color}]{snapshot.state.value}[/{color}]")
    if snapshot.tx_hash:
        console.print(f"  tx: {snapshot.tx_hash}")
    if snapshot.last_error:
        console.print(f"  [red]{snapshot.last_error.kind.value}: {snapshot.last_error.reason}[/red]")
        for field_error in snapshot.last_error.field_errors:
            console.print(f"    {field_error.path}: {field_error.msg}")


def _feed_table(snapshot: FeedSnapshot, watcher: ChainEventWatcher) -> Table:
    liveness = watcher.liveness
    title = f"Transactions ({liveness.state.value}"
    if liveness.reason:
        title += f": {liveness.reason}"
    if watcher.pending_hint:
        title += f", ~{watcher.pending_hint} unlisted pending"
    table = Table(title=title + ")")
    table.add_column("Hash", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Value", justify="right")
    table.add_column("Time")
    table.add_column("Status")
    for record in snapshot:
        view = format_record(record)
        status = "[yellow]pending[/yellow]" if record.is_pending else "[green]confirmed[/green]"
        table.add_row(view.short_hash, view.from_address, view.to_address, view.value, view.time, status)
    return table


@cli.command()
@click.pass_context
def status(ctx):
    """Show configuration and provider status."""
    config: TrustChainConfig = ctx.obj["config"]

    async def run():
        async with ChainClient(config) as client:
            block = await client.get_block_number()
            chain_id = await client.get_chain_id()
            return block, chain_id, client.get_endpoint_stats()

    console.print("\n[bold blue]trust-chain status[/bold blue]\n")
    console.print(f"Chain: [cyan]{config.chain_name}[/cyan]")
    console.print(f"API URL: [cyan]{config.api_url}[/cyan]")
    console.print(f"Offer factory: [cyan]{config.offer_factory_address or 'Not configured'}[/cyan]")
    console.print(f"WebSocket: [cyan]{config.ws_url or 'Not configured (polling only)'}[/cyan]")

    try:
        block, chain_id, endpoints = asyncio.run(run())
    except TrustChainError as e:
        console.print(f"[red]Provider unavailable: {e.message}[/red]\n")
        return

    console.print(f"Chain ID: [cyan]{chain_id}[/cyan]  Latest block: [cyan]{block}[/cyan]")
    table = Table(title="RPC endpoints")
    table.add_column("URL", style="cyan")
    table.add_column("Status")
    table.add_column("Avg latency (ms)", justify="right")
    for endpoint in endpoints:
        table.add_row(endpoint["url"], endpoint["status"], str(endpoint["avg_latency_ms"]))
    console.print(table)
    console.print()


@cli.command()
@click.option("--duration", type=float, default=None, help="Stop after this many seconds")
@click.pass_context
def watch(ctx, duration: float | None):
    """Render the live transaction feed."""
    config: TrustChainConfig = ctx.obj["config"]

    async def run():
        client = ChainClient(config)
        subscriptions = WebSocketSubscriptionSource(config.ws_url) if config.ws_url else None
        watcher = ChainEventWatcher(client, subscriptions=subscriptions)
        with Live(_feed_table((), watcher), console=console, refresh_per_second=4) as live:
            watcher.store.subscribe(lambda snap: live.update(_feed_table(snap, watcher)))
            watcher.add_liveness_listener(
                lambda _: live.update(_feed_table(watcher.snapshot(), watcher))
            )
            await watcher.start()
            try:
                if duration is None:
                    await asyncio.Event().wait()
                else:
                    await asyncio.sleep(duration)
            finally:
                await watcher.stop()
                await client.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@cli.command("has-role")
@click.argument("role")
@click.argument("address")
@click.pass_context
def has_role(ctx, role: str, address: str):
    """Check ROLE for ADDRESS on the offer factory."""
    config: TrustChainConfig = ctx.obj["config"]
    _require_factory(config)
    if not is_valid_address(address):
        raise click.BadParameter(f"{address} is not an address", param_hint="ADDRESS")

    async def run():
        async with ChainClient(config) as client:
            return await RoleReader(client, config.offer_factory_address).has_role(role, address)

    try:
        granted = asyncio.run(run())
    except TrustChainError as e:
        raise click.ClickException(e.message)
    mark = "[green]yes[/green]" if granted else "[red]no[/red]"
    console.print(f"{role} ({role_hash(role)[:10]}...) for {address}: {mark}")


async def _run_role_action(
    config: TrustChainConfig,
    kind: ActionKind,
    user_id: int,
    role_name: str,
    key: str,
    actor_id: int | None,
) -> ActionSnapshot:
    client = ChainClient(config)
    offchain = OffchainSyncClient(
        config.api_url, config.api_token, config.reconciliation.offchain_timeout_seconds
    )
    try:
        role = await offchain.find_role(role_name)
        if role is None:
            raise click.ClickException(f"Unknown role {role_name}")
        subject = await offchain.get_user(user_id)
        writer = SignerChainWriter(
            client,
            config.private_key,
            receipt_timeout_seconds=config.reconciliation.confirmation_timeout_seconds,
            poll_interval_seconds=config.reconciliation.receipt_poll_interval_seconds,
        )
        coordinator = ReconciliationCoordinator(
            writer,
            RoleReader(client, config.offer_factory_address),
            offchain,
            config.offer_factory_address,
            chain_name=config.chain_name,
        )
        action = ReconciliationAction(
            idempotency_key=key,
            kind=kind,
            subject=subject,
            role=role,
            actor_id=actor_id,
        )
        try:
            with console.status(f"{kind.value} {role.name} for user {user_id}..."):
                return await coordinator.submit_and_wait(action)
        finally:
            await coordinator.close()
    finally:
        await offchain.close()
        await client.close()


def _role_command(kind: ActionKind, ctx, user_id: int, role: str, key: str | None, actor_id: int | None):
    config: TrustChainConfig = ctx.obj["config"]
    _require_factory(config)
    if not config.private_key:
        raise click.ClickException("TRUST_CHAIN_PRIVATE_KEY is not set")
    key = key or f"{kind.value}:{user_id}:{role.lower()}:{uuid.uuid4().hex[:8]}"
    try:
        snapshot = asyncio.run(_run_role_action(config, kind, user_id, role, key, actor_id))
    except TrustChainError as e:
        raise click.ClickException(e.message)
    _print_action(snapshot)
    if snapshot.state != ActionState.COMMITTED:
        ctx.exit(1)


@cli.command("grant-role")
@click.argument("user_id", type=int)
@click.argument("role")
@click.option("--key", help="Idempotency key (default: generated)")
@click.pass_context
def grant_role(ctx, user_id: int, role: str, key: str | None):
    """Grant ROLE to USER_ID on chain, then record it off-chain."""
    _role_command(ActionKind.GRANT_ROLE, ctx, user_id, role, key, None)


@cli.command("revoke-role")
@click.argument("user_id", type=int)
@click.argument("role")
@click.option("--key", help="Idempotency key (default: generated)")
@click.option("--actor-id", type=int, help="Off-chain ID of the operator running the command")
@click.pass_context
def revoke_role(ctx, user_id: int, role: str, key: str | None, actor_id: int | None):
    """Revoke ROLE from USER_ID on chain, then record it off-chain."""
    _role_command(ActionKind.REVOKE_ROLE, ctx, user_id, role, key, actor_id)


@cli.command("audit-roles")
@click.pass_context
def audit_roles(ctx):
    """Report off-chain roles that the chain does not confirm."""
    config: TrustChainConfig = ctx.obj["config"]
    _require_factory(config)

    async def run():
        async with ChainClient(config) as client:
            async with OffchainSyncClient(config.api_url, config.api_token) as offchain:
                users = [user async for user in offchain.iter_users()]
            auditor = RoleDriftAuditor(
                RoleReader(client, config.offer_factory_address), chain_name=config.chain_name
            )
            return await auditor.audit(users)

    try:
        report = asyncio.run(run())
    except TrustChainError as e:
        raise click.ClickException(e.message)

    console.print(
        f"\nChecked {report.users_checked} users ({report.users_skipped} without wallet), "
        f"{report.roles_checked} roles\n"
    )
    if report.is_consistent:
        console.print("[green]Off-chain roles match the chain[/green]\n")
        return

    table = Table(title="Role discrepancies")
    table.add_column("User", justify="right")
    table.add_column("Wallet", style="cyan")
    table.add_column("Role")
    table.add_column("Reason")
    for d in report.discrepancies:
        table.add_row(str(d.user_id), d.wallet_address, d.role_name, d.reason.value)
    console.print(table)
    ctx.exit(1)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
