"""
dingclaw CLI

Commands:
    gateway  - run every enabled DingTalk robot with the echo agent
    probe    - verify an account's credentials
    send     - actively send text or an image
    status   - show config and account overview
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Final, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from dingclaw import __logo__, __version__


# ============================================================================
# CLI App
# ============================================================================

APP_NAME: Final[str] = "dingclaw"

app = typer.Typer(
    name=APP_NAME,
    help=f"{__logo__} dingclaw - DingTalk robot channel",
    no_args_is_help=True,
)

console = Console()


def _set_log_level(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


# ============================================================================
# Version
# ============================================================================

def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} dingclaw v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """dingclaw - DingTalk robot channel."""
    pass


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
    prefix: str = typer.Option("", "--prefix", help="Prefix for echoed replies"),
):
    """Start all enabled DingTalk channels with the echo agent."""

    from dingclaw.agent.echo import EchoAgent
    from dingclaw.bus.queue import MessageBus
    from dingclaw.channels.manager import ChannelManager
    from dingclaw.config.loader import load_config
    from dingclaw.utils.helpers import RUNTIME_PATHS

    _set_log_level(verbose)
    RUNTIME_PATHS.ensure()

    config = load_config()
    bus = MessageBus()
    channels = ChannelManager(config, bus)

    if not channels.enabled_channels:
        console.print("[red]Error: no enabled DingTalk account with clientId/clientSecret.[/red]")
        raise typer.Exit(1)

    agent = EchoAgent(bus, prefix=prefix)

    console.print(f"{__logo__} Starting dingclaw gateway: {', '.join(channels.enabled_channels)}")

    async def run():
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                pass

        await channels.start()
        agent_task = asyncio.create_task(agent.run(), name="echo-agent")

        await stop.wait()
        console.print("\nShutting down...")

        agent.stop()
        await channels.stop()
        await agent_task

    asyncio.run(run())


# ============================================================================
# Probe
# ============================================================================


@app.command()
def probe(
    account: Optional[str] = typer.Option(None, "--account", "-a", help="Account id"),
):
    """Check that an account's credentials can obtain an access token."""

    from dingclaw.channels.dingtalk.accounts import resolve_account, resolve_default_account_id
    from dingclaw.channels.dingtalk.client import DingTalkClient
    from dingclaw.config.loader import load_config

    config = load_config()
    resolved = resolve_account(config, account or resolve_default_account_id(config))

    if not resolved.is_configured:
        console.print(f"[red]Account {resolved.account_id} has no clientId/clientSecret.[/red]")
        raise typer.Exit(1)

    result = asyncio.run(DingTalkClient().probe(resolved))

    if result.ok:
        console.print(f"[green]✓[/green] {resolved.account_id}: robotCode={resolved.robot_code}")
    else:
        console.print(f"[red]✗[/red] {resolved.account_id}: {result.error}")
        raise typer.Exit(1)


# ============================================================================
# Send
# ============================================================================


@app.command()
def send(
    target: str = typer.Argument(..., help="User staff id, cid… conversation id, or dingtalk:… address"),
    message: Optional[str] = typer.Option(None, "--message", "-m"),
    image: Optional[str] = typer.Option(None, "--image", "-i", help="Image path or http(s) URL"),
    account: Optional[str] = typer.Option(None, "--account", "-a"),
    markdown: bool = typer.Option(False, "--markdown"),
):
    """Actively send a message outside any reply window."""

    from dingclaw.bus.queue import MessageBus
    from dingclaw.channels.dingtalk.accounts import resolve_account, resolve_default_account_id
    from dingclaw.channels.dingtalk.channel import DingTalkChannel
    from dingclaw.channels.dingtalk.errors import DingTalkError
    from dingclaw.config.loader import load_config

    if not message and not image:
        console.print("[red]Error: nothing to send, pass --message or --image.[/red]")
        raise typer.Exit(1)

    config = load_config()
    resolved = resolve_account(config, account or resolve_default_account_id(config))
    if not resolved.is_configured:
        console.print(f"[red]Account {resolved.account_id} has no clientId/clientSecret.[/red]")
        raise typer.Exit(1)

    channel = DingTalkChannel(config.dingtalk, MessageBus(), resolved)

    async def run():
        if message:
            result = await channel.send_text(target, message, markdown=markdown)
            console.print(f"[green]✓[/green] text sent to {result.chat_id} (id={result.message_id})")
        if image:
            result = await channel.send_image(target, image)
            console.print(f"[green]✓[/green] image sent to {result.chat_id} (id={result.message_id})")

    try:
        asyncio.run(run())
    except DingTalkError as e:
        console.print(f"[red]Send failed: {e}[/red]")
        raise typer.Exit(1)


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """Show configuration and DingTalk accounts."""

    from dingclaw.channels.dingtalk.accounts import list_account_ids, resolve_account
    from dingclaw.config.loader import get_config_path, load_config
    from dingclaw.utils.helpers import mask_secret

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} dingclaw Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Media: {config.dingtalk.media_path}")
    console.print(f"Replies: {'markdown' if config.dingtalk.markdown_replies else 'text'}\n")

    table = Table(title="DingTalk accounts")
    table.add_column("Account", style="cyan")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Client ID")
    table.add_column("Secret")

    for account_id in list_account_ids(config):
        acc = resolve_account(config, account_id)
        table.add_row(
            acc.account_id,
            acc.name or "",
            "[green]✓[/green]" if acc.enabled else "[dim]no[/dim]",
            acc.client_id or "[dim]not set[/dim]",
            mask_secret(acc.client_secret) if acc.client_secret else "[dim]not set[/dim]",
        )

    console.print(table)


if __name__ == "__main__":
    app()
