"""
Berth Stream - Command Line Interface.

Usage:
    berth-stream watch --base-url https://berth.example
    berth-stream watch --metrics-port 9102
    berth-stream progress https://berth.example/api/servers/1/stacks/web/compose/up

Commands:
- watch: run an Operation Registry against a server and render the live
  operation list plus each running operation's aggregated progress
- progress: consume one request-based progress stream and print the final
  aggregated view (exit status 1 on error)

Author: Backend Lead Developer
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from prometheus_client import start_http_server
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .api.client import BerthClient
from .api.progress_stream import stream_progress
from .config import StreamConfig
from .core.event_aggregator import EventAggregator
from .core.operation_registry import OperationRegistry
from .core.storage import create_store

logger = logging.getLogger(__name__)

console = Console()


def render_registry(registry: OperationRegistry) -> Group:
    """Build the watch view: operations table plus running progress panels."""
    table = Table(title="Operations", show_header=True)
    table.add_column("Operation", style="cyan", no_wrap=True)
    table.add_column("Stack")
    table.add_column("Command")
    table.add_column("Started")
    table.add_column("Messages", justify="right")
    table.add_column("State", style="bold")

    panels = []
    for op in registry.operations:
        state = "[yellow]running[/yellow]" if op.is_incomplete else "[green]done[/green]"
        table.add_row(
            op.operation_id,
            op.stack_name,
            op.command,
            op.start_time.strftime("%Y-%m-%d %H:%M:%S"),
            str(op.message_count),
            state,
        )
        if op.is_incomplete:
            text = registry.get_aggregator(op.operation_id).display_text() or "waiting for output..."
            panels.append(Panel(Text(text), title=f"{op.stack_name}: {op.command}", border_style="cyan"))

    return Group(table, *panels)


async def watch(config: StreamConfig, refresh_per_second: float = 4.0) -> None:
    """Run the registry until interrupted."""
    client = BerthClient.from_config(config)
    registry = OperationRegistry(client, create_store(config), config=config)

    try:
        registry.start()
        with Live(render_registry(registry), console=console, refresh_per_second=refresh_per_second) as live:
            registry.subscribe(lambda _ops: live.update(render_registry(registry)))
            while True:
                await asyncio.sleep(1.0 / refresh_per_second)
                live.update(render_registry(registry))
    finally:
        await registry.aclose()
        await client.aclose()


async def progress(config: StreamConfig, url: str, timeout: Optional[float] = None) -> int:
    """Stream one progress endpoint; returns the process exit status."""
    client = BerthClient.from_config(config)
    aggregator = EventAggregator(config.free_text_limit)

    try:
        with Live(console=console, refresh_per_second=8) as live:
            result = await stream_progress(
                client.http,
                url,
                aggregator,
                timeout=timeout or config.progress_timeout,
                on_update=lambda agg: live.update(Panel(Text(agg.display_text()), title=url)),
            )
    finally:
        await client.aclose()

    console.print("\n".join(result.display))
    if result.ok:
        console.print(f"[green]✓ Completed[/green] ({result.events} events)")
        return 0

    console.print(f"[red]✗ {result.error}[/red]")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="berth-stream", description="Berth streaming client")
    parser.add_argument("--base-url", help="Server base URL (default: BERTH_BASE_URL)")
    parser.add_argument("--token", help="API token (default: BERTH_API_TOKEN)")
    parser.add_argument("--log-level", help="Logging level (default: BERTH_LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Watch running operations")
    watch_parser.add_argument("--storage", choices=["file", "redis", "memory"], help="State store backend")
    watch_parser.add_argument("--metrics-port", type=int, help="Expose Prometheus metrics on this port")

    progress_parser = subparsers.add_parser("progress", help="Follow one progress stream")
    progress_parser.add_argument("url", help="Progress stream URL")
    progress_parser.add_argument("--timeout", type=float, help="Absolute timeout in seconds")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    overrides = {}
    if args.base_url:
        overrides["base_url"] = args.base_url
    if args.token:
        overrides["api_token"] = args.token
    if args.log_level:
        overrides["log_level"] = args.log_level
    if getattr(args, "storage", None):
        overrides["storage_backend"] = args.storage
    config = StreamConfig(**overrides)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.command == "watch":
            if args.metrics_port:
                start_http_server(args.metrics_port)
                logger.info(f"Metrics available on :{args.metrics_port}/metrics")
            asyncio.run(watch(config))
            return 0
        return asyncio.run(progress(config, args.url, args.timeout))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
