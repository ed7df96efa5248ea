"""
relayctl - operator CLI for the local inference relay.

Commands:
- start|stop|restart|status [unit]: supervise inference-daemon, gateway, container-worker
- logs: recent daemon and gateway log lines
- test: gateway health check
- models / pull <name>: backend model listing and download
- ports: listening TCP ports and the persisted gateway assignment
- configure: negotiate a gateway port and persist the assignment
- diagnose: health report (--auto) or interactive troubleshooter
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from relay_core.config import RelayConfig, get_config, save_assignment
from relay_core.errors import RelayError
from relay_core.orchestration.units import UNIT_ORDER

# Configure logging early
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("relayctl")

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger("relayctl").setLevel(level)
    logging.getLogger("relay_core").setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relayctl",
        description="Local inference relay - gateway, supervisor and diagnostics",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="{start,stop,status,restart,logs,test,models,pull,ports,configure,diagnose}")

    for name, help_text in (
        ("start", "Start services"),
        ("stop", "Stop services"),
        ("status", "Check service status"),
        ("restart", "Restart services"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "unit",
            nargs="?",
            choices=UNIT_ORDER,
            help="Single unit (default: all)",
        )
        if name == "stop":
            sub.add_argument(
                "--force",
                action="store_true",
                help="Kill instead of terminating gracefully",
            )

    logs_parser = subparsers.add_parser("logs", help="Show recent logs")
    logs_parser.add_argument(
        "-n", "--lines",
        type=int,
        default=20,
        help="Lines per log (default: 20)",
    )

    subparsers.add_parser("test", help="Test API connectivity")
    subparsers.add_parser("models", help="List installed models")

    pull_parser = subparsers.add_parser("pull", help="Download a new model")
    pull_parser.add_argument("name", help="Model name, e.g. llama3.2:3b")

    subparsers.add_parser("ports", help="Show used ports")

    configure_parser = subparsers.add_parser(
        "configure", help="Assign the gateway port and model"
    )
    configure_parser.add_argument("--model", help="Model identifier to persist")
    configure_parser.add_argument("--port", type=int, help="Use this port instead of negotiating one")
    configure_parser.add_argument(
        "--range",
        nargs=2,
        type=int,
        metavar=("LOW", "HIGH"),
        help="Port range to search (default: configured range)",
    )

    diagnose_parser = subparsers.add_parser("diagnose", help="Troubleshoot the relay")
    diagnose_parser.add_argument(
        "--auto",
        action="store_true",
        help="Run all read-only checks, print the report and exit",
    )
    diagnose_parser.add_argument(
        "--benchmark",
        action="store_true",
        help="Include the throughput benchmark (with --auto)",
    )
    diagnose_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON (with --auto)",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for relayctl."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.version:
        from relay_core import __version__
        print(f"relayctl v{__version__}")
        return 0

    if args.command is None:
        parser.print_usage(sys.stderr)
        return 1

    handlers = {
        "start": _lifecycle,
        "stop": _lifecycle,
        "restart": _lifecycle,
        "status": _status,
        "logs": _logs,
        "test": _test,
        "models": _models,
        "pull": _pull,
        "ports": _ports,
        "configure": _configure,
        "diagnose": _diagnose,
    }

    try:
        config = get_config()
        return handlers[args.command](args, config)
    except RelayError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        if e.hint:
            console.print(f"[cyan]Try:[/cyan] {e.hint}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130


# ============================================================================
# Supervision
# ============================================================================

def _supervisor(config: RelayConfig):
    from relay_core.orchestration import ServiceSupervisor

    return ServiceSupervisor.from_config(config)


def _lifecycle(args: argparse.Namespace, config: RelayConfig) -> int:
    supervisor = _supervisor(config)

    async def run():
        if args.command == "start":
            if args.unit:
                return [await supervisor.start(args.unit)]
            return await supervisor.start_all()
        if args.command == "stop":
            if args.unit:
                return [await supervisor.stop(args.unit, force=args.force)]
            return await supervisor.stop_all(force=args.force)
        if args.unit:
            return [await supervisor.restart(args.unit)]
        return await supervisor.restart_all()

    verb = {"start": "Starting", "stop": "Stopping", "restart": "Restarting"}[args.command]
    console.print(f"{verb} {args.unit or 'relay services'}...")
    for result in asyncio.run(run()):
        console.print(f"[green]✓[/green] {result.message}")
    return 0


def _status(args: argparse.Namespace, config: RelayConfig) -> int:
    supervisor = _supervisor(config)

    async def run():
        if args.unit:
            return [await supervisor.status(args.unit)]
        return await supervisor.status_all()

    statuses = asyncio.run(run())

    table = Table(title="Relay Service Status")
    table.add_column("Unit", style="cyan")
    table.add_column("State")
    table.add_column("Detail", style="dim")
    for status in statuses:
        color = "green" if status.running else "red"
        table.add_row(status.unit, f"[{color}]{status.state.value}[/{color}]", status.detail)
    console.print(table)

    console.print(f"Model: [cyan]{config.model_identifier}[/cyan]")
    port = config.gateway_port if config.gateway_port is not None else "[yellow]not configured[/yellow]"
    console.print(f"Gateway port: {port}")
    return 0 if all(s.running for s in statuses) else 1


def _logs(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.utils.logs import tail_lines

    for label, path in (("Inference Daemon", config.daemon_log), ("Gateway", config.gateway_log)):
        console.print(f"[bold]=== {label} Logs ({path}) ===[/bold]")
        lines = tail_lines(path, args.lines)
        if lines:
            console.print("\n".join(lines), markup=False, highlight=False)
        else:
            console.print("[dim]No logs found[/dim]")
    return 0


# ============================================================================
# Backend / gateway
# ============================================================================

def _test(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.diagnostics.aggregator import http_request

    url = f"{config.gateway_url}/health"
    console.print(f"Testing gateway at {url}...")
    try:
        status, body = asyncio.run(http_request("GET", url, config.health_timeout))
    except Exception as e:
        console.print(f"[red]Health check failed:[/red] {e}")
        console.print("[cyan]Try:[/cyan] relayctl start gateway")
        return 1

    console.print_json(json.dumps(body if body is not None else {"status": status}))
    return 0 if status == 200 else 1


def _models(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.gateway.backend import BackendClient

    async def run():
        backend = BackendClient(config.backend_url)
        try:
            return await backend.list_models(timeout=config.health_timeout)
        finally:
            await backend.close()

    models = asyncio.run(run())
    table = Table(title="Available Models")
    table.add_column("Name", style="cyan")
    table.add_column("Size", style="green", justify="right")
    table.add_column("Modified", style="dim")
    for model in models:
        size = model.get("size")
        size_text = f"{size / 1024 ** 3:.1f} GB" if isinstance(size, (int, float)) else ""
        table.add_row(
            str(model.get("name", "?")),
            size_text,
            str(model.get("modified_at", "")),
        )
    console.print(table)
    if not any(m.get("name") == config.model_identifier for m in models):
        console.print(
            f"[yellow]Configured model {config.model_identifier} is not installed.[/yellow] "
            f"[cyan]Try:[/cyan] relayctl pull {config.model_identifier}"
        )
    return 0


def _pull(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.gateway.backend import BackendClient

    async def run():
        backend = BackendClient(config.backend_url)
        try:
            return await backend.pull_model(args.name, timeout=config.pull_timeout)
        finally:
            await backend.close()

    console.print(f"Downloading model: [cyan]{args.name}[/cyan] (this may take several minutes...)")
    with console.status("Pulling..."):
        result = asyncio.run(run())
    console.print(f"[green]✓[/green] Model {args.name} {result.get('status', 'downloaded')}")
    return 0


def _ports(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.network import is_port_in_use, list_listening_ports

    table = Table(title="Listening TCP Ports")
    table.add_column("Port", style="cyan", justify="right")
    table.add_column("Address")
    table.add_column("PID", justify="right")
    table.add_column("Process", style="green")
    for entry in list_listening_ports():
        table.add_row(
            str(entry.port),
            entry.address,
            str(entry.pid or ""),
            entry.process or "",
        )
    console.print(table)

    if config.gateway_port is None:
        console.print("Gateway port: [yellow]not configured[/yellow] ([cyan]Try:[/cyan] relayctl configure)")
    else:
        state = "in use" if is_port_in_use(config.gateway_port) else "free"
        console.print(f"Gateway port: {config.gateway_port} ({state})")
    return 0


def _configure(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.network import find_available_port, is_port_in_use

    low, high = args.range if args.range else config.port_range
    port = args.port
    if port is None:
        port = find_available_port(low, high)
        console.print(f"Recommended available port: [cyan]{port}[/cyan]")
    elif is_port_in_use(port):
        console.print(f"[yellow]Warning: Port {port} is already in use.[/yellow]")
        port = find_available_port(low, high)
        console.print(f"Using available port: [cyan]{port}[/cyan]")

    save_assignment(config, port=port, model=args.model, append=config.store.exists())
    console.print(f"[green]✓[/green] Saved to {config.config_file}")
    console.print(f"  Model: {config.model_identifier}")
    console.print(f"  Gateway port: {config.gateway_port}")
    console.print(
        "[dim]Dependent worker configuration must point at "
        f"http://localhost:{config.gateway_port}; restart the gateway to apply.[/dim]"
    )
    return 0


# ============================================================================
# Diagnostics
# ============================================================================

def _diagnose(args: argparse.Namespace, config: RelayConfig) -> int:
    from relay_core.diagnostics.aggregator import DiagnosticsAggregator
    from relay_core.diagnostics.console import Troubleshooter, render_report
    from relay_core.gateway.backend import BackendClient

    async def run() -> int:
        backend = BackendClient(config.backend_url)
        aggregator = DiagnosticsAggregator(config, _supervisor(config), backend)
        try:
            if not args.auto:
                return await Troubleshooter(aggregator, console=console).loop()
            report = await aggregator.run(include_benchmark=args.benchmark)
        finally:
            await backend.close()

        if args.json:
            console.print_json(json.dumps(report.to_dict(), default=str))
        else:
            render_report(console, report)
            console.print("Auto diagnosis complete. Run without --auto for interactive mode.")
        return 0 if report.passed else 1

    return asyncio.run(run())


# CLI entry point for setup.py console_scripts
def run() -> int:
    return main()


if __name__ == "__main__":
    sys.exit(main())
