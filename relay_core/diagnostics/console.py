"""
Operator-facing rendering of diagnostics and the interactive troubleshooter.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from relay_core.diagnostics.aggregator import DiagnosticsAggregator
from relay_core.diagnostics.report import CheckResult, CheckStatus, HealthReport
from relay_core.errors import RelayError
from relay_core.orchestration.units import DAEMON, GATEWAY
from relay_core.utils.logs import tail_lines

logger = logging.getLogger(__name__)

MARKERS = {
    CheckStatus.PASS: "[green]✓[/green]",
    CheckStatus.WARN: "[yellow]⚠[/yellow]",
    CheckStatus.FAIL: "[red]✗[/red]",
    CheckStatus.SKIPPED: "[dim]-[/dim]",
}


def render_check(console: Console, check: CheckResult) -> None:
    line = f"{MARKERS[check.status]} [bold]{check.name}[/bold]: {check.message}"
    if check.latency_ms is not None:
        line += f" [dim]({check.latency_ms:.0f} ms)[/dim]"
    console.print(line)
    if check.hint and check.status in (CheckStatus.FAIL, CheckStatus.WARN):
        console.print(f"    [cyan]Try:[/cyan] {check.hint}")


def render_report(console: Console, report: HealthReport) -> None:
    for check in report.checks:
        render_check(console, check)

    if report.resources and report.resources.accelerators:
        table = Table(title="Accelerators")
        table.add_column("GPU", style="cyan")
        table.add_column("Memory used / total (MB)", style="green")
        for gpu in report.resources.accelerators:
            table.add_row(gpu.name, f"{gpu.memory_used_mb:.0f} / {gpu.memory_total_mb:.0f}")
        console.print(table)

    style = "bold green" if report.passed else "bold red"
    console.print(f"\n[{style}]{report.summary()}[/{style}]")


def _confirm(question: str) -> bool:
    return Confirm.ask(question, default=False)


class Troubleshooter:
    """Interactive menu over the aggregator and supervisor."""

    def __init__(
        self,
        aggregator: DiagnosticsAggregator,
        console: Optional[Console] = None,
        confirm: Callable[[str], bool] = _confirm,
    ):
        self.aggregator = aggregator
        self.supervisor = aggregator.supervisor
        self.console = console or Console()
        self.confirm = confirm
        self.actions: Dict[str, Tuple[str, Callable[[], Awaitable[None]]]] = {
            "1": ("Quick Status Check", self.quick_status),
            "2": ("Full System Diagnosis", self.full_diagnosis),
            "3": ("Test Connectivity", self.connectivity),
            "4": ("Performance Benchmark", self.run_benchmark),
            "5": ("Fix Common Issues", self.fix_common_issues),
            "6": ("Clean Logs", self.clean_logs),
            "7": ("Detailed Status", self.detailed_status),
            "8": ("Restart All Services", self.restart_all),
        }

    async def quick_status(self) -> None:
        for status in await self.supervisor.status_all():
            marker = MARKERS[CheckStatus.PASS if status.running else CheckStatus.FAIL]
            text = f"{marker} {status.unit}: {status.state.value}"
            if status.detail:
                text += f" ({status.detail})"
            self.console.print(text)
            if not status.running:
                self.console.print(f"    [cyan]Try:[/cyan] relayctl start {status.unit}")

    async def full_diagnosis(self) -> None:
        report = await self.aggregator.run()
        render_report(self.console, report)
        if report.failures:
            for message in await self.aggregator.remediate(report, self.confirm):
                self.console.print(f"  {message}")

    async def connectivity(self) -> None:
        report = await self.aggregator.run()
        for name in ("backend_api", "gateway_health", "inference"):
            check = report.get(name)
            if check is not None:
                render_check(self.console, check)

    async def run_benchmark(self) -> None:
        self.console.print(f"Testing model: [cyan]{self.aggregator.config.model_identifier}[/cyan]")
        try:
            result = await self.aggregator.benchmark()
        except RelayError as e:
            self.console.print(f"[red]{e}[/red]")
            return
        self.console.print("[bold]Benchmark Results:[/bold]")
        self.console.print(f"  • Duration: {result.elapsed_seconds:.2f}s")
        self.console.print(f"  • Words generated: {result.words}")
        self.console.print(f"  • Speed: {result.words_per_second:.2f} words/second")
        if result.tokens_per_second is not None:
            self.console.print(f"  • Throughput: {result.tokens_per_second:.2f} tokens/second")
        self.console.print(f"  • Response preview: {result.preview}...")

    async def fix_common_issues(self) -> None:
        for name in (DAEMON, GATEWAY):
            if not self.confirm(f"Restart {name}?"):
                continue
            try:
                result = await self.supervisor.restart(name)
                self.console.print(f"[green]{result.message}[/green]")
            except RelayError as e:
                self.console.print(f"[red]{e}[/red]  [cyan]Try:[/cyan] {e.hint}")
        for message in self.aggregator.clear_model_cache(self.confirm):
            self.console.print(f"  {message}")

    async def clean_logs(self) -> None:
        for message in self.aggregator.truncate_logs(self.confirm):
            self.console.print(f"  {message}")

    async def detailed_status(self) -> None:
        await self.quick_status()
        config = self.aggregator.config
        for label, path in (("Inference daemon", config.daemon_log), ("Gateway", config.gateway_log)):
            self.console.print(f"\n[bold]{label} log (last 5 lines):[/bold]")
            lines = tail_lines(path, 5)
            self.console.print("\n".join(lines) if lines else f"[dim]No log at {path}[/dim]")

    async def restart_all(self) -> None:
        if not self.confirm("Restart all services?"):
            return
        try:
            for result in await self.supervisor.restart_all():
                self.console.print(f"[green]{result.message}[/green]")
            self.console.print("[green]All services restarted[/green]")
        except RelayError as e:
            self.console.print(f"[red]{e}[/red]  [cyan]Try:[/cyan] {e.hint}")

    def menu(self) -> List[str]:
        lines = [f"{key}. {label}" for key, (label, _) in self.actions.items()]
        lines.append("0. Exit")
        return lines

    async def dispatch(self, choice: str) -> bool:
        """Run one menu choice; False means exit."""
        if choice == "0":
            return False
        action = self.actions.get(choice)
        if action is None:
            self.console.print("[red]Invalid option. Please try again.[/red]")
            return True
        await action[1]()
        return True

    async def loop(self) -> int:
        while True:
            self.console.rule("Relay Troubleshooter")
            for line in self.menu():
                self.console.print(line)
            choice = Prompt.ask("Choose option", default="0")
            if not await self.dispatch(choice.strip()):
                self.console.print("Goodbye!")
                return 0


__all__ = ["MARKERS", "Troubleshooter", "render_check", "render_report"]
