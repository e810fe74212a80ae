"""Console reporter using Rich library for formatted CLI output.

Provides colorful, formatted output during a smoke run including:
- Scenario headers and per-stage progress
- Captured service output
- Failure diagnostics (stage, reason, last observed value) on stderr
- Final summary table across scenarios
"""

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

from swarm_smoke.models import ResultStatus, ScenarioResult, Stage, StageResult
from swarm_smoke.reporters.base import Reporter

# Human labels for stage transitions
STAGE_LABELS = {
    Stage.CONFIGURATION: "Configuration",
    Stage.INIT: "Swarm initialized",
    Stage.BACKEND_UP: "Backend started and ready",
    Stage.SECRET_SEEDED: "Secret seeded",
    Stage.DRIVER_BUILT: "Driver plugin built",
    Stage.DRIVER_CONFIGURED: "Driver plugin configured",
    Stage.DRIVER_ENABLED: "Driver plugin enabled",
    Stage.DEPLOYED: "Service deployed",
    Stage.BASELINE_VERIFIED: "Baseline secret verified",
    Stage.ROTATED: "Backend value rotated",
    Stage.ROTATION_VERIFIED: "Rotated secret verified",
    Stage.TEARDOWN: "Teardown",
}


class ConsoleReporter(Reporter):
    """Rich-based console reporter for CLI output.

    Args:
        quiet: If True, suppress per-stage output (only show summary)
    """

    def __init__(self, quiet: bool = False):
        # Use legacy_windows=True for ASCII-safe output on Windows consoles
        self.console = Console(legacy_windows=True)
        self.err_console = Console(stderr=True, legacy_windows=True)
        self.quiet = quiet

    def on_scenario_start(self, backend: str) -> None:
        self.console.print()
        self.console.print(
            Rule(f"[bold cyan]Smoke test: {backend}[/bold cyan]", style="cyan", characters="-")
        )

    def on_stage_start(self, backend: str, stage: Stage) -> None:
        if self.quiet:
            return
        self.console.print(f"  [dim]... {STAGE_LABELS.get(stage, stage.value)}[/dim]")

    def on_stage_complete(self, backend: str, result: StageResult) -> None:
        """Displays pass/fail indicator for the stage."""
        if self.quiet:
            return

        label = STAGE_LABELS.get(result.stage, result.stage.value)
        if result.status == ResultStatus.PASS:
            status_text = "[green][PASS][/green]"
        elif result.status == ResultStatus.FAIL:
            status_text = "[red][FAIL][/red]"
        else:
            status_text = "[yellow][ERROR][/yellow]"

        duration = f" [dim]({result.duration_seconds:.1f}s)[/dim]" if result.duration_seconds > 0 else ""
        self.console.print(f"  {status_text}: {label}{duration}")

        if result.detail and result.status != ResultStatus.PASS:
            self.console.print(f"     [dim]{escape(result.detail)}[/dim]")

    def on_service_logs(self, backend: str, service: str, logs: str) -> None:
        if self.quiet:
            return
        self.console.print(f"  [dim]Output of {service}:[/dim]")
        for line in logs.rstrip().splitlines()[-10:]:
            self.console.print(f"     [dim]{escape(line)}[/dim]")

    def on_cleanup_error(self, backend: str, step: str, error: Exception) -> None:
        self.err_console.print(f"[yellow]Cleanup step '{step}' failed for {backend}: {escape(str(error))}[/yellow]")

    def on_scenario_complete(self, result: ScenarioResult) -> None:
        """Displays the scenario verdict; failures go to stderr."""
        duration_str = ""
        if result.duration_seconds > 0:
            duration_str = f" in {result.duration_seconds:.1f}s"

        if result.status == ResultStatus.PASS:
            self.console.print()
            self.console.print(f"{result.backend}: [bold green]PASSED[/bold green]{duration_str}")
            return

        self.console.print()
        self.err_console.print(
            f"{result.backend}: [bold red]FAILED[/bold red] at stage "
            f"[bold]{result.final_stage.value}[/bold]{duration_str}"
        )
        if result.error_message:
            self.err_console.print(f"   [red]{escape(result.error_message)}[/red]")
        if result.last_observed is not None:
            self.err_console.print(f"   Last observed: {escape(repr(result.last_observed))}")

    def on_run_complete(self, results: dict[str, ScenarioResult]) -> None:
        """Displays a summary table across scenarios."""
        if not results:
            self.console.print("[yellow]No results to display.[/yellow]")
            return

        self.console.print()
        self.console.print(
            Rule("[bold]Smoke Test Summary[/bold]", style="magenta", characters="-")
        )

        table = Table(
            title="",
            show_header=True,
            header_style="bold magenta",
            border_style="dim",
            box=box.ASCII,
        )
        table.add_column("Backend", style="cyan", no_wrap=True)
        table.add_column("Final stage", no_wrap=True)
        table.add_column("Duration", justify="right", no_wrap=True)
        table.add_column("Status", justify="center", no_wrap=True)

        for backend, result in results.items():
            if result.status == ResultStatus.PASS:
                status_symbol = "[green]PASS[/green]"
            elif result.status == ResultStatus.FAIL:
                status_symbol = "[red]FAIL[/red]"
            else:
                status_symbol = "[yellow]ERROR[/yellow]"
            table.add_row(
                backend,
                result.final_stage.value,
                f"{result.duration_seconds:.1f}s",
                status_symbol,
            )

        self.console.print(table)
        self.console.print()
