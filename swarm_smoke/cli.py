"""Command-line interface for the Swarm secrets smoke tester.

Provides argument parsing and main entry point for running scenarios
from the command line.
"""

import argparse
import sys
from typing import Optional

from swarm_smoke.config import ConfigError, ScenarioConfig, load_scenario
from swarm_smoke.models import ScenarioResult, Stage, StageResult
from swarm_smoke.reporters import ConsoleReporter, JsonReporter, Reporter
from swarm_smoke.session import SmokeRunner

# Exit codes
EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


class CompositeReporter(Reporter):
    """Reporter that delegates to multiple reporters."""

    def __init__(self, reporters: list[Reporter]):
        self._reporters = reporters

    def on_scenario_start(self, backend: str) -> None:
        for reporter in self._reporters:
            reporter.on_scenario_start(backend)

    def on_stage_start(self, backend: str, stage: Stage) -> None:
        for reporter in self._reporters:
            reporter.on_stage_start(backend, stage)

    def on_stage_complete(self, backend: str, result: StageResult) -> None:
        for reporter in self._reporters:
            reporter.on_stage_complete(backend, result)

    def on_service_logs(self, backend: str, service: str, logs: str) -> None:
        for reporter in self._reporters:
            reporter.on_service_logs(backend, service, logs)

    def on_cleanup_error(self, backend: str, step: str, error: Exception) -> None:
        for reporter in self._reporters:
            reporter.on_cleanup_error(backend, step, error)

    def on_scenario_complete(self, result: ScenarioResult) -> None:
        for reporter in self._reporters:
            reporter.on_scenario_complete(result)

    def on_run_complete(self, results: dict) -> None:
        for reporter in self._reporters:
            reporter.on_run_complete(results)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="swarm-smoke",
        description="End-to-end smoke test for the Swarm external secrets driver",
    )

    parser.add_argument(
        "backend",
        nargs="?",
        default="vault",
        help="Backend to test: vault or openbao, or a comma-separated list (default: vault)",
    )

    parser.add_argument(
        "-m", "--mode",
        choices=["secret", "stack"],
        help="Deployment mode (default: secret for vault, stack for openbao)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress per-stage output, show only summary",
    )

    parser.add_argument(
        "-j", "--json-output",
        metavar="PATH",
        help="Write JSON results to file",
    )

    parser.add_argument(
        "--github-actions",
        action="store_true",
        help="Enable GitHub Actions output mode",
    )

    parser.add_argument(
        "--plugin-name",
        metavar="NAME",
        help="Plugin reference to build and test",
    )

    parser.add_argument(
        "--build-command",
        metavar="CMD",
        help="Command that builds and installs the plugin",
    )

    parser.add_argument(
        "--build-dir",
        metavar="DIR",
        help="Working directory for the build command",
    )

    return parser.parse_args(argv)


def create_reporters(args: argparse.Namespace) -> list[Reporter]:
    """Create reporters based on command-line arguments."""
    reporters: list[Reporter] = [ConsoleReporter(quiet=args.quiet)]

    if args.json_output or args.github_actions:
        reporters.append(JsonReporter(
            output_path=args.json_output,
            github_output=args.github_actions,
        ))

    return reporters


def load_scenarios(args: argparse.Namespace) -> list[ScenarioConfig]:
    """Build one scenario per selected backend.

    Raises:
        ConfigError: If any selector or override is invalid.
    """
    selectors = [s.strip() for s in args.backend.split(",") if s.strip()]
    if not selectors:
        raise ConfigError("No backend selected")

    return [
        load_scenario(
            selector,
            mode=args.mode,
            plugin_name=args.plugin_name,
            build_command=args.build_command,
            build_dir=args.build_dir,
        )
        for selector in selectors
    ]


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 when every scenario verified rotation, 1 for a failed
        scenario, 2 for configuration errors (nothing was provisioned)
    """
    args = parse_args(argv)

    try:
        scenarios = load_scenarios(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(f"Failed stage: {Stage.CONFIGURATION.value}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    reporters = create_reporters(args)
    if len(reporters) == 1:
        reporter = reporters[0]
    else:
        reporter = CompositeReporter(reporters)

    runner = SmokeRunner(scenarios, reporter=reporter)
    result = runner.run()

    return EXIT_PASSED if result.all_passed else EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
