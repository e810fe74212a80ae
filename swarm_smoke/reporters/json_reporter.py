"""JSON reporter for structured output and GitHub Actions integration.

Generates JSON output suitable for:
- CI artifacts
- GitHub Actions workflow outputs
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from swarm_smoke.models import ResultStatus, ScenarioResult, Stage, StageResult
from swarm_smoke.reporters.base import Reporter


class JsonReporter(Reporter):
    """JSON reporter for structured output.

    Args:
        output_path: Optional file path to write JSON output
        github_output: If True, write to GITHUB_OUTPUT for Actions
    """

    def __init__(
        self,
        output_path: Optional[str] = None,
        github_output: bool = False,
    ):
        self.output_path = output_path
        self.github_output = github_output
        self._cleanup_errors: dict[str, list[str]] = {}

    def on_scenario_start(self, backend: str) -> None:
        """No-op for JSON reporter."""
        pass

    def on_stage_start(self, backend: str, stage: Stage) -> None:
        """No-op for JSON reporter."""
        pass

    def on_stage_complete(self, backend: str, result: StageResult) -> None:
        """No-op - stage data comes from the scenario result."""
        pass

    def on_service_logs(self, backend: str, service: str, logs: str) -> None:
        """No-op for JSON reporter."""
        pass

    def on_cleanup_error(self, backend: str, step: str, error: Exception) -> None:
        self._cleanup_errors.setdefault(backend, []).append(f"{step}: {error}")

    def on_scenario_complete(self, result: ScenarioResult) -> None:
        """No-op - output is generated once the run completes."""
        pass

    def on_run_complete(self, results: dict[str, ScenarioResult]) -> dict:
        """Generates and outputs JSON data.

        Returns:
            The generated JSON data as a dictionary
        """
        output = self._generate_output(results)

        if self.output_path:
            self._write_to_file(output)

        if self.github_output:
            self._write_github_output(output)

        return output

    def _generate_output(self, results: dict[str, ScenarioResult]) -> dict:
        timestamp = datetime.now(timezone.utc).isoformat()

        scenarios = {}
        passed_count = 0
        failed_count = 0

        for backend, result in results.items():
            if result.status == ResultStatus.PASS:
                passed_count += 1
            else:
                failed_count += 1

            data = {
                "status": result.status.value,
                "final_stage": result.final_stage.value,
                "duration_seconds": result.duration_seconds,
                "stages": [
                    {
                        "stage": stage.stage.value,
                        "status": stage.status.value,
                        "duration_seconds": stage.duration_seconds,
                    }
                    for stage in result.stages
                ],
            }
            if result.error_message:
                data["error"] = result.error_message
            if result.last_observed is not None:
                data["last_observed"] = result.last_observed.decode("utf-8", errors="replace")
            if result.interrupted:
                data["interrupted"] = True
            cleanup_errors = result.cleanup_errors or self._cleanup_errors.get(backend, [])
            if cleanup_errors:
                data["cleanup_errors"] = list(cleanup_errors)
            scenarios[backend] = data

        total = len(results)
        all_passed = passed_count == total and total > 0

        return {
            "timestamp": timestamp,
            "scenarios": scenarios,
            "summary": {
                "total_scenarios": total,
                "passed": passed_count,
                "failed": failed_count,
                "all_passed": all_passed,
            },
        }

    def _write_to_file(self, output: dict) -> None:
        path = Path(self.output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.output_path, "w") as f:
            json.dump(output, f, indent=2)

    def _write_github_output(self, output: dict) -> None:
        github_output_file = os.environ.get("GITHUB_OUTPUT")
        if not github_output_file:
            return

        with open(github_output_file, "a") as f:
            f.write(f"all_passed={str(output['summary']['all_passed']).lower()}\n")
            f.write(f"total_scenarios={output['summary']['total_scenarios']}\n")
            f.write(f"failed_scenarios={output['summary']['failed']}\n")

            f.write("results<<EOF\n")
            f.write(json.dumps(output))
            f.write("\nEOF\n")
