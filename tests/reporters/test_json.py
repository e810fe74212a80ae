"""Tests for JsonReporter.

Tests the JSON output reporter for GitHub Actions and CI artifacts.
"""

import json

import pytest

from swarm_smoke.models import ResultStatus, ScenarioResult, Stage, StageResult
from swarm_smoke.reporters.base import Reporter
from swarm_smoke.reporters.json_reporter import JsonReporter


@pytest.fixture
def results():
    return {
        "vault": ScenarioResult(
            backend="vault",
            status=ResultStatus.PASS,
            final_stage=Stage.ROTATION_VERIFIED,
            stages=[StageResult(stage=Stage.INIT, status=ResultStatus.PASS, duration_seconds=0.2)],
            duration_seconds=42.0,
        ),
        "openbao": ScenarioResult(
            backend="openbao",
            status=ResultStatus.FAIL,
            final_stage=Stage.BASELINE_VERIFIED,
            error_message="VerificationTimeout",
            last_observed=b"",
        ),
    }


class TestJsonReporterInterface:
    """Tests that JsonReporter implements Reporter interface."""

    def test_inherits_from_reporter(self):
        """JsonReporter should inherit from Reporter."""
        assert isinstance(JsonReporter(), Reporter)


class TestJsonReporterOutput:
    """Tests for generated output."""

    def test_summary(self, results):
        """Should count passed and failed scenarios."""
        output = JsonReporter().on_run_complete(results)

        assert output["summary"] == {
            "total_scenarios": 2,
            "passed": 1,
            "failed": 1,
            "all_passed": False,
        }

    def test_scenario_fields(self, results):
        """Should record status, final stage and stages per scenario."""
        output = JsonReporter().on_run_complete(results)

        vault = output["scenarios"]["vault"]
        assert vault["status"] == "pass"
        assert vault["final_stage"] == "rotation_verified"
        assert vault["stages"] == [{"stage": "init", "status": "pass", "duration_seconds": 0.2}]
        assert "error" not in vault

    def test_failure_fields(self, results):
        """Should record the error and last observed value of a failure."""
        output = JsonReporter().on_run_complete(results)

        openbao = output["scenarios"]["openbao"]
        assert openbao["error"] == "VerificationTimeout"
        assert openbao["last_observed"] == ""

    def test_collected_cleanup_errors(self, results):
        """Should include cleanup errors reported during the run."""
        reporter = JsonReporter()
        reporter.on_cleanup_error("openbao", "backend", RuntimeError("container busy"))

        output = reporter.on_run_complete(results)

        assert output["scenarios"]["openbao"]["cleanup_errors"] == ["backend: container busy"]

    def test_interrupted_flag(self, results):
        """Should flag interrupted scenarios and omit the flag otherwise."""
        results["openbao"].interrupted = True

        output = JsonReporter().on_run_complete(results)

        assert output["scenarios"]["openbao"]["interrupted"] is True
        assert "interrupted" not in output["scenarios"]["vault"]

    def test_empty_run_not_passed(self):
        """Should not report an empty run as passed."""
        assert JsonReporter().on_run_complete({})["summary"]["all_passed"] is False


class TestJsonReporterFiles:
    """Tests for file and GitHub Actions output."""

    def test_writes_file(self, results, tmp_path):
        """Should write the JSON file, creating parent directories."""
        path = tmp_path / "nested" / "results.json"

        JsonReporter(output_path=str(path)).on_run_complete(results)

        data = json.loads(path.read_text())
        assert set(data["scenarios"]) == {"vault", "openbao"}

    def test_github_output(self, results, tmp_path, monkeypatch):
        """Should append outputs to GITHUB_OUTPUT."""
        github_output = tmp_path / "github_output"
        monkeypatch.setenv("GITHUB_OUTPUT", str(github_output))

        JsonReporter(github_output=True).on_run_complete(results)

        content = github_output.read_text()
        assert "all_passed=false\n" in content
        assert "total_scenarios=2\n" in content
        assert "failed_scenarios=1\n" in content
        assert "results<<EOF\n" in content

    def test_github_output_without_env(self, results, monkeypatch):
        """Should skip GitHub outputs when GITHUB_OUTPUT is unset."""
        monkeypatch.delenv("GITHUB_OUTPUT", raising=False)

        output = JsonReporter(github_output=True).on_run_complete(results)

        assert output["summary"]["total_scenarios"] == 2
