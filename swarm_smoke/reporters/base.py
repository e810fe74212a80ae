"""Base reporter interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from swarm_smoke.models import ScenarioResult, Stage, StageResult


class Reporter(ABC):
    """Abstract base class for smoke test reporters."""

    @abstractmethod
    def on_scenario_start(self, backend: str) -> None:
        """Called when a scenario starts."""
        pass

    @abstractmethod
    def on_stage_start(self, backend: str, stage: "Stage") -> None:
        """Called before a stage transition is attempted."""
        pass

    @abstractmethod
    def on_stage_complete(self, backend: str, result: "StageResult") -> None:
        """Called when a stage transition succeeds or fails."""
        pass

    @abstractmethod
    def on_service_logs(self, backend: str, service: str, logs: str) -> None:
        """Called with captured output of the consuming service."""
        pass

    @abstractmethod
    def on_cleanup_error(self, backend: str, step: str, error: Exception) -> None:
        """Called when a teardown step fails. The failure is not raised."""
        pass

    @abstractmethod
    def on_scenario_complete(self, result: "ScenarioResult") -> None:
        """Called when a scenario reaches a terminal state."""
        pass

    @abstractmethod
    def on_run_complete(self, results: dict[str, "ScenarioResult"]) -> None:
        """Called when all scenarios are complete."""
        pass
