"""Data models for the Swarm secrets smoke tester."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class BackendKind(Enum):
    """Secret store flavour the driver is tested against."""

    VAULT = "vault"
    OPENBAO = "openbao"


class DeployMode(Enum):
    """How the consuming service is deployed."""

    SECRET = "secret"
    STACK = "stack"


class ResultStatus(Enum):
    """Status of a stage or scenario."""

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class Stage(Enum):
    """States of a single scenario run, in execution order."""

    CONFIGURATION = "configuration"
    INIT = "init"
    BACKEND_UP = "backend_up"
    SECRET_SEEDED = "secret_seeded"
    DRIVER_BUILT = "driver_built"
    DRIVER_CONFIGURED = "driver_configured"
    DRIVER_ENABLED = "driver_enabled"
    DEPLOYED = "deployed"
    BASELINE_VERIFIED = "baseline_verified"
    ROTATED = "rotated"
    ROTATION_VERIFIED = "rotation_verified"
    TEARDOWN = "teardown"


# Stages a successful scenario passes through, in order
SCENARIO_STAGES = [
    Stage.INIT,
    Stage.BACKEND_UP,
    Stage.SECRET_SEEDED,
    Stage.DRIVER_BUILT,
    Stage.DRIVER_CONFIGURED,
    Stage.DRIVER_ENABLED,
    Stage.DEPLOYED,
    Stage.BASELINE_VERIFIED,
    Stage.ROTATED,
    Stage.ROTATION_VERIFIED,
]


@dataclass
class BackendSession:
    """A running secret store dev instance."""

    kind: BackendKind
    container_name: str
    address: str
    root_token: str
    mount_path: str = "secret"
    policy_name: Optional[str] = None
    current_value: Optional[str] = None


@dataclass
class DriverSession:
    """The installed secrets driver plugin."""

    plugin_name: str
    options: Optional[Any] = None
    enabled: bool = False


@dataclass(frozen=True)
class DeploymentSpec:
    """Declarative description of what gets deployed for a scenario."""

    mode: DeployMode
    backend: BackendKind
    plugin_name: str
    secret_name: str
    secret_path: str
    secret_field: str
    service_name: str
    stack_name: str
    image: str = "busybox:latest"
    replicas: int = 1
    restart_condition: str = "any"
    network: str = "smoke-network"


@dataclass
class DeploymentHandle:
    """Identity of an applied deployment (stack or secret+service pair)."""

    mode: DeployMode
    name: str
    service_names: dict[str, str]
    secret_names: list[str]
    replicas: int = 1
    manifest_path: Optional[str] = None

    def resolve_service(self, service: str) -> str:
        """Map a logical service name to the Swarm service name."""
        return self.service_names.get(service, service)


@dataclass
class VerificationOutcome:
    """Result of a verification attempt."""

    observed: Optional[bytes]
    elapsed: float
    passed: bool
    attempts: int = 1


@dataclass
class StageResult:
    """Outcome of one stage transition."""

    stage: Stage
    status: ResultStatus
    duration_seconds: float = 0.0
    detail: Optional[str] = None


@dataclass
class ScenarioResult:
    """Aggregated result for one scenario run."""

    backend: str
    status: ResultStatus
    final_stage: Stage
    stages: list[StageResult] = field(default_factory=list)
    duration_seconds: float = 0.0
    error_message: Optional[str] = None
    last_observed: Optional[bytes] = None
    cleanup_errors: list[str] = field(default_factory=list)
    interrupted: bool = False

    @property
    def passed(self) -> bool:
        return self.status == ResultStatus.PASS

    @property
    def failed_stage(self) -> Optional[Stage]:
        """Stage that failed, or None for a passing scenario."""
        if self.passed:
            return None
        return self.final_stage


@dataclass
class RunResult:
    """Result of running every selected scenario."""

    scenarios: dict[str, ScenarioResult]
    total_duration: float
    timestamp: str = field(default_factory=lambda: time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))

    @property
    def all_passed(self) -> bool:
        """True only if every scenario reached rotation verification."""
        return bool(self.scenarios) and all(
            s.passed and s.final_stage == Stage.ROTATION_VERIFIED
            for s in self.scenarios.values()
        )
