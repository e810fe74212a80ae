"""Scenario configuration for the smoke tester.

Scenarios are built from fixed per-backend presets (the values the smoke
scripts have always used), optionally adjusted by environment variables so
CI can move ports, images or the plugin under test without code changes.

Environment overrides:
    SMOKE_BACKEND_PORT=8200
    SMOKE_BACKEND_ADDR=http://127.0.0.1:8200
    SMOKE_BACKEND_IMAGE=hashicorp/vault:1.16
    SMOKE_PLUGIN_NAME=swarm-external-secrets:latest
    SMOKE_BUILD_COMMAND=./scripts/build.sh
    SMOKE_ROTATION_INTERVAL=10
    SMOKE_ROTATION_SETTLE=15
"""

import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Optional

from swarm_smoke.errors import ConfigurationError
from swarm_smoke.models import BackendKind, DeploymentSpec, DeployMode


class ConfigError(Exception):
    """Raised when a scenario cannot be configured."""

    pass


DEFAULT_PLUGIN_NAME = "swarm-external-secrets:latest"
DEFAULT_BUILD_COMMAND = "./scripts/build.sh"

SUPPORTED_AUTH_METHODS = {"token"}

# Go-style duration accepted by the driver, e.g. "10s", "5m", "1h"
DURATION_PATTERN = re.compile(r"^\d+(ms|s|m|h)$")


@dataclass(frozen=True)
class DriverOptions:
    """Closed set of options the smoke test applies to the driver plugin."""

    backend: BackendKind
    address: str
    token: str
    auth_method: str = "token"
    mount_path: str = "secret"
    enable_rotation: bool = False
    rotation_interval: str = "10s"
    enable_monitoring: bool = False

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DriverOptions":
        """Build options from a plain mapping, rejecting unknown keys.

        Raises:
            ConfigurationError: On unknown or missing keys, or a flag that
                                is not true or false.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ConfigurationError(f"Unknown driver option(s): {', '.join(unknown)}")

        values = dict(mapping)
        if isinstance(values.get("backend"), str):
            try:
                values["backend"] = BackendKind(values["backend"])
            except ValueError as e:
                raise ConfigurationError(f"Unknown backend: {values['backend']}") from e

        for flag in ("enable_rotation", "enable_monitoring"):
            if isinstance(values.get(flag), str):
                text = values[flag].strip().lower()
                if text not in ("true", "false"):
                    raise ConfigurationError(f"Invalid value for {flag}: {values[flag]!r} (expected true or false)")
                values[flag] = text == "true"

        try:
            options = cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Incomplete driver options: {e}") from e

        options.validate()
        return options

    def validate(self) -> None:
        """Check option values.

        Raises:
            ConfigurationError: If any value is malformed.
        """
        if not isinstance(self.backend, BackendKind):
            raise ConfigurationError(f"Unknown backend: {self.backend}")
        if not self.address.startswith(("http://", "https://")):
            raise ConfigurationError(f"Backend address must be an http(s) URL: {self.address}")
        if self.auth_method not in SUPPORTED_AUTH_METHODS:
            raise ConfigurationError(f"Unsupported auth method: {self.auth_method}")
        if not self.token:
            raise ConfigurationError("Auth token must not be empty")
        if not self.mount_path:
            raise ConfigurationError("Mount path must not be empty")
        if not DURATION_PATTERN.match(self.rotation_interval):
            raise ConfigurationError(f"Invalid rotation interval: {self.rotation_interval}")
        for flag in ("enable_rotation", "enable_monitoring"):
            if not isinstance(getattr(self, flag), bool):
                raise ConfigurationError(f"{flag} must be true or false, got {getattr(self, flag)!r}")

    def to_settings(self) -> dict[str, str]:
        """Render the plugin's KEY=value settings."""
        prefix = self.backend.name
        settings = {
            "SECRETS_PROVIDER": self.backend.value,
            f"{prefix}_ADDR": self.address,
            f"{prefix}_AUTH_METHOD": self.auth_method,
            f"{prefix}_TOKEN": self.token,
            f"{prefix}_MOUNT_PATH": self.mount_path,
            "ENABLE_ROTATION": _flag(self.enable_rotation),
            "ROTATION_INTERVAL": self.rotation_interval,
            "ENABLE_MONITORING": _flag(self.enable_monitoring),
        }
        if self.backend == BackendKind.VAULT:
            settings["VAULT_ENABLE_ROTATION"] = _flag(self.enable_rotation)
        return settings


def _flag(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class ScenarioConfig:
    """Immutable description of one smoke test run."""

    backend: BackendKind
    mode: DeployMode
    backend_image: str
    container_name: str
    backend_port: int
    backend_addr: str
    root_token: str
    secret_path: str
    secret_field: str
    secret_name: str
    service_name: str
    stack_name: str
    expected_value: str
    rotated_value: str
    mount_path: str = "secret"
    policy_name: str = "smoke-policy"
    scoped_token: bool = False
    host_network: bool = False
    service_image: str = "busybox:latest"
    replicas: int = 1
    restart_condition: str = "any"
    plugin_name: str = DEFAULT_PLUGIN_NAME
    build_command: str = DEFAULT_BUILD_COMMAND
    build_dir: str = "."
    rotation_interval: int = 10
    rotation_settle: float = 15.0
    readiness_timeout: float = 20.0
    readiness_interval: float = 1.0
    activation_timeout: float = 30.0
    convergence_timeout: float = 60.0
    convergence_interval: float = 1.0
    verify_timeout: float = 20.0
    verify_interval: float = 1.0
    rotation_verify_timeout: float = 60.0

    @property
    def secret_mount_path(self) -> str:
        """Path the secret is mounted at inside the service's tasks."""
        return f"/run/secrets/{self.secret_name}"

    def deployment_spec(self) -> DeploymentSpec:
        return DeploymentSpec(
            mode=self.mode,
            backend=self.backend,
            plugin_name=self.plugin_name,
            secret_name=self.secret_name,
            secret_path=self.secret_path,
            secret_field=self.secret_field,
            service_name=self.service_name,
            stack_name=self.stack_name,
            image=self.service_image,
            replicas=self.replicas,
            restart_condition=self.restart_condition,
        )

    def driver_options(self, token: str) -> DriverOptions:
        """Driver options pointing at this scenario's backend."""
        return DriverOptions(
            backend=self.backend,
            address=self.backend_addr,
            token=token,
            mount_path=self.mount_path,
            enable_rotation=True,
            rotation_interval=f"{self.rotation_interval}s",
            enable_monitoring=False,
        )


def vault_scenario() -> ScenarioConfig:
    """Baseline + rotation against a Vault dev server, bare secret deploy."""
    return ScenarioConfig(
        backend=BackendKind.VAULT,
        mode=DeployMode.SECRET,
        backend_image="hashicorp/vault:1.16",
        container_name="smoke-vault",
        backend_port=8200,
        backend_addr="http://127.0.0.1:8200",
        root_token="root",
        secret_path="smoke_service/smoke",
        secret_field="password",
        secret_name="smoke",
        service_name="smoke_service",
        stack_name="smoke-vault",
        expected_value="smoke_test_value_123",
        rotated_value="smoke_test_value_456",
        readiness_timeout=20.0,
        readiness_interval=1.0,
        convergence_timeout=20.0,
        verify_timeout=20.0,
    )


def openbao_scenario() -> ScenarioConfig:
    """Baseline + rotation against an OpenBao dev server, stack deploy."""
    return ScenarioConfig(
        backend=BackendKind.OPENBAO,
        mode=DeployMode.STACK,
        backend_image="quay.io/openbao/openbao:latest",
        container_name="smoke-openbao",
        backend_port=8200,
        backend_addr="http://127.0.0.1:8200",
        root_token="smoke-root-token",
        secret_path="database/mysql",
        secret_field="password",
        secret_name="smoke_secret",
        service_name="app",
        stack_name="smoke-openbao",
        expected_value="openbao-smoke-pass-v1",
        rotated_value="openbao-smoke-pass-v2",
        scoped_token=True,
        host_network=True,
        readiness_timeout=30.0,
        readiness_interval=2.0,
        convergence_timeout=60.0,
        verify_timeout=60.0,
    )


PRESETS = {
    BackendKind.VAULT: vault_scenario,
    BackendKind.OPENBAO: openbao_scenario,
}


def parse_backend_kind(value: str) -> BackendKind:
    """Parse a backend selector.

    Raises:
        ConfigError: If the selector is not a supported backend.
    """
    try:
        return BackendKind(value.strip().lower())
    except ValueError:
        supported = ", ".join(k.value for k in BackendKind)
        raise ConfigError(f"Unknown provider: {value}. Supported: {supported}") from None


def _env_number(env: Mapping[str, str], name: str, kind: type) -> Optional[Any]:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = kind(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def apply_env_overrides(
    config: ScenarioConfig,
    env: Optional[Mapping[str, str]] = None,
) -> ScenarioConfig:
    """Return a copy of config with SMOKE_* environment overrides applied.

    Raises:
        ConfigError: If a numeric override is malformed.
    """
    if env is None:
        env = os.environ

    changes: dict[str, Any] = {}

    port = _env_number(env, "SMOKE_BACKEND_PORT", int)
    if port is not None:
        changes["backend_port"] = port
        changes["backend_addr"] = f"http://127.0.0.1:{port}"

    if env.get("SMOKE_BACKEND_ADDR"):
        changes["backend_addr"] = env["SMOKE_BACKEND_ADDR"]
    if env.get("SMOKE_BACKEND_IMAGE"):
        changes["backend_image"] = env["SMOKE_BACKEND_IMAGE"]
    if env.get("SMOKE_PLUGIN_NAME"):
        changes["plugin_name"] = env["SMOKE_PLUGIN_NAME"]
    if env.get("SMOKE_BUILD_COMMAND"):
        changes["build_command"] = env["SMOKE_BUILD_COMMAND"]

    interval = _env_number(env, "SMOKE_ROTATION_INTERVAL", int)
    if interval is not None:
        changes["rotation_interval"] = interval

    settle = _env_number(env, "SMOKE_ROTATION_SETTLE", float)
    if settle is not None:
        changes["rotation_settle"] = settle

    return replace(config, **changes) if changes else config


def load_scenario(
    backend: str,
    mode: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> ScenarioConfig:
    """Build the scenario for a backend selector.

    Args:
        backend: Backend selector ("vault" or "openbao").
        mode: Optional deploy mode override ("secret" or "stack").
        env: Environment mapping (defaults to os.environ).
        overrides: Explicit field overrides (e.g. from the CLI), applied
                   after the environment. None values are ignored.

    Raises:
        ConfigError: For unknown backends, modes or malformed overrides.
    """
    kind = parse_backend_kind(backend)
    config = apply_env_overrides(PRESETS[kind](), env)

    if mode is not None:
        try:
            config = replace(config, mode=DeployMode(mode))
        except ValueError:
            raise ConfigError(f"Unknown deploy mode: {mode}") from None

    explicit = {k: v for k, v in overrides.items() if v is not None}
    if explicit:
        try:
            config = replace(config, **explicit)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    return config
