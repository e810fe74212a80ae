"""Scenario sequencing and guaranteed teardown.

Coordinates a smoke scenario end to end:
- Backend provisioning and seeding
- Driver build, configuration and activation
- Deployment and baseline verification
- Backend rotation and rotated-value verification
- Teardown of everything created, on every exit path
"""

import signal
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import docker
import httpx
from docker.errors import DockerException

from swarm_smoke.backend import BackendProvisioner, render_policy
from swarm_smoke.config import ScenarioConfig
from swarm_smoke.deployment import DeploymentController
from swarm_smoke.docker_client import build_docker_client
from swarm_smoke.errors import (
    ConvergenceTimeout,
    ReadinessTimeout,
    TaskUnavailable,
    VerificationTimeout,
    WriteError,
)
from swarm_smoke.models import (
    BackendSession,
    DeploymentHandle,
    DriverSession,
    ResultStatus,
    RunResult,
    SCENARIO_STAGES,
    ScenarioResult,
    Stage,
    StageResult,
)
from swarm_smoke.plugin import PluginController
from swarm_smoke.verification import Verifier

# Lines of diagnostic output (container logs, task states) kept per failure
DETAIL_LINES = 20


class Teardown:
    """Runs registered cleanup steps exactly once, newest first.

    Steps are registered by resource identity before the resource is
    created, so partially created resources are cleaned up too. A failing
    or interrupted step is recorded and reported, and the remaining steps
    still run.
    """

    def __init__(self, on_error: Optional[Callable[[str, BaseException], None]] = None):
        self._steps: list[tuple[str, Callable[[], None]]] = []
        self._done = False
        self.errors: list[str] = []
        self.interrupted = False
        self.on_error = on_error

    @property
    def done(self) -> bool:
        return self._done

    def register(self, name: str, step: Callable[[], None]) -> None:
        self._steps.append((name, step))

    def run(self) -> list[str]:
        """Execute every step once. Never raises."""
        if self._done:
            return self.errors
        self._done = True

        for name, step in reversed(self._steps):
            try:
                step()
            except KeyboardInterrupt as e:
                # Ctrl-C or SIGTERM mid-cleanup; later steps must still run
                self.interrupted = True
                self.errors.append(f"{name}: interrupted")
                if self.on_error:
                    self.on_error(name, e)
            except Exception as e:
                self.errors.append(f"{name}: {e}")
                if self.on_error:
                    self.on_error(name, e)

        return self.errors


class ScenarioSession:
    """Runs one scenario through its state machine.

    INIT -> BACKEND_UP -> SECRET_SEEDED -> DRIVER_BUILT -> DRIVER_CONFIGURED
    -> DRIVER_ENABLED -> DEPLOYED -> BASELINE_VERIFIED -> ROTATED
    -> ROTATION_VERIFIED, or FAIL at the first stage that raises.
    """

    def __init__(
        self,
        config: ScenarioConfig,
        backend: BackendProvisioner,
        plugins: PluginController,
        deployments: DeploymentController,
        verifier: Verifier,
        reporter: Optional[Any] = None,
    ):
        self.config = config
        self.backend = backend
        self.plugins = plugins
        self.deployments = deployments
        self.verifier = verifier
        self.reporter = reporter

        self.teardown = Teardown(on_error=self._report_cleanup_error)
        self.backend_session: Optional[BackendSession] = None
        self.driver_session: Optional[DriverSession] = None
        self.handle: Optional[DeploymentHandle] = None
        self._driver_token: Optional[str] = None
        self._stages: list[StageResult] = []

    @property
    def name(self) -> str:
        return self.config.backend.value

    def run(self) -> ScenarioResult:
        """Execute the scenario and always tear down.

        Returns:
            ScenarioResult; status PASS only when ROTATION_VERIFIED was
            reached.
        """
        start_time = time.time()
        current = Stage.INIT
        status = ResultStatus.PASS
        error_message: Optional[str] = None
        last_observed: Optional[bytes] = None
        interrupted = False

        if self.reporter:
            self.reporter.on_scenario_start(self.name)

        try:
            for stage, action in self._plan():
                current = stage
                self._run_stage(stage, action)
        except VerificationTimeout as e:
            status = ResultStatus.FAIL
            error_message = str(e)
            last_observed = e.last_observed
        except KeyboardInterrupt:
            status = ResultStatus.ERROR
            error_message = "Interrupted"
            interrupted = True
        except Exception as e:
            status = ResultStatus.FAIL
            error_message = f"{type(e).__name__}: {e}"
        finally:
            cleanup_errors = self.teardown.run()

        if self.teardown.interrupted:
            interrupted = True
            if status == ResultStatus.PASS:
                # The primary outcome of a failed scenario is kept
                status = ResultStatus.ERROR
                current = Stage.TEARDOWN
                error_message = "Interrupted during teardown"

        result = ScenarioResult(
            backend=self.name,
            status=status,
            final_stage=current,
            stages=list(self._stages),
            duration_seconds=time.time() - start_time,
            error_message=error_message,
            last_observed=last_observed,
            cleanup_errors=list(cleanup_errors),
            interrupted=interrupted,
        )

        if self.reporter:
            self.reporter.on_scenario_complete(result)

        return result

    def _plan(self) -> list[tuple[Stage, Callable[[], None]]]:
        actions = {
            Stage.INIT: self.deployments.ensure_swarm,
            Stage.BACKEND_UP: self._start_backend,
            Stage.SECRET_SEEDED: self._seed_secret,
            Stage.DRIVER_BUILT: self._build_driver,
            Stage.DRIVER_CONFIGURED: self._configure_driver,
            Stage.DRIVER_ENABLED: self._enable_driver,
            Stage.DEPLOYED: self._deploy,
            Stage.BASELINE_VERIFIED: self._verify_baseline,
            Stage.ROTATED: self._rotate,
            Stage.ROTATION_VERIFIED: self._verify_rotation,
        }
        return [(stage, actions[stage]) for stage in SCENARIO_STAGES]

    def _run_stage(self, stage: Stage, action: Callable[[], None]) -> None:
        if self.reporter:
            self.reporter.on_stage_start(self.name, stage)

        start = time.time()
        try:
            action()
        except BaseException as e:
            result = StageResult(
                stage=stage,
                status=ResultStatus.ERROR if isinstance(e, KeyboardInterrupt) else ResultStatus.FAIL,
                duration_seconds=time.time() - start,
                detail=describe_failure(e),
            )
            self._record(result)
            raise

        self._record(StageResult(stage=stage, status=ResultStatus.PASS, duration_seconds=time.time() - start))

    def _record(self, result: StageResult) -> None:
        self._stages.append(result)
        if self.reporter:
            self.reporter.on_stage_complete(self.name, result)

    def _start_backend(self) -> None:
        config = self.config
        self.teardown.register("backend", lambda: self.backend.stop(config.container_name))
        self.backend_session = self.backend.start(config)
        self.backend.await_ready(self.backend_session, config.readiness_timeout, config.readiness_interval)

    def _seed_secret(self) -> None:
        config = self.config
        session = self.backend_session
        self.backend.write_secret(session, config.secret_path, config.secret_field, config.expected_value)

        stored = self.backend.read_secret(session, config.secret_path, config.secret_field)
        if stored != config.expected_value:
            raise WriteError(f"Read back {stored!r} after writing {config.expected_value!r}")

        if config.scoped_token:
            self._driver_token = self.backend.issue_scoped_token(
                session,
                config.policy_name,
                render_policy(config.mount_path, config.secret_path),
            )
        else:
            self._driver_token = config.root_token

    def _build_driver(self) -> None:
        config = self.config
        self.teardown.register("driver", lambda: self.plugins.teardown(config.plugin_name))
        self.driver_session = self.plugins.build(config.plugin_name, config.build_command, config.build_dir)

    def _configure_driver(self) -> None:
        self.plugins.configure(self.driver_session, self.config.driver_options(self._driver_token))

    def _enable_driver(self) -> None:
        self.plugins.enable(self.driver_session, timeout=self.config.activation_timeout)

    def _deploy(self) -> None:
        config = self.config
        spec = config.deployment_spec()
        handle = self.deployments.handle_for(spec)
        self.teardown.register("deployment", lambda: self.deployments.remove(handle))
        self.handle = self.deployments.apply(spec, config.convergence_timeout, config.convergence_interval)

    def _verify_baseline(self) -> None:
        config = self.config
        self.verifier.verify_value(
            self.handle,
            config.secret_name,
            config.expected_value,
            config.verify_timeout,
            config.verify_interval,
        )
        self._report_logs()

    def _rotate(self) -> None:
        config = self.config
        self.backend.write_secret(self.backend_session, config.secret_path, config.secret_field, config.rotated_value)

    def _verify_rotation(self) -> None:
        config = self.config
        self.verifier.await_rotation(
            self.handle,
            config.secret_name,
            config.rotated_value,
            rotation_interval=config.rotation_interval,
            verify_timeout=config.rotation_verify_timeout,
            settle=config.rotation_settle,
            interval=config.verify_interval,
        )
        self._report_logs()

    def _report_logs(self) -> None:
        if not self.reporter:
            return
        try:
            logs = self.deployments.fetch_logs(self.handle, self.config.service_name)
        except (TaskUnavailable, DockerException) as e:
            logs = f"<logs unavailable: {e}>"
        self.reporter.on_service_logs(self.name, self.config.service_name, logs)

    def _report_cleanup_error(self, step: str, error: Exception) -> None:
        if self.reporter:
            self.reporter.on_cleanup_error(self.name, step, error)


def describe_failure(error: BaseException) -> str:
    """One-line reason plus any diagnostics the error carries."""
    if isinstance(error, KeyboardInterrupt):
        return "Interrupted"

    lines = [str(error) or type(error).__name__]
    if isinstance(error, ReadinessTimeout) and error.logs:
        lines.extend(error.logs.rstrip().splitlines()[-DETAIL_LINES:])
    elif isinstance(error, ConvergenceTimeout) and error.task_states:
        lines.extend(error.task_states[:DETAIL_LINES])
    return "\n".join(lines)


def build_session(
    config: ScenarioConfig,
    docker_client: docker.DockerClient,
    http_client: httpx.Client,
    reporter: Optional[Any] = None,
) -> ScenarioSession:
    """Wire the controllers for one scenario."""
    backend = BackendProvisioner(docker_client, http_client)
    deployments = DeploymentController(docker_client)
    return ScenarioSession(
        config=config,
        backend=backend,
        plugins=PluginController(docker_client),
        deployments=deployments,
        verifier=Verifier(deployments, backend),
        reporter=reporter,
    )


@contextmanager
def sigterm_as_interrupt() -> Iterator[None]:
    """Deliver SIGTERM as KeyboardInterrupt so teardown still runs.

    CI runners cancel jobs with SIGTERM, which would otherwise kill the
    process without unwinding.
    """

    def handler(signum, frame):
        raise KeyboardInterrupt()

    try:
        previous = signal.signal(signal.SIGTERM, handler)
    except ValueError:
        # Not on the main thread
        yield
        return

    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class SmokeRunner:
    """Runs the selected scenarios one after another.

    Scenarios use disjoint container, secret and service names, but share
    the backend port, so they are not run concurrently.
    """

    def __init__(
        self,
        scenarios: list[ScenarioConfig],
        reporter: Optional[Any] = None,
        docker_client: Optional[docker.DockerClient] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.scenarios = scenarios
        self.reporter = reporter
        self.docker_client = docker_client
        self.http_client = http_client

    def run(self) -> RunResult:
        """Run every scenario and collect results."""
        start_time = time.time()
        results: dict[str, ScenarioResult] = {}

        owns_http = self.http_client is None
        http_client = self.http_client or httpx.Client(timeout=10.0)

        try:
            with sigterm_as_interrupt():
                for config in self.scenarios:
                    try:
                        result = self._run_scenario(config, http_client)
                    except KeyboardInterrupt:
                        # Arrived outside any stage or teardown step
                        result = ScenarioResult(
                            backend=config.backend.value,
                            status=ResultStatus.ERROR,
                            final_stage=Stage.INIT,
                            error_message="Interrupted",
                            interrupted=True,
                        )
                    results[result.backend] = result
                    if result.interrupted:
                        break
        finally:
            if owns_http:
                http_client.close()

        run_result = RunResult(scenarios=results, total_duration=time.time() - start_time)

        if self.reporter:
            self.reporter.on_run_complete(results)

        return run_result

    def _run_scenario(self, config: ScenarioConfig, http_client: httpx.Client) -> ScenarioResult:
        try:
            docker_client = self.docker_client or build_docker_client()
        except DockerException as e:
            result = ScenarioResult(
                backend=config.backend.value,
                status=ResultStatus.ERROR,
                final_stage=Stage.INIT,
                error_message=f"Cannot connect to Docker: {e}",
            )
            if self.reporter:
                self.reporter.on_scenario_complete(result)
            return result

        session = build_session(config, docker_client, http_client, self.reporter)
        return session.run()
