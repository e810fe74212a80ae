"""Deployment of the secret-consuming service.

Two deployment shapes are supported:
- secret: a driver-backed `docker secret` plus a `docker service` mounting it
- stack: a compose manifest deployed with `docker stack deploy`

Tasks are rescheduled whenever a container exits, so the observability
helpers resolve the current task and its container on every call.
"""

import os
import subprocess
import tempfile
from typing import Any, Callable, Optional

import docker
import yaml
from docker.errors import APIError, NotFound
from docker.types import RestartPolicy, SecretReference, ServiceMode

from swarm_smoke.docker_client import run_docker_cli
from swarm_smoke.errors import ConvergenceTimeout, ProvisionError, TaskUnavailable
from swarm_smoke.models import DeploymentHandle, DeploymentSpec, DeployMode
from swarm_smoke.polling import PollTimeout, poll_until

# Label docker stack deploy puts on every object it creates
STACK_NAMESPACE_LABEL = "com.docker.stack.namespace"

# How long secret removal waits for tasks still holding the secret
SECRET_RELEASE_TIMEOUT = 10.0


def consumer_command(secret_name: str) -> list[str]:
    """Command for the consuming service: print the secret every 5s."""
    return [
        "sh",
        "-c",
        "while true; do "
        f"echo 'Current secret:' && cat /run/secrets/{secret_name}; "
        "sleep 5; "
        "done",
    ]


def secret_labels(spec: DeploymentSpec) -> dict[str, str]:
    """Driver labels telling the plugin where the value lives."""
    prefix = spec.backend.value
    return {
        f"{prefix}_path": spec.secret_path,
        f"{prefix}_field": spec.secret_field,
    }


def render_manifest(spec: DeploymentSpec) -> dict[str, Any]:
    """Build the compose (v3.8) manifest for stack mode."""
    return {
        "version": "3.8",
        "services": {
            spec.service_name: {
                "image": spec.image,
                "command": consumer_command(spec.secret_name),
                "secrets": [spec.secret_name],
                "deploy": {
                    "replicas": spec.replicas,
                    "restart_policy": {"condition": spec.restart_condition},
                },
                "networks": [spec.network],
            },
        },
        "secrets": {
            spec.secret_name: {
                "driver": spec.plugin_name,
                "labels": secret_labels(spec),
            },
        },
        "networks": {
            spec.network: {"driver": "overlay"},
        },
    }


class DeploymentController:
    """Applies, observes and removes scenario deployments."""

    def __init__(
        self,
        docker_client: docker.DockerClient,
        cli: Callable[..., subprocess.CompletedProcess] = run_docker_cli,
    ):
        """Initialize the controller.

        Args:
            docker_client: Docker SDK client
            cli: Runner for docker CLI commands (stack deploy/rm)
        """
        self.docker_client = docker_client
        self.cli = cli

    def ensure_swarm(self) -> None:
        """Initialize a single-node swarm if this engine is not in one.

        Raises:
            ProvisionError: If the engine cannot be queried or swarm
                            initialization fails.
        """
        try:
            info = self.docker_client.info()
        except APIError as e:
            raise ProvisionError(f"Failed to query the Docker engine: {e.explanation or e}") from e
        if info.get("Swarm", {}).get("LocalNodeState") == "active":
            return
        try:
            self.docker_client.swarm.init()
        except APIError as e:
            raise ProvisionError(f"Failed to initialize Docker Swarm: {e.explanation or e}") from e

    def handle_for(self, spec: DeploymentSpec) -> DeploymentHandle:
        """Compute the identity a deployment of spec will have.

        Available before apply() so teardown can be registered first.
        """
        if spec.mode == DeployMode.STACK:
            return DeploymentHandle(
                mode=spec.mode,
                name=spec.stack_name,
                service_names={spec.service_name: f"{spec.stack_name}_{spec.service_name}"},
                secret_names=[f"{spec.stack_name}_{spec.secret_name}"],
                replicas=spec.replicas,
                manifest_path=os.path.join(tempfile.gettempdir(), f"{spec.stack_name}-compose.yml"),
            )
        return DeploymentHandle(
            mode=spec.mode,
            name=spec.service_name,
            service_names={spec.service_name: spec.service_name},
            secret_names=[spec.secret_name],
            replicas=spec.replicas,
        )

    def apply(self, spec: DeploymentSpec, timeout: float, interval: float = 1.0) -> DeploymentHandle:
        """Deploy spec and wait until its replicas are running.

        Raises:
            ConvergenceTimeout: If the deployment is rejected or does not
                                converge within timeout.
        """
        handle = self.handle_for(spec)

        if spec.mode == DeployMode.STACK:
            self._deploy_stack(spec, handle)
        else:
            self._deploy_secret_pair(spec, handle)

        self.await_convergence(handle, spec.service_name, timeout, interval)
        return handle

    def await_convergence(
        self,
        handle: DeploymentHandle,
        service: str,
        timeout: float,
        interval: float = 1.0,
    ) -> None:
        """Poll until the service has its desired count of running tasks.

        Raises:
            ConvergenceTimeout: If that count is not reached within timeout.
        """
        try:
            poll_until(
                lambda: self._running_tasks(handle, service),
                timeout=timeout,
                interval=interval,
                predicate=lambda tasks: len(tasks) >= handle.replicas,
                # NotFound while a stack's services are still being created
                transient=lambda e: isinstance(e, APIError),
                description=f"{handle.resolve_service(service)} convergence",
            )
        except PollTimeout as e:
            raise ConvergenceTimeout(
                f"Service {handle.resolve_service(service)} did not reach "
                f"{handle.replicas} running task(s) within {timeout:.0f}s",
                task_states=self.task_states(handle, service),
            ) from e

    def remove(self, handle: DeploymentHandle) -> None:
        """Remove everything the deployment created.

        Safe to call repeatedly and for deployments that never applied.
        """
        if handle.mode == DeployMode.STACK:
            if self._stack_exists(handle.name):
                self.cli(["stack", "rm", handle.name])
            if handle.manifest_path and os.path.exists(handle.manifest_path):
                os.remove(handle.manifest_path)
        else:
            for service_name in handle.service_names.values():
                self._remove_service(service_name)

        # Stack rm skips secrets left behind by a partially failed deploy
        for secret_name in handle.secret_names:
            self._remove_secret(secret_name)

    def fetch_logs(self, handle: DeploymentHandle, service: str) -> str:
        """Return the output of the service's current task container.

        Raises:
            TaskUnavailable: If no running task can be resolved.
        """
        container = self._current_container(handle, service)
        return container.logs(stdout=True, stderr=True).decode("utf-8", errors="replace")

    def read_file_from_task(self, handle: DeploymentHandle, service: str, path: str) -> bytes:
        """Read a file from inside the service's current task container.

        Raises:
            TaskUnavailable: If no running task can be resolved or the file
                             cannot be read yet.
        """
        container = self._current_container(handle, service)
        try:
            exit_code, output = container.exec_run(["cat", path], stdout=True, stderr=False)
        except APIError as e:
            # Container stopped between resolution and exec
            raise TaskUnavailable(f"exec in {container.id[:12]} failed: {e}") from e
        if exit_code != 0:
            raise TaskUnavailable(f"cat {path} exited with {exit_code} in {container.id[:12]}")
        return output or b""

    def task_states(self, handle: DeploymentHandle, service: str) -> list[str]:
        """Human-readable task status lines, for diagnostics."""
        try:
            tasks = self.docker_client.services.get(handle.resolve_service(service)).tasks()
        except APIError:
            return []
        lines = []
        for task in tasks:
            status = task.get("Status", {})
            line = f"{task.get('ID', '?')[:12]} {status.get('State', 'unknown')}"
            if status.get("Err"):
                line += f" ({status['Err']})"
            lines.append(line)
        return lines

    def _deploy_secret_pair(self, spec: DeploymentSpec, handle: DeploymentHandle) -> None:
        try:
            # Stale objects from an aborted earlier run would make create fail
            self.remove(handle)
            secret = self.docker_client.secrets.create(
                name=spec.secret_name,
                data=b"",
                labels=secret_labels(spec),
                driver={"Name": spec.plugin_name},
            )
            self.docker_client.services.create(
                spec.image,
                command=consumer_command(spec.secret_name),
                name=spec.service_name,
                secrets=[SecretReference(secret.id, spec.secret_name)],
                restart_policy=RestartPolicy(condition=spec.restart_condition),
                mode=ServiceMode("replicated", replicas=spec.replicas),
            )
        except APIError as e:
            raise ConvergenceTimeout(f"Deployment of {spec.service_name} rejected: {e.explanation or e}") from e

    def _deploy_stack(self, spec: DeploymentSpec, handle: DeploymentHandle) -> None:
        with open(handle.manifest_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(render_manifest(spec), f, sort_keys=False)

        try:
            self.cli(["stack", "deploy", "-c", handle.manifest_path, spec.stack_name])
        except subprocess.CalledProcessError as e:
            raise ConvergenceTimeout(f"Stack deploy of {spec.stack_name} failed: {(e.stderr or '').strip()}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ConvergenceTimeout(f"Stack deploy of {spec.stack_name} failed: {e}") from e

    def _stack_exists(self, stack_name: str) -> bool:
        """True if any object of the stack is left, services or not.

        A deploy that fails on its services can still leave the stack's
        network and secrets behind.
        """
        filters = {"label": f"{STACK_NAMESPACE_LABEL}={stack_name}"}
        return bool(
            self.docker_client.services.list(filters=filters)
            or self.docker_client.networks.list(filters=filters)
            or self.docker_client.secrets.list(filters=filters)
        )

    def _remove_service(self, service_name: str) -> None:
        try:
            self.docker_client.services.get(service_name).remove()
        except NotFound:
            pass

    def _remove_secret(self, secret_name: str) -> None:
        def attempt() -> bool:
            for secret in self.docker_client.secrets.list(filters={"name": secret_name}):
                if secret.name == secret_name:
                    try:
                        secret.remove()
                    except NotFound:
                        pass
            return True

        try:
            poll_until(
                attempt,
                timeout=SECRET_RELEASE_TIMEOUT,
                interval=1.0,
                transient=lambda e: isinstance(e, APIError),
                description=f"release of secret {secret_name}",
            )
        except PollTimeout as e:
            raise e.last_error or e

    def _running_tasks(self, handle: DeploymentHandle, service: str) -> list[dict]:
        svc = self.docker_client.services.get(handle.resolve_service(service))
        tasks = svc.tasks(filters={"desired-state": "running"})
        return [t for t in tasks if t.get("Status", {}).get("State") == "running"]

    def _current_container(self, handle: DeploymentHandle, service: str) -> Any:
        try:
            tasks = self._running_tasks(handle, service)
        except NotFound as e:
            raise TaskUnavailable(f"Service {handle.resolve_service(service)} not found") from e

        if not tasks:
            raise TaskUnavailable(f"No running task for {handle.resolve_service(service)}")

        # Newest task first
        tasks.sort(key=lambda t: t.get("Status", {}).get("Timestamp", ""), reverse=True)
        container_id: Optional[str] = (
            tasks[0].get("Status", {}).get("ContainerStatus", {}).get("ContainerID")
        )
        if not container_id:
            raise TaskUnavailable(f"Task {tasks[0].get('ID', '?')[:12]} has no container yet")

        try:
            return self.docker_client.containers.get(container_id)
        except NotFound as e:
            raise TaskUnavailable(f"Container {container_id[:12]} is gone") from e
