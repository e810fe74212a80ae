"""Secret store provisioning.

Starts a Vault or OpenBao dev-mode container, waits for its health
endpoint, and talks to its HTTP API for key/value writes, scoped policies
and token issuance. Both servers speak the same API, so one client covers
them.
"""

import docker
import httpx
from docker.errors import APIError, ImageNotFound, NotFound

from swarm_smoke.config import ScenarioConfig
from swarm_smoke.errors import AuthSetupError, ProvisionError, ReadinessTimeout, WriteError
from swarm_smoke.models import BackendKind, BackendSession
from swarm_smoke.polling import PollTimeout, poll_until

# Env var prefix the dev server image reads its root token and listener from
DEV_ENV_PREFIX = {
    BackendKind.VAULT: "VAULT",
    BackendKind.OPENBAO: "BAO",
}

# Lines of container output attached to a readiness failure
LOG_TAIL_LINES = 50


def render_policy(mount_path: str, secret_path: str) -> str:
    """Render an ACL policy limited to one KV v2 secret.

    Grants read/write on the secret's data and list on its metadata, which
    is all the driver needs to fetch and watch the value.
    """
    return (
        f'path "{mount_path}/data/{secret_path}" {{\n'
        f'  capabilities = ["create", "update", "read", "list"]\n'
        f"}}\n"
        f'path "{mount_path}/metadata/{secret_path}" {{\n'
        f'  capabilities = ["list"]\n'
        f"}}\n"
    )


class BackendProvisioner:
    """Manages the secret store container and its HTTP API."""

    def __init__(self, docker_client: docker.DockerClient, http_client: httpx.Client):
        """Initialize the provisioner.

        Args:
            docker_client: Docker SDK client
            http_client: httpx client for the secret store API
        """
        self.docker_client = docker_client
        self.http_client = http_client

    def start(self, config: ScenarioConfig) -> BackendSession:
        """Launch a dev-mode secret store container.

        Raises:
            ProvisionError: If the image is missing or the container
                            cannot be created (e.g. port in use).
        """
        prefix = DEV_ENV_PREFIX[config.backend]
        environment = {
            f"{prefix}_DEV_ROOT_TOKEN_ID": config.root_token,
            f"{prefix}_DEV_LISTEN_ADDRESS": f"0.0.0.0:{config.backend_port}",
        }

        run_kwargs = {
            "name": config.container_name,
            "command": ["server", "-dev"],
            "environment": environment,
            "detach": True,
        }
        if config.host_network:
            run_kwargs["network_mode"] = "host"
        else:
            run_kwargs["ports"] = {f"{config.backend_port}/tcp": config.backend_port}

        try:
            self.docker_client.containers.run(config.backend_image, **run_kwargs)
        except ImageNotFound as e:
            raise ProvisionError(f"Backend image not found: {config.backend_image}") from e
        except APIError as e:
            raise ProvisionError(f"Failed to start {config.container_name}: {e.explanation or e}") from e

        return BackendSession(
            kind=config.backend,
            container_name=config.container_name,
            address=config.backend_addr,
            root_token=config.root_token,
            mount_path=config.mount_path,
        )

    def await_ready(self, session: BackendSession, timeout: float, interval: float) -> None:
        """Poll the health endpoint until the server is unsealed and active.

        Raises:
            ReadinessTimeout: If the server is not healthy within timeout.
        """
        try:
            poll_until(
                lambda: self._health(session),
                timeout=timeout,
                interval=interval,
                description=f"{session.kind.value} readiness",
            )
        except PollTimeout as e:
            raise ReadinessTimeout(
                f"{session.kind.value} did not become ready within {timeout:.0f}s",
                logs=self.container_logs(session.container_name),
            ) from e
        except httpx.HTTPError as e:
            raise ReadinessTimeout(
                f"{session.kind.value} health probe failed: {e}",
                logs=self.container_logs(session.container_name),
            ) from e

    def _health(self, session: BackendSession) -> bool:
        response = self.http_client.get(f"{session.address}/v1/sys/health")
        response.raise_for_status()
        return True

    def write_secret(self, session: BackendSession, path: str, field: str, value: str) -> None:
        """Set a field of a KV v2 secret, replacing the current version.

        Used both for seeding and for rotation.

        Raises:
            WriteError: On authorization or connectivity failure.
        """
        url = f"{session.address}/v1/{session.mount_path}/data/{path}"
        try:
            response = self.http_client.post(
                url,
                headers=self._headers(session),
                json={"data": {field: value}},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WriteError(
                f"Write to {session.mount_path}/{path} rejected with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise WriteError(f"Write to {session.mount_path}/{path} failed: {e}") from e

        session.current_value = value

    def read_secret(self, session: BackendSession, path: str, field: str) -> str:
        """Read a field of the latest KV v2 secret version.

        Raises:
            WriteError: If the read fails or the field is missing.
        """
        url = f"{session.address}/v1/{session.mount_path}/data/{path}"
        try:
            response = self.http_client.get(url, headers=self._headers(session))
            response.raise_for_status()
            data = response.json()["data"]["data"]
        except httpx.HTTPError as e:
            raise WriteError(f"Read of {session.mount_path}/{path} failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise WriteError(f"Malformed KV response for {session.mount_path}/{path}") from e

        if field not in data:
            raise WriteError(f"Field '{field}' not present at {session.mount_path}/{path}")
        return data[field]

    def issue_scoped_token(self, session: BackendSession, policy_name: str, policy_document: str) -> str:
        """Write a named ACL policy and mint a token bound to it.

        Returns:
            The new client token.

        Raises:
            AuthSetupError: If the policy write or token creation fails.
        """
        headers = self._headers(session)
        try:
            response = self.http_client.put(
                f"{session.address}/v1/sys/policies/acl/{policy_name}",
                headers=headers,
                json={"policy": policy_document},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise AuthSetupError(f"Failed to apply policy '{policy_name}': {e}") from e

        try:
            response = self.http_client.post(
                f"{session.address}/v1/auth/token/create",
                headers=headers,
                json={"policies": [policy_name]},
            )
            response.raise_for_status()
            token = response.json()["auth"]["client_token"]
        except httpx.HTTPError as e:
            raise AuthSetupError(f"Failed to create token for policy '{policy_name}': {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise AuthSetupError("Token create response did not contain a client token") from e

        session.policy_name = policy_name
        return token

    def container_logs(self, container_name: str) -> str:
        """Return the tail of the container's output, or "" if unavailable."""
        try:
            container = self.docker_client.containers.get(container_name)
            return container.logs(tail=LOG_TAIL_LINES).decode("utf-8", errors="replace")
        except (NotFound, APIError):
            return ""

    def stop(self, container_name: str) -> None:
        """Force-remove the secret store container.

        Safe to call when the container does not exist.
        """
        try:
            container = self.docker_client.containers.get(container_name)
        except NotFound:
            return
        try:
            container.remove(force=True)
        except NotFound:
            pass

    @staticmethod
    def _headers(session: BackendSession) -> dict[str, str]:
        return {"X-Vault-Token": session.root_token}
