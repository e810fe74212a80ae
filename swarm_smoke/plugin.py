"""Secrets driver plugin lifecycle.

Handles the plugin under test:
- Build (and install) via the project's build script
- Apply driver options while disabled
- Enable / disable
- Teardown
"""

import shlex
import subprocess

import docker
from docker.errors import APIError, NotFound

from swarm_smoke.config import DriverOptions
from swarm_smoke.errors import ActivationError, BuildError, ConfigurationError
from swarm_smoke.models import DriverSession
from swarm_smoke.polling import PollTimeout, poll_until

# Characters of build output kept in a BuildError message
BUILD_OUTPUT_TAIL = 2000


class PluginController:
    """Manages the lifecycle of the secrets driver plugin."""

    def __init__(self, docker_client: docker.DockerClient):
        self.docker_client = docker_client

    def build(self, plugin_name: str, build_command: str, build_dir: str = ".") -> DriverSession:
        """Build and install the plugin, leaving it disabled.

        Any existing installation with the same name is disabled first so
        a rebuild can replace it.

        Raises:
            BuildError: If an existing installation cannot be disabled, the
                        build command fails, or the plugin is not
                        inspectable afterwards.
        """
        self._disable_for_build(plugin_name)

        try:
            subprocess.run(
                shlex.split(build_command),
                cwd=build_dir,
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "")[-BUILD_OUTPUT_TAIL:]
            raise BuildError(f"Build command exited with {e.returncode}: {output.strip()}") from e
        except OSError as e:
            raise BuildError(f"Could not run build command '{build_command}': {e}") from e

        try:
            self.docker_client.plugins.get(plugin_name)
        except NotFound as e:
            raise BuildError(f"Plugin build failed: {plugin_name} is not installed") from e

        self._disable_for_build(plugin_name)
        return DriverSession(plugin_name=plugin_name, enabled=False)

    def configure(self, session: DriverSession, options: DriverOptions) -> None:
        """Apply the full option set in a single call.

        Raises:
            ConfigurationError: If the plugin is enabled or missing, an
                                option is invalid or not declared by the
                                plugin, or the daemon rejects the settings.
        """
        options.validate()

        try:
            plugin = self.docker_client.plugins.get(session.plugin_name)
        except NotFound as e:
            raise ConfigurationError(f"Plugin {session.plugin_name} is not installed") from e

        plugin.reload()
        if plugin.enabled:
            raise ConfigurationError(f"Plugin {session.plugin_name} must be disabled before configuring")

        settings = options.to_settings()
        declared = {env["Name"] for env in plugin.attrs.get("Config", {}).get("Env") or []}
        if declared:
            undeclared = sorted(set(settings) - declared)
            if undeclared:
                raise ConfigurationError(
                    f"Plugin {session.plugin_name} does not declare option(s): {', '.join(undeclared)}"
                )

        try:
            plugin.configure(settings)
        except APIError as e:
            raise ConfigurationError(f"Plugin rejected settings: {e.explanation or e}") from e

        session.options = options

    def enable(self, session: DriverSession, timeout: float = 30.0, interval: float = 1.0) -> None:
        """Enable the plugin and wait until the daemon reports it enabled.

        Raises:
            ActivationError: If the plugin is already enabled, fails to
                             start, or is not enabled within timeout.
        """
        if session.enabled:
            raise ActivationError(f"Plugin {session.plugin_name} is already enabled")

        try:
            plugin = self.docker_client.plugins.get(session.plugin_name)
            plugin.enable(timeout=int(timeout))
        except (APIError, NotFound) as e:
            raise ActivationError(f"Failed to enable {session.plugin_name}: {e}") from e

        try:
            poll_until(
                lambda: self._is_enabled(session.plugin_name),
                timeout=timeout,
                interval=interval,
                transient=lambda e: isinstance(e, APIError),
                description=f"{session.plugin_name} activation",
            )
        except PollTimeout as e:
            raise ActivationError(f"Plugin {session.plugin_name} did not start within {timeout:.0f}s") from e

        session.enabled = True

    def disable(self, session: DriverSession) -> None:
        """Disable the plugin. Missing or already disabled is not an error."""
        self._force_disable(session.plugin_name)
        session.enabled = False

    def teardown(self, plugin_name: str) -> None:
        """Disable (best-effort) and remove the plugin.

        Safe to call when the plugin is absent.
        """
        try:
            plugin = self.docker_client.plugins.get(plugin_name)
        except NotFound:
            return

        try:
            plugin.disable(force=True)
        except APIError:
            # Already disabled
            pass

        try:
            plugin.remove(force=True)
        except NotFound:
            pass

    def _is_enabled(self, plugin_name: str) -> bool:
        plugin = self.docker_client.plugins.get(plugin_name)
        return bool(plugin.enabled)

    def _disable_for_build(self, plugin_name: str) -> None:
        try:
            self._force_disable(plugin_name)
        except APIError as e:
            raise BuildError(f"Could not disable existing {plugin_name}: {e.explanation or e}") from e

    def _force_disable(self, plugin_name: str) -> None:
        try:
            plugin = self.docker_client.plugins.get(plugin_name)
        except NotFound:
            return
        if plugin.enabled:
            plugin.disable(force=True)
