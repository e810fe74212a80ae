"""Tests for plugin module."""

import subprocess
from unittest.mock import MagicMock, call, patch

import pytest
from docker.errors import APIError, NotFound

from swarm_smoke.config import DriverOptions
from swarm_smoke.errors import ActivationError, BuildError, ConfigurationError
from swarm_smoke.models import BackendKind, DriverSession
from swarm_smoke.plugin import PluginController

PLUGIN = "swarm-external-secrets:latest"

DECLARED_ENV = [
    {"Name": name}
    for name in [
        "SECRETS_PROVIDER",
        "VAULT_ADDR", "VAULT_AUTH_METHOD", "VAULT_TOKEN", "VAULT_MOUNT_PATH", "VAULT_ENABLE_ROTATION",
        "OPENBAO_ADDR", "OPENBAO_AUTH_METHOD", "OPENBAO_TOKEN", "OPENBAO_MOUNT_PATH",
        "ENABLE_ROTATION", "ROTATION_INTERVAL", "ENABLE_MONITORING",
    ]
]


@pytest.fixture
def plugin():
    mock = MagicMock()
    mock.enabled = False
    mock.attrs = {"Config": {"Env": DECLARED_ENV}}
    return mock


@pytest.fixture
def docker_client(plugin):
    client = MagicMock()
    client.plugins.get.return_value = plugin
    return client


@pytest.fixture
def controller(docker_client):
    return PluginController(docker_client)


@pytest.fixture
def options():
    return DriverOptions(
        backend=BackendKind.OPENBAO,
        address="http://127.0.0.1:8200",
        token="s.scoped",
        enable_rotation=True,
    )


class TestBuild:
    """Tests for building the plugin."""

    def test_build_runs_command_and_returns_disabled_session(self, controller):
        """Should run the build command and leave the plugin disabled."""
        with patch("swarm_smoke.plugin.subprocess.run") as mock_run:
            session = controller.build(PLUGIN, "./scripts/build.sh --quiet", "/src")

        args, kwargs = mock_run.call_args
        assert args == (["./scripts/build.sh", "--quiet"],)
        assert kwargs["cwd"] == "/src"
        assert kwargs["check"] is True
        assert session.plugin_name == PLUGIN
        assert session.enabled is False

    def test_existing_enabled_plugin_is_disabled_first(self, controller, plugin):
        """A rebuild must not collide with a running installation."""
        plugin.enabled = True

        with patch("swarm_smoke.plugin.subprocess.run"):
            controller.build(PLUGIN, "./scripts/build.sh")

        plugin.disable.assert_called_with(force=True)

    def test_busy_existing_plugin_raises_build_error(self, controller, plugin):
        """Should raise BuildError when the old installation cannot be disabled."""
        plugin.enabled = True
        plugin.disable.side_effect = APIError("plugin is in use")

        with patch("swarm_smoke.plugin.subprocess.run") as mock_run:
            with pytest.raises(BuildError) as exc_info:
                controller.build(PLUGIN, "./scripts/build.sh")

        assert "plugin is in use" in str(exc_info.value)
        mock_run.assert_not_called()

    def test_failing_command_raises_build_error(self, controller):
        """Should raise BuildError with the build output."""
        error = subprocess.CalledProcessError(2, ["make"], stderr="go: build failed")

        with patch("swarm_smoke.plugin.subprocess.run", side_effect=error):
            with pytest.raises(BuildError) as exc_info:
                controller.build(PLUGIN, "make")

        assert "go: build failed" in str(exc_info.value)

    def test_missing_command_raises_build_error(self, controller):
        """Should raise BuildError when the command cannot be run."""
        with patch("swarm_smoke.plugin.subprocess.run", side_effect=FileNotFoundError("nope")):
            with pytest.raises(BuildError):
                controller.build(PLUGIN, "./missing.sh")

    def test_plugin_not_installed_raises_build_error(self, controller, docker_client):
        """The build must leave an inspectable plugin behind."""
        docker_client.plugins.get.side_effect = NotFound("no such plugin")

        with patch("swarm_smoke.plugin.subprocess.run"):
            with pytest.raises(BuildError) as exc_info:
                controller.build(PLUGIN, "./scripts/build.sh")

        assert "Plugin build failed" in str(exc_info.value)


class TestConfigure:
    """Tests for applying driver options."""

    def test_applies_settings_in_one_call(self, controller, plugin, options):
        """Should apply all settings in a single configure call."""
        session = DriverSession(plugin_name=PLUGIN)

        controller.configure(session, options)

        plugin.configure.assert_called_once_with(options.to_settings())
        assert session.options is options

    def test_enabled_plugin_is_rejected(self, controller, plugin, options):
        """Should refuse to configure an enabled plugin."""
        plugin.enabled = True

        with pytest.raises(ConfigurationError):
            controller.configure(DriverSession(plugin_name=PLUGIN), options)

        plugin.configure.assert_not_called()

    def test_undeclared_option_is_rejected(self, controller, plugin, options):
        """Settings the plugin does not declare are not silently accepted."""
        plugin.attrs = {"Config": {"Env": [{"Name": "SECRETS_PROVIDER"}]}}

        with pytest.raises(ConfigurationError) as exc_info:
            controller.configure(DriverSession(plugin_name=PLUGIN), options)

        assert "OPENBAO_ADDR" in str(exc_info.value)
        plugin.configure.assert_not_called()

    def test_invalid_options_are_rejected(self, controller, plugin):
        """Should validate options before touching the plugin."""
        bad = DriverOptions(backend=BackendKind.VAULT, address="http://x", token="t", rotation_interval="soon")

        with pytest.raises(ConfigurationError):
            controller.configure(DriverSession(plugin_name=PLUGIN), bad)

        plugin.configure.assert_not_called()

    def test_daemon_rejection_raises(self, controller, plugin, options):
        """Should raise ConfigurationError when the daemon rejects the settings."""
        plugin.configure.side_effect = APIError("plugin is enabled")

        with pytest.raises(ConfigurationError):
            controller.configure(DriverSession(plugin_name=PLUGIN), options)

    def test_missing_plugin_raises(self, controller, docker_client, options):
        """Should raise ConfigurationError for a plugin that is not installed."""
        docker_client.plugins.get.side_effect = NotFound("missing")

        with pytest.raises(ConfigurationError):
            controller.configure(DriverSession(plugin_name=PLUGIN), options)


class TestEnable:
    """Tests for plugin activation."""

    def test_enable_waits_for_enabled_state(self, controller, plugin, fake_clock):
        """Should enable the plugin and wait for the enabled state."""
        plugin.enable.side_effect = lambda timeout: setattr(plugin, "enabled", True)
        session = DriverSession(plugin_name=PLUGIN)

        controller.enable(session, timeout=30)

        plugin.enable.assert_called_once_with(timeout=30)
        assert session.enabled is True

    def test_enable_twice_raises(self, controller):
        """Should refuse to enable an already enabled session."""
        session = DriverSession(plugin_name=PLUGIN, enabled=True)

        with pytest.raises(ActivationError):
            controller.enable(session)

    def test_enable_failure_raises(self, controller, plugin):
        """Should raise ActivationError when enabling fails."""
        plugin.enable.side_effect = APIError("dial unix: connection refused")

        with pytest.raises(ActivationError):
            controller.enable(DriverSession(plugin_name=PLUGIN))

    def test_never_enabled_times_out(self, controller, plugin, fake_clock):
        """Should raise ActivationError within the activation timeout."""
        plugin.enabled = False
        session = DriverSession(plugin_name=PLUGIN)

        with pytest.raises(ActivationError):
            controller.enable(session, timeout=5, interval=1)

        assert session.enabled is False
        assert fake_clock.now <= 6


class TestDisableAndTeardown:
    """Tests for disable and idempotent teardown."""

    def test_disable(self, controller, plugin):
        """Should force-disable the plugin and update the session."""
        plugin.enabled = True
        session = DriverSession(plugin_name=PLUGIN, enabled=True)

        controller.disable(session)

        plugin.disable.assert_called_once_with(force=True)
        assert session.enabled is False

    def test_teardown_disables_then_removes(self, controller, plugin):
        """Should disable before removing."""
        controller.teardown(PLUGIN)

        assert plugin.method_calls[:2] == [call.disable(force=True), call.remove(force=True)]

    def test_teardown_ignores_already_disabled(self, controller, plugin):
        """Should still remove a plugin that is already disabled."""
        plugin.disable.side_effect = APIError("plugin is already disabled")

        controller.teardown(PLUGIN)

        plugin.remove.assert_called_once_with(force=True)

    def test_teardown_absent_plugin(self, controller, docker_client):
        """Should do nothing when the plugin is gone."""
        docker_client.plugins.get.side_effect = NotFound("no such plugin")

        controller.teardown(PLUGIN)
        controller.teardown(PLUGIN)
