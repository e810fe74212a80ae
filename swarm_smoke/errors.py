"""Exception taxonomy for the smoke tester.

Every stage either returns normally or raises one of the SmokeTestError
subclasses below. All of them are terminal for the scenario: retrying only
happens inside a stage's own polling loop.
"""

from typing import Optional


class SmokeTestError(Exception):
    """Base class for stage failures."""

    pass


class ProvisionError(SmokeTestError):
    """The secret store container could not be created."""

    pass


class ReadinessTimeout(SmokeTestError):
    """The secret store did not report healthy before the timeout."""

    def __init__(self, message: str, logs: str = ""):
        super().__init__(message)
        self.logs = logs


class WriteError(SmokeTestError):
    """A key/value write or read against the secret store failed."""

    pass


class AuthSetupError(SmokeTestError):
    """Applying the scoped policy or minting its token failed."""

    pass


class BuildError(SmokeTestError):
    """The driver plugin was not installed by the build step."""

    pass


class ConfigurationError(SmokeTestError):
    """Driver options were rejected."""

    pass


class ActivationError(SmokeTestError):
    """The driver plugin did not reach the enabled state."""

    pass


class ConvergenceTimeout(SmokeTestError):
    """The deployment did not reach its desired running replica count."""

    def __init__(self, message: str, task_states: Optional[list[str]] = None):
        super().__init__(message)
        self.task_states = task_states or []


class VerificationTimeout(SmokeTestError):
    """The delivered secret never matched the expected value."""

    def __init__(
        self,
        message: str,
        expected: bytes,
        last_observed: Optional[bytes] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.expected = expected
        self.last_observed = last_observed
        self.attempts = attempts


class TaskUnavailable(Exception):
    """No running task/container currently backs a service.

    Raised by the deployment observability helpers; polling loops treat it
    as "not yet" rather than as a stage failure.
    """

    pass
