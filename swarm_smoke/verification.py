"""Verification of delivered secret content.

The oracle is the exact bytes the driver delivered into the task's
secret file. Comparison is byte-for-byte with no normalization, so a
value that differs only by a trailing newline is a mismatch.
"""

import time
from typing import Optional, Union

from swarm_smoke.backend import BackendProvisioner
from swarm_smoke.deployment import DeploymentController
from swarm_smoke.errors import TaskUnavailable, VerificationTimeout
from swarm_smoke.models import BackendSession, DeploymentHandle, VerificationOutcome
from swarm_smoke.polling import PollTimeout, poll_until

SECRETS_DIR = "/run/secrets"


def _as_bytes(value: Union[str, bytes]) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


class Verifier:
    """Polls a running service for its secret and drives rotation checks."""

    def __init__(self, deployments: DeploymentController, backend: BackendProvisioner):
        """Initialize the verifier.

        Args:
            deployments: Used to read files from the current task
            backend: Used to rewrite the value during rotation
        """
        self.deployments = deployments
        self.backend = backend

    def verify_value(
        self,
        handle: DeploymentHandle,
        secret_name: str,
        expected: Union[str, bytes],
        timeout: float,
        interval: float = 1.0,
        service: Optional[str] = None,
    ) -> VerificationOutcome:
        """Wait until the delivered secret equals expected.

        Args:
            handle: The deployment to observe.
            secret_name: Name of the secret file under /run/secrets.
            expected: Exact expected content.
            timeout: Overall time budget in seconds.
            interval: Seconds between reads.
            service: Logical service name (defaults to the handle's only
                     service).

        Returns:
            The passing VerificationOutcome.

        Raises:
            VerificationTimeout: If no read matched in time. Carries the
                                 last observed content.
        """
        expected_bytes = _as_bytes(expected)
        # One read per interval of the budget
        max_attempts = max(1, int(timeout // interval)) if interval > 0 else None
        service = service or next(iter(handle.service_names))
        path = f"{SECRETS_DIR}/{secret_name}"
        start = time.monotonic()

        def attempt() -> VerificationOutcome:
            observed = self.deployments.read_file_from_task(handle, service, path)
            return VerificationOutcome(
                observed=observed,
                elapsed=time.monotonic() - start,
                passed=observed == expected_bytes,
            )

        try:
            result = poll_until(
                attempt,
                timeout=timeout,
                interval=interval,
                predicate=lambda outcome: outcome.passed,
                transient=lambda e: isinstance(e, TaskUnavailable),
                description=f"{path} to match",
                max_attempts=max_attempts,
            )
        except PollTimeout as e:
            last = e.last_value.observed if e.last_value is not None else None
            raise VerificationTimeout(
                f"Secret {secret_name} did not match within {timeout:.0f}s: "
                f"expected {expected_bytes!r}, got {last!r}",
                expected=expected_bytes,
                last_observed=last,
                attempts=e.attempts,
            ) from e

        outcome = result.value
        outcome.attempts = result.attempts
        return outcome

    def run_rotation_scenario(
        self,
        session: BackendSession,
        handle: DeploymentHandle,
        secret_name: str,
        secret_path: str,
        secret_field: str,
        old_value: str,
        new_value: str,
        rotation_interval: float,
        verify_timeout: float,
        settle: float = 0.0,
        interval: float = 1.0,
    ) -> VerificationOutcome:
        """Rewrite the backend value and wait for the driver to deliver it.

        The driver is never signalled: after the write the harness only
        waits for at least one rotation interval and then asserts eventual
        convergence on the new value.

        Raises:
            ValueError: If new_value equals old_value.
            WriteError: If the backend rewrite fails.
            VerificationTimeout: If the new value is not observed in time.
        """
        if new_value == old_value:
            raise ValueError("Rotated value must differ from the current value")

        self.backend.write_secret(session, secret_path, secret_field, new_value)
        return self.await_rotation(
            handle, secret_name, new_value, rotation_interval, verify_timeout, settle, interval
        )

    def await_rotation(
        self,
        handle: DeploymentHandle,
        secret_name: str,
        new_value: str,
        rotation_interval: float,
        verify_timeout: float,
        settle: float = 0.0,
        interval: float = 1.0,
    ) -> VerificationOutcome:
        """Sleep past the rotation interval, then verify the new value.

        Observing the old value during the sleep is expected and not checked.
        """
        time.sleep(max(rotation_interval, settle))
        return self.verify_value(handle, secret_name, new_value, verify_timeout, interval)
