"""Bounded fixed-interval polling.

None of the systems the harness observes (Docker Engine, the Swarm
scheduler, the secret store) push readiness notifications, so every wait
is a poll loop with:

- a fixed sleep interval between probes
- a single overall timeout measured from the first probe
- an explicit PollTimeout distinct from the probe's own errors

Poll sites and their defaults (seconds, interval/timeout):

- backend readiness:       1/20 (Vault), 2/30 (OpenBao)
- plugin activation:       1/30
- deployment convergence:  1/60
- secret verification:     1/20 (baseline), 1/60 (rotation)
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

# HTTP status codes a secret store returns while still starting up
# (sealed, standby or not yet initialized)
TRANSIENT_STATUS_CODES = {429, 472, 473, 500, 501, 502, 503, 504}


class PollTimeout(Exception):
    """Raised when a probe never satisfied its predicate in time."""

    def __init__(
        self,
        message: str,
        attempts: int,
        elapsed: float,
        last_value: Any = None,
        last_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_value = last_value
        self.last_error = last_error


@dataclass
class PollResult:
    """Value returned by the probe call that satisfied the predicate."""

    value: Any
    attempts: int
    elapsed: float


def is_transient_error(error: Exception) -> bool:
    """Determine if a probe error means "not ready yet".

    Args:
        error: The exception raised by the probe.

    Returns:
        True for connection-level failures and startup status codes,
        False for anything that will not resolve by waiting.
    """
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.RemoteProtocolError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES

    return False


def poll_until(
    probe: Callable[[], Any],
    timeout: float,
    interval: float,
    predicate: Callable[[Any], bool] = bool,
    transient: Callable[[Exception], bool] = is_transient_error,
    description: str = "condition",
    max_attempts: Optional[int] = None,
) -> PollResult:
    """Call probe at a fixed interval until predicate(value) holds.

    The loop never sleeps past the deadline, so it returns or raises
    within ``timeout + interval`` plus the cost of the final probe.

    Args:
        probe: Zero-argument callable returning the observed value.
        timeout: Overall time budget in seconds.
        interval: Sleep between probes in seconds.
        predicate: Success test applied to each observed value.
        transient: Classifies probe exceptions; True means keep polling,
                   False re-raises immediately.
        description: Used in the timeout message.
        max_attempts: Optional cap on probe calls; reaching it ends the
                      loop like the deadline does.

    Returns:
        PollResult for the first satisfying value.

    Raises:
        PollTimeout: If the deadline or the attempt cap is reached
                     first. Carries the last value and the last
                     transient error seen.
    """
    start = time.monotonic()
    attempts = 0
    last_value: Any = None
    last_error: Optional[Exception] = None

    while True:
        attempts += 1
        try:
            value = probe()
        except Exception as e:
            if not transient(e):
                raise
            last_error = e
        else:
            last_value = value
            if predicate(value):
                return PollResult(value=value, attempts=attempts, elapsed=time.monotonic() - start)

        elapsed = time.monotonic() - start
        if elapsed >= timeout or (max_attempts is not None and attempts >= max_attempts):
            raise PollTimeout(
                f"Timed out after {elapsed:.1f}s waiting for {description} ({attempts} attempts)",
                attempts=attempts,
                elapsed=elapsed,
                last_value=last_value,
                last_error=last_error,
            )

        time.sleep(min(interval, timeout - elapsed))
