"""Tests for polling module."""

from unittest.mock import MagicMock

import httpx
import pytest

from swarm_smoke.polling import (
    PollTimeout,
    is_transient_error,
    poll_until,
)


def status_error(code: int) -> httpx.HTTPStatusError:
    response = MagicMock()
    response.status_code = code
    return httpx.HTTPStatusError("status", request=MagicMock(), response=response)


class TestIsTransientError:
    """Tests for error classification."""

    def test_connect_error_is_transient(self):
        """Connection refused while the server boots should keep polling."""
        assert is_transient_error(httpx.ConnectError("Connection refused")) is True

    def test_read_timeout_is_transient(self):
        """Read timeout should keep polling."""
        assert is_transient_error(httpx.ReadTimeout("Read timed out")) is True

    def test_sealed_503_is_transient(self):
        """HTTP 503 (sealed) should keep polling."""
        assert is_transient_error(status_error(503)) is True

    def test_standby_429_is_transient(self):
        """HTTP 429 (standby) should keep polling."""
        assert is_transient_error(status_error(429)) is True

    def test_http_403_is_not_transient(self):
        """HTTP 403 will not resolve by waiting."""
        assert is_transient_error(status_error(403)) is False

    def test_generic_exception_is_not_transient(self):
        """Unknown errors should propagate."""
        assert is_transient_error(ValueError("boom")) is False


class TestPollUntil:
    """Tests for the bounded polling loop."""

    def test_returns_first_matching_value(self, fake_clock):
        """Should stop as soon as the predicate holds."""
        probe = MagicMock(side_effect=[1, 2, 3, 4])

        result = poll_until(probe, timeout=10, interval=1, predicate=lambda v: v >= 3)

        assert result.value == 3
        assert result.attempts == 3
        assert probe.call_count == 3
        assert fake_clock.sleeps == [1, 1]

    def test_immediate_success_does_not_sleep(self, fake_clock):
        """A ready system should not be waited on."""
        result = poll_until(lambda: True, timeout=5, interval=1)

        assert result.attempts == 1
        assert fake_clock.sleeps == []

    def test_transient_errors_keep_polling(self, fake_clock):
        """Transient probe errors count as "not yet"."""
        probe = MagicMock(side_effect=[httpx.ConnectError("refused"), httpx.ConnectError("refused"), True])

        result = poll_until(probe, timeout=10, interval=2)

        assert result.value is True
        assert fake_clock.sleeps == [2, 2]

    def test_permanent_error_raises_immediately(self, fake_clock):
        """Non-transient probe errors are re-raised without retrying."""
        probe = MagicMock(side_effect=ValueError("broken"))

        with pytest.raises(ValueError):
            poll_until(probe, timeout=10, interval=1)

        assert probe.call_count == 1

    def test_timeout_raises_poll_timeout(self, fake_clock):
        """Should raise PollTimeout carrying the last observed value."""
        with pytest.raises(PollTimeout) as exc_info:
            poll_until(lambda: "old", timeout=5, interval=1, predicate=lambda v: v == "new")

        assert exc_info.value.last_value == "old"
        assert exc_info.value.attempts == 6

    def test_timeout_records_last_transient_error(self, fake_clock):
        """PollTimeout should keep the last swallowed error."""
        error = httpx.ConnectError("refused")

        with pytest.raises(PollTimeout) as exc_info:
            poll_until(MagicMock(side_effect=error), timeout=3, interval=1)

        assert exc_info.value.last_error is error
        assert exc_info.value.last_value is None

    @pytest.mark.parametrize("timeout,interval", [(20, 1), (30, 2), (5, 3), (7.5, 2)])
    def test_never_exceeds_timeout_plus_interval(self, fake_clock, timeout, interval):
        """Total wait is bounded by timeout + interval."""
        with pytest.raises(PollTimeout):
            poll_until(lambda: False, timeout=timeout, interval=interval)

        assert fake_clock.now <= timeout + interval
        assert fake_clock.now >= timeout

    def test_slow_probe_still_bounded(self, fake_clock):
        """Probe time counts against the timeout."""

        def slow_probe():
            fake_clock.advance(0.5)
            return False

        with pytest.raises(PollTimeout):
            poll_until(slow_probe, timeout=10, interval=1)

        assert fake_clock.now <= 10 + 1 + 0.5

    def test_custom_transient_classifier(self, fake_clock):
        """Callers can widen what counts as "not yet"."""
        probe = MagicMock(side_effect=[KeyError("missing"), "ok"])

        result = poll_until(probe, timeout=5, interval=1, transient=lambda e: isinstance(e, KeyError))

        assert result.value == "ok"

    def test_attempt_cap_ends_loop_before_deadline(self, fake_clock):
        """Should stop after max_attempts calls even with time left."""
        check = MagicMock(return_value=False)

        with pytest.raises(PollTimeout) as exc_info:
            poll_until(check, timeout=100, interval=1, max_attempts=3)

        assert exc_info.value.attempts == 3
        assert check.call_count == 3
        assert fake_clock.now < 100

    def test_attempt_cap_still_returns_match(self, fake_clock):
        """Should return a match found on the last allowed attempt."""
        check = MagicMock(side_effect=["old", "old", "new"])

        result = poll_until(check, timeout=100, interval=1, predicate=lambda v: v == "new", max_attempts=3)

        assert result.value == "new"
        assert result.attempts == 3
