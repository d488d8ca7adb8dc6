"""Unit tests for the circuit breaker state machine.

Transitions are driven with a fake clock, so no test sleeps.

Run with: pytest backend/tests/unit/test_circuit_breaker.py -v
"""

import asyncio

import pytest

from licsync.errors import CircuitOpenError, NetworkError, ValidationError
from licsync.reliability import CircuitBreaker, CircuitState, HalfOpen


async def succeed():
    return "ok"


async def fail():
    raise NetworkError("connection refused")


async def reject_payload():
    raise ValidationError("bad payload")


@pytest.fixture
def breaker(fake_clock) -> CircuitBreaker:
    return CircuitBreaker(
        name="test_api", failure_threshold=3, reset_timeout=30.0, clock=fake_clock
    )


async def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.failure_threshold):
        with pytest.raises(NetworkError):
            await breaker.call(fail)


class TestClosedState:
    """Tests for the closed state."""

    @pytest.mark.asyncio
    async def test_passes_calls_through(self, breaker):
        """Test that a closed breaker returns the call's result."""
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.successful_calls == 1

    @pytest.mark.asyncio
    async def test_counts_consecutive_failures(self, breaker):
        """Test that failures below the threshold keep the breaker closed."""
        for _ in range(2):
            with pytest.raises(NetworkError):
                await breaker.call(fail)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        """Test that a success clears earlier failures."""
        with pytest.raises(NetworkError):
            await breaker.call(fail)
        await breaker.call(succeed)

        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        """Test that the threshold-th consecutive failure opens the breaker."""
        await trip(breaker)

        assert breaker.state == CircuitState.OPEN
        assert breaker.metrics.state_changes == 1

    @pytest.mark.asyncio
    async def test_validation_errors_do_not_count(self, breaker):
        """Test that a rejected payload is not held against the dependency."""
        for _ in range(5):
            with pytest.raises(ValidationError):
                await breaker.call(reject_payload)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestOpenState:
    """Tests for the open state."""

    @pytest.mark.asyncio
    async def test_fails_fast_without_calling(self, breaker):
        """Test that an open breaker rejects calls without running them."""
        await trip(breaker)
        calls = []

        async def tracked():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(tracked)

        assert calls == []
        assert exc_info.value.retry_in == pytest.approx(30.0)
        assert breaker.metrics.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_reports_half_open_after_cooldown(self, breaker, fake_clock):
        """Test that the state reads half-open once the cool-down elapsed."""
        await trip(breaker)
        fake_clock.advance(29.9)
        assert breaker.state == CircuitState.OPEN

        fake_clock.advance(0.1)
        assert breaker.state == CircuitState.HALF_OPEN


class TestHalfOpenState:
    """Tests for the single recovery probe."""

    @pytest.mark.asyncio
    async def test_successful_probe_closes(self, breaker, fake_clock):
        """Test that a successful probe closes the breaker."""
        await trip(breaker)
        fake_clock.advance(30.0)

        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_probe_reopens_with_fresh_cooldown(self, breaker, fake_clock):
        """Test that a failed probe reopens and restarts the cool-down."""
        await trip(breaker)
        fake_clock.advance(30.0)

        with pytest.raises(NetworkError):
            await breaker.call(fail)

        assert breaker.state == CircuitState.OPEN
        fake_clock.advance(29.0)
        assert breaker.state == CircuitState.OPEN
        fake_clock.advance(1.0)
        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_admits_exactly_one_probe(self, breaker, fake_clock):
        """Test that a second call is rejected while the probe is in flight."""
        await trip(breaker)
        fake_clock.advance(30.0)
        second_call = None

        async def probe():
            nonlocal second_call
            try:
                await breaker.call(succeed)
            except CircuitOpenError as e:
                second_call = e
            return "probe"

        assert await breaker.call(probe) == "probe"
        assert isinstance(second_call, CircuitOpenError)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_validation_error_releases_probe(self, breaker, fake_clock):
        """Test that a probe answered with a bad payload lets the next probe through."""
        await trip(breaker)
        fake_clock.advance(30.0)

        with pytest.raises(ValidationError):
            await breaker.call(reject_payload)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker._state == HalfOpen(probe_in_flight=False)
        assert await breaker.call(succeed) == "ok"

    @pytest.mark.asyncio
    async def test_cancelled_probe_releases_slot(self, breaker, fake_clock):
        """Test that a probe cancelled mid-flight does not block later probes."""
        await trip(breaker)
        fake_clock.advance(30.0)

        async def hang():
            await asyncio.sleep(60)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(breaker.call(hang), timeout=0.01)

        assert breaker._state == HalfOpen(probe_in_flight=False)
        assert breaker.metrics.failed_calls == breaker.failure_threshold
        assert await breaker.call(succeed) == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestReset:
    """Tests for forcing the breaker closed."""

    @pytest.mark.asyncio
    async def test_reset_closes_open_breaker(self, breaker):
        """Test that reset() closes an open breaker."""
        await trip(breaker)
        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(succeed) == "ok"
