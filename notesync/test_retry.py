"""Unit tests for retry logic with exponential backoff."""

from unittest.mock import AsyncMock, patch

import pytest

from notesync.errors import RecordNotFoundError, TransportError
from notesync.retry import calculate_retry_delay, retry_with_exponential_backoff


class TestRetryDecorator:
    """Test suite for retry_with_exponential_backoff."""

    @pytest.mark.asyncio
    async def test_async_succeeds_after_transient_failures(self):
        """Test that an async function is retried until it succeeds."""
        outcomes = [TransportError("blip"), TransportError("blip"), "ok"]

        @retry_with_exponential_backoff(max_retries=3, initial_delay=1.0)
        async def flaky():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        with patch("notesync.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await flaky()

        assert result == "ok"
        assert outcomes == []
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_async_gives_up_after_max_retries(self):
        """Test that the last exception is raised when all attempts fail."""
        calls = []

        @retry_with_exponential_backoff(max_retries=2, initial_delay=0.0, exceptions=(TransportError,))
        async def always_fails():
            calls.append(1)
            raise TransportError("down")

        with pytest.raises(TransportError, match="down"):
            await always_fails()

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_no_retry_exceptions_raise_immediately(self):
        """Test that excluded subclasses are not retried."""
        calls = []

        @retry_with_exponential_backoff(
            max_retries=3,
            initial_delay=0.0,
            exceptions=(TransportError,),
            no_retry=(RecordNotFoundError,)
        )
        async def missing():
            calls.append(1)
            raise RecordNotFoundError("gone")

        with pytest.raises(RecordNotFoundError):
            await missing()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self):
        """Test that exceptions outside ``exceptions`` are not retried."""
        calls = []

        @retry_with_exponential_backoff(max_retries=3, initial_delay=0.0, exceptions=(TransportError,))
        async def broken():
            calls.append(1)
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await broken()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_delay_is_capped(self):
        """Test that max_delay bounds each wait."""
        outcomes = [OSError(), OSError(), OSError(), "ok"]

        @retry_with_exponential_backoff(max_retries=3, initial_delay=10, max_delay=15)
        async def slow():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        with patch("notesync.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await slow() == "ok"

        assert [c.args[0] for c in sleep.call_args_list] == [10, 15, 15]


class TestCalculateRetryDelay:
    """Tests for queued change backoff."""

    def test_first_attempt(self):
        assert calculate_retry_delay(0) == 1

    def test_doubles(self):
        assert calculate_retry_delay(1) == 2
        assert calculate_retry_delay(2) == 4
        assert calculate_retry_delay(3) == 8

    def test_capped_at_one_minute(self):
        assert calculate_retry_delay(6) == 60
        assert calculate_retry_delay(20) == 60
