"""
Resilience tests: async retry with backoff, cooperative cancellation,
and the process-wide client cache.

Run specific test categories:
    pytest -m resilience                    # All resilience tests
    pytest -m "resilience and unit"         # Unit tests only
"""

import asyncio
import signal
from unittest.mock import Mock

import pytest
import requests

from core.cancellation import (
    CancellationRegistry,
    CancellationToken,
    OperationCancelledException,
    restore_default_handler,
    setup_cancellation_handler,
)
from core.client_cache import ClientCache
from core.dataverse_client import DataverseAPIError, DataverseConfig, TransientAPIError
from core.deployment.retry import (
    is_batch_retryable,
    is_retryable,
    is_retryable_after_client,
    retry_with_backoff,
)


def failing(errors, value="ok"):
    """Async operation raising each error in turn, then returning ``value``."""
    pending = list(errors)
    calls = []

    async def operation():
        calls.append(1)
        if pending:
            raise pending.pop(0)
        return value

    operation.calls = calls
    return operation


def recording_sleep():
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep


# =============================================================================
# RETRY TESTS
# =============================================================================

@pytest.mark.resilience
@pytest.mark.unit
class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_succeeds_first_time(self):
        sleep = recording_sleep()
        operation = failing([])
        assert asyncio.run(retry_with_backoff(operation, sleep=sleep)) == "ok"
        assert len(operation.calls) == 1
        assert sleep.delays == []

    def test_retries_transient_errors(self):
        """Retryable failures are retried with exponential, capped delays."""
        sleep = recording_sleep()
        operation = failing([TransientAPIError(503)] * 3)
        result = asyncio.run(retry_with_backoff(
            operation, max_attempts=4, base_delay=1, max_delay=3, jitter=0, sleep=sleep,
        ))

        assert result == "ok"
        assert len(operation.calls) == 4
        assert sleep.delays == [1, 2, 3]

    def test_fatal_error_not_retried(self):
        operation = failing([DataverseAPIError(400, "0x80048403", "Bad request")])
        with pytest.raises(DataverseAPIError, match="Bad request"):
            asyncio.run(retry_with_backoff(operation, sleep=recording_sleep()))
        assert len(operation.calls) == 1

    def test_exhausted_reraises_last_error(self):
        """The last exception propagates unchanged after the final attempt."""
        last = TransientAPIError(429, message="Throttled again")
        operation = failing([TransientAPIError(429), TransientAPIError(429), last])
        with pytest.raises(TransientAPIError) as exc_info:
            asyncio.run(retry_with_backoff(operation, max_attempts=3, jitter=0, sleep=recording_sleep()))
        assert exc_info.value is last

    def test_custom_predicate(self):
        operation = failing([KeyError("a")])
        result = asyncio.run(retry_with_backoff(
            operation, retry_on=lambda e: isinstance(e, KeyError), jitter=0, sleep=recording_sleep(),
        ))
        assert result == "ok"

    def test_jitter_bounds(self):
        sleep = recording_sleep()
        asyncio.run(retry_with_backoff(
            failing([TransientAPIError(503)]), base_delay=2, max_delay=10, jitter=0.5, sleep=sleep,
        ))
        assert 2 <= sleep.delays[0] <= 2.5

    def test_exponential_delays_capped(self):
        sleep = recording_sleep()
        asyncio.run(retry_with_backoff(
            failing([DataverseAPIError(502, "BadGateway", "Bad gateway")] * 5),
            max_attempts=6, base_delay=1, max_delay=8, jitter=0, sleep=sleep,
        ))
        assert sleep.delays == [1, 2, 4, 8, 8]

    @pytest.mark.parametrize("error,expected", [
        (TransientAPIError(429), True),
        (requests.exceptions.ConnectionError(), True),
        (DataverseAPIError(502, "BadGateway", "Bad gateway"), True),
        (DataverseAPIError(400, "0x80071151", "Solution locked"), True),
        (DataverseAPIError(400, "0x80048403", "Invalid attribute"), False),
        (ValueError("boom"), False),
    ])
    def test_is_retryable(self, error, expected):
        assert is_retryable(error) is expected

    @pytest.mark.parametrize("error,expected", [
        (TransientAPIError(429), False),
        (TransientAPIError(408, retry_after=None, error_code="RequestTimeout"), False),
        (DataverseAPIError(503, "Unknown", "Service unavailable"), True),
        (DataverseAPIError(400, "0x80071151", "Solution locked"), True),
        (DataverseAPIError(400, "0x80048403", "Invalid attribute"), False),
    ])
    def test_is_retryable_after_client(self, error, expected):
        """Transient errors already retried by the client are not retried again."""
        assert is_retryable_after_client(error) is expected

    @pytest.mark.parametrize("error,expected", [
        (DataverseAPIError(400, "0x80048403", "Invalid attribute"), True),
        (TransientAPIError(503), False),
        (ValueError("boom"), False),
    ])
    def test_is_batch_retryable(self, error, expected):
        assert is_batch_retryable(error) is expected


# =============================================================================
# CANCELLATION TESTS
# =============================================================================

@pytest.mark.resilience
@pytest.mark.unit
class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        assert token.cancel_reason is None
        token.throw_if_cancelled("anything")

    def test_cancel(self):
        token = CancellationToken()
        token.cancel("Stop now")
        assert token.is_cancelled()
        with pytest.raises(OperationCancelledException) as exc_info:
            token.throw_if_cancelled("entities")
        assert exc_info.value.message == "Stop now"
        assert exc_info.value.operation == "entities"
        assert str(exc_info.value) == "Stop now (entities)"

    def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancel_reason == "first"

    def test_callbacks_run_once(self):
        """Callbacks fire on the first cancel only; failing callbacks are contained."""
        token = CancellationToken()
        seen = []
        token.register_callback(lambda: seen.append("a"))
        token.register_callback(Mock(side_effect=RuntimeError("broken")))
        token.register_callback(lambda: seen.append("b"))

        token.cancel()
        token.cancel()
        assert seen == ["a", "b"]

    def test_unregister_callback(self):
        token = CancellationToken()
        callback = Mock()
        token.register_callback(callback)
        assert token.unregister_callback(callback) is True
        assert token.unregister_callback(callback) is False
        token.cancel()
        callback.assert_not_called()

    def test_wait(self):
        token = CancellationToken()
        assert token.wait(0.01) is False
        token.cancel()
        assert token.wait(0.01) is True


@pytest.mark.resilience
@pytest.mark.unit
class TestCancellationRegistry:
    """Tests for CancellationRegistry."""

    def test_register_is_idempotent(self):
        registry = CancellationRegistry()
        assert registry.register("deploy_1_a") is registry.register("deploy_1_a")
        assert registry.get("deploy_1_a") is not None
        assert registry.get("deploy_1_b") is None

    def test_cancel(self):
        registry = CancellationRegistry()
        token = registry.register("deploy_1_a")
        assert registry.cancel("deploy_1_a") is True
        assert token.cancel_reason == "Deployment cancelled"

    def test_cancel_unknown(self):
        assert CancellationRegistry().cancel("deploy_1_missing") is False

    def test_active_and_unregister(self):
        registry = CancellationRegistry()
        registry.register("deploy_1_a")
        registry.register("deploy_1_b")
        registry.cancel("deploy_1_b")
        assert registry.active() == ["deploy_1_a"]

        registry.unregister("deploy_1_a")
        assert registry.get("deploy_1_a") is None


@pytest.mark.resilience
@pytest.mark.integration
class TestSignalHandling:
    """Tests for the SIGINT handler."""

    def test_interrupt_cancels_token(self):
        token = CancellationToken()
        setup_cancellation_handler(token)
        try:
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            assert token.is_cancelled()
            assert token.cancel_reason == "Interrupted by user"
        finally:
            restore_default_handler()

    def test_restore(self):
        previous = signal.getsignal(signal.SIGINT)
        setup_cancellation_handler(CancellationToken())
        restore_default_handler()
        assert signal.getsignal(signal.SIGINT) is previous


# =============================================================================
# CLIENT CACHE TESTS
# =============================================================================

@pytest.mark.unit
class TestClientCache:
    """Tests for ClientCache."""

    @pytest.fixture
    def factory(self):
        return Mock(side_effect=lambda config: Mock(config=config))

    @staticmethod
    def config(**overrides):
        values = {
            "server_url": "https://contoso.crm.dynamics.com",
            "tenant_id": "tenant",
            "client_id": "app",
            "client_secret": "secret-1",
        }
        values.update(overrides)
        return DataverseConfig(**values)

    def test_reuses_client(self, factory):
        cache = ClientCache(factory=factory)
        first = cache.get_or_create(self.config())
        assert cache.get_or_create(self.config()) is first
        assert factory.call_count == 1
        assert len(cache) == 1

    def test_changed_secret_rebuilds(self, factory):
        """A different fingerprint replaces the cached client."""
        cache = ClientCache(factory=factory)
        first = cache.get_or_create(self.config())
        second = cache.get_or_create(self.config(client_secret="secret-2"))
        assert second is not first
        assert len(cache) == 1

    def test_separate_environments(self, factory):
        cache = ClientCache(factory=factory)
        cache.get_or_create(self.config())
        cache.get_or_create(self.config(server_url="https://fabrikam.crm.dynamics.com"))
        cache.get_or_create(self.config(client_id="other-app"))
        assert len(cache) == 3

    def test_invalidate_and_clear(self, factory):
        cache = ClientCache(factory=factory)
        cache.get_or_create(self.config())
        assert cache.invalidate(self.config()) is True
        assert cache.invalidate(self.config()) is False

        cache.get_or_create(self.config())
        cache.clear()
        assert len(cache) == 0
