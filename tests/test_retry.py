import httpx
import pytest

from resumable_upload.exceptions import CallbackError, ExpiredUrlError, PausedError, TransportError
from resumable_upload.services import CancellationToken, CancelReason, RetryPolicy


class TestDelays:
    def test_first_attempt_is_never_delayed(self):
        assert RetryPolicy().calculate_delay(0) == 0

    def test_exponential_backoff_is_capped(self):
        policy = RetryPolicy(initial_delay_ms=1000, max_delay_ms=5000)

        assert [policy.calculate_delay(n) for n in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]

    def test_constant_delay_without_exponential(self):
        policy = RetryPolicy(initial_delay_ms=250, exponential=False)

        assert [policy.calculate_delay(n) for n in range(1, 4)] == [250, 250, 250]

    def test_delay_table_repeats_last_entry(self):
        policy = RetryPolicy.with_delays([0, 1000, 3000, 5000])

        assert policy.max_retries == 4
        assert policy.calculate_delay(1) == 0
        assert policy.calculate_delay(4) == 5000
        assert policy.calculate_delay(9) == 5000

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"initial_delay_ms": -5},
            {"initial_delay_ms": 2000, "max_delay_ms": 1000},
            {"retry_delays_ms": (0, -1)},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            TransportError("server error", status_code=500),
            httpx.ConnectError("refused"),
            ConnectionResetError(),
            TimeoutError(),
        ],
    )
    def test_retryable(self, error):
        assert RetryPolicy.is_retryable(error)

    @pytest.mark.parametrize(
        "error",
        [
            ExpiredUrlError(),
            TransportError("no etag", retryable=False),
            CallbackError("sign_part", RuntimeError("denied")),
            ValueError("bad"),
        ],
    )
    def test_not_retryable(self, error):
        assert not RetryPolicy.is_retryable(error)


class TestExecute:
    @pytest.fixture
    def policy(self):
        return RetryPolicy(max_retries=3, initial_delay_ms=0, max_delay_ms=0)

    async def test_always_failing_call_is_attempted_budget_plus_one_times(self, policy):
        attempts = []
        retries = []

        async def operation():
            attempts.append(1)
            raise TransportError("unavailable", status_code=503)

        with pytest.raises(TransportError):
            await policy.execute(operation, on_retry=lambda n, e: retries.append(n))

        assert len(attempts) == 4
        assert retries == [1, 2, 3]

    async def test_returns_first_success(self, policy):
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ReadError("reset")
            return "done"

        assert await policy.execute(operation) == "done"
        assert len(attempts) == 3

    @pytest.mark.parametrize("error", [ExpiredUrlError(), ValueError("bad input"), PausedError()])
    async def test_non_retryable_errors_propagate_immediately(self, policy, error):
        attempts = []

        async def operation():
            attempts.append(1)
            raise error

        with pytest.raises(type(error)):
            await policy.execute(operation)
        assert len(attempts) == 1

    async def test_custom_classifier(self, policy):
        attempts = []

        async def operation():
            attempts.append(1)
            raise ValueError("flaky")

        with pytest.raises(ValueError):
            await policy.execute(operation, should_retry=lambda e: True)
        assert len(attempts) == 4

    async def test_pause_during_backoff_stops_retrying(self):
        policy = RetryPolicy(max_retries=5, initial_delay_ms=60000, max_delay_ms=60000)
        token = CancellationToken()
        attempts = []

        async def operation():
            attempts.append(1)
            raise TransportError("unavailable", status_code=503)

        with pytest.raises(PausedError):
            await policy.execute(operation, token=token, on_retry=lambda n, e: token.cancel(CancelReason.PAUSE))

        assert len(attempts) == 1
