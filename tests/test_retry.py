import unittest

from core.interfaces import GatewayUnavailable
from core.retry import retry_with_backoff, RetryExhaustedError


class TestRetryWithBackoff(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.sleeps = []
        self.calls = 0

    async def fake_sleep(self, delay):
        self.sleeps.append(delay)

    def flaky(self, failures, exc=GatewayUnavailable):
        async def operation():
            self.calls += 1
            if self.calls <= failures:
                raise exc(f"failure {self.calls}")
            return "ok"
        return operation

    async def test_first_attempt_succeeds(self):
        result = await retry_with_backoff(self.flaky(0), sleep=self.fake_sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(self.sleeps, [])

    async def test_delays_double_between_attempts(self):
        result = await retry_with_backoff(self.flaky(2), max_attempts=3, base_delay=1.0,
                                          sleep=self.fake_sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(self.calls, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    async def test_exhaustion_raises_with_last_error(self):
        with self.assertRaises(RetryExhaustedError) as ctx:
            await retry_with_backoff(self.flaky(5), max_attempts=3, base_delay=0.5,
                                     sleep=self.fake_sleep)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsInstance(ctx.exception.__cause__, GatewayUnavailable)
        self.assertIn("failure 3", str(ctx.exception.last_error))
        # no wait after the final attempt
        self.assertEqual(self.sleeps, [0.5, 1.0])

    async def test_non_retryable_errors_propagate(self):
        with self.assertRaises(ValueError):
            await retry_with_backoff(self.flaky(1, exc=ValueError),
                                     retry_on=(GatewayUnavailable,), sleep=self.fake_sleep)
        self.assertEqual(self.calls, 1)
        self.assertEqual(self.sleeps, [])

    async def test_rejects_zero_attempts(self):
        with self.assertRaises(ValueError):
            await retry_with_backoff(self.flaky(0), max_attempts=0)


if __name__ == "__main__":
    unittest.main()
