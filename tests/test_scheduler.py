import asyncio
import unittest
from unittest import mock

from icsbridge.errors import AuthExpiredError, TransientApiError
from icsbridge.models import RetryPolicy
from icsbridge.retry import call_with_retry
from icsbridge.scheduler import RefreshScheduler


class RefreshSchedulerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.scheduler = RefreshScheduler()

    async def asyncTearDown(self) -> None:
        await self.scheduler.shutdown()

    async def test_callback_runs_after_delay(self) -> None:
        done = asyncio.Event()

        async def callback() -> None:
            done.set()

        self.scheduler.schedule("work", 0, callback)
        self.assertEqual(self.scheduler.scheduled_keys(), ["work"])
        await asyncio.wait_for(done.wait(), timeout=1)
        await asyncio.sleep(0)
        self.assertEqual(self.scheduler.scheduled_keys(), [])

    async def test_rescheduling_replaces_pending_timer(self) -> None:
        calls: list[str] = []

        async def first() -> None:
            calls.append("first")

        async def second() -> None:
            calls.append("second")

        self.scheduler.schedule("work", 60, first)
        self.scheduler.schedule("work", 0, second)
        await asyncio.sleep(0.05)
        self.assertEqual(calls, ["second"])

    async def test_callback_may_reschedule_itself(self) -> None:
        runs: list[int] = []

        async def callback() -> None:
            runs.append(len(runs))
            if len(runs) < 3:
                self.scheduler.schedule("work", 0, callback)

        self.scheduler.schedule("work", 0, callback)
        for _ in range(20):
            await asyncio.sleep(0.01)
            if len(runs) == 3:
                break
        self.assertEqual(runs, [0, 1, 2])

    async def test_failing_callback_is_logged_not_raised(self) -> None:
        async def callback() -> None:
            raise RuntimeError("boom")

        with self.assertLogs("icsbridge.scheduler", level="ERROR") as logs:
            self.scheduler.schedule("work", 0, callback)
            await asyncio.sleep(0.05)
        self.assertIn("Scheduled refresh work failed", logs.output[0])

    async def test_cancel(self) -> None:
        self.scheduler.schedule("work", 60, mock.AsyncMock())
        self.assertTrue(self.scheduler.cancel("work"))
        self.assertFalse(self.scheduler.cancel("work"))
        self.assertEqual(self.scheduler.scheduled_keys(), [])

    async def test_shutdown_cancels_everything(self) -> None:
        callback = mock.AsyncMock()
        self.scheduler.schedule("a", 60, callback)
        self.scheduler.schedule("b", 60, callback)
        await self.scheduler.shutdown()
        self.assertEqual(self.scheduler.scheduled_keys(), [])
        callback.assert_not_awaited()


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_transient_failures_are_retried(self) -> None:
        func = mock.AsyncMock(side_effect=[TransientApiError("503"), TransientApiError("503"), "ok"])
        result = await call_with_retry(RetryPolicy(max_attempts=3, wait_seconds=0), func, "cal-1")
        self.assertEqual(result, "ok")
        self.assertEqual(func.await_count, 3)
        func.assert_awaited_with("cal-1")

    async def test_last_error_is_reraised(self) -> None:
        func = mock.AsyncMock(side_effect=TransientApiError("down"))
        with self.assertRaises(TransientApiError):
            await call_with_retry(RetryPolicy(max_attempts=2, wait_seconds=0), func)
        self.assertEqual(func.await_count, 2)

    async def test_auth_expiry_is_not_retried(self) -> None:
        func = mock.AsyncMock(side_effect=AuthExpiredError())
        with self.assertRaises(AuthExpiredError):
            await call_with_retry(RetryPolicy(max_attempts=5, wait_seconds=0), func)
        self.assertEqual(func.await_count, 1)


if __name__ == "__main__":
    unittest.main()
