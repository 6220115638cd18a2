import asyncio
import unittest

from core.scheduler import SchedulerHandle


class TestSchedulerHandle(unittest.IsolatedAsyncioTestCase):

    async def test_start_is_idempotent_and_stop_cancels(self):
        async def job():
            pass
        handle = SchedulerHandle(job, interval_seconds=60)
        handle.start()
        handle.start()
        self.assertTrue(handle.running)
        self.assertEqual(len(handle._tasks), 1)

        await handle.stop()
        self.assertFalse(handle.running)

    async def test_stop_without_start(self):
        async def job():
            pass
        handle = SchedulerHandle(job)
        await handle.stop()
        self.assertFalse(handle.running)

    async def test_timer_fires_and_survives_job_errors(self):
        calls = []
        fired_twice = asyncio.Event()

        async def job():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run blows up")
            fired_twice.set()

        handle = SchedulerHandle(job, interval_seconds=0.01)
        handle.start()
        await asyncio.wait_for(fired_twice.wait(), timeout=2)
        await handle.stop()
        self.assertGreaterEqual(len(calls), 2)

    async def test_overlapping_run_is_skipped(self):
        release = asyncio.Event()

        async def job():
            await release.wait()

        handle = SchedulerHandle(job, interval_seconds=60)
        first = asyncio.create_task(handle.run_immediate_retry())
        await asyncio.sleep(0)

        self.assertFalse(await handle.run_immediate_retry())
        release.set()
        self.assertTrue(await first)
        self.assertEqual(handle.runs_skipped, 1)
        self.assertEqual(handle.runs_completed, 1)

    async def test_immediate_run_swallows_errors(self):
        async def job():
            raise ValueError("bad data")
        handle = SchedulerHandle(job)
        self.assertTrue(await handle.run_immediate_retry())


if __name__ == "__main__":
    unittest.main()
