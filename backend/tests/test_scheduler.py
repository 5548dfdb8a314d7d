"""
Test wake-up triggers: connectivity restored, app resume, heartbeat and debounce.
"""
import asyncio

from mailsync.services.connectivity import Connectivity
from mailsync.services.scheduler import WakeScheduler


class CountingJob:
    def __init__(self):
        self.runs = 0

    async def __call__(self):
        self.runs += 1


class TestConnectivity:
    async def test_listener_only_fires_on_restore(self):
        connectivity = Connectivity(online=True)
        fired = []

        async def listener():
            fired.append(True)

        connectivity.on_restored(listener)
        await connectivity.set_online(True)
        await connectivity.set_online(False)
        await connectivity.set_online(True)

        assert fired == [True]

    async def test_failing_listener_does_not_block_others(self):
        connectivity = Connectivity(online=False)
        fired = []

        async def broken():
            raise RuntimeError("boom")

        async def listener():
            fired.append(True)

        connectivity.on_restored(broken)
        connectivity.on_restored(listener)
        await connectivity.set_online(True)

        assert fired == [True]


class TestWakeScheduler:
    async def test_reconnect_wakes_jobs(self, clock):
        connectivity = Connectivity(online=False)
        job = CountingJob()
        scheduler = WakeScheduler(connectivity, [job], heartbeat_seconds=3600, clock=clock)
        scheduler.start()

        await connectivity.set_online(True)

        assert job.runs == 1
        await scheduler.stop()

    async def test_offline_wake_is_noop(self, clock):
        job = CountingJob()
        scheduler = WakeScheduler(Connectivity(online=False), [job], clock=clock)

        assert await scheduler.wake("manual") is False
        assert job.runs == 0

    async def test_wakeups_are_debounced(self, clock):
        job = CountingJob()
        scheduler = WakeScheduler(Connectivity(), [job], debounce_ms=2_000, clock=clock)

        assert await scheduler.notify_resume() is True
        assert await scheduler.notify_resume() is False
        clock.advance(2_000)
        assert await scheduler.wake("manual") is True
        assert job.runs == 2

    async def test_failing_job_does_not_stop_others(self, clock):
        async def broken():
            raise RuntimeError("boom")

        job = CountingJob()
        scheduler = WakeScheduler(Connectivity(), [broken], clock=clock)
        scheduler.add_job(job)

        assert await scheduler.wake() is True
        assert job.runs == 1

    async def test_heartbeat_runs_periodically(self):
        job = CountingJob()
        scheduler = WakeScheduler(Connectivity(), [job], heartbeat_seconds=0.01, debounce_ms=0)
        scheduler.start()
        assert scheduler.running

        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert job.runs >= 2
        assert not scheduler.running

    async def test_stop_unsubscribes_from_connectivity(self, clock):
        connectivity = Connectivity(online=False)
        job = CountingJob()
        scheduler = WakeScheduler(connectivity, [job], heartbeat_seconds=3600, clock=clock)
        scheduler.start()
        await scheduler.stop()

        await connectivity.set_online(True)

        assert job.runs == 0
