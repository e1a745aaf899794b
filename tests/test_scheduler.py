import asyncio

import pytest

from todo_sync.scheduler import PollScheduler, SchedulerState, SchedulerStopped


class Counter:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


@pytest.mark.asyncio
async def test_first_tick_waits_one_interval():
    tick = Counter()
    sched = PollScheduler(tick)
    sched.start(0.05)
    await asyncio.sleep(0.01)
    assert tick.calls == 0
    await asyncio.sleep(0.09)
    assert tick.calls >= 1
    sched.stop()


@pytest.mark.asyncio
async def test_pause_cancels_and_resume_ticks_immediately():
    tick = Counter()
    sched = PollScheduler(tick)
    sched.start(0.05)
    sched.pause()
    assert sched.state == SchedulerState.PAUSED
    await asyncio.sleep(0.12)
    assert tick.calls == 0

    sched.resume()
    assert sched.state == SchedulerState.RUNNING
    await sched.drain()
    assert tick.calls == 1
    sched.stop()


@pytest.mark.asyncio
async def test_stop_is_final():
    tick = Counter()
    sched = PollScheduler(tick)
    sched.start(0.02)
    sched.stop()
    await asyncio.sleep(0.06)
    assert tick.calls == 0
    with pytest.raises(SchedulerStopped):
        sched.start(0.02)
    sched.resume()
    assert sched.state == SchedulerState.STOPPED


@pytest.mark.asyncio
async def test_visibility_and_focus_signals():
    tick = Counter()
    sched = PollScheduler(tick)
    sched.start(60)
    sched.visibility_changed(False)
    assert sched.state == SchedulerState.PAUSED
    sched.focus_changed(False)
    sched.visibility_changed(True)
    # still unfocused
    assert sched.state == SchedulerState.PAUSED
    assert tick.calls == 0

    sched.focus_changed(True)
    assert sched.state == SchedulerState.RUNNING
    await sched.drain()
    assert tick.calls == 1
    sched.stop()


@pytest.mark.asyncio
async def test_start_while_hidden_waits_for_visibility():
    tick = Counter()
    sched = PollScheduler(tick)
    sched.visibility_changed(False)
    sched.start(60)
    assert sched.state == SchedulerState.PAUSED
    sched.visibility_changed(True)
    await sched.drain()
    assert tick.calls == 1
    sched.stop()


@pytest.mark.asyncio
async def test_overlapping_ticks_are_skipped():
    release = asyncio.Event()
    started = []

    async def slow_tick():
        started.append(1)
        await release.wait()

    sched = PollScheduler(slow_tick)
    sched.start(0.02)
    await asyncio.sleep(0.11)
    assert len(started) == 1
    assert sched.skipped >= 1
    release.set()
    await sched.drain()
    sched.stop()


@pytest.mark.asyncio
async def test_failing_tick_keeps_schedule(caplog):
    calls = []

    async def broken():
        calls.append(1)
        raise RuntimeError('fetch failed')

    sched = PollScheduler(broken)
    sched.start(0.02)
    await asyncio.sleep(0.09)
    sched.stop()
    assert len(calls) >= 2
    assert any('poll tick failed' in r.getMessage() for r in caplog.records)


def test_interval_must_be_positive():
    sched = PollScheduler(Counter())
    with pytest.raises(ValueError):
        sched.start(0)
