"""Background poll timer driven by the event loop.

    idle --start--> running --pause--> paused --resume--> running --stop--> stopped

The scheduler only owns the timer. Ticks run `on_tick` as a task; a tick
that is still running when the next one is due is skipped rather than
stacked. Visibility and focus signals come from the host (a UI shell, a
terminal front end, tests) and pause the timer while either is lost.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    PAUSED = 'paused'
    STOPPED = 'stopped'


class SchedulerStopped(RuntimeError):
    pass


class PollScheduler:
    def __init__(self, on_tick: Callable[[], Awaitable[Any]], loop: Optional[asyncio.AbstractEventLoop] = None):
        self._on_tick = on_tick
        self._loop = loop
        self.state = SchedulerState.IDLE
        self.interval: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._visible = True
        self._focused = True
        # bumped on every pause/stop so a timer callback that already left
        # the loop's queue can tell it has been cancelled
        self._generation = 0
        self.ticks = 0
        self.skipped = 0

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def start(self, interval: float) -> None:
        if self.state == SchedulerState.STOPPED:
            raise SchedulerStopped('scheduler was stopped and cannot be restarted')
        if interval <= 0:
            raise ValueError('interval must be positive')
        self.interval = interval
        self._cancel_timer()
        if not (self._visible and self._focused):
            self.state = SchedulerState.PAUSED
            return
        self.state = SchedulerState.RUNNING
        self._schedule()

    def pause(self) -> None:
        if self.state != SchedulerState.RUNNING:
            return
        self._cancel_timer()
        self.state = SchedulerState.PAUSED
        logger.debug('polling paused')

    def resume(self) -> None:
        if self.state != SchedulerState.PAUSED:
            return
        self.state = SchedulerState.RUNNING
        logger.debug('polling resumed')
        # catch up on whatever changed while we were not looking
        self._fire(self._generation)

    def stop(self) -> None:
        if self.state == SchedulerState.STOPPED:
            return
        self._cancel_timer()
        self.state = SchedulerState.STOPPED
        logger.debug('polling stopped')

    def visibility_changed(self, visible: bool) -> None:
        self._visible = visible
        self._signal_changed()

    def focus_changed(self, focused: bool) -> None:
        self._focused = focused
        self._signal_changed()

    def _signal_changed(self) -> None:
        if self._visible and self._focused:
            self.resume()
        else:
            self.pause()

    async def drain(self) -> None:
        """Wait for the tick currently in flight, if any."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait([task])

    def _cancel_timer(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self) -> None:
        self._timer = self.loop.call_later(self.interval, self._fire, self._generation)

    def _fire(self, generation: int) -> None:
        if generation != self._generation or self.state != SchedulerState.RUNNING:
            return
        self._timer = None
        if self._task is not None and not self._task.done():
            self.skipped += 1
            logger.debug('previous poll still running, skipping tick')
        else:
            self.ticks += 1
            self._task = self.loop.create_task(self._run_tick())
        self._schedule()

    async def _run_tick(self) -> None:
        try:
            await self._on_tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception('poll tick failed')
