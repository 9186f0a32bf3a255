"""Periodic sampling cadences and a trailing-edge debouncer."""
import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Trailing-edge debounce: at most one invocation per window, with the latest arguments.

    The first call opens a window of `delay` seconds; calls made while it is
    open only replace the pending arguments. Must be called from the event loop.
    """

    def __init__(self, delay: float, callback: Callable[..., Any]):
        self.delay = delay
        self.callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._args: tuple = ()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def __call__(self, *args) -> None:
        self._args = args
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        args, self._args = self._args, ()
        try:
            result = self.callback(*args)
        except Exception:
            logger.exception("Debounced callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._args = ()


class SamplingScheduler:
    """
    Named interval cadences on an AsyncIOScheduler.

    Every cadence fires immediately when started or rescheduled, never
    overlaps itself and can be started and stopped independently.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self._scheduler = scheduler or AsyncIOScheduler()
        self._cadences: dict[str, tuple[Callable, float]] = {}

    def add_cadence(self, name: str, func: Callable, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"interval for {name} must be positive")
        self._cadences[name] = (func, interval_seconds)

    def interval(self, name: str) -> float:
        return self._cadences[name][1]

    def is_running(self, name: str) -> bool:
        return self._scheduler.running and self._scheduler.get_job(name) is not None

    def _schedule(self, name: str) -> None:
        func, interval_seconds = self._cadences[name]
        self._scheduler.add_job(
            func,
            IntervalTrigger(seconds=interval_seconds),
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        logger.info(f"Cadence {name} scheduled every {interval_seconds}s")

    def start(self, *names: str) -> None:
        """Start the given cadences, or all of them, each firing right away."""
        if not self._scheduler.running:
            self._scheduler.start()
        for name in names or tuple(self._cadences):
            self._schedule(name)

    def stop(self, *names: str) -> None:
        """Cancel future runs; a run already in progress is left to finish."""
        for name in names or tuple(self._cadences):
            if self._scheduler.running and self._scheduler.get_job(name) is not None:
                self._scheduler.remove_job(name)
                logger.info(f"Cadence {name} stopped")

    def reschedule(self, name: str, interval_seconds: float) -> None:
        """New interval; a running cadence is cancelled and fires again immediately."""
        func, _ = self._cadences[name]
        self.add_cadence(name, func, interval_seconds)
        if self.is_running(name):
            self._scheduler.remove_job(name)
            self._schedule(name)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
