"""Snapshot publisher: runs the probes on a worker pool and swaps in immutable snapshots."""
import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Optional

from . import collector, power
from .config import Config
from .history import MetricHistories
from .models import (
    DiskUsage,
    FanInfo,
    MemoryUsage,
    MetricSnapshot,
    PowerConsumption,
    ProcessSample,
    SystemInfo,
    TemperatureReading,
    UPSInfo,
    UPSPowerChangeEvent,
)
from .network import ALL_INTERFACES, BondGroup, NetworkSampler, RawInterface
from .notifier import Notifier
from .power import PowerProfileReader, PowerSources
from .rates import CpuUsageCalculator
from .scheduler import Debouncer, SamplingScheduler

logger = logging.getLogger(__name__)

FAST_CADENCE = "fast"
SLOW_CADENCE = "slow"


class Probes:
    """OS-backed probe set used by the monitor."""

    def __init__(self, timeout: float = collector.COMMAND_TIMEOUT):
        self.timeout = timeout
        self._system_info = collector.SystemInfoProbe(timeout)
        self._power_profile = PowerProfileReader(timeout)

    def cpu_ticks(self):
        return collector.read_cpu_ticks()

    def temperature(self, cpu_usage: float, recent: tuple[float, ...]) -> TemperatureReading:
        return collector.get_cpu_temperature(cpu_usage, recent, timeout=self.timeout)

    def fan(self, cpu_usage: float, temperature: float) -> FanInfo:
        return collector.get_fan_info(cpu_usage, temperature, timeout=self.timeout)

    def memory(self) -> MemoryUsage:
        return collector.get_memory_usage(timeout=self.timeout)

    def disk(self) -> DiskUsage:
        return collector.get_disk_usage("/")

    def interfaces(self) -> list[RawInterface]:
        return collector.read_interface_counters()

    def bond_members(self, name: str) -> list[str]:
        return collector.read_bond_members(name, timeout=self.timeout)

    def power_sources(self) -> PowerSources:
        return power.get_power_sources(self._power_profile, timeout=self.timeout)

    def system_info(self) -> SystemInfo:
        return self._system_info.get()

    def top_processes(self, sort_key: str, count: int) -> list[ProcessSample]:
        return collector.list_top_processes(sort_key, count, timeout=self.timeout)

    def power(self, cpu_usage: float, system_info: SystemInfo, sources: Optional[PowerSources]) -> PowerConsumption:
        return power.get_power_consumption(
            cpu_usage, system_info, sources, self._power_profile, timeout=self.timeout
        )


class SystemMonitor:
    """
    Samples the host on two cadences and publishes a MetricSnapshot.

    Probes run on a thread pool; results are merged and published on the event
    loop with a single reference swap, so readers on any thread only ever see
    a complete snapshot. The fast fields and the power fields are updated by
    separate passes and never overwrite each other.
    """

    def __init__(
        self,
        config: Config,
        notifier: Optional[Notifier] = None,
        probes: Optional[Probes] = None,
        scheduler: Optional[SamplingScheduler] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.config = config
        self.notifier = notifier
        self.probes = probes or Probes(config.sampling.command_timeout_seconds)
        self.scheduler = scheduler or SamplingScheduler()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.sampling.workers, thread_name_prefix="macstats-probe"
        )

        self._lock = threading.Lock()
        self._snapshot = MetricSnapshot()
        self._histories = MetricHistories(config.sampling.history_size)
        self._cpu = CpuUsageCalculator()
        self._network = NetworkSampler(
            self.probes.interfaces,
            bond_groups=[BondGroup(g.name, tuple(g.members)) for g in config.network.bond_groups],
            read_bond_members=self.probes.bond_members if config.network.discover_bonds else None,
        )
        self._selected_interface = config.network.selected_interface or ALL_INTERFACES
        self._power_sources: Optional[PowerSources] = None

        # Bumped on stop so passes still in flight discard their results
        self._generation = 0
        self._running = False
        self._in_flight = {FAST_CADENCE: False, SLOW_CADENCE: False}

        self._listeners: list[Callable[[MetricSnapshot], Any]] = []
        self._notify_listeners = Debouncer(config.sampling.debounce_seconds, self._dispatch)
        self._intervals = {
            FAST_CADENCE: config.sampling.fast_interval_seconds,
            SLOW_CADENCE: config.sampling.slow_interval_seconds,
        }
        self._pending_intervals: dict[str, float] = {}
        self._apply_intervals = Debouncer(config.sampling.debounce_seconds, self._reschedule)

        self._ups_on_battery: Optional[bool] = None
        self._outage_started: Optional[float] = None
        self._last_ups_alert: Optional[float] = None
        self._tasks: set[asyncio.Task] = set()

    # --- consumer side -----------------------------------------------------

    @property
    def snapshot(self) -> MetricSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def histories(self) -> MetricHistories:
        return self._histories

    @property
    def interfaces(self) -> tuple[str, ...]:
        return self._network.interfaces or (ALL_INTERFACES,)

    @property
    def selected_interface(self) -> str:
        return self._selected_interface

    @property
    def running(self) -> bool:
        return self._running

    @property
    def intervals(self) -> dict[str, float]:
        return dict(self._intervals)

    def add_listener(self, callback: Callable[[MetricSnapshot], Any]) -> None:
        """Called with the latest snapshot, at most once per debounce window."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[MetricSnapshot], Any]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _dispatch(self, snapshot: MetricSnapshot) -> None:
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    # --- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.scheduler.add_cadence(FAST_CADENCE, self.run_fast_pass, self._intervals[FAST_CADENCE])
        cadences = [FAST_CADENCE]
        if self.config.metrics.power:
            self.scheduler.add_cadence(SLOW_CADENCE, self.run_slow_pass, self._intervals[SLOW_CADENCE])
            cadences.append(SLOW_CADENCE)
        self.scheduler.start(*cadences)
        logger.info(
            f"Monitor started (fast {self._intervals[FAST_CADENCE]}s, "
            f"slow {self._intervals[SLOW_CADENCE]}s)"
        )

    def stop(self) -> None:
        """Cancel timers. Passes still running finish but do not publish."""
        if not self._running:
            return
        self._running = False
        self._generation += 1
        self.scheduler.stop(FAST_CADENCE, SLOW_CADENCE)
        self._notify_listeners.cancel()
        self._apply_intervals.cancel()
        logger.info("Monitor stopped")

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)

    # --- settings ----------------------------------------------------------

    def set_intervals(self, fast_seconds: Optional[float] = None, slow_seconds: Optional[float] = None) -> None:
        """Change cadence intervals; bursts of changes are applied once."""
        if fast_seconds is not None:
            self._pending_intervals[FAST_CADENCE] = fast_seconds
        if slow_seconds is not None:
            self._pending_intervals[SLOW_CADENCE] = slow_seconds
        if self._pending_intervals:
            self._apply_intervals()

    def _reschedule(self) -> None:
        pending, self._pending_intervals = self._pending_intervals, {}
        for name, seconds in pending.items():
            self._intervals[name] = seconds
            if self._running:
                try:
                    self.scheduler.reschedule(name, seconds)
                except KeyError:
                    logger.debug(f"Cadence {name} not registered")
            logger.info(f"{name} interval set to {seconds}s")

    def select_interface(self, name: str) -> bool:
        """Choose the logical interface whose throughput is reported."""
        if self._network.interfaces and name not in self._network.interfaces:
            return False
        self._selected_interface = name
        logger.info(f"Selected network interface: {name}")
        return True

    # --- sampling ----------------------------------------------------------

    async def _run(self, func: Callable, *args, fallback=None):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, func, *args)
        except Exception as e:
            logger.warning(f"Probe {getattr(func, '__name__', func)} failed: {e}")
            return fallback

    async def _cpu_and_thermal(self, current: MetricSnapshot):
        metrics = self.config.metrics
        usage = current.cpu_usage_percent
        if metrics.cpu:
            ticks = await self._run(self.probes.cpu_ticks)
            usage = self._cpu.update(ticks) if ticks is not None else 0.0

        temperature = current.cpu_temperature
        fan = current.fan
        if metrics.temperature:
            temperature = await self._run(
                self.probes.temperature, usage, self._histories.cpu_temp.values(),
                fallback=current.cpu_temperature,
            )
            fan = await self._run(self.probes.fan, usage, temperature.celsius, fallback=current.fan)
        return usage, temperature, fan

    async def _skip(self, value):
        return value

    async def _collect_fast(self, current: MetricSnapshot) -> dict:
        metrics = self.config.metrics
        count = self.config.sampling.process_count
        selected = self._selected_interface

        (
            (usage, temperature, fan),
            memory,
            disk,
            network,
            sources,
            system_info,
            top_cpu,
            top_memory,
        ) = await asyncio.gather(
            self._cpu_and_thermal(current),
            self._run(self.probes.memory, fallback=current.memory) if metrics.memory else self._skip(current.memory),
            self._run(self.probes.disk, fallback=current.disk) if metrics.disk else self._skip(current.disk),
            self._run(self._network.sample, selected, fallback=current.network)
            if metrics.network else self._skip(current.network),
            self._run(self.probes.power_sources, fallback=self._power_sources)
            if metrics.power_sources else self._skip(None),
            self._run(self.probes.system_info, fallback=current.system_info),
            self._run(self.probes.top_processes, "cpu", count, fallback=[])
            if metrics.processes else self._skip([]),
            self._run(self.probes.top_processes, "memory", count, fallback=[])
            if metrics.processes else self._skip([]),
        )

        self._power_sources = sources
        return {
            "cpu_usage_percent": max(0.0, min(100.0, usage)),
            "cpu_temperature": temperature,
            "fan": fan,
            "memory": memory,
            "disk": disk,
            "network": network,
            "network_interfaces": self.interfaces,
            "battery": sources.battery if sources else None,
            "ups": sources.ups if sources else None,
            "system_info": system_info,
            "top_cpu_processes": tuple(top_cpu[:count]),
            "top_memory_processes": tuple(top_memory[:count]),
        }

    async def run_fast_pass(self) -> bool:
        """One fast-cadence pass. Returns True when a snapshot was published."""
        if self._in_flight[FAST_CADENCE]:
            logger.debug("Fast pass still running, skipping")
            return False
        self._in_flight[FAST_CADENCE] = True
        generation = self._generation
        try:
            update = await self._collect_fast(self.snapshot)
            if generation != self._generation:
                logger.debug("Discarding fast pass finished after stop")
                return False

            network = update["network"]
            self._histories.append(
                update["cpu_usage_percent"],
                update["cpu_temperature"].celsius,
                network.upload_bytes_per_sec,
                network.download_bytes_per_sec,
            )
            update["histories"] = self._histories.freeze()
            update["initial_data_loaded"] = True
            update["updated_at"] = datetime.now()

            with self._lock:
                previous = self._snapshot
                self._snapshot = previous.model_copy(update=update)
                snapshot = self._snapshot

            if not previous.initial_data_loaded:
                logger.info("Initial data loaded")
                if self.config.metrics.network and self._selected_interface not in snapshot.network_interfaces:
                    logger.warning(
                        f"Selected network interface {self._selected_interface} not found, "
                        f"available: {', '.join(snapshot.network_interfaces)}"
                    )
            self._check_ups(previous, snapshot)
            self._notify_listeners(snapshot)
            return True
        finally:
            self._in_flight[FAST_CADENCE] = False

    async def run_slow_pass(self) -> bool:
        """Power consumption pass. Returns True when published."""
        if self._in_flight[SLOW_CADENCE]:
            logger.debug("Power pass still running, skipping")
            return False
        self._in_flight[SLOW_CADENCE] = True
        generation = self._generation
        try:
            current = self.snapshot
            # May run before the first fast pass has published the host model
            system_info = await self._run(self.probes.system_info, fallback=current.system_info)
            consumption = await self._run(
                self.probes.power, current.cpu_usage_percent, system_info, self._power_sources,
                fallback=None,
            )
            if consumption is None or generation != self._generation:
                return False

            with self._lock:
                self._snapshot = self._snapshot.model_copy(
                    update={"power": consumption, "power_updated_at": datetime.now()}
                )
                snapshot = self._snapshot
            logger.debug(f"Power: {consumption.total_watts:.1f}W (estimate={consumption.is_estimate})")
            self._notify_listeners(snapshot)
            return True
        finally:
            self._in_flight[SLOW_CADENCE] = False

    # --- UPS notifications -------------------------------------------------

    def _check_ups(self, previous: MetricSnapshot, current: MetricSnapshot) -> None:
        ups: Optional[UPSInfo] = current.ups
        if ups is None or not ups.present:
            self._ups_on_battery = None
            return

        was_on_battery = self._ups_on_battery
        self._ups_on_battery = ups.on_battery
        # No alert for the state found on the first pass
        if not previous.initial_data_loaded or was_on_battery is None or was_on_battery == ups.on_battery:
            return

        now = time.monotonic()
        outage = None
        if ups.on_battery:
            self._outage_started = now
            cooldown = self.config.notifications.ups_cooldown_seconds
            if self._last_ups_alert is not None and now - self._last_ups_alert < cooldown:
                logger.info("UPS on battery, notification suppressed by cooldown")
                return
            self._last_ups_alert = now
            logger.warning(f"{ups.name} switched to battery ({ups.charge_percent:.0f}%)")
        else:
            if self._outage_started is not None:
                outage = now - self._outage_started
            self._outage_started = None
            logger.info(f"{ups.name} back on AC power")

        if self.notifier is None or not self.config.notifications.ups_power_change_enabled:
            return
        event = UPSPowerChangeEvent(
            ups_name=ups.name,
            on_battery=ups.on_battery,
            charge_percent=ups.charge_percent,
            time_remaining_minutes=ups.time_remaining_minutes,
            outage_seconds=outage,
            timestamp=datetime.now(),
        )
        task = asyncio.ensure_future(self.notifier.send_ups_power_change(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
