"""OS metric probes using psutil and the stock macOS command line tools."""
import json
import logging
import os
import platform
import re
import shutil
import subprocess
import time
from datetime import datetime
from typing import Iterable, Optional

import psutil

from .models import (
    DiskUsage,
    FanInfo,
    MemoryUsage,
    ProcessSample,
    SystemInfo,
    TemperatureReading,
    ThermalState,
)
from .network import RawInterface, parse_bond_members
from .rates import CpuTicks

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 10.0

MACMON_PATHS = [
    "/opt/homebrew/bin/macmon",  # Homebrew on Apple Silicon
    "/usr/local/bin/macmon",     # Homebrew on Intel
    "/usr/bin/macmon",
    "/opt/local/bin/macmon",     # MacPorts
]

MIN_PROCESS_USAGE = 0.1

IDLE_TEMPERATURE = 40.0
FULL_LOAD_TEMPERATURE_RISE = 40.0
TEMPERATURE_TREND_WEIGHT = 0.4
TEMPERATURE_TREND_SAMPLES = 5

MAX_FAN_RPM = 6000.0


def run_command(args: list[str], timeout: float = COMMAND_TIMEOUT) -> Optional[str]:
    """
    Run an external tool and return its stdout.

    Returns None when the tool is missing, exits non-zero or exceeds the
    timeout. subprocess.run kills the child on timeout.
    """
    try:
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        logger.debug(f"Command not found: {args[0]}")
        return None
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(args)}")
        return None
    except OSError as e:
        logger.warning(f"Cannot run {args[0]}: {e}")
        return None

    if result.returncode != 0:
        logger.debug(f"{' '.join(args)} exited with {result.returncode}")
        return None
    return result.stdout


# --- CPU -------------------------------------------------------------------

def read_cpu_ticks() -> Optional[CpuTicks]:
    """Cumulative user/system/idle/nice CPU time."""
    try:
        times = psutil.cpu_times()
    except Exception as e:
        logger.warning(f"Failed to read CPU times: {e}")
        return None
    return CpuTicks(
        user=times.user,
        system=times.system,
        idle=times.idle,
        nice=getattr(times, "nice", 0.0),
    )


# --- Memory ----------------------------------------------------------------

def parse_vm_stat(output: str) -> tuple[int, int]:
    """Page size and compressed page count from `vm_stat` output."""
    page_size = 4096
    compressed = 0

    match = re.search(r"page size of (\d+) bytes", output)
    if match:
        page_size = int(match.group(1))

    match = re.search(r"Pages occupied by compressor:\s+(\d+)", output)
    if match:
        compressed = int(match.group(1))

    return page_size, compressed


def get_memory_usage(timeout: float = COMMAND_TIMEOUT) -> MemoryUsage:
    """
    Used memory the way Activity Monitor counts it: wired + active + compressed.

    Hosts without wired page accounting fall back to psutil's own `used`.
    """
    try:
        vm = psutil.virtual_memory()
    except Exception as e:
        logger.warning(f"Failed to read memory statistics: {e}")
        return MemoryUsage()

    wired = getattr(vm, "wired", None)
    active = getattr(vm, "active", None)
    if wired is not None and active is not None:
        compressed_bytes = 0
        output = run_command(["vm_stat"], timeout=timeout)
        if output:
            page_size, compressed = parse_vm_stat(output)
            compressed_bytes = compressed * page_size
        used = wired + active + compressed_bytes
    else:
        used = vm.used

    total = int(vm.total)
    return MemoryUsage(used_bytes=max(0, min(int(used), total)), total_bytes=total)


# --- Disk ------------------------------------------------------------------

def get_disk_usage(path: str = "/") -> DiskUsage:
    """Free and total capacity of the root volume."""
    try:
        usage = psutil.disk_usage(path)
    except (PermissionError, OSError) as e:
        logger.warning(f"Cannot read disk usage for {path}: {e}")
        return DiskUsage()

    total = int(usage.total)
    return DiskUsage(free_bytes=max(0, min(int(usage.free), total)), total_bytes=total)


# --- Network ---------------------------------------------------------------

def read_interface_counters() -> list[RawInterface]:
    """Per-interface cumulative byte counters with UP/RUNNING flags."""
    try:
        counters = psutil.net_io_counters(pernic=True)
        stats = psutil.net_if_stats()
    except Exception as e:
        logger.warning(f"Failed to read network counters: {e}")
        return []

    interfaces = []
    for name, io in counters.items():
        nic = stats.get(name)
        is_up = bool(nic and nic.isup)
        flags = getattr(nic, "flags", None) if nic else None
        is_running = "running" in flags.split(",") if flags else is_up
        interfaces.append(RawInterface(
            name=name,
            bytes_in=io.bytes_recv,
            bytes_out=io.bytes_sent,
            is_up=is_up,
            is_running=is_running,
        ))
    return interfaces


def read_bond_members(bond: str, timeout: float = COMMAND_TIMEOUT) -> list[str]:
    """Member interfaces of a link-aggregation interface as listed by ifconfig."""
    output = run_command(["ifconfig", bond], timeout=timeout)
    if not output:
        return []
    return parse_bond_members(output)


# --- macmon ----------------------------------------------------------------

def find_macmon() -> Optional[str]:
    """Path of an installed macmon binary, if any."""
    for path in MACMON_PATHS:
        if os.path.exists(path):
            return path
    return shutil.which("macmon")


def read_macmon_sample(timeout: float = COMMAND_TIMEOUT) -> Optional[dict]:
    """One JSON sample from `macmon pipe -s 1`, or None."""
    path = find_macmon()
    if path is None:
        return None

    output = run_command([path, "pipe", "-s", "1"], timeout=timeout)
    if not output:
        return None

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Unparseable macmon output: {e}")
            return None
        return data if isinstance(data, dict) else None
    return None


# --- Temperature -----------------------------------------------------------

def _plausible(value) -> Optional[float]:
    if isinstance(value, (int, float)) and 0 < value < 150:
        return float(value)
    return None


def parse_macmon_temperature(data: dict) -> Optional[float]:
    """CPU temperature from a macmon sample."""
    temp = data.get("temp")
    if isinstance(temp, dict):
        value = _plausible(temp.get("cpu_temp_avg"))
        if value is not None:
            return value

    for key in ("cpu_temp", "package_temp", "die_temp", "core_temp", "cpu_thermal"):
        value = _plausible(data.get(key))
        if value is not None:
            return value
    return None


def get_sensor_temperature() -> Optional[float]:
    """
    Maximum CPU temperature from hardware sensors exposed through psutil.

    Note: not available on macOS; Linux needs lm-sensors.
    """
    if not hasattr(psutil, "sensors_temperatures"):
        return None
    try:
        temps = psutil.sensors_temperatures()
    except Exception as e:
        logger.warning(f"Failed to read CPU temperature: {e}")
        return None
    if not temps:
        return None

    max_temp = None
    for name in ("coretemp", "k10temp", "cpu_thermal", "cpu-thermal", "acpitz"):
        for entry in temps.get(name, []):
            if entry.current is not None and (max_temp is None or entry.current > max_temp):
                max_temp = entry.current
    return _plausible(max_temp)


def estimate_temperature(cpu_usage: float, recent: Iterable[float] = ()) -> float:
    """Idle ~40 C, full load ~80 C, smoothed toward the recent readings."""
    estimate = IDLE_TEMPERATURE + (cpu_usage / 100.0) * FULL_LOAD_TEMPERATURE_RISE
    recent = [t for t in recent if t > 0][-TEMPERATURE_TREND_SAMPLES:]
    if not recent:
        return estimate
    trend = sum(recent) / len(recent)
    return (1 - TEMPERATURE_TREND_WEIGHT) * estimate + TEMPERATURE_TREND_WEIGHT * trend


def get_cpu_temperature(
    cpu_usage: float,
    recent: Iterable[float] = (),
    timeout: float = COMMAND_TIMEOUT,
) -> TemperatureReading:
    """Real sensor reading when one is available, load-based estimate otherwise."""
    sample = read_macmon_sample(timeout=timeout)
    if sample is not None:
        value = parse_macmon_temperature(sample)
        if value is not None:
            return TemperatureReading(celsius=value, is_estimate=False, source="macmon")

    value = get_sensor_temperature()
    if value is not None:
        return TemperatureReading(celsius=value, is_estimate=False, source="sensors")

    return TemperatureReading(
        celsius=round(estimate_temperature(cpu_usage, recent), 1),
        is_estimate=True,
        source="load",
    )


# --- Fan / thermal ---------------------------------------------------------

# Fraction of the maximum fan speed assumed for each thermal pressure level
FAN_BASE_FRACTION = {
    ThermalState.NOMINAL: 0.25,
    ThermalState.FAIR: 0.5,
    ThermalState.SERIOUS: 0.75,
    ThermalState.CRITICAL: 0.95,
}


def parse_thermal_state(output: str) -> Optional[ThermalState]:
    """Thermal pressure from `pmset -g therm`."""
    match = re.search(r"CPU_Speed_Limit\s*=\s*(\d+)", output)
    if match:
        limit = int(match.group(1))
        if limit >= 100:
            return ThermalState.NOMINAL
        if limit >= 80:
            return ThermalState.FAIR
        if limit >= 50:
            return ThermalState.SERIOUS
        return ThermalState.CRITICAL

    if "No CPU power status has been recorded" in output:
        return ThermalState.NOMINAL
    return None


def thermal_state_from_temperature(celsius: float) -> ThermalState:
    if celsius < 70:
        return ThermalState.NOMINAL
    if celsius < 85:
        return ThermalState.FAIR
    if celsius < 95:
        return ThermalState.SERIOUS
    return ThermalState.CRITICAL


def estimate_fan(state: ThermalState, cpu_usage: float, max_rpm: float = MAX_FAN_RPM) -> FanInfo:
    fraction = min(1.0, FAN_BASE_FRACTION[state] + 0.15 * cpu_usage / 100.0)
    return FanInfo(rpm=round(max_rpm * fraction), max_rpm=max_rpm, thermal_state=state, is_estimate=True)


def get_fan_info(cpu_usage: float, temperature: float, timeout: float = COMMAND_TIMEOUT) -> FanInfo:
    """Fan speed estimate; there is no fan sensor access without elevated privileges."""
    state = None
    output = run_command(["pmset", "-g", "therm"], timeout=timeout)
    if output:
        state = parse_thermal_state(output)
    if state is None:
        state = thermal_state_from_temperature(temperature)
    return estimate_fan(state, cpu_usage)


# --- Processes -------------------------------------------------------------

def parse_ps_output(output: str) -> list[ProcessSample]:
    """Rows of `ps -A -o pid=,%cpu=,%mem=,comm=`."""
    processes = []
    for line in output.splitlines():
        parts = line.split(None, 3)
        if len(parts) < 4:
            continue
        try:
            pid = int(parts[0])
            cpu = float(parts[1].rstrip("%"))
            mem = float(parts[2].rstrip("%"))
        except ValueError:
            continue
        name = os.path.basename(parts[3].strip()) or parts[3].strip()
        processes.append(ProcessSample(pid=pid, name=name, cpu_percent=cpu, memory_percent=mem))
    return processes


def select_top(
    processes: list[ProcessSample],
    sort_key: str,
    count: int,
    threshold: float = MIN_PROCESS_USAGE,
) -> list[ProcessSample]:
    """
    Top `count` processes by `sort_key` ('cpu' or 'memory').

    Entries at or below the threshold are noise and only kept when needed to
    reach the requested count.
    """
    attr = "memory_percent" if sort_key == "memory" else "cpu_percent"
    ranked = sorted(processes, key=lambda p: getattr(p, attr), reverse=True)
    kept = [p for p in ranked if getattr(p, attr) > threshold]
    if len(kept) < count:
        kept = ranked[:count]
    return kept[:count]


def list_top_processes(sort_key: str, count: int, timeout: float = COMMAND_TIMEOUT) -> list[ProcessSample]:
    """Process table query; an empty list on failure."""
    output = run_command(["ps", "-A", "-o", "pid=,%cpu=,%mem=,comm="], timeout=timeout)
    if output is None:
        logger.warning("Error getting process info")
        return []
    return select_top(parse_ps_output(output), sort_key, count)


# --- System information ----------------------------------------------------

def parse_hardware_info(output: str) -> tuple[str, str]:
    """Model name and chip from `system_profiler SPHardwareDataType`."""
    model_name = "Unknown"
    chip = "Unknown"
    for line in output.splitlines():
        key, sep, value = line.strip().partition(":")
        if not sep or not value.strip():
            continue
        if key == "Model Name":
            model_name = value.strip()
        elif key in ("Chip", "Processor Name"):
            chip = value.strip()
        if model_name != "Unknown" and chip != "Unknown":
            break
    return model_name, chip


class SystemInfoProbe:
    """Host description. Hardware strings are looked up once and then reused."""

    def __init__(self, timeout: float = COMMAND_TIMEOUT):
        self.timeout = timeout
        self._hardware: Optional[tuple[str, str]] = None

    def _hardware_info(self) -> tuple[str, str]:
        if self._hardware is not None:
            return self._hardware

        model_name, chip = "Unknown", "Unknown"
        output = run_command(["system_profiler", "SPHardwareDataType"], timeout=self.timeout)
        if output:
            model_name, chip = parse_hardware_info(output)
        if model_name == "Unknown":
            model = run_command(["sysctl", "-n", "hw.model"], timeout=self.timeout)
            if model and model.strip():
                model_name = model.strip()
        if chip == "Unknown" and platform.processor():
            chip = platform.processor()

        if model_name != "Unknown":
            self._hardware = (model_name, chip)
        return model_name, chip

    def get(self) -> SystemInfo:
        model_name, chip = self._hardware_info()

        mac_version = platform.mac_ver()[0]
        os_version = f"macOS {mac_version}" if mac_version else f"{platform.system()} {platform.release()}"

        boot_time = None
        uptime = 0.0
        try:
            boot = psutil.boot_time()
            boot_time = datetime.fromtimestamp(boot)
            uptime = max(0.0, time.time() - boot)
        except Exception as e:
            logger.warning(f"Failed to read boot time: {e}")

        return SystemInfo(
            model_name=model_name,
            chip_name=chip,
            os_version=os_version,
            kernel_version=platform.version() or "Unknown",
            uptime_seconds=uptime,
            boot_time=boot_time,
        )
