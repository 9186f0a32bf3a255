"""Power sources (battery/UPS), adapter details and power consumption."""
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from .collector import COMMAND_TIMEOUT, read_macmon_sample, run_command
from .models import (
    AdapterInfo,
    BatteryInfo,
    PowerConsumption,
    PowerSourceDescriptor,
    SystemInfo,
    UPSInfo,
)

logger = logging.getLogger(__name__)

AC_POWER = "AC Power"
BATTERY_POWER = "Battery Power"
UPS_POWER = "UPS Power"

# Model-number fragments used by common APC / CyberPower units
UPS_MODEL_PATTERNS = ("LE", "CP", "BR", "BE", "BX", "SMT", "SMC", "RT", "SUA", "DG")

# chip name fragment -> (base watts, max CPU watts, max GPU watts); first match wins
CHIP_POWER_PROFILES = [
    ("M2 Ultra", (15.0, 50.0, 40.0)),
    ("M2", (10.0, 25.0, 20.0)),
    ("M1", (8.0, 20.0, 15.0)),
]
DEFAULT_POWER_PROFILE = (25.0, 60.0, 30.0)
GPU_IDLE_SHARE = 0.3

# model name fragment -> typical adapter rating in watts
ADAPTER_WATTAGE_ESTIMATES = [
    ("MacBook Air", 35.0),
    ("MacBook Pro", 96.0),
    ("MacBook", 30.0),
    ("Mac mini", 150.0),
    ("iMac", 143.0),
    ("Mac Studio", 370.0),
    ("Mac Pro", 1400.0),
]

PROFILE_CACHE_SECONDS = 60.0


# --- pmset -----------------------------------------------------------------

_SOURCE_LINE = re.compile(r"^\s*-(?P<name>.+?)\s+\(id=\d+\)\s*(?P<rest>.*)$")


def parse_pmset_batt(output: str) -> tuple[str, list[PowerSourceDescriptor]]:
    """
    Parse `pmset -g batt`.

    Example:
        Now drawing from 'AC Power'
         -InternalBattery-0 (id=4653155)	100%; charged; 0:00 remaining present: true

    Returns the active source name and one descriptor per listed source.
    """
    drawing_from = ""
    sources = []
    for line in output.splitlines():
        match = re.search(r"Now drawing from '([^']*)'", line)
        if match:
            drawing_from = match.group(1)
            continue

        match = _SOURCE_LINE.match(line)
        if not match:
            continue
        name = match.group("name").strip()
        rest = match.group("rest")
        fields = [part.strip() for part in rest.split(";")]

        charge = 0.0
        percent = re.search(r"(\d+(?:\.\d+)?)%", rest)
        if percent:
            charge = float(percent.group(1))

        state = fields[1] if len(fields) > 1 else ""
        remaining = None
        hours = re.search(r"(\d+):(\d+) remaining", rest)
        if hours:
            remaining = int(hours.group(1)) * 60 + int(hours.group(2))

        present = re.search(r"present:\s*(true|false)", rest)

        sources.append(PowerSourceDescriptor(
            name=name,
            type="InternalBattery" if name.startswith("InternalBattery") else "External",
            state=state,
            charge_percent=charge,
            charging=state in ("charging", "finishing charge"),
            time_remaining_minutes=remaining,
            present=present.group(1) == "true" if present else True,
        ))
    return drawing_from, sources


# --- Classification --------------------------------------------------------

def is_internal_battery(source: PowerSourceDescriptor) -> bool:
    return (
        "battery" in source.name.lower()
        or source.name == "InternalBattery"
        or "internal" in source.type.lower()
    )


def is_ups(source: PowerSourceDescriptor) -> bool:
    """Heuristic UPS detection; the internal battery is never a UPS."""
    if is_internal_battery(source):
        return False

    name = source.name.lower()
    source_type = source.type.lower()
    for keyword in ("ups", "uninterruptible"):
        if keyword in name or keyword in source_type:
            return True

    if any(pattern in source.name for pattern in UPS_MODEL_PATTERNS):
        return True

    return (
        source.charge_percent > 0
        and len(source.name) > 3
        and source.name not in ("Unknown", AC_POWER)
    )


def map_power_source_label(drawing_from: str, ups_state: str = "") -> str:
    """Human label for the UPS input: mains or running on its own battery."""
    if ups_state == "discharging" or drawing_from == BATTERY_POWER:
        return UPS_POWER
    if drawing_from in ("", AC_POWER):
        return AC_POWER
    return drawing_from


def battery_health_label(max_capacity_percent: int) -> str:
    if max_capacity_percent >= 80:
        return "Good"
    if max_capacity_percent >= 60:
        return "Fair"
    return "Poor"


# --- system_profiler SPPowerDataType ---------------------------------------

@dataclass(frozen=True)
class PowerProfile:
    """Battery and charger details from `system_profiler SPPowerDataType`."""
    cycle_count: int = 0
    max_capacity_percent: Optional[int] = None
    voltage_mv: float = 0.0
    amperage_ma: float = 0.0
    adapter_connected: bool = False
    adapter_wattage: float = 0.0
    adapter_name: str = ""


def _leading_number(value: str) -> Optional[float]:
    match = re.match(r"\s*(-?\d+(?:\.\d+)?)", value)
    return float(match.group(1)) if match else None


def parse_power_profile(output: str) -> PowerProfile:
    values = {}
    in_charger = False
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.endswith(":") and "Information" in line:
            in_charger = line.startswith("AC Charger")
            continue

        key, sep, value = line.partition(":")
        if not sep:
            continue
        key, value = key.strip(), value.strip()

        if in_charger:
            if key == "Connected":
                values["adapter_connected"] = value.lower() == "yes"
            elif key == "Wattage (W)":
                number = _leading_number(value)
                if number is not None:
                    values["adapter_wattage"] = number
            elif key == "Name":
                values["adapter_name"] = value
            continue

        number = _leading_number(value)
        if number is None:
            continue
        if key == "Cycle Count":
            values["cycle_count"] = int(number)
        elif key == "Maximum Capacity":
            values["max_capacity_percent"] = int(number)
        elif key == "Voltage (mV)":
            values["voltage_mv"] = number
        elif key == "Amperage (mA)":
            values["amperage_ma"] = number

    return PowerProfile(**values)


class PowerProfileReader:
    """system_profiler is slow, so its output is reused for a while."""

    def __init__(
        self,
        timeout: float = COMMAND_TIMEOUT,
        max_age: float = PROFILE_CACHE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.max_age = max_age
        self._clock = clock
        self._profile: Optional[PowerProfile] = None
        self._read_at = 0.0

    def read(self) -> Optional[PowerProfile]:
        now = self._clock()
        if self._profile is not None and now - self._read_at < self.max_age:
            return self._profile

        output = run_command(["system_profiler", "SPPowerDataType"], timeout=self.timeout)
        if output is None:
            return self._profile
        self._profile = parse_power_profile(output)
        self._read_at = now
        return self._profile


# --- Battery / UPS ---------------------------------------------------------

@dataclass(frozen=True)
class PowerSources:
    battery: Optional[BatteryInfo] = None
    ups: Optional[UPSInfo] = None
    drawing_from: str = ""

    @property
    def on_ac(self) -> bool:
        return self.drawing_from in ("", AC_POWER)


def build_power_sources(
    drawing_from: str,
    sources: list[PowerSourceDescriptor],
    profile: Optional[PowerProfile] = None,
) -> PowerSources:
    battery = None
    ups = None
    # On a laptop "Battery Power" means the internal battery, not the UPS
    ups_drawing_from = drawing_from
    if drawing_from == BATTERY_POWER and any(is_internal_battery(s) for s in sources):
        ups_drawing_from = ""

    for source in sources:
        if battery is None and is_internal_battery(source):
            max_capacity = 100
            cycle_count = 0
            voltage = amperage = 0.0
            health = "Unknown"
            if profile is not None:
                cycle_count = profile.cycle_count
                voltage, amperage = profile.voltage_mv, profile.amperage_ma
                if profile.max_capacity_percent is not None:
                    max_capacity = profile.max_capacity_percent
                    health = battery_health_label(max_capacity)
            battery = BatteryInfo(
                name=source.name,
                present=source.present,
                charging=source.charging,
                charge_percent=source.charge_percent,
                time_remaining_minutes=source.time_remaining_minutes,
                cycle_count=cycle_count,
                health_label=health,
                max_capacity_percent=max_capacity,
                voltage_mv=voltage,
                amperage_ma=amperage,
            )
        elif ups is None and is_ups(source):
            ups = UPSInfo(
                name=source.name,
                present=source.present,
                charging=source.charging,
                charge_percent=source.charge_percent,
                time_remaining_minutes=source.time_remaining_minutes,
                power_source_label=map_power_source_label(ups_drawing_from, source.state),
            )
    return PowerSources(battery=battery, ups=ups, drawing_from=drawing_from)


def get_psutil_battery() -> PowerSources:
    """Fallback for hosts without pmset."""
    if not hasattr(psutil, "sensors_battery"):
        return PowerSources()
    try:
        battery = psutil.sensors_battery()
    except Exception as e:
        logger.warning(f"Failed to read battery: {e}")
        return PowerSources()
    if battery is None:
        return PowerSources()

    remaining = None
    if battery.secsleft not in (psutil.POWER_TIME_UNLIMITED, psutil.POWER_TIME_UNKNOWN):
        remaining = battery.secsleft / 60
    info = BatteryInfo(
        present=True,
        charging=bool(battery.power_plugged) and battery.percent < 100,
        charge_percent=float(battery.percent),
        time_remaining_minutes=remaining,
    )
    return PowerSources(battery=info, drawing_from=AC_POWER if battery.power_plugged else BATTERY_POWER)


def get_power_sources(
    profile_reader: Optional[PowerProfileReader] = None,
    timeout: float = COMMAND_TIMEOUT,
) -> PowerSources:
    """Internal battery and UPS state."""
    output = run_command(["pmset", "-g", "batt"], timeout=timeout)
    if output is None:
        return get_psutil_battery()

    drawing_from, sources = parse_pmset_batt(output)
    profile = None
    if profile_reader is not None and any(is_internal_battery(s) for s in sources):
        profile = profile_reader.read()
    return build_power_sources(drawing_from, sources, profile)


# --- Power consumption -----------------------------------------------------

def _watts(data: dict, key: str) -> float:
    value = data.get(key)
    if isinstance(value, (int, float)) and value > 0:
        return float(value)
    return 0.0


def parse_macmon_power(data: dict) -> Optional[PowerConsumption]:
    """Measured power draw from a macmon sample."""
    if not any(key in data for key in ("cpu_power", "gpu_power", "ane_power", "all_power", "sys_power")):
        return None

    cpu = _watts(data, "cpu_power")
    gpu = _watts(data, "gpu_power")
    ane = _watts(data, "ane_power")
    total = _watts(data, "sys_power") or _watts(data, "all_power") or cpu + gpu + ane
    return PowerConsumption(cpu_watts=cpu, gpu_watts=gpu, total_watts=total, is_estimate=False)


def chip_power_profile(chip_name: str) -> tuple[float, float, float]:
    for fragment, profile in CHIP_POWER_PROFILES:
        if fragment in chip_name:
            return profile
    return DEFAULT_POWER_PROFILE


def estimate_power(chip_name: str, cpu_usage: float) -> PowerConsumption:
    """Base draw plus CPU scaled by load plus a fixed GPU share."""
    base, max_cpu, max_gpu = chip_power_profile(chip_name)
    cpu = cpu_usage / 100.0 * max_cpu
    gpu = GPU_IDLE_SHARE * max_gpu
    return PowerConsumption(
        cpu_watts=round(cpu, 2),
        gpu_watts=round(gpu, 2),
        total_watts=round(base + cpu + gpu, 2),
        is_estimate=True,
    )


def estimate_adapter_wattage(model_name: str) -> Optional[float]:
    for fragment, wattage in ADAPTER_WATTAGE_ESTIMATES:
        if fragment in model_name:
            return wattage
    return None


def build_adapter(
    profile: Optional[PowerProfile],
    model_name: str,
    on_ac: bool,
    total_watts: float,
) -> Optional[AdapterInfo]:
    """
    Adapter details, measured where system_profiler reports them.

    Input power is the system draw plus whatever goes into the battery;
    efficiency is that input as a share of the adapter rating.
    """
    if profile is not None and profile.adapter_wattage > 0:
        connected = profile.adapter_connected
        wattage = profile.adapter_wattage
        name = profile.adapter_name or f"{wattage:.0f}W Adapter"
        is_estimate = False
    elif on_ac:
        estimate = estimate_adapter_wattage(model_name)
        if estimate is None:
            return None
        connected, wattage, name, is_estimate = True, estimate, f"{estimate:.0f}W Adapter", True
    else:
        return None

    if not connected:
        return AdapterInfo(connected=False, wattage=wattage, name=name, is_estimate=is_estimate)

    charge_watts = 0.0
    if profile is not None:
        charge_watts = max(0.0, profile.voltage_mv * profile.amperage_ma / 1_000_000)
    input_power = total_watts + charge_watts
    efficiency = min(100.0, input_power / wattage * 100.0) if wattage > 0 else 0.0

    return AdapterInfo(
        connected=True,
        wattage=wattage,
        name=name,
        is_estimate=is_estimate,
        input_power_watts=round(input_power, 2),
        efficiency_percent=round(efficiency, 1),
    )


def get_power_consumption(
    cpu_usage: float,
    system_info: SystemInfo,
    sources: Optional[PowerSources] = None,
    profile_reader: Optional[PowerProfileReader] = None,
    timeout: float = COMMAND_TIMEOUT,
) -> PowerConsumption:
    """Measured draw when macmon is installed, chip-table estimate otherwise."""
    consumption = None
    sample = read_macmon_sample(timeout=timeout)
    if sample is not None:
        consumption = parse_macmon_power(sample)
    if consumption is None:
        consumption = estimate_power(system_info.chip_name, cpu_usage)

    profile = profile_reader.read() if profile_reader is not None else None
    on_ac = sources.on_ac if sources is not None else True
    adapter = build_adapter(profile, system_info.model_name, on_ac, consumption.total_watts)
    return consumption.model_copy(update={"adapter": adapter})
