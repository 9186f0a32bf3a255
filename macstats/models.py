"""Data models for the published telemetry snapshot."""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

GB_DIVISOR = 1000 * 1000 * 1000  # decimal GB, matches the menu bar display


class FrozenModel(BaseModel):
    """Base for immutable value types."""
    model_config = ConfigDict(frozen=True)


class ThermalState(str, Enum):
    """Thermal pressure level reported by the OS."""
    NOMINAL = "nominal"
    FAIR = "fair"
    SERIOUS = "serious"
    CRITICAL = "critical"


class TemperatureReading(FrozenModel):
    """CPU temperature tagged with its provenance."""
    celsius: float = 0.0
    is_estimate: bool = True
    source: str = "none"  # macmon, sensors, load


class FanInfo(FrozenModel):
    """Fan speed estimate derived from thermal pressure."""
    rpm: float = 0.0
    max_rpm: float = 6000.0
    thermal_state: ThermalState = ThermalState.NOMINAL
    is_estimate: bool = True


class MemoryUsage(FrozenModel):
    """Physical memory usage in bytes."""
    used_bytes: int = 0
    total_bytes: int = 0

    @property
    def used_gb(self) -> float:
        return self.used_bytes / GB_DIVISOR

    @property
    def total_gb(self) -> float:
        return self.total_bytes / GB_DIVISOR

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100.0


class DiskUsage(FrozenModel):
    """Root volume capacity in bytes."""
    free_bytes: int = 0
    total_bytes: int = 0

    @property
    def free_gb(self) -> float:
        return self.free_bytes / GB_DIVISOR

    @property
    def total_gb(self) -> float:
        return self.total_bytes / GB_DIVISOR


class NetworkRates(FrozenModel):
    """Throughput of the selected logical interface."""
    upload_bytes_per_sec: float = Field(default=0.0, ge=0.0)
    download_bytes_per_sec: float = Field(default=0.0, ge=0.0)


class BatteryInfo(FrozenModel):
    """Internal (laptop) battery."""
    name: str = "Internal Battery"
    present: bool = False
    charging: bool = False
    charge_percent: float = 0.0
    time_remaining_minutes: Optional[float] = None
    cycle_count: int = 0
    health_label: str = "Unknown"
    max_capacity_percent: int = 100
    voltage_mv: float = 0.0
    amperage_ma: float = 0.0


class UPSInfo(FrozenModel):
    """External uninterruptible power supply."""
    name: str = "Unknown"
    present: bool = False
    charging: bool = False
    charge_percent: float = 0.0
    time_remaining_minutes: Optional[float] = None
    power_source_label: str = "Unknown"

    @property
    def on_battery(self) -> bool:
        return self.power_source_label == "UPS Power"


class PowerSourceDescriptor(FrozenModel):
    """One raw power source entry as reported by the OS."""
    name: str
    type: str = "Unknown"
    state: str = ""
    charge_percent: float = 0.0
    charging: bool = False
    time_remaining_minutes: Optional[float] = None
    present: bool = True


class AdapterInfo(FrozenModel):
    """Charger / power adapter details."""
    connected: bool = False
    wattage: float = 0.0
    name: str = "Unknown"
    is_estimate: bool = True
    input_power_watts: float = 0.0
    efficiency_percent: float = 0.0


class PowerConsumption(FrozenModel):
    """System power draw in watts."""
    cpu_watts: float = 0.0
    gpu_watts: float = 0.0
    total_watts: float = 0.0
    is_estimate: bool = True
    adapter: Optional[AdapterInfo] = None


class SystemInfo(FrozenModel):
    """Host identification and uptime."""
    model_name: str = "Unknown"
    chip_name: str = "Unknown"
    os_version: str = "Unknown"
    kernel_version: str = "Unknown"
    uptime_seconds: float = 0.0
    boot_time: Optional[datetime] = None


class ProcessSample(FrozenModel):
    """One row of the process table, valid for a single sample."""
    pid: int
    name: str
    cpu_percent: float = 0.0
    memory_percent: float = 0.0


class Histories(FrozenModel):
    """Rolling series used for sparklines, oldest first."""
    cpu: tuple[float, ...] = ()
    cpu_temp: tuple[float, ...] = ()
    upload: tuple[float, ...] = ()
    download: tuple[float, ...] = ()


class MetricSnapshot(FrozenModel):
    """Complete published state. Replaced wholesale, never mutated."""
    # Fast cadence
    cpu_usage_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    cpu_temperature: TemperatureReading = Field(default_factory=TemperatureReading)
    fan: FanInfo = Field(default_factory=FanInfo)
    memory: MemoryUsage = Field(default_factory=MemoryUsage)
    disk: DiskUsage = Field(default_factory=DiskUsage)
    network: NetworkRates = Field(default_factory=NetworkRates)
    network_interfaces: tuple[str, ...] = ()
    battery: Optional[BatteryInfo] = None
    ups: Optional[UPSInfo] = None
    system_info: SystemInfo = Field(default_factory=SystemInfo)
    top_cpu_processes: tuple[ProcessSample, ...] = ()
    top_memory_processes: tuple[ProcessSample, ...] = ()
    histories: Histories = Field(default_factory=Histories)
    initial_data_loaded: bool = False
    updated_at: Optional[datetime] = None

    # Slow cadence
    power: PowerConsumption = Field(default_factory=PowerConsumption)
    power_updated_at: Optional[datetime] = None


class ExternalIPState(FrozenModel):
    """Public address information owned by the IP poller."""
    external_ip: str = ""
    country_code: str = ""
    country_name: str = ""
    isp_name: str = ""
    is_loading: bool = False
    last_updated: Optional[datetime] = None


class IPChangeEvent(FrozenModel):
    """Raised when the public address differs from the previous one."""
    old_ip: str
    new_ip: str
    timestamp: datetime


class IntervalSettings(BaseModel):
    """Request body for changing sampling intervals at runtime."""
    fast_interval_seconds: Optional[float] = Field(default=None, ge=0.5)
    slow_interval_seconds: Optional[float] = Field(default=None, ge=1.0)
    ip_interval_minutes: Optional[float] = Field(default=None, gt=0)


class InterfaceSelection(BaseModel):
    """Request body for choosing the reported network interface."""
    name: str


class UPSPowerChangeEvent(FrozenModel):
    """Raised when a UPS switches between mains and battery."""
    ups_name: str
    on_battery: bool
    charge_percent: float
    time_remaining_minutes: Optional[float] = None
    outage_seconds: Optional[float] = None
    timestamp: datetime
