"""Shared fakes for monitor and API tests."""
from macstats.config import Config, NetworkConfig, SamplingConfig
from macstats.models import (
    DiskUsage,
    FanInfo,
    MemoryUsage,
    PowerConsumption,
    ProcessSample,
    SystemInfo,
    TemperatureReading,
    UPSInfo,
)
from macstats.network import RawInterface
from macstats.power import PowerSources
from macstats.rates import CpuTicks

GB = 1000 * 1000 * 1000


def make_config(**sampling) -> Config:
    sampling.setdefault("debounce_seconds", 0.01)
    return Config(
        sampling=SamplingConfig(**sampling),
        network=NetworkConfig(discover_bonds=False),
    )


class FakeProbes:
    """Deterministic probe set. `n` tags every value produced by one pass."""

    def __init__(self):
        self.n = 1
        self.ticks = [CpuTicks(user=100, idle=900), CpuTicks(user=150, idle=950)]
        self.bytes_in = 0
        self.ups_label = None
        self.watts = 12.5
        self.block = None  # threading.Event to hold the memory probe
        self.power_calls = []

    def cpu_ticks(self):
        if len(self.ticks) > 1:
            return self.ticks.pop(0)
        return self.ticks[0]

    def temperature(self, cpu_usage, recent):
        return TemperatureReading(celsius=45.0, is_estimate=False, source="macmon")

    def fan(self, cpu_usage, temperature):
        return FanInfo(rpm=1500)

    def memory(self):
        if self.block is not None:
            self.block.wait(5)
        return MemoryUsage(used_bytes=self.n, total_bytes=10 ** 9)

    def disk(self):
        return DiskUsage(free_bytes=self.n, total_bytes=10 ** 9)

    def interfaces(self):
        return [
            RawInterface("lo0", 5000, 5000, True, True),
            RawInterface("en0", self.bytes_in, self.bytes_in // 2, True, True),
        ]

    def bond_members(self, name):
        return []

    def power_sources(self):
        if self.ups_label is None:
            return PowerSources()
        ups = UPSInfo(
            name="Back-UPS ES 700",
            present=True,
            charge_percent=90,
            time_remaining_minutes=25,
            power_source_label=self.ups_label,
        )
        return PowerSources(ups=ups, drawing_from="AC Power")

    def system_info(self):
        return SystemInfo(model_name="MacBook Pro", chip_name="Apple M2 Pro", os_version="macOS 14.5")

    def top_processes(self, sort_key, count):
        rows = [ProcessSample(pid=i, name=f"proc{i}", cpu_percent=i * 2.0, memory_percent=i * 1.0) for i in range(8)]
        key = "memory_percent" if sort_key == "memory" else "cpu_percent"
        return sorted(rows, key=lambda p: getattr(p, key), reverse=True)[:count]

    def power(self, cpu_usage, system_info, sources):
        self.power_calls.append(system_info)
        return PowerConsumption(cpu_watts=4.0, gpu_watts=1.5, total_watts=self.watts, is_estimate=False)
