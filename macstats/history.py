"""Fixed-capacity rolling series for sparklines."""
from collections import deque
from typing import Iterable, Optional

from pydantic import BaseModel

from .models import Histories

DEFAULT_CAPACITY = 30


class SeriesSummary(BaseModel):
    """Min/avg/max over a history buffer."""
    count: int
    minimum: Optional[float] = None
    average: Optional[float] = None
    maximum: Optional[float] = None


def summarize(values: Iterable[float]) -> SeriesSummary:
    """Single pass min/avg/max; empty input gives count 0."""
    values = list(values)
    if not values:
        return SeriesSummary(count=0)
    return SeriesSummary(
        count=len(values),
        minimum=min(values),
        average=sum(values) / len(values),
        maximum=max(values),
    )


class HistoryBuffer:
    """FIFO of the most recent values; the oldest is evicted on overflow."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, values: Iterable[float] = ()):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._values: deque[float] = deque(values, maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._values.maxlen

    def append(self, value: float) -> None:
        self._values.append(float(value))

    def values(self) -> tuple[float, ...]:
        return tuple(self._values)

    def summary(self) -> SeriesSummary:
        return summarize(self._values)

    def __len__(self) -> int:
        return len(self._values)


class MetricHistories:
    """The four series tracked by the fast cadence."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.cpu = HistoryBuffer(capacity)
        self.cpu_temp = HistoryBuffer(capacity)
        self.upload = HistoryBuffer(capacity)
        self.download = HistoryBuffer(capacity)

    def append(self, cpu: float, cpu_temp: float, upload: float, download: float) -> None:
        self.cpu.append(cpu)
        self.cpu_temp.append(cpu_temp)
        self.upload.append(upload)
        self.download.append(download)

    def freeze(self) -> Histories:
        return Histories(
            cpu=self.cpu.values(),
            cpu_temp=self.cpu_temp.values(),
            upload=self.upload.values(),
            download=self.download.values(),
        )

    def summaries(self) -> dict[str, SeriesSummary]:
        return {
            "cpu": self.cpu.summary(),
            "cpu_temp": self.cpu_temp.summary(),
            "upload": self.upload.summary(),
            "download": self.download.summary(),
        }
