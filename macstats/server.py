"""Local read-mostly HTTP API over the published snapshot."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from .config import Config
from .database import Database
from .external_ip import ExternalIPPoller
from .models import InterfaceSelection, IntervalSettings
from .monitor import SystemMonitor
from .notifier import Notifier
from .scheduler import SamplingScheduler

logger = logging.getLogger(__name__)


def convert_temperature(celsius: float, unit: str) -> float:
    if unit == "fahrenheit":
        return round(celsius * 9 / 5 + 32, 1)
    return round(celsius, 1)


def _monitor(request: Request) -> SystemMonitor:
    monitor = request.app.state.monitor
    if not monitor:
        raise HTTPException(status_code=503, detail="Monitor not initialized")
    return monitor


def _poller(request: Request) -> ExternalIPPoller:
    poller = request.app.state.poller
    if not poller:
        raise HTTPException(status_code=503, detail="External IP poller not initialized")
    return poller


def create_app(
    config: Config,
    monitor: Optional[SystemMonitor] = None,
    poller: Optional[ExternalIPPoller] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The monitor and poller are built during startup unless passed in.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting macstats...")

        notifier = Notifier(config.notifications)
        scheduler = SamplingScheduler()
        if app.state.monitor is None:
            app.state.monitor = SystemMonitor(config, notifier, scheduler=scheduler)
        if app.state.poller is None:
            app.state.poller = ExternalIPPoller(
                config, notifier, Database(config.cache.path), scheduler=scheduler
            )

        app.state.monitor.start()
        app.state.poller.start()

        yield

        # Shutdown
        app.state.poller.stop()
        app.state.monitor.close()
        scheduler.shutdown()
        await app.state.poller.close()
        await notifier.close()
        logger.info("macstats stopped")

    app = FastAPI(
        title="macstats",
        description="Host telemetry snapshot: CPU, memory, disk, network, power and public IP",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.monitor = monitor
    app.state.poller = poller

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        current = request.app.state.monitor
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "monitor_running": bool(current and current.running),
            "initial_data_loaded": bool(current and current.snapshot.initial_data_loaded),
        }

    @app.get("/snapshot")
    async def get_snapshot(request: Request):
        """Latest published snapshot."""
        snapshot = _monitor(request).snapshot
        unit = config.display.temperature_unit
        data = snapshot.model_dump(mode="json")
        data["display"] = {
            "temperature_unit": unit,
            "cpu_temperature": convert_temperature(snapshot.cpu_temperature.celsius, unit),
            "memory_used_gb": round(snapshot.memory.used_gb, 2),
            "memory_total_gb": round(snapshot.memory.total_gb, 2),
            "memory_percent": round(snapshot.memory.percent, 1),
            "disk_free_gb": round(snapshot.disk.free_gb, 2),
            "disk_total_gb": round(snapshot.disk.total_gb, 2),
        }
        return data

    @app.get("/histories")
    async def get_histories(request: Request):
        """Rolling series with min/avg/max."""
        histories = _monitor(request).histories
        return {
            "capacity": histories.cpu.capacity,
            "series": histories.freeze().model_dump(mode="json"),
            "summaries": {name: s.model_dump() for name, s in histories.summaries().items()},
        }

    @app.get("/interfaces")
    async def list_interfaces(request: Request):
        """Selectable logical network interfaces."""
        monitor = _monitor(request)
        return {"interfaces": list(monitor.interfaces), "selected": monitor.selected_interface}

    @app.get("/external-ip")
    async def get_external_ip(request: Request):
        """Last known public address."""
        return _poller(request).state.model_dump(mode="json")

    @app.post("/external-ip/refresh")
    async def refresh_external_ip(request: Request):
        """Look up the public address now."""
        poller = _poller(request)
        started = await poller.refresh()
        return {
            "status": "refreshed" if started else "in_progress",
            "state": poller.state.model_dump(mode="json"),
        }

    @app.put("/settings/intervals")
    async def update_intervals(settings: IntervalSettings, request: Request):
        """Change sampling intervals; the cadences restart with an immediate pass."""
        monitor = _monitor(request)
        monitor.set_intervals(settings.fast_interval_seconds, settings.slow_interval_seconds)

        result = settings.model_dump(exclude_none=True)
        if settings.ip_interval_minutes is not None:
            result["ip_effective_interval_seconds"] = _poller(request).set_interval(settings.ip_interval_minutes)
        logger.info(f"Interval update requested: {result}")
        return {"status": "ok", "applied": result}

    @app.put("/settings/interface")
    async def select_interface(selection: InterfaceSelection, request: Request):
        """Choose the interface whose throughput is reported."""
        monitor = _monitor(request)
        if not monitor.select_interface(selection.name):
            raise HTTPException(status_code=404, detail=f"Unknown interface: {selection.name}")
        return {"status": "ok", "selected": monitor.selected_interface}

    return app
