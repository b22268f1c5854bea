"""Linux sources, hardware detection and the default channel catalogue."""

import glob
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from ..config import Settings
from ..errors import AcquisitionError, SampleError
from .base import MetricDefinition, MetricDisplayConfig, Unit
from .channel import ChannelGroup, MetricChannel
from .registry import MetricRegistry
from .samplers import (
    BusyRatioSampler,
    GaugeSampler,
    KeyedSampler,
    RateSampler,
    RatioGaugeSampler,
)
from .sources import (
    CallableSource,
    CommandResult,
    Counters,
    FileSource,
    ProcessSource,
    RawReadingSource,
    counters_from,
)

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
PHYSICAL_DISK = re.compile(r"^(sd[a-z]+|vd[a-z]+|nvme\d+n\d+)$")
# user nice system idle iowait irq softirq steal; guest time is already in user
CPU_TIME_FIELDS = 8

CPU_KEYWORDS = ["cpu", "core", "package", "soc", "k10temp", "coretemp"]
GPU_KEYWORDS = ["gpu", "graphics", "nvidia", "amdgpu", "radeon"]


def parse_proc_stat(text: str) -> Tuple[Counters, Dict[str, Counters]]:
    """Idle and total jiffies, overall and per core, from ``/proc/stat``."""
    totals: Optional[Counters] = None
    cores: Dict[str, Counters] = {}
    for line in text.splitlines():
        if not line.startswith("cpu"):
            continue
        parts = line.split()
        try:
            values = [int(part) for part in parts[1 : CPU_TIME_FIELDS + 1]]
        except ValueError as exc:
            raise SampleError(f"Malformed /proc/stat line: {line!r}") from exc
        if len(values) < 4:
            raise SampleError(f"Malformed /proc/stat line: {line!r}")
        idle = values[3] + (values[4] if len(values) > 4 else 0)
        counters = {"idle": float(idle), "total": float(sum(values))}
        if parts[0] == "cpu":
            totals = counters
        else:
            cores[parts[0]] = counters
    if totals is None:
        raise SampleError("/proc/stat has no aggregate cpu line")
    return totals, cores


def parse_diskstats(text: str) -> Tuple[Counters, Dict[str, Counters]]:
    """Byte and operation counters for physical disks from ``/proc/diskstats``."""
    devices: Dict[str, Counters] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 14 or not PHYSICAL_DISK.match(parts[2]):
            continue
        try:
            devices[parts[2]] = {
                "read_ops": float(parts[3]),
                "read_bytes": float(int(parts[5]) * SECTOR_SIZE),
                "write_ops": float(parts[7]),
                "write_bytes": float(int(parts[9]) * SECTOR_SIZE),
            }
        except ValueError as exc:
            raise SampleError(f"Malformed /proc/diskstats line: {line!r}") from exc
    totals = {
        key: sum(device[key] for device in devices.values())
        for key in ("read_ops", "read_bytes", "write_ops", "write_bytes")
    }
    return totals, devices


def parse_net_io(pernic: Dict[str, Any]) -> Tuple[Counters, Dict[str, Counters]]:
    interfaces = {
        name: {"rx_bytes": float(stats.bytes_recv), "tx_bytes": float(stats.bytes_sent)}
        for name, stats in pernic.items()
        if name != "lo"
    }
    totals = {
        "rx_bytes": sum(item["rx_bytes"] for item in interfaces.values()),
        "tx_bytes": sum(item["tx_bytes"] for item in interfaces.values()),
    }
    return totals, interfaces


def _aggregate_temperature(readings: Dict[str, Any], keywords: List[str]) -> Optional[float]:
    matches: List[float] = []
    for name, entries in readings.items():
        name_lc = name.lower()
        name_matches = any(keyword in name_lc for keyword in keywords)
        for entry in entries:
            label_lc = (entry.label or "").lower()
            label_matches = any(keyword in label_lc for keyword in keywords)
            if not (name_matches or label_matches):
                continue
            if entry.current is None:
                continue
            matches.append(entry.current)
    if not matches:
        return None
    return sum(matches) / len(matches)


def parse_temperatures(readings: Dict[str, Any]) -> Counters:
    """Average CPU and GPU sensor temperatures; absent sensors are omitted."""
    counters: Dict[str, float] = {}
    cpu = _aggregate_temperature(readings, CPU_KEYWORDS)
    if cpu is not None:
        counters["cpu"] = cpu
    gpu = _aggregate_temperature(readings, GPU_KEYWORDS)
    if gpu is not None:
        counters["gpu"] = gpu
    return counters


def parse_nvidia_smi(result: CommandResult) -> Tuple[Counters, Dict[str, Counters]]:
    """Parse ``--query-gpu=utilization.gpu,temperature.gpu`` CSV output.

    Driver warnings on stderr are tolerated as long as stdout has rows.
    """
    gpus: Dict[str, Counters] = {}
    for index, line in enumerate(result.stdout.strip().splitlines()):
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 2:
            continue
        try:
            gpus[f"gpu{index}"] = {"utilization": float(parts[0]), "temperature": float(parts[1])}
        except ValueError:
            continue
    if not gpus:
        detail = result.stderr.strip() or f"exit code {result.exit_code}"
        raise SampleError(f"nvidia-smi returned no GPU rows ({detail})")
    totals = {
        "utilization": sum(gpu["utilization"] for gpu in gpus.values()) / len(gpus),
        "temperature": max(gpu["temperature"] for gpu in gpus.values()),
    }
    return totals, gpus


def parse_busy_percent(text: str) -> Counters:
    try:
        return {"utilization": float(text.strip())}
    except ValueError as exc:
        raise SampleError(f"Unexpected gpu_busy_percent content: {text!r}") from exc


def _sensors_temperatures() -> Dict[str, Any]:
    try:
        return psutil.sensors_temperatures()
    except (AttributeError, NotImplementedError) as exc:
        raise AcquisitionError("Temperature sensors are not supported here", "temperatures") from exc


def _sensors_battery() -> Any:
    battery = psutil.sensors_battery() if hasattr(psutil, "sensors_battery") else None
    if battery is None:
        raise AcquisitionError("No battery present", "battery")
    return battery


def _load_average() -> Any:
    if not hasattr(psutil, "getloadavg"):
        raise AcquisitionError("Load average is not supported here", "loadavg")
    return dict(zip(("load1", "load5", "load15"), psutil.getloadavg()))


@dataclass(frozen=True)
class Hardware:
    """Devices found once at startup. Hot-plugged devices are not picked up."""

    gpu: Optional[str] = None  # "nvidia", "drm" or None
    gpu_busy_path: Optional[str] = None
    battery: bool = False
    disks: Tuple[str, ...] = field(default_factory=tuple)


def detect_hardware(proc_root: str = "/proc") -> Hardware:
    gpu: Optional[str] = None
    busy_path: Optional[str] = None
    if shutil.which("nvidia-smi"):
        gpu = "nvidia"
    else:
        candidates = sorted(glob.glob("/sys/class/drm/card*/device/gpu_busy_percent"))
        if candidates:
            gpu, busy_path = "drm", candidates[0]

    try:
        battery = hasattr(psutil, "sensors_battery") and psutil.sensors_battery() is not None
    except (OSError, RuntimeError) as exc:
        logger.warning("Battery detection failed: %s", exc)
        battery = False

    try:
        disks = tuple(sorted(parse_diskstats(Path(proc_root, "diskstats").read_text())[1]))
    except (OSError, SampleError) as exc:
        logger.warning("Disk detection failed: %s", exc)
        disks = ()

    hardware = Hardware(gpu=gpu, gpu_busy_path=busy_path, battery=battery, disks=disks)
    logger.info(
        "Detected hardware: gpu=%s battery=%s disks=%s",
        hardware.gpu or "none",
        hardware.battery,
        ", ".join(hardware.disks) or "none",
    )
    return hardware


class SystemSources:
    """One source per OS read, shared by every channel derived from it."""

    def __init__(self, settings: Settings, hardware: Hardware) -> None:
        timeout = settings.acquisition_timeout_seconds
        proc = Path(settings.proc_root)
        self.cpu_times = FileSource(proc / "stat", parse_proc_stat, timeout=timeout)
        self.diskstats = FileSource(proc / "diskstats", parse_diskstats, timeout=timeout)
        self.net_io = CallableSource(
            "net_io_counters",
            lambda: psutil.net_io_counters(pernic=True),
            parse_net_io,
            timeout=timeout,
        )
        self.memory = CallableSource(
            "virtual_memory",
            psutil.virtual_memory,
            lambda mem: counters_from(mem, ("total", "available", "used", "percent")),
            timeout=timeout,
        )
        self.swap = CallableSource(
            "swap_memory",
            psutil.swap_memory,
            lambda swap: counters_from(swap, ("total", "used", "percent")),
            timeout=timeout,
        )
        self.root_usage = CallableSource(
            "disk_usage:/",
            lambda: psutil.disk_usage("/"),
            lambda usage: counters_from(usage, ("total", "used", "free")),
            timeout=timeout,
        )
        self.temperatures = CallableSource(
            "sensors_temperatures", _sensors_temperatures, parse_temperatures, timeout=timeout
        )
        self.load = CallableSource("loadavg", _load_average, timeout=timeout)
        self.battery = CallableSource(
            "sensors_battery",
            _sensors_battery,
            lambda battery: {"percent": float(battery.percent)},
            timeout=timeout,
        )
        self.gpu: Optional[RawReadingSource] = None
        if hardware.gpu == "nvidia":
            self.gpu = ProcessSource(
                [
                    "nvidia-smi",
                    "--query-gpu=utilization.gpu,temperature.gpu",
                    "--format=csv,noheader,nounits",
                ],
                parse_nvidia_smi,
                timeout=timeout,
                key="nvidia-smi",
            )
        elif hardware.gpu == "drm" and hardware.gpu_busy_path:
            self.gpu = FileSource(hardware.gpu_busy_path, parse_busy_percent, timeout=timeout)


def _definition(
    channel_id: str, name: str, description: str, unit: Unit, category: str = "system"
) -> MetricDefinition:
    return MetricDefinition(
        id=channel_id,
        name=name,
        description=description,
        category=category,
        display=MetricDisplayConfig(type="timeseries", unit=unit.value),
    )


def build_default_registry(settings: Settings, hardware: Hardware) -> MetricRegistry:
    """Register the per-second channels, the dashboard group and the battery group."""
    sources = SystemSources(settings, hardware)
    capacity = settings.history_capacity
    resume = settings.resume_window_seconds

    def channel(channel_id, sampler, source, interval, name, description, category="system"):
        return MetricChannel(
            channel_id,
            sampler,
            source,
            capacity=capacity,
            interval_seconds=interval,
            definition=_definition(channel_id, name, description, sampler.unit, category),
            resume_window_seconds=resume,
        )

    fast = settings.fast_interval_seconds
    registry = MetricRegistry()
    standalone = [
        channel("cpu.usage", BusyRatioSampler(), sources.cpu_times, fast,
                "CPU Usage", "Share of non-idle CPU time across all cores.", "cpu"),
        channel("cpu.cores", KeyedSampler(BusyRatioSampler()), sources.cpu_times, fast,
                "CPU Usage per Core", "Share of non-idle time for each core.", "cpu"),
        channel("memory.usage", GaugeSampler("percent", Unit.PERCENT), sources.memory, fast,
                "Memory Usage", "Virtual memory in use.", "memory"),
        channel("swap.usage", GaugeSampler("percent", Unit.PERCENT), sources.swap, fast,
                "Swap Usage", "Swap space in use.", "memory"),
        channel("disk.usage", RatioGaugeSampler("used", "total"), sources.root_usage, fast,
                "Disk Usage", "Used share of the root filesystem.", "disk"),
        channel("disk.read", RateSampler("read_bytes"), sources.diskstats, fast,
                "Disk Read", "Bytes read per second from physical disks.", "disk"),
        channel("disk.write", RateSampler("write_bytes"), sources.diskstats, fast,
                "Disk Write", "Bytes written per second to physical disks.", "disk"),
        channel("disk.read_per_device", KeyedSampler(RateSampler("read_bytes")),
                sources.diskstats, fast,
                "Disk Read per Device", "Bytes read per second for each disk.", "disk"),
        channel("disk.write_per_device", KeyedSampler(RateSampler("write_bytes")),
                sources.diskstats, fast,
                "Disk Write per Device", "Bytes written per second for each disk.", "disk"),
        channel("net.rx", RateSampler("rx_bytes"), sources.net_io, fast,
                "Download", "Bytes received per second on all interfaces but loopback.",
                "network"),
        channel("net.tx", RateSampler("tx_bytes"), sources.net_io, fast,
                "Upload", "Bytes sent per second on all interfaces but loopback.", "network"),
        channel("net.rx_per_interface", KeyedSampler(RateSampler("rx_bytes")), sources.net_io,
                fast, "Download per Interface", "Bytes received per second per interface.",
                "network"),
        channel("net.tx_per_interface", KeyedSampler(RateSampler("tx_bytes")), sources.net_io,
                fast, "Upload per Interface", "Bytes sent per second per interface.",
                "network"),
        channel("temperature.cpu", GaugeSampler("cpu", Unit.CELSIUS), sources.temperatures,
                fast, "CPU Temperature", "Average of the CPU sensors.", "sensors"),
    ]
    if sources.gpu is not None:
        standalone.append(
            channel("gpu.usage", GaugeSampler("utilization", Unit.PERCENT), sources.gpu, fast,
                    "GPU Usage", "GPU utilisation reported by the driver.", "gpu")
        )
        standalone.append(
            channel("temperature.gpu", GaugeSampler("gpu", Unit.CELSIUS), sources.temperatures,
                    fast, "GPU Temperature", "Average of the GPU sensors.", "sensors")
        )
    for item in standalone:
        registry.register(item)

    dash = settings.dashboard_interval_seconds
    members = [
        channel("dashboard.cpu", BusyRatioSampler(), sources.cpu_times, dash,
                "CPU", "CPU usage.", "dashboard"),
        channel("dashboard.memory", GaugeSampler("percent", Unit.PERCENT), sources.memory, dash,
                "Memory", "Memory usage.", "dashboard"),
        channel("dashboard.disk", RatioGaugeSampler("used", "total"), sources.root_usage, dash,
                "Disk", "Root filesystem usage.", "dashboard"),
        channel("dashboard.net_rx", RateSampler("rx_bytes"), sources.net_io, dash,
                "Download", "Bytes received per second.", "dashboard"),
        channel("dashboard.net_tx", RateSampler("tx_bytes"), sources.net_io, dash,
                "Upload", "Bytes sent per second.", "dashboard"),
        channel("dashboard.cpu_temp", GaugeSampler("cpu", Unit.CELSIUS), sources.temperatures,
                dash, "CPU Temperature", "CPU temperature.", "dashboard"),
        channel("dashboard.load1", GaugeSampler("load1", Unit.LOAD), sources.load, dash,
                "Load", "One minute load average.", "dashboard"),
    ]
    if sources.gpu is not None:
        members.append(
            channel("dashboard.gpu", GaugeSampler("utilization", Unit.PERCENT), sources.gpu,
                    dash, "GPU", "GPU usage.", "dashboard")
        )
        members.append(
            channel("dashboard.gpu_temp", GaugeSampler("gpu", Unit.CELSIUS),
                    sources.temperatures, dash, "GPU Temperature", "GPU temperature.", "dashboard")
        )
    registry.register(
        ChannelGroup(
            "dashboard",
            members,
            dash,
            definition=MetricDefinition(
                id="dashboard",
                name="Summary",
                description="System overview refreshed as one snapshot.",
                category="dashboard",
                display=MetricDisplayConfig(type="group"),
            ),
        )
    )

    if hardware.battery:
        battery_interval = settings.battery_interval_seconds
        registry.register(
            ChannelGroup(
                "battery",
                [
                    channel("battery.level", GaugeSampler("percent", Unit.PERCENT),
                            sources.battery, battery_interval,
                            "Battery Level", "Remaining charge.", "battery"),
                ],
                battery_interval,
                definition=MetricDefinition(
                    id="battery",
                    name="Battery",
                    description="Battery charge history.",
                    category="battery",
                    display=MetricDisplayConfig(type="group"),
                ),
            )
        )
    return registry
