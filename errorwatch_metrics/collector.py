"""
系统指标采集模块。

使用 psutil 读取 CPU、内存、网络计数器，把单调递增的累计值换算成
百分比与速率：
- CPU：同一次采集内间隔 500ms 读取两次，按差值计算各类占比
- 网络：与上一次采集保存的计数器做差，按网卡计算每秒字节数
- 磁盘：仅输出根分区占位条目，数值全部为 0

MetricsCollector 自己持有网络计数器状态，不可并发调用。
"""
import asyncio
import logging
import platform
import socket
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple

import psutil

from errorwatch_metrics.exceptions import CollectionError

logger = logging.getLogger(__name__)

CPU_SAMPLE_WINDOW = 0.5  # 两次 CPU 读数之间的间隔（秒）
LOOPBACK_INTERFACE = "lo"

# psutil 的 guest 时间已计入 user，求总量时跳过避免重复计算
_CPU_EXCLUDED_FIELDS = ("guest", "guest_nice")

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


# ── 原始计数器读数 ──────────────────────────────────────────────────

class CpuTimes(NamedTuple):
    user: float
    system: float
    idle: float
    nice: float
    total: float


class MemoryReading(NamedTuple):
    total: int
    used: int
    free: int
    cached: int = 0
    swap_total: int = 0
    swap_used: int = 0
    swap_free: int = 0


class InterfaceCounters(NamedTuple):
    name: str
    rx_bytes: int
    tx_bytes: int


class PsutilCounters:
    """基于 psutil 的计数器来源。"""

    def cpu_times(self) -> CpuTimes:
        t = psutil.cpu_times()
        total = sum(
            getattr(t, name) for name in t._fields if name not in _CPU_EXCLUDED_FIELDS
        )
        return CpuTimes(
            user=t.user,
            system=t.system,
            idle=t.idle,
            nice=getattr(t, "nice", 0.0),
            total=total,
        )

    def memory(self) -> MemoryReading:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return MemoryReading(
            total=int(mem.total),
            used=int(mem.used),
            free=int(mem.free),
            cached=int(getattr(mem, "cached", 0)),
            swap_total=int(swap.total),
            swap_used=int(swap.used),
            swap_free=int(swap.free),
        )

    def network(self) -> List[InterfaceCounters]:
        counters = psutil.net_io_counters(pernic=True)
        return [
            InterfaceCounters(name=name, rx_bytes=int(c.bytes_recv), tx_bytes=int(c.bytes_sent))
            for name, c in counters.items()
        ]


# ── 上报数据模型 ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CpuMetrics:
    user: float
    system: float
    idle: float
    iowait: float = 0.0
    steal: float = 0.0
    nice: float = 0.0

    def to_dict(self) -> dict:
        return {
            "user": self.user,
            "system": self.system,
            "idle": self.idle,
            "iowait": self.iowait,
            "steal": self.steal,
            "nice": self.nice,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CpuMetrics":
        return cls(
            user=float(d["user"]),
            system=float(d["system"]),
            idle=float(d["idle"]),
            iowait=float(d.get("iowait", 0.0)),
            steal=float(d.get("steal", 0.0)),
            nice=float(d.get("nice", 0.0)),
        )


@dataclass(frozen=True)
class MemoryMetrics:
    total: int
    used: int
    free: int
    available: int
    cached: int = 0
    buffers: int = 0
    swap_total: int = 0
    swap_used: int = 0
    swap_free: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "used": self.used,
            "free": self.free,
            "available": self.available,
            "cached": self.cached,
            "buffers": self.buffers,
            "swapTotal": self.swap_total,
            "swapUsed": self.swap_used,
            "swapFree": self.swap_free,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "MemoryMetrics":
        return cls(
            total=int(d["total"]),
            used=int(d["used"]),
            free=int(d["free"]),
            available=int(d["available"]),
            cached=int(d.get("cached", 0)),
            buffers=int(d.get("buffers", 0)),
            swap_total=int(d.get("swapTotal", 0)),
            swap_used=int(d.get("swapUsed", 0)),
            swap_free=int(d.get("swapFree", 0)),
        )


@dataclass(frozen=True)
class DiskMetrics:
    device: str
    mount_point: str
    total: int = 0
    used: int = 0
    free: int = 0
    inodes_total: int = 0
    inodes_used: int = 0
    inodes_free: int = 0
    read_bytes: int = 0
    write_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "device": self.device,
            "mountPoint": self.mount_point,
            "total": self.total,
            "used": self.used,
            "free": self.free,
            "inodesTotal": self.inodes_total,
            "inodesUsed": self.inodes_used,
            "inodesFree": self.inodes_free,
            "readBytes": self.read_bytes,
            "writeBytes": self.write_bytes,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DiskMetrics":
        return cls(
            device=d["device"],
            mount_point=d["mountPoint"],
            total=int(d.get("total", 0)),
            used=int(d.get("used", 0)),
            free=int(d.get("free", 0)),
            inodes_total=int(d.get("inodesTotal", 0)),
            inodes_used=int(d.get("inodesUsed", 0)),
            inodes_free=int(d.get("inodesFree", 0)),
            read_bytes=int(d.get("readBytes", 0)),
            write_bytes=int(d.get("writeBytes", 0)),
        )


@dataclass(frozen=True)
class NetworkMetrics:
    """单个网卡的速率指标，rx_bytes / tx_bytes 单位为字节每秒。"""
    interface: str
    rx_bytes: int
    tx_bytes: int
    rx_packets: int = 0
    tx_packets: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0

    def to_dict(self) -> dict:
        return {
            "interface": self.interface,
            "rxBytes": self.rx_bytes,
            "txBytes": self.tx_bytes,
            "rxPackets": self.rx_packets,
            "txPackets": self.tx_packets,
            "rxErrors": self.rx_errors,
            "txErrors": self.tx_errors,
            "rxDropped": self.rx_dropped,
            "txDropped": self.tx_dropped,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "NetworkMetrics":
        return cls(
            interface=d["interface"],
            rx_bytes=int(d["rxBytes"]),
            tx_bytes=int(d["txBytes"]),
            rx_packets=int(d.get("rxPackets", 0)),
            tx_packets=int(d.get("txPackets", 0)),
            rx_errors=int(d.get("rxErrors", 0)),
            tx_errors=int(d.get("txErrors", 0)),
            rx_dropped=int(d.get("rxDropped", 0)),
            tx_dropped=int(d.get("txDropped", 0)),
        )


@dataclass(frozen=True)
class SystemMetrics:
    """一次采集周期产出的完整快照。"""
    hostname: str
    timestamp: int  # Unix 毫秒
    os: str
    cpu: CpuMetrics
    memory: MemoryMetrics
    os_version: str = ""
    architecture: str = ""
    disks: Tuple[DiskMetrics, ...] = field(default_factory=tuple)
    networks: Tuple[NetworkMetrics, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        """按上报协议（camelCase，空的可选字段省略）输出字典。"""
        d = {
            "hostname": self.hostname,
            "timestamp": self.timestamp,
            "os": self.os,
        }
        if self.os_version:
            d["osVersion"] = self.os_version
        if self.architecture:
            d["architecture"] = self.architecture
        d["cpu"] = self.cpu.to_dict()
        d["memory"] = self.memory.to_dict()
        if self.disks:
            d["disks"] = [disk.to_dict() for disk in self.disks]
        if self.networks:
            d["networks"] = [n.to_dict() for n in self.networks]
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "SystemMetrics":
        return cls(
            hostname=d["hostname"],
            timestamp=int(d["timestamp"]),
            os=d["os"],
            os_version=d.get("osVersion", ""),
            architecture=d.get("architecture", ""),
            cpu=CpuMetrics.from_dict(d["cpu"]),
            memory=MemoryMetrics.from_dict(d["memory"]),
            disks=tuple(DiskMetrics.from_dict(x) for x in d.get("disks", [])),
            networks=tuple(NetworkMetrics.from_dict(x) for x in d.get("networks", [])),
        )


class NetworkSample(NamedTuple):
    rx_bytes: int
    tx_bytes: int
    time: float


# ── 计算函数 ────────────────────────────────────────────────────────

def compute_cpu_percent(before: CpuTimes, after: CpuTimes) -> CpuMetrics:
    """根据两次 CPU 读数计算各类占比（百分比）。

    总量差为 0 时以 1 作为分母，结果为 0 而不是 NaN。
    iowait / steal 不由该计数器来源提供，固定为 0。
    """
    total = after.total - before.total
    if total == 0:
        total = 1
    return CpuMetrics(
        user=(after.user - before.user) / total * 100,
        system=(after.system - before.system) / total * 100,
        idle=(after.idle - before.idle) / total * 100,
        iowait=0.0,
        steal=0.0,
        nice=(after.nice - before.nice) / total * 100,
    )


def compute_rate(current: int, previous: int, elapsed: float) -> int:
    """计数器差值换算为每秒速率；计数器回绕或重置时返回 0。"""
    delta = current - previous
    if delta < 0:
        return 0
    return int(delta / elapsed)


def normalize_arch(machine: str) -> str:
    m = machine.lower()
    return _ARCH_ALIASES.get(m, m)


class MetricsCollector:
    """有状态的指标采集器。

    每次 collect() 读取一次计数器并返回 SystemMetrics，网络速率依赖
    上一次 collect() 保存的网卡计数器。调用方需保证串行调用。
    """

    def __init__(
        self,
        hostname: Optional[str] = None,
        counters=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.hostname = hostname or socket.gethostname()
        self.counters = counters if counters is not None else PsutilCounters()
        self._clock = clock
        self._sleep = sleep
        self._prev_network: Dict[str, NetworkSample] = {}

        uname = platform.uname()
        self.os = uname.system.lower()
        self.os_version = uname.release
        self.architecture = normalize_arch(uname.machine)

    async def collect(self) -> SystemMetrics:
        """采集一次完整快照。

        Raises:
            CollectionError: CPU、内存或网络计数器读取失败时抛出，
                不返回部分结果。
        """
        timestamp = int(time.time() * 1000)
        cpu = await self._collect_cpu()
        memory = self._collect_memory()
        networks = self._collect_network()
        disks = self._collect_disk()

        return SystemMetrics(
            hostname=self.hostname,
            timestamp=timestamp,
            os=self.os,
            os_version=self.os_version,
            architecture=self.architecture,
            cpu=cpu,
            memory=memory,
            disks=disks,
            networks=networks,
        )

    async def _collect_cpu(self) -> CpuMetrics:
        before = self._read("cpu", self.counters.cpu_times)
        await self._sleep(CPU_SAMPLE_WINDOW)
        after = self._read("cpu", self.counters.cpu_times)
        return compute_cpu_percent(before, after)

    def _collect_memory(self) -> MemoryMetrics:
        mem = self._read("memory", self.counters.memory)
        # available 与 free 取相同值，保持上报格式兼容
        return MemoryMetrics(
            total=mem.total,
            used=mem.used,
            free=mem.free,
            available=mem.free,
            cached=mem.cached,
            buffers=0,
            swap_total=mem.swap_total,
            swap_used=mem.swap_used,
            swap_free=mem.swap_free,
        )

    def _collect_network(self) -> Tuple[NetworkMetrics, ...]:
        interfaces = self._read("network", self.counters.network)
        now = self._clock()
        current: Dict[str, NetworkSample] = {}
        results = []

        for iface in interfaces:
            if iface.name == LOOPBACK_INTERFACE:
                continue

            prev = self._prev_network.get(iface.name)
            if prev is not None:
                elapsed = now - prev.time
                if elapsed > 0:
                    results.append(NetworkMetrics(
                        interface=iface.name,
                        rx_bytes=compute_rate(iface.rx_bytes, prev.rx_bytes, elapsed),
                        tx_bytes=compute_rate(iface.tx_bytes, prev.tx_bytes, elapsed),
                    ))

            current[iface.name] = NetworkSample(iface.rx_bytes, iface.tx_bytes, now)

        # 整体替换：本次未出现的网卡直接遗忘
        dropped = self._prev_network.keys() - current.keys()
        if dropped:
            logger.debug(f"Interfaces gone since last sample: {sorted(dropped)}")
        self._prev_network = current
        return tuple(results)

    def _collect_disk(self) -> Tuple[DiskMetrics, ...]:
        # 占位条目，尚未实现真实磁盘采集
        return (DiskMetrics(device="/", mount_point="/"),)

    @staticmethod
    def _read(kind: str, reader):
        try:
            return reader()
        except (OSError, psutil.Error) as e:
            raise CollectionError(f"failed to read {kind} counters: {e}") from e
