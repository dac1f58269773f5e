"""
测试基础配置

提供可编程的计数器来源、假时钟和不真正休眠的 sleep，
采集器测试不依赖真实系统计数器，也不会等待 500ms。
"""
from typing import List, Optional

import pytest

from errorwatch_metrics.collector import (
    CpuMetrics,
    CpuTimes,
    DiskMetrics,
    InterfaceCounters,
    MemoryMetrics,
    MetricsCollector,
    MemoryReading,
    NetworkMetrics,
    SystemMetrics,
)
from errorwatch_metrics.config import AgentConfig


class FakeCounters:
    """按调用顺序依次返回预设读数；读数为异常实例时抛出。"""

    def __init__(self, cpu=None, memory=None, network=None):
        self.cpu_readings: List = list(cpu or [])
        self.memory_reading = memory or MemoryReading(total=8_000, used=6_000, free=2_000)
        self.network_readings: List = list(network or [])

    @staticmethod
    def _next(readings: List, default):
        value = readings.pop(0) if readings else default
        if isinstance(value, Exception):
            raise value
        return value

    def cpu_times(self) -> CpuTimes:
        return self._next(self.cpu_readings, CpuTimes(0, 0, 0, 0, 0))

    def memory(self) -> MemoryReading:
        if isinstance(self.memory_reading, Exception):
            raise self.memory_reading
        return self.memory_reading

    def network(self) -> List[InterfaceCounters]:
        return self._next(self.network_readings, [])


class FakeClock:
    def __init__(self, *times: float):
        self.times = list(times)
        self.current = times[0] if times else 0.0

    def __call__(self) -> float:
        if self.times:
            self.current = self.times.pop(0)
        return self.current


@pytest.fixture
def sleeps():
    """记录 sleep 调用的秒数，不真正等待。"""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def make_collector(fake_sleep):
    def _make(counters: Optional[FakeCounters] = None, clock=None, hostname: str = "web-01"):
        return MetricsCollector(
            hostname=hostname,
            counters=counters or FakeCounters(),
            clock=clock or FakeClock(100.0),
            sleep=fake_sleep,
        )
    return _make


@pytest.fixture
def agent_config():
    return AgentConfig(
        endpoint="http://ingest.test",
        api_key="ew_live_0123456789",
        host_id="host-42",
        hostname="web-01",
        collection_interval=10,
        tags={"env": "production", "region": "eu-west"},
    )


@pytest.fixture
def sample_metrics():
    return SystemMetrics(
        hostname="web-01",
        timestamp=1_760_000_000_123,
        os="linux",
        os_version="6.8.0-45-generic",
        architecture="amd64",
        cpu=CpuMetrics(user=12.5, system=4.25, idle=83.25, nice=0.1),
        memory=MemoryMetrics(
            total=16_000_000_000,
            used=12_000_000_000,
            free=4_000_000_000,
            available=4_000_000_000,
            cached=2_500_000_000,
            swap_total=2_147_483_648,
            swap_used=1_048_576,
            swap_free=2_146_435_072,
        ),
        disks=(DiskMetrics(device="/", mount_point="/"),),
        networks=(NetworkMetrics(interface="eth0", rx_bytes=500, tx_bytes=200),),
    )
