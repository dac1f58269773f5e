"""
Agent 主循环模块。

按固定间隔执行"采集 → 发送"，单轮失败只记录日志，下一轮照常进行。
退出时关闭 HTTP 连接池。
"""
import asyncio
import logging
from typing import Optional

from errorwatch_metrics.collector import MetricsCollector, SystemMetrics
from errorwatch_metrics.config import AgentConfig
from errorwatch_metrics.exceptions import MetricsAgentError
from errorwatch_metrics.transport import MetricsTransport

logger = logging.getLogger(__name__)


class MetricsAgent:
    def __init__(
        self,
        config: AgentConfig,
        collector: Optional[MetricsCollector] = None,
        transport: Optional[MetricsTransport] = None,
    ):
        self.config = config
        self.collector = collector or MetricsCollector(hostname=config.hostname)
        self.transport = transport or MetricsTransport(config)
        self._stop = asyncio.Event()

    async def collect_and_send(self) -> SystemMetrics:
        """执行一轮采集与发送，异常向上抛出。"""
        metrics = await self.collector.collect()
        await self.transport.send(metrics)

        mem = metrics.memory
        mem_percent = mem.used / mem.total * 100 if mem.total else 0.0
        logger.info(
            "Metrics sent: CPU=%.1f%%, Memory=%.1f%%",
            metrics.cpu.user + metrics.cpu.system,
            mem_percent,
        )
        return metrics

    def stop(self):
        """请求停止主循环（可在信号处理中通过 loop.call_soon_threadsafe 调用）。"""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _tick(self, first: bool = False):
        try:
            await self.collect_and_send()
        except MetricsAgentError as e:
            prefix = "Initial collection failed" if first else "Collection failed"
            logger.warning(f"{prefix}: {e}")

    async def _run_tick(self, first: bool = False):
        """执行一轮；stop() 时取消正在进行的采集或发送。"""
        tick = asyncio.create_task(self._tick(first=first))
        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({tick, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            if not tick.done():
                tick.cancel()
                await asyncio.gather(tick, return_exceptions=True)
        if not tick.cancelled():
            tick.result()

    async def run(self):
        """立即执行一轮，然后按 collection_interval 固定频率循环，直到 stop()。"""
        interval = self.config.collection_interval
        loop = asyncio.get_running_loop()
        logger.info(f"Metrics loop started (interval={interval}s)")
        try:
            next_tick = loop.time()
            await self._run_tick(first=True)
            while not self._stop.is_set():
                next_tick += interval
                now = loop.time()
                if next_tick < now:
                    # 单轮耗时超过间隔时丢弃错过的节拍
                    next_tick = now
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=next_tick - now)
                except asyncio.TimeoutError:
                    pass
                if self._stop.is_set():
                    break
                await self._run_tick()
        finally:
            logger.info("Metrics loop stopped, closing transport")
            await self.transport.aclose()
