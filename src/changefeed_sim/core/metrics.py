"""
指标聚合器 - 每条通道独立持有一个实例
"""

import time
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

from changefeed_sim.models.event import ChangeEvent
from changefeed_sim.models.metrics import MetricsSnapshot
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

# 延迟样本环形缓冲区容量
LAG_SAMPLE_CAPACITY = 2000

LagSampleAggregator = Callable[[List[float]], None]


def _wall_clock_ms() -> float:
    return time.time() * 1000


def percentile(sorted_values: List[float], fraction: float) -> float:
    """
    线性插值百分位数

    参数:
        sorted_values: 升序排列的样本
        fraction: 百分位 (0-1)

    返回:
        百分位值，样本为空时返回 0
    """
    if not sorted_values:
        return 0.0
    index = (len(sorted_values) - 1) * fraction
    lower = int(index)
    upper = min(lower + 1, len(sorted_values) - 1)
    if lower == upper:
        return float(sorted_values[lower])
    weight = index - lower
    return float(sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight)


class MetricsAggregator:
    """
    指标聚合器

    统计产生/消费数量、积压、延迟分布、丢失删除和写放大。
    延迟样本保存在有界环形缓冲区中，长时间运行内存不增长。
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        capacity: int = LAG_SAMPLE_CAPACITY
    ):
        """
        初始化聚合器

        参数:
            clock: 返回当前毫秒时间的函数，默认使用墙上时钟
            capacity: 延迟样本容量
        """
        self._clock = clock or _wall_clock_ms
        self._capacity = capacity
        self._lag_aggregators: List[LagSampleAggregator] = []
        self._lag_samples: Deque[float] = deque(maxlen=capacity)
        self._zero_counters()

    def _zero_counters(self) -> None:
        self.produced = 0
        self.consumed = 0
        self.backlog = 0
        self.missed_deletes = 0
        self.snapshot_rows = 0
        self.errors = 0
        self._extra_writes = 0.0
        self._source_writes = 0.0
        self._lag_samples.clear()

    def on_produced(self, events: List[ChangeEvent]) -> None:
        """记录产生的事件"""
        self.produced += len(events)
        self.backlog += len(events)

    def on_consumed(
        self,
        events: List[ChangeEvent],
        now_ms: Optional[float] = None
    ) -> None:
        """
        记录消费的事件并采集延迟

        参数:
            events: 已消费事件
            now_ms: 消费时间，默认取时钟当前值
        """
        self.consumed += len(events)
        self.backlog = max(0, self.backlog - len(events))

        now = self._clock() if now_ms is None else now_ms
        for event in events:
            self._lag_samples.append(max(0.0, now - event.commit_time))

        self._notify_lag_aggregators()

    def register_lag_aggregator(self, aggregator: LagSampleAggregator) -> Callable[[], None]:
        """
        注册延迟样本订阅者

        注册时立即以当前样本回调一次。

        返回:
            取消订阅函数
        """
        self._lag_aggregators.append(aggregator)
        self._safe_invoke(aggregator, list(self._lag_samples))

        def unsubscribe() -> None:
            if aggregator in self._lag_aggregators:
                self._lag_aggregators.remove(aggregator)

        return unsubscribe

    def record_missed_delete(self, count: int = 1) -> None:
        """记录丢失的删除"""
        self.missed_deletes += count

    def record_write_amplification(
        self,
        extra_writes: float = 1,
        source_writes: float = 1
    ) -> None:
        """
        累计写放大

        写放大 = 1 + Σextra / Σsource；非正数增量被忽略。
        """
        if extra_writes > 0:
            self._extra_writes += extra_writes
        if source_writes > 0:
            self._source_writes += source_writes

    def record_snapshot_rows(self, count: int) -> None:
        """累计快照行数"""
        self.snapshot_rows += max(0, count)

    def record_error(self) -> None:
        """记录错误"""
        self.errors += 1

    @property
    def write_amplification(self) -> float:
        """当前写放大系数，没有源写入时为 0"""
        if self._source_writes <= 0:
            return 0.0
        return 1 + self._extra_writes / self._source_writes

    def lag_samples(self) -> List[float]:
        """返回当前延迟样本副本"""
        return list(self._lag_samples)

    def snapshot(self) -> MetricsSnapshot:
        """计算指标快照"""
        ordered = sorted(self._lag_samples)
        return MetricsSnapshot(
            produced=self.produced,
            consumed=self.consumed,
            backlog=max(0, self.backlog),
            lag_p50=percentile(ordered, 0.5),
            lag_p95=percentile(ordered, 0.95),
            missed_deletes=self.missed_deletes,
            write_amplification=self.write_amplification,
            snapshot_rows=self.snapshot_rows,
            errors=self.errors,
        )

    def reset(self) -> None:
        """清零全部计数并以空列表通知订阅者"""
        self._zero_counters()
        self._notify_lag_aggregators()

    def _notify_lag_aggregators(self) -> None:
        if not self._lag_aggregators:
            return
        samples = list(self._lag_samples)
        for aggregator in list(self._lag_aggregators):
            self._safe_invoke(aggregator, samples)

    def _safe_invoke(self, aggregator: LagSampleAggregator, samples: Iterable[float]) -> None:
        # 每个订阅者拿到独立副本，异常只记录不传播
        try:
            aggregator(list(samples))
        except Exception as e:
            logger.warning(
                "lag_aggregator_failed",
                aggregator=getattr(aggregator, "__name__", type(aggregator).__name__),
                error=str(e)
            )
