"""
生命周期控制器 - 快照 → 跟踪的状态机
"""

from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from changefeed_sim.adapters.base import CaptureAdapter
from changefeed_sim.core.event_bus import EventBus
from changefeed_sim.core.metrics import MetricsAggregator
from changefeed_sim.core.scheduler import Scheduler
from changefeed_sim.models.event import ChangeEvent, SchemaAction, SchemaColumn
from changefeed_sim.models.scenario import SnapshotTable
from changefeed_sim.models.source import SourceOp
from changefeed_sim.models.state import ControllerState
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

PublishCallback = Callable[[List[ChangeEvent]], None]


class LifecycleController:
    """
    生命周期控制器

    状态转换:
        IDLE → SNAPSHOTTING → TAILING ⇄ PAUSED
        stop() 从任意状态回到 IDLE

    适配器输出的事件经由控制器发布到总线主题，并计入指标。
    PAUSED 状态下不再推进适配器，因此不会产生事件。
    """

    def __init__(
        self,
        adapter: CaptureAdapter,
        bus: EventBus,
        metrics: MetricsAggregator,
        scheduler: Optional[Scheduler] = None,
        topic: Optional[str] = None
    ):
        """
        初始化控制器

        参数:
            adapter: 捕获适配器
            bus: 事件总线
            metrics: 本通道的指标聚合器
            scheduler: 逻辑时钟调度器（可选）
            topic: 总线主题，默认 cdc.<method>
        """
        self.adapter = adapter
        self.bus = bus
        self.metrics = metrics
        self.scheduler = scheduler or Scheduler()
        self._topic = topic or f"cdc.{adapter.method.value}"
        self._state = ControllerState.IDLE
        self._observers: List[PublishCallback] = []

        if adapter.metrics is None:
            adapter.bind_metrics(metrics)
        self._unsubscribe = adapter.on_event(self._on_adapter_event)

    @property
    def current_state(self) -> ControllerState:
        return self._state

    @property
    def topic(self) -> str:
        return self._topic

    def on_published(self, callback: PublishCallback) -> Callable[[], None]:
        """
        订阅已发布（带偏移量）的事件批次

        返回:
            取消订阅函数
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def start_snapshot(self, tables: Iterable[SnapshotTable] = ()) -> int:
        """
        开始快照

        仅在 IDLE 状态有效，其他状态下忽略。

        返回:
            快照行数
        """
        if self._state != ControllerState.IDLE:
            logger.debug(
                "snapshot_ignored",
                method=self.adapter.method.value,
                state=self._state.value
            )
            return 0

        self._transition(ControllerState.SNAPSHOTTING)
        rows = self.adapter.snapshot(tables)
        self.metrics.record_snapshot_rows(rows)
        return rows

    def start_tailing(self) -> None:
        """开始跟踪（已在跟踪时为空操作）"""
        if self._state == ControllerState.TAILING:
            return
        self._transition(ControllerState.TAILING)

    def pause(self) -> None:
        """暂停，仅 TAILING → PAUSED"""
        if self._state == ControllerState.TAILING:
            self._transition(ControllerState.PAUSED)

    def resume(self) -> None:
        """恢复，仅 PAUSED → TAILING"""
        if self._state == ControllerState.PAUSED:
            self._transition(ControllerState.TAILING)

    def stop(self) -> None:
        """
        停止

        回到 IDLE，取消调度任务，清空总线主题和指标。可重复调用。
        """
        self.scheduler.clear()
        self.adapter.stop()
        self.bus.reset(self._topic)
        self.metrics.reset()
        if self._state != ControllerState.IDLE:
            self._transition(ControllerState.IDLE)

    def apply_source_op(self, op: SourceOp) -> None:
        """转发源操作（任何状态下都会更新适配器的私有状态）"""
        self.adapter.apply_source_op(op)

    def apply_schema_change(
        self,
        table: str,
        action: Union[SchemaAction, str],
        column: Union[SchemaColumn, Mapping[str, Any]],
        commit_time: float
    ) -> None:
        """转发表结构变更"""
        self.adapter.apply_schema_change(table, action, column, commit_time)

    def tick(self, now_ms: float) -> int:
        """
        推进适配器

        仅在 TAILING 状态下转发。

        返回:
            适配器本次输出的事件数
        """
        if self._state != ControllerState.TAILING:
            return 0
        return self.adapter.tick(now_ms)

    def emit(self, events: List[ChangeEvent]) -> List[ChangeEvent]:
        """
        发布事件到总线

        返回:
            带偏移量的事件列表
        """
        published = self.bus.publish(self._topic, events)
        if not published:
            return published

        self.metrics.on_produced(published)
        for callback in list(self._observers):
            try:
                callback(list(published))
            except Exception as e:
                logger.warning(
                    "publish_observer_failed",
                    topic=self._topic,
                    error=str(e)
                )
                self.metrics.record_error()
        return published

    def detach(self) -> None:
        """解除与适配器的订阅"""
        self._unsubscribe()

    def _on_adapter_event(self, event: ChangeEvent) -> None:
        if self._state == ControllerState.IDLE:
            return
        self.emit([event])

    def _transition(self, state: ControllerState) -> None:
        previous = self._state
        self._state = state
        logger.info(
            "controller_state_changed",
            method=self.adapter.method.value,
            previous=previous.value,
            state=state.value
        )
