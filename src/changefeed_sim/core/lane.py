"""
通道 - 一种捕获方式的完整链路

适配器 → 控制器 → 总线主题 → 消费端 → 目标镜像
"""

import copy
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set, Tuple, Type

from changefeed_sim.adapters.base import CaptureAdapter
from changefeed_sim.adapters.log import LogAdapter
from changefeed_sim.adapters.polling import PollingAdapter
from changefeed_sim.adapters.trigger import TriggerAdapter
from changefeed_sim.core.controller import LifecycleController
from changefeed_sim.core.event_bus import EventBus
from changefeed_sim.core.metrics import MetricsAggregator
from changefeed_sim.core.scheduler import Scheduler
from changefeed_sim.models.event import CaptureMethod, ChangeEvent, OpCode, SchemaAction
from changefeed_sim.models.sim_config import AdapterOptions, ApplyPolicy
from changefeed_sim.models.state import LaneStatus
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

ADAPTER_TYPES: Dict[CaptureMethod, Type[CaptureAdapter]] = {
    CaptureMethod.POLLING: PollingAdapter,
    CaptureMethod.TRIGGER: TriggerAdapter,
    CaptureMethod.LOG: LogAdapter,
}


def create_adapter(
    method: CaptureMethod,
    options: Optional[AdapterOptions] = None,
    seed: int = 42
) -> CaptureAdapter:
    """
    创建适配器

    参数:
        method: 捕获方式
        options: 适配器参数
        seed: 随机种子
    """
    adapter_cls = ADAPTER_TYPES.get(CaptureMethod(method))
    if adapter_cls is None:
        raise ValueError(f"不支持的捕获方式: {method}")
    return adapter_cls(options=options, seed=seed)


class Lane:
    """
    单条模拟通道

    每条通道独立持有适配器、指标聚合器和调度器，只共享事件总线。
    消费端按批从总线拉取事件，写入目标镜像；apply_paused 时停止拉取，
    生产不受影响，积压随之增长。
    """

    def __init__(
        self,
        method: CaptureMethod,
        bus: EventBus,
        options: Optional[AdapterOptions] = None,
        seed: int = 42,
        metrics: Optional[MetricsAggregator] = None,
        apply_policy: ApplyPolicy = ApplyPolicy.APPLY_ON_COMMIT
    ):
        self.method = CaptureMethod(method)
        self.bus = bus
        self.metrics = metrics or MetricsAggregator()
        self.scheduler = Scheduler()
        self.adapter = create_adapter(self.method, options, seed)
        self.adapter.bind_metrics(self.metrics)
        self.controller = LifecycleController(
            self.adapter,
            bus,
            self.metrics,
            scheduler=self.scheduler,
        )
        self.apply_paused = False
        self.apply_policy = ApplyPolicy(apply_policy)
        self.destination: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._events: List[ChangeEvent] = []
        # 事务 id -> 已到达的事件，按首个事件到达顺序排列
        self._pending: "OrderedDict[str, List[ChangeEvent]]" = OrderedDict()
        self._committed: Set[str] = set()
        self.controller.on_published(self._events.extend)

    @property
    def topic(self) -> str:
        return self.controller.topic

    @property
    def events(self) -> List[ChangeEvent]:
        """已发布事件副本（按偏移量顺序）"""
        return list(self._events)

    @property
    def buffered_events(self) -> int:
        return sum(len(group) for group in self._pending.values())

    def set_apply_policy(self, policy: ApplyPolicy) -> None:
        """
        切换应用策略

        切换为 apply-as-polled 时，缓冲中的事件按到达顺序立即应用。
        """
        self.apply_policy = ApplyPolicy(policy)
        if self.apply_policy == ApplyPolicy.APPLY_AS_POLLED:
            for group in self._pending.values():
                for event in group:
                    self._apply_to_destination(event)
            self._pending.clear()
            self._committed.clear()

    def drain(self, now_ms: float, max_events: int) -> int:
        """
        从总线拉取一批事件并应用到目标镜像

        apply-on-commit 时事件先按事务缓冲，事务最后一条到达后整体应用；
        已完成的事务不会越过更早到达、尚未完成的事务。

        返回:
            拉取的事件数
        """
        if self.apply_paused:
            return 0

        batch = self.bus.consume(self.topic, max_events)
        if not batch:
            return 0

        self.metrics.on_consumed(batch, now_ms)
        if self.apply_policy == ApplyPolicy.APPLY_AS_POLLED:
            for event in batch:
                self._apply_to_destination(event)
        else:
            for event in batch:
                self._buffer(event)
            self._release_committed()

        logger.debug(
            "lane_batch_applied",
            method=self.method.value,
            count=len(batch),
            buffered=self.buffered_events,
            backlog=self.bus.size(self.topic)
        )
        return len(batch)

    def clear(self) -> None:
        """清空目标镜像、事务缓冲和事件记录"""
        self.destination.clear()
        self._events.clear()
        self._pending.clear()
        self._committed.clear()
        self.apply_paused = False

    def status(self) -> LaneStatus:
        return LaneStatus(
            method=self.method.value,
            state=self.controller.current_state,
            topic=self.topic,
            apply_paused=self.apply_paused,
            apply_policy=self.apply_policy,
            emitted_events=len(self._events),
            destination_rows=len(self.destination),
            buffered_events=self.buffered_events,
            metrics=self.metrics.snapshot(),
        )

    def _buffer(self, event: ChangeEvent) -> None:
        txn = event.transaction
        group = self._pending.setdefault(txn.id, [])
        group.append(event)
        if txn.is_last or (txn.total is not None and len(group) >= txn.total):
            self._committed.add(txn.id)

    def _release_committed(self) -> None:
        while self._pending:
            tx_id = next(iter(self._pending))
            if tx_id not in self._committed:
                break
            self._committed.discard(tx_id)
            for event in self._pending.pop(tx_id):
                self._apply_to_destination(event)

    def _apply_to_destination(self, event: ChangeEvent) -> None:
        key = (event.table, event.primary_key)
        if event.op_code in (OpCode.CREATE, OpCode.UPDATE):
            image = copy.deepcopy(event.after_image or {})
            if event.op_code == OpCode.UPDATE and key in self.destination:
                self.destination[key].update(image)
            else:
                self.destination[key] = image
        elif event.op_code == OpCode.DELETE:
            self.destination.pop(key, None)
        elif event.op_code == OpCode.SCHEMA and event.schema_change is not None:
            column = event.schema_change.column.name
            for (table, _), row in self.destination.items():
                if table != event.table:
                    continue
                if event.schema_change.action == SchemaAction.ADD_COLUMN:
                    row.setdefault(column, None)
                else:
                    row.pop(column, None)
