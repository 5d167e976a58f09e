"""
模拟引擎 - 核心协调器
"""

from typing import Dict, List, Optional

from changefeed_sim.analysis.diff import diff_all_lanes
from changefeed_sim.core.event_bus import EventBus
from changefeed_sim.core.lane import Lane
from changefeed_sim.models.event import CaptureMethod, ChangeEvent
from changefeed_sim.models.metrics import LaneDiffResult
from changefeed_sim.models.scenario import Scenario
from changefeed_sim.models.sim_config import ApplyPolicy, SimulationConfig
from changefeed_sim.models.state import LaneStatus
from changefeed_sim.utils.logging import bind_context, clear_context, get_logger

logger = get_logger(__name__)


class SimulationEngine:
    """
    模拟引擎 - 在同一条源操作流上并行运行多条捕获通道

    管理完整的模拟流程，包括：
    - 快照 → 跟踪的生命周期
    - 按逻辑时钟投放源操作和表结构变更
    - 各通道独立的输出节奏和消费批次
    - 控制器暂停与消费暂停两种背压
    - 校验
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        """
        初始化模拟引擎

        参数:
            config: 模拟配置
        """
        self.config = config or SimulationConfig()
        self.bus = EventBus()
        self.scenario: Scenario = self.config.scenario
        self._seed = self.scenario.seed
        self.lanes: Dict[CaptureMethod, Lane] = {}
        for method in self.config.lanes.enabled:
            self.lanes[method] = Lane(
                method,
                self.bus,
                options=self.config.lanes.options_for(method),
                seed=self.scenario.seed,
                apply_policy=self.config.runner.apply_policy,
            )

        self._now = 0.0
        self._op_index = 0
        self._schema_index = 0
        self._playing = False
        self._started = False

    @property
    def now_ms(self) -> float:
        return self._now

    def is_running(self) -> bool:
        """检查是否运行中"""
        return self._playing

    def load(self, scenario: Scenario) -> None:
        """
        加载场景

        清空各通道后回到初始状态，需要重新 start()。
        """
        self.scenario = scenario
        self.reset(scenario.seed)
        logger.info(
            "scenario_loaded",
            ops=len(scenario.ops),
            tables=len(scenario.tables),
            schema_changes=len(scenario.schema_changes)
        )

    def start(self) -> None:
        """
        启动模拟

        首次启动时对每条通道执行快照并进入跟踪；之后的调用等价于 resume()。
        """
        bind_context(scenario=self.scenario.name)

        if self._started:
            self.resume()
            self._playing = True
            return

        runner = self.config.runner
        for lane in self.lanes.values():
            lane.controller.start_snapshot(self.scenario.tables)
            lane.controller.start_tailing()
            lane.scheduler.every(
                runner.apply_interval_ms,
                self._drain_handler(lane),
                start_ms=self._now,
            )

        self._started = True
        self._playing = True
        logger.info(
            "simulation_started",
            lanes=[method.value for method in self.lanes],
            now_ms=self._now
        )

    def step(self, delta_ms: Optional[float] = None) -> int:
        """
        推进逻辑时钟

        参数:
            delta_ms: 推进量，默认 runner.step_ms

        返回:
            本步投放的源操作数
        """
        if not self._playing:
            return 0

        delta = self.config.runner.step_ms if delta_ms is None else delta_ms
        self._now += max(0.0, delta)

        applied = self._apply_due(self._now)
        for lane in self.lanes.values():
            lane.controller.tick(self._now)
            lane.scheduler.advance(self._now)
        return applied

    def run(self, drain_ms: Optional[float] = None) -> List[LaneDiffResult]:
        """
        运行场景直至排空

        从当前位置推进到最后一条源操作之后 drain_ms，然后校验。

        返回:
            每条通道的校验结果
        """
        if not self._playing:
            self.start()

        drain = self.config.runner.drain_ms if drain_ms is None else drain_ms
        horizon = self.scenario.last_op_time() + drain
        while self._now < horizon:
            self.step()

        logger.info("simulation_drained", now_ms=self._now, horizon=horizon)
        return self.verify()

    def pause(self, method: Optional[CaptureMethod] = None) -> None:
        """暂停控制器（适配器不再输出事件）"""
        for lane in self._select(method):
            lane.controller.pause()

    def resume(self, method: Optional[CaptureMethod] = None) -> None:
        """恢复控制器"""
        for lane in self._select(method):
            lane.controller.resume()

    def pause_apply(self, method: Optional[CaptureMethod] = None) -> None:
        """暂停消费应用（生产继续，积压增长）"""
        for lane in self._select(method):
            lane.apply_paused = True
        logger.info("apply_paused", lanes=[lane.method.value for lane in self._select(method)])

    def resume_apply(self, method: Optional[CaptureMethod] = None) -> None:
        """恢复消费应用"""
        for lane in self._select(method):
            lane.apply_paused = False
        logger.info("apply_resumed", lanes=[lane.method.value for lane in self._select(method)])

    def set_apply_policy(self, policy: ApplyPolicy, method: Optional[CaptureMethod] = None) -> None:
        """切换目标端应用策略"""
        policy = ApplyPolicy(policy)
        for lane in self._select(method):
            lane.set_apply_policy(policy)
        logger.info(
            "apply_policy_changed",
            policy=policy.value,
            lanes=[lane.method.value for lane in self._select(method)]
        )

    def stop(self) -> None:
        """
        停止全部通道

        与 reset() 一样清空各通道、事件记录和逻辑时钟，之后 start() 从头重放场景。
        """
        stopped_at = self._now
        self.reset(self._seed)
        logger.info("simulation_stopped", now_ms=stopped_at)

    def reset(self, seed: Optional[int] = None) -> None:
        """
        重置到初始状态

        参数:
            seed: 随机种子，默认使用场景的种子
        """
        seed = self.scenario.seed if seed is None else seed
        self._seed = seed
        for lane in self.lanes.values():
            lane.controller.stop()
            lane.adapter.reset(seed)
            lane.clear()
        self.bus.reset()

        self._now = 0.0
        self._op_index = 0
        self._schema_index = 0
        self._playing = False
        self._started = False
        logger.debug("simulation_reset", seed=seed)
        clear_context()

    def get_status(self) -> Dict[str, LaneStatus]:
        """获取各通道状态"""
        return {lane.method.value: lane.status() for lane in self.lanes.values()}

    def events(self, method: CaptureMethod) -> List[ChangeEvent]:
        """获取通道已发布的事件"""
        return self.lanes[CaptureMethod(method)].events

    def verify(self) -> List[LaneDiffResult]:
        """对每条通道执行校验"""
        results = diff_all_lanes(
            self.scenario.ops,
            [(lane.method.value, lane.events) for lane in self.lanes.values()],
        )
        for result in results:
            logger.info(
                "lane_verified",
                method=result.method,
                missing=result.totals.missing,
                extra=result.totals.extra,
                ordering=result.totals.ordering,
                max_lag_ms=result.lag.max
            )
        return results

    def _apply_due(self, now_ms: float) -> int:
        # 源操作按列表顺序投放，遇到未到期的操作即停止
        ops = self.scenario.ops
        changes = self.scenario.schema_changes
        applied = 0
        while True:
            next_op = ops[self._op_index] if self._op_index < len(ops) else None
            next_change = changes[self._schema_index] if self._schema_index < len(changes) else None
            op_due = next_op is not None and next_op.logical_time <= now_ms
            change_due = next_change is not None and next_change.logical_time <= now_ms

            if change_due and (not op_due or next_change.logical_time <= next_op.logical_time):
                self._schema_index += 1
                for lane in self.lanes.values():
                    lane.controller.apply_schema_change(
                        next_change.table,
                        next_change.action,
                        next_change.column,
                        next_change.logical_time,
                    )
            elif op_due:
                self._op_index += 1
                applied += 1
                for lane in self.lanes.values():
                    lane.controller.apply_source_op(next_op)
            else:
                return applied

    def _drain_handler(self, lane: Lane):
        batch_size = self.config.runner.apply_batch_size

        def handler(now_ms: float) -> None:
            lane.drain(now_ms, batch_size)

        return handler

    def _select(self, method: Optional[CaptureMethod]) -> List[Lane]:
        if method is None:
            return list(self.lanes.values())
        lane = self.lanes.get(CaptureMethod(method))
        return [lane] if lane is not None else []
