"""
模拟端到端集成测试 (unittest)
"""

import unittest

import structlog

from changefeed_sim.config import generate_config_template, load_config_from_string
from changefeed_sim.core.engine import SimulationEngine
from changefeed_sim.models.event import CaptureMethod, OpCode
from changefeed_sim.models.scenario import Scenario
from changefeed_sim.models.sim_config import (
    ApplyPolicy,
    LaneSettings,
    RunnerSettings,
    SimulationConfig,
)
from changefeed_sim.models.source import SourceKind, SourceOp
from changefeed_sim.models.state import ControllerState
from changefeed_sim.scenario import generate_scenario, park_miller

PROPERTY_SEEDS = range(11, 35)


def property_config(scenario: Scenario) -> SimulationConfig:
    """属性测试使用的通道参数"""
    return SimulationConfig(
        scenario=scenario,
        lanes=LaneSettings(
            polling={"poll_interval_ms": 200, "include_soft_deletes": True},
            trigger={"extract_interval_ms": 150, "trigger_overhead_ms": 6},
            log={"fetch_interval_ms": 25},
        ),
        runner=RunnerSettings(step_ms=50, drain_ms=2000),
    )


def expected_final_state(ops):
    """按源操作计算最终行状态"""
    state = {}
    for op in ops:
        key = (op.table, op.primary_key)
        if op.kind == SourceKind.INSERT:
            state[key] = dict(op.after_image or {})
        elif op.kind == SourceKind.UPDATE and key in state:
            state[key].update(op.after_image or {})
        elif op.kind == SourceKind.DELETE:
            state.pop(key, None)
    return state


class TestScenarioGenerator(unittest.TestCase):
    """场景生成测试"""

    def test_park_miller_sequence(self):
        """测试最小标准发生器的前几个值"""
        rng = park_miller(1)
        self.assertAlmostEqual(rng(), 16806 / 2147483646)
        self.assertAlmostEqual(rng(), (282475249 - 1) / 2147483646)

    def test_zero_seed_is_usable(self):
        values = [park_miller(0)() for _ in range(2)]
        self.assertTrue(all(0 <= v < 1 for v in values))

    def test_deterministic(self):
        """测试同一种子生成同一场景"""
        self.assertEqual(generate_scenario(17), generate_scenario(17))
        self.assertNotEqual(generate_scenario(17).ops, generate_scenario(18).ops)

    def test_shape(self):
        """测试操作数量、时间递增并且至少有一条删除"""
        for seed in PROPERTY_SEEDS:
            scenario = generate_scenario(seed)
            times = [op.logical_time for op in scenario.ops]

            self.assertEqual(scenario.name, f"property-{seed}")
            self.assertGreaterEqual(len(scenario.ops), 6)
            self.assertLessEqual(len(scenario.ops), 18)
            self.assertEqual(times, sorted(times))
            self.assertTrue(any(op.kind == SourceKind.DELETE for op in scenario.ops))
            self.assertEqual(scenario.ops[0].kind, SourceKind.INSERT)


class TestCaptureProperties(unittest.TestCase):
    """三种捕获方式的属性测试"""

    def test_generated_scenarios(self):
        """测试随机场景下各通道的丢失、乱序和延迟特征"""
        for seed in PROPERTY_SEEDS:
            with self.subTest(seed=seed):
                scenario = generate_scenario(seed)
                engine = SimulationEngine(property_config(scenario))
                results = {r.method: r for r in engine.run()}

                polling = engine.events(CaptureMethod.POLLING)
                trigger = engine.events(CaptureMethod.TRIGGER)
                log = engine.events(CaptureMethod.LOG)

                for events in (trigger, log):
                    times = [e.commit_time for e in events]
                    self.assertEqual(times, sorted(times))

                self.assertEqual(results["polling"].totals.extra, 0)
                self.assertTrue(results["trigger"].totals.is_clean())
                self.assertTrue(results["log"].totals.is_clean())

                deletes = sum(1 for op in scenario.ops if op.kind == SourceKind.DELETE)
                self.assertEqual(sum(1 for e in trigger if e.op_code == OpCode.DELETE), deletes)
                self.assertEqual(sum(1 for e in log if e.op_code == OpCode.DELETE), deletes)
                self.assertLessEqual(sum(1 for e in polling if e.op_code == OpCode.DELETE), deletes)

                self.assertLessEqual(results["trigger"].lag.max, 50)
                self.assertLessEqual(results["log"].lag.max, 5)

    def test_log_destination_matches_source(self):
        """测试日志通道排空后目标镜像与源最终状态一致"""
        for seed in PROPERTY_SEEDS:
            with self.subTest(seed=seed):
                scenario = generate_scenario(seed)
                engine = SimulationEngine(property_config(scenario))
                engine.run()

                lane = engine.lanes[CaptureMethod.LOG]
                self.assertEqual(lane.destination, expected_final_state(scenario.ops))
                self.assertEqual(lane.metrics.snapshot().backlog, 0)

    def test_log_sequence_implies_commit_order(self):
        """测试日志通道序号递增时提交时间不减"""
        engine = SimulationEngine(property_config(generate_scenario(23)))
        engine.run()
        events = engine.events(CaptureMethod.LOG)

        for earlier, later in zip(events, events[1:]):
            self.assertLess(earlier.sequence, later.sequence)
            self.assertLessEqual(earlier.commit_time, later.commit_time)


class TestTemplateScenario(unittest.TestCase):
    """模板场景测试"""

    def setUp(self):
        self.config = load_config_from_string(generate_config_template())
        self.engine = SimulationEngine(self.config)
        self.results = {r.method: r for r in self.engine.run()}
        self.status = self.engine.get_status()

    def test_log_lane_clean_and_materialized(self):
        """测试日志通道完全一致，目标镜像包含快照行和新增字段"""
        self.assertTrue(self.results["log"].totals.is_clean())

        lane = self.engine.lanes[CaptureMethod.LOG]
        self.assertEqual(set(lane.destination), {("customers", "C-0"), ("customers", "C-1")})
        self.assertEqual(lane.destination[("customers", "C-1")]["status"], "complete")
        self.assertIsNone(lane.destination[("customers", "C-0")]["region"])

        schema_events = [e for e in self.engine.events(CaptureMethod.LOG) if e.op_code == OpCode.SCHEMA]
        self.assertEqual(len(schema_events), 1)
        self.assertEqual(schema_events[0].primary_key, "region")

    def test_polling_lane_lossy(self):
        """测试轮询通道合并变更并丢失删除"""
        polling = self.results["polling"]
        self.assertEqual(polling.totals.extra, 0)
        self.assertEqual(polling.totals.missing, 4)
        self.assertEqual(self.status["polling"].metrics.missed_deletes, 1)

    def test_trigger_lane_amplified(self):
        """测试触发器通道写放大和开销"""
        self.assertTrue(self.results["trigger"].totals.is_clean())
        self.assertEqual(self.status["trigger"].metrics.write_amplification, 2.0)
        self.assertEqual(self.results["trigger"].lag.max, 8)

    def test_status(self):
        """测试状态查询"""
        for method, status in self.status.items():
            self.assertEqual(status.state, ControllerState.TAILING)
            self.assertEqual(status.topic, f"cdc.{method}")
            self.assertEqual(status.metrics.snapshot_rows, 1)
            self.assertEqual(status.metrics.backlog, 0)
            self.assertEqual(status.metrics.produced, status.emitted_events)


class TestBackpressure(unittest.TestCase):
    """两种背压语义测试"""

    def _engine(self):
        ops = [
            SourceOp(logical_time=t, kind="insert", primary_key=str(t), after_image={"n": t})
            for t in range(100, 600, 100)
        ]
        config = SimulationConfig(
            scenario=Scenario(name="backpressure", ops=ops),
            lanes=LaneSettings(enabled=["log"], log={"fetch_interval_ms": 50}),
            runner=RunnerSettings(step_ms=50, apply_interval_ms=100, apply_batch_size=2),
        )
        return SimulationEngine(config)

    def test_apply_pause_grows_backlog(self):
        """测试消费暂停时生产继续、积压增长"""
        engine = self._engine()
        engine.start()
        engine.pause_apply()
        for _ in range(14):
            engine.step()

        status = engine.get_status()["log"]
        self.assertTrue(status.apply_paused)
        self.assertEqual(status.metrics.produced, 5)
        self.assertEqual(status.metrics.consumed, 0)
        self.assertEqual(status.metrics.backlog, 5)
        self.assertEqual(engine.bus.size("cdc.log"), 5)

        engine.resume_apply()
        engine.step(100)
        self.assertEqual(engine.get_status()["log"].metrics.consumed, 2)  # 受批量大小限制

        engine.run()
        status = engine.get_status()["log"]
        self.assertEqual(status.metrics.backlog, 0)
        self.assertEqual(status.destination_rows, 5)

    def test_controller_pause_stops_production(self):
        """测试控制器暂停时不产生事件"""
        engine = self._engine()
        engine.start()
        engine.pause()
        for _ in range(14):
            engine.step()

        status = engine.get_status()["log"]
        self.assertEqual(status.state, ControllerState.PAUSED)
        self.assertEqual(status.metrics.produced, 0)

        engine.resume()
        engine.step()
        self.assertEqual(engine.get_status()["log"].metrics.produced, 5)

        results = engine.run()
        self.assertTrue(results[0].totals.is_clean())

    def test_step_before_start_is_noop(self):
        engine = self._engine()
        self.assertEqual(engine.step(), 0)
        self.assertEqual(engine.now_ms, 0)


class TestResetDeterminism(unittest.TestCase):
    """重置确定性测试"""

    def test_reset_replays_identically(self):
        """测试同一种子重置后重新运行结果一致"""
        engine = SimulationEngine(property_config(generate_scenario(29)))
        engine.run()
        first = {m: [e.to_dict() for e in engine.events(m)] for m in engine.lanes}

        engine.reset(29)
        self.assertEqual(engine.now_ms, 0)
        self.assertEqual(engine.events(CaptureMethod.LOG), [])
        self.assertEqual(engine.get_status()["log"].state, ControllerState.IDLE)

        engine.run()
        second = {m: [e.to_dict() for e in engine.events(m)] for m in engine.lanes}
        self.assertEqual(first, second)

    def test_stop(self):
        """测试停止后所有通道回到 IDLE，事件和目标镜像一并清空"""
        engine = SimulationEngine(property_config(generate_scenario(11)))
        first = [r.model_dump() for r in engine.run()]
        engine.stop()
        engine.stop()

        self.assertFalse(engine.is_running())
        self.assertEqual(engine.now_ms, 0)
        for status in engine.get_status().values():
            self.assertEqual(status.state, ControllerState.IDLE)
            self.assertEqual(status.metrics.produced, 0)
            self.assertEqual(status.emitted_events, 0)
            self.assertEqual(status.destination_rows, 0)

        # 停止后重新运行会从头重放场景
        self.assertEqual([r.model_dump() for r in engine.run()], first)

    def test_stop_and_reset_clear_log_context(self):
        """测试停止和重置后场景上下文不再附加到日志"""
        engine = SimulationEngine(property_config(generate_scenario(13)))
        engine.start()
        self.assertEqual(structlog.contextvars.get_contextvars().get("scenario"), "property-13")

        engine.stop()
        self.assertNotIn("scenario", structlog.contextvars.get_contextvars())

        engine.start()
        engine.reset()
        self.assertNotIn("scenario", structlog.contextvars.get_contextvars())


class TestApplyPolicy(unittest.TestCase):
    """目标端应用策略测试"""

    def _config(self, policy):
        config = load_config_from_string(generate_config_template())
        runner = config.runner.model_copy(update={"apply_policy": policy, "apply_batch_size": 1})
        return config.model_copy(update={"runner": runner})

    def test_policy_from_runner_settings(self):
        engine = SimulationEngine(self._config(ApplyPolicy.APPLY_AS_POLLED))
        for status in engine.get_status().values():
            self.assertEqual(status.apply_policy, ApplyPolicy.APPLY_AS_POLLED)

    def test_both_policies_converge_after_drain(self):
        """测试两种策略排空后目标镜像一致"""
        destinations = []
        for policy in ApplyPolicy:
            engine = SimulationEngine(self._config(policy))
            engine.run()
            lane = engine.lanes[CaptureMethod.LOG]
            self.assertEqual(lane.buffered_events, 0)
            destinations.append(lane.destination)

        self.assertEqual(destinations[0], destinations[1])

    def test_set_apply_policy(self):
        engine = SimulationEngine(self._config(ApplyPolicy.APPLY_ON_COMMIT))
        engine.set_apply_policy("apply-as-polled", CaptureMethod.TRIGGER)

        status = engine.get_status()
        self.assertEqual(status["trigger"].apply_policy, ApplyPolicy.APPLY_AS_POLLED)
        self.assertEqual(status["log"].apply_policy, ApplyPolicy.APPLY_ON_COMMIT)


if __name__ == "__main__":
    unittest.main()
