"""
changefeed-sim CDC 捕获方式模拟器

在同一条源变更流上模拟轮询、触发器（审计表）和日志跟踪 (WAL) 三种 CDC 方式，
统计各通道的延迟、积压、丢失删除和写放大，并与源操作逐条对账。
"""

from typing import Any

__version__ = "0.1.0"

# 延迟导入，避免循环依赖
__all__ = [
    "SimulationEngine",
    "LifecycleController",
    "SimulationConfig",
    "ChangeEvent",
    "SourceOp",
    "diff_lane",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """延迟加载核心类"""
    if name == "SimulationEngine":
        from changefeed_sim.core.engine import SimulationEngine
        return SimulationEngine
    elif name == "LifecycleController":
        from changefeed_sim.core.controller import LifecycleController
        return LifecycleController
    elif name == "SimulationConfig":
        from changefeed_sim.models.sim_config import SimulationConfig
        return SimulationConfig
    elif name == "ChangeEvent":
        from changefeed_sim.models.event import ChangeEvent
        return ChangeEvent
    elif name == "SourceOp":
        from changefeed_sim.models.source import SourceOp
        return SourceOp
    elif name == "diff_lane":
        from changefeed_sim.analysis.diff import diff_lane
        return diff_lane
    elif name == "load_config":
        from changefeed_sim.config import load_config
        return load_config
    raise AttributeError(f"module 'changefeed_sim' has no attribute '{name}'")
