"""
生命周期状态模型
"""

from enum import Enum

from pydantic import BaseModel, Field

from changefeed_sim.models.metrics import MetricsSnapshot
from changefeed_sim.models.sim_config import ApplyPolicy


class ControllerState(str, Enum):
    """生命周期控制器状态"""
    IDLE = "IDLE"  # 空闲
    SNAPSHOTTING = "SNAPSHOTTING"  # 快照中
    TAILING = "TAILING"  # 跟踪中
    PAUSED = "PAUSED"  # 暂停


class LaneStatus(BaseModel):
    """
    通道状态信息

    运行时状态查询返回的数据。
    """
    method: str = Field(..., description="捕获方式")
    state: ControllerState = Field(default=ControllerState.IDLE, description="控制器状态")
    topic: str = Field(default="", description="总线主题")
    apply_paused: bool = Field(default=False, description="是否暂停消费应用")
    apply_policy: ApplyPolicy = Field(default=ApplyPolicy.APPLY_ON_COMMIT, description="目标端应用策略")
    emitted_events: int = Field(default=0, ge=0, description="已发布事件总数")
    destination_rows: int = Field(default=0, ge=0, description="目标镜像行数")
    buffered_events: int = Field(default=0, ge=0, description="等待事务提交的事件数")
    metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot, description="指标快照")

    def is_running(self) -> bool:
        """检查是否在跟踪中"""
        return self.state == ControllerState.TAILING
