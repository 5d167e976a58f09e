"""
指标与校验结果模型
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from changefeed_sim.models.event import OpCode


class MetricsSnapshot(BaseModel):
    """
    单条通道的指标快照

    每次调用 MetricsAggregator.snapshot() 时从计数器重新计算。
    """
    produced: int = Field(default=0, ge=0, description="已产生事件数")
    consumed: int = Field(default=0, ge=0, description="已消费事件数")
    backlog: int = Field(default=0, ge=0, description="积压事件数")
    lag_p50: float = Field(default=0.0, ge=0, description="延迟 P50（毫秒）")
    lag_p95: float = Field(default=0.0, ge=0, description="延迟 P95（毫秒）")
    missed_deletes: int = Field(default=0, ge=0, description="丢失的删除数")
    write_amplification: float = Field(default=0.0, ge=0, description="写放大系数")
    snapshot_rows: int = Field(default=0, ge=0, description="快照行数")
    errors: int = Field(default=0, ge=0, description="错误数")


class DiffIssueType(str, Enum):
    """校验问题类型"""
    MISSING = "missing"
    EXTRA = "extra"
    ORDERING = "ordering"


class LaneDiffIssue(BaseModel):
    """单条校验问题"""
    type: DiffIssueType
    op: OpCode
    pk: str
    expected_index: Optional[int] = None
    actual_index: Optional[int] = None
    expected_time: Optional[float] = None
    actual_time: Optional[float] = None


class LaneLagSample(BaseModel):
    """匹配对的延迟样本"""
    op: OpCode
    pk: str
    expected_time: float
    actual_time: float
    lag_ms: float


class DiffTotals(BaseModel):
    """各类问题计数"""
    missing: int = 0
    extra: int = 0
    ordering: int = 0

    def is_clean(self) -> bool:
        """是否完全一致"""
        return self.missing == 0 and self.extra == 0 and self.ordering == 0


class LaneLag(BaseModel):
    """延迟汇总"""
    max: float = 0.0
    top_samples: List[LaneLagSample] = Field(default_factory=list)


class LaneDiffResult(BaseModel):
    """
    单条通道的校验结果

    只由源操作列表和事件列表推导，不持有任何持久状态。
    """
    method: str
    totals: DiffTotals = Field(default_factory=DiffTotals)
    issues: List[LaneDiffIssue] = Field(default_factory=list)
    lag: LaneLag = Field(default_factory=LaneLag)
