"""
场景模型 - 源操作序列、快照初始表、计划中的表结构变更
"""

from typing import Any, Dict, List

from pydantic import AliasChoices, BaseModel, Field, field_validator

from changefeed_sim.models.event import SchemaAction, SchemaColumn
from changefeed_sim.models.source import SourceOp, normalize_primary_key


class SeedRow(BaseModel):
    """快照开始前已存在的行"""
    primary_key: str = Field(
        ...,
        validation_alias=AliasChoices("primary_key", "id"),
        description="主键值",
    )
    image: Dict[str, Any] = Field(default_factory=dict, description="行数据")
    updated_at: float = Field(default=0, ge=0, description="最后更新时间")

    @field_validator("primary_key", mode="before")
    @classmethod
    def coerce_primary_key(cls, v: Any) -> Any:
        """主键统一转为字符串"""
        return normalize_primary_key(v)


class SnapshotTable(BaseModel):
    """
    快照表定义

    属性:
        name: 表名
        schema_version: 当前表结构版本
        columns: 字段定义
        rows: 已存在的行
    """
    name: str = Field(..., min_length=1, description="表名")
    schema_version: int = Field(default=1, ge=1, description="表结构版本")
    columns: List[SchemaColumn] = Field(default_factory=list, description="字段定义")
    rows: List[SeedRow] = Field(default_factory=list, description="已存在的行")


class ScheduledSchemaChange(BaseModel):
    """在指定逻辑时间执行的表结构变更"""
    logical_time: float = Field(..., ge=0, description="逻辑时间（毫秒）")
    table: str = Field(..., min_length=1, description="表名")
    action: SchemaAction = Field(..., description="变更动作")
    column: SchemaColumn = Field(..., description="字段定义")


class Scenario(BaseModel):
    """
    模拟场景

    属性:
        name: 场景名
        seed: 随机种子，reset 时传给每个适配器
        tables: 快照阶段读取的初始表
        ops: 源操作序列（顺序即基准顺序）
        schema_changes: 表结构变更计划
    """
    name: str = Field(default="scenario", description="场景名")
    seed: int = Field(default=42, description="随机种子")
    tables: List[SnapshotTable] = Field(default_factory=list, description="初始表")
    ops: List[SourceOp] = Field(default_factory=list, description="源操作序列")
    schema_changes: List[ScheduledSchemaChange] = Field(
        default_factory=list, description="表结构变更计划"
    )

    def last_op_time(self) -> float:
        """最后一条源操作或结构变更的时间"""
        times = [op.logical_time for op in self.ops]
        times.extend(change.logical_time for change in self.schema_changes)
        return max(times) if times else 0
