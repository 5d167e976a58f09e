"""
适配器私有状态模型 - 行镜像、审计表记录、WAL 记录
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from changefeed_sim.models.event import (
    CaptureMethod,
    ChangeEvent,
    OpCode,
    SchemaChange,
    TransactionInfo,
)


class MirrorRow(BaseModel):
    """
    行镜像条目

    每个适配器各自持有一份 主键 -> MirrorRow 的映射，
    它是适配器决定输出内容时唯一读取的状态。

    不变量:
        - 每次生效的 insert/update 使 version 恰好加 1
        - tombstoned 只会被 delete 置位，不会被清除
        - 轮询适配器中重新插入的行沿用旧条目的版本继续递增
    """
    table: str = Field(..., description="表名")
    primary_key: str = Field(..., description="主键值")
    current_image: Dict[str, Any] = Field(default_factory=dict, description="当前行数据")
    version: int = Field(default=1, ge=0, description="行版本")
    last_mutation_time: float = Field(default=0, description="最后变更时间")
    tombstoned: bool = Field(default=False, description="是否已删除")


class CaptureRecord(BaseModel):
    """
    追加写记录基类

    一旦追加到审计表或 WAL 就不再修改、不再重排。
    """
    model_config = ConfigDict(frozen=True)

    table: str = Field(..., description="表名")
    op_code: OpCode = Field(..., description="操作码")
    primary_key: str = Field(..., description="主键值")
    before_image: Optional[Dict[str, Any]] = Field(default=None, description="变更前数据")
    after_image: Optional[Dict[str, Any]] = Field(default=None, description="变更后数据")
    commit_time: float = Field(..., description="出站提交时间")
    transaction: TransactionInfo = Field(..., description="事务信息")
    schema_version: int = Field(default=1, ge=1, description="表结构版本")
    schema_change: Optional[SchemaChange] = Field(default=None, description="表结构变更")

    def to_change_event(self, sequence: int, method: CaptureMethod) -> ChangeEvent:
        """转换为 ChangeEvent 对象"""
        return ChangeEvent(
            event_id=f"{method.value}-{sequence}",
            sequence=sequence,
            table=self.table,
            op_code=self.op_code,
            primary_key=self.primary_key,
            before_image=self.before_image,
            after_image=self.after_image,
            commit_time=self.commit_time,
            transaction=self.transaction,
            producing_method=method,
            schema_version=self.schema_version,
            schema_change=self.schema_change,
        )


class AuditRecord(CaptureRecord):
    """
    审计表记录（触发器方式）

    属性:
        index: 审计表内追加序号，作为抽取断点
        audit_id: 审计记录标识
        commit_time: 源时间 + 触发器开销
    """
    index: int = Field(..., ge=0, description="追加序号")
    audit_id: str = Field(..., description="审计记录标识")


class WalRecord(CaptureRecord):
    """
    WAL 记录（日志跟踪方式）

    属性:
        lsn: 单调递增的日志序列号
        commit_time: 源时间（不附加任何开销）
    """
    lsn: int = Field(..., ge=1, description="日志序列号")
