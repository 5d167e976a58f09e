"""
变更事件模型 - 捕获适配器输出的统一事件信封
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OpCode(str, Enum):
    """归一化后的变更操作码"""
    CREATE = "c"
    UPDATE = "u"
    DELETE = "d"
    SCHEMA = "s"


class CaptureMethod(str, Enum):
    """CDC 捕获方式"""
    POLLING = "polling"  # 基于查询的轮询
    TRIGGER = "trigger"  # 触发器 + 审计表
    LOG = "log"  # 事务日志 (WAL) 跟踪


class SchemaAction(str, Enum):
    """表结构变更动作"""
    ADD_COLUMN = "ADD_COLUMN"
    DROP_COLUMN = "DROP_COLUMN"


class SchemaColumn(BaseModel):
    """表字段定义"""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="字段名")
    type: str = Field(default="string", description="字段类型")
    nullable: bool = Field(default=False, description="是否可空")


class SchemaChange(BaseModel):
    """表结构变更描述，附加在 op_code=s 的事件上"""
    model_config = ConfigDict(frozen=True)

    action: SchemaAction = Field(..., description="变更动作")
    column: SchemaColumn = Field(..., description="受影响字段")
    previous_version: int = Field(..., ge=1, description="变更前结构版本")
    next_version: int = Field(..., ge=1, description="变更后结构版本")


class TransactionInfo(BaseModel):
    """
    事件携带的事务信息

    属性:
        id: 事务标识
        lsn: 日志序列号（仅日志跟踪方式有值）
        position: 事件在事务中的位置（从 0 开始）
        total: 事务包含的变更总数
        is_last: 是否为事务最后一条变更
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="事务标识")
    lsn: Optional[int] = Field(default=None, ge=1, description="日志序列号")
    position: Optional[int] = Field(default=None, ge=0, description="事务内位置")
    total: Optional[int] = Field(default=None, ge=1, description="事务变更总数")
    is_last: Optional[bool] = Field(default=None, description="是否事务最后一条")


class ChangeEvent(BaseModel):
    """
    变更事件对象

    由捕获适配器在 tick/快照时生成，一经生成不可修改。
    下游（事件总线、NDJSON 导出、校验引擎）只依赖这里的字段名，
    无需了解具体的捕获方式。

    属性:
        event_id: 事件标识 (格式: "{producing_method}-{sequence}")
        sequence: 适配器实例内严格递增的序号
        table: 源表名
        op_code: 操作码 (c/u/d/s)
        primary_key: 主键值
        before_image: 变更前数据
        after_image: 变更后数据
        commit_time: 提交时间（逻辑毫秒）
        transaction: 事务信息
        producing_method: 产生此事件的捕获方式
        schema_version: 事件对应的表结构版本
        schema_change: 表结构变更详情（仅 op_code=s）
        snapshot: 是否为快照读取事件
        offset: 事件总线分配的偏移量（发布前为 None）

    示例:
        ```python
        event = ChangeEvent(
            event_id="log-1",
            sequence=1,
            table="customers",
            op_code=OpCode.CREATE,
            primary_key="C-1",
            after_image={"name": "Acme"},
            commit_time=120,
            transaction=TransactionInfo(id="tx-120", lsn=1),
            producing_method=CaptureMethod.LOG,
        )
        ```
    """
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., description="事件标识")
    sequence: int = Field(..., ge=1, description="适配器内递增序号")
    table: str = Field(..., description="源表名")
    op_code: OpCode = Field(..., description="操作码")
    primary_key: str = Field(..., description="主键值")
    before_image: Optional[Dict[str, Any]] = Field(default=None, description="变更前数据快照")
    after_image: Optional[Dict[str, Any]] = Field(default=None, description="变更后数据快照")
    commit_time: float = Field(..., description="提交时间（逻辑毫秒）")
    transaction: TransactionInfo = Field(..., description="事务信息")
    producing_method: CaptureMethod = Field(..., description="捕获方式")
    schema_version: int = Field(default=1, ge=1, description="表结构版本")
    schema_change: Optional[SchemaChange] = Field(default=None, description="表结构变更")
    snapshot: bool = Field(default=False, description="是否快照事件")
    offset: Optional[int] = Field(default=None, ge=0, description="总线偏移量")

    @model_validator(mode="after")
    def validate_schema_change(self) -> "ChangeEvent":
        """验证表结构变更字段与操作码一致"""
        if self.op_code == OpCode.SCHEMA and self.schema_change is None:
            raise ValueError("op_code=s 的事件必须提供 schema_change")
        if self.op_code != OpCode.SCHEMA and self.schema_change is not None:
            raise ValueError("只有 op_code=s 的事件可以携带 schema_change")
        return self

    def with_offset(self, offset: int) -> "ChangeEvent":
        """返回带总线偏移量的副本"""
        return self.model_copy(update={"offset": offset})

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典，用于序列化"""
        return self.model_dump(mode="json")
