"""
源操作模型 - 场景中按时间排列的数据变更
"""

import math
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from changefeed_sim.models.event import OpCode


class SourceKind(str, Enum):
    """源操作类型"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    def to_op_code(self) -> OpCode:
        """映射为事件操作码 (insert/update/delete -> c/u/d)"""
        return _KIND_TO_OP[self]


_KIND_TO_OP = {
    SourceKind.INSERT: OpCode.CREATE,
    SourceKind.UPDATE: OpCode.UPDATE,
    SourceKind.DELETE: OpCode.DELETE,
}


class TransactionDescriptor(BaseModel):
    """
    多行事务描述

    同一事务的多条源操作共享 id，依靠 position/total/is_last 分组。
    兼容 {"id", "index", "total", "last"} 写法。
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = Field(default=None, description="事务标识")
    position: Optional[int] = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("position", "index"),
        description="事务内位置",
    )
    total: Optional[int] = Field(default=None, ge=1, description="事务变更总数")
    is_last: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("is_last", "last"),
        description="是否事务最后一条",
    )


def normalize_primary_key(value: Any) -> Optional[str]:
    """
    将各种主键写法归一为字符串

    支持 {"id": ...}、数字和字符串；无法识别时返回 None。
    """
    if isinstance(value, dict):
        value = value.get("id")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float, str)):
        text = str(value).strip()
        return text or None
    return None


class SourceOp(BaseModel):
    """
    源数据库上的一次变更

    场景中的源操作列表是校验时的基准（ground truth）。
    同时接受简写字段 t/op/pk/after/txn。

    属性:
        logical_time: 逻辑时间（毫秒）
        kind: 操作类型
        table: 表名
        primary_key: 主键，缺失时该操作被所有适配器忽略
        after_image: 插入/更新的字段
        transaction: 事务描述
    """
    model_config = ConfigDict(frozen=True)

    logical_time: float = Field(
        ...,
        validation_alias=AliasChoices("logical_time", "t"),
        description="逻辑时间（毫秒）",
    )
    kind: SourceKind = Field(
        ...,
        validation_alias=AliasChoices("kind", "op"),
        description="操作类型",
    )
    table: str = Field(default="customers", description="表名")
    primary_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("primary_key", "pk"),
        description="主键值",
    )
    after_image: Optional[Dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("after_image", "after"),
        description="插入/更新后的字段",
    )
    transaction: Optional[TransactionDescriptor] = Field(
        default=None,
        validation_alias=AliasChoices("transaction", "txn"),
        description="事务描述",
    )

    @field_validator("primary_key", mode="before")
    @classmethod
    def coerce_primary_key(cls, v: Any) -> Optional[str]:
        """主键统一转为字符串"""
        return normalize_primary_key(v)

    @property
    def op_code(self) -> OpCode:
        """对应的事件操作码"""
        return self.kind.to_op_code()
