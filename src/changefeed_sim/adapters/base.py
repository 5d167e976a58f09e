"""
捕获适配器抽象基类
"""

import copy
import random
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from changefeed_sim.core.metrics import MetricsAggregator
from changefeed_sim.models.audit import CaptureRecord, MirrorRow
from changefeed_sim.models.event import (
    CaptureMethod,
    ChangeEvent,
    OpCode,
    SchemaAction,
    SchemaChange,
    SchemaColumn,
    TransactionInfo,
)
from changefeed_sim.models.scenario import SnapshotTable
from changefeed_sim.models.sim_config import AdapterOptions, merge_options
from changefeed_sim.models.source import SourceOp, TransactionDescriptor
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

EventCallback = Callable[[ChangeEvent], None]
RowKey = Tuple[str, str]

DEFAULT_SEED = 42


def format_time(value: float) -> str:
    """逻辑时间转为字符串，整数值不带小数点"""
    return str(int(value)) if float(value).is_integer() else str(value)


def derive_transaction(
    descriptor: Optional[TransactionDescriptor],
    commit_time: float,
    lsn: Optional[int] = None,
    fallback_id: Optional[str] = None
) -> TransactionInfo:
    """
    推导事件的事务信息

    参数:
        descriptor: 源操作的事务描述
        commit_time: 提交时间
        lsn: 日志序列号
        fallback_id: 描述缺失时使用的事务 ID

    返回:
        TransactionInfo: 缺少描述时视为单操作事务 (is_last=True)
    """
    tx_id = descriptor.id if descriptor is not None and descriptor.id else None
    if not tx_id:
        tx_id = fallback_id or f"tx-{format_time(commit_time)}"

    position = descriptor.position if descriptor is not None else None
    total = descriptor.total if descriptor is not None else None

    if descriptor is not None and descriptor.is_last is not None:
        is_last = descriptor.is_last
    elif position is not None and total is not None:
        is_last = position >= total - 1
    else:
        is_last = descriptor is None

    return TransactionInfo(
        id=tx_id,
        lsn=lsn,
        position=position,
        total=total,
        is_last=is_last,
    )


def _clone(image: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    return copy.deepcopy(dict(image)) if image is not None else None


class CaptureAdapter(ABC):
    """
    捕获适配器抽象基类

    统一的适配器接口（轮询、触发器、日志跟踪）：
    - apply_source_op 只修改私有的行镜像/日志，从不输出事件
    - tick 根据距自身上次动作的逻辑时间决定是否输出事件
    - 事件通过 on_event 注册的回调同步推送，适配器内部不排队

    适配器之间没有共享的可变计时状态。
    """

    method: CaptureMethod

    def __init__(
        self,
        options: Union[AdapterOptions, Mapping[str, Any], None] = None,
        metrics: Optional[MetricsAggregator] = None,
        seed: int = DEFAULT_SEED
    ):
        """
        初始化适配器

        参数:
            options: 适配器参数（模型或字典）
            metrics: 本通道的指标聚合器
            seed: 初始随机种子
        """
        self.options = merge_options(self.default_options(), options)
        self.metrics = metrics
        self._observers: List[EventCallback] = []
        self.reset(seed)

    @classmethod
    @abstractmethod
    def default_options(cls) -> Any:
        """返回默认参数"""
        raise NotImplementedError

    @property
    @abstractmethod
    def interval_ms(self) -> float:
        """两次输出动作之间的最小逻辑时间间隔"""
        raise NotImplementedError

    @abstractmethod
    def _reset_state(self) -> None:
        """清空方式特有的状态"""
        raise NotImplementedError

    @abstractmethod
    def _apply(self, op: SourceOp) -> None:
        """将一条（已校验主键的）源操作应用到私有状态"""
        raise NotImplementedError

    @abstractmethod
    def _collect(self, now_ms: float) -> List[CaptureRecord]:
        """收集本次 tick 需要输出的记录（按输出顺序）"""
        raise NotImplementedError

    @abstractmethod
    def _record_schema_change(
        self,
        table: str,
        change: SchemaChange,
        commit_time: float
    ) -> None:
        """登记一条待输出的表结构变更"""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # 公共接口
    # ------------------------------------------------------------------

    def configure(self, options: Union[AdapterOptions, Mapping[str, Any], None]) -> None:
        """
        更新参数

        越界值被钳制到下限，未知键被忽略。
        """
        self.options = merge_options(self.options, options)
        logger.debug(
            "adapter_configured",
            method=self.method.value,
            options=self.options.model_dump()
        )

    def bind_metrics(self, metrics: MetricsAggregator) -> None:
        """绑定本通道的指标聚合器"""
        self.metrics = metrics

    def reset(self, seed: int = DEFAULT_SEED) -> None:
        """
        重置为与新建实例等价的状态

        清空行镜像和日志、重置序号与计时；参数和订阅者保留。
        """
        self._seed = seed
        self._rng = random.Random(seed)
        self._sequence = 0
        self._last_action_ms = 0.0
        self._mirror: Dict[RowKey, MirrorRow] = {}
        self._schema_versions: Dict[str, int] = {}
        self._reset_state()

    def stop(self) -> None:
        """停止并清空状态（保留当前种子）"""
        self.reset(self._seed)

    @property
    def seed(self) -> int:
        return self._seed

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """
        订阅事件

        返回:
            取消订阅函数
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def apply_source_op(self, op: SourceOp) -> None:
        """
        应用一条源操作

        缺少主键的操作被忽略。
        """
        if op.primary_key is None:
            logger.debug(
                "source_op_dropped",
                method=self.method.value,
                reason="missing_primary_key",
                table=op.table
            )
            return
        self._ensure_schema_version(op.table)
        self._apply(op)

    def tick(self, now_ms: float) -> int:
        """
        推进逻辑时钟

        参数:
            now_ms: 当前逻辑时间（单调不减）

        返回:
            本次输出的事件数
        """
        if now_ms - self._last_action_ms < self.interval_ms:
            return 0

        records = self._collect(now_ms)
        self._last_action_ms = now_ms
        for record in records:
            self._emit(record.to_change_event(self._next_sequence(), self.method))

        logger.debug(
            "capture_cycle",
            method=self.method.value,
            now_ms=now_ms,
            emitted=len(records)
        )
        return len(records)

    def snapshot(self, tables: Iterable[SnapshotTable]) -> int:
        """
        快照读取

        以已存在的行填充行镜像，并为每行输出一条 op_code=c 的快照事件。
        快照行不进入审计表/WAL。

        返回:
            快照事件数
        """
        count = 0
        for table in tables:
            self._schema_versions[table.name] = table.schema_version
            for row in table.rows:
                key = (table.name, row.primary_key)
                self._mirror[key] = MirrorRow(
                    table=table.name,
                    primary_key=row.primary_key,
                    current_image=_clone(row.image) or {},
                    version=1,
                    last_mutation_time=row.updated_at,
                )
                self._on_snapshot_row(key, row.updated_at)
                sequence = self._next_sequence()
                self._emit(ChangeEvent(
                    event_id=f"{self.method.value}-{sequence}",
                    sequence=sequence,
                    table=table.name,
                    op_code=OpCode.CREATE,
                    primary_key=row.primary_key,
                    after_image=_clone(row.image),
                    commit_time=row.updated_at,
                    transaction=TransactionInfo(
                        id=f"snapshot-{format_time(row.updated_at)}",
                        position=0,
                        total=1,
                        is_last=True,
                    ),
                    producing_method=self.method,
                    schema_version=table.schema_version,
                    snapshot=True,
                ))
                count += 1

        logger.info("adapter_snapshot_complete", method=self.method.value, rows=count)
        return count

    def apply_schema_change(
        self,
        table: str,
        action: Union[SchemaAction, str],
        column: Union[SchemaColumn, Mapping[str, Any]],
        commit_time: float
    ) -> None:
        """
        应用表结构变更

        ADD_COLUMN 为已有行补空值，DROP_COLUMN 移除字段；
        表结构版本加 1，变更在下一次输出动作时以 op_code=s 事件输出。
        """
        action = SchemaAction(action)
        if not isinstance(column, SchemaColumn):
            column = SchemaColumn.model_validate(column)

        previous = self._ensure_schema_version(table)
        self._schema_versions[table] = previous + 1

        for row in self._mirror.values():
            if row.table != table:
                continue
            if action == SchemaAction.ADD_COLUMN:
                row.current_image.setdefault(column.name, None)
            else:
                row.current_image.pop(column.name, None)

        change = SchemaChange(
            action=action,
            column=column,
            previous_version=previous,
            next_version=previous + 1,
        )
        self._record_schema_change(table, change, commit_time)

    def rows(self) -> Dict[RowKey, MirrorRow]:
        """返回行镜像副本（用于检查和测试）"""
        return {key: row.model_copy(deep=True) for key, row in self._mirror.items()}

    def schema_version(self, table: str) -> int:
        """返回表的当前结构版本"""
        return self._schema_versions.get(table, 1)

    # ------------------------------------------------------------------
    # 子类共用的行镜像操作
    # ------------------------------------------------------------------

    def _on_snapshot_row(self, key: RowKey, updated_at: float) -> None:
        """快照行写入镜像后的钩子"""

    def _mirror_insert(self, op: SourceOp, commit_time: float) -> MirrorRow:
        key = (op.table, op.primary_key)
        row = MirrorRow(
            table=op.table,
            primary_key=op.primary_key,
            current_image=_clone(op.after_image) or {},
            version=1,
            last_mutation_time=commit_time,
        )
        self._mirror[key] = row
        return row

    def _mirror_update(
        self,
        op: SourceOp,
        commit_time: float
    ) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """
        合并更新字段

        返回:
            (变更前, 变更后) 数据；行不存在或已删除时返回 None
        """
        row = self._mirror.get((op.table, op.primary_key))
        if row is None or row.tombstoned:
            return None
        before = copy.deepcopy(row.current_image)
        row.current_image.update(_clone(op.after_image) or {})
        row.version += 1
        row.last_mutation_time = commit_time
        return before, copy.deepcopy(row.current_image)

    def _mirror_tombstone(self, op: SourceOp, commit_time: float) -> Optional[Dict[str, Any]]:
        """标记删除，返回删除前数据；行不存在或已删除时返回 None"""
        row = self._mirror.get((op.table, op.primary_key))
        if row is None or row.tombstoned:
            return None
        row.tombstoned = True
        row.last_mutation_time = commit_time
        return copy.deepcopy(row.current_image)

    def _mirror_remove(self, op: SourceOp) -> Optional[Dict[str, Any]]:
        """移除行，返回删除前数据；行不存在时返回 None"""
        row = self._mirror.pop((op.table, op.primary_key), None)
        return row.current_image if row is not None else None

    def _row_record(
        self,
        op: SourceOp,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        commit_time: float,
        lsn: Optional[int] = None
    ) -> Dict[str, Any]:
        """构造行变更记录的公共字段"""
        return {
            "table": op.table,
            "op_code": op.op_code,
            "primary_key": op.primary_key,
            "before_image": before,
            "after_image": after,
            "commit_time": commit_time,
            "transaction": derive_transaction(op.transaction, commit_time, lsn=lsn),
            "schema_version": self.schema_version(op.table),
        }

    def _schema_record(
        self,
        table: str,
        change: SchemaChange,
        commit_time: float,
        lsn: Optional[int] = None
    ) -> Dict[str, Any]:
        """构造表结构变更记录的公共字段"""
        column = change.column.model_dump()
        return {
            "table": table,
            "op_code": OpCode.SCHEMA,
            "primary_key": change.column.name,
            "before_image": column if change.action == SchemaAction.DROP_COLUMN else None,
            "after_image": column if change.action == SchemaAction.ADD_COLUMN else None,
            "commit_time": commit_time,
            "transaction": derive_transaction(
                None, commit_time, lsn=lsn, fallback_id=f"schema-{format_time(commit_time)}"
            ),
            "schema_version": change.next_version,
            "schema_change": change,
        }

    def _ensure_schema_version(self, table: str) -> int:
        version = self._schema_versions.get(table)
        if version is None or version < 1:
            version = 1
            self._schema_versions[table] = version
        return version

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _emit(self, event: ChangeEvent) -> None:
        # 同步推送；单个订阅者异常不影响其他订阅者
        for callback in list(self._observers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(
                    "event_observer_failed",
                    method=self.method.value,
                    sequence=event.sequence,
                    error=str(e)
                )
                if self.metrics is not None:
                    self.metrics.record_error()
