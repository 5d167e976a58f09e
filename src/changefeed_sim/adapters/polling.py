"""
轮询捕获适配器 - 基于查询的 CDC

相当于周期执行:
    SELECT * FROM t WHERE updated_at > :last_poll ORDER BY updated_at

两次轮询之间的多次变更被合并为一条事件（后写覆盖），
硬删除除非开启 include_soft_deletes，否则不可见。
"""

import copy
from typing import Dict, List, Optional

from changefeed_sim.adapters.base import CaptureAdapter, RowKey, format_time
from changefeed_sim.models.audit import CaptureRecord, MirrorRow
from changefeed_sim.models.event import CaptureMethod, OpCode, SchemaChange, TransactionInfo
from changefeed_sim.models.sim_config import PollingOptions
from changefeed_sim.models.source import SourceKind, SourceOp
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)


class PollingAdapter(CaptureAdapter):
    """
    轮询适配器

    只维护行镜像：
    - 更新未知或已删除的行被静默丢弃
    - 删除只标记 tombstoned，未知行的删除被丢弃
    - 轮询时输出 last_mutation_time 晚于上次轮询的行，每行一条事件
    """

    method = CaptureMethod.POLLING
    options: PollingOptions

    @classmethod
    def default_options(cls) -> PollingOptions:
        return PollingOptions()

    @property
    def interval_ms(self) -> float:
        return self.options.poll_interval_ms

    def _reset_state(self) -> None:
        # 尚未轮询过时为 None，首次轮询扫描全部行
        self._watermark: Optional[float] = None
        # 每行最后一次输出时的版本；没有记录表示下游尚未见过该行
        self._emitted_versions: Dict[RowKey, int] = {}
        # 被重新插入覆盖、但尚未被轮询观察到的删除
        self._displaced: List[MirrorRow] = []
        self._pending_schema: List[CaptureRecord] = []

    def _apply(self, op: SourceOp) -> None:
        key = (op.table, op.primary_key)
        if op.kind == SourceKind.INSERT:
            existing = self._mirror.get(key)
            row = self._mirror_insert(op, op.logical_time)
            self._emitted_versions.pop(key, None)
            if existing is not None:
                row.version = existing.version + 1
                if existing.tombstoned and not self._observed(existing):
                    self._displaced.append(existing)
        elif op.kind == SourceKind.UPDATE:
            if self._mirror_update(op, op.logical_time) is None:
                logger.debug("polling_update_dropped", table=op.table, pk=op.primary_key)
        elif op.kind == SourceKind.DELETE:
            if self._mirror_tombstone(op, op.logical_time) is None:
                logger.debug("polling_delete_dropped", table=op.table, pk=op.primary_key)

    def _observed(self, row: MirrorRow) -> bool:
        return self._watermark is not None and row.last_mutation_time <= self._watermark

    def _on_snapshot_row(self, key: RowKey, updated_at: float) -> None:
        self._emitted_versions[key] = self._mirror[key].version

    def _record_schema_change(
        self,
        table: str,
        change: SchemaChange,
        commit_time: float
    ) -> None:
        self._pending_schema.append(
            CaptureRecord(**self._schema_record(table, change, commit_time))
        )

    def _collect(self, now_ms: float) -> List[CaptureRecord]:
        records: List[CaptureRecord] = list(self._pending_schema)
        self._pending_schema.clear()

        changed = list(self._displaced)
        self._displaced.clear()
        changed.extend(row for row in self._mirror.values() if not self._observed(row))
        changed.sort(key=lambda row: row.last_mutation_time)

        missed = 0
        for row in changed:
            key = (row.table, row.primary_key)
            if row.tombstoned:
                if self.options.include_soft_deletes:
                    records.append(self._build_record(row, OpCode.DELETE))
                else:
                    missed += 1
                self._emitted_versions.pop(key, None)
                continue

            previous = self._emitted_versions.get(key)
            if previous is not None and row.version <= previous:
                continue
            op_code = OpCode.CREATE if previous is None else OpCode.UPDATE
            records.append(self._build_record(row, op_code))
            self._emitted_versions[key] = row.version

        if missed:
            logger.debug("polling_deletes_invisible", count=missed, now_ms=now_ms)
            if self.metrics is not None:
                self.metrics.record_missed_delete(missed)

        self._watermark = now_ms
        return records

    def _build_record(self, row: MirrorRow, op_code: OpCode) -> CaptureRecord:
        image = copy.deepcopy(row.current_image)
        return CaptureRecord(
            table=row.table,
            op_code=op_code,
            primary_key=row.primary_key,
            before_image=image if op_code == OpCode.DELETE else None,
            after_image=None if op_code == OpCode.DELETE else image,
            commit_time=row.last_mutation_time,
            transaction=TransactionInfo(
                id=f"tx-{format_time(row.last_mutation_time)}",
                is_last=True,
            ),
            schema_version=self.schema_version(row.table),
        )
