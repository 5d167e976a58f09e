"""
触发器捕获适配器 - 审计表方式的 CDC

每次源写入同步触发一次审计表写入（写放大约 2 倍），
提交时间附加触发器开销；抽取器按追加顺序分批读取审计表。
"""

import copy
from typing import List

from changefeed_sim.adapters.base import CaptureAdapter
from changefeed_sim.models.audit import AuditRecord, CaptureRecord
from changefeed_sim.models.event import CaptureMethod, SchemaChange
from changefeed_sim.models.sim_config import TriggerOptions
from changefeed_sim.models.source import SourceKind, SourceOp
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)


class TriggerAdapter(CaptureAdapter):
    """
    触发器适配器

    维护行镜像和只追加的审计表。源操作与审计记录严格 1:1，
    未知行的更新/删除不修改行镜像，但仍写入审计记录。
    """

    method = CaptureMethod.TRIGGER
    options: TriggerOptions

    @classmethod
    def default_options(cls) -> TriggerOptions:
        return TriggerOptions()

    @property
    def interval_ms(self) -> float:
        return self.options.extract_interval_ms

    def _reset_state(self) -> None:
        self._audit_log: List[AuditRecord] = []
        self._extract_offset = 0

    def _apply(self, op: SourceOp) -> None:
        commit_time = op.logical_time + self.options.trigger_overhead_ms

        before = None
        after = None
        if op.kind == SourceKind.INSERT:
            row = self._mirror_insert(op, commit_time)
            after = copy.deepcopy(row.current_image)
        elif op.kind == SourceKind.UPDATE:
            result = self._mirror_update(op, commit_time)
            if result is not None:
                before, after = result
            else:
                after = copy.deepcopy(op.after_image or {})
        elif op.kind == SourceKind.DELETE:
            before = self._mirror_tombstone(op, commit_time)

        self._append(self._row_record(op, before, after, commit_time))
        if self.metrics is not None:
            self.metrics.record_write_amplification(1, 1)

    def _record_schema_change(
        self,
        table: str,
        change: SchemaChange,
        commit_time: float
    ) -> None:
        self._append(
            self._schema_record(table, change, commit_time + self.options.trigger_overhead_ms)
        )

    def _append(self, fields: dict) -> None:
        self._audit_log.append(AuditRecord(
            index=len(self._audit_log),
            audit_id=f"{self._rng.getrandbits(64):016x}",
            **fields,
        ))

    def _collect(self, now_ms: float) -> List[CaptureRecord]:
        batch: List[CaptureRecord] = list(self._audit_log[self._extract_offset:])
        self._extract_offset = len(self._audit_log)
        if batch:
            logger.debug(
                "audit_batch_extracted",
                count=len(batch),
                offset=self._extract_offset
            )
        return batch

    def audit_log(self) -> List[AuditRecord]:
        """返回审计表副本"""
        return list(self._audit_log)

    @property
    def pending(self) -> int:
        """尚未抽取的审计记录数"""
        return len(self._audit_log) - self._extract_offset
