"""
NDJSON 导出 - 每行一个事件记录，下游无需了解具体捕获方式即可解析
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from changefeed_sim.models.event import ChangeEvent
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

LaneEvents = Union[Mapping[str, Sequence[ChangeEvent]], Iterable[Tuple[str, Sequence[ChangeEvent]]]]


class ExportRecord(BaseModel):
    """
    导出记录

    事务字段展开为 txn_* 平铺字段，before/after 可为空。
    """
    method: Optional[str] = None
    topic: Optional[str] = None
    offset: Optional[int] = None
    sequence: Optional[int] = None
    commit_time: Optional[float] = None
    op_code: Optional[str] = None
    table: Optional[str] = None
    primary_key: Optional[str] = None
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    txn_id: Optional[str] = None
    txn_lsn: Optional[int] = None
    txn_position: Optional[int] = None
    txn_total: Optional[int] = None
    txn_last: Optional[bool] = None
    schema_version: Optional[int] = None
    schema_change: Optional[Dict[str, Any]] = Field(default=None)
    snapshot: bool = False


def to_export_record(method: str, event: ChangeEvent, topic: Optional[str] = None) -> ExportRecord:
    """将事件转换为导出记录"""
    data = event.to_dict()
    tx = data["transaction"]
    return ExportRecord(
        method=method,
        topic=topic,
        offset=data["offset"],
        sequence=data["sequence"],
        commit_time=data["commit_time"],
        op_code=data["op_code"],
        table=data["table"],
        primary_key=data["primary_key"],
        before=data["before_image"],
        after=data["after_image"],
        txn_id=tx["id"],
        txn_lsn=tx["lsn"],
        txn_position=tx["position"],
        txn_total=tx["total"],
        txn_last=tx["is_last"],
        schema_version=data["schema_version"],
        schema_change=data["schema_change"],
        snapshot=data["snapshot"],
    )


def to_ndjson(lanes: LaneEvents, topic_prefix: str = "cdc") -> str:
    """
    将各通道事件序列化为 NDJSON 文本

    参数:
        lanes: {method: events} 或 (method, events) 序列
        topic_prefix: 主题前缀，主题名为 <prefix>.<method>

    返回:
        NDJSON 文本，无事件时为空字符串
    """
    items = lanes.items() if isinstance(lanes, Mapping) else lanes
    lines: List[str] = []
    for method, events in items:
        topic = f"{topic_prefix}.{method}"
        for event in events:
            record = to_export_record(method, event, topic)
            lines.append(json.dumps(record.model_dump(mode="json"), ensure_ascii=False))
    return "\n".join(lines) + ("\n" if lines else "")


def export_ndjson(lanes: LaneEvents, path: Union[str, Path], topic_prefix: str = "cdc") -> int:
    """
    导出到文件

    返回:
        写入的记录数
    """
    text = to_ndjson(lanes, topic_prefix)
    path = Path(path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")

    count = text.count("\n")
    logger.info("events_exported", path=str(path), records=count)
    return count


def parse_ndjson(text: str) -> List[ExportRecord]:
    """
    解析 NDJSON 文本

    空行被跳过；无法解析的行记录警告后跳过。
    """
    records: List[ExportRecord] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(ExportRecord.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("ndjson_line_skipped", line=line_no, error=str(e))
    return records
