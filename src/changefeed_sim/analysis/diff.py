"""
差异校验 - 将通道输出的事件与源操作基准逐条对账

纯函数实现，不持有任何状态；对三种捕获方式不做区分，
各方式在丢失、延迟、乱序上的差异由同一套算法呈现出来。
"""

from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from changefeed_sim.models.event import ChangeEvent, OpCode
from changefeed_sim.models.metrics import (
    DiffIssueType,
    DiffTotals,
    LaneDiffIssue,
    LaneDiffResult,
    LaneLag,
    LaneLagSample,
)
from changefeed_sim.models.source import SourceKind, SourceOp
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

# 参与对账的操作码
ROW_OP_CODES = (OpCode.CREATE, OpCode.UPDATE, OpCode.DELETE)

# 延迟样本保留条数
TOP_LAG_SAMPLES = 5

SourceOpLike = Union[SourceOp, Mapping[str, Any]]
ChangeEventLike = Union[ChangeEvent, Mapping[str, Any]]


class DiffEntry(NamedTuple):
    """归一化后的对账条目"""
    key: str
    op: OpCode
    pk: str
    index: int
    time: float


class _Match(NamedTuple):
    expected: DiffEntry
    actual: DiffEntry
    lag_ms: float


def _entry(op: OpCode, pk: str, index: int, time: float) -> DiffEntry:
    return DiffEntry(key=f"{op.value}::{pk}", op=op, pk=pk, index=index, time=time)


def normalize_source_ops(source_ops: Iterable[SourceOpLike]) -> List[DiffEntry]:
    """
    归一化源操作

    index 为操作在原列表中的位置；无法解析或缺少主键的条目被丢弃。
    """
    entries: List[DiffEntry] = []
    for index, raw in enumerate(source_ops):
        op = _coerce(SourceOp, raw)
        if op is None or op.primary_key is None:
            continue
        entries.append(_entry(op.op_code, op.primary_key, index, op.logical_time))
    return entries


def normalize_events(
    events: Iterable[ChangeEventLike],
    include_snapshot: bool = False
) -> List[DiffEntry]:
    """
    归一化事件

    只保留 c/u/d 事件；表结构变更 (s) 以及默认情况下的快照事件被丢弃，
    因为它们在源操作中没有对应项。

    参数:
        events: 通道输出的事件（按到达顺序）
        include_snapshot: 是否保留快照事件
    """
    entries: List[DiffEntry] = []
    for index, raw in enumerate(events):
        event = _coerce(ChangeEvent, raw)
        if event is None or event.op_code not in ROW_OP_CODES:
            continue
        if event.snapshot and not include_snapshot:
            continue
        if not event.primary_key:
            continue
        entries.append(_entry(event.op_code, event.primary_key, index, event.commit_time))
    return entries


def events_to_source_ops(events: Iterable[ChangeEventLike]) -> List[SourceOp]:
    """
    将事件还原为源操作

    用于往返校验：Log 通道的输出还原后应与原始源操作一一对应。
    """
    kinds = {
        OpCode.CREATE: SourceKind.INSERT,
        OpCode.UPDATE: SourceKind.UPDATE,
        OpCode.DELETE: SourceKind.DELETE,
    }
    ops: List[SourceOp] = []
    for raw in events:
        event = _coerce(ChangeEvent, raw)
        if event is None or event.snapshot or event.op_code not in kinds:
            continue
        ops.append(SourceOp(
            logical_time=event.commit_time,
            kind=kinds[event.op_code],
            table=event.table,
            primary_key=event.primary_key,
            after_image=event.after_image,
        ))
    return ops


def diff_lane(
    method: str,
    source_ops: Sequence[SourceOpLike],
    events: Sequence[ChangeEventLike]
) -> LaneDiffResult:
    """
    校验单条通道

    参数:
        method: 捕获方式名
        source_ops: 源操作基准
        events: 该通道按到达顺序输出的事件

    返回:
        LaneDiffResult: 缺失/多余/乱序统计、问题明细和延迟汇总
    """
    expected = normalize_source_ops(source_ops)
    actual = normalize_events(events)
    matched, missing, extra = _match_entries(expected, actual)

    issues: List[LaneDiffIssue] = []
    for entry in missing:
        issues.append(LaneDiffIssue(
            type=DiffIssueType.MISSING,
            op=entry.op,
            pk=entry.pk,
            expected_index=entry.index,
            expected_time=entry.time,
        ))
    for entry in extra:
        issues.append(LaneDiffIssue(
            type=DiffIssueType.EXTRA,
            op=entry.op,
            pk=entry.pk,
            actual_index=entry.index,
            actual_time=entry.time,
        ))
    ordering = _detect_ordering_issues(matched)
    issues.extend(ordering)

    samples = _top_lag_samples(matched)
    max_lag = max((sample.lag_ms for sample in samples), default=0.0)

    result = LaneDiffResult(
        method=method,
        totals=DiffTotals(
            missing=len(missing),
            extra=len(extra),
            ordering=len(ordering),
        ),
        issues=issues,
        lag=LaneLag(max=max_lag, top_samples=samples),
    )
    logger.debug(
        "lane_diff_computed",
        method=method,
        expected=len(expected),
        actual=len(actual),
        missing=result.totals.missing,
        extra=result.totals.extra,
        ordering=result.totals.ordering
    )
    return result


def diff_all_lanes(
    source_ops: Sequence[SourceOpLike],
    lanes: Union[Mapping[str, Sequence[ChangeEventLike]], Iterable[Tuple[str, Sequence[ChangeEventLike]]]]
) -> List[LaneDiffResult]:
    """
    校验多条通道

    参数:
        source_ops: 源操作基准
        lanes: {method: events} 或 (method, events) 序列
    """
    items = lanes.items() if isinstance(lanes, Mapping) else lanes
    return [diff_lane(method, source_ops, events) for method, events in items]


def _match_entries(
    expected: List[DiffEntry],
    actual: List[DiffEntry]
) -> Tuple[List[_Match], List[DiffEntry], List[DiffEntry]]:
    """按 key 分桶，桶内按到达顺序两两配对"""
    expected_buckets = _to_buckets(expected)
    actual_buckets = _to_buckets(actual)

    keys = list(expected_buckets)
    keys.extend(key for key in actual_buckets if key not in expected_buckets)

    matched: List[_Match] = []
    missing: List[DiffEntry] = []
    extra: List[DiffEntry] = []
    for key in keys:
        expected_list = expected_buckets.get(key, [])
        actual_list = actual_buckets.get(key, [])
        pairs = min(len(expected_list), len(actual_list))

        for exp, act in zip(expected_list[:pairs], actual_list[:pairs]):
            matched.append(_Match(exp, act, max(0.0, act.time - exp.time)))
        missing.extend(expected_list[pairs:])
        extra.extend(actual_list[pairs:])

    return matched, missing, extra


def _to_buckets(entries: List[DiffEntry]) -> Dict[str, List[DiffEntry]]:
    buckets: Dict[str, List[DiffEntry]] = OrderedDict()
    for entry in entries:
        buckets.setdefault(entry.key, []).append(entry)
    return buckets


def _detect_ordering_issues(matched: List[_Match]) -> List[LaneDiffIssue]:
    """按实际到达顺序遍历，期望位置小于已见最大值即为乱序"""
    issues: List[LaneDiffIssue] = []
    running_max: Optional[int] = None
    for pair in sorted(matched, key=lambda m: m.actual.index):
        if running_max is not None and pair.expected.index < running_max:
            issues.append(LaneDiffIssue(
                type=DiffIssueType.ORDERING,
                op=pair.expected.op,
                pk=pair.expected.pk,
                expected_index=pair.expected.index,
                actual_index=pair.actual.index,
                expected_time=pair.expected.time,
                actual_time=pair.actual.time,
            ))
        else:
            running_max = pair.expected.index
    return issues


def _top_lag_samples(matched: List[_Match]) -> List[LaneLagSample]:
    lagging = sorted(
        (pair for pair in matched if pair.lag_ms > 0),
        key=lambda pair: pair.lag_ms,
        reverse=True,
    )
    return [
        LaneLagSample(
            op=pair.expected.op,
            pk=pair.expected.pk,
            expected_time=pair.expected.time,
            actual_time=pair.actual.time,
            lag_ms=pair.lag_ms,
        )
        for pair in lagging[:TOP_LAG_SAMPLES]
    ]


def _coerce(model: Any, raw: Any) -> Any:
    """模型实例原样返回，字典做校验，无法解析时返回 None"""
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, Mapping):
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.debug("diff_entry_skipped", model=model.__name__, error_count=e.error_count())
        return None
