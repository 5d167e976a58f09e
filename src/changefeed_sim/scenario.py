"""
场景生成 - 用于属性校验的确定性伪随机场景
"""

from typing import Any, Callable, Dict, List, Sequence, TypeVar

from changefeed_sim.models.scenario import Scenario
from changefeed_sim.models.source import SourceKind, SourceOp

T = TypeVar("T")

_MODULUS = 2147483647
_MULTIPLIER = 16807

CUSTOMERS = ["Acme", "Globex", "Initech", "Umbra", "Soylent"]
STATUSES = ["pending", "processing", "complete", "cancelled"]


def park_miller(seed: int) -> Callable[[], float]:
    """
    Park-Miller 最小标准随机数发生器

    返回:
        每次调用返回 [0, 1) 区间浮点数的函数
    """
    state = seed % _MODULUS
    if state <= 0:
        state += _MODULUS - 1

    def next_value() -> float:
        nonlocal state
        state = (state * _MULTIPLIER) % _MODULUS
        return (state - 1) / (_MODULUS - 1)

    return next_value


def _pick(items: Sequence[T], rng: Callable[[], float]) -> T:
    return items[int(rng() * len(items))]


def _money(value: float) -> float:
    return float(f"{value:.2f}")


def _generate_row(row_id: str, rng: Callable[[], float]) -> Dict[str, Any]:
    return {
        "id": row_id,
        "customer": _pick(CUSTOMERS, rng),
        "status": _pick(STATUSES, rng),
        "amount": _money(rng() * 1000),
    }


def generate_scenario(seed: int, table: str = "customers") -> Scenario:
    """
    生成确定性场景

    生成 6-17 条源操作（插入/更新/删除混合，相邻操作间隔 40-259 毫秒），
    至少包含一条删除。同一 seed 总是得到同一场景。

    参数:
        seed: 随机种子
        table: 表名

    返回:
        Scenario: 名为 property-<seed> 的场景
    """
    rng = park_miller(seed * 97)
    ops: List[SourceOp] = []
    active: Dict[str, Dict[str, Any]] = {}
    clock = 0
    next_id = 1
    total_ops = int(rng() * 12) + 6

    def step_time() -> int:
        nonlocal clock
        clock += int(rng() * 220) + 40
        return clock

    for _ in range(total_ops):
        kind = SourceKind.INSERT
        active_ids = list(active)
        if active_ids:
            roll = rng()
            if roll < 0.45:
                kind = SourceKind.INSERT
            elif roll < 0.8:
                kind = SourceKind.UPDATE
            else:
                kind = SourceKind.DELETE

        if kind == SourceKind.INSERT or not active:
            row_id = f"R-{seed}-{next_id}"
            next_id += 1
            row = _generate_row(row_id, rng)
            active[row_id] = row
            ops.append(SourceOp(
                logical_time=step_time(),
                kind=SourceKind.INSERT,
                table=table,
                primary_key=row_id,
                after_image=dict(row),
            ))
        elif kind == SourceKind.UPDATE:
            row_id = _pick(active_ids, rng)
            current = active[row_id]
            patch = {
                "status": _pick(STATUSES, rng) if rng() > 0.5 else current["status"],
                "amount": _money(current["amount"] + (rng() - 0.5) * 120),
            }
            active[row_id] = {**current, **patch}
            ops.append(SourceOp(
                logical_time=step_time(),
                kind=SourceKind.UPDATE,
                table=table,
                primary_key=row_id,
                after_image=patch,
            ))
        else:
            row_id = _pick(active_ids, rng)
            del active[row_id]
            ops.append(SourceOp(
                logical_time=step_time(),
                kind=SourceKind.DELETE,
                table=table,
                primary_key=row_id,
            ))

    if not any(op.kind == SourceKind.DELETE for op in ops) and active:
        row_id = next(iter(active))
        del active[row_id]
        ops.append(SourceOp(
            logical_time=step_time(),
            kind=SourceKind.DELETE,
            table=table,
            primary_key=row_id,
        ))

    return Scenario(name=f"property-{seed}", seed=seed, ops=ops)
