"""
逻辑时钟调度器 - 按模拟时间触发周期任务
"""

from typing import Callable, Dict, Optional

from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)

TaskHandler = Callable[[float], None]


class _Task:
    """周期任务"""

    __slots__ = ("id", "interval_ms", "handler", "next_due_ms")

    def __init__(
        self,
        task_id: int,
        interval_ms: float,
        handler: TaskHandler,
        next_due_ms: float
    ) -> None:
        self.id = task_id
        self.interval_ms = interval_ms
        self.handler = handler
        self.next_due_ms = next_due_ms


class Scheduler:
    """
    调度器

    不使用任何真实定时器：调用方推进逻辑时钟 (advance)，
    到期的任务被同步调用。clear() 取消任务后不会再被触发。
    """

    def __init__(self) -> None:
        self._tasks: Dict[int, _Task] = {}
        self._next_id = 1

    def every(
        self,
        interval_ms: float,
        handler: TaskHandler,
        start_ms: float = 0
    ) -> int:
        """
        注册周期任务

        参数:
            interval_ms: 间隔（毫秒），非正数按 1 处理
            handler: 回调，参数为当前逻辑时间
            start_ms: 注册时的逻辑时间

        返回:
            任务 ID
        """
        task_id = self._next_id
        self._next_id += 1
        interval = interval_ms if interval_ms > 0 else 1
        self._tasks[task_id] = _Task(task_id, interval, handler, start_ms + interval)
        return task_id

    def advance(self, now_ms: float) -> int:
        """
        推进到 now_ms，依次触发到期任务

        每个任务在一次推进中最多触发一次。

        返回:
            触发的任务数
        """
        fired = 0
        for task in list(self._tasks.values()):
            if task.id not in self._tasks or now_ms < task.next_due_ms:
                continue
            while task.next_due_ms <= now_ms:
                task.next_due_ms += task.interval_ms
            task.handler(now_ms)
            fired += 1
        return fired

    def clear(self, task_id: Optional[int] = None) -> None:
        """
        取消任务

        参数:
            task_id: 任务 ID，为 None 时取消全部任务
        """
        if task_id is not None:
            self._tasks.pop(task_id, None)
            return
        if self._tasks:
            logger.debug("scheduler_cleared", tasks=len(self._tasks))
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
