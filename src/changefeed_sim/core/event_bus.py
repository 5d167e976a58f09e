"""
事件总线 - 按主题划分的 FIFO 队列
"""

from collections import deque
from typing import Deque, Dict, List, Optional

from changefeed_sim.models.event import ChangeEvent
from changefeed_sim.utils.logging import get_logger

logger = get_logger(__name__)


class _TopicState:
    """单个主题的偏移量和队列"""

    __slots__ = ("offset", "queue")

    def __init__(self) -> None:
        self.offset = -1
        self.queue: Deque[ChangeEvent] = deque()


class EventBus:
    """
    事件总线

    发布时为每个事件分配单调递增的偏移量；消费是破坏性读取，
    不支持按偏移量回放，需要回放的消费者必须自行保留副本。
    """

    def __init__(self) -> None:
        self._topics: Dict[str, _TopicState] = {}

    def publish(self, topic: str, events: List[ChangeEvent]) -> List[ChangeEvent]:
        """
        发布一批事件

        参数:
            topic: 主题名
            events: 事件列表

        返回:
            带偏移量的事件列表
        """
        if not events:
            return []

        state = self._ensure(topic)
        enriched: List[ChangeEvent] = []
        for event in events:
            state.offset += 1
            stamped = event.with_offset(state.offset)
            state.queue.append(stamped)
            enriched.append(stamped)

        logger.debug(
            "bus_published",
            topic=topic,
            count=len(enriched),
            last_offset=state.offset
        )
        return enriched

    def consume(self, topic: str, max_events: int = 1) -> List[ChangeEvent]:
        """
        从队首取出至多 max_events 个事件

        参数:
            topic: 主题名
            max_events: 最大数量，<= 0 时返回空列表

        返回:
            事件列表
        """
        state = self._ensure(topic)
        if max_events <= 0:
            return []

        batch: List[ChangeEvent] = []
        while state.queue and len(batch) < max_events:
            batch.append(state.queue.popleft())
        return batch

    def size(self, topic: str) -> int:
        """返回主题队列长度（即积压量）"""
        return len(self._ensure(topic).queue)

    def reset(self, topic: Optional[str] = None) -> None:
        """
        清空主题

        参数:
            topic: 主题名，为 None 时清空全部主题及其偏移量
        """
        if topic is not None:
            self._topics.pop(topic, None)
            return
        self._topics.clear()

    def topics(self) -> List[str]:
        """返回已知主题列表"""
        return list(self._topics)

    def _ensure(self, topic: str) -> _TopicState:
        state = self._topics.get(topic)
        if state is None:
            state = _TopicState()
            self._topics[topic] = state
        return state
