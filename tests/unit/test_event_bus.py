"""
事件总线单元测试 (unittest)
"""

import unittest

from changefeed_sim.core.event_bus import EventBus
from changefeed_sim.models.event import CaptureMethod, ChangeEvent, OpCode, TransactionInfo


def _events(count, start=1):
    return [
        ChangeEvent(
            event_id=f"log-{seq}",
            sequence=seq,
            table="customers",
            op_code=OpCode.CREATE,
            primary_key=str(seq),
            commit_time=seq * 10,
            transaction=TransactionInfo(id=f"tx-{seq}", is_last=True),
            producing_method=CaptureMethod.LOG,
        )
        for seq in range(start, start + count)
    ]


class TestEventBus(unittest.TestCase):
    """事件总线测试"""

    def setUp(self):
        self.bus = EventBus()

    def test_publish_assigns_offsets(self):
        """测试发布时分配从 0 开始的连续偏移量"""
        first = self.bus.publish("cdc.log", _events(2))
        second = self.bus.publish("cdc.log", _events(2, start=3))

        self.assertEqual([e.offset for e in first], [0, 1])
        self.assertEqual([e.offset for e in second], [2, 3])
        self.assertEqual(self.bus.size("cdc.log"), 4)

    def test_offsets_are_per_topic(self):
        """测试各主题独立计数"""
        self.bus.publish("cdc.log", _events(3))
        published = self.bus.publish("cdc.trigger", _events(1))

        self.assertEqual(published[0].offset, 0)
        self.assertEqual(sorted(self.bus.topics()), ["cdc.log", "cdc.trigger"])

    def test_publish_empty_batch(self):
        """测试发布空批次"""
        self.assertEqual(self.bus.publish("cdc.log", []), [])
        self.assertEqual(self.bus.size("cdc.log"), 0)

    def test_consume_is_destructive_fifo(self):
        """测试消费按 FIFO 顺序破坏性读取"""
        self.bus.publish("cdc.log", _events(5))

        batch = self.bus.consume("cdc.log", 2)
        self.assertEqual([e.sequence for e in batch], [1, 2])
        self.assertEqual(self.bus.size("cdc.log"), 3)

        rest = self.bus.consume("cdc.log", 10)
        self.assertEqual([e.sequence for e in rest], [3, 4, 5])
        self.assertEqual(self.bus.consume("cdc.log", 10), [])

    def test_consume_default_and_non_positive_max(self):
        """测试默认每次取 1 个，非正数返回空"""
        self.bus.publish("cdc.log", _events(3))

        self.assertEqual(len(self.bus.consume("cdc.log")), 1)
        self.assertEqual(self.bus.consume("cdc.log", 0), [])
        self.assertEqual(self.bus.size("cdc.log"), 2)

    def test_consume_unknown_topic(self):
        """测试消费未知主题"""
        self.assertEqual(self.bus.consume("missing", 5), [])

    def test_reset_single_topic(self):
        """测试清空单个主题后偏移量重新计数"""
        self.bus.publish("cdc.log", _events(2))
        self.bus.publish("cdc.trigger", _events(2))

        self.bus.reset("cdc.log")

        self.assertEqual(self.bus.size("cdc.log"), 0)
        self.assertEqual(self.bus.size("cdc.trigger"), 2)
        self.assertEqual(self.bus.publish("cdc.log", _events(1))[0].offset, 0)

    def test_reset_all(self):
        """测试清空全部主题"""
        self.bus.publish("cdc.log", _events(2))
        self.bus.publish("cdc.trigger", _events(2))

        self.bus.reset()

        self.assertEqual(self.bus.topics(), [])
        self.assertEqual(self.bus.publish("cdc.trigger", _events(1))[0].offset, 0)


if __name__ == "__main__":
    unittest.main()
