"""
测试配置和共享工具 (unittest 兼容)
"""

from changefeed_sim.utils.logging import configure_logging


def setup_logging() -> None:
    """设置测试日志级别，避免调试日志刷屏"""
    configure_logging(log_level="WARNING", json_format=False)


setup_logging()
