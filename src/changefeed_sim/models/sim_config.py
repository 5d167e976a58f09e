"""
模拟配置模型 - 使用 Pydantic 进行配置验证

适配器参数不会因越界而报错：非法或过小的值一律钳制到各自的下限。
"""

import math
import os
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from changefeed_sim.models.event import CaptureMethod
from changefeed_sim.models.scenario import Scenario

# 各适配器的区间下限（毫秒）
POLL_INTERVAL_FLOOR_MS = 10.0
EXTRACT_INTERVAL_FLOOR_MS = 10.0
TRIGGER_OVERHEAD_FLOOR_MS = 0.0
FETCH_INTERVAL_FLOOR_MS = 1.0

class ApplyPolicy(str, Enum):
    """消费端应用策略"""
    APPLY_ON_COMMIT = "apply-on-commit"   # 整个事务到齐后一次性应用
    APPLY_AS_POLLED = "apply-as-polled"   # 拉取到即逐条应用


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def clamp_interval(value: Any, default: float, floor: float) -> float:
    """
    钳制区间参数

    参数:
        value: 原始值
        default: 未提供时的默认值
        floor: 下限

    返回:
        合法的区间值；无法解析、NaN、无穷或低于下限时返回下限
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return floor
    try:
        number = float(value)
    except (TypeError, ValueError):
        return floor
    if not math.isfinite(number):
        return floor
    return max(number, floor)


def normalize_option_keys(options: Mapping[str, Any]) -> Dict[str, Any]:
    """将 camelCase 键转换为 snake_case（pollIntervalMs -> poll_interval_ms）"""
    return {
        _CAMEL_BOUNDARY.sub("_", str(key)).lower(): value
        for key, value in options.items()
    }


class _AdapterOptions(BaseModel):
    """适配器参数基类，接受 camelCase 键并忽略未知键"""
    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        if isinstance(data, Mapping):
            return normalize_option_keys(data)
        return data


class PollingOptions(_AdapterOptions):
    """
    轮询方式参数

    属性:
        poll_interval_ms: 轮询间隔，默认 1000，下限 10
        include_soft_deletes: 是否把删除作为软删除事件输出
    """
    poll_interval_ms: float = Field(default=1000.0, description="轮询间隔（毫秒）")
    include_soft_deletes: bool = Field(default=False, description="是否输出软删除")

    @field_validator("poll_interval_ms", mode="before")
    @classmethod
    def clamp_poll_interval(cls, v: Any) -> float:
        return clamp_interval(v, 1000.0, POLL_INTERVAL_FLOOR_MS)

    @field_validator("include_soft_deletes", mode="before")
    @classmethod
    def coerce_soft_deletes(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in ("1", "true", "yes", "on")
        return bool(v)


class TriggerOptions(_AdapterOptions):
    """
    触发器方式参数

    属性:
        extract_interval_ms: 审计表抽取间隔，默认 250，下限 10
        trigger_overhead_ms: 写路径上的同步触发器开销，默认 8，下限 0
    """
    extract_interval_ms: float = Field(default=250.0, description="抽取间隔（毫秒）")
    trigger_overhead_ms: float = Field(default=8.0, description="触发器开销（毫秒）")

    @field_validator("extract_interval_ms", mode="before")
    @classmethod
    def clamp_extract_interval(cls, v: Any) -> float:
        return clamp_interval(v, 250.0, EXTRACT_INTERVAL_FLOOR_MS)

    @field_validator("trigger_overhead_ms", mode="before")
    @classmethod
    def clamp_overhead(cls, v: Any) -> float:
        return clamp_interval(v, 8.0, TRIGGER_OVERHEAD_FLOOR_MS)


class LogOptions(_AdapterOptions):
    """
    日志跟踪方式参数

    属性:
        fetch_interval_ms: WAL 拉取间隔，默认 100，下限 1
    """
    fetch_interval_ms: float = Field(default=100.0, description="拉取间隔（毫秒）")

    @field_validator("fetch_interval_ms", mode="before")
    @classmethod
    def clamp_fetch_interval(cls, v: Any) -> float:
        return clamp_interval(v, 100.0, FETCH_INTERVAL_FLOOR_MS)


AdapterOptions = Union[PollingOptions, TriggerOptions, LogOptions]
OptionsT = TypeVar("OptionsT", PollingOptions, TriggerOptions, LogOptions)


def merge_options(
    current: OptionsT,
    incoming: Union[OptionsT, Mapping[str, Any], None],
) -> OptionsT:
    """
    合并适配器参数

    参数:
        current: 当前参数
        incoming: 新参数（模型或字典；字典只覆盖出现的键）

    返回:
        新的参数对象
    """
    if incoming is None:
        return current
    if isinstance(incoming, type(current)):
        return incoming
    if isinstance(incoming, BaseModel):
        incoming = incoming.model_dump()
    if not isinstance(incoming, Mapping):
        return current
    merged = current.model_dump()
    merged.update(normalize_option_keys(incoming))
    return type(current).model_validate(merged)


class LaneSettings(BaseModel):
    """
    通道配置

    属性:
        enabled: 启用的捕获方式
        polling: 轮询参数
        trigger: 触发器参数
        log: 日志跟踪参数
    """
    enabled: List[CaptureMethod] = Field(
        default_factory=lambda: [CaptureMethod.POLLING, CaptureMethod.TRIGGER, CaptureMethod.LOG],
        min_length=1,
        description="启用的捕获方式",
    )
    polling: PollingOptions = Field(default_factory=PollingOptions, description="轮询参数")
    trigger: TriggerOptions = Field(default_factory=TriggerOptions, description="触发器参数")
    log: LogOptions = Field(default_factory=LogOptions, description="日志跟踪参数")

    @model_validator(mode="after")
    def validate_enabled_unique(self) -> "LaneSettings":
        """验证捕获方式不重复"""
        if len(self.enabled) != len(set(self.enabled)):
            raise ValueError("启用的捕获方式必须唯一")
        return self

    def options_for(self, method: CaptureMethod) -> AdapterOptions:
        """获取指定捕获方式的参数"""
        if method == CaptureMethod.POLLING:
            return self.polling
        if method == CaptureMethod.TRIGGER:
            return self.trigger
        return self.log


class RunnerSettings(BaseModel):
    """
    运行器配置

    属性:
        step_ms: 每步推进的逻辑时间
        apply_interval_ms: 消费端从总线拉取的间隔
        apply_batch_size: 每次拉取的最大事件数
        drain_ms: 最后一条源操作之后继续运行的时间
        apply_policy: 目标端应用策略
    """
    step_ms: float = Field(default=50.0, gt=0, description="步长（毫秒）")
    apply_interval_ms: float = Field(default=100.0, gt=0, description="消费间隔（毫秒）")
    apply_batch_size: int = Field(default=50, ge=1, le=10000, description="消费批量大小")
    drain_ms: float = Field(default=2000.0, ge=0, description="排空时长（毫秒）")
    apply_policy: ApplyPolicy = Field(
        default=ApplyPolicy.APPLY_ON_COMMIT,
        description="目标端应用策略",
    )


class SimulationConfig(BaseModel):
    """
    模拟配置根对象

    属性:
        scenario: 场景
        lanes: 通道配置
        runner: 运行器配置
        log_level: 日志级别，默认 INFO
    """
    scenario: Scenario = Field(default_factory=Scenario, description="场景")
    lanes: LaneSettings = Field(default_factory=LaneSettings, description="通道配置")
    runner: RunnerSettings = Field(default_factory=RunnerSettings, description="运行器配置")
    log_level: str = Field(default="INFO", description="日志级别")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if v.upper() not in valid_levels:
            raise ValueError(f"日志级别必须是以下之一: {valid_levels}")
        return v.upper()


def expand_env_vars(value: Any) -> Any:
    """
    递归展开值中的环境变量

    支持格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}
    """
    if isinstance(value, str):
        # 匹配 ${VAR} 或 ${VAR:-default}
        pattern = r'\$\{([^}:-]+)(?::-([^}]*))?\}'

        def replacer(match: "re.Match[str]") -> str:
            var_name = match.group(1)
            default_val: Optional[str] = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default_val is not None:
                    return default_val
                raise ValueError(f"环境变量 {var_name} 未设置且无默认值")
            return env_value

        result: Any = re.sub(pattern, replacer, value)
        return result
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
