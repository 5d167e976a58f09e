"""
配置加载模块 - 支持 YAML 和环境变量
"""

from pathlib import Path
from typing import Any

import yaml

from changefeed_sim.models.sim_config import SimulationConfig, expand_env_vars


class ConfigError(Exception):
    """配置错误"""
    pass


def load_config(path: str | Path) -> SimulationConfig:
    """
    加载 YAML 配置文件

    支持环境变量替换，格式:
        - ${VAR_NAME}
        - ${VAR_NAME:-default_value}

    参数:
        path: 配置文件路径

    返回:
        SimulationConfig: 验证后的配置对象

    异常:
        ConfigError: 配置文件不存在、格式错误或验证失败

    示例:
        ```python
        config = load_config("simulation.yaml")
        print(config.lanes.enabled)
        ```
    """
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigError(f"配置文件不存在: {config_path}")

    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"读取配置文件失败: {e}")

    return load_config_from_string(content)


def load_config_from_string(content: str) -> SimulationConfig:
    """
    从字符串加载配置

    参数:
        content: YAML 配置字符串

    返回:
        SimulationConfig: 验证后的配置对象
    """
    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML 解析失败: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ConfigError("配置文件必须是一个对象")

    try:
        # 展开环境变量
        expanded_config: Any = expand_env_vars(raw_config)
        return SimulationConfig(**expanded_config)
    except ValueError as e:
        raise ConfigError(f"配置验证失败: {e}")


def generate_config_template() -> str:
    """
    生成配置模板

    返回:
        str: YAML 配置模板
    """
    return '''# changefeed-sim 模拟配置

# 场景：源操作按顺序投放，顺序即校验基准
scenario:
  name: "orders-walkthrough"
  seed: 42
  tables:                       # 快照阶段读取的初始表
    - name: "customers"
      schema_version: 1
      columns:
        - {name: "id", type: "string"}
        - {name: "customer", type: "string"}
        - {name: "status", type: "string"}
      rows:
        - id: "C-0"
          image: {id: "C-0", customer: "Acme", status: "complete"}
          updated_at: 0
  ops:
    - {t: 100, op: insert, table: customers, pk: {id: "C-1"}, after: {id: "C-1", customer: "Globex", status: "pending"}}
    - {t: 180, op: update, table: customers, pk: {id: "C-1"}, after: {status: "processing"}}
    - {t: 260, op: insert, table: customers, pk: {id: "C-2"}, after: {id: "C-2", customer: "Initech", status: "pending"},
       txn: {id: "tx-batch", index: 0, total: 2}}
    - {t: 260, op: update, table: customers, pk: {id: "C-1"}, after: {status: "complete"},
       txn: {id: "tx-batch", index: 1, total: 2}}
    - {t: 420, op: delete, table: customers, pk: {id: "C-2"}}
  schema_changes:
    - {logical_time: 300, table: customers, action: ADD_COLUMN, column: {name: "region", type: "string", nullable: true}}

# 通道配置
lanes:
  enabled: ["polling", "trigger", "log"]
  polling:
    poll_interval_ms: ${POLL_INTERVAL_MS:-1000}
    include_soft_deletes: false
  trigger:
    extract_interval_ms: 250
    trigger_overhead_ms: 8
  log:
    fetch_interval_ms: 100

# 运行器配置
runner:
  step_ms: 50                   # 每步推进的逻辑时间
  apply_interval_ms: 100        # 消费端拉取间隔
  apply_batch_size: 50          # 每次拉取的最大事件数
  drain_ms: 2000                # 最后一条操作后继续运行的时间
  apply_policy: apply-on-commit  # 目标端应用策略 (apply-on-commit, apply-as-polled)

log_level: "INFO"               # 日志级别 (DEBUG, INFO, WARNING, ERROR)
'''


def save_config_template(path: str | Path) -> None:
    """
    保存配置模板到文件

    参数:
        path: 输出文件路径
    """
    config_path = Path(path)
    config_path.write_text(generate_config_template(), encoding="utf-8")
