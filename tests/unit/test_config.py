"""
配置加载单元测试 (unittest)
"""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from changefeed_sim.config import (
    ConfigError,
    generate_config_template,
    load_config,
    load_config_from_string,
    save_config_template,
)
from changefeed_sim.models.event import CaptureMethod, SchemaAction
from changefeed_sim.models.sim_config import expand_env_vars
from changefeed_sim.models.source import SourceKind


class TestConfigTemplate(unittest.TestCase):
    """配置模板测试"""

    def test_template_is_valid(self):
        """测试模板可以直接加载"""
        config = load_config_from_string(generate_config_template())

        self.assertEqual(config.scenario.name, "orders-walkthrough")
        self.assertEqual(len(config.scenario.ops), 5)
        self.assertEqual(config.scenario.ops[0].kind, SourceKind.INSERT)
        self.assertEqual(config.scenario.ops[0].primary_key, "C-1")
        self.assertEqual(config.scenario.ops[3].transaction.position, 1)
        self.assertEqual(config.scenario.tables[0].rows[0].primary_key, "C-0")
        self.assertEqual(config.scenario.schema_changes[0].action, SchemaAction.ADD_COLUMN)
        self.assertEqual(
            config.lanes.enabled,
            [CaptureMethod.POLLING, CaptureMethod.TRIGGER, CaptureMethod.LOG],
        )
        self.assertEqual(config.lanes.polling.poll_interval_ms, 1000)

    def test_template_env_override(self):
        """测试模板中的环境变量"""
        with patch.dict(os.environ, {"POLL_INTERVAL_MS": "400"}):
            config = load_config_from_string(generate_config_template())
        self.assertEqual(config.lanes.polling.poll_interval_ms, 400)

    def test_save_and_load(self):
        """测试保存模板后从文件加载"""
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "simulation.yaml"
            save_config_template(path)
            config = load_config(path)

        self.assertEqual(config.runner.apply_batch_size, 50)


class TestLoadConfig(unittest.TestCase):
    """配置加载错误处理测试"""

    def test_missing_file(self):
        with self.assertRaises(ConfigError) as cm:
            load_config("/nonexistent/simulation.yaml")
        self.assertIn("配置文件不存在", str(cm.exception))

    def test_invalid_yaml(self):
        with self.assertRaises(ConfigError) as cm:
            load_config_from_string("lanes: [unclosed")
        self.assertIn("YAML 解析失败", str(cm.exception))

    def test_not_a_mapping(self):
        with self.assertRaises(ConfigError):
            load_config_from_string("- a\n- b\n")

    def test_validation_failure(self):
        with self.assertRaises(ConfigError) as cm:
            load_config_from_string("log_level: TRACE\n")
        self.assertIn("配置验证失败", str(cm.exception))

    def test_empty_document_uses_defaults(self):
        config = load_config_from_string("")
        self.assertEqual(config.scenario.ops, [])

    def test_options_clamped_not_rejected(self):
        """测试越界参数被钳制而不是报错"""
        config = load_config_from_string(
            "lanes:\n"
            "  polling: {pollIntervalMs: 1}\n"
            "  log: {fetch_interval_ms: -3, unknown: 1}\n"
        )
        self.assertEqual(config.lanes.polling.poll_interval_ms, 10)
        self.assertEqual(config.lanes.log.fetch_interval_ms, 1)

    def test_missing_env_var(self):
        """测试未设置且无默认值的环境变量"""
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigError):
                load_config_from_string("scenario:\n  name: ${SCENARIO_NAME}\n")


class TestExpandEnvVars(unittest.TestCase):
    """环境变量展开测试"""

    def test_nested(self):
        with patch.dict(os.environ, {"SEED": "9"}):
            result = expand_env_vars({"a": ["${SEED}", "${OTHER:-x}"], "b": 1})
        self.assertEqual(result, {"a": ["9", "x"], "b": 1})


if __name__ == "__main__":
    unittest.main()
