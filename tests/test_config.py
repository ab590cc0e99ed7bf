"""
taskweave — Environment Config Loader Tests

Tests:
  - Deep merge semantics (dicts recurse, lists replace, no mutation)
  - Base file discovery through TASKWEAVE_CONFIG
  - Per-environment overlay files
  - TW_ environment overrides with "__" nesting and value parsing
  - Dotted-path lookup with defaults
"""

import os
import sys
import tempfile
import unittest
from unittest.mock import patch

import yaml

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from taskweave.config import deep_merge, get_config_value, load_config


def _clean_env(**extra):
    env = {
        k: v for k, v in os.environ.items()
        if not k.startswith("TW_") and k != "TASKWEAVE_CONFIG"
    }
    env.update(extra)
    return env


class TestDeepMerge(unittest.TestCase):

    def test_recursive(self):
        base = {"retry": {"default": {"max_attempts": 3, "backoff_base": 1.0}}}
        overlay = {"retry": {"default": {"max_attempts": 5}}}
        merged = deep_merge(base, overlay)
        self.assertEqual(merged["retry"]["default"], {"max_attempts": 5, "backoff_base": 1.0})
        self.assertEqual(base["retry"]["default"]["max_attempts"], 3)

    def test_lists_replaced(self):
        self.assertEqual(deep_merge({"tags": [1, 2]}, {"tags": [3]}), {"tags": [3]})

    def test_scalar_over_dict(self):
        self.assertEqual(deep_merge({"flow": {"max_steps": 5}}, {"flow": None}), {"flow": None})


class TestLoadConfig(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.base_path = os.path.join(self.tmp.name, "taskweave.yaml")
        with open(self.base_path, "w") as f:
            yaml.safe_dump({
                "flow": {"max_steps": 50},
                "rate_limits": {"openai": {"requests_per_minute": 100}},
            }, f)

    def tearDown(self):
        self.tmp.cleanup()

    def test_base_from_env_var(self):
        with patch.dict(os.environ, _clean_env(TASKWEAVE_CONFIG=self.base_path), clear=True):
            cfg = load_config()
        self.assertEqual(cfg["flow"]["max_steps"], 50)
        self.assertEqual(cfg["_config_source"], self.base_path)
        self.assertEqual(cfg["_active_env"], "default")

    def test_missing_base_is_empty(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            cfg = load_config(base_path=os.path.join(self.tmp.name, "absent.yaml"))
        self.assertNotIn("flow", cfg)

    def test_overlay(self):
        config_dir = os.path.join(self.tmp.name, "config")
        os.makedirs(config_dir)
        with open(os.path.join(config_dir, "prod.yaml"), "w") as f:
            yaml.safe_dump({"flow": {"max_steps": 500}}, f)

        with patch.dict(os.environ, _clean_env(TW_ENV="prod", TW_CONFIG_DIR=config_dir), clear=True):
            cfg = load_config(base_path=self.base_path)
        self.assertEqual(cfg["flow"]["max_steps"], 500)
        self.assertEqual(cfg["rate_limits"]["openai"]["requests_per_minute"], 100)
        self.assertEqual(cfg["_active_env"], "prod")

    def test_env_overrides(self):
        env = _clean_env(
            TW_FLOW__MAX_STEPS="250",
            TW_RATE_LIMITS__OPENAI__TOKENS_PER_MINUTE="90000",
            TW_RETRY__DEFAULT__TRANSIENT_ONLY="true",
        )
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config(base_path=self.base_path)
        self.assertEqual(cfg["flow"]["max_steps"], 250)
        self.assertEqual(cfg["rate_limits"]["openai"], {"requests_per_minute": 100, "tokens_per_minute": 90000})
        self.assertIs(cfg["retry"]["default"]["transient_only"], True)

    def test_env_overrides_can_be_disabled(self):
        with patch.dict(os.environ, _clean_env(TW_FLOW__MAX_STEPS="1"), clear=True):
            cfg = load_config(base_path=self.base_path, include_env_vars=False)
        self.assertEqual(cfg["flow"]["max_steps"], 50)


class TestGetConfigValue(unittest.TestCase):

    def test_dotted_path(self):
        cfg = {"retry": {"openai": {"max_attempts": 4}}}
        self.assertEqual(get_config_value("retry.openai.max_attempts", cfg), 4)
        self.assertEqual(get_config_value("retry.other.max_attempts", cfg, 3), 3)
        self.assertEqual(get_config_value("retry.openai.max_attempts.deeper", cfg, "x"), "x")


if __name__ == "__main__":
    unittest.main()
