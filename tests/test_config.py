"""Tests for environment-driven configuration."""

import unittest

import os
import tempfile

from pydantic import ValidationError

from autoscrape.config import AgentConfig, load_config
from autoscrape.errors import ErrorCode


class TestLoadConfig(unittest.TestCase):
    """Verify AUTOSCRAPE_* variables are applied."""

    def test_defaults_from_empty_env(self):
        """An empty mapping gives the documented defaults."""
        config = load_config(env={})
        self.assertEqual(config.max_steps, 10)
        self.assertEqual(config.goal_timeout, 60.0)
        self.assertEqual(config.high_confidence, 0.7)
        self.assertEqual(config.oracle.provider, "auto")
        self.assertIsNone(config.oracle.api_key)

    def test_env_overrides(self):
        """Variables override their fields; blank values are ignored."""
        config = load_config(env={
            "AUTOSCRAPE_DB": "/tmp/x.db",
            "AUTOSCRAPE_MAX_STEPS": "4",
            "AUTOSCRAPE_TIMEOUT": "12.5",
            "AUTOSCRAPE_ORACLE": "rules",
            "AUTOSCRAPE_ORACLE_QPS": "",
            "AUTOSCRAPE_BREAKER_THRESHOLD": "3",
            "OPENAI_API_KEY": "sk-test",
        })
        self.assertEqual(config.db_path, "/tmp/x.db")
        self.assertEqual(config.max_steps, 4)
        self.assertEqual(config.goal_timeout, 12.5)
        self.assertEqual(config.oracle.provider, "rules")
        self.assertEqual(config.oracle.qps, 2.0)
        self.assertEqual(config.oracle.api_key, "sk-test")
        self.assertEqual(config.breaker.failure_threshold, 3)

    def test_invalid_value_names_the_variable(self):
        """A malformed number is rejected with the variable in the message."""
        with self.assertRaises(ValidationError) as ctx:
            load_config(env={"AUTOSCRAPE_MAX_STEPS": "ten"})
        self.assertIn("AUTOSCRAPE_MAX_STEPS", str(ctx.exception))

    def test_out_of_range_value_rejected(self):
        """A zero step budget is not a usable configuration."""
        with self.assertRaises(ValidationError):
            load_config(env={"AUTOSCRAPE_MAX_STEPS": "0"})

    def test_reads_dotenv_file(self):
        """A .env file supplies variables missing from the environment."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, ".env")
            with open(path, "w", encoding="utf-8") as f:
                f.write("AUTOSCRAPE_STEP_TIMEOUT=3.5\n")
            config = load_config(dotenv_path=path)
        self.assertEqual(config.step_timeout, 3.5)

    def test_with_overrides_skips_none(self):
        """CLI overrides left unset keep the loaded values."""
        config = AgentConfig(max_steps=7).with_overrides(max_steps=None, goal_timeout=5.0)
        self.assertEqual((config.max_steps, config.goal_timeout), (7, 5.0))

    def test_goal_retry_is_limited_to_page_loading(self):
        """Whole-goal retries only cover navigation and network failures."""
        retryable = AgentConfig().goal_retry.retryable
        self.assertIn(ErrorCode.NAVIGATION_TIMEOUT, retryable)
        self.assertIn(ErrorCode.DNS_ERROR, retryable)
        self.assertIn(ErrorCode.CONNECTION_REFUSED, retryable)
        self.assertNotIn(ErrorCode.ELEMENT_NOT_FOUND, retryable)


if __name__ == "__main__":
    unittest.main()
