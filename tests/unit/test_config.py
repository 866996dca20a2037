"""Unit tests for configuration."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from hippo.config import CadenceConfig, HippoConfig, ScoringConfig


class TestConfig:
    """Defaults and environment overrides."""

    def test_defaults(self):
        config = HippoConfig()
        assert config.cadence.msg_threshold == 6
        assert config.cadence.token_threshold == 1500
        assert config.cadence.time_threshold_seconds == 180.0
        assert config.cadence.debounce_seconds == 30.0
        assert config.scoring.quality_threshold == 0.65
        assert config.recall.default_max_items == 5
        assert config.recall.max_items_limit == 20
        assert config.recall.default_deadline_ms == 30
        assert config.emitter.timeout_ms == 50

    def test_sub_config_env_prefix(self, monkeypatch):
        monkeypatch.setenv("HIPPO_CADENCE_MSG_THRESHOLD", "3")
        assert CadenceConfig().msg_threshold == 3
        assert HippoConfig().cadence.msg_threshold == 3

    def test_nested_delimiter(self, monkeypatch):
        monkeypatch.setenv("HIPPO_RECALL__DEFAULT_MAX_ITEMS", "7")
        assert HippoConfig().recall.default_max_items == 7

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError):
            ScoringConfig(relevance_weight=0.9)

    def test_feature_flags(self, monkeypatch):
        monkeypatch.setenv("HIPPO_ENABLE_TOPICS", "false")
        assert HippoConfig().enable_topics is False
