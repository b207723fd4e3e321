"""
Tests for parameter defaults and strategy-profile loading.
"""

import pytest

from rpoly.errors import ConfigurationError
from workflows.updown.params import DecisionConfig, ExitRules, load_exit_rules


class TestExitRules:
    def test_bundled_active_profile(self):
        rules = load_exit_rules()
        assert rules.name == "Simple TP/SL"
        assert rules.take_profit_pct == 0.20
        assert rules.stop_loss_pct == -0.20
        assert rules.min_hold_tp_sec == 45

    def test_named_profile(self):
        rules = load_exit_rules(profile="hold")
        assert rules.pre_close_sec == 30
        # fields a profile omits keep their defaults
        assert rules.sell_retries == ExitRules().sell_retries

    def test_unknown_profile(self):
        with pytest.raises(ConfigurationError) as exc:
            load_exit_rules(profile="yolo")
        assert "tight" in exc.value.detail

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_exit_rules(tmp_path / "nope.yaml")

    def test_custom_file(self, tmp_path):
        path = tmp_path / "profiles.yaml"
        path.write_text(
            "active: scalp\n"
            "profiles:\n"
            "  scalp:\n"
            "    name: Scalp\n"
            "    take_profit_pct: 0.08\n"
        )
        rules = load_exit_rules(path)
        assert rules.name == "Scalp"
        assert rules.take_profit_pct == 0.08
        assert rules.stop_loss_pct == -0.20


class TestDecisionConfig:
    def test_entry_window_by_label(self):
        cfg = DecisionConfig()
        assert cfg.entry_window("5m").max_entry_price == 0.50
        assert cfg.entry_window("15m").max_time_left_sec == 480

    def test_unknown_window_falls_back_to_5m(self):
        cfg = DecisionConfig()
        assert cfg.entry_window("60m") == cfg.entry_window("5m")
