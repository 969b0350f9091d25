"""Tests for configuration, token estimation and the event log."""

import json
import pytest
import tempfile
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agent_memlayer.config import BudgetConfig, EngineConfig, SummaryConfig
from agent_memlayer.logger import EngineLogger
from agent_memlayer.tokens import TokenEstimator
from agent_memlayer.types import AssembledContext, LayerKind


class TestConfig:

    def test_default_config(self):
        config = EngineConfig.default(".")
        assert config.db_path.endswith("memlayer.db")
        assert isinstance(config.budget, BudgetConfig)
        assert config.summary.message_threshold == 10
        assert config.extraction.min_confidence == 0.7
        assert config.reactivation.idle_days == 7.0

    def test_from_dict_ignores_unknown_keys(self):
        config = EngineConfig.from_dict({
            "db_path": "./test.db",
            "summary": {"message_threshold": 20, "bogus": True},
        })
        assert config.db_path == "./test.db"
        assert config.summary.message_threshold == 20
        assert config.summary.idle_hours == 24.0

    def test_nested_dicts_converted(self):
        config = EngineConfig(summary={"delay_seconds": 0})
        assert isinstance(config.summary, SummaryConfig)
        assert config.summary.delay_seconds == 0

    def test_invalid_stage_policy(self):
        with pytest.raises(ValueError):
            EngineConfig(extraction={"stage_policy": "sideways"})

    @pytest.mark.parametrize("budget", [
        {"recent_reserve_tokens": 4},
        {"recent_reserve_tokens": 48},
        {"min_note_tokens": 0},
        {"summary_ceiling": 1.5},
    ])
    def test_invalid_budget(self, budget):
        with pytest.raises(ValueError):
            EngineConfig(budget=budget)

    @pytest.mark.parametrize("suffix", [".yaml", ".json"])
    def test_save_and_load(self, suffix):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / f"memlayer{suffix}"
            config = EngineConfig.default(tmpdir)
            config.budget.recent_max_turns = 15
            config.save(str(path))
            loaded = EngineConfig.load(str(path))
            assert loaded.budget.recent_max_turns == 15
            assert loaded.db_path == config.db_path

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            EngineConfig.load("/nonexistent/memlayer.yaml")


class TestTokenEstimator:

    def test_rounds_up(self):
        est = TokenEstimator(4)
        assert est.count("") == 0
        assert est.count("abc") == 1
        assert est.count("abcde") == 2

    def test_truncate_fits(self):
        est = TokenEstimator(4)
        text = "word " * 100
        cut = est.truncate(text, 10)
        assert est.count(cut) <= 10
        assert cut.endswith("...")
        assert est.truncate("short", 10) == "short"

    def test_invalid_divisor(self):
        with pytest.raises(ValueError):
            TokenEstimator(0)


class TestEngineLogger:

    def test_disabled_is_noop(self):
        log = EngineLogger(None)
        assert not log.enabled
        log.log_summary("s1", "written")
        assert log.get_summary_stats() == {
            "summaries_written": 0, "summaries_failed": 0, "stale_rejected": 0, "events": {},
        }

    def test_writes_jsonl(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log = EngineLogger(tmpdir)
            log.log_summary("s1", "written", summarized_turns=12)
            log.log_summary("s1", "failed", error="boom")
            log.log_consent("c1", "accepted", contact_ref="alice")
            log.log_assembly("s1", AssembledContext(
                text="x", tokens_estimate=1, budget=100,
                layers_included=[LayerKind.RECENT_CONTEXT],
            ))

            stats = log.get_summary_stats()
            assert stats["summaries_written"] == 1
            assert stats["summaries_failed"] == 1
            assert log.get_consent_stats() == {"accepted": 1}

            entry = json.loads((Path(tmpdir) / "assembly.jsonl").read_text().strip())
            assert entry["layers_included"] == ["recent_context"]
            assert "timestamp" in entry
