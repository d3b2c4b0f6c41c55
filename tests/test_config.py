"""Tests for kg_merge.config."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from kg_merge.config import KgMergeConfig


@pytest.fixture(autouse=True)
def in_tmp(tmp_path, monkeypatch):
    """Run each test from an empty directory so output/ and kgm.yaml stay local."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestKgMergeConfig:
    """Test configuration loading and validation."""

    def test_default_config_loads(self, in_tmp):
        """Config loads with defaults when no env vars are set."""
        with patch.dict(os.environ, {}, clear=True):
            config = KgMergeConfig(_env_file=None)
        assert config.auto_resolve_threshold == 0.9
        assert config.error_penalty == 20.0
        assert config.ontology_path is None
        assert config.output_dir == (in_tmp / "output").resolve()
        assert config.output_dir.is_dir()
        assert config.graph_database == config.output_dir / "graph.db"

    def test_values_from_env(self):
        env = {"KGM_AUTO_RESOLVE_THRESHOLD": "0.75", "KGM_CONCURRENCY": "2", "KGM_AUTO_APPROVE": "false"}
        with patch.dict(os.environ, env):
            config = KgMergeConfig(_env_file=None)
        assert config.auto_resolve_threshold == 0.75
        assert config.concurrency == 2
        assert config.auto_approve is False

    def test_empty_env_value_is_unset(self):
        with patch.dict(os.environ, {"KGM_CONCURRENCY": ""}):
            assert KgMergeConfig(_env_file=None).concurrency == 8

    def test_project_yaml(self, in_tmp):
        (in_tmp / "kgm.yaml").write_text(
            "ontology: filings.yaml\n"
            "database: data/graph.db\n"
            "output: out\n"
            "quality:\n"
            "  warning_penalty: 5\n"
            "merge:\n"
            "  commit_timeout: 2.5\n"
        )
        with patch.dict(os.environ, {}, clear=True):
            config = KgMergeConfig(_env_file=None)
        assert config.ontology_path.name == "filings.yaml"
        assert config.graph_database.name == "graph.db"
        assert config.output_dir == (in_tmp / "out").resolve()
        assert config.warning_penalty == 5.0
        assert config.commit_timeout == 2.5

    def test_env_beats_project_yaml(self, in_tmp):
        (in_tmp / "kgm.yaml").write_text("merge:\n  auto_resolve_threshold: 0.5\n")
        with patch.dict(os.environ, {"KGM_AUTO_RESOLVE_THRESHOLD": "0.95"}):
            assert KgMergeConfig(_env_file=None).auto_resolve_threshold == 0.95

    def test_empty_project_yaml(self, in_tmp):
        (in_tmp / "kgm.yaml").write_text("")
        assert KgMergeConfig(_env_file=None).concurrency == 8

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            KgMergeConfig(auto_resolve_threshold=1.5, _env_file=None)
        with pytest.raises(ValidationError):
            KgMergeConfig(commit_timeout=0, _env_file=None)

    def test_derived_settings(self):
        config = KgMergeConfig(
            info_penalty=1.0, auto_approve_threshold=95.0, concurrency=3, max_commit_retries=5,
            _env_file=None,
        )
        quality = config.to_quality_config()
        assert quality.info_penalty == 1.0
        assert quality.auto_approve_threshold == 95.0
        merge = config.to_merge_settings()
        assert merge.concurrency == 3
        assert merge.max_commit_retries == 5
        assert merge.auto_resolve_threshold == 0.9
