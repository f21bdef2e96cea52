"""Tests for pipeline configuration loading."""

import pytest

from semantic_annotator.config import PipelineConfig, load_config
from semantic_annotator.exceptions import ParseError


class TestDefaults:
    def test_documented_constants(self):
        config = PipelineConfig()
        assert config.word_only_threshold == 0.90
        assert config.morph_confidence == 0.92
        assert config.dictionary_confidence == 0.94
        assert config.llm_pos_confidence == 0.88
        assert config.forward_decay == 0.85
        assert config.inherit_decay == 0.80
        assert config.propagation_floor == 0.60
        assert config.llm_batch_size == 15
        assert config.chunk_size == 50

    def test_replace(self):
        config = PipelineConfig().replace(chunk_size=10)
        assert config.chunk_size == 10

    def test_out_of_range(self):
        with pytest.raises(ParseError, match="forward_decay"):
            PipelineConfig(forward_decay=1.5)

    def test_chunk_size_positive(self):
        with pytest.raises(ParseError):
            PipelineConfig(chunk_size=0)


class TestLoadConfig:
    def test_no_file(self):
        assert load_config(environ={}) == PipelineConfig()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("chunk_size: 20\nmodel: local-model\n", encoding="utf-8")
        config = load_config(path, environ={})
        assert config.chunk_size == 20
        assert config.model == "local-model"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path, environ={}) == PipelineConfig()

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("chunk_size: 20\n", encoding="utf-8")
        config = load_config(path, environ={
            "SEMANTIC_ANNOTATOR_CHUNK_SIZE": "30",
            "SEMANTIC_ANNOTATOR_BUDGET_SECONDS": "12.5",
        })
        assert config.chunk_size == 30
        assert config.budget_seconds == 12.5

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("chunk: 20\n", encoding="utf-8")
        with pytest.raises(ParseError, match="Unknown config keys: chunk"):
            load_config(path, environ={})

    def test_bad_value(self):
        with pytest.raises(ParseError, match="chunk_size"):
            load_config(environ={"SEMANTIC_ANNOTATOR_CHUNK_SIZE": "many"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="not found"):
            load_config(tmp_path / "nope.yaml", environ={})

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ParseError, match="mapping"):
            load_config(path, environ={})
