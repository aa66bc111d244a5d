import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from config.config import (
    DEFAULT_CONFIG_FILE,
    PipelineConfig,
    _cli_main,
    _deep_merge,
    _expand_env_vars,
    get_config,
    load_config,
    load_yaml,
    reset_config,
    set_config,
)

# =========================================================================
# load_yaml / env expansion
# =========================================================================


class TestLoadYaml:
    def test_returns_empty_dict_for_nonexistent_file(self):
        assert load_yaml(Path("/nonexistent/path/config.yaml")) == {}

    def test_loads_yaml_file(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("key: value\nnested:\n  a: 1\n")
        assert load_yaml(config_file) == {"key": "value", "nested": {"a": 1}}

    def test_returns_empty_dict_for_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml(config_file) == {}


class TestExpandEnvVars:
    def test_expands_set_variable(self):
        with patch.dict(os.environ, {"CNAB_TEST_URL": "sqlite:///x.db"}):
            assert _expand_env_vars({"url": "${CNAB_TEST_URL}"}) == {"url": "sqlite:///x.db"}

    def test_uses_default_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${CNAB_MISSING:-memory}") == "memory"

    def test_empty_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${CNAB_MISSING:-}") == ""

    def test_leaves_unset_without_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${CNAB_MISSING}") == "${CNAB_MISSING}"

    def test_recurses_into_lists(self):
        with patch.dict(os.environ, {"A": "1"}):
            assert _expand_env_vars(["${A}", {"b": "${A}"}]) == ["1", {"b": "1"}]


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"processing": {"mode": "sync", "parallel_workers": 4}, "queue": {"backend": "memory"}}
        overlay = {"processing": {"mode": "async"}}

        merged = _deep_merge(base, overlay)

        assert merged["processing"] == {"mode": "async", "parallel_workers": 4}
        assert merged["queue"] == {"backend": "memory"}
        assert base["processing"]["mode"] == "sync"


# =========================================================================
# PipelineConfig
# =========================================================================


class TestPipelineConfig:
    def test_defaults(self):
        config = PipelineConfig()

        assert config.processing.mode == "sync"
        assert config.processing.parallel_workers == 4
        assert config.processing.checkpoint_interval == 1000
        assert config.processing.max_retry_per_line == 3
        assert config.processing.retry_delay_ms == 500
        assert config.queue.backend == "memory"
        assert config.queue.consumer_group == "cnab-upload-processors"
        assert config.queue.max_stream_length == 10000
        assert config.worker.max_retries == 3
        assert config.worker.base_delay_ms == 1000
        assert config.recovery.interval_seconds == 300
        assert config.recovery.stale_after_minutes == 30
        config.validate()

    def test_from_dict_coerces_strings(self):
        config = PipelineConfig.from_dict(
            {
                "processing": {"parallel_workers": "8", "mode": "async"},
                "queue": {"backend": "kafka", "kafka": {"num_partitions": "6"}},
                "logging": {"json_format": "false"},
            }
        )

        assert config.processing.parallel_workers == 8
        assert config.processing.mode == "async"
        assert config.queue.kafka.num_partitions == 6
        assert config.logging.json_format is False

    def test_unknown_keys_ignored(self):
        config = PipelineConfig.from_dict({"processing": {"bogus": 1}})
        assert not hasattr(config.processing, "bogus")

    @pytest.mark.parametrize(
        "section,values,match",
        [
            ("processing", {"checkpoint_interval": 0}, "checkpoint_interval"),
            ("processing", {"checkpoint_interval": -5}, "checkpoint_interval"),
            ("processing", {"parallel_workers": 0}, "parallel_workers"),
            ("processing", {"max_retry_per_line": 0}, "max_retry_per_line"),
            ("processing", {"mode": "batch"}, "processing.mode"),
            ("queue", {"backend": "redis"}, "queue.backend"),
            ("queue", {"dead_letter_stream": "cnab-upload-queue"}, "must differ"),
            ("worker", {"max_retries": 0}, "max_retries"),
            ("storage", {"download_attempts": 0}, "download_attempts"),
            ("recovery", {"stale_after_minutes": 0}, "stale_after_minutes"),
        ],
    )
    def test_validate_rejects(self, section, values, match):
        config = PipelineConfig.from_dict({section: values})
        with pytest.raises(ValueError, match=match):
            config.validate()

    def test_to_dict_masks_password(self):
        config = PipelineConfig.from_dict(
            {"queue": {"kafka": {"sasl_plain_password": "s3cret"}}}
        )

        assert config.to_dict()["queue"]["kafka"]["sasl_plain_password"] == "***"
        assert config.to_dict(mask_secrets=False)["queue"]["kafka"]["sasl_plain_password"] == "s3cret"


# =========================================================================
# load_config / singleton
# =========================================================================


class TestLoadConfig:
    def test_loads_default_file(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(DEFAULT_CONFIG_FILE)

        assert config.queue.stream == "cnab-upload-queue"
        assert config.queue.dead_letter_stream == "cnab-upload-dlq"
        assert config.processing.mode == "sync"

    def test_env_overrides_yaml_defaults(self):
        env = {"CNAB_PROCESSING_MODE": "async", "CNAB_PARALLEL_WORKERS": "2"}
        with patch.dict(os.environ, env, clear=True):
            config = load_config(DEFAULT_CONFIG_FILE)

        assert config.processing.mode == "async"
        assert config.processing.parallel_workers == 2

    def test_overrides_applied(self):
        config = load_config(
            DEFAULT_CONFIG_FILE, overrides={"processing": {"checkpoint_interval": 50}}
        )
        assert config.processing.checkpoint_interval == 50

    def test_invalid_override_rejected(self):
        with pytest.raises(ValueError, match="checkpoint_interval"):
            load_config(DEFAULT_CONFIG_FILE, overrides={"processing": {"checkpoint_interval": 0}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_missing_section(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("other: {}\n")
        with pytest.raises(ValueError, match="cnab"):
            load_config(config_file)

    def test_cnab_config_env_var(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("cnab:\n  processing:\n    parallel_workers: 7\n")
        with patch.dict(os.environ, {"CNAB_CONFIG": str(config_file)}):
            config = load_config()
        assert config.processing.parallel_workers == 7


class TestSingleton:
    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_set_and_get(self):
        config = PipelineConfig()
        set_config(config)
        assert get_config() is config

    def test_reset_forces_reload(self):
        set_config(PipelineConfig())
        reset_config()
        with patch("config.config.load_config", return_value="loaded") as loader:
            assert get_config() == "loaded"
        loader.assert_called_once()


# =========================================================================
# CLI
# =========================================================================


class TestCli:
    def test_validate_json(self, capsys):
        assert _cli_main(["--validate", "--json", "--config", str(DEFAULT_CONFIG_FILE)]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["validation"]["passed"] is True

    def test_show_merged_json(self, capsys):
        assert _cli_main(["--show-merged", "--json", "--config", str(DEFAULT_CONFIG_FILE)]) == 0
        output = json.loads(capsys.readouterr().out)
        assert output["merged_config"]["queue"]["consumer_group"] == "cnab-upload-processors"

    def test_missing_file_returns_error(self, tmp_path, capsys):
        assert _cli_main(["--validate", "--json", "--config", str(tmp_path / "x.yaml")]) == 1
        assert "error" in json.loads(capsys.readouterr().out)

    def test_no_flags_prints_help(self, capsys):
        assert _cli_main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()
