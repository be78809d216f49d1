"""Tests for invoicecrop configuration."""

import pytest


class TestConfig:
    """Tests for Config dataclass."""

    def test_default_config(self):
        from invoicecrop.config import Config

        config = Config()

        assert config.runtime.workers == 1
        assert config.pdf.dpi == 300
        assert config.crop.padding == 10
        assert config.crop.output_format == "jpg"
        assert config.storage.retention_hours == 24
        assert config.storage.cleanup_interval_seconds == 86400
        assert config.runtime.job_max_age_seconds == 3600
        assert config.runtime.job_max_count == 200
        assert config.server.port == 8080

    def test_get_workers(self):
        from invoicecrop.config import RuntimeConfig

        assert RuntimeConfig(workers=4).get_workers() == 4
        assert RuntimeConfig(workers=0).get_workers() == 1

    def test_coordinate_defaults(self):
        from invoicecrop.config import CoordinateConfig

        config = CoordinateConfig()

        assert config.ratio_ceiling == 1.001
        assert config.normalized_ceiling == 1005
        assert config.large_page_threshold == 1200
        assert config.normalized_scale == 1000

    def test_extraction_defaults(self):
        from invoicecrop.config import ExtractionConfig

        config = ExtractionConfig()

        assert config.default_confidence == 0.9
        assert "invoice" in config.label_keywords
        assert "发票" in config.label_keywords


class TestVisionConfig:
    """Tests for vision endpoint settings."""

    def test_env_fallback(self, monkeypatch):
        from invoicecrop.config import VisionConfig

        monkeypatch.setenv("ARK_API_KEY", "env-key")
        monkeypatch.setenv("ARK_BASE_URL", "https://example.test/v1")
        monkeypatch.setenv("ARK_MODEL", "vision-x")

        config = VisionConfig()

        assert config.api_key == "env-key"
        assert config.base_url == "https://example.test/v1"
        assert config.model == "vision-x"
        assert config.is_ready

    def test_explicit_values_win(self, monkeypatch):
        from invoicecrop.config import VisionConfig

        monkeypatch.setenv("ARK_API_KEY", "env-key")
        config = VisionConfig(api_key="yaml-key")

        assert config.api_key == "yaml-key"

    def test_not_ready_without_key(self, monkeypatch):
        from invoicecrop.config import VisionConfig

        monkeypatch.setenv("ARK_API_KEY", "")
        config = VisionConfig()

        assert not config.is_ready

    def test_prompt_asks_for_tag_format(self):
        from invoicecrop.config import DEFAULT_PROMPT, VisionConfig

        assert VisionConfig().prompt == DEFAULT_PROMPT
        assert "<bbox>" in DEFAULT_PROMPT
        assert "0-1000" in DEFAULT_PROMPT


class TestLoadConfig:
    """Tests for YAML config loading."""

    def test_load_valid_yaml(self, temp_dir):
        from invoicecrop.config import load_config

        yaml_content = """
runtime:
  workers: 3

rate_limit:
  max_concurrent_calls: 2
  min_interval_seconds: 0.5

pdf:
  dpi: 150

crop:
  padding: 20
  output_format: png

storage:
  output_dir: "./custom_output"
"""
        config_path = temp_dir / "config.yaml"
        config_path.write_text(yaml_content)

        config = load_config(str(config_path))

        assert config.runtime.workers == 3
        assert config.rate_limit.max_concurrent_calls == 2
        assert config.rate_limit.min_interval_seconds == 0.5
        assert config.pdf.dpi == 150
        assert config.crop.padding == 20
        assert config.crop.output_format == "png"
        assert config.storage.output_dir == "./custom_output"

    def test_load_partial_yaml(self, temp_dir):
        from invoicecrop.config import load_config

        config_path = temp_dir / "config.yaml"
        config_path.write_text("pdf:\n  dpi: 200\n")

        config = load_config(str(config_path))

        # Overridden value
        assert config.pdf.dpi == 200
        # Default values
        assert config.crop.padding == 10
        assert config.storage.output_dir == "outputs"

    def test_load_empty_yaml(self, temp_dir):
        from invoicecrop.config import load_config

        config_path = temp_dir / "config.yaml"
        config_path.write_text("")

        assert load_config(str(config_path)).pdf.dpi == 300

    def test_load_nonexistent_file(self):
        from invoicecrop.config import load_config

        config = load_config("/nonexistent/path/config.yaml")

        assert config.runtime.workers == 1

    def test_load_none(self):
        from invoicecrop.config import load_config

        assert load_config(None).crop.padding == 10

    def test_unknown_key_rejected(self, temp_dir):
        from invoicecrop.config import load_config

        config_path = temp_dir / "config.yaml"
        config_path.write_text("crop:\n  paddding: 5\n")

        with pytest.raises(TypeError):
            load_config(str(config_path))


class TestSaveConfig:
    """Tests for writing config back to YAML."""

    def test_roundtrip_without_api_key(self, temp_dir):
        from invoicecrop.config import Config, load_config, save_config

        config = Config()
        config.crop.padding = 25
        config.vision.api_key = "secret"
        config_path = temp_dir / "nested" / "config.yaml"

        save_config(config, str(config_path))

        assert config_path.exists()
        assert "secret" not in config_path.read_text(encoding="utf-8")
        assert load_config(str(config_path)).crop.padding == 25
