"""
Tests for configuration loading

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import yaml

from inkrow_core.config import InkrowConfig, find_config_file, load_config, save_config


class TestDefaults:
    """Tests for default values."""

    def test_pipeline_constants(self):
        """Test the default tiling, pool, debounce and cache settings."""
        config = InkrowConfig()
        assert (config.tiling.tile_size, config.tiling.overlap) == (384, 64)
        assert (config.pool.concurrency, config.pool.queue_limit, config.pool.task_timeout) == (3, 20, 10.0)
        assert (config.merge.tight_gap, config.merge.wide_gap) == (10, 30)
        assert config.ocr.debounce == 1.5
        assert (config.validation.timeout, config.validation.debounce) == (2.0, 0.5)
        assert config.cache.ttl == 7 * 24 * 3600


class TestLoadConfig:
    """Tests for load_config."""

    def test_yaml_values(self, temp_dir):
        """Test YAML sections override defaults."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({
            "pool": {"concurrency": 5},
            "validation": {"timeout": 4.5, "settings": {"fallback": False}},
            "cache": {"backend": "disk"},
        }))
        config = load_config(path)
        assert config.pool.concurrency == 5
        assert config.validation.timeout == 4.5
        assert config.validation.settings == {"fallback": False}
        assert config.cache.backend == "disk"
        assert config.pool.queue_limit == 20

    def test_unknown_keys_ignored(self, temp_dir):
        """Test unknown keys and sections do not break loading."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({"pool": {"colour": "blue"}, "extra": 1, "merge": "wide"}))
        config = load_config(path)
        assert not hasattr(config.pool, "colour")
        assert config.merge.wide_gap == 30

    def test_invalid_values_restored(self, temp_dir):
        """Test out-of-range values fall back to defaults."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({
            "tiling": {"overlap": 500},
            "pool": {"concurrency": 0, "task_timeout": -1},
            "merge": {"tight_gap": 40, "wide_gap": 30},
            "cache": {"backend": "redis"},
            "logging": {"level": "LOUD"},
        }))
        config = load_config(path)
        assert config.tiling.overlap == 64
        assert config.pool.concurrency == 3
        assert config.pool.task_timeout == 10.0
        assert (config.merge.tight_gap, config.merge.wide_gap) == (10, 30)
        assert config.cache.backend == "memory"
        assert config.logging.level == "INFO"

    def test_wrongly_typed_values_restored(self, temp_dir):
        """Test values of the wrong type fall back to defaults without raising."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({
            "tiling": {"start_y": "top"},
            "pool": {"queue_limit": True, "crash_retries": "once"},
            "merge": {"tight_gap": "ten"},
            "ocr": {"debounce": "slow"},
            "validation": {"debounce": [1], "settings": "strict"},
            "cache": {"ttl": "week", "max_size": 2.5, "cache_dir": 3},
            "logging": {"level": 10, "events_log": "yes"},
            "services": {"recognition_url": 8080, "recognition_timeout": None},
        }))
        config = load_config(path)
        defaults = InkrowConfig()
        assert config.to_dict() == defaults.to_dict()

    def test_lowercase_level_normalized(self, temp_dir):
        """Test a valid lowercase log level is accepted."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({"logging": {"level": "warning"}}))
        assert load_config(path).logging.level == "WARNING"

    def test_broken_yaml_uses_defaults(self, temp_dir):
        """Test a malformed file yields defaults."""
        path = temp_dir / "inkrow.yaml"
        path.write_text("pool: [unclosed")
        assert load_config(path).pool.concurrency == 3

    def test_env_overrides(self, temp_dir, monkeypatch):
        """Test environment variables win over the file."""
        path = temp_dir / "inkrow.yaml"
        path.write_text(yaml.safe_dump({"pool": {"concurrency": 5}}))
        monkeypatch.setenv("INKROW_POOL_CONCURRENCY", "2")
        monkeypatch.setenv("INKROW_VALIDATION_TIMEOUT", "0.5")
        monkeypatch.setenv("INKROW_RECOGNITION_URL", "http://localhost:9000/recognize")
        monkeypatch.setenv("INKROW_LOG_LEVEL", "debug")

        config = load_config(path)
        assert config.pool.concurrency == 2
        assert config.validation.timeout == 0.5
        assert config.services.recognition_url == "http://localhost:9000/recognize"
        assert config.logging.level == "DEBUG"

    def test_invalid_env_number_ignored(self, temp_dir, monkeypatch):
        """Test a non-numeric override keeps the current value."""
        monkeypatch.setenv("INKROW_TASK_TIMEOUT", "soon")
        config = load_config(temp_dir / "missing.yaml")
        assert config.pool.task_timeout == 10.0

    def test_save_and_reload(self, temp_dir):
        """Test save_config output loads back identically."""
        config = InkrowConfig()
        config.ocr.debounce = 2.5
        config.services.recognition_url = "http://ocr.local"
        path = temp_dir / "out" / "inkrow.yaml"
        save_config(config, path)

        reloaded = load_config(path)
        assert reloaded.to_dict() == config.to_dict()


class TestFindConfigFile:
    """Tests for config discovery."""

    def test_found_in_start_dir(self, temp_dir):
        """Test inkrow.yaml in the start directory is found."""
        path = temp_dir / "inkrow.yaml"
        path.write_text("{}")
        assert find_config_file(temp_dir) == path.resolve()

    def test_found_in_dot_dir_of_parent(self, temp_dir):
        """Test .inkrow/inkrow.yaml in a parent directory is found."""
        path = temp_dir / ".inkrow" / "inkrow.yaml"
        path.parent.mkdir()
        path.write_text("{}")
        child = temp_dir / "a" / "b"
        child.mkdir(parents=True)
        assert find_config_file(child) == path.resolve()
