"""
Inkrow Unified Configuration System
===================================

Loads and manages configuration from inkrow.yaml with environment variable
overrides. Invalid values are reported and replaced by defaults; a bad
configuration never prevents startup.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import os
import yaml
import logging
from pathlib import Path
from dataclasses import dataclass, field, fields, asdict
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Data Classes
# =============================================================================

@dataclass
class TilingConfig:
    """Tile geometry and row bands."""
    tile_size: int = 384
    overlap: int = 64
    row_height: int = 384  # matches the tile height
    start_y: int = 0

    @property
    def stride(self) -> int:
        return self.tile_size - self.overlap


@dataclass
class PoolConfig:
    """Recognition worker pool."""
    concurrency: int = 3
    queue_limit: int = 20
    task_timeout: float = 10.0
    crash_retries: int = 1
    error_retries: int = 1


@dataclass
class MergeConfig:
    """Gap thresholds (pixels) between adjacent tiles."""
    tight_gap: int = 10  # below: no separator
    wide_gap: int = 30  # at or above: two spaces


@dataclass
class OcrConfig:
    """Recognition trigger."""
    debounce: float = 1.5  # seconds after deactivation


@dataclass
class ValidationConfig:
    """Equivalence validation."""
    timeout: float = 2.0
    debounce: float = 0.5  # seconds after OCR completion
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CacheConfig:
    """Result cache."""
    backend: str = "memory"  # memory | disk
    cache_dir: str = ".inkrow/cache"
    ttl: float = 7 * 24 * 3600.0
    max_size: int = 5000


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    log_dir: str = ".inkrow/logs"
    events_log: bool = True


@dataclass
class ServicesConfig:
    """External service endpoints."""
    recognition_url: Optional[str] = None
    recognition_timeout: float = 10.0


@dataclass
class InkrowConfig:
    """Root configuration container."""
    tiling: TilingConfig = field(default_factory=TilingConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    ocr: OcrConfig = field(default_factory=OcrConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    services: ServicesConfig = field(default_factory=ServicesConfig)
    version: str = "1"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Configuration Loader
# =============================================================================

def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find inkrow.yaml by searching upward from start_path.

    Search order:
    1. start_path / inkrow.yaml
    2. start_path / .inkrow / inkrow.yaml
    3. Parent directories (recursive)
    4. ~/.config/inkrow/inkrow.yaml
    5. /etc/inkrow/inkrow.yaml

    Args:
        start_path: Starting directory (defaults to cwd)

    Returns:
        Path to config file or None if not found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = Path(start_path).resolve()
    for _ in range(10):  # Max 10 levels up
        for candidate in (current / "inkrow.yaml", current / ".inkrow" / "inkrow.yaml"):
            if candidate.exists():
                return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    user_config = Path.home() / ".config" / "inkrow" / "inkrow.yaml"
    if user_config.exists():
        return user_config

    system_config = Path("/etc/inkrow/inkrow.yaml")
    if system_config.exists():
        return system_config

    return None


def load_config(config_path: Optional[Path] = None) -> InkrowConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Environment variables override config file values:
    - INKROW_CACHE_BACKEND -> cache.backend
    - INKROW_CACHE_DIR -> cache.cache_dir
    - INKROW_LOG_LEVEL -> logging.level
    - INKROW_LOG_DIR -> logging.log_dir
    - INKROW_POOL_CONCURRENCY -> pool.concurrency
    - INKROW_TASK_TIMEOUT -> pool.task_timeout
    - INKROW_VALIDATION_TIMEOUT -> validation.timeout
    - INKROW_RECOGNITION_URL -> services.recognition_url

    Args:
        config_path: Path to config file (auto-detected if None)

    Returns:
        InkrowConfig instance
    """
    config = InkrowConfig()

    if config_path is None:
        config_path = find_config_file()

    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
            config = _parse_config_dict(data)
        except Exception as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
    else:
        logger.info("No config file found, using defaults")

    config = _apply_env_overrides(config)
    _validate_config(config)
    return config


def _update_section(section: Any, values: Any, name: str) -> None:
    """Copy known keys of a YAML mapping onto a config dataclass."""
    if not isinstance(values, dict):
        logger.warning(f"Config section '{name}' is not a mapping, ignored")
        return
    known = {f.name for f in fields(section)}
    for key, value in values.items():
        if key in known:
            setattr(section, key, value)
        else:
            logger.warning(f"Unknown config key '{name}.{key}', ignored")


def _parse_config_dict(data: Dict[str, Any]) -> InkrowConfig:
    """Parse configuration dictionary into InkrowConfig."""
    config = InkrowConfig()

    for name in ("tiling", "pool", "merge", "ocr", "validation", "cache", "logging", "services"):
        if name in data:
            _update_section(getattr(config, name), data[name], name)

    config.version = str(data.get("version", config.version))
    return config


def _env_number(name: str, cast, current):
    raw = os.environ.get(name)
    if not raw:
        return current
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: '{raw}', keeping {current}")
        return current


def _apply_env_overrides(config: InkrowConfig) -> InkrowConfig:
    """Apply environment variable overrides to config."""
    if os.environ.get("INKROW_CACHE_BACKEND"):
        config.cache.backend = os.environ["INKROW_CACHE_BACKEND"]

    if os.environ.get("INKROW_CACHE_DIR"):
        config.cache.cache_dir = os.environ["INKROW_CACHE_DIR"]

    if os.environ.get("INKROW_LOG_LEVEL"):
        config.logging.level = os.environ["INKROW_LOG_LEVEL"].upper()

    if os.environ.get("INKROW_LOG_DIR"):
        config.logging.log_dir = os.environ["INKROW_LOG_DIR"]

    if os.environ.get("INKROW_RECOGNITION_URL"):
        config.services.recognition_url = os.environ["INKROW_RECOGNITION_URL"]

    config.pool.concurrency = _env_number("INKROW_POOL_CONCURRENCY", int, config.pool.concurrency)
    config.pool.task_timeout = _env_number("INKROW_TASK_TIMEOUT", float, config.pool.task_timeout)
    config.validation.timeout = _env_number("INKROW_VALIDATION_TIMEOUT", float, config.validation.timeout)

    return config


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check(section: Any, name: str, valid: bool, default: Any) -> None:
    if not valid:
        logger.warning(
            f"Invalid {type(section).__name__}.{name} {getattr(section, name)!r}, defaulting to {default!r}"
        )
        setattr(section, name, default)


def _validate_config(config: InkrowConfig) -> None:
    """Validate configuration, log warnings and restore defaults."""
    tiling = config.tiling
    _check(tiling, "tile_size", _is_int(tiling.tile_size) and tiling.tile_size > 0, 384)
    _check(
        tiling, "overlap",
        _is_int(tiling.overlap) and 0 <= tiling.overlap < tiling.tile_size,
        min(64, tiling.tile_size - 1),
    )
    _check(tiling, "row_height", _is_int(tiling.row_height) and tiling.row_height > 0, 384)
    _check(tiling, "start_y", _is_number(tiling.start_y), 0)

    pool = config.pool
    _check(pool, "concurrency", _is_int(pool.concurrency) and pool.concurrency >= 1, 3)
    _check(pool, "queue_limit", _is_int(pool.queue_limit) and pool.queue_limit >= 0, 20)
    _check(pool, "task_timeout", _is_number(pool.task_timeout) and pool.task_timeout > 0, 10.0)
    _check(pool, "crash_retries", _is_int(pool.crash_retries) and pool.crash_retries >= 0, 1)
    _check(pool, "error_retries", _is_int(pool.error_retries) and pool.error_retries >= 0, 1)

    merge = config.merge
    if not (_is_number(merge.tight_gap) and _is_number(merge.wide_gap) and 0 <= merge.tight_gap <= merge.wide_gap):
        logger.warning(
            f"Invalid merge gaps {merge.tight_gap!r}/{merge.wide_gap!r}, defaulting to 10/30"
        )
        merge.tight_gap, merge.wide_gap = 10, 30

    ocr = config.ocr
    _check(ocr, "debounce", _is_number(ocr.debounce) and ocr.debounce >= 0, 1.5)

    validation = config.validation
    _check(validation, "timeout", _is_number(validation.timeout) and validation.timeout > 0, 2.0)
    _check(validation, "debounce", _is_number(validation.debounce) and validation.debounce >= 0, 0.5)
    _check(validation, "settings", isinstance(validation.settings, dict), {})

    cache = config.cache
    _check(cache, "backend", cache.backend in ("memory", "disk"), "memory")
    _check(cache, "cache_dir", isinstance(cache.cache_dir, str) and bool(cache.cache_dir), ".inkrow/cache")
    _check(cache, "ttl", _is_number(cache.ttl) and cache.ttl > 0, 7 * 24 * 3600.0)
    _check(cache, "max_size", _is_int(cache.max_size) and cache.max_size > 0, 5000)

    log = config.logging
    if isinstance(log.level, str) and log.level.upper() in ("DEBUG", "INFO", "WARNING", "ERROR"):
        log.level = log.level.upper()
    else:
        _check(log, "level", False, "INFO")
    _check(log, "log_dir", isinstance(log.log_dir, str) and bool(log.log_dir), ".inkrow/logs")
    _check(log, "events_log", isinstance(log.events_log, bool), True)

    services = config.services
    _check(
        services, "recognition_url",
        services.recognition_url is None or isinstance(services.recognition_url, str),
        None,
    )
    _check(
        services, "recognition_timeout",
        _is_number(services.recognition_timeout) and services.recognition_timeout > 0,
        10.0,
    )


def save_config(config: InkrowConfig, path: Path) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: InkrowConfig instance
        path: Output path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

    logger.info(f"Configuration saved to: {path}")
