"""Configuration loading with pydantic-settings.

Sources, highest precedence first:
1. Direct kwargs
2. Environment variables (TREESYNC__SECTION__KEY)
3. Explicit YAML file (``load_config(config_path=...)``)
4. Global YAML (~/.config/treesync/config.yaml)
5. Built-in defaults

Both YAML files are merged key-by-key before pydantic sees them, so an
explicit file that sets ``watch.debounce_sec`` keeps the global file's
``watch.step_ms``.
"""

from contextvars import ContextVar
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from treesync.config.models import (
    IgnoreConfig,
    LoggingConfig,
    ScanConfig,
    TreeSyncConfig,
    WatchConfig,
)
from treesync.core.errors import ConfigError

logger = structlog.get_logger()

GLOBAL_CONFIG_PATH = Path("~/.config/treesync/config.yaml").expanduser()

# Merged YAML layer for the load_config() call in progress.
_yaml_layer: ContextVar[dict[str, Any]] = ContextVar("treesync_yaml_layer", default={})


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


class _TreeSyncSettings(BaseSettings):
    """Env vars: TREESYNC__SCAN__CONCURRENCY, TREESYNC__IGNORE__MODE, etc."""

    model_config = SettingsConfigDict(
        env_prefix="TREESYNC__",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    logging: LoggingConfig = LoggingConfig()
    scan: ScanConfig = ScanConfig()
    watch: WatchConfig = WatchConfig()
    ignore: IgnoreConfig = IgnoreConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_settings = InitSettingsSource(settings_cls, init_kwargs=_yaml_layer.get())
        return (init_settings, env_settings, yaml_settings)


def _yaml_files(config_path: Path | None) -> list[Path]:
    files = [GLOBAL_CONFIG_PATH]
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError.parse_error(str(config_path), "file does not exist")
        files.append(config_path)
    return files


def load_config(config_path: Path | None = None, **kwargs: Any) -> TreeSyncConfig:
    """Load config: defaults < global yaml < config_path yaml < env vars < kwargs.

    Raises:
        ConfigError: Unreadable YAML, a missing ``config_path`` or a value
            that fails validation.
    """
    layer: dict[str, Any] = {}
    loaded: list[str] = []
    for path in _yaml_files(config_path):
        data = _load_yaml(path)
        if data:
            layer = _deep_merge(layer, data)
            loaded.append(str(path))

    token = _yaml_layer.set(layer)
    try:
        settings = _TreeSyncSettings(**kwargs)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigError.invalid_value(field, err.get("input"), err["msg"]) from e
    finally:
        _yaml_layer.reset(token)

    logger.debug("config_loaded", yaml_files=loaded, overrides=sorted(kwargs))
    return TreeSyncConfig.model_validate(settings.model_dump())
