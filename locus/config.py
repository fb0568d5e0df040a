"""
Locus Configuration

Configuration with YAML files, environment variables, validation, and
runtime updates.

Configuration sources (in order of precedence):
    1. Environment variables (LOCUS_*)
    2. Runtime overrides and config files, last write wins
    3. Default values

Default files, loaded when present: ./locus.yaml, ./config/locus.yaml,
~/.locus/config.yaml.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from locus.observability import LocusLayer, get_logger
from locus.ratelimit import RateLimitConfig

T = TypeVar("T")

logger = get_logger("config", LocusLayer.CONFIG)

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
LOG_FORMATS = ("json", "text")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """A configuration value failed validation."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value; an environment variable wins over everything else."""
        if self.env_var and self.env_var in os.environ:
            value = self._coerce(os.environ[self.env_var])
            self._check(value)
            return value
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        self._check(value)
        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _check(self, value: Any) -> None:
        expected = type(self.default)
        if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            raise ConfigValidationError(f"Expected integer, got {value!r}")
        if expected is str and not isinstance(value, str):
            raise ConfigValidationError(f"Expected string, got {value!r}")
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            return value.strip().lower()  # type: ignore
        except ValueError as ex:
            raise ConfigValidationError(f"{self.env_var}={value!r}: {ex}") from ex

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class CellsConfig:
    """Configuration for the cell indexer."""
    resolution: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="LOCUS_CELL_RESOLUTION",
        description="Cell resolution (1-15); precision stops growing at 6",
        validator=lambda x: 1 <= x <= 15,
    ))


@dataclass
class ResolveConfig:
    """Result caps for resolve."""
    default_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=25,
        env_var="LOCUS_RESOLVE_LIMIT",
        description="Objects returned by a plain resolve",
        validator=lambda x: x > 0,
    ))
    history_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100,
        env_var="LOCUS_RESOLVE_HISTORY_LIMIT",
        description="Objects returned when includeHistory is set",
        validator=lambda x: x > 0,
    ))


@dataclass
class RateLimitSettings:
    """Fixed-window rate limits."""
    window_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="LOCUS_RATE_WINDOW_SECONDS",
        description="Window length in seconds",
        validator=lambda x: x > 0,
    ))
    resolve_per_window: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="LOCUS_RATE_RESOLVE",
        description="resolve requests per project per window",
        validator=lambda x: x >= 0,
    ))
    anchor_per_window: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="LOCUS_RATE_ANCHOR",
        description="anchor requests per project per window",
        validator=lambda x: x >= 0,
    ))
    supersede_per_window: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=20,
        env_var="LOCUS_RATE_SUPERSEDE",
        description="supersede requests per project per window",
        validator=lambda x: x >= 0,
    ))

    def to_rate_limit_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            window_seconds=self.window_seconds.get(),
            limits={
                "resolve": self.resolve_per_window.get(),
                "anchor": self.anchor_per_window.get(),
                "supersede": self.supersede_per_window.get(),
            },
        )


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="LOCUS_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="LOCUS_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in LOG_FORMATS,
    ))


@dataclass
class LocusConfig:
    """
    Root configuration for Locus.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    cells: CellsConfig = field(default_factory=CellsConfig)
    resolve: ResolveConfig = field(default_factory=ResolveConfig)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)

    def validate(self) -> List[str]:
        """Check every value plus the cross-field rules; returns error messages."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    obj._check(obj.get())
                except ConfigValidationError as ex:
                    errors.append(f"{path}: {ex}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self)
        if not errors and self.resolve.history_limit.get() <= self.resolve.default_limit.get():
            errors.append("resolve.history_limit: must be greater than resolve.default_limit")
        return errors

    def ledger_settings(self) -> Dict[str, int]:
        """Keyword arguments for ``ResolverLedger``."""
        return {
            "resolution": self.cells.resolution.get(),
            "default_limit": self.resolve.default_limit.get(),
            "history_limit": self.resolve.history_limit.get(),
        }


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config = LocusConfig()
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton; the next ``ConfigManager()`` starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> LocusConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as ex:
                raise ConfigError(f"Invalid YAML in {path}: {ex}") from ex

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")
        self._apply_dict(data)
        logger.info("loaded configuration file", path=str(path))

    def default_paths(self) -> List[Path]:
        return [
            Path("locus.yaml"),
            Path("config/locus.yaml"),
            Path.home() / ".locus" / "config.yaml",
        ]

    def load_defaults(self) -> None:
        """Load the default configuration files that exist."""
        for path in self.default_paths():
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""

        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}{key}"
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    try:
                        attr.set(value)
                    except ConfigValidationError as ex:
                        raise ConfigValidationError(f"{path}: {ex}") from ex
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{path}.")
                else:
                    raise ConfigError(f"Expected a mapping at {path}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("resolve.default_limit", 10)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("cells.resolution")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        return self._config.validate()

    def require_valid(self) -> LocusConfig:
        """Return the configuration, raising ``ConfigValidationError`` if any value is invalid."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))
        return self._config

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> LocusConfig:
    """Get the current Locus configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
