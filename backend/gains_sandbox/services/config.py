"""Configuration loading for the sandbox.

Settings live in a two-level YAML file (section -> key -> value). Every key
is declared in SETTINGS together with its default and its bounds, so the
file only needs to carry the values that differ from the defaults.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GAINS_SANDBOX_CONFIG"

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass
class ConfigValidationError:
    """One problem found in the config file, keyed by dotted path."""
    path: str
    message: str


class ConfigValidationException(Exception):
    """The config file was rejected; `errors` lists every problem found."""

    def __init__(self, errors: List[ConfigValidationError]):
        self.errors = errors
        lines = "\n".join(f"{e.path or '<root>'}: {e.message}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{lines}")


@dataclass(frozen=True)
class Setting:
    """Declared type, default and bounds of a single config key."""
    kind: type
    default: Any
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    choices: Optional[Sequence[str]] = None

    def problems(self, value: Any) -> Iterator[str]:
        # YAML booleans parse as int subclasses
        numeric = self.kind in (int, float)
        accepted = (int, float) if self.kind is float else self.kind
        if not isinstance(value, accepted) or (numeric and isinstance(value, bool)):
            yield f"Expected {self.kind.__name__}, got {type(value).__name__}"
            return
        if self.minimum is not None and value < self.minimum:
            yield f"Value {value} is below minimum {self.minimum}"
        if self.maximum is not None and value > self.maximum:
            yield f"Value {value} is above maximum {self.maximum}"
        if self.choices is not None and value not in self.choices:
            yield f"Value '{value}' not in allowed options: {list(self.choices)}"


SETTINGS: Dict[str, Dict[str, Setting]] = {
    "server": {
        "host": Setting(str, "127.0.0.1"),
        "port": Setting(int, 8000, minimum=1, maximum=65535),
        "debug": Setting(bool, False),
    },
    "database": {
        "url": Setting(str, "sqlite+aiosqlite:///./gains_sandbox.db"),
    },
    "worker": {
        "concurrency": Setting(int, 2, minimum=1, maximum=64),
        "poll_interval_seconds": Setting(float, 0.5, minimum=0.01),
        "claim_timeout_seconds": Setting(float, 300, minimum=1),
        "visibility_timeout_seconds": Setting(float, 120, minimum=1),
        "sweep_interval_seconds": Setting(float, 30, minimum=0.1),
        "max_pending_per_user": Setting(int, 5, minimum=0),
        "max_attempts": Setting(int, 3, minimum=1),
    },
    "gains": {
        "oversell_policy": Setting(str, "error", choices=["error", "zero_basis"]),
        "long_term_days": Setting(int, 365, minimum=1),
    },
    "logging": {
        "level": Setting(str, "INFO", choices=LOG_LEVELS),
        "format": Setting(str, "%(asctime)s %(levelname)s [%(name)s] %(message)s"),
    },
}

DEFAULTS: Dict[str, Dict[str, Any]] = {
    section: {key: setting.default for key, setting in keys.items()}
    for section, keys in SETTINGS.items()
}


def check_config(config: Dict[str, Any]) -> List[ConfigValidationError]:
    """Compare a parsed config mapping against SETTINGS."""
    errors = []
    for section, body in config.items():
        known = SETTINGS.get(section)
        if known is None:
            errors.append(ConfigValidationError(section, f"Unknown configuration key '{section}'"))
            continue
        if not isinstance(body, dict):
            errors.append(ConfigValidationError(section, f"Expected dict, got {type(body).__name__}"))
            continue
        for key, value in body.items():
            path = f"{section}.{key}"
            if key not in known:
                errors.append(ConfigValidationError(path, f"Unknown configuration key '{key}'"))
                continue
            errors.extend(ConfigValidationError(path, msg) for msg in known[key].problems(value))
    return errors


class ConfigService:
    """Reads the YAML config file once and answers dotted-key lookups."""

    def __init__(self, config_path: Optional[str] = None):
        """Resolve the file location.

        Args:
            config_path: Explicit path. Falls back to $GAINS_SANDBOX_CONFIG,
                then to config.yaml next to the gains_sandbox package.
        """
        self.config_path = (
            config_path
            or os.environ.get(CONFIG_ENV_VAR)
            or str(Path(__file__).resolve().parents[2] / "config.yaml")
        )
        self._config: Dict[str, Any] = {}

    def load_and_validate(self) -> Dict[str, Any]:
        """Parse and check the file; a missing file means all defaults.

        Raises:
            ConfigValidationException: Bad YAML or any schema violation.
        """
        path = Path(self.config_path)
        if not path.exists():
            logger.warning(f"No config file at {path}, running on defaults")
            self._config = {}
            return self._config

        try:
            parsed = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigValidationException([ConfigValidationError("", f"Invalid YAML syntax: {e}")])

        parsed = {} if parsed is None else parsed
        if not isinstance(parsed, dict):
            raise ConfigValidationException([
                ConfigValidationError("", f"Config must be a dictionary, got {type(parsed).__name__}")
            ])

        errors = check_config(parsed)
        if errors:
            raise ConfigValidationException(errors)

        self._config = parsed
        logger.info(f"Loaded configuration from {path}")
        return parsed

    def get(self, key: str, default: Any = None) -> Any:
        """Look up "section.key", preferring the file over DEFAULTS."""
        section, _, name = key.partition(".")
        for source in (self._config, DEFAULTS):
            values = source.get(section)
            if not name:
                if values is not None:
                    return values
            elif isinstance(values, dict) and name in values:
                return values[name]
        return default


config_service = ConfigService()
