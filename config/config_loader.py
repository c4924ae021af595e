import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
REQUIRED_SECTIONS = ('exchange', 'lifecycle', 'database', 'backtest')
ENV_PATTERN = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$')


class ConfigError(RuntimeError):
    """Configuration file missing, unparsable or structurally invalid."""


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return SectionProxy(value)
    return value


class SectionProxy(Mapping):
    """Read-only view of one config section; nested dicts come back as proxies."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        # null and unresolved ${ENV} values fall back to the caller's default
        value = self._data.get(key)
        return default if value is None else _wrap(value)

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """Engine configuration loaded from YAML, with ``${NAME}`` values taken from the environment."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('CONFIG_PATH') or DEFAULT_CONFIG_PATH)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{self.config_path} must contain a mapping of sections")
        data = resolve_env(raw)
        validate(data)
        return data

    def reload(self) -> None:
        self._data = self._load()


def resolve_env(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: resolve_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_env(item) for item in node]
    if isinstance(node, str):
        match = ENV_PATTERN.match(node)
        if match:
            return os.getenv(match.group(1)) or None
    return node


def _non_negative(section: Dict[str, Any], keys: Iterable[str], name: str) -> None:
    for key in keys:
        value = section.get(key)
        if value is None:
            continue
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ConfigError(f"{name}.{key} must be a non-negative number, got {value!r}")


def validate(data: Dict[str, Any]) -> None:
    missing = [name for name in REQUIRED_SECTIONS if not isinstance(data.get(name), dict)]
    if missing:
        raise ConfigError(f"Missing config sections: {', '.join(missing)}")

    lifecycle = data['lifecycle']
    _non_negative(
        lifecycle,
        [key for key in lifecycle if key.endswith(('_s', '_retries', '_attempts', '_days'))],
        'lifecycle',
    )
    step = lifecycle.get('open_qty_step_down')
    if step is not None and not 0 <= step < 1:
        raise ConfigError(f"lifecycle.open_qty_step_down must be in [0, 1), got {step!r}")

    exchange = data['exchange']
    _non_negative(exchange, ('taker_fee', 'maker_fee', 'recv_window_ms'), 'exchange')


config = Config()
