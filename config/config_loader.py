import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_ENV_VAR = 'TRADER_CONFIG'

# ${NAME} or ${NAME:-fallback}
_PLACEHOLDER = re.compile(r'^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*))?\}$')


def expand_env(node: Any) -> Any:
    """Replace whole-string ``${VAR}`` placeholders from the environment.

    Unset variables without a fallback keep the placeholder text, so
    consumers can tell "not configured" apart from an empty value.
    """
    if isinstance(node, dict):
        return {key: expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_env(item) for item in node]
    if isinstance(node, str):
        match = _PLACEHOLDER.match(node.strip())
        if match:
            name, fallback = match.groups()
            value = os.getenv(name)
            if value is not None:
                return value
            return fallback if fallback is not None else node
    return node


def as_plain(node: Any) -> Any:
    """Unwrap SectionProxy/Config objects into plain dicts and lists."""
    to_dict = getattr(node, 'to_dict', None)
    if callable(to_dict):
        node = to_dict()
    if isinstance(node, dict):
        return {key: as_plain(value) for key, value in node.items()}
    if isinstance(node, (list, tuple)):
        return [as_plain(item) for item in node]
    return node


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view over one configuration section.

    Nested mappings come back as proxies too; attribute access raises
    ``AttributeError`` for missing or null keys.
    """

    def __init__(self, data: Optional[Dict[str, Any]]):
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

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config:
    """Trader configuration: a YAML file (or a dict) with env placeholders expanded.

    The file defaults to ``config/config.yaml`` beside this module and can
    be redirected with ``TRADER_CONFIG``.
    """

    def __init__(self, config_path: Union[str, Path, None] = None, data: Optional[Dict[str, Any]] = None):
        if data is not None:
            self.config_path: Optional[Path] = None
            self._data = expand_env(data)
            return
        self.config_path = Path(config_path or os.getenv(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH)
        self._data = self._load()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        return cls(data=data)

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Error parsing YAML configuration {self.config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise RuntimeError(f"Configuration {self.config_path} must be a mapping at the top level")
        return expand_env(raw)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def section(self, key: str) -> SectionProxy:
        """Return a section, empty when the key is absent."""
        value = self._data.get(key)
        return SectionProxy(value if isinstance(value, dict) else {})

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            return _wrap(self._data[name])
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc

    def to_dict(self) -> Dict[str, Any]:
        return self._data

    def reload(self) -> None:
        if self.config_path is not None:
            self._data = self._load()


config = Config()
