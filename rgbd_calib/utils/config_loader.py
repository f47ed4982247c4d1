"""
YAML configuration files.

A calibration run is described by one YAML file (see ``configs/default.yaml``).
Any value written as ``"!include sensors/depth.yaml"`` is replaced by the
content of that file, resolved relative to the file that includes it, so
sensor intrinsics can live in their own files. Command line overrides use
dot notation (``solver.max_workers=4``) and are parsed as YAML scalars.
"""

import copy
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import yaml

INCLUDE_TAG = "!include"

PathLike = Union[str, Path]


class ConfigLoader:
    """Reads calibration configs, expanding includes and caching parsed files."""

    def __init__(self, config_dir: Optional[PathLike] = None):
        """
        Args:
            config_dir: Directory searched for relative paths that do not exist
                from the working directory.
        """
        self.config_dir = Path(config_dir) if config_dir else Path("configs")
        self._cache: Dict[Path, Dict[str, Any]] = {}

    def resolve(self, config_path: PathLike) -> Path:
        """Path as given if it exists, otherwise relative to ``config_dir``."""
        config_path = Path(config_path)
        if config_path.is_absolute() or config_path.exists():
            return config_path
        if config_path.parts[:len(self.config_dir.parts)] == self.config_dir.parts:
            return config_path
        return self.config_dir / config_path

    def load(self, config_path: PathLike, use_cache: bool = True) -> Dict[str, Any]:
        """
        Load a config file with its includes expanded.

        The returned mapping is a fresh copy; callers may modify it.

        Raises:
            FileNotFoundError: If the file or one of its includes is missing.
        """
        config_path = self.resolve(config_path)

        if not (use_cache and config_path in self._cache):
            config = self._read(config_path)
            if not use_cache:
                return config
            self._cache[config_path] = config

        return copy.deepcopy(self._cache[config_path])

    def _read(self, path: Path) -> Any:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r") as f:
            content = yaml.safe_load(f)
        return self._expand(content if content is not None else {}, path.parent)

    def _expand(self, node: Any, base_dir: Path) -> Any:
        """Replace ``!include`` strings in a mapping, recursively."""
        if isinstance(node, str) and node.startswith(INCLUDE_TAG + " "):
            return self._read(base_dir / node[len(INCLUDE_TAG):].strip())
        if isinstance(node, dict):
            return {key: self._expand(value, base_dir) for key, value in node.items()}
        return node

    @staticmethod
    def merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive merge of ``override`` into a copy of ``base``; inputs are untouched."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = ConfigLoader.merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    @staticmethod
    def save(config: Dict[str, Any], path: PathLike) -> None:
        """Write a config mapping, keeping key order."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)

    def clear_cache(self) -> None:
        self._cache.clear()


def load_config(config_path: PathLike, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load ``config_path`` and apply nested ``overrides`` on top."""
    loader = ConfigLoader()
    config = loader.load(config_path)
    return loader.merge(config, overrides) if overrides else config


def parse_overrides(items: Iterable[str]) -> Dict[str, Any]:
    """
    Parse ``key.path=value`` strings into a nested override mapping.

    Values are parsed as YAML scalars, so ``4`` is an int, ``false`` a bool
    and ``[8, 8]`` a list.

    Raises:
        ValueError: If an item has no ``=`` or no key.
    """
    overrides: Dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Override must look like key=value, got '{item}'")
        set_nested(overrides, key.strip(), yaml.safe_load(raw))
    return overrides


def get_nested(config: Dict[str, Any], key: str, default: Any = None) -> Any:
    """
    Value at a dot-separated key such as ``undistortion.local_bin_size``.

    Returns ``default`` as soon as a level is missing or is not a mapping.
    """
    node: Any = config
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_nested(config: Dict[str, Any], key: str, value: Any) -> None:
    """Set a dot-separated key, creating (or replacing non-mapping) levels on the way."""
    *parents, leaf = key.split(".")
    node = config
    for part in parents:
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    node[leaf] = value
