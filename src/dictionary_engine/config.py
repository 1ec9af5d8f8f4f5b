"""
Engine configuration: defaults plus an optional YAML override file.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from dictionary_engine.exceptions import ConfigError

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Tunables for import, storage and deletion."""

    db_path: str = ":memory:"
    workers: int = 3
    chunk_size: int = 5000
    batch_size: int = 2000
    merge_watermark: int = 50_000
    merge_window: int | None = None
    progress_interval: float = 2.0
    log_level: str = "WARNING"

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)


# field name -> (accepted types, may be None, minimum)
_FIELD_RULES: dict[str, tuple[tuple[type, ...], bool, float | None]] = {
    "db_path": ((str,), False, None),
    "workers": ((int,), False, 1),
    "chunk_size": ((int,), False, 1),
    "batch_size": ((int,), False, 1),
    "merge_watermark": ((int,), False, 1),
    "merge_window": ((int,), True, 1),
    "progress_interval": ((int, float), False, 0),
    "log_level": ((str,), False, None),
}


def load_config(
    source: str | Path | dict[str, Any] | None = None,
) -> EngineConfig:
    """Load an :class:`EngineConfig` from a YAML file, YAML string or mapping.

    Args:
        source: Path to a YAML file, YAML text, a parsed mapping, or None
            for the defaults

    Returns:
        EngineConfig with every key not given left at its default

    Raises:
        ConfigError: If the YAML is malformed or a key is unknown or invalid
        FileNotFoundError: If a path is given and does not exist
    """
    if source is None:
        return EngineConfig()

    lines: dict[str, int] = {}
    if isinstance(source, dict):
        data = source
    elif isinstance(source, Path) or (isinstance(source, str) and _is_file_path(source)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        text = path.read_text(encoding="utf-8")
        data = _load_yaml_string(text)
        lines = _key_lines(text)
    else:
        data = _load_yaml_string(source)
        lines = _key_lines(source)

    return _parse_config(data, lines)


def _is_file_path(s: str) -> bool:
    """Check if a string looks like a file path."""
    if "\n" in s:
        return False
    if "/" in s or "\\" in s:
        return True
    return s.endswith((".yaml", ".yml"))


def _load_yaml_string(s: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(s)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        line_num = mark.line + 1 if mark else None
        raise ConfigError(f"Invalid YAML: {e}", line=line_num) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("YAML root must be a mapping (dictionary)")
    return data


def _key_lines(text: str) -> dict[str, int]:
    """Map each top-level key to the 1-based line it appears on."""
    try:
        node = yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError:
        return {}
    if not isinstance(node, yaml.MappingNode):
        return {}
    return {
        str(key.value): key.start_mark.line + 1
        for key, _ in node.value
        if isinstance(key, yaml.ScalarNode)
    }


def _parse_config(data: dict[str, Any], lines: dict[str, int]) -> EngineConfig:
    known = {f.name for f in fields(EngineConfig)}
    values: dict[str, Any] = {}
    for key, value in data.items():
        line = lines.get(str(key))
        if key not in known:
            raise ConfigError(f"Unknown configuration key: {key!r}", line=line)
        values[key] = _check_value(key, value, line)
    return EngineConfig(**values)


def _check_value(key: str, value: Any, line: int | None) -> Any:
    types, nullable, minimum = _FIELD_RULES[key]
    if value is None:
        if nullable:
            return None
        raise ConfigError(f"Field {key!r} must not be empty", line=line)
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) or not isinstance(value, types):
        expected = " or ".join(t.__name__ for t in types)
        raise ConfigError(
            f"Field {key!r} must be {expected}, got {type(value).__name__}",
            line=line,
        )
    if minimum is not None and value < minimum:
        raise ConfigError(f"Field {key!r} must be >= {minimum}", line=line)
    if key == "log_level":
        value = value.upper()
        if value not in _LOG_LEVELS:
            raise ConfigError(
                f"Field 'log_level' must be one of {', '.join(_LOG_LEVELS)}",
                line=line,
            )
    return value
