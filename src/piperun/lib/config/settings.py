"""Repository-level operational config loader."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import cast

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".piperun"
CONFIG_FILENAME = "config.toml"


@dataclass(frozen=True, slots=True)
class PiperunConfig:
    """Resolved operational configuration for piperun."""

    kill_grace_seconds: float = 2.0
    timeout_seconds: float | None = None
    default_shell: str = "/bin/bash"
    # (label, patterns) pairs in file order; order decides which category wins.
    error_categories: tuple[tuple[str, tuple[str, ...]], ...] = ()

    def category_mapping(self) -> dict[str, tuple[str, ...]]:
        return dict(self.error_categories)


_SECTION_KEY_MAP: dict[str, dict[str, str]] = {
    "timeouts": {
        "kill_grace_seconds": "kill_grace_seconds",
        "timeout_seconds": "timeout_seconds",
        "run_seconds": "timeout_seconds",
    },
    "shell": {
        "default": "default_shell",
        "default_shell": "default_shell",
    },
}

_ENV_OVERRIDE_MAP: dict[str, str] = {
    "PIPERUN_KILL_GRACE_SECONDS": "kill_grace_seconds",
    "PIPERUN_TIMEOUT_SECONDS": "timeout_seconds",
    "PIPERUN_SHELL": "default_shell",
}

_FLOAT_FIELDS = frozenset({"kill_grace_seconds", "timeout_seconds"})


def config_path(root: Path) -> Path:
    return root / CONFIG_DIRNAME / CONFIG_FILENAME


def _coerce_file_value(*, field_name: str, raw_value: object, source: str) -> object:
    if field_name in _FLOAT_FIELDS:
        if isinstance(raw_value, bool) or not isinstance(raw_value, int | float):
            raise ValueError(
                f"Invalid value for '{source}': expected float, got "
                f"{type(raw_value).__name__} ({raw_value!r})."
            )
        value = float(raw_value)
        if value <= 0:
            raise ValueError(f"Invalid value for '{source}': expected a positive number.")
        return value

    if not isinstance(raw_value, str):
        raise ValueError(
            f"Invalid value for '{source}': expected str, got "
            f"{type(raw_value).__name__} ({raw_value!r})."
        )
    normalized = raw_value.strip()
    if not normalized:
        raise ValueError(f"Invalid value for '{source}': expected non-empty string.")
    return normalized


def _coerce_error_categories(
    *,
    raw_value: object,
    source: str,
) -> tuple[tuple[str, tuple[str, ...]], ...]:
    if not isinstance(raw_value, dict):
        raise ValueError(f"Invalid value for '{source}': expected table.")

    parsed: list[tuple[str, tuple[str, ...]]] = []
    for label, patterns in cast("dict[str, object]", raw_value).items():
        if not isinstance(patterns, list):
            raise ValueError(
                f"Invalid value for '{source}.{label}': expected array[str], got "
                f"{type(patterns).__name__} ({patterns!r})."
            )
        items: list[str] = []
        for item in cast("list[object]", patterns):
            if not isinstance(item, str) or not item:
                raise ValueError(
                    f"Invalid value for '{source}.{label}': expected non-empty strings, "
                    f"got {item!r}."
                )
            items.append(item)
        parsed.append((label, tuple(items)))
    return tuple(parsed)


def _coerce_env_value(*, field_name: str, raw_value: str, env_name: str) -> object:
    if field_name in _FLOAT_FIELDS:
        try:
            value = float(raw_value.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected float, got {raw_value!r}."
            ) from error
        if value <= 0:
            raise ValueError(
                f"Invalid environment override '{env_name}': expected a positive number."
            )
        return value

    normalized = raw_value.strip()
    if not normalized:
        raise ValueError(
            f"Invalid environment override '{env_name}': expected non-empty string."
        )
    return normalized


def _apply_toml_payload(
    *,
    values: dict[str, object],
    payload: dict[str, object],
    path: Path,
) -> None:
    for key, raw_value in payload.items():
        if key == "error_categories":
            values["error_categories"] = _coerce_error_categories(
                raw_value=raw_value,
                source="error_categories",
            )
            continue

        section_map = _SECTION_KEY_MAP.get(key)
        if section_map is None:
            logger.warning("Ignoring unknown piperun config key '%s'.", key)
            continue
        if not isinstance(raw_value, dict):
            raise ValueError(f"Invalid value for '{key}' in '{path}': expected table.")
        for section_key, section_value in cast("dict[str, object]", raw_value).items():
            field_name = section_map.get(section_key)
            if field_name is None:
                logger.warning(
                    "Ignoring unknown piperun config key '%s.%s'.",
                    key,
                    section_key,
                )
                continue
            values[field_name] = _coerce_file_value(
                field_name=field_name,
                raw_value=section_value,
                source=f"{key}.{section_key}",
            )


def _apply_env_overrides(values: dict[str, object]) -> None:
    for env_name, field_name in _ENV_OVERRIDE_MAP.items():
        raw_value = os.getenv(env_name)
        if raw_value is None:
            continue
        values[field_name] = _coerce_env_value(
            field_name=field_name,
            raw_value=raw_value,
            env_name=env_name,
        )


def load_config(root: Path) -> PiperunConfig:
    """Load `.piperun/config.toml` under ``root`` and apply environment overrides."""

    defaults = PiperunConfig()
    values: dict[str, object] = {
        "kill_grace_seconds": defaults.kill_grace_seconds,
        "timeout_seconds": defaults.timeout_seconds,
        "default_shell": defaults.default_shell,
        "error_categories": defaults.error_categories,
    }
    path = config_path(root)
    if path.is_file():
        payload_obj = tomllib.loads(path.read_text(encoding="utf-8"))
        payload = cast("dict[str, object]", payload_obj)
        _apply_toml_payload(values=values, payload=payload, path=path)

    _apply_env_overrides(values)
    return PiperunConfig(
        kill_grace_seconds=cast("float", values["kill_grace_seconds"]),
        timeout_seconds=cast("float | None", values["timeout_seconds"]),
        default_shell=cast("str", values["default_shell"]),
        error_categories=cast(
            "tuple[tuple[str, tuple[str, ...]], ...]",
            values["error_categories"],
        ),
    )
