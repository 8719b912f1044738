"""score_etl.settings

Import tuning settings, optionally loaded from a YAML file.

Example file:

    chunk_size: 2000
    max_attempts: 4
    backoff_base_seconds: 0.5
    chunk_pause_seconds: 0.01
    delimiter: ","
    errors_dir: ./artifacts/import_errors

Precedence: explicit CLI flag > YAML file > built-in default.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml


class SettingsValidationError(ValueError):
    """Raised when a settings file fails validation."""


@dataclass(frozen=True)
class ImportSettings:
    chunk_size: int = 1000
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    chunk_pause_seconds: float = 0.01
    delimiter: str = ","
    errors_dir: Path = Path("./artifacts/import_errors")

    def with_overrides(self, **overrides: Any) -> ImportSettings:
        """Return a copy with every non-None override applied, then validate."""
        applied = {k: v for k, v in overrides.items() if v is not None}
        if "errors_dir" in applied:
            applied["errors_dir"] = Path(applied["errors_dir"])
        settings = replace(self, **applied)
        validate_settings(settings)
        return settings


_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "chunk_size": (int,),
    "max_attempts": (int,),
    "backoff_base_seconds": (int, float),
    "chunk_pause_seconds": (int, float),
    "delimiter": (str,),
    "errors_dir": (str, Path),
}


def validate_settings(settings: ImportSettings) -> None:
    if settings.chunk_size < 1:
        raise SettingsValidationError("chunk_size must be >= 1")
    if settings.max_attempts < 1:
        raise SettingsValidationError("max_attempts must be >= 1")
    if settings.backoff_base_seconds < 0:
        raise SettingsValidationError("backoff_base_seconds must be >= 0")
    if settings.chunk_pause_seconds < 0:
        raise SettingsValidationError("chunk_pause_seconds must be >= 0")
    if len(settings.delimiter) != 1:
        raise SettingsValidationError("delimiter must be a single character")


def load_settings(yaml_path: Path | None) -> ImportSettings:
    """Load ImportSettings from YAML; None or an empty file yields the defaults.

    Raises:
        SettingsValidationError: unknown keys, wrong value types or
            out-of-range values.
    """
    if yaml_path is None:
        return ImportSettings()
    try:
        data: Any = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SettingsValidationError(f"cannot read settings file {yaml_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise SettingsValidationError(f"invalid YAML in {yaml_path}: {exc}") from exc
    if data is None:
        return ImportSettings()
    if not isinstance(data, dict):
        raise SettingsValidationError(f"{yaml_path}: top level must be a mapping")

    known = {f.name for f in fields(ImportSettings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise SettingsValidationError(f"{yaml_path}: unknown settings {unknown}")

    for key, value in data.items():
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, _FIELD_TYPES[key]):
            raise SettingsValidationError(
                f"{yaml_path}: {key} has invalid type {type(value).__name__}"
            )

    return ImportSettings().with_overrides(**data)
