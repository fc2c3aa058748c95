from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.field_schema import FieldSchema
from .datasets import get_schema

"""Config loader.

Responsibilities:
- Load YAML config/import.yml (every key optional)
- Validate it against config_schema.json shipped next to this module
- Apply defaults and expose frozen settings dataclasses
- Resolve the database DSN, environment variables taking precedence over the
  file (.env is loaded by the CLI before this runs)
"""

__all__ = [
    "ConfigError",
    "DatabaseConfig",
    "DatasetOverrides",
    "ImportSettings",
    "MappingTemplate",
    "TimeoutConfig",
    "load_config",
    "resolve_dsn",
    "settings_from_dict",
]

SCHEMA_PATH = Path(__file__).parent / "config_schema.json"


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DatabaseConfig:
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class TimeoutConfig:
    snapshot_seconds: float = 30.0
    commit_seconds: float = 120.0


@dataclass(frozen=True)
class DatasetOverrides:
    similarity_threshold: float | None = None
    min_confidence: float | None = None
    sheet_hints: tuple[str, ...] | None = None
    extra_aliases: dict[str, list[str]] = field(default_factory=dict)


@dataclass(frozen=True)
class MappingTemplate:
    """Saved column mapping: canonical field -> header text."""
    name: str
    dataset: str
    mapping: dict[str, str]


@dataclass(frozen=True)
class ImportSettings:
    max_file_size_mb: float = 50
    accepted_extensions: tuple[str, ...] = (".xlsx", ".xls")
    max_errors: int | None = None
    prune_removed: bool = True
    page_size: int = 1000
    logs_dir: str = "logs"
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    datasets: dict[str, DatasetOverrides] = field(default_factory=dict)
    templates: dict[str, MappingTemplate] = field(default_factory=dict)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    def schema_for(self, dataset_type: str) -> FieldSchema:
        """Built-in schema with the configured overrides applied."""
        schema = get_schema(dataset_type)
        overrides = self.datasets.get(dataset_type)
        if overrides is None:
            return schema
        return schema.with_overrides(
            similarity_threshold=overrides.similarity_threshold,
            min_confidence=overrides.min_confidence,
            sheet_hints=overrides.sheet_hints,
            extra_aliases=overrides.extra_aliases,
        )

    def template(self, name: str, dataset_type: str) -> dict[str, str]:
        tpl = self.templates.get(name)
        if tpl is None:
            raise ConfigError(f"unknown mapping template '{name}' (available: {', '.join(sorted(self.templates)) or '-'})")
        if tpl.dataset != dataset_type:
            raise ConfigError(f"mapping template '{name}' is for {tpl.dataset}, not {dataset_type}")
        return dict(tpl.mapping)


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing or invalid, or data violating it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {location}: {e.message}") from e


def settings_from_dict(data: dict[str, Any]) -> ImportSettings:
    """Build ImportSettings from an already loaded mapping (validated first)."""
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    _validate_config_schema(data)

    defaults = ImportSettings()
    timeouts_raw = data.get("timeouts") or {}
    timeouts = TimeoutConfig(
        snapshot_seconds=float(timeouts_raw.get("snapshot_seconds", defaults.timeouts.snapshot_seconds)),
        commit_seconds=float(timeouts_raw.get("commit_seconds", defaults.timeouts.commit_seconds)),
    )
    datasets = {
        name: DatasetOverrides(
            similarity_threshold=raw.get("similarity_threshold"),
            min_confidence=raw.get("min_confidence"),
            sheet_hints=tuple(raw["sheet_hints"]) if "sheet_hints" in raw else None,
            extra_aliases={k: list(v) for k, v in (raw.get("extra_aliases") or {}).items()},
        )
        for name, raw in (data.get("datasets") or {}).items()
    }
    for name, overrides in datasets.items():
        unknown = [f for f in overrides.extra_aliases if get_schema(name).get(f) is None]
        if unknown:
            raise ConfigError(f"datasets/{name}/extra_aliases: unknown fields {unknown}")
    templates = {
        name: MappingTemplate(name=name, dataset=raw["dataset"], mapping=dict(raw["mapping"]))
        for name, raw in (data.get("templates") or {}).items()
    }
    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    return ImportSettings(
        max_file_size_mb=data.get("max_file_size_mb", defaults.max_file_size_mb),
        accepted_extensions=tuple(e.lower() for e in data.get("accepted_extensions", defaults.accepted_extensions)),
        max_errors=data.get("max_errors", defaults.max_errors),
        prune_removed=data.get("prune_removed", defaults.prune_removed),
        page_size=data.get("page_size", defaults.page_size),
        logs_dir=data.get("logs_dir", defaults.logs_dir),
        timeouts=timeouts,
        datasets=datasets,
        templates=templates,
        database=db,
    )


def load_config(path: Path) -> ImportSettings:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    return settings_from_dict(data)


def resolve_dsn(db: DatabaseConfig) -> str:
    """libpq DSN for the configured database.

    Precedence: DATABASE_URL / PGDSN, then the configured dsn, then the
    individual PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE variables
    falling back to the configured values.
    """
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db.host or "localhost")
    port = os.getenv("PGPORT", str(db.port) if db.port else "5432")
    user = os.getenv("PGUSER", db.user or "postgres")
    password = os.getenv("PGPASSWORD", db.password or "")
    database = os.getenv("PGDATABASE", db.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn
