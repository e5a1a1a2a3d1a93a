"""
Pydantic models for YAML configuration validation.
Provides schema validation with clear error messages for scraper output configurations.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from scrape_pipeline.core.errors import ConfigurationError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

SettingsT = TypeVar("SettingsT", bound=BaseModel)


def format_validation_error(e: ValidationError) -> str:
    """Render pydantic errors one per line as `field.path: message`."""
    error_messages = []
    for error in e.errors():
        field_path = ".".join(str(loc) for loc in error["loc"])
        error_messages.append(f"  {field_path}: {error['msg']}")
    return "\n".join(error_messages)


class SinkConfig(BaseModel):
    """Declarative configuration for one output sink."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: str = Field(..., description="Sink registry key, e.g. csv or database")
    enabled: bool = Field(True, description="Disabled sinks are skipped at assembly")
    settings: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("settings", "config"),
        description="Sink specific settings",
    )

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        key = str(v or "").strip().lower()
        if not key:
            raise ValueError("sink type cannot be empty")
        return key


class PipelineSettings(BaseModel):
    """Batching settings shared by all sinks of a scraper."""

    model_config = ConfigDict(populate_by_name=True)

    batch_size: int = Field(50, ge=1, validation_alias=AliasChoices("batch_size", "batchSize"))
    # Accepted for the extraction layer; the output pipeline does not act on these.
    error_handling: Literal["continue", "stop"] = Field(
        "continue", validation_alias=AliasChoices("error_handling", "errorHandling")
    )
    processors: List[str] = Field(default_factory=list)


class ScraperConfig(BaseModel):
    """Root configuration model for a scraper's outputs."""

    name: str = Field(..., description="Producer name, substituted for {scraper} in file names")
    outputs: List[SinkConfig] = Field(default_factory=list)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not str(v).strip():
            raise ValueError("name cannot be empty")
        return str(v).strip()

    def enabled_outputs(self) -> List[SinkConfig]:
        return [o for o in self.outputs if o.enabled]


# ---------- Sink settings ----------


class BaseSinkSettings(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    scraper_name: Optional[str] = Field(None, validation_alias=AliasChoices("scraper_name", "scraperName"))


class FileSinkSettings(BaseSinkSettings):
    """Settings shared by sinks that write one file per run."""

    path: str = Field("./exports", description="Output directory")
    filename: str = Field("export-{timestamp}.out", description="File name template")
    encoding: str = "utf-8"
    write_mode: Literal["overwrite", "append"] = Field(
        "overwrite", validation_alias=AliasChoices("write_mode", "writeMode")
    )


class CsvSinkSettings(FileSinkSettings):
    """Configuration for CSV sink."""

    filename: str = "export-{timestamp}.csv"
    delimiter: str = ","
    headers: bool = True

    @field_validator("delimiter")
    @classmethod
    def validate_delimiter(cls, v):
        if len(v) != 1 or v in {'"', "\n", "\r"}:
            raise ValueError("delimiter must be a single character other than a quote or newline")
        return v


class JsonlSinkSettings(FileSinkSettings):
    """Configuration for JSON Lines sink."""

    filename: str = "export-{timestamp}.jsonl"


class DatabaseSinkSettings(BaseSinkSettings):
    """Configuration for relational database sink."""

    connection: str = Field(..., description="Name of a connection profile")
    table: str = Field(..., description="Destination table")
    batch_size: int = Field(100, ge=1, validation_alias=AliasChoices("batch_size", "batchSize"))
    upsert: bool = False
    conflict_column: str = Field("id", validation_alias=AliasChoices("conflict_column", "conflictColumn"))
    auto_create_table: bool = Field(
        False, validation_alias=AliasChoices("auto_create_table", "autoCreateTable")
    )
    table_schema: Dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("schema", "table_schema"),
        description="Column name -> type name, used when auto_create_table is set",
    )

    @field_validator("table")
    @classmethod
    def validate_table(cls, v):
        if not _IDENTIFIER.match(v):
            raise ValueError("table must be a plain identifier, optionally schema-qualified")
        return v

    @field_validator("conflict_column")
    @classmethod
    def validate_conflict_column(cls, v):
        if not _IDENTIFIER.match(v) or "." in v:
            raise ValueError("conflict_column must be a plain identifier")
        return v

    @model_validator(mode="after")
    def validate_auto_create(self):
        if self.auto_create_table and not self.table_schema:
            raise ValueError("schema is required when auto_create_table is True")
        return self


class ConnectionProfile(BaseModel):
    """Database connection parameters referenced by name from database sinks."""

    url: Optional[str] = None
    driver: str = "postgresql+asyncpg"
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    pool: Dict[str, Any] = Field(default_factory=dict, description="Extra create_async_engine options")

    @model_validator(mode="after")
    def validate_target(self):
        if not self.url and not self.database:
            raise ValueError("connection profile needs either url or database")
        return self


def parse_sink_settings(model: Type[SettingsT], settings: Dict[str, Any], sink_type: str) -> SettingsT:
    """Validate raw sink settings, raising ConfigurationError on failure."""
    try:
        return model.model_validate(dict(settings or {}))
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid settings for '{sink_type}' sink:\n" + format_validation_error(e)
        ) from e


# ---------- Loading ----------


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}")

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return raw


def _resolve_base_config(name: str, configs_dir: Path) -> Path:
    for suffix in (".yaml", ".yml", ".json"):
        candidate = configs_dir / f"{name}{suffix}"
        if candidate.exists():
            return candidate
    raise FileNotFoundError(f"Base configuration '{name}' not found in {configs_dir}")


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge where nested mappings are merged one level deep."""
    merged = {**base, **override}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = {**base[key], **value}
    return merged


def load_raw_config(config_path: str, configs_dir: Optional[str] = None) -> Dict[str, Any]:
    """Read a config file and resolve its `extends` chain."""
    path = Path(config_path)
    base_dir = Path(configs_dir) if configs_dir else path.parent
    raw = _read_config_file(path)

    seen = {path.resolve()}
    while "extends" in raw:
        base_path = _resolve_base_config(str(raw.pop("extends")), base_dir)
        if base_path.resolve() in seen:
            raise ValueError(f"Circular 'extends' chain at {base_path}")
        seen.add(base_path.resolve())
        raw = merge_configs(_read_config_file(base_path), raw)

    return raw


def load_and_validate_config(config_path: str, configs_dir: Optional[str] = None) -> ScraperConfig:
    """
    Load and validate a scraper configuration from YAML (or JSON) file.

    Args:
        config_path: Path to the configuration file
        configs_dir: Directory holding base configs named by `extends`.
            Defaults to the config file's directory.

    Returns:
        Validated ScraperConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If YAML is malformed or validation fails
    """
    raw_config = load_raw_config(config_path, configs_dir)

    try:
        return ScraperConfig(**raw_config)
    except ValidationError as e:
        raise ValueError(
            f"Configuration validation failed for {config_path}:\n" + format_validation_error(e)
        ) from e
