"""Configuration file, paths and token resolution."""

import json
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import CliError, ErrorCode

logger = logging.getLogger("notion-lite")

APP_NAME = "notion-lite"
DEFAULT_TOKEN_ENV = "NOTION_API_KEY"
SETUP_HINT = "Run `notion-lite auth` to configure the CLI."


# =============================================================================
# Paths
# =============================================================================

def get_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def get_config_path() -> Path:
    return get_config_dir() / "config.json"


def get_audit_log_path() -> Path:
    return get_config_dir() / "audit.log"


def get_idempotency_db_path() -> Path:
    return get_config_dir() / "idempotency.db"


def ensure_config_dir() -> Path:
    config_dir = get_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


# =============================================================================
# Models
# =============================================================================

class Defaults(BaseModel):
    limit: int = Field(25, ge=1)
    view: Literal["compact", "full"] = "compact"
    max_blocks: int = Field(200, ge=1)
    timeout_ms: int = Field(30000, ge=1)
    schema_ttl_hours: float = Field(24, gt=0)
    bulk_create_concurrency: int = Field(5, ge=1)
    search_scan_limit: int = Field(500, ge=1)


class SchemaProperty(BaseModel):
    id: str = ""
    type: str = "unknown"


class SchemaCacheEntry(BaseModel):
    data_source_id: str
    last_refreshed: str
    properties: dict[str, SchemaProperty] = Field(default_factory=dict)


class AppConfig(BaseModel):
    notion_api_key_env: str = DEFAULT_TOKEN_ENV
    defaults: Defaults = Field(default_factory=Defaults)
    schema_cache: dict[str, SchemaCacheEntry] = Field(default_factory=dict)


def build_initial_config(token_env: str = DEFAULT_TOKEN_ENV) -> AppConfig:
    return AppConfig(notion_api_key_env=token_env)


# =============================================================================
# Load / save
# =============================================================================

def _parse_config(raw: str) -> AppConfig:
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise CliError(
            ErrorCode.AUTH_OR_CONFIG, "Config file is not valid JSON.", details=str(e)
        )

    try:
        return AppConfig.model_validate(parsed)
    except ValidationError as e:
        raise CliError(
            ErrorCode.AUTH_OR_CONFIG,
            "Config file is invalid.",
            details=e.errors(include_url=False),
        )


def load_config_or_none(path: Optional[Path] = None) -> Optional[AppConfig]:
    config_path = path or get_config_path()
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return _parse_config(raw)


def load_config(path: Optional[Path] = None) -> AppConfig:
    config_path = path or get_config_path()
    config = load_config_or_none(config_path)
    if config is None:
        raise CliError(
            ErrorCode.AUTH_OR_CONFIG, f"Config not found at {config_path}. {SETUP_HINT}"
        )
    return config


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    if path is None:
        ensure_config_dir()
        path = get_config_path()
    else:
        path.parent.mkdir(parents=True, exist_ok=True)

    # Write-then-rename so a concurrent reader never sees a half-written file
    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(config.model_dump_json(indent=2) + "\n", encoding="utf-8")
    os.replace(tmp_path, path)
    logger.debug(f"Config saved to {path}")


# =============================================================================
# Credentials
# =============================================================================

def resolve_token(config: AppConfig, token_file: Optional[str] = None) -> str:
    """Read the API token from --token-file, else the configured env var."""
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            raise CliError(ErrorCode.AUTH_OR_CONFIG, f"Token file not found: {token_path}")
        token = token_path.read_text(encoding="utf-8").strip()
        if not token:
            raise CliError(ErrorCode.AUTH_OR_CONFIG, f"Token file is empty: {token_path}")
        return token

    token = os.environ.get(config.notion_api_key_env, "").strip()
    if not token:
        raise CliError(
            ErrorCode.AUTH_OR_CONFIG,
            f"{config.notion_api_key_env} is missing. Set the configured token "
            "environment variable or pass --token-file.",
        )
    return token
