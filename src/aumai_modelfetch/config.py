"""Settings for aumai-modelfetch."""

from __future__ import annotations

import json
import logging
import os
import platform
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

import click
import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import SettingsError

__all__ = [
    "OllamaServer",
    "OllamaLibrary",
    "TransferSettings",
    "AppSettings",
    "load_settings",
    "load_or_create_default",
    "save_settings",
    "settings_file_path",
    "log_level_from_env",
    "user_agent",
    "build_client",
]

logger = logging.getLogger(__name__)

APP_NAME = "aumai-modelfetch"
SETTINGS_ENV = "AUMAI_MODELFETCH_SETTINGS"
LOG_LEVEL_ENV = "AUMAI_MODELFETCH_LOG_LEVEL"
LOG_LEVEL_FALLBACK_ENV = "LOG_LEVEL"


def _check_http_url(value: str) -> str:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as exc:
        raise ValueError(f"URL parsing failed: {exc}") from exc
    if url.scheme not in ("http", "https"):
        raise ValueError(f"URL scheme should either be http or https, got: {url.scheme!r}")
    if not url.host:
        raise ValueError(f"URL {value!r} has no host")
    return value


class OllamaServer(BaseModel):
    """The Ollama server the models are downloaded for."""

    model_config = ConfigDict(frozen=True)

    url: str = "http://localhost:11434/"
    api_key: str | None = None
    remove_downloaded_on_error: bool = True
    check_model_presence: bool = True

    @field_validator("url")
    @classmethod
    def check_url(cls, value: str) -> str:
        return _check_http_url(value)


class OllamaLibrary(BaseModel):
    """Where models come from and where they are stored locally."""

    model_config = ConfigDict(frozen=True)

    models_path: str = "~/.ollama/models"
    registry_base_url: str = "https://registry.ollama.ai/v2/library/"
    library_base_url: str = "https://ollama.com/library/"
    verify_ssl: bool = True
    timeout: float = Field(default=120.0, gt=0)

    @field_validator("registry_base_url", "library_base_url")
    @classmethod
    def check_base_url(cls, value: str) -> str:
        _check_http_url(value)
        return value if value.endswith("/") else value + "/"

    @property
    def expanded_models_path(self) -> Path:
        return Path(self.models_path).expanduser()

    @property
    def registry_host(self) -> str:
        return httpx.URL(self.registry_base_url).host or "registry.ollama.ai"


class TransferSettings(BaseModel):
    """Knobs of the blob transfer pipeline."""

    model_config = ConfigDict(frozen=True)

    max_concurrent_transfers: int = Field(default=3, ge=1, le=32)
    max_retries: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    chunk_size: int = Field(default=1024 * 1024, ge=1024)
    retry_on_digest_mismatch: bool = True
    page_size: int = Field(default=25, ge=1, le=100)


class AppSettings(BaseModel):
    """
    Immutable application settings.

    One instance is built per command and handed explicitly to every
    component; nothing reads settings from global state.
    """

    model_config = ConfigDict(frozen=True)

    ollama_server: OllamaServer = Field(default_factory=OllamaServer)
    ollama_library: OllamaLibrary = Field(default_factory=OllamaLibrary)
    transfer: TransferSettings = Field(default_factory=TransferSettings)


# ---------------------------------------------------------------------------
# Settings file
# ---------------------------------------------------------------------------


def _warn_missing_fields(data: dict[str, Any]) -> None:
    for section_name, section_model in (
        ("ollama_server", OllamaServer),
        ("ollama_library", OllamaLibrary),
        ("transfer", TransferSettings),
    ):
        section = data.get(section_name)
        if not isinstance(section, dict):
            logger.warning("Missing section %r, using defaults", section_name)
            continue
        for field_name, field in section_model.model_fields.items():
            if field_name not in section:
                logger.warning(
                    "Missing field '%s.%s', using default: %r",
                    section_name,
                    field_name,
                    field.get_default(call_default_factory=True),
                )


def load_settings(settings_file: str | Path) -> AppSettings:
    """
    Load settings from a JSON file.

    Missing sections or fields fall back to their defaults with a warning.
    Raises ``FileNotFoundError`` when the file is absent and
    ``SettingsError`` when it cannot be parsed or validated.
    """
    path = Path(settings_file)
    content = path.read_text(encoding="utf-8")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Settings file {str(path)!r} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {str(path)!r} must hold a JSON object")
    _warn_missing_fields(data)
    try:
        return AppSettings.model_validate(data)
    except ValidationError as exc:
        raise SettingsError(f"Invalid settings in {str(path)!r}: {exc}") from exc


def save_settings(settings: AppSettings, settings_file: str | Path) -> Path:
    """Write *settings* as JSON, creating parent directories."""
    path = Path(settings_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
    return path


def load_or_create_default(settings_file: str | Path) -> AppSettings:
    """Load *settings_file*, creating it with default values if it does not exist."""
    try:
        return load_settings(settings_file)
    except FileNotFoundError:
        logger.info(
            "Settings file %r not found, creating one with default values",
            str(settings_file),
        )
        settings = AppSettings()
        save_settings(settings, settings_file)
        return settings


def settings_file_path() -> Path:
    """Location of the settings file for the current user."""
    override = os.environ.get(SETTINGS_ENV)
    if override:
        return Path(override).expanduser()
    return Path(click.get_app_dir(APP_NAME)) / "settings.json"


def log_level_from_env() -> int:
    name = os.environ.get(LOG_LEVEL_ENV) or os.environ.get(LOG_LEVEL_FALLBACK_ENV) or "INFO"
    level = logging.getLevelName(name.strip().upper())
    return level if isinstance(level, int) else logging.INFO


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


def user_agent() -> str:
    try:
        pkg_version = version(APP_NAME)
    except PackageNotFoundError:
        pkg_version = "0.0.0"
    return f"{APP_NAME}/{pkg_version} ({platform.system().lower()}-{platform.machine()})"


def build_client(
    settings: AppSettings, transport: httpx.AsyncBaseTransport | None = None
) -> httpx.AsyncClient:
    """Create the shared async HTTP client for one session."""
    library = settings.ollama_library
    return httpx.AsyncClient(
        headers={"User-Agent": user_agent()},
        verify=library.verify_ssl,
        timeout=httpx.Timeout(library.timeout),
        follow_redirects=True,
        transport=transport,
    )
