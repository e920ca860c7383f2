"""Configuration for sessionhub.

Values come from ``~/.sessionhub/config.json`` (written by ``sessionhub
setup``) and can be overridden with ``SESSIONHUB_*`` environment variables.
"""

import json
import logging
import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

logger = logging.getLogger("sessionhub.config")

CONFIG_DIR = Path.home() / ".sessionhub"
CONFIG_FILENAME = "config.json"
DEFAULT_BACKEND_URL = "https://plugin.sessionhub.dev"


class Settings(BaseSettings):
    """Runtime settings, built once and handed to each component.

    Attributes:
        api_key: SessionHub API key.
        backend_url: Base URL of the SessionHub service.
        request_timeout: Seconds allowed for lookup calls.
        mutation_timeout: Seconds allowed for upsert, batch and upload calls.
        batch_chunk_size: Interactions per batch request.
        max_log_bytes: Transcripts larger than this are refused.
        max_partial_failures: Abort a capture after this many partial
            failures. None means no limit.
        debug: Verbose logging.
        config_dir: Where config.json lives.
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONHUB_",
        case_sensitive=False,
        extra="ignore",
    )

    api_key: str = ""
    backend_url: str = DEFAULT_BACKEND_URL
    request_timeout: float = 30.0
    mutation_timeout: float = 60.0
    batch_chunk_size: int = 500
    max_log_bytes: int = 100 * 1024 * 1024
    max_partial_failures: int | None = None
    debug: bool = False
    config_dir: Path = CONFIG_DIR

    @field_validator("backend_url")
    @classmethod
    def normalize_backend_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and "://" not in v:
            local = v.startswith(("localhost", "127.0.0.1"))
            v = f"{'http' if local else 'https'}://{v}"
        return v

    @field_validator("config_dir")
    @classmethod
    def expand_config_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment wins over values read from config.json
        return env_settings, init_settings

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


def read_config_file(config_file: Path) -> dict:
    """Map config.json onto Settings field names. Missing or broken files give {}."""
    if not config_file.exists():
        return {}
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", config_file, e)
        return {}
    if not isinstance(data, dict):
        return {}

    values = {}
    user = data.get("user")
    if isinstance(user, dict) and user.get("apiKey"):
        values["api_key"] = user["apiKey"]
    backend_url = data.get("backendUrl") or data.get("backendGrpcUrl")
    if backend_url:
        values["backend_url"] = backend_url
    if data.get("maxPartialFailures") is not None:
        values["max_partial_failures"] = data["maxPartialFailures"]
    return values


def load_settings(config_dir: Path | None = None, **overrides) -> Settings:
    """Build Settings from config.json, the environment and explicit overrides."""
    config_dir = (config_dir or Path(os.environ.get("SESSIONHUB_CONFIG_DIR", CONFIG_DIR))).expanduser()
    values = read_config_file(config_dir / CONFIG_FILENAME)
    values["config_dir"] = config_dir
    settings = Settings(**values)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    return settings.model_copy(update=overrides) if overrides else settings


def save_api_key(api_key: str, config_dir: Path = CONFIG_DIR) -> Path:
    """Store the API key in config.json, readable by the owner only."""
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / CONFIG_FILENAME

    data: dict = {}
    if config_file.exists():
        try:
            data = json.loads(config_file.read_text(encoding="utf-8"))
        except ValueError:
            logger.warning("Overwriting unreadable %s", config_file)
        if not isinstance(data, dict):
            data = {}

    user = data.get("user") if isinstance(data.get("user"), dict) else {}
    data["user"] = {**user, "apiKey": api_key}

    config_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
    config_file.chmod(0o600)
    return config_file
