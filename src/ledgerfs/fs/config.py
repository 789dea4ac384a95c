"""Backend and tracking configuration, plus INI loading."""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Provider = Literal["local", "google_drive"]
MergeStrategy = Literal["shallow", "deep"]

DEFAULT_CONFIG_FILENAME = "ledgerfs.ini"
DEFAULT_BASE_PATH = "./files"

DRIVE_API_BASE_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_BASE_URL = "https://www.googleapis.com/upload/drive/v3"
DRIVE_TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass
class LocalConfig:
    """Local disk backend settings.

    ``allowed_extensions`` entries are compared case-insensitively and may be
    written with or without a leading dot; empty means all are allowed.
    ``max_file_size`` of 0 means unlimited.
    """

    base_path: str | Path = DEFAULT_BASE_PATH
    allowed_extensions: list[str] = field(default_factory=list)
    max_file_size: int = 0

    def __post_init__(self) -> None:
        self.base_path = Path(self.base_path).expanduser()
        self.allowed_extensions = [
            e.strip().lower().lstrip(".") for e in self.allowed_extensions if e.strip()
        ]
        if self.max_file_size < 0:
            raise ConfigurationError(
                f"max_file_size must be >= 0, got {self.max_file_size}"
            )


@dataclass
class DriveConfig:
    """Google Drive backend settings."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    refresh_token: str | None = None
    access_token: str | None = None
    root_folder_id: str = "root"
    api_base_url: str = DRIVE_API_BASE_URL
    upload_base_url: str = DRIVE_UPLOAD_BASE_URL
    token_url: str = DRIVE_TOKEN_URL
    timeout: float = 30.0

    def __post_init__(self) -> None:
        self.root_folder_id = self.root_folder_id or "root"
        self.api_base_url = self.api_base_url.rstrip("/")
        self.upload_base_url = self.upload_base_url.rstrip("/")

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if OAuth client settings are missing."""
        missing = [
            name
            for name in ("client_id", "client_secret")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Google Drive config is missing: {', '.join(missing)}",
                {"missing": missing},
            )


@dataclass
class TrackingConfig:
    """Metadata tracking behavior for :class:`TrackedFileManager`.

    Attributes:
        enabled: Write metadata records at all.
        track_downloads: Stamp ``changed_at`` when a file is downloaded.
        log_errors: Log metadata failures through the injected logger.
        await_recording: Serialize metadata writes with the physical
            operation instead of running them in the background.
        merge_strategy: How extraction payloads fold into ``merged_data``.
        max_attempts: Background write attempts before giving up.
        retry_delay: Seconds between background write attempts.
    """

    enabled: bool = True
    track_downloads: bool = True
    log_errors: bool = True
    await_recording: bool = False
    merge_strategy: MergeStrategy = "shallow"
    max_attempts: int = 3
    retry_delay: float = 0.05

    def __post_init__(self) -> None:
        if self.merge_strategy not in ("shallow", "deep"):
            raise ConfigurationError(f"Unknown merge strategy: {self.merge_strategy}")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")


@dataclass
class StorageConfig:
    """Top-level configuration selecting one provider."""

    provider: Provider = "local"
    local: LocalConfig | None = None
    google_drive: DriveConfig | None = None

    def __post_init__(self) -> None:
        if self.provider not in ("local", "google_drive"):
            raise ConfigurationError(f"Unknown storage provider: {self.provider}")


# =============================================================================
# INI loading
# =============================================================================


def _get(section: configparser.SectionProxy | None, key: str, env: str | None = None) -> str:
    value = section.get(key, "").strip() if section is not None else ""
    if not value and env:
        value = os.environ.get(env, "").strip()
    return value


def parse_config(content: str, base_dir: str | Path | None = None) -> StorageConfig:
    """Parse INI *content* into a :class:`StorageConfig`.

    A relative ``base_path`` is resolved against *base_dir* when given.
    Google Drive settings fall back to ``GOOGLE_DRIVE_*`` environment
    variables.
    """
    parser = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    try:
        parser.read_string(content)
    except configparser.Error as e:
        raise ConfigurationError(f"Malformed configuration: {e}") from e

    general = parser["general"] if parser.has_section("general") else None
    provider = _get(general, "provider") or "local"

    local: LocalConfig | None = None
    if parser.has_section("local"):
        section = parser["local"]
        base_path = Path(_get(section, "base_path") or DEFAULT_BASE_PATH)
        if base_dir is not None and not base_path.is_absolute():
            base_path = Path(base_dir) / base_path
        raw_extensions = _get(section, "allowed_extensions")
        raw_size = _get(section, "max_file_size") or "0"
        try:
            max_file_size = int(raw_size)
        except ValueError:
            raise ConfigurationError(
                f"max_file_size must be an integer, got {raw_size!r}"
            ) from None
        local = LocalConfig(
            base_path=base_path,
            allowed_extensions=raw_extensions.split(",") if raw_extensions else [],
            max_file_size=max_file_size,
        )

    drive: DriveConfig | None = None
    if parser.has_section("google_drive") or provider == "google_drive":
        section = parser["google_drive"] if parser.has_section("google_drive") else None
        drive = DriveConfig(
            client_id=_get(section, "client_id", "GOOGLE_DRIVE_CLIENT_ID"),
            client_secret=_get(section, "client_secret", "GOOGLE_DRIVE_CLIENT_SECRET"),
            redirect_uri=_get(section, "redirect_uri", "GOOGLE_DRIVE_REDIRECT_URI"),
            refresh_token=_get(section, "refresh_token", "GOOGLE_DRIVE_REFRESH_TOKEN") or None,
            access_token=_get(section, "access_token", "GOOGLE_DRIVE_ACCESS_TOKEN") or None,
            root_folder_id=_get(section, "root_folder_id", "GOOGLE_DRIVE_ROOT_FOLDER_ID")
            or "root",
        )

    if provider == "local" and local is None:
        local = LocalConfig()

    return StorageConfig(provider=provider, local=local, google_drive=drive)  # type: ignore[arg-type]


def load_config(path: str | Path | None = None) -> StorageConfig:
    """Load configuration from an INI file.

    Defaults to ``ledgerfs.ini`` in the working directory. A missing file
    yields the default local configuration.
    """
    config_path = Path(path) if path is not None else Path.cwd() / DEFAULT_CONFIG_FILENAME
    if not config_path.exists():
        logger.warning("Config file not found at %s, using defaults", config_path)
        return StorageConfig(provider="local", local=LocalConfig())
    content = config_path.read_text(encoding="utf-8")
    return parse_config(content, base_dir=config_path.parent)
