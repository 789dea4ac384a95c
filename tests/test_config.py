"""Tests for configuration dataclasses, INI loading and the backend factory."""

from __future__ import annotations

from pathlib import Path

import pytest

from ledgerfs.fs.config import (
    DriveConfig,
    LocalConfig,
    StorageConfig,
    TrackingConfig,
    load_config,
    parse_config,
)
from ledgerfs.fs.drive import DriveBackend
from ledgerfs.fs.exceptions import ConfigurationError
from ledgerfs.fs.factory import create_backend, create_initialized_backend
from ledgerfs.fs.local_disk import LocalDiskBackend

_DRIVE_ENV = (
    "GOOGLE_DRIVE_CLIENT_ID",
    "GOOGLE_DRIVE_CLIENT_SECRET",
    "GOOGLE_DRIVE_REDIRECT_URI",
    "GOOGLE_DRIVE_REFRESH_TOKEN",
    "GOOGLE_DRIVE_ACCESS_TOKEN",
    "GOOGLE_DRIVE_ROOT_FOLDER_ID",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _DRIVE_ENV:
        monkeypatch.delenv(name, raising=False)


class TestDataclasses:
    def test_local_normalizes_extensions(self):
        config = LocalConfig(allowed_extensions=[".PDF", " txt ", ""])
        assert config.allowed_extensions == ["pdf", "txt"]
        assert isinstance(config.base_path, Path)

    def test_local_negative_size(self):
        with pytest.raises(ConfigurationError):
            LocalConfig(max_file_size=-1)

    def test_drive_validate(self):
        with pytest.raises(ConfigurationError) as exc_info:
            DriveConfig(client_id="x").validate()
        assert exc_info.value.details["missing"] == ["client_secret"]
        DriveConfig(client_id="x", client_secret="y").validate()

    def test_drive_defaults(self):
        config = DriveConfig(root_folder_id="")
        assert config.root_folder_id == "root"

    def test_tracking_defaults(self):
        config = TrackingConfig()
        assert config.enabled is True
        assert config.await_recording is False
        assert config.merge_strategy == "shallow"

    def test_tracking_rejects_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            TrackingConfig(merge_strategy="weird")  # type: ignore[arg-type]

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            StorageConfig(provider="ftp")  # type: ignore[arg-type]


class TestParseConfig:
    def test_local(self, tmp_path):
        config = parse_config(
            """
            [general]
            provider = local

            [local]
            base_path = ./data
            allowed_extensions = pdf, .TXT
            max_file_size = 1024
            """.replace("            ", ""),
            base_dir=tmp_path,
        )
        assert config.provider == "local"
        assert config.local.base_path == tmp_path / "data"
        assert config.local.allowed_extensions == ["pdf", "txt"]
        assert config.local.max_file_size == 1024

    def test_defaults_to_local(self):
        config = parse_config("")
        assert config.provider == "local"
        assert config.local is not None

    def test_bad_size(self):
        with pytest.raises(ConfigurationError):
            parse_config("[local]\nmax_file_size = lots\n")

    def test_malformed(self):
        with pytest.raises(ConfigurationError):
            parse_config("not an ini file")

    def test_drive_from_ini(self):
        config = parse_config(
            "[general]\nprovider = google_drive\n"
            "[google_drive]\nclient_id = cid\nclient_secret = sec\nroot_folder_id = folder1\n"
        )
        assert config.provider == "google_drive"
        assert config.google_drive.client_id == "cid"
        assert config.google_drive.root_folder_id == "folder1"
        assert config.google_drive.refresh_token is None

    def test_drive_env_fallback(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_DRIVE_CLIENT_ID", "env-id")
        monkeypatch.setenv("GOOGLE_DRIVE_CLIENT_SECRET", "env-secret")
        monkeypatch.setenv("GOOGLE_DRIVE_REFRESH_TOKEN", "env-refresh")
        config = parse_config("[general]\nprovider = google_drive\n")
        assert config.google_drive.client_id == "env-id"
        assert config.google_drive.client_secret == "env-secret"
        assert config.google_drive.refresh_token == "env-refresh"

    def test_ini_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_DRIVE_CLIENT_ID", "env-id")
        config = parse_config("[google_drive]\nclient_id = ini-id\n")
        assert config.google_drive.client_id == "ini-id"


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        config = load_config(tmp_path / "absent.ini")
        assert config.provider == "local"
        assert "using defaults" in caplog.text

    def test_relative_base_against_file(self, tmp_path):
        ini = tmp_path / "conf" / "ledgerfs.ini"
        ini.parent.mkdir()
        ini.write_text("[local]\nbase_path = files\n")
        config = load_config(ini)
        assert config.local.base_path == tmp_path / "conf" / "files"


class TestFactory:
    def test_local(self, tmp_path):
        backend = create_backend(StorageConfig(local=LocalConfig(base_path=tmp_path)))
        assert isinstance(backend, LocalDiskBackend)
        assert backend.is_initialized is False

    def test_drive(self):
        backend = create_backend(
            StorageConfig(provider="google_drive", google_drive=DriveConfig(client_id="a"))
        )
        assert isinstance(backend, DriveBackend)

    async def test_initialized_from_path(self, tmp_path):
        ini = tmp_path / "ledgerfs.ini"
        ini.write_text("[local]\nbase_path = store\n")
        backend = await create_initialized_backend(ini)
        assert backend.is_initialized
        assert (tmp_path / "store").is_dir()

    async def test_initialized_drive_without_credentials(self):
        config = StorageConfig(provider="google_drive", google_drive=DriveConfig())
        with pytest.raises(ConfigurationError):
            await create_initialized_backend(config)
