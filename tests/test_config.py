"""
Tests for settings loading.
"""

import json

from cellsync.config import Settings, load_settings, save_settings


class TestSettings:

    def test_defaults_written(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CELLSYNC_HOST", raising=False)
        monkeypatch.delenv("CELLSYNC_PORT", raising=False)
        settings = load_settings(tmp_path / "home")

        assert settings.port == 2150
        assert settings.notebooks_dir.is_dir()
        stored = json.loads(settings.config_path.read_text())
        assert stored["port"] == 2150
        assert "base_dir" not in stored

    def test_stored_values_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CELLSYNC_PORT", raising=False)
        save_settings(Settings(base_dir=tmp_path, port=9000, execution_timeout=30))
        settings = load_settings(tmp_path)

        assert settings.port == 9000
        assert settings.execution_timeout == 30
        assert settings.base_dir == tmp_path

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CELLSYNC_HOST", "0.0.0.0")
        monkeypatch.setenv("CELLSYNC_PORT", "8123")
        settings = load_settings(tmp_path)

        assert settings.host == "0.0.0.0"
        assert settings.port == 8123

    def test_base_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CELLSYNC_BASE_DIR", str(tmp_path / "env-home"))
        settings = load_settings()

        assert settings.base_dir == tmp_path / "env-home"
        assert settings.config_path.is_file()
